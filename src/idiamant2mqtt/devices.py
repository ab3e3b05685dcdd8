"""Shutter device model.

The Bubendorff shutters behind an iDiamant bridge report no absolute
position, only reachability and a coarse open/closed flag, so the
position kept here is always an estimate.

Convention: 0 = fully closed, 100 = fully open (matches Home Assistant).
"""

import re
from dataclasses import dataclass
from enum import Enum


class LogicalState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    OPENING = "opening"
    CLOSING = "closing"
    HALF_OPEN = "half_open"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class Command(str, Enum):
    OPEN = "open"
    CLOSE = "close"
    HALF_OPEN = "half_open"
    STOP = "stop"

    @classmethod
    def parse(cls, value: "str | Command") -> "Command | None":
        """Return the matching command, or None for anything unrecognised."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


STATE_LABELS_FR = {
    LogicalState.OPEN: "Ouvert",
    LogicalState.CLOSED: "Fermé",
    LogicalState.OPENING: "Ouverture",
    LogicalState.CLOSING: "Fermeture",
    LogicalState.HALF_OPEN: "Mi-ouvert",
    LogicalState.STOPPED: "Arrêté",
}


def state_label(state: LogicalState) -> str:
    return STATE_LABELS_FR.get(state, "Inconnu")


@dataclass
class Device:
    id: str
    name: str
    room_id: str | None = None
    logical_state: LogicalState = LogicalState.UNKNOWN
    position: int | None = None
    reachable: bool | None = None
    last_seen: int | None = None

    @property
    def cover_state(self) -> str:
        """State string for the HA cover entity, which has no half-open state."""
        if self.logical_state == LogicalState.HALF_OPEN:
            return LogicalState.STOPPED.value
        return self.logical_state.value

    @property
    def is_open(self) -> bool:
        return self.position == 100

    @property
    def is_closed(self) -> bool:
        return self.position == 0


def normalize_name(name: str, strip_words: list[str] | tuple[str, ...] = ("volet",)) -> str:
    """Lower-case a vendor module name and drop decorative words.

    >>> normalize_name("Volet Salon")
    'salon'
    """
    result = name.lower()
    for word in strip_words:
        result = result.replace(word.lower(), "")
    return re.sub(r"\s+", " ", result).strip()
