"""Merge simulated shutter state with recovered and polled truth.

Two external sources feed in here:

* retained MQTT messages replayed by the broker after a restart, which
  carry the last state this bridge published (sometimes a bare state
  string, sometimes a JSON object with state and position);
* periodic Netatmo ``homestatus`` polls, which only know reachability,
  last-seen time and a coarse open/closed position.

An in-flight transition always wins over recovered state. A publish is
only triggered when the device's mutable fields actually changed.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Protocol

from .devices import Device, LogicalState
from .mqtt_handler import PublishError
from .timer_registry import DeviceTimerRegistry
from .transitions import HALF_OPEN_POSITION, UNKNOWN_STATE_POSITION

logger = logging.getLogger(__name__)

STATE_POSITIONS = {
    LogicalState.OPEN: 100,
    LogicalState.CLOSED: 0,
    LogicalState.HALF_OPEN: HALF_OPEN_POSITION,
}

# A move that was running when the process stopped did not complete
_INTERRUPTED = {LogicalState.OPENING, LogicalState.CLOSING}


class StatePublisher(Protocol):
    def publish_device(self, device: Device) -> None: ...


@dataclass(frozen=True)
class PersistedState:
    state: LogicalState
    position: int | None = None


@dataclass(frozen=True)
class PollResult:
    device_id: str
    reachable: bool | None
    last_seen: int | None
    current_position: int | None = None


def _parse_position(value) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        position = round(value)
    elif isinstance(value, str):
        try:
            position = round(float(value))
        except (ValueError, OverflowError):
            raise ValueError(f"Invalid position: {value!r}") from None
    else:
        raise ValueError(f"Invalid position: {value!r}")
    if not 0 <= position <= 100:
        raise ValueError(f"Position out of range: {position}")
    return position


def parse_persisted_state(payload: bytes | str | None) -> PersistedState | None:
    """Parse a retained state payload, returning None for anything malformed."""
    if payload is None:
        return None
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    text = payload.strip()
    if not text:
        return None

    if text.startswith("{"):
        try:
            raw = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("Ignoring malformed retained state: %s", text)
            return None
        if not isinstance(raw, dict):
            return None
        state_value = raw.get("state")
        position_value = raw.get("position", raw.get("current_position"))
    else:
        state_value = text
        position_value = None

    if not isinstance(state_value, str):
        return None
    try:
        state = LogicalState(state_value.strip().lower())
        position = _parse_position(position_value)
    except (ValueError, OverflowError):
        logger.debug("Ignoring unrecognised retained state: %s", text)
        return None
    return PersistedState(state=state, position=position)


def state_hash(device: Device) -> str:
    data = {
        "state": device.logical_state.value,
        "position": device.position,
        "reachable": device.reachable,
        "last_seen": device.last_seen,
    }
    return hashlib.sha1(json.dumps(data, sort_keys=True).encode()).hexdigest()


class StateReconciler:
    def __init__(
        self,
        devices: dict[str, Device],
        registry: DeviceTimerRegistry,
        publisher: StatePublisher,
    ):
        self._devices = devices
        self._registry = registry
        self._publisher = publisher
        self._hashes: dict[str, str] = {}

    def remember(self, device: Device) -> None:
        """Record a state that has just been published by the engine."""
        self._hashes[device.id] = state_hash(device)

    def on_persisted_state_recovered(
        self, device_id: str, payload: "bytes | str | PersistedState | None"
    ) -> bool:
        device = self._devices.get(device_id)
        if device is None:
            logger.debug("Retained state for unknown device %s ignored", device_id)
            return False

        recovered = payload if isinstance(payload, PersistedState) else parse_persisted_state(payload)
        if recovered is None:
            return False

        if self._registry.is_active(device_id):
            logger.debug("Shutter %s is moving, retained state ignored", device_id)
            return False

        state = recovered.state
        if state in _INTERRUPTED:
            logger.info(
                "Shutter %s: recovered %s was interrupted, marking stopped",
                device_id,
                state.value,
            )
            state = LogicalState.STOPPED

        position = recovered.position
        if position is None:
            position = STATE_POSITIONS.get(state, device.position)
        if position is None:
            position = UNKNOWN_STATE_POSITION

        device.logical_state = state
        device.position = position
        logger.info(
            "Shutter %s: recovered %s at %s%%", device_id, state.value, position
        )
        return self._publish_if_changed(device)

    def on_poll_result(self, result: PollResult) -> bool:
        device = self._devices.get(result.device_id)
        if device is None:
            logger.debug("Poll result for unknown device %s ignored", result.device_id)
            return False

        device.reachable = result.reachable
        device.last_seen = result.last_seen

        if (
            result.current_position is not None
            and device.logical_state == LogicalState.UNKNOWN
            and not self._registry.is_active(device.id)
        ):
            position = max(0, min(100, result.current_position))
            if position == 100:
                device.logical_state = LogicalState.OPEN
            elif position == 0:
                device.logical_state = LogicalState.CLOSED
            else:
                device.logical_state = LogicalState.STOPPED
            device.position = position
            logger.info(
                "Shutter %s: initial state %s from poll",
                device.id,
                device.logical_state.value,
            )

        return self._publish_if_changed(device)

    def _publish_if_changed(self, device: Device) -> bool:
        digest = state_hash(device)
        if self._hashes.get(device.id) == digest:
            return False
        self._hashes[device.id] = digest
        try:
            self._publisher.publish_device(device)
        except PublishError as e:
            logger.error("Failed to publish state for %s: %s", device.id, e)
        return True
