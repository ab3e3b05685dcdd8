"""Time-based transition table for Bubendorff roller shutters.

Travel time is proportional to the distance still to cover, so a shutter
that is already 80% open finishes opening faster than one starting from
fully closed. Full-travel delays are measured on the real hardware and
configurable per installation.

Convention: 0 = fully closed, 100 = fully open (matches Home Assistant).
"""

from dataclasses import dataclass

from .devices import Command, LogicalState

HALF_OPEN_POSITION = 20
UNKNOWN_STATE_POSITION = 50

TARGET_POSITIONS = {
    Command.OPEN: 100,
    Command.CLOSE: 0,
    Command.HALF_OPEN: HALF_OPEN_POSITION,
}

TARGET_STATES = {
    Command.OPEN: LogicalState.OPEN,
    Command.CLOSE: LogicalState.CLOSED,
    Command.HALF_OPEN: LogicalState.HALF_OPEN,
}


@dataclass(frozen=True)
class TransitionDelays:
    """Full-travel durations in seconds."""

    open_delay: float = 42.0
    close_delay: float = 42.0
    close_to_half_open_delay: float = 3.0
    half_open_to_open_delay: float = 38.0
    half_open_to_close_delay: float = 7.0


@dataclass(frozen=True)
class Transition:
    device_id: str
    from_state: LogicalState
    from_position: int
    command: Command | None
    transition_state: LogicalState
    to_state: LogicalState
    target_position: int
    duration: float  # seconds
    started_at: float | None = None  # event loop clock, set when armed


def _clamp(position: float) -> int:
    return max(0, min(100, round(position)))


def _duration(
    from_state: LogicalState, position: int, command: Command, delays: TransitionDelays
) -> float:
    if from_state == LogicalState.CLOSED:
        return {
            Command.OPEN: delays.open_delay,
            Command.CLOSE: 0.0,
            Command.HALF_OPEN: delays.close_to_half_open_delay,
        }[command]

    if from_state == LogicalState.OPEN:
        return {
            Command.OPEN: 0.0,
            Command.CLOSE: delays.close_delay,
            # The motor has to go all the way down before it can tilt open
            Command.HALF_OPEN: delays.close_delay + delays.close_to_half_open_delay,
        }[command]

    if from_state == LogicalState.HALF_OPEN:
        return {
            Command.OPEN: delays.half_open_to_open_delay,
            Command.CLOSE: delays.half_open_to_close_delay,
            Command.HALF_OPEN: 0.0,
        }[command]

    # Intermediate or unknown: scale by the fraction of travel left
    closing = delays.close_delay * (position / 100.0)
    if command == Command.OPEN:
        return delays.open_delay * (1.0 - position / 100.0)
    if command == Command.CLOSE:
        return closing
    return closing + delays.close_to_half_open_delay


def compute_transition(
    device_id: str,
    from_state: LogicalState,
    from_position: float,
    command: Command | str | None,
    delays: TransitionDelays | None = None,
) -> Transition:
    """Return the transition a command triggers from the given state.

    Unrecognised commands yield an ``unknown`` transition with zero
    duration instead of raising.
    """
    delays = delays or TransitionDelays()
    position = _clamp(from_position or 0)
    parsed = Command.parse(command) if command is not None else None

    if parsed is None:
        return Transition(
            device_id=device_id,
            from_state=from_state,
            from_position=position,
            command=None,
            transition_state=LogicalState.UNKNOWN,
            to_state=LogicalState.UNKNOWN,
            target_position=position,
            duration=0.0,
        )

    if parsed == Command.STOP:
        return Transition(
            device_id=device_id,
            from_state=from_state,
            from_position=position,
            command=parsed,
            transition_state=LogicalState.STOPPED,
            to_state=LogicalState.STOPPED,
            target_position=position,
            duration=0.0,
        )

    if parsed == Command.OPEN:
        transition_state = LogicalState.OPENING
    elif parsed == Command.CLOSE:
        transition_state = LogicalState.CLOSING
    elif position <= HALF_OPEN_POSITION and from_state != LogicalState.OPEN:
        transition_state = LogicalState.OPENING
    else:
        transition_state = LogicalState.CLOSING

    return Transition(
        device_id=device_id,
        from_state=from_state,
        from_position=position,
        command=parsed,
        transition_state=transition_state,
        to_state=TARGET_STATES[parsed],
        target_position=TARGET_POSITIONS[parsed],
        duration=max(0.0, _duration(from_state, position, parsed, delays)),
    )


def estimate_progress(transition: Transition, now: float) -> int:
    """Estimate the position of a running transition at ``now``."""
    if transition.duration <= 0 or transition.started_at is None:
        fraction = 1.0
    else:
        elapsed = now - transition.started_at
        fraction = max(0.0, min(1.0, elapsed / transition.duration))

    start = transition.from_position
    return _clamp(start + (transition.target_position - start) * fraction)
