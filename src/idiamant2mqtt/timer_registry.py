"""Pending transition timers, at most one per shutter."""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable

from .transitions import Transition, estimate_progress

logger = logging.getLogger(__name__)


@dataclass
class _PendingTransition:
    transition: Transition
    handle: asyncio.TimerHandle


class DeviceTimerRegistry:
    """Owns the running transition timer of every shutter.

    Timers are scheduled on an asyncio event loop with ``call_later``.
    Cancelling a handle guarantees its callback never runs, so a
    superseded transition cannot publish its final state.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop
        self._pending: dict[str, _PendingTransition] = {}
        self._closed = False

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def arm(
        self,
        device_id: str,
        transition: Transition,
        on_fire: Callable[[Transition], None],
    ) -> Transition | None:
        """Schedule ``on_fire`` after the transition duration.

        Any timer already running for the device is cancelled first.
        Returns the armed transition (with ``started_at`` set), or None
        once the registry has been shut down.
        """
        if self._closed:
            logger.warning("Timer registry closed, not arming %s", device_id)
            return None

        self.clear(device_id)

        armed = dataclasses.replace(transition, started_at=self.now())
        handle = self.loop.call_later(armed.duration, on_fire, armed)
        self._pending[device_id] = _PendingTransition(transition=armed, handle=handle)

        logger.debug(
            "Armed %s for %s: %.1fs to %s",
            armed.transition_state.value,
            device_id,
            armed.duration,
            armed.to_state.value,
        )
        return armed

    def cancel_and_sample(self, device_id: str) -> int | None:
        """Cancel the running timer and return the estimated position.

        Returns None (and does nothing) when no timer is running.
        """
        pending = self._pending.pop(device_id, None)
        if pending is None:
            return None

        position = estimate_progress(pending.transition, self.now())
        pending.handle.cancel()
        logger.info(
            "Shutter %s: cancelled %s at ~%d%%",
            device_id,
            pending.transition.transition_state.value,
            position,
        )
        return position

    def clear(self, device_id: str) -> None:
        pending = self._pending.pop(device_id, None)
        if pending is not None:
            pending.handle.cancel()

    def is_active(self, device_id: str) -> bool:
        return device_id in self._pending

    def get(self, device_id: str) -> Transition | None:
        pending = self._pending.get(device_id)
        return pending.transition if pending else None

    def cancel_all(self) -> None:
        """Cancel every pending timer without firing it. Used on shutdown."""
        self._closed = True
        for device_id in list(self._pending):
            self.clear(device_id)
            logger.info("Timer for %s cancelled", device_id)
