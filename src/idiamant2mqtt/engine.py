"""Shutter transition engine.

Turns a discrete command into a simulated, time-bounded move: the
intermediate state (``opening``/``closing``) is published as soon as the
bridge accepted the command, and the final state once the estimated
travel time has elapsed. A new command for a shutter that is still
moving cancels the running transition and starts from the position
estimated at that instant.
"""

import asyncio
import logging
from typing import Protocol

from .config import StartupPolicy
from .devices import Command, Device, LogicalState
from .mqtt_handler import PublishError
from .netatmo_client import NetatmoError
from .reconciliation import StatePublisher, StateReconciler
from .timer_registry import DeviceTimerRegistry
from .transitions import (
    UNKNOWN_STATE_POSITION,
    Transition,
    TransitionDelays,
    compute_transition,
)

logger = logging.getLogger(__name__)


class VendorCommandClient(Protocol):
    async def send_command(self, device_id: str, command: Command) -> None: ...


class ShutterTransitionEngine:
    def __init__(
        self,
        devices: dict[str, Device],
        registry: DeviceTimerRegistry,
        vendor: VendorCommandClient,
        publisher: StatePublisher,
        reconciler: StateReconciler,
        delays: TransitionDelays | None = None,
    ):
        self._devices = devices
        self._registry = registry
        self._vendor = vendor
        self._publisher = publisher
        self._reconciler = reconciler
        self._delays = delays or TransitionDelays()
        # One lock per shutter: commands for a device run in arrival order
        self._locks: dict[str, asyncio.Lock] = {}

    async def handle_command(self, device_id: str, command: str | Command) -> None:
        device = self._devices.get(device_id)
        if device is None:
            logger.warning("Command %r for unknown shutter %s ignored", command, device_id)
            return

        parsed = Command.parse(command)
        if parsed is None:
            logger.warning("Unknown command %r for shutter %s ignored", command, device_id)
            return

        # Held across the vendor call so a later command for the same shutter
        # samples the transition this one arms. Other shutters never wait.
        lock = self._locks.setdefault(device_id, asyncio.Lock())
        async with lock:
            await self._run_command(device, parsed)

    async def _run_command(self, device: Device, parsed: Command) -> None:
        device_id = device.id
        sampled = self._registry.cancel_and_sample(device_id)
        if sampled is not None:
            current_position = sampled
        elif device.position is not None:
            current_position = device.position
        else:
            current_position = 0

        try:
            await self._vendor.send_command(device_id, parsed)
        except NetatmoError as e:
            logger.error("Command %s for %s failed: %s", parsed.value, device_id, e)
            return

        if parsed == Command.STOP:
            self._publish(device, LogicalState.STOPPED, current_position)
            return

        transition = compute_transition(
            device_id, device.logical_state, current_position, parsed, self._delays
        )
        self._publish(device, transition.transition_state, current_position)

        armed = self._registry.arm(device_id, transition, self._on_transition_complete)
        if armed is not None:
            logger.info(
                "Shutter %s: %s from %d%%, %s in %.1fs",
                device_id,
                transition.transition_state.value,
                current_position,
                transition.to_state.value,
                transition.duration,
            )

    def _on_transition_complete(self, transition: Transition) -> None:
        # Only reached for the transition currently armed, cancelled ones never fire
        self._registry.clear(transition.device_id)
        device = self._devices.get(transition.device_id)
        if device is None:
            return
        self._publish(device, transition.to_state, transition.target_position)
        logger.info(
            "Shutter %s: %s at %d%%",
            transition.device_id,
            transition.to_state.value,
            transition.target_position,
        )

    def _publish(self, device: Device, state: LogicalState, position: int) -> None:
        device.logical_state = state
        device.position = position
        self._reconciler.remember(device)
        try:
            self._publisher.publish_device(device)
        except PublishError as e:
            logger.error("Failed to publish state for %s: %s", device.id, e)

    async def apply_startup_policy(self, policy: StartupPolicy = StartupPolicy.STOPPED) -> None:
        """Give every shutter still in an unknown state a definite one."""
        for device in list(self._devices.values()):
            if device.logical_state != LogicalState.UNKNOWN:
                continue
            if self._registry.is_active(device.id):
                continue
            if policy == StartupPolicy.CLOSE:
                logger.info("Shutter %s: state unknown, closing", device.id)
                if device.position is None:
                    device.position = UNKNOWN_STATE_POSITION
                await self.handle_command(device.id, Command.CLOSE)
            else:
                logger.info(
                    "Shutter %s: state unknown, assuming stopped at %d%%",
                    device.id,
                    UNKNOWN_STATE_POSITION,
                )
                self._publish(device, LogicalState.STOPPED, UNKNOWN_STATE_POSITION)

    def shutdown(self) -> None:
        self._registry.cancel_all()
