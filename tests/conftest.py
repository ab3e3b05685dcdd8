"""Shared test helpers: a controllable event-loop clock and a recording publisher."""

import pytest

from idiamant2mqtt.devices import Device
from idiamant2mqtt.mqtt_handler import PublishError


class FakeHandle:
    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    """Just enough of an asyncio loop for the timer registry."""

    def __init__(self, start: float = 1000.0):
        self._now = start
        self.handles: list[FakeHandle] = []

    def time(self) -> float:
        return self._now

    def call_later(self, delay, callback, *args):
        handle = FakeHandle(self._now + delay, callback, args)
        self.handles.append(handle)
        return handle

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while True:
            due = [h for h in self.handles if not h.cancelled and h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self.handles.remove(handle)
            self._now = max(self._now, handle.when)
            handle.callback(*handle.args)
        self._now = target

    @property
    def pending(self) -> list[FakeHandle]:
        return [h for h in self.handles if not h.cancelled]


class RecordingPublisher:
    def __init__(self):
        self.published: list[tuple[str, str, int | None]] = []
        self.fail = False

    def publish_device(self, device: Device) -> None:
        if self.fail:
            raise PublishError("broker unavailable")
        self.published.append((device.id, device.logical_state.value, device.position))


@pytest.fixture
def loop():
    return FakeLoop()


@pytest.fixture
def publisher():
    return RecordingPublisher()
