"""Unit tests for the per-device timer registry."""

import pytest

from idiamant2mqtt.devices import Command, LogicalState
from idiamant2mqtt.timer_registry import DeviceTimerRegistry
from idiamant2mqtt.transitions import TransitionDelays, compute_transition


@pytest.fixture
def registry(loop):
    return DeviceTimerRegistry(loop)


def _opening(device_id="s1", position=0):
    return compute_transition(
        device_id, LogicalState.CLOSED, position, Command.OPEN, TransitionDelays(open_delay=40.0)
    )


class TestArm:
    def test_arm_stamps_start_time(self, registry, loop):
        armed = registry.arm("s1", _opening(), lambda t: None)
        assert armed.started_at == loop.time()
        assert registry.is_active("s1")
        assert registry.get("s1") == armed

    def test_callback_fires_after_duration(self, registry, loop):
        fired = []
        registry.arm("s1", _opening(), fired.append)

        loop.advance(39.0)
        assert fired == []

        loop.advance(1.0)
        assert len(fired) == 1
        assert fired[0].to_state == LogicalState.OPEN

    def test_rearm_cancels_previous(self, registry, loop):
        fired = []
        registry.arm("s1", _opening(), fired.append)
        loop.advance(10.0)
        registry.arm("s1", _opening(), fired.append)

        loop.advance(35.0)
        assert fired == []
        loop.advance(5.0)
        assert len(fired) == 1
        assert len(loop.pending) == 0

    def test_devices_are_independent(self, registry, loop):
        fired = []
        registry.arm("s1", _opening("s1"), fired.append)
        registry.arm("s2", _opening("s2"), fired.append)
        registry.cancel_and_sample("s1")

        loop.advance(40.0)
        assert [t.device_id for t in fired] == ["s2"]


class TestCancelAndSample:
    def test_sample_midway(self, registry, loop):
        registry.arm("s1", _opening(), lambda t: None)
        loop.advance(20.0)
        assert registry.cancel_and_sample("s1") == 50

    def test_idempotent(self, registry, loop):
        registry.arm("s1", _opening(), lambda t: None)
        loop.advance(10.0)
        assert registry.cancel_and_sample("s1") == 25
        assert registry.cancel_and_sample("s1") is None
        assert not registry.is_active("s1")

    def test_nothing_armed(self, registry):
        assert registry.cancel_and_sample("s1") is None

    def test_cancelled_timer_never_fires(self, registry, loop):
        fired = []
        registry.arm("s1", _opening(), fired.append)
        registry.cancel_and_sample("s1")
        loop.advance(100.0)
        assert fired == []

    def test_sample_lies_between_endpoints(self, registry, loop):
        transition = compute_transition(
            "s1", LogicalState.STOPPED, 70, Command.CLOSE, TransitionDelays(close_delay=10.0)
        )
        registry.arm("s1", transition, lambda t: None)
        loop.advance(3.3)
        sampled = registry.cancel_and_sample("s1")
        assert transition.target_position <= sampled <= transition.from_position


class TestShutdown:
    def test_cancel_all(self, registry, loop):
        fired = []
        registry.arm("s1", _opening("s1"), fired.append)
        registry.arm("s2", _opening("s2"), fired.append)

        registry.cancel_all()
        loop.advance(100.0)

        assert fired == []
        assert not registry.is_active("s1")
        assert not registry.is_active("s2")

    def test_arm_refused_after_shutdown(self, registry, loop):
        registry.cancel_all()
        assert registry.arm("s1", _opening(), lambda t: None) is None
        assert loop.pending == []
