"""Tests for the shutter transition engine."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from idiamant2mqtt.config import StartupPolicy
from idiamant2mqtt.devices import Command, Device, LogicalState
from idiamant2mqtt.engine import ShutterTransitionEngine
from idiamant2mqtt.netatmo_client import NetatmoCommError
from idiamant2mqtt.reconciliation import StateReconciler
from idiamant2mqtt.timer_registry import DeviceTimerRegistry
from idiamant2mqtt.transitions import TransitionDelays


@pytest.fixture
def devices():
    return {
        "s1": Device(id="s1", name="salon", logical_state=LogicalState.CLOSED, position=0),
        "s2": Device(id="s2", name="cuisine"),
    }


@pytest.fixture
def vendor():
    client = AsyncMock()
    client.send_command.return_value = None
    return client


@pytest.fixture
def registry(loop):
    return DeviceTimerRegistry(loop)


@pytest.fixture
def engine(devices, registry, vendor, publisher):
    reconciler = StateReconciler(devices, registry, publisher)
    return ShutterTransitionEngine(
        devices, registry, vendor, publisher, reconciler, TransitionDelays()
    )


def run(coro):
    return asyncio.run(coro)


class TestOpenFromClosed:
    def test_intermediate_then_final(self, engine, loop, publisher, devices):
        run(engine.handle_command("s1", "open"))
        assert publisher.published == [("s1", "opening", 0)]
        assert devices["s1"].logical_state == LogicalState.OPENING

        loop.advance(41.5)
        assert len(publisher.published) == 1

        loop.advance(0.5)
        assert publisher.published[-1] == ("s1", "open", 100)
        assert devices["s1"].logical_state == LogicalState.OPEN
        assert devices["s1"].position == 100

    def test_vendor_receives_parsed_command(self, engine, vendor):
        run(engine.handle_command("s1", "OPEN"))
        vendor.send_command.assert_awaited_once_with("s1", Command.OPEN)

    def test_timer_entry_cleared_on_completion(self, engine, loop, registry):
        run(engine.handle_command("s1", "open"))
        assert registry.is_active("s1")
        loop.advance(42.0)
        assert not registry.is_active("s1")


class TestInterruption:
    def test_close_while_opening(self, engine, loop, publisher, devices):
        run(engine.handle_command("s1", "open"))
        loop.advance(21.0)

        run(engine.handle_command("s1", "close"))
        assert publisher.published[-1] == ("s1", "closing", 50)

        # Half the closing travel remains
        loop.advance(20.5)
        assert publisher.published[-1] == ("s1", "closing", 50)
        loop.advance(0.5)
        assert publisher.published[-1] == ("s1", "closed", 0)
        assert devices["s1"].logical_state == LogicalState.CLOSED

    def test_superseded_transition_never_completes(self, engine, loop, publisher):
        run(engine.handle_command("s1", "open"))
        loop.advance(10.0)
        run(engine.handle_command("s1", "close"))
        loop.advance(200.0)

        states = [state for _, state, _ in publisher.published]
        assert "open" not in states

    def test_stop_freezes_estimate(self, engine, loop, publisher, registry, devices):
        run(engine.handle_command("s1", "open"))
        loop.advance(10.5)

        run(engine.handle_command("s1", "stop"))
        assert publisher.published[-1] == ("s1", "stopped", 25)
        assert not registry.is_active("s1")
        assert loop.pending == []

        loop.advance(100.0)
        assert publisher.published[-1] == ("s1", "stopped", 25)
        assert devices["s1"].logical_state == LogicalState.STOPPED

    def test_overlapping_commands_run_in_arrival_order(self, engine, vendor, registry, publisher):
        async def scenario():
            release_open = asyncio.Event()

            async def send_command(device_id, command):
                if command == Command.OPEN:
                    await release_open.wait()

            vendor.send_command.side_effect = send_command
            first = asyncio.create_task(engine.handle_command("s1", "open"))
            await asyncio.sleep(0)
            second = asyncio.create_task(engine.handle_command("s1", "close"))
            await asyncio.sleep(0)
            release_open.set()
            await asyncio.gather(first, second)

        run(scenario())

        assert registry.get("s1").command == Command.CLOSE
        assert publisher.published == [("s1", "opening", 0), ("s1", "closing", 0)]

    def test_queued_command_starts_from_sampled_position(
        self, engine, vendor, loop, registry, publisher, devices
    ):
        run(engine.handle_command("s1", "open"))
        loop.advance(21.0)

        async def scenario():
            release_stop = asyncio.Event()

            async def send_command(device_id, command):
                if command == Command.STOP:
                    await release_stop.wait()

            vendor.send_command.side_effect = send_command
            stop = asyncio.create_task(engine.handle_command("s1", "stop"))
            await asyncio.sleep(0)
            close = asyncio.create_task(engine.handle_command("s1", "close"))
            await asyncio.sleep(0)
            release_stop.set()
            await asyncio.gather(stop, close)

        run(scenario())

        assert publisher.published[-2:] == [("s1", "stopped", 50), ("s1", "closing", 50)]
        armed = registry.get("s1")
        assert armed.command == Command.CLOSE
        assert armed.from_position == 50
        assert armed.duration == pytest.approx(21.0)

        loop.advance(21.0)
        assert publisher.published[-1] == ("s1", "closed", 0)
        assert devices["s1"].logical_state == LogicalState.CLOSED

    def test_other_shutters_do_not_wait(self, engine, vendor, publisher):
        async def scenario():
            release_s1 = asyncio.Event()

            async def send_command(device_id, command):
                if device_id == "s1":
                    await release_s1.wait()

            vendor.send_command.side_effect = send_command
            slow = asyncio.create_task(engine.handle_command("s1", "open"))
            await asyncio.sleep(0)
            await engine.handle_command("s2", "open")
            assert publisher.published == [("s2", "opening", 0)]
            release_s1.set()
            await slow

        run(scenario())
        assert publisher.published[-1] == ("s1", "opening", 0)

    def test_stop_from_rest(self, engine, publisher, registry):
        run(engine.handle_command("s1", "stop"))
        assert publisher.published == [("s1", "stopped", 0)]
        assert not registry.is_active("s1")


class TestRejectedCommands:
    def test_unknown_device(self, engine, vendor, publisher):
        run(engine.handle_command("nope", "open"))
        assert publisher.published == []
        vendor.send_command.assert_not_awaited()

    def test_unknown_command(self, engine, vendor, publisher, registry):
        run(engine.handle_command("s1", "tilt"))
        assert publisher.published == []
        assert not registry.is_active("s1")
        vendor.send_command.assert_not_awaited()

    def test_dispatch_failure_aborts(self, engine, vendor, publisher, registry, devices):
        vendor.send_command.side_effect = NetatmoCommError("timeout")
        run(engine.handle_command("s1", "open"))

        assert publisher.published == []
        assert not registry.is_active("s1")
        assert devices["s1"].logical_state == LogicalState.CLOSED
        assert devices["s1"].position == 0

    def test_publish_failure_keeps_state_machine_going(self, engine, loop, publisher, devices):
        publisher.fail = True
        run(engine.handle_command("s1", "open"))
        assert devices["s1"].logical_state == LogicalState.OPENING

        publisher.fail = False
        loop.advance(42.0)
        assert publisher.published == [("s1", "open", 100)]


class TestUnknownPosition:
    def test_missing_position_starts_from_zero(self, engine, publisher):
        run(engine.handle_command("s2", "open"))
        assert publisher.published == [("s2", "opening", 0)]


class TestStartupPolicy:
    def test_default_stopped_at_50(self, engine, publisher, devices, vendor):
        run(engine.apply_startup_policy(StartupPolicy.STOPPED))
        assert publisher.published == [("s2", "stopped", 50)]
        assert devices["s2"].logical_state == LogicalState.STOPPED
        vendor.send_command.assert_not_awaited()

    def test_close_policy_sends_close(self, engine, publisher, vendor, loop, devices):
        run(engine.apply_startup_policy(StartupPolicy.CLOSE))
        vendor.send_command.assert_awaited_once_with("s2", Command.CLOSE)
        assert publisher.published == [("s2", "closing", 50)]

        loop.advance(21.0)
        assert devices["s2"].logical_state == LogicalState.CLOSED


class TestShutdown:
    def test_no_publication_after_shutdown(self, engine, loop, publisher):
        run(engine.handle_command("s1", "open"))
        engine.shutdown()
        loop.advance(100.0)
        assert publisher.published == [("s1", "opening", 0)]
