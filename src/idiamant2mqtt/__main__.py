"""idiamant2mqtt: Netatmo iDiamant (Bubendorff shutters) to MQTT bridge."""

import asyncio
import logging
import signal
import sys
from concurrent.futures import Future
from pathlib import Path

from aiohttp import ClientSession

from .config import AppConfig, load_config, load_options
from .engine import ShutterTransitionEngine
from .mqtt_handler import MqttHandler
from .netatmo_client import NetatmoClient, NetatmoError
from .reconciliation import StateReconciler
from .timer_registry import DeviceTimerRegistry
from .token_manager import TokenManager

logger = logging.getLogger("idiamant2mqtt")

OPTIONS_PATH = "/data/options.json"


def _setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _log_failure(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Unhandled error while processing command", exc_info=exc)


async def _refresh_token(tokens: TokenManager, mqtt_handler: MqttHandler) -> None:
    try:
        await tokens.refresh()
    except NetatmoError as e:
        logger.error("Manual token refresh failed: %s", e)
        return
    mqtt_handler.publish_token_expiry(tokens.expires_at)


async def _poll_loop(
    client: NetatmoClient,
    reconciler: StateReconciler,
    tokens: TokenManager,
    mqtt_handler: MqttHandler,
    interval: float,
) -> None:
    """Periodically pull reachability and last-seen data from Netatmo."""
    while True:
        try:
            results = await client.poll()
        except NetatmoError as e:
            logger.warning("Shutter status poll failed: %s", e)
        else:
            for result in results:
                reconciler.on_poll_result(result)
            mqtt_handler.publish_token_expiry(tokens.expires_at)

        await asyncio.sleep(interval)


async def _end_recovery(
    delay: float,
    config: AppConfig,
    mqtt_handler: MqttHandler,
    engine: ShutterTransitionEngine,
) -> None:
    await asyncio.sleep(delay)
    mqtt_handler.end_recovery()
    await engine.apply_startup_policy(config.shutters.startup_policy)


async def _run(config: AppConfig) -> None:
    loop = asyncio.get_running_loop()

    async with ClientSession() as session:
        tokens = TokenManager(session, config.netatmo)
        tokens.load()

        client = NetatmoClient(
            session,
            tokens,
            api_url=config.netatmo.api_url,
            timeout=config.netatmo.http_timeout,
        )
        topology = await client.get_home(config.shutters.name_strip_words)
        devices = topology.devices

        registry = DeviceTimerRegistry(loop)
        mqtt_handler = MqttHandler(config.mqtt, devices)
        mqtt_handler.set_bridge_id(topology.bridge_id)
        reconciler = StateReconciler(devices, registry, mqtt_handler)
        engine = ShutterTransitionEngine(
            devices,
            registry,
            client,
            mqtt_handler,
            reconciler,
            config.shutters.delays,
        )

        # paho runs its own network thread; hand everything to the event loop
        def _on_command(device_id: str, command: str) -> None:
            future = asyncio.run_coroutine_threadsafe(
                engine.handle_command(device_id, command), loop
            )
            future.add_done_callback(_log_failure)

        def _on_bridge_command(command: str) -> None:
            if command != "refreshToken":
                logger.warning("Unknown bridge command: %s", command)
                return
            future = asyncio.run_coroutine_threadsafe(
                _refresh_token(tokens, mqtt_handler), loop
            )
            future.add_done_callback(_log_failure)

        mqtt_handler.set_command_callback(_on_command)
        mqtt_handler.set_bridge_command_callback(_on_bridge_command)
        mqtt_handler.set_retained_state_callback(
            lambda device_id, payload: loop.call_soon_threadsafe(
                reconciler.on_persisted_state_recovered, device_id, payload
            )
        )

        mqtt_handler.start()

        logger.info("idiamant2mqtt started with %d shutter(s)", len(devices))

        # Set up shutdown
        stop_event = asyncio.Event()

        def _shutdown(sig: signal.Signals) -> None:
            logger.info("Received %s, shutting down...", sig.name)
            stop_event.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _shutdown, sig)

        tasks = [
            asyncio.create_task(
                _end_recovery(config.shutters.recovery_window, config, mqtt_handler, engine)
            ),
            asyncio.create_task(
                _poll_loop(client, reconciler, tokens, mqtt_handler, config.netatmo.sync_interval)
            ),
        ]

        await stop_event.wait()

        # No state publication once shutdown has begun
        engine.shutdown()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        mqtt_handler.stop()
        logger.info("Shutdown complete")


def main() -> None:
    if len(sys.argv) > 1:
        config_path = sys.argv[1]
    elif Path(OPTIONS_PATH).exists():
        config_path = OPTIONS_PATH
    else:
        config_path = "config.yaml"

    try:
        if config_path.endswith(".json"):
            config = load_options(config_path)
        else:
            config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        _setup_logging()
        logger.error("%s", e)
        logger.error("Copy config.example.yaml to config.yaml and edit it")
        sys.exit(1)

    _setup_logging(config.log_level)

    try:
        asyncio.run(_run(config))
    except NetatmoError as e:
        logger.error("Could not start: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
