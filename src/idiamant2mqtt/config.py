import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import yaml

from .transitions import TransitionDelays

logger = logging.getLogger(__name__)


class StartupPolicy(str, Enum):
    """What to do with a shutter whose state nothing could recover."""

    STOPPED = "stopped"  # publish stopped at 50%
    CLOSE = "close"      # send a close command


@dataclass
class NetatmoConfig:
    client_id: str = ""
    client_secret: str = ""
    api_url: str = "https://api.netatmo.com"
    token_file: str = "tokens.json"
    sync_interval: float = 30.0
    http_timeout: float = 10.0


@dataclass
class MqttConfig:
    host: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    client_id: str = "idiamant2mqtt"
    base_topic: str = "idiamant"
    keepalive: int = 60
    ha_discovery: bool = False
    discovery_prefix: str = "homeassistant"


@dataclass
class ShuttersConfig:
    open_delay: float = 42.0
    close_delay: float = 42.0
    close_to_half_open_delay: float = 3.0
    half_open_to_open_delay: float = 38.0
    half_open_to_close_delay: float = 7.0
    startup_policy: StartupPolicy = StartupPolicy.STOPPED
    name_strip_words: list[str] = field(default_factory=lambda: ["volet"])
    recovery_window: float = 5.0

    def __post_init__(self) -> None:
        try:
            self.startup_policy = StartupPolicy(self.startup_policy)
        except ValueError:
            raise ValueError(
                f"Unknown startup_policy {self.startup_policy!r}, "
                f"expected one of {[p.value for p in StartupPolicy]}"
            ) from None

    @property
    def delays(self) -> TransitionDelays:
        return TransitionDelays(
            open_delay=self.open_delay,
            close_delay=self.close_delay,
            close_to_half_open_delay=self.close_to_half_open_delay,
            half_open_to_open_delay=self.half_open_to_open_delay,
            half_open_to_close_delay=self.half_open_to_close_delay,
        )


@dataclass
class AppConfig:
    netatmo: NetatmoConfig = field(default_factory=NetatmoConfig)
    mqtt: MqttConfig = field(default_factory=MqttConfig)
    shutters: ShuttersConfig = field(default_factory=ShuttersConfig)
    log_level: str = "INFO"


def _validate(config: AppConfig) -> AppConfig:
    missing = [
        name
        for name in ("client_id", "client_secret")
        if not getattr(config.netatmo, name)
    ]
    if missing:
        raise ValueError(f"Missing Netatmo configuration: {', '.join(missing)}")
    return config


def load_options(path: str | Path) -> AppConfig:
    """Load config from the HA Supervisor's /data/options.json."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Options file not found: {path}")

    with open(path) as f:
        raw = json.load(f)

    netatmo_cfg = NetatmoConfig(
        client_id=raw.get("netatmo_client_id", ""),
        client_secret=raw.get("netatmo_client_secret", ""),
        token_file="/data/tokens.json",
        sync_interval=raw.get("sync_interval", 30.0),
    )
    try:
        mqtt_cfg = MqttConfig(
            host=raw["mqtt_host"],
            port=raw["mqtt_port"],
            username=raw.get("mqtt_username", ""),
            password=raw.get("mqtt_password", ""),
            base_topic=raw.get("mqtt_base_topic", "idiamant"),
            ha_discovery=raw.get("ha_discovery", True),
        )
    except KeyError as e:
        raise ValueError(f"Missing option {e} in {path}") from e
    shutters_cfg = ShuttersConfig(
        startup_policy=raw.get("startup_policy", StartupPolicy.STOPPED.value),
    )

    return _validate(
        AppConfig(
            netatmo=netatmo_cfg,
            mqtt=mqtt_cfg,
            shutters=shutters_cfg,
            log_level=raw.get("log_level", "INFO"),
        )
    )


def load_config(path: str | Path) -> AppConfig:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    try:
        netatmo_cfg = NetatmoConfig(**raw.get("netatmo", {}))
        mqtt_cfg = MqttConfig(**raw.get("mqtt", {}))
        shutters_cfg = ShuttersConfig(**raw.get("shutters", {}))
    except TypeError as e:
        # Unknown key in one of the sections
        raise ValueError(f"Invalid configuration in {path}: {e}") from e

    return _validate(
        AppConfig(
            netatmo=netatmo_cfg,
            mqtt=mqtt_cfg,
            shutters=shutters_cfg,
            log_level=raw.get("log_level", "INFO"),
        )
    )
