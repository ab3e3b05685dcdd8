"""MQTT handler with Home Assistant auto-discovery for iDiamant shutters."""

import json
import logging
from typing import Callable

import paho.mqtt.client as mqtt

from .config import MqttConfig
from .devices import Device, state_label

logger = logging.getLogger(__name__)

BRIDGE_ID = "bridge"
RECOVERY_ACTIONS = ("state", "attributes")


class PublishError(Exception):
    """Raised when a message could not be handed to the broker."""


class MqttHandler:
    def __init__(self, config: MqttConfig, devices: dict[str, Device]):
        self._config = config
        self._devices = devices
        self._bridge_id: str | None = None
        self._client: mqtt.Client | None = None
        self._recovering = True
        self._on_command: Callable[[str, str], None] | None = None
        self._on_bridge_command: Callable[[str], None] | None = None
        self._on_retained_state: Callable[[str, bytes], None] | None = None

    def set_command_callback(self, callback: Callable[[str, str], None]) -> None:
        """Set callback for shutter commands. Args: (device_id, command)."""
        self._on_command = callback

    def set_bridge_command_callback(self, callback: Callable[[str], None]) -> None:
        """Set callback for bridge commands such as refreshToken. Args: (command,)."""
        self._on_bridge_command = callback

    def set_retained_state_callback(self, callback: Callable[[str, bytes], None]) -> None:
        """Set callback for retained state replayed at startup. Args: (device_id, payload)."""
        self._on_retained_state = callback

    def set_bridge_id(self, bridge_id: str | None) -> None:
        self._bridge_id = bridge_id

    @property
    def _bridge_topic(self) -> str:
        return f"{self._config.base_topic}/{BRIDGE_ID}"

    def start(self) -> None:
        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self._config.client_id,
        )

        if self._config.username:
            self._client.username_pw_set(self._config.username, self._config.password)

        # Last Will and Testament for availability
        self._client.will_set(f"{self._bridge_topic}/lwt", payload="offline", qos=1, retain=True)
        self._client.reconnect_delay_set(min_delay=1, max_delay=30)

        self._client.on_connect = self._on_connect
        self._client.on_message = self._on_message

        logger.info("Connecting to MQTT broker at %s:%d", self._config.host, self._config.port)
        self._client.connect(self._config.host, self._config.port, keepalive=self._config.keepalive)
        self._client.loop_start()

    def stop(self) -> None:
        if not self._client:
            return

        self._client.publish(f"{self._bridge_topic}/lwt", payload="offline", qos=1, retain=True)
        self._client.loop_stop()
        self._client.disconnect()
        self._client = None
        logger.info("MQTT disconnected")

    def end_recovery(self) -> None:
        """Stop listening to retained state so our own publications are not replayed."""
        self._recovering = False
        if not self._client:
            return
        base = self._config.base_topic
        for action in RECOVERY_ACTIONS:
            self._client.unsubscribe(f"{base}/+/{action}")
        logger.info("Retained state recovery finished")

    def _publish(self, topic: str, payload: str, retain: bool = True) -> None:
        if not self._client:
            raise PublishError(f"MQTT client not started, cannot publish to {topic}")
        info = self._client.publish(topic, payload=payload, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}")

    def publish_device(self, device: Device) -> None:
        """Publish the full state of a shutter. Raises PublishError."""
        base = f"{self._config.base_topic}/{device.id}"
        position = device.position if device.position is not None else ""
        attributes = {
            "id": device.id,
            "name": device.name,
            "state": device.logical_state.value,
            "position": device.position,
            "reachable": device.reachable,
            "last_seen": device.last_seen,
            "is_open": device.is_open,
            "is_close": device.is_closed,
        }

        self._publish(f"{base}/state", device.logical_state.value)
        self._publish(f"{base}/state_fr", state_label(device.logical_state))
        self._publish(f"{base}/cover_state", device.cover_state)
        self._publish(f"{base}/current_position", str(position))
        self._publish(f"{base}/is_open", json.dumps(device.is_open))
        self._publish(f"{base}/is_close", json.dumps(device.is_closed))
        self._publish(f"{base}/attributes", json.dumps(attributes))
        if device.reachable is not None:
            self._publish(f"{base}/lwt", "online" if device.reachable else "offline")
        if device.last_seen is not None:
            self._publish(f"{base}/last_seen", str(device.last_seen))

        logger.debug(
            "Published %s: %s (%s%%)", device.id, device.logical_state.value, position
        )

    def publish_token_expiry(self, expires_at: float) -> None:
        try:
            self._publish(f"{self._bridge_topic}/expire_at_ts", str(int(expires_at * 1000)))
        except PublishError as e:
            logger.error("Failed to publish token expiry: %s", e)

    def _on_connect(self, client: mqtt.Client, userdata, flags, rc, properties=None) -> None:
        if rc != 0:
            logger.error("MQTT connection failed with code %s", rc)
            return

        logger.info("Connected to MQTT broker")
        base = self._config.base_topic

        client.subscribe(f"{base}/+/cmd")
        if self._recovering:
            for action in RECOVERY_ACTIONS:
                client.subscribe(f"{base}/+/{action}")

        if self._config.ha_discovery:
            self._publish_bridge_discovery()
            for device in self._devices.values():
                self._publish_discovery(device)

        client.publish(f"{self._bridge_topic}/lwt", payload="online", qos=1, retain=True)

    def _on_message(self, client: mqtt.Client, userdata, msg: mqtt.MQTTMessage) -> None:
        topic = msg.topic
        base = self._config.base_topic

        logger.debug("MQTT message: %s = %r", topic, msg.payload)

        # Parse topic: {base}/{device_id}/{action}
        if not topic.startswith(f"{base}/"):
            return
        parts = topic[len(base) + 1:].split("/")
        if len(parts) != 2:
            return
        device_id, action = parts

        if action == "cmd":
            command = msg.payload.decode("utf-8", errors="replace").strip()
            if device_id == BRIDGE_ID:
                logger.info("Bridge command received: %s", command)
                if self._on_bridge_command:
                    self._on_bridge_command(command)
            elif self._on_command:
                self._on_command(device_id, command)

        elif action in RECOVERY_ACTIONS and self._recovering:
            if device_id == BRIDGE_ID or not msg.retain:
                return
            if self._on_retained_state:
                self._on_retained_state(device_id, msg.payload)

    def _device_info(self, device: Device) -> dict:
        info = {
            "identifiers": [f"idiamant_shutter_{device.id}"],
            "name": f"Volet {device.name.capitalize()}",
            "manufacturer": "Bubendorff",
            "model": "iDiamant shutter",
            "serial_number": device.id,
        }
        if self._bridge_id:
            info["via_device"] = f"idiamant_{self._bridge_id.replace(':', '')}"
        return info

    def _publish_bridge_discovery(self) -> None:
        if not self._bridge_id:
            return
        identifier = f"idiamant_{self._bridge_id.replace(':', '')}"
        config_payload = {
            "name": "iDiamant Token Expiry",
            "unique_id": f"{identifier}_token_expire_at",
            "state_topic": f"{self._bridge_topic}/expire_at_ts",
            "value_template": "{{ as_datetime(value|int / 1000) }}",
            "device_class": "timestamp",
            "availability_topic": f"{self._bridge_topic}/lwt",
            "device": {
                "identifiers": [identifier],
                "name": "iDiamant Gateway",
                "manufacturer": "Netatmo",
                "connections": [["mac", self._bridge_id]],
            },
        }
        self._client.publish(
            f"{self._config.discovery_prefix}/sensor/{identifier}_token/config",
            payload=json.dumps(config_payload),
            retain=True,
        )

    def _publish_discovery(self, device: Device) -> None:
        """Publish Home Assistant MQTT discovery config for a cover."""
        base = f"{self._config.base_topic}/{device.id}"

        discovery_topic = f"{self._config.discovery_prefix}/cover/idiamant_{device.id}/config"

        config_payload = {
            "name": None,
            "unique_id": f"idiamant_{device.id}_cover",
            "command_topic": f"{base}/cmd",
            "state_topic": f"{base}/cover_state",
            "position_topic": f"{base}/current_position",
            "availability_topic": f"{base}/lwt",
            "json_attributes_topic": f"{base}/attributes",
            "payload_open": "open",
            "payload_close": "close",
            "payload_stop": "stop",
            "state_open": "open",
            "state_closed": "closed",
            "state_opening": "opening",
            "state_closing": "closing",
            "state_stopped": "stopped",
            "position_open": 100,
            "position_closed": 0,
            "optimistic": False,
            "device_class": "shutter",
            "device": self._device_info(device),
        }

        self._client.publish(
            discovery_topic,
            payload=json.dumps(config_payload),
            retain=True,
        )
        logger.info("Published HA discovery for %s (%s)", device.name, device.id)
