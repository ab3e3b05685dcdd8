# All Netatmo API I/O and exception mapping.

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout

from .devices import Command, Device, normalize_name
from .reconciliation import PollResult

logger = logging.getLogger(__name__)

SHUTTER_MODULE_TYPE = "NBS"
BRIDGE_MODULE_TYPE = "NBG"

# target_position values understood by /api/setstate for Bubendorff modules
COMMAND_TARGETS = {
    Command.OPEN: 100,
    Command.CLOSE: 0,
    Command.HALF_OPEN: -2,
    Command.STOP: -1,
}


# ----- Exceptions -----
class NetatmoError(Exception):
    pass


class NetatmoAuthError(NetatmoError):
    pass


class NetatmoRateLimitError(NetatmoError):
    def __init__(self, *args, retry_after: float | None = None):
        super().__init__(*args)
        self.retry_after = retry_after


class NetatmoServerError(NetatmoError):
    pass  # 5xx


class NetatmoCommError(NetatmoError):
    pass  # timeouts, connection issues, unexpected responses


class CredentialProvider(Protocol):
    async def current_token(self) -> str: ...


@dataclass
class HomeTopology:
    home_id: str
    bridge_id: str | None
    devices: dict[str, Device] = field(default_factory=dict)


def devices_from_homesdata(
    body: dict[str, Any], strip_words: list[str] | tuple[str, ...] = ("volet",)
) -> HomeTopology:
    """Build the shutter set from a /api/homesdata body. Only the first home is used."""
    homes = body.get("homes") or []
    if not homes:
        raise NetatmoCommError("No Netatmo home found for this account")

    home = homes[0]
    modules = home.get("modules") or []
    bridge_id = next(
        (m.get("id") for m in modules if m.get("type") == BRIDGE_MODULE_TYPE),
        modules[0].get("id") if modules else None,
    )

    devices: dict[str, Device] = {}
    for module in modules:
        if module.get("type") != SHUTTER_MODULE_TYPE or not module.get("id"):
            continue
        devices[module["id"]] = Device(
            id=module["id"],
            name=normalize_name(module.get("name") or module["id"], strip_words),
            room_id=module.get("room_id"),
        )

    return HomeTopology(home_id=home["id"], bridge_id=bridge_id, devices=devices)


def poll_results_from_homestatus(body: dict[str, Any]) -> list[PollResult]:
    modules = (body.get("home") or {}).get("modules") or []
    results = []
    for module in modules:
        if module.get("type") != SHUTTER_MODULE_TYPE or not module.get("id"):
            continue
        position = module.get("current_position")
        results.append(
            PollResult(
                device_id=module["id"],
                reachable=module.get("reachable"),
                last_seen=module.get("last_seen"),
                current_position=position if isinstance(position, int) and not isinstance(position, bool) else None,
            )
        )
    return results


class NetatmoClient:
    def __init__(
        self,
        session: ClientSession,
        credentials: CredentialProvider,
        api_url: str = "https://api.netatmo.com",
        timeout: float = 10.0,
    ) -> None:
        self._session = session
        self._credentials = credentials
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self.home_id: str | None = None
        self.bridge_id: str | None = None
        self.bridge_reachable: bool | None = None

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        url = f"{self._api_url}{path}"
        token = await self._credentials.current_token()
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}

        logger.debug("Netatmo %s %s", method, path)
        try:
            async with self._session.request(
                method,
                url,
                headers=headers,
                timeout=ClientTimeout(total=self._timeout),
                **kwargs,
            ) as resp:
                text = await resp.text()

                if resp.status in (401, 403):
                    raise NetatmoAuthError(f"Access token rejected ({resp.status})")
                if resp.status == 429:
                    ra = resp.headers.get("Retry-After")
                    retry_after = None
                    if ra:
                        try:
                            retry_after = float(ra)
                        except ValueError:
                            retry_after = None
                    raise NetatmoRateLimitError("Rate limited", retry_after=retry_after)
                if 500 <= resp.status < 600:
                    raise NetatmoServerError(f"Server error on {path} ({resp.status})")
                if resp.status != 200:
                    raise NetatmoCommError(f"Unexpected status {resp.status} on {path}: {text[:200]}")

                try:
                    data = json.loads(text)
                except json.JSONDecodeError as e:
                    raise NetatmoCommError(f"Invalid JSON from {path}: {text[:200]}") from e

        except asyncio.TimeoutError as e:
            raise NetatmoCommError(f"Timeout on {path}") from e
        except ClientError as e:
            raise NetatmoCommError(f"Connection error on {path}: {e}") from e

        if not isinstance(data, dict):
            raise NetatmoCommError(f"Unexpected payload from {path}")
        return data

    async def get_home(self, strip_words: list[str] | tuple[str, ...] = ("volet",)) -> HomeTopology:
        data = await self._request("GET", "/api/homesdata")
        topology = devices_from_homesdata(data.get("body") or {}, strip_words)
        self.home_id = topology.home_id
        self.bridge_id = topology.bridge_id
        logger.info(
            "Home %s: %d shutter(s) behind bridge %s",
            topology.home_id,
            len(topology.devices),
            topology.bridge_id,
        )
        return topology

    async def poll(self, home_id: str | None = None) -> list[PollResult]:
        home_id = home_id or self.home_id
        if not home_id:
            raise NetatmoCommError("Home not discovered yet")
        data = await self._request("GET", "/api/homestatus", params={"home_id": home_id})
        body = data.get("body") or {}

        for module in (body.get("home") or {}).get("modules") or []:
            if module.get("type") == BRIDGE_MODULE_TYPE and module.get("id") == self.bridge_id:
                self.bridge_reachable = module.get("reachable")

        results = poll_results_from_homestatus(body)
        logger.debug("Polled %d shutter status(es)", len(results))
        return results

    async def send_command(self, device_id: str, command: Command | str) -> None:
        """Ask the bridge to move a shutter. Raises NetatmoError on failure."""
        parsed = Command.parse(command)
        if parsed is None:
            raise NetatmoCommError(f"Unsupported command {command!r}")
        if not self.home_id:
            raise NetatmoCommError("Home not discovered yet")

        module = {"id": device_id, "target_position": COMMAND_TARGETS[parsed]}
        if self.bridge_id:
            module["bridge"] = self.bridge_id
        payload = {"home": {"id": self.home_id, "modules": [module]}}

        data = await self._request("POST", "/api/setstate", json=payload)
        if data.get("status") not in (None, "ok"):
            raise NetatmoCommError(f"setstate refused for {device_id}: {data}")
        logger.info("Netatmo command sent for %s: %s", device_id, parsed.value)
