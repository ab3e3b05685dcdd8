"""Netatmo OAuth token storage and refresh.

The initial authorization-code exchange happens outside this process;
it leaves a JSON token file behind which is read here and kept fresh
with the refresh-token grant.
"""

import asyncio
import json
import logging
import time
from pathlib import Path

from aiohttp import ClientError, ClientSession, ClientTimeout

from .config import NetatmoConfig
from .netatmo_client import (
    NetatmoAuthError,
    NetatmoCommError,
    NetatmoRateLimitError,
    NetatmoServerError,
)

logger = logging.getLogger(__name__)

REFRESH_SKEW_SECONDS = 60  # refresh one minute before expiry


class TokenManager:
    def __init__(self, session: ClientSession, config: NetatmoConfig):
        self._session = session
        self._config = config
        self._path = Path(config.token_file)
        self._tokens: dict = {}
        self._lock = asyncio.Lock()

    @property
    def expires_at(self) -> float:
        """Expiry as epoch seconds, 0 when unknown."""
        timestamp = self._tokens.get("timestamp")
        expires_in = self._tokens.get("expires_in")
        if timestamp is None or expires_in is None:
            return 0.0
        return timestamp / 1000.0 + float(expires_in)

    def load(self) -> None:
        if not self._path.exists():
            raise NetatmoAuthError(f"Token file not found: {self._path}")
        try:
            with open(self._path) as f:
                tokens = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise NetatmoAuthError(f"Unreadable token file {self._path}: {e}") from e

        if not tokens.get("refresh_token"):
            raise NetatmoAuthError(f"No refresh token in {self._path}")
        self._tokens = tokens
        logger.info("Loaded Netatmo tokens, expiring at %s", time.ctime(self.expires_at))

    def _save(self) -> None:
        try:
            with open(self._path, "w") as f:
                json.dump(self._tokens, f, indent=2)
        except OSError:
            logger.exception("Failed to save tokens to %s", self._path)

    async def current_token(self) -> str:
        """Return a valid access token, refreshing it when close to expiry."""
        async with self._lock:
            if (
                not self._tokens.get("access_token")
                or time.time() >= self.expires_at - REFRESH_SKEW_SECONDS
            ):
                await self._refresh()
            return self._tokens["access_token"]

    async def refresh(self) -> None:
        async with self._lock:
            await self._refresh()

    async def _refresh(self) -> None:
        url = f"{self._config.api_url}/oauth2/token"
        form = {
            "grant_type": "refresh_token",
            "refresh_token": self._tokens.get("refresh_token", ""),
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }

        try:
            async with self._session.post(
                url, data=form, timeout=ClientTimeout(total=self._config.http_timeout)
            ) as resp:
                if resp.status in (400, 401, 403):
                    raise NetatmoAuthError(f"Token refresh rejected ({resp.status})")
                if resp.status == 429:
                    raise NetatmoRateLimitError("Rate limited during token refresh")
                if 500 <= resp.status < 600:
                    raise NetatmoServerError(f"Server error during token refresh ({resp.status})")
                if resp.status != 200:
                    raise NetatmoCommError(f"Unexpected token refresh status {resp.status}")
                try:
                    data = await resp.json()
                except (ClientError, json.JSONDecodeError) as e:
                    raise NetatmoCommError("Invalid JSON from token refresh") from e
        except asyncio.TimeoutError as e:
            raise NetatmoCommError("Token refresh timeout") from e
        except ClientError as e:
            raise NetatmoCommError(f"Token refresh connection error: {e}") from e

        if not isinstance(data, dict) or not data.get("access_token"):
            raise NetatmoAuthError("Token refresh response has no access token")

        self._tokens.update(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", self._tokens.get("refresh_token")),
            expires_in=data.get("expires_in", 10800),
            timestamp=int(time.time() * 1000),
        )
        self._save()
        logger.info("Netatmo token refreshed, expiring at %s", time.ctime(self.expires_at))
