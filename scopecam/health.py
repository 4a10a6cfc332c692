"""Preflight probes used before touching the live stream.

``StreamHealthProbe`` asks the media server's local API whether the stream
path is publishing. ``check_disk_space`` reports free space under the capture
directory.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import aiohttp

PATHS_LIST_ENDPOINT = "/v3/paths/list"


class StreamHealthProbe:
    """Query the media server API for the readiness of one stream path."""

    def __init__(
        self,
        api_url: str,
        stream_path: str,
        *,
        timeout: float = 3.0,
        session_factory: Callable[..., aiohttp.ClientSession] = aiohttp.ClientSession,
        logger: logging.Logger | None = None,
    ) -> None:
        self._url = api_url.rstrip("/") + PATHS_LIST_ENDPOINT
        self._stream_path = stream_path
        self._timeout = aiohttp.ClientTimeout(total=max(0.1, float(timeout)))
        self._session_factory = session_factory
        self._logger = logger or logging.getLogger("health")

    @property
    def url(self) -> str:
        return self._url

    async def is_ready(self) -> bool:
        try:
            async with self._session_factory(timeout=self._timeout) as session:
                async with session.get(self._url) as resp:
                    if resp.status != 200:
                        self._logger.debug("paths list returned HTTP %s", resp.status)
                        return False
                    payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            self._logger.debug("stream health probe failed: %s", exc)
            return False
        return self._path_ready(payload)

    def _path_ready(self, payload: object) -> bool:
        if not isinstance(payload, dict):
            return False
        items = payload.get("items")
        if not isinstance(items, list):
            return False
        for item in items:
            if isinstance(item, dict) and item.get("name") == self._stream_path:
                return bool(item.get("ready"))
        return False

    async def wait_until_ready(self, retries: int = 3, delay: float = 1.0) -> bool:
        attempts = max(1, int(retries))
        for attempt in range(1, attempts + 1):
            if await self.is_ready():
                return True
            if attempt < attempts:
                await asyncio.sleep(delay)
        self._logger.warning(
            "stream %s not ready after %d attempt(s)", self._stream_path, attempts
        )
        return False


@dataclass(frozen=True)
class DiskSpace:
    available_mb: int
    sufficient: bool


def check_disk_space(path: Path, min_mb: int, *, logger: logging.Logger | None = None) -> DiskSpace:
    try:
        usage = shutil.disk_usage(path)
    except OSError as exc:
        (logger or logging.getLogger("health")).error("Disk space check failed: %s", exc)
        return DiskSpace(available_mb=0, sufficient=False)
    available = int(usage.free // (1024 * 1024))
    return DiskSpace(available_mb=available, sufficient=available >= min_mb)
