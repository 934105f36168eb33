"""Key-value push subscription store."""

import asyncio
import base64
import json
import os
from pathlib import Path
from typing import Protocol

import structlog
from pydantic import ValidationError

from holopush.notifications.models import Subscription

logger = structlog.get_logger()


def storage_key(endpoint: str) -> str:
    """Stable record key: base64 of the endpoint, ``=`` stripped."""
    return base64.b64encode(endpoint.encode()).decode().replace("=", "")


class KeyValueBackend(Protocol):
    """Minimal async string key-value storage.

    Backends may also offer ``async items()`` returning every
    (key, value) pair in one call; SubscriptionStore uses it when present.
    """

    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self) -> list[str]: ...


class JsonFileBackend:
    """Key-value backend stored as a single JSON object file.

    Every call reads the file again, so several processes (or a
    restarted one) always see current state. Writes within this
    process are serialized by a lock; file I/O runs in a thread.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError):
            logger.warning("store_file_unreadable", path=str(self._path))
            return {}
        if not isinstance(data, dict):
            logger.warning("store_file_unreadable", path=str(self._path))
            return {}
        return data

    def _write(self, data: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.replace(tmp, self._path)

    async def get(self, key: str) -> str | None:
        data = await asyncio.to_thread(self._read)
        return data.get(key)

    async def keys(self) -> list[str]:
        data = await asyncio.to_thread(self._read)
        return list(data)

    async def items(self) -> list[tuple[str, str]]:
        """All (key, value) pairs from a single read of the file."""
        data = await asyncio.to_thread(self._read)
        return list(data.items())

    async def put(self, key: str, value: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            data[key] = value
            await asyncio.to_thread(self._write, data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            if data.pop(key, None) is None:
                return
            await asyncio.to_thread(self._write, data)


class SubscriptionStore:
    """Push subscriptions keyed by ``storage_key(endpoint)``.

    The backend is the single source of truth; nothing is cached,
    so each broadcast lists the current set of subscribers.
    """

    def __init__(self, backend: KeyValueBackend) -> None:
        self._backend = backend

    async def put(self, subscription: Subscription) -> str:
        """Upsert a subscription. Returns its storage key."""
        key = storage_key(subscription.endpoint)
        await self._backend.put(key, subscription.model_dump_json())
        return key

    async def get(self, key: str) -> Subscription | None:
        raw = await self._backend.get(key)
        if raw is None:
            return None
        return Subscription.model_validate_json(raw)

    async def _raw_items(self) -> list[tuple[str, str]]:
        # Backends with a bulk read answer in one call
        items = getattr(self._backend, "items", None)
        if items is not None:
            return await items()
        pairs: list[tuple[str, str]] = []
        for key in await self._backend.keys():
            raw = await self._backend.get(key)
            # Deleted between listing and reading
            if raw is not None:
                pairs.append((key, raw))
        return pairs

    async def list_all(self) -> list[tuple[str, Subscription]]:
        """All current (key, subscription) pairs, in no particular order."""
        entries: list[tuple[str, Subscription]] = []
        for key, raw in await self._raw_items():
            try:
                entries.append((key, Subscription.model_validate_json(raw)))
            except ValidationError:
                logger.warning("store_entry_invalid", key=key)
        return entries

    async def delete(self, key: str) -> None:
        """Remove a subscription; missing keys are ignored."""
        await self._backend.delete(key)

    async def remove_endpoint(self, endpoint: str) -> bool:
        """Remove the subscription for an endpoint (explicit unsubscribe).

        Returns True if a record existed.
        """
        key = storage_key(endpoint)
        existed = await self._backend.get(key) is not None
        await self._backend.delete(key)
        return existed
