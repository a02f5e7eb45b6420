import asyncio
import json
from pathlib import Path
from typing import Any, Protocol

import aiofiles
import aiofiles.os
from loguru import logger

from tickerbar.errors import PersistenceError


class KeyValueStore(Protocol):
    """The narrow persistence interface the engine reads and writes through.

    Values are JSON-compatible objects. There is no transactional guarantee
    beyond last-write-wins per key.
    """

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryStore:
    """A volatile in-process store, used for tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    async def get(self, key: str) -> Any | None:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def dump(self) -> dict[str, Any]:
        """Returns a shallow copy of the stored data."""
        return dict(self._data)


class JsonFileStore:
    """Stores all keys in a single JSON document on disk.

    The document is read once, lazily, and kept in memory. Every mutation
    rewrites the whole file through `aiofiles` so the event loop is never
    blocked by disk I/O. Writes go to a temporary file that replaces the
    target, so a crash mid-write never leaves a truncated document behind.
    """

    def __init__(self, path: Path) -> None:
        """Initializes the store.

        Args:
            path: The JSON file backing the store. Parent directories are
                created on the first write.
        """
        self.path = path
        self._data: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any | None:
        data = await self._load()
        return data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = {**await self._load(), key: value}
            await self._write(data)
            self._data = data

    async def delete(self, key: str) -> None:
        async with self._lock:
            current = await self._load()
            if key in current:
                data = {k: v for k, v in current.items() if k != key}
                await self._write(data)
                self._data = data

    async def _load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data

        if not await aiofiles.os.path.exists(self.path):
            logger.info(f"State file '{self.path}' not found. Starting empty.")
            self._data = {}
            return self._data

        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                raw = await f.read()
            loaded = json.loads(raw) if raw.strip() else {}
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not read state file '{self.path}': {e}")
            # Later writes replace the unreadable document.
            self._data = {}
            err_msg = f"Unreadable state file: {self.path}"
            raise PersistenceError(err_msg) from e

        if not isinstance(loaded, dict):
            self._data = {}
            err_msg = f"State file '{self.path}' does not contain a JSON object."
            raise PersistenceError(err_msg)

        self._data = loaded
        logger.debug(f"Loaded {len(loaded)} keys from '{self.path}'.")
        return self._data

    async def _write(self, data: dict[str, Any]) -> None:
        try:
            payload = json.dumps(data, ensure_ascii=False, indent=2)
        except (TypeError, ValueError) as e:
            err_msg = f"State is not JSON serializable: {e}"
            raise PersistenceError(err_msg) from e

        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
            async with aiofiles.open(tmp_path, mode="w", encoding="utf-8") as f:
                await f.write(payload)
                await f.flush()
            await aiofiles.os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to write state file '{self.path}': {e}")
            err_msg = f"Could not write state file: {self.path}"
            raise PersistenceError(err_msg) from e
