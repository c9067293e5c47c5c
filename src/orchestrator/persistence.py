"""Key-value persistence used by the registry and the conversation store.

The engine treats stored values as opaque JSON-compatible blobs. In-memory
state stays authoritative; callers log and swallow persistence failures.
"""

import asyncio
import json
import re
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

import aiofiles

from shared.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    """Asynchronous key-value storage."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...


class MemoryStore:
    """Dict-backed store; values are copied through JSON to mimic real storage."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value, default=str)

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileStore:
    """
    One JSON file per key under a directory.

    Writes go to a temporary file first and are then renamed over the
    target, so a crash never leaves a half-written value.
    """

    _SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, key: str) -> Path:
        return self.directory / f"{self._SAFE_KEY.sub('_', key)}.json"

    async def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None

        async with aiofiles.open(path, "r") as f:
            content = await f.read()
        return json.loads(content) if content else None

    async def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")

        async with self._lock:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(value, indent=2, default=str))
            tmp_path.replace(path)

        logger.debug("State persisted", key=key, path=str(path))
