# storage/file_manager.py
"""JSON-file backed key-value store for the bounded history and log stores."""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any
from urllib.parse import quote, unquote

import structlog

from config import settings

logger = structlog.get_logger(__name__)


class FileKeyValueStore:
    """Persist each key as one JSON document inside ``base_dir``.

    Blocking file I/O runs in the default executor so the event loop is never
    held up by disk access.
    """

    def __init__(self, base_dir: str | None = None) -> None:
        self.base_dir = base_dir or os.path.join(settings.BASE_OUTPUT_DIR, "store")
        os.makedirs(self.base_dir, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.base_dir, f"{quote(key, safe='')}.json")

    async def _run(self, func: Any, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def get(self, key: str) -> Any | None:
        return await self._run(self._get_sync, key)

    def _get_sync(self, key: str) -> Any | None:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error(f"Failed to read stored value {path}: {exc}")
            return None

    async def put(self, key: str, value: Any) -> None:
        await self._run(self._put_sync, key, value)

    def _put_sync(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(value, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)

    async def delete(self, key: str) -> None:
        await self._run(self._delete_sync, key)

    def _delete_sync(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass

    async def query_by_prefix(self, prefix: str) -> list[Any]:
        return await self._run(self._query_sync, prefix)

    def _query_sync(self, prefix: str) -> list[Any]:
        values: list[Any] = []
        for filename in sorted(os.listdir(self.base_dir)):
            if not filename.endswith(".json"):
                continue
            key = unquote(filename[: -len(".json")])
            if not key.startswith(prefix):
                continue
            value = self._get_sync(key)
            if value is not None:
                values.append(value)
        return values
