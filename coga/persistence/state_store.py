"""SQLite key/value persistence for engine state."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from coga.errors import PersistenceWriteFailure

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _decode(key: str, raw: str) -> Any | None:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring corrupt JSON stored under %s", key)
        return None


class SQLiteStateStore:
    """JSON values in the ``state`` table, keys namespaced by ``key_prefix``.

    Reads never raise: unreadable rows come back as missing. Writes raise
    :class:`PersistenceWriteFailure` so the caller can keep the value dirty and
    retry.
    """

    def __init__(self, db_path: str, key_prefix: str = "coga_") -> None:
        self.db_path = db_path
        self.key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Any | None:
        values = await self.get_many([key])
        return values.get(key)

    async def get_many(self, keys: list[str]) -> dict[str, Any]:
        if not keys:
            return {}
        prefixed = {self._key(key): key for key in keys}
        placeholders = ", ".join("?" for _ in prefixed)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    f"SELECT key, value FROM state WHERE key IN ({placeholders})",
                    tuple(prefixed),
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error:
            logger.warning("State read failed for %s", ", ".join(keys), exc_info=True)
            return {}

        values: dict[str, Any] = {}
        for stored_key, raw in rows:
            decoded = _decode(stored_key, raw)
            if decoded is not None:
                values[prefixed[stored_key]] = decoded
        return values

    async def set(self, key: str, value: Any) -> None:
        await self.set_many({key: value})

    async def set_many(self, values: Mapping[str, Any]) -> None:
        if not values:
            return
        now = _utc_now_iso()
        try:
            rows = [(self._key(key), json.dumps(value), now) for key, value in values.items()]
        except (TypeError, ValueError) as exc:
            raise PersistenceWriteFailure(f"state is not JSON serializable: {exc}") from exc
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.executemany(
                    "INSERT OR REPLACE INTO state (key, value, updated_at) VALUES (?, ?, ?)",
                    rows,
                )
                await db.commit()
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceWriteFailure(f"failed to write {', '.join(values)}: {exc}") from exc

    async def remove(self, keys: list[str]) -> None:
        if not keys:
            return
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.executemany(
                    "DELETE FROM state WHERE key = ?",
                    [(self._key(key),) for key in keys],
                )
                await db.commit()
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceWriteFailure(f"failed to remove {', '.join(keys)}: {exc}") from exc

    async def clear(self) -> None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    "DELETE FROM state WHERE substr(key, 1, ?) = ?",
                    (len(self.key_prefix), self.key_prefix),
                )
                await db.commit()
        except (aiosqlite.Error, OSError) as exc:
            raise PersistenceWriteFailure(f"failed to clear state: {exc}") from exc


class InMemoryStateStore:
    """Process-local store with the same contract; values are JSON round-tripped."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        raw = self._values.get(key)
        return None if raw is None else json.loads(raw)

    async def get_many(self, keys: list[str]) -> dict[str, Any]:
        return {key: json.loads(self._values[key]) for key in keys if key in self._values}

    async def set(self, key: str, value: Any) -> None:
        await self.set_many({key: value})

    async def set_many(self, values: Mapping[str, Any]) -> None:
        try:
            encoded = {key: json.dumps(value) for key, value in values.items()}
        except (TypeError, ValueError) as exc:
            raise PersistenceWriteFailure(f"state is not JSON serializable: {exc}") from exc
        self._values.update(encoded)

    async def remove(self, keys: list[str]) -> None:
        for key in keys:
            self._values.pop(key, None)

    async def clear(self) -> None:
        self._values.clear()


__all__ = ["InMemoryStateStore", "SQLiteStateStore"]
