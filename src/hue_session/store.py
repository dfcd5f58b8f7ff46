from __future__ import annotations

import logging
import os
import time
from typing import Any, TypeVar

import aiosqlite
from pydantic import TypeAdapter, ValidationError

from hue_session.models import BridgeConnection


logger = logging.getLogger(__name__)

T = TypeVar("T")

CONNECTION_KEY = "connection"
ROOMS_KEY = "rooms"
ZONES_KEY = "zones"
GROUPED_LIGHTS_KEY = "grouped_lights"
SCENES_KEY = "scenes"
LIGHTS_KEY = "lights"
DISCOVERY_CACHE_KEY = "discovery_cache"
DEMO_MODE_KEY = "demo_mode"


class CacheCorrupt(Exception):
    def __init__(self, key: str) -> None:
        super().__init__(f"persisted blob {key!r} could not be decoded")
        self.key = key


class Store:
    """Named JSON blobs in one sqlite table. A blob that fails to decode is removed."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        if self._db_path != ":memory:":
            dir_name = os.path.dirname(self._db_path)
            if dir_name:
                os.makedirs(dir_name, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        if self._db_path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL;")
            await self._conn.execute("PRAGMA synchronous=NORMAL;")
        await self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS blobs (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL,
              updated_at REAL NOT NULL
            );
            """
        )
        await self._conn.commit()

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Store not connected")
        return self._conn

    async def get_blob(self, key: str) -> tuple[str, float] | None:
        async with self.conn.execute(
            "SELECT value, updated_at FROM blobs WHERE key = ?",
            (key,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return str(row[0]), float(row[1])

    async def set_blob(self, key: str, value: str, *, updated_at: float | None = None) -> None:
        now = time.time() if updated_at is None else updated_at
        await self.conn.execute(
            """
            INSERT INTO blobs (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """,
            (key, value, now),
        )
        await self.conn.commit()

    async def delete_blob(self, key: str) -> None:
        await self.conn.execute("DELETE FROM blobs WHERE key = ?", (key,))
        await self.conn.commit()

    async def _decode(self, key: str, adapter: TypeAdapter[T]) -> T | None:
        row = await self.get_blob(key)
        if row is None:
            return None
        try:
            return adapter.validate_json(row[0])
        except (ValueError, ValidationError) as exc:
            raise CacheCorrupt(key) from exc

    async def load(self, key: str, adapter: TypeAdapter[T]) -> T | None:
        try:
            return await self._decode(key, adapter)
        except CacheCorrupt:
            logger.warning("dropping corrupt persisted blob %r", key)
            await self.delete_blob(key)
            return None

    async def save(self, key: str, adapter: TypeAdapter[Any], value: Any) -> None:
        await self.set_blob(key, adapter.dump_json(value).decode("utf-8"))

    async def load_connection(self) -> BridgeConnection | None:
        return await self.load(CONNECTION_KEY, TypeAdapter(BridgeConnection))

    async def save_connection(self, connection: BridgeConnection) -> None:
        await self.set_blob(CONNECTION_KEY, connection.model_dump_json())

    async def clear_connection(self) -> None:
        await self.delete_blob(CONNECTION_KEY)

    async def load_demo_mode(self) -> bool:
        row = await self.get_blob(DEMO_MODE_KEY)
        return row is not None and row[0] == "true"

    async def save_demo_mode(self, enabled: bool) -> None:
        await self.set_blob(DEMO_MODE_KEY, "true" if enabled else "false")

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
