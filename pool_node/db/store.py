"""Persisted template records, keyed by height"""

import asyncio
import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import aiosqlite

from ..state.models import TemplateRecord

logger = logging.getLogger("Database")


class TemplateStore(ABC):
    """
    Shared state the template coordinator relies on.

    ``create_lock`` must be atomic across every process sharing the store:
    height is a unique key and at most one insert for it can succeed.
    A payload, once stored, is never overwritten.
    """

    async def init(self) -> None:
        """Prepare the backing storage."""

    @abstractmethod
    async def get_record(self, height: int) -> Optional[TemplateRecord]:
        """Returns the record for height, or None if there is none."""

    @abstractmethod
    async def create_lock(self, height: int, owner: str) -> bool:
        """Insert an empty record owned by owner. False if one already exists."""

    @abstractmethod
    async def save_record(self, height: int, payload: str) -> bool:
        """Fill the payload for height. False if a payload was already stored."""

    @abstractmethod
    async def renew_lock(self, height: int, owner: str) -> bool:
        """Restart owner's lease. False if owner no longer holds the lock."""

    @abstractmethod
    async def take_over_lock(
        self,
        height: int,
        owner: str,
        expected_owner: Optional[str],
        expected_acquired_at: Optional[float],
    ) -> bool:
        """Move an unfilled lock to owner, only if it is unchanged since it was read."""

    @abstractmethod
    async def cleanup(self, keep_heights: int) -> int:
        """Delete records more than keep_heights below the highest one."""


class SqliteTemplateStore(TemplateStore):
    """Template records in SQLite. Safe for several processes on one host."""

    def __init__(self, path: str | Path = "data/templates.db", busy_timeout: float = 5.0):
        self.path = Path(path)
        self.busy_timeout = busy_timeout

    def _connect(self):
        return aiosqlite.connect(self.path, timeout=self.busy_timeout)

    async def init(self):
        """Initialize the SQLite database with required tables"""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS template_records (
                    height INTEGER PRIMARY KEY,
                    payload TEXT,
                    owner TEXT,
                    acquired_at REAL
                )
            """
            )
            await db.commit()
        logger.info("Template store ready at %s", self.path)

    async def get_record(self, height: int) -> Optional[TemplateRecord]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT height, payload, owner, acquired_at FROM template_records WHERE height = ?",
                (height,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return TemplateRecord(
            height=row[0], payload=row[1], owner=row[2], acquired_at=row[3]
        )

    async def create_lock(self, height: int, owner: str) -> bool:
        async with self._connect() as db:
            try:
                await db.execute(
                    """
                    INSERT INTO template_records (height, payload, owner, acquired_at)
                    VALUES (?, NULL, ?, ?)
                """,
                    (height, owner, time.time()),
                )
                await db.commit()
            except sqlite3.IntegrityError:
                # Another process created the record first
                return False
        return True

    async def save_record(self, height: int, payload: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE template_records SET payload = ? WHERE height = ? AND payload IS NULL",
                (payload, height),
            )
            stored = cursor.rowcount > 0
            if not stored:
                # Single-instance path: no lock row was ever created
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO template_records (height, payload, owner, acquired_at)
                    VALUES (?, ?, NULL, NULL)
                """,
                    (height, payload),
                )
                stored = cursor.rowcount > 0
            await db.commit()
        return stored

    async def renew_lock(self, height: int, owner: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE template_records SET acquired_at = ?
                WHERE height = ? AND owner = ? AND payload IS NULL
            """,
                (time.time(), height, owner),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def take_over_lock(
        self,
        height: int,
        owner: str,
        expected_owner: Optional[str],
        expected_acquired_at: Optional[float],
    ) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE template_records SET owner = ?, acquired_at = ?
                WHERE height = ? AND payload IS NULL
                  AND owner IS ? AND acquired_at IS ?
            """,
                (owner, time.time(), height, expected_owner, expected_acquired_at),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def cleanup(self, keep_heights: int) -> int:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                DELETE FROM template_records
                WHERE height < (SELECT MAX(height) FROM template_records) - ?
            """,
                (keep_heights,),
            )
            await db.commit()
            deleted = cursor.rowcount
        if deleted:
            logger.info("Template cleanup: removed %d old records", deleted)
        return deleted


class InMemoryTemplateStore(TemplateStore):
    """Template records for a single process, when the database is disabled"""

    def __init__(self):
        self.records: Dict[int, TemplateRecord] = {}
        self.lock = asyncio.Lock()

    async def get_record(self, height: int) -> Optional[TemplateRecord]:
        async with self.lock:
            rec = self.records.get(height)
            if rec is None:
                return None
            # Hand out copies so callers cannot mutate the stored record
            return TemplateRecord(rec.height, rec.payload, rec.owner, rec.acquired_at)

    async def create_lock(self, height: int, owner: str) -> bool:
        async with self.lock:
            if height in self.records:
                return False
            self.records[height] = TemplateRecord(height, None, owner, time.time())
            return True

    async def save_record(self, height: int, payload: str) -> bool:
        async with self.lock:
            rec = self.records.get(height)
            if rec is None:
                self.records[height] = TemplateRecord(height, payload)
                return True
            if rec.payload is not None:
                return False
            rec.payload = payload
            return True

    async def renew_lock(self, height: int, owner: str) -> bool:
        async with self.lock:
            rec = self.records.get(height)
            if rec is None or rec.payload is not None or rec.owner != owner:
                return False
            rec.acquired_at = time.time()
            return True

    async def take_over_lock(
        self,
        height: int,
        owner: str,
        expected_owner: Optional[str],
        expected_acquired_at: Optional[float],
    ) -> bool:
        async with self.lock:
            rec = self.records.get(height)
            if (
                rec is None
                or rec.payload is not None
                or rec.owner != expected_owner
                or rec.acquired_at != expected_acquired_at
            ):
                return False
            rec.owner = owner
            rec.acquired_at = time.time()
            return True

    async def cleanup(self, keep_heights: int) -> int:
        async with self.lock:
            if not self.records:
                return 0
            floor = max(self.records) - keep_heights
            old = [h for h in self.records if h < floor]
            for h in old:
                del self.records[h]
        if old:
            logger.info("Template cleanup: removed %d old records", len(old))
        return len(old)
