"""
SQLite-backed registry of scheduled posts (the ``announcements`` table).

Timestamps are stored as INTEGER unix seconds (UTC), so sub-second parts of
a due time are dropped. Status changes only ever apply to ``PENDING`` rows,
which makes every ``mark_as_*`` call a compare-and-set.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional, Set

import aiosqlite

from sheska.database.db_connection import ConnectionManager
from sheska.scheduler.post import RawPost, Status, StoredRawPost, ensure_utc
from sheska.scheduler.registry import ScheduledRegistry
from sheska.util.logger import get_logger

logger = get_logger("announcement_registry")

_COLUMNS = "id, content, scheduled_date, announcement_type, status"


def _row_to_post(row: aiosqlite.Row) -> StoredRawPost[int]:
    return StoredRawPost(
        post_type=row[3],
        content=json.loads(row[1]),
        due_at=datetime.fromtimestamp(row[2], tz=timezone.utc),
        id=row[0],
        status=Status[row[4]],
    )


class AnnouncementRegistry(ScheduledRegistry[int]):
    """Scheduled post registry on top of a shared :class:`ConnectionManager`."""

    def __init__(self, connection: ConnectionManager) -> None:
        self._db = connection

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert_announcement(self, raw_post: RawPost, author_id: Optional[int] = None) -> int:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO announcements (content, scheduled_date, announcement_type, author_id)
                VALUES (?, ?, ?, ?)
                """,
                (
                    json.dumps(raw_post.content),
                    int(ensure_utc(raw_post.due_at).timestamp()),
                    raw_post.post_type,
                    author_id,
                ),
            )
            post_id = cursor.lastrowid

        logger.debug("[ANNOUNCEMENT REGISTRY] Inserted %s announcement %s", raw_post.post_type, post_id)
        return int(post_id)

    async def _mark(self, post_id: int, status: Status) -> bool:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE announcements SET status = ? WHERE id = ? AND status = ?",
                (status.name, post_id, Status.PENDING.name),
            )
            changed = cursor.rowcount == 1

        if changed:
            logger.debug("[ANNOUNCEMENT REGISTRY] Announcement %s marked as %s", post_id, status.name)
        return changed

    async def mark_as_cancelled(self, post_id: int) -> bool:
        return await self._mark(post_id, Status.CANCELLED)

    async def mark_as_failed(self, post_id: int) -> bool:
        return await self._mark(post_id, Status.FAILED)

    async def mark_as_sent(self, post_id: int) -> bool:
        return await self._mark(post_id, Status.SENT)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_announcement(self, post_id: int) -> Optional[StoredRawPost[int]]:
        async with self._db.read() as conn:
            async with conn.execute(
                f"SELECT {_COLUMNS} FROM announcements WHERE id = ?",
                (post_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_post(row) if row is not None else None

    async def get_announcements(self, status: Optional[Status]) -> Set[StoredRawPost[int]]:
        async with self._db.read() as conn:
            if status is None:
                query = f"SELECT {_COLUMNS} FROM announcements"
                params: tuple = ()
            else:
                query = f"SELECT {_COLUMNS} FROM announcements WHERE status = ?"
                params = (status.name,)
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return {_row_to_post(row) for row in rows}

    async def get_author(self, post_id: int) -> Optional[int]:
        async with self._db.read() as conn:
            async with conn.execute(
                "SELECT author_id FROM announcements WHERE id = ?",
                (post_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return row[0] if row is not None else None
