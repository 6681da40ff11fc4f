"""
Registry contract for scheduled posts, plus an in-memory implementation.

A registry is the store of record: the scheduler keeps in memory only what
could still be pre-empted, and trusts the registry's compare-and-mark result
whenever it has to decide whether a post is still pending.

Implementations must be safe to call from concurrent tasks, must never move
a post out of ``SENT``, and must never reuse an id.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Generic, Optional, Set

from sheska.scheduler.post import K, RawPost, Status, StoredRawPost


class ScheduledRegistry(ABC, Generic[K]):
    """Durable storage for scheduled posts keyed by an opaque id."""

    @abstractmethod
    async def insert_announcement(self, raw_post: RawPost, author_id: Optional[int] = None) -> K:
        """Persist a new ``PENDING`` post and return its id."""

    @abstractmethod
    async def mark_as_cancelled(self, post_id: K) -> bool:
        """Move a ``PENDING`` post to ``CANCELLED``; False if it was not pending."""

    @abstractmethod
    async def mark_as_failed(self, post_id: K) -> bool:
        """Move a ``PENDING`` post to ``FAILED``; False if it was not pending."""

    @abstractmethod
    async def mark_as_sent(self, post_id: K) -> bool:
        """Move a ``PENDING`` post to ``SENT``; False if it was not pending."""

    @abstractmethod
    async def get_announcement(self, post_id: K) -> Optional[StoredRawPost[K]]:
        ...

    @abstractmethod
    async def get_announcements(self, status: Optional[Status]) -> Set[StoredRawPost[K]]:
        """Return every post with `status`, or every post when `status` is None."""


@dataclass
class _MemoryRecord:
    raw_post: RawPost
    status: Status
    author_id: Optional[int]


class InMemoryScheduledRegistry(ScheduledRegistry[int]):
    """
    Registry kept in a dict, with auto-increment integer ids.

    Useful for tests and for running the scheduler without a database. A
    scheduler restart can be simulated by handing the same instance to a new
    scheduler.
    """

    def __init__(self) -> None:
        self._records: Dict[int, _MemoryRecord] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def insert_announcement(self, raw_post: RawPost, author_id: Optional[int] = None) -> int:
        async with self._lock:
            post_id = self._next_id
            self._next_id += 1
            self._records[post_id] = _MemoryRecord(raw_post, Status.PENDING, author_id)
            return post_id

    async def _mark(self, post_id: int, status: Status) -> bool:
        async with self._lock:
            record = self._records.get(post_id)
            if record is None or record.status is not Status.PENDING:
                return False
            record.status = status
            return True

    async def mark_as_cancelled(self, post_id: int) -> bool:
        return await self._mark(post_id, Status.CANCELLED)

    async def mark_as_failed(self, post_id: int) -> bool:
        return await self._mark(post_id, Status.FAILED)

    async def mark_as_sent(self, post_id: int) -> bool:
        return await self._mark(post_id, Status.SENT)

    def _to_stored(self, post_id: int, record: _MemoryRecord) -> StoredRawPost[int]:
        return StoredRawPost(
            post_type=record.raw_post.post_type,
            content=dict(record.raw_post.content),
            due_at=record.raw_post.due_at,
            id=post_id,
            status=record.status,
        )

    async def get_announcement(self, post_id: int) -> Optional[StoredRawPost[int]]:
        async with self._lock:
            record = self._records.get(post_id)
            return self._to_stored(post_id, record) if record else None

    async def get_announcements(self, status: Optional[Status]) -> Set[StoredRawPost[int]]:
        async with self._lock:
            return {
                self._to_stored(post_id, record)
                for post_id, record in self._records.items()
                if status is None or record.status is status
            }

    def author_of(self, post_id: int) -> Optional[int]:
        record = self._records.get(post_id)
        return record.author_id if record else None

    def __len__(self) -> int:
        return len(self._records)
