"""
Post data model shared by the scheduler, its registries and the platforms.

A :class:`SchedulablePost` is a unit of deferred work that knows how to
deliver itself. Registries never see concrete posts: they store
:class:`RawPost` envelopes whose ``content`` is produced by the
:class:`SchedulablePostSerializer` registered for the post's type id.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Generic, Hashable, TypeVar

import httpx


class Status(Enum):
    """Lifecycle state of a stored post. ``SENT`` is never left."""

    PENDING = 0
    SENT = 1
    CANCELLED = 2
    FAILED = 3

    @property
    def code(self) -> int:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self is not Status.PENDING


K = TypeVar("K", bound=Hashable)
P = TypeVar("P", bound="SchedulablePost")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(moment: datetime) -> datetime:
    """Return `moment` as an aware UTC datetime; naive values are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass(frozen=True)
class PostOutcome:
    """HTTP-like result of delivering a post."""

    status_code: int
    description: str = ""

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @classmethod
    def from_response(cls, response: httpx.Response) -> "PostOutcome":
        return cls(response.status_code, response.reason_phrase or "")

    def __str__(self) -> str:
        if not self.status_code:
            return self.description
        return f"{self.status_code} {self.description}".strip()


class SchedulablePost(ABC):
    """
    A post that can be delivered at ``due_at``.

    Subclasses set a class-level ``IDENTIFIER`` that is unique among all
    registered post types; it is what ties a stored document back to the
    serializer able to read it. They also provide ``due_at`` (aware UTC) and
    ``text``, a human readable summary used in listings and logs.
    """

    IDENTIFIER: ClassVar[str]

    due_at: datetime
    text: str

    @property
    def identifier(self) -> str:
        return type(self).IDENTIFIER

    @abstractmethod
    async def execute(self, client: httpx.AsyncClient) -> PostOutcome:
        """Deliver the post through `client` and report the HTTP outcome."""
        ...


class SchedulablePostSerializer(ABC, Generic[P]):
    """
    Converts one post type to and from the JSON document stored in a registry.

    This is only the persisted shape as the scheduler understands it, not the
    body sent to the target platform.
    """

    @abstractmethod
    def from_json(self, content: Dict[str, Any], due_at: datetime) -> P:
        ...

    @abstractmethod
    def to_json(self, post: P) -> Dict[str, Any]:
        ...


@dataclass(frozen=True)
class RawPost:
    """Content agnostic envelope persisted by a registry."""

    post_type: str
    content: Dict[str, Any] = field(hash=False)
    due_at: datetime


@dataclass(frozen=True, kw_only=True)
class StoredRawPost(RawPost, Generic[K]):
    """A RawPost as read back from a registry, with its identity and status."""

    id: K
    status: Status = Status.PENDING

    def __hash__(self) -> int:
        return hash(self.id)


@dataclass(frozen=True)
class StoredPost(Generic[K, P]):
    """A concrete post bound to its registry identity."""

    id: K
    post: P
    status: Status = Status.PENDING

    @property
    def due_at(self) -> datetime:
        return self.post.due_at

    @property
    def text(self) -> str:
        return self.post.text

    @property
    def identifier(self) -> str:
        return self.post.identifier

    def __str__(self) -> str:
        return f"StoredPost(id={self.id}, type={self.identifier}, due_at={self.due_at.isoformat()}, status={self.status.name})"
