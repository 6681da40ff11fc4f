"""Events the scheduler delivers to its subscribed handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Protocol, Union

from sheska.scheduler.post import K, StoredPost


@dataclass(frozen=True)
class Success(Generic[K]):
    """The post was delivered and marked as sent."""

    post: StoredPost[K, Any]


@dataclass(frozen=True)
class Failure(Generic[K]):
    """The post was attempted and marked as failed; `reason` says why."""

    post: StoredPost[K, Any]
    reason: str


ScheduleEvent = Union[Success[K], Failure[K]]


class SchedulerEventHandler(Protocol[K]):
    """
    Receives scheduler events.

    ``handle`` runs on the task of the post that fired, so it must return
    quickly; handlers that need I/O should spawn their own task.
    """

    def handle(self, event: ScheduleEvent[K]) -> None:
        ...
