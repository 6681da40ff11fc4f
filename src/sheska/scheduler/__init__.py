"""
Scheduled posts for Sheska.

- **post.py**: ``SchedulablePost`` and its serializer contract, ``Status``,
  the ``RawPost``/``StoredRawPost`` envelopes stored by registries and the
  ``StoredPost`` handed to callers.
- **registry.py**: ``ScheduledRegistry`` contract and an in-memory registry.
- **scheduler.py**: ``Scheduler``, which arms one asyncio task per pending
  post and records the delivery outcome.
- **events.py**: ``Success``/``Failure`` events and the handler protocol.
- **http.py**: shared httpx client with transport-level retry.
- **platforms/**: Discord webhook messages and X posts.
"""

from .errors import (
    SchedulerError,
    SchedulerStoppedError,
    SerializerException,
    SerializerFatalException,
    DuplicatePostTypeError,
    UnknownPostTypeError,
)
from .events import Success, Failure, ScheduleEvent, SchedulerEventHandler
from .post import (
    Status,
    PostOutcome,
    RawPost,
    StoredRawPost,
    StoredPost,
    SchedulablePost,
    SchedulablePostSerializer,
)
from .registry import ScheduledRegistry, InMemoryScheduledRegistry
from .scheduler import Scheduler

__all__ = [
    "SchedulerError",
    "SchedulerStoppedError",
    "SerializerException",
    "SerializerFatalException",
    "DuplicatePostTypeError",
    "UnknownPostTypeError",
    "Success",
    "Failure",
    "ScheduleEvent",
    "SchedulerEventHandler",
    "Status",
    "PostOutcome",
    "RawPost",
    "StoredRawPost",
    "StoredPost",
    "SchedulablePost",
    "SchedulablePostSerializer",
    "ScheduledRegistry",
    "InMemoryScheduledRegistry",
    "Scheduler",
]
