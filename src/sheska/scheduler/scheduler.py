"""
Post scheduler: persists posts, arms a task per pending post and delivers
each one at its due time.

Lifecycle of a post::

    schedule()  -> registry insert -> armed task sleeps until due_at
    cancel()    -> registry marks CANCELLED -> armed task cancelled
    due_at      -> post.execute(client) -> registry marks SENT / FAILED
                -> listeners notified -> entry dropped from the armed table

Only the sleep is interruptible. Once a post starts firing, its delivery,
terminal registry write and listener notification run in a separate task
awaited through ``asyncio.shield``, so a post that reached the network always
gets its final state recorded.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, Set, Tuple, Type

import httpx

from sheska.configuration.scheduler_settings import SchedulerSettings
from sheska.scheduler.errors import (
    DuplicatePostTypeError,
    SchedulerStoppedError,
    SerializerException,
    SerializerFatalException,
    UnknownPostTypeError,
)
from sheska.scheduler.events import Failure, ScheduleEvent, SchedulerEventHandler, Success
from sheska.scheduler.http import build_http_client
from sheska.scheduler.post import (
    K,
    PostOutcome,
    RawPost,
    SchedulablePost,
    SchedulablePostSerializer,
    Status,
    StoredPost,
    StoredRawPost,
    ensure_utc,
    utc_now,
)
from sheska.scheduler.registry import ScheduledRegistry
from sheska.util.logger import get_logger

logger = get_logger("scheduler")


@dataclass(frozen=True)
class PostTypeRegistration:
    """The class and serializer registered under one type id."""

    post_type: Type[SchedulablePost]
    serializer: SchedulablePostSerializer[Any]


@dataclass
class ArmedPost(Generic[K]):
    """A pending post and the task waiting for its due time."""

    stored: StoredPost[K, Any]
    task: asyncio.Task[None]


class Scheduler(Generic[K]):
    """
    Delivers :class:`SchedulablePost` objects at their due time.

    Startup order:
        1. ``register_post_type`` for every post class in use.
        2. ``subscribe`` the event handlers.
        3. ``await synchronize()`` to re-arm posts left pending by a previous run.

    Attributes:
        registry: Store of record for posts and their status.
        settings: Transport retry/backoff and connection settings.
    """

    def __init__(
        self,
        registry: ScheduledRegistry[K],
        settings: SchedulerSettings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or SchedulerSettings()
        self._owns_client = http_client is None
        self._client = http_client if http_client is not None else build_http_client(self.settings)

        self._post_types: Dict[str, PostTypeRegistration] = {}
        self._armed: Dict[K, ArmedPost[K]] = {}
        self._firing: Set[asyncio.Task[None]] = set()

        self._listeners: Tuple[SchedulerEventHandler[K], ...] = ()
        self._listeners_lock = threading.Lock()

        self._stopping = False
        self._stopped: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_post_type(
        self,
        post_type: Type[SchedulablePost],
        serializer: SchedulablePostSerializer[Any],
    ) -> None:
        """
        Register the serializer used to persist `post_type`.

        Raises:
            DuplicatePostTypeError: The type id is already registered.
            SerializerFatalException: The type id or serializer is invalid.
        """
        identifier = getattr(post_type, "IDENTIFIER", None)
        if not isinstance(identifier, str) or not identifier:
            raise SerializerFatalException(f"{post_type.__name__} does not declare a valid IDENTIFIER")
        if not isinstance(serializer, SchedulablePostSerializer):
            raise SerializerFatalException(
                f"Cannot use {serializer!r} as the serializer of {post_type.__name__}"
            )
        if identifier in self._post_types:
            raise DuplicatePostTypeError(identifier)

        self._post_types[identifier] = PostTypeRegistration(post_type, serializer)
        logger.debug("[SCHEDULER] Registered post type %s (%s)", identifier, post_type.__name__)

    def _registration_for(self, post_type: str) -> PostTypeRegistration:
        registration = self._post_types.get(post_type)
        if registration is None:
            raise UnknownPostTypeError(post_type)
        return registration

    def _decode(self, raw: StoredRawPost[K]) -> StoredPost[K, Any]:
        registration = self._registration_for(raw.post_type)
        try:
            post = registration.serializer.from_json(raw.content, ensure_utc(raw.due_at))
        except SerializerException:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise SerializerException(f"Could not decode post {raw.id} of type {raw.post_type}: {exc}") from exc
        return StoredPost(id=raw.id, post=post, status=raw.status)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: SchedulerEventHandler[K]) -> None:
        with self._listeners_lock:
            self._listeners = self._listeners + (listener,)

    def unsubscribe(self, listener: SchedulerEventHandler[K]) -> bool:
        with self._listeners_lock:
            if listener not in self._listeners:
                return False
            remaining = list(self._listeners)
            remaining.remove(listener)
            self._listeners = tuple(remaining)
            return True

    def _notify(self, event: ScheduleEvent[K]) -> None:
        for listener in self._listeners:
            try:
                listener.handle(event)
            except Exception:
                logger.exception("[SCHEDULER] Listener %r failed handling %s", listener, type(event).__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return not self._stopping

    @property
    def armed_count(self) -> int:
        return len(self._armed)

    def __contains__(self, post_id: object) -> bool:
        return post_id in self._armed

    async def synchronize(self) -> int:
        """
        Arm every ``PENDING`` post found in the registry.

        Posts that are already armed are left alone, so calling this twice
        never delivers a post twice. Overdue posts fire right away.

        Returns:
            int: Number of posts armed by this call.
        """
        if self._stopping:
            raise SchedulerStoppedError()

        pending = await self.registry.get_announcements(Status.PENDING)
        if self._stopping:
            logger.info("[SCHEDULER] Scheduler stopped while loading pending posts, none armed")
            return 0
        armed = 0
        for raw in sorted(pending, key=lambda r: (ensure_utc(r.due_at), r.id)):
            if raw.id in self._armed:
                continue
            self._arm(self._decode(raw))
            armed += 1

        logger.info("[SCHEDULER] Synchronized %d pending post(s) from the registry", armed)
        return armed

    async def schedule(self, post: SchedulablePost, author_id: Optional[int] = None) -> StoredPost[K, Any]:
        """
        Persist `post` and arm it for its due time.

        A post persisted while the scheduler is being stopped is returned
        unarmed and stays ``PENDING`` in the registry.

        Raises:
            SchedulerStoppedError: The scheduler was stopped.
            UnknownPostTypeError: The post's type was never registered.
        """
        if self._stopping:
            raise SchedulerStoppedError()

        registration = self._registration_for(post.identifier)
        if not isinstance(post, registration.post_type):
            raise UnknownPostTypeError(post.identifier)

        raw = RawPost(
            post_type=post.identifier,
            content=registration.serializer.to_json(post),
            due_at=ensure_utc(post.due_at),
        )
        post_id = await self.registry.insert_announcement(raw, author_id)

        stored: StoredPost[K, Any] = StoredPost(id=post_id, post=post, status=Status.PENDING)
        if self._stopping:
            # stopped during the insert; the next synchronize arms it
            logger.info("[SCHEDULER] Scheduler stopped while persisting post %s, left pending", post_id)
            return stored
        self._arm(stored)
        logger.info("[SCHEDULER] Scheduled %s for %s", stored.identifier, stored.due_at.isoformat())
        return stored

    async def cancel(self, post_id: K) -> bool:
        """
        Cancel a pending post.

        The registry decides: only if it moved the post from ``PENDING`` to
        ``CANCELLED`` is the armed task stopped. A post already being
        delivered is not interrupted.

        Returns:
            bool: True if the registry marked the post as cancelled.
        """
        if not await self.registry.mark_as_cancelled(post_id):
            logger.debug("[SCHEDULER] Post %s was not pending, nothing to cancel", post_id)
            return False

        armed = self._armed.pop(post_id, None)
        if armed is not None:
            armed.task.cancel()
        logger.info("[SCHEDULER] Cancelled post %s", post_id)
        return True

    async def get(self, post_id: K) -> Optional[StoredPost[K, Any]]:
        """Return the armed post with `post_id`, else the registry's copy, else None."""
        armed = self._armed.get(post_id)
        if armed is not None:
            return armed.stored

        raw = await self.registry.get_announcement(post_id)
        return self._decode(raw) if raw is not None else None

    async def get_posts(self, status_filter: Optional[Status] = Status.PENDING) -> List[StoredPost[K, Any]]:
        """
        Return the registry's posts with `status_filter` (all when None),
        ordered by due time.

        Raises:
            UnknownPostTypeError: A stored post's type was never registered.
        """
        raws = await self.registry.get_announcements(status_filter)
        posts = [self._decode(raw) for raw in raws]
        posts.sort(key=lambda p: (p.due_at, p.id))
        return posts

    async def join(self) -> None:
        """Wait until the scheduler has been stopped, without stopping it."""
        await self._stopped_event().wait()

    async def stop(self) -> None:
        """
        Stop every armed post and wait for the ones already firing.

        The registry is left untouched: pending posts stay pending and are
        re-armed by the next ``synchronize``.
        """
        if self._stopping:
            await self.join()
            return
        self._stopping = True

        armed_tasks = [armed.task for armed in self._armed.values()]
        for task in armed_tasks:
            task.cancel()
        if armed_tasks:
            await asyncio.gather(*armed_tasks, return_exceptions=True)
        if self._firing:
            await asyncio.gather(*list(self._firing), return_exceptions=True)
        self._armed.clear()

        if self._owns_client:
            await self._client.aclose()

        self._stopped_event().set()
        logger.info("[SCHEDULER] Scheduler stopped (%d task(s) torn down)", len(armed_tasks))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _stopped_event(self) -> asyncio.Event:
        if self._stopped is None:
            self._stopped = asyncio.Event()
        return self._stopped

    def _arm(self, stored: StoredPost[K, Any]) -> None:
        task = asyncio.create_task(self._run(stored), name=f"sheska-post-{stored.id}")
        armed = ArmedPost(stored=stored, task=task)
        self._armed[stored.id] = armed
        task.add_done_callback(lambda t, a=armed: self._on_armed_done(a, t))

    def _on_armed_done(self, armed: ArmedPost[K], task: asyncio.Task[None]) -> None:
        if self._armed.get(armed.stored.id) is armed:
            del self._armed[armed.stored.id]
        if not task.cancelled():
            self._report_task_error(task, armed.stored.id)

    async def _run(self, stored: StoredPost[K, Any]) -> None:
        delay = (stored.due_at - utc_now()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)

        fire = asyncio.create_task(self._fire(stored), name=f"sheska-fire-{stored.id}")
        self._firing.add(fire)
        fire.add_done_callback(lambda t, post_id=stored.id: self._on_fire_done(post_id, t))
        try:
            await asyncio.shield(fire)
        except asyncio.CancelledError:
            raise
        except Exception:
            # already reported by _on_fire_done
            return

    def _on_fire_done(self, post_id: K, task: asyncio.Task[None]) -> None:
        self._firing.discard(task)
        if not task.cancelled():
            self._report_task_error(task, post_id)

    async def _fire(self, stored: StoredPost[K, Any]) -> None:
        logger.debug("[SCHEDULER] Firing post %s (%s)", stored.id, stored.identifier)
        try:
            try:
                outcome = await stored.post.execute(self._client)
            except httpx.HTTPError as exc:
                outcome = PostOutcome(0, f"{type(exc).__name__}: {exc}")
            except Exception as exc:
                logger.exception("[SCHEDULER] Post %s raised while executing", stored.id)
                outcome = PostOutcome(0, f"{type(exc).__name__}: {exc}")

            if outcome.is_success:
                marked = await self.registry.mark_as_sent(stored.id)
                final_status = Status.SENT
            else:
                marked = await self.registry.mark_as_failed(stored.id)
                final_status = Status.FAILED

            if not marked:
                # cancelled while the request was in flight; the registry wins
                logger.warning(
                    "[SCHEDULER] Post %s finished with %s but was no longer pending in the registry",
                    stored.id, outcome,
                )
                return

            final = StoredPost(id=stored.id, post=stored.post, status=final_status)
            if outcome.is_success:
                logger.info("[SCHEDULER] Post %s sent (%s)", stored.id, outcome)
                self._notify(Success(final))
            else:
                logger.warning("[SCHEDULER] Post %s failed (%s)", stored.id, outcome)
                self._notify(Failure(final, str(outcome)))
        finally:
            self._armed.pop(stored.id, None)

    def _report_task_error(self, task: asyncio.Task[None], post_id: K) -> None:
        exc = task.exception()
        if exc is None:
            return

        if isinstance(exc, (OSError, sqlite3.Error)):
            logger.error(
                "[SCHEDULER] Registry error while handling post %s. "
                "Check your database's health and your connection to it.",
                post_id, exc_info=exc,
            )
        elif isinstance(exc, SerializerException):
            logger.error("[SCHEDULER] Serialization error while handling post %s", post_id, exc_info=exc)
        else:
            task.get_loop().call_exception_handler({
                "message": f"Unexpected error while handling scheduled post {post_id}",
                "exception": exc,
                "task": task,
            })
