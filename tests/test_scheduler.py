"""Tests for the post scheduler."""

import asyncio
import json
import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx
import pytest
import pytest_asyncio

import sheska.scheduler.scheduler as scheduler_module
from sheska.configuration.scheduler_settings import SchedulerSettings
from sheska.scheduler import (
    DuplicatePostTypeError,
    Failure,
    InMemoryScheduledRegistry,
    RawPost,
    Scheduler,
    SchedulerStoppedError,
    SerializerException,
    SerializerFatalException,
    Status,
    Success,
    UnknownPostTypeError,
)
from sheska.scheduler.http import build_http_client
from sheska.scheduler.platforms.discord_webhook import DiscordWebhookMessage, DiscordWebhookMessageSerializer
from sheska.scheduler.platforms.x_post import XPost, XPostSerializer

WEBHOOK_URL = "https://discord.test/api/webhooks/1/token"


def due_in(seconds: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


def message(text: str = "Nuevo evento", seconds: float = 60.0) -> DiscordWebhookMessage:
    return DiscordWebhookMessage(
        content="@everyone",
        embed_text=text,
        due_at=due_in(seconds),
        webhook_url=WEBHOOK_URL,
    )


class RecordingListener:
    def __init__(self):
        self.events = []

    def handle(self, event):
        self.events.append(event)


class ExplodingListener:
    def handle(self, event):
        raise RuntimeError("listener blew up")


class StubPlatform:
    """Mock transport handler answering every request with `status_code`."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests = []
        self.release: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.started.set()
        if self.release is not None:
            await self.release.wait()
        return httpx.Response(self.status_code)


class SlowRegistry(InMemoryScheduledRegistry):
    """Registry whose inserts and queries take `delay` seconds."""

    def __init__(self, delay: float = 0.05):
        super().__init__()
        self.delay = delay

    async def insert_announcement(self, raw_post, author_id=None):
        await asyncio.sleep(self.delay)
        return await super().insert_announcement(raw_post, author_id)

    async def get_announcements(self, status):
        await asyncio.sleep(self.delay)
        return await super().get_announcements(status)


class BrokenMarkRegistry(InMemoryScheduledRegistry):
    """Registry that raises `errors[post_id]` when that post's outcome is recorded."""

    def __init__(self, errors):
        super().__init__()
        self.errors = errors

    async def mark_as_sent(self, post_id):
        if post_id in self.errors:
            raise self.errors[post_id]
        return await super().mark_as_sent(post_id)

    async def mark_as_failed(self, post_id):
        if post_id in self.errors:
            raise self.errors[post_id]
        return await super().mark_as_failed(post_id)


async def wait_for_status(registry, post_id, status, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        raw = await registry.get_announcement(post_id)
        if raw is not None and raw.status is status:
            return raw
        await asyncio.sleep(0.01)
    raw = await registry.get_announcement(post_id)
    pytest.fail(f"post {post_id} never reached {status.name} (last status: {raw.status.name if raw else None})")


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.01)


def build_scheduler(registry, platform, max_retries: int = 2):
    settings = SchedulerSettings({"max_retries": max_retries, "retry_delay_seconds": 0})
    client = build_http_client(settings, transport=httpx.MockTransport(platform))
    scheduler = Scheduler(registry, settings, http_client=client)
    scheduler.register_post_type(DiscordWebhookMessage, DiscordWebhookMessageSerializer(WEBHOOK_URL))
    scheduler.register_post_type(XPost, XPostSerializer())
    return scheduler, client


@pytest.fixture()
def registry():
    return InMemoryScheduledRegistry()


@pytest.fixture()
def platform():
    return StubPlatform()


@pytest_asyncio.fixture
async def make_scheduler(registry, platform):
    """Factory for schedulers sharing the registry and the stub platform."""
    created = []

    def _make(max_retries: int = 2):
        scheduler, client = build_scheduler(registry, platform, max_retries)
        created.append((scheduler, client))
        return scheduler

    yield _make

    for scheduler, client in created:
        await scheduler.stop()
        await client.aclose()


@pytest_asyncio.fixture
async def scheduler(make_scheduler):
    return make_scheduler()


class TestRegistration:
    @pytest.mark.asyncio
    async def test_duplicate_post_type_raises(self, scheduler):
        with pytest.raises(DuplicatePostTypeError) as exc_info:
            scheduler.register_post_type(DiscordWebhookMessage, DiscordWebhookMessageSerializer())
        assert exc_info.value.post_type == "DISCORD_WEBHOOK_MESSAGE"

    def test_serializer_must_be_a_serializer(self, registry):
        scheduler = Scheduler(registry, http_client=httpx.AsyncClient())
        with pytest.raises(SerializerFatalException):
            scheduler.register_post_type(DiscordWebhookMessage, object())

    def test_post_type_without_identifier_raises(self, registry):
        class Nameless(DiscordWebhookMessage):
            IDENTIFIER = ""

        scheduler = Scheduler(registry, http_client=httpx.AsyncClient())
        with pytest.raises(SerializerFatalException):
            scheduler.register_post_type(Nameless, DiscordWebhookMessageSerializer())

    @pytest.mark.asyncio
    async def test_schedule_unregistered_type_raises(self, registry, platform):
        scheduler = Scheduler(registry, http_client=httpx.AsyncClient(transport=httpx.MockTransport(platform)))
        with pytest.raises(UnknownPostTypeError):
            await scheduler.schedule(message())
        assert len(registry) == 0
        await scheduler.stop()


class TestDelivery:
    @pytest.mark.asyncio
    async def test_due_post_is_sent_and_each_listener_notified_once(self, scheduler, registry, platform):
        first, second = RecordingListener(), RecordingListener()
        scheduler.subscribe(first)
        scheduler.subscribe(second)

        stored = await scheduler.schedule(message("Hola", seconds=0.05))
        assert stored.status is Status.PENDING
        assert stored.id in scheduler

        await asyncio.sleep(0.1)
        await wait_for_status(registry, stored.id, Status.SENT)

        for listener in (first, second):
            assert len(listener.events) == 1
            event = listener.events[0]
            assert isinstance(event, Success)
            assert event.post.id == stored.id
            assert event.post.status is Status.SENT
        assert len(platform.requests) == 1
        assert stored.id not in scheduler

        fetched = await scheduler.get(stored.id)
        assert fetched.status is Status.SENT
        assert fetched.text == "Hola"

    @pytest.mark.asyncio
    async def test_request_carries_webhook_payload(self, scheduler, registry, platform):
        stored = await scheduler.schedule(message("Hola", seconds=0))
        await wait_for_status(registry, stored.id, Status.SENT)

        request = platform.requests[0]
        assert str(request.url) == WEBHOOK_URL
        assert request.method == "POST"
        assert request.headers["User-Agent"] == "Sheska/1.0"
        assert json.loads(request.content) == {"username": "Sheska", "content": "@everyone", "embeds": [{"description": "Hola"}]}

    @pytest.mark.asyncio
    async def test_overdue_post_fires_immediately(self, scheduler, registry, platform):
        stored = await scheduler.schedule(message(seconds=-3600))

        await wait_for_status(registry, stored.id, Status.SENT, timeout=0.5)
        assert len(platform.requests) == 1

    @pytest.mark.asyncio
    async def test_server_error_on_every_attempt_marks_failed(self, make_scheduler, registry, platform):
        platform.status_code = 500
        scheduler = make_scheduler(max_retries=2)
        listener = RecordingListener()
        scheduler.subscribe(listener)

        stored = await scheduler.schedule(message(seconds=0))
        await wait_for_status(registry, stored.id, Status.FAILED)

        assert len(platform.requests) == 3
        assert len(listener.events) == 1
        event = listener.events[0]
        assert isinstance(event, Failure)
        assert event.post.status is Status.FAILED
        assert event.reason == "500 Internal Server Error"

    @pytest.mark.asyncio
    async def test_recovered_request_counts_as_sent(self, registry):
        answers = iter([503, 502, 200])

        def flaky(request):
            return httpx.Response(next(answers))

        settings = SchedulerSettings({"max_retries": 3, "retry_delay_seconds": 0})
        client = build_http_client(settings, transport=httpx.MockTransport(flaky))
        scheduler = Scheduler(registry, settings, http_client=client)
        scheduler.register_post_type(DiscordWebhookMessage, DiscordWebhookMessageSerializer(WEBHOOK_URL))

        stored = await scheduler.schedule(message(seconds=0))
        await wait_for_status(registry, stored.id, Status.SENT)

        await scheduler.stop()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_marks_failed_with_reason(self, registry):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        settings = SchedulerSettings({"max_retries": 1, "retry_delay_seconds": 0})
        client = build_http_client(settings, transport=httpx.MockTransport(unreachable))
        scheduler = Scheduler(registry, settings, http_client=client)
        scheduler.register_post_type(DiscordWebhookMessage, DiscordWebhookMessageSerializer(WEBHOOK_URL))
        listener = RecordingListener()
        scheduler.subscribe(listener)

        stored = await scheduler.schedule(message(seconds=0))
        await wait_for_status(registry, stored.id, Status.FAILED)

        assert listener.events[0].reason == "ConnectError: connection refused"
        await scheduler.stop()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_webhook_marks_failed_without_request(self, scheduler, registry, platform):
        listener = RecordingListener()
        scheduler.subscribe(listener)
        post = DiscordWebhookMessage(content=None, embed_text="Hola", due_at=due_in(0))

        stored = await scheduler.schedule(post)
        await wait_for_status(registry, stored.id, Status.FAILED)

        assert platform.requests == []
        assert listener.events[0].reason == "No Discord webhook configured"

    @pytest.mark.asyncio
    async def test_x_post_without_credentials_marks_failed(self, scheduler, registry, platform):
        stored = await scheduler.schedule(XPost(text="Hola", due_at=due_in(0)))
        await wait_for_status(registry, stored.id, Status.FAILED)
        assert platform.requests == []


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_before_due_prevents_delivery(self, scheduler, registry, platform):
        stored = await scheduler.schedule(message(seconds=0.2))

        assert await scheduler.cancel(stored.id) is True
        assert stored.id not in scheduler

        await asyncio.sleep(0.3)
        raw = await registry.get_announcement(stored.id)
        assert raw.status is Status.CANCELLED
        assert platform.requests == []

    @pytest.mark.asyncio
    async def test_second_cancel_returns_false(self, scheduler):
        stored = await scheduler.schedule(message())

        assert await scheduler.cancel(stored.id) is True
        assert await scheduler.cancel(stored.id) is False

    @pytest.mark.asyncio
    async def test_cancel_unknown_id_returns_false(self, scheduler):
        assert await scheduler.cancel(999) is False

    @pytest.mark.asyncio
    async def test_cancel_after_sent_returns_false(self, scheduler, registry):
        stored = await scheduler.schedule(message(seconds=0))
        await wait_for_status(registry, stored.id, Status.SENT)

        assert await scheduler.cancel(stored.id) is False
        raw = await registry.get_announcement(stored.id)
        assert raw.status is Status.SENT

    @pytest.mark.asyncio
    async def test_cancel_while_in_flight_keeps_cancelled_and_skips_events(self, scheduler, registry, platform):
        platform.release = asyncio.Event()
        listener = RecordingListener()
        scheduler.subscribe(listener)

        stored = await scheduler.schedule(message(seconds=0))
        await asyncio.wait_for(platform.started.wait(), timeout=1.0)

        assert await scheduler.cancel(stored.id) is True
        platform.release.set()
        await asyncio.sleep(0.05)

        raw = await registry.get_announcement(stored.id)
        assert raw.status is Status.CANCELLED
        assert len(platform.requests) == 1
        assert listener.events == []


class TestSynchronize:
    @pytest.mark.asyncio
    async def test_fresh_scheduler_rearms_pending_posts(self, make_scheduler, registry, platform):
        first = make_scheduler()
        a = await first.schedule(message("a", seconds=0.1))
        b = await first.schedule(message("b", seconds=0.15))
        await first.stop()
        assert platform.requests == []

        second = make_scheduler()
        assert await second.synchronize() == 2
        assert await second.synchronize() == 0

        await wait_for_status(registry, a.id, Status.SENT)
        await wait_for_status(registry, b.id, Status.SENT)
        assert len(platform.requests) == 2

    @pytest.mark.asyncio
    async def test_synchronize_skips_terminal_posts(self, make_scheduler, registry):
        first = make_scheduler()
        kept = await first.schedule(message("kept", seconds=60))
        dropped = await first.schedule(message("dropped", seconds=60))
        await first.cancel(dropped.id)
        await first.stop()

        second = make_scheduler()
        assert await second.synchronize() == 1
        assert kept.id in second
        assert dropped.id not in second

    @pytest.mark.asyncio
    async def test_synchronize_rejects_malformed_document(self, scheduler, registry):
        await registry.insert_announcement(
            RawPost(post_type="DISCORD_WEBHOOK_MESSAGE", content={"content": "x"}, due_at=due_in(60))
        )
        with pytest.raises(SerializerException):
            await scheduler.synchronize()

    @pytest.mark.asyncio
    async def test_synchronize_rejects_unknown_type(self, scheduler, registry):
        await registry.insert_announcement(RawPost(post_type="CARRIER_PIGEON", content={}, due_at=due_in(60)))
        with pytest.raises(UnknownPostTypeError):
            await scheduler.synchronize()


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_returns_armed_then_registry_copy(self, scheduler):
        stored = await scheduler.schedule(message("Hola"))

        armed = await scheduler.get(stored.id)
        assert armed is stored

        await scheduler.cancel(stored.id)
        copy = await scheduler.get(stored.id)
        assert copy.status is Status.CANCELLED
        assert copy.text == "Hola"
        assert copy.post.webhook_url == WEBHOOK_URL

        assert await scheduler.get(12345) is None

    @pytest.mark.asyncio
    async def test_get_posts_orders_by_due_time(self, scheduler):
        later = await scheduler.schedule(message("later", seconds=120))
        sooner = await scheduler.schedule(message("sooner", seconds=60))
        cancelled = await scheduler.schedule(message("cancelled", seconds=90))
        await scheduler.cancel(cancelled.id)

        pending = await scheduler.get_posts()
        assert [p.id for p in pending] == [sooner.id, later.id]

        everything = await scheduler.get_posts(None)
        assert [p.id for p in everything] == [sooner.id, cancelled.id, later.id]

        only_cancelled = await scheduler.get_posts(Status.CANCELLED)
        assert [p.text for p in only_cancelled] == ["cancelled"]

    @pytest.mark.asyncio
    async def test_author_is_recorded(self, scheduler, registry):
        stored = await scheduler.schedule(message(), author_id=42)
        assert registry.author_of(stored.id) == 42


class TestListeners:
    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, scheduler, registry):
        recorder = RecordingListener()
        scheduler.subscribe(ExplodingListener())
        scheduler.subscribe(recorder)

        stored = await scheduler.schedule(message(seconds=0))
        await wait_for_status(registry, stored.id, Status.SENT)

        assert len(recorder.events) == 1

    @pytest.mark.asyncio
    async def test_unsubscribed_listener_gets_nothing(self, scheduler, registry):
        listener = RecordingListener()
        scheduler.subscribe(listener)

        assert scheduler.unsubscribe(listener) is True
        assert scheduler.unsubscribe(listener) is False

        stored = await scheduler.schedule(message(seconds=0))
        await wait_for_status(registry, stored.id, Status.SENT)
        assert listener.events == []


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_keeps_pending_posts_and_rejects_new_ones(self, scheduler, registry, platform):
        stored = await scheduler.schedule(message(seconds=60))

        await scheduler.stop()
        await asyncio.wait_for(scheduler.join(), timeout=1.0)

        assert scheduler.is_running is False
        assert scheduler.armed_count == 0
        raw = await registry.get_announcement(stored.id)
        assert raw.status is Status.PENDING

        with pytest.raises(SchedulerStoppedError):
            await scheduler.schedule(message())
        with pytest.raises(SchedulerStoppedError):
            await scheduler.synchronize()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, scheduler):
        await scheduler.stop()
        await asyncio.wait_for(scheduler.stop(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_stop_waits_for_post_in_flight(self, scheduler, registry, platform):
        platform.release = asyncio.Event()
        stored = await scheduler.schedule(message(seconds=0))
        await asyncio.wait_for(platform.started.wait(), timeout=1.0)

        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.02)
        assert not stopping.done()

        platform.release.set()
        await asyncio.wait_for(stopping, timeout=1.0)

        raw = await registry.get_announcement(stored.id)
        assert raw.status is Status.SENT

    @pytest.mark.asyncio
    async def test_owned_client_is_closed_on_stop(self, registry):
        scheduler = Scheduler(registry)
        client = scheduler._client
        await scheduler.stop()
        assert client.is_closed


class TestStopRaces:
    @pytest.mark.asyncio
    async def test_post_persisted_during_stop_stays_pending(self, platform):
        registry = SlowRegistry()
        scheduler, client = build_scheduler(registry, platform)
        listener = RecordingListener()
        scheduler.subscribe(listener)

        scheduling = asyncio.create_task(scheduler.schedule(message(seconds=0)))
        await asyncio.sleep(0.01)
        await scheduler.stop()
        await client.aclose()
        stored = await scheduling

        assert stored.status is Status.PENDING
        assert stored.id not in scheduler
        assert scheduler.armed_count == 0

        await asyncio.sleep(0.05)
        raw = await registry.get_announcement(stored.id)
        assert raw.status is Status.PENDING
        assert platform.requests == []
        assert listener.events == []

    @pytest.mark.asyncio
    async def test_synchronize_interrupted_by_stop_arms_nothing(self, platform):
        registry = SlowRegistry()
        post_id = await registry.insert_announcement(
            RawPost(post_type="DISCORD_WEBHOOK_MESSAGE", content={"embedText": "Hola"}, due_at=due_in(0))
        )
        scheduler, client = build_scheduler(registry, platform)

        synchronizing = asyncio.create_task(scheduler.synchronize())
        await asyncio.sleep(0.01)
        await scheduler.stop()
        await client.aclose()

        assert await synchronizing == 0
        assert scheduler.armed_count == 0
        await asyncio.sleep(0.05)
        assert (await registry.get_announcement(post_id)).status is Status.PENDING
        assert platform.requests == []


class TestRegistryOutage:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [OSError("disk I/O error"), sqlite3.OperationalError("database is locked")])
    async def test_registry_error_is_logged_and_other_posts_continue(self, platform, error):
        registry = BrokenMarkRegistry({1: error})
        scheduler, client = build_scheduler(registry, platform)
        listener = RecordingListener()
        scheduler.subscribe(listener)

        with patch.object(scheduler_module, "logger") as mock_logger:
            broken = await scheduler.schedule(message("a", seconds=0))
            healthy = await scheduler.schedule(message("b", seconds=0))
            await wait_for_status(registry, healthy.id, Status.SENT)
            await wait_until(lambda: scheduler.armed_count == 0 and mock_logger.error.called)

        assert broken.id == 1
        assert (await registry.get_announcement(broken.id)).status is Status.PENDING
        assert broken.id not in scheduler
        assert [e.post.id for e in listener.events] == [healthy.id]

        error_call = mock_logger.error.call_args
        assert error_call.args[0].startswith("[SCHEDULER] Registry error")
        assert error_call.args[1] == broken.id
        assert error_call.kwargs["exc_info"] is error

        await scheduler.stop()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_unexpected_error_goes_to_loop_exception_handler(self, platform):
        error = RuntimeError("registry returned garbage")
        registry = BrokenMarkRegistry({1: error})
        scheduler, client = build_scheduler(registry, platform)

        loop = asyncio.get_running_loop()
        previous = loop.get_exception_handler()
        contexts = []
        loop.set_exception_handler(lambda _loop, context: contexts.append(context))
        try:
            stored = await scheduler.schedule(message(seconds=0))
            await wait_until(lambda: bool(contexts))
            await asyncio.sleep(0.02)
        finally:
            loop.set_exception_handler(previous)

        assert len(contexts) == 1
        assert contexts[0]["exception"] is error
        assert "scheduled post 1" in contexts[0]["message"]
        assert (await registry.get_announcement(stored.id)).status is Status.PENDING
        assert scheduler.armed_count == 0

        await scheduler.stop()
        await client.aclose()
