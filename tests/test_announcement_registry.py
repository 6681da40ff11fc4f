"""Tests for the SQLite-backed announcement registry."""

import json
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from sheska.database.db_connection import ConnectionManager
from sheska.repositories.announcement_repo import AnnouncementRegistry
from sheska.scheduler.post import RawPost, Status

DUE = datetime(2024, 5, 4, 18, 30, 15, 250000, tzinfo=timezone.utc)


def raw(text: str = "Hola", due_at: datetime = DUE) -> RawPost:
    return RawPost(post_type="DISCORD_WEBHOOK_MESSAGE", content={"embedText": text}, due_at=due_at)


@pytest_asyncio.fixture
async def connection(tmp_path):
    manager = ConnectionManager()
    await manager.open(tmp_path / "data" / "sheska.db")
    yield manager
    await manager.close()


@pytest.fixture()
def registry(connection):
    return AnnouncementRegistry(connection)


@pytest.mark.asyncio
async def test_insert_assigns_increasing_ids(registry):
    first = await registry.insert_announcement(raw("a"))
    second = await registry.insert_announcement(raw("b"))
    assert second > first


@pytest.mark.asyncio
async def test_stored_post_round_trips_through_sqlite(registry):
    post_id = await registry.insert_announcement(raw("Torneo"), author_id=42)

    stored = await registry.get_announcement(post_id)

    assert stored.id == post_id
    assert stored.post_type == "DISCORD_WEBHOOK_MESSAGE"
    assert stored.content == {"embedText": "Torneo"}
    assert stored.status is Status.PENDING
    # unix seconds, sub-second part dropped
    assert stored.due_at == DUE.replace(microsecond=0)
    assert await registry.get_author(post_id) == 42


@pytest.mark.asyncio
async def test_rows_use_expected_columns(registry, connection):
    post_id = await registry.insert_announcement(raw("Hola"))

    async with connection.read() as conn:
        async with conn.execute(
            "SELECT content, scheduled_date, announcement_type, status FROM announcements WHERE id = ?",
            (post_id,),
        ) as cursor:
            row = await cursor.fetchone()

    assert json.loads(row[0]) == {"embedText": "Hola"}
    assert row[1] == int(DUE.timestamp())
    assert row[2] == "DISCORD_WEBHOOK_MESSAGE"
    assert row[3] == "PENDING"


@pytest.mark.asyncio
async def test_mark_only_moves_pending_posts(registry):
    post_id = await registry.insert_announcement(raw())

    assert await registry.mark_as_sent(post_id) is True
    assert await registry.mark_as_cancelled(post_id) is False
    assert await registry.mark_as_failed(post_id) is False
    assert (await registry.get_announcement(post_id)).status is Status.SENT


@pytest.mark.asyncio
async def test_cancelled_post_cannot_be_sent(registry):
    post_id = await registry.insert_announcement(raw())

    assert await registry.mark_as_cancelled(post_id) is True
    assert await registry.mark_as_cancelled(post_id) is False
    assert await registry.mark_as_sent(post_id) is False
    assert (await registry.get_announcement(post_id)).status is Status.CANCELLED


@pytest.mark.asyncio
async def test_mark_unknown_id_returns_false(registry):
    assert await registry.mark_as_failed(404) is False
    assert await registry.get_announcement(404) is None
    assert await registry.get_author(404) is None


@pytest.mark.asyncio
async def test_get_announcements_filters_by_status(registry):
    pending = await registry.insert_announcement(raw("pending"))
    failed = await registry.insert_announcement(raw("failed"))
    await registry.mark_as_failed(failed)

    assert {p.id for p in await registry.get_announcements(Status.PENDING)} == {pending}
    assert {p.id for p in await registry.get_announcements(Status.FAILED)} == {failed}
    assert {p.id for p in await registry.get_announcements(None)} == {pending, failed}
    assert await registry.get_announcements(Status.SENT) == set()


@pytest.mark.asyncio
async def test_posts_survive_reopening_the_database(tmp_path):
    path = tmp_path / "sheska.db"

    first = ConnectionManager()
    await first.open(path)
    post_id = await AnnouncementRegistry(first).insert_announcement(raw("persistente"))
    await first.close()

    second = ConnectionManager()
    await second.open(path)
    try:
        stored = await AnnouncementRegistry(second).get_announcement(post_id)
    finally:
        await second.close()

    assert stored.content == {"embedText": "persistente"}
    assert stored.status is Status.PENDING


@pytest.mark.asyncio
async def test_connection_must_be_opened_first():
    registry = AnnouncementRegistry(ConnectionManager())
    with pytest.raises(RuntimeError):
        await registry.get_announcement(1)
