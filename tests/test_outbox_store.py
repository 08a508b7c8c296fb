"""Тесты outbox: backoff, выборка due событий, терминальные состояния.

Каждый сценарий прогоняется на обоих хранилищах (memory и SQLite).
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from bridge.services.outbox import (
    BACKOFF_SCHEDULE,
    MAX_ATTEMPTS,
    InMemoryOutboxStore,
    SqlOutboxStore,
    add_outbox_event,
    retry_delay_seconds,
)
from tests.helpers import ManualClock, make_session_factory


@pytest.fixture(params=["memory", "sql"])
def store_factory(request, tmp_path: Path):
    """Фабрика хранилища: (clock, **kwargs) -> OutboxStore."""

    def factory(clock: ManualClock, **kwargs):
        if request.param == "memory":
            return InMemoryOutboxStore(clock, **kwargs)
        return SqlOutboxStore(make_session_factory(tmp_path), clock, **kwargs)

    return factory


def test_backoff_schedule() -> None:
    delays = [retry_delay_seconds(n) for n in range(MAX_ATTEMPTS + 1)]

    assert BACKOFF_SCHEDULE == (60, 300, 900, 3600, 21600, 86400)
    assert delays == [60, 300, 900, 3600, 21600, 86400, 86400, 86400, None]


def test_append_creates_due_event(store_factory) -> None:
    clock = ManualClock()
    store = store_factory(clock)

    async def scenario():
        event_id = await store.append("org-1", "record_created", {"record_id": "r1"})
        return event_id, await store.due_events(10)

    event_id, due = asyncio.run(scenario())

    assert [e.id for e in due] == [event_id]
    entry = due[0]
    assert entry.tenant_id == "org-1"
    assert entry.event_name == "record_created"
    assert entry.payload == {"record_id": "r1"}
    assert entry.attempt_count == 0
    assert entry.delivered_at is None
    assert entry.next_retry_at is None
    assert entry.created_at == clock.now()


def test_first_failure_schedules_retry_after_one_minute(store_factory) -> None:
    clock = ManualClock()
    store = store_factory(clock)

    async def scenario():
        event_id = await store.append("org-1", "record_created", {})
        failed = await store.mark_failed(event_id, "HTTP 500: boom")
        clock.advance(59)
        early = await store.due_events(10)
        clock.advance(1)
        on_time = await store.due_events(10)
        return event_id, failed, early, on_time

    event_id, failed, early, on_time = asyncio.run(scenario())

    assert failed.attempt_count == 1
    assert failed.last_error == "HTTP 500: boom"
    assert failed.next_retry_at == clock.now()
    assert early == []
    assert [e.id for e in on_time] == [event_id]


def test_event_exhausted_after_max_attempts(store_factory) -> None:
    clock = ManualClock()
    store = store_factory(clock)

    async def scenario():
        event_id = await store.append("org-1", "record_created", {})
        delays = []
        entry = None
        for _ in range(MAX_ATTEMPTS):
            due = await store.due_events(10)
            assert [e.id for e in due] == [event_id]
            before = clock.now()
            entry = await store.mark_failed(event_id, "HTTP 503: down")
            if entry.next_retry_at is not None:
                delays.append((entry.next_retry_at - before).total_seconds())
                clock.advance(delays[-1])
        clock.advance(10 * 86400)
        return (
            entry,
            delays,
            await store.due_events(10),
            await store.list_exhausted(),
            await store.stats(),
        )

    entry, delays, due, exhausted, stats = asyncio.run(scenario())

    assert delays == [60, 300, 900, 3600, 21600, 86400, 86400]
    assert entry.attempt_count == MAX_ATTEMPTS
    assert entry.next_retry_at is None
    assert entry.delivered_at is None
    assert entry.is_exhausted()
    assert due == []
    assert [e.id for e in exhausted] == [entry.id]
    assert stats.failed == 1
    assert stats.pending == 0


def test_mark_delivered_is_idempotent_and_terminal(store_factory) -> None:
    clock = ManualClock()
    store = store_factory(clock)

    async def scenario():
        event_id = await store.append("org-1", "record_created", {})
        await store.mark_failed(event_id, "HTTP 500: boom")
        clock.advance(60)
        await store.mark_delivered(event_id)
        first = await store.get(event_id)
        clock.advance(5)
        await store.mark_delivered(event_id)
        second = await store.get(event_id)
        after_fail = await store.mark_failed(event_id, "late failure")
        return first, second, after_fail, await store.due_events(10)

    first, second, after_fail, due = asyncio.run(scenario())

    assert first.delivered_at is not None
    assert first.last_error is None
    assert first.next_retry_at is None
    assert second.delivered_at == first.delivered_at
    assert after_fail.attempt_count == 1
    assert after_fail.last_error is None
    assert due == []


def test_unknown_event_id_is_noop(store_factory) -> None:
    store = store_factory(ManualClock())

    async def scenario():
        await store.mark_delivered("missing")
        return await store.mark_failed("missing", "x"), await store.get("missing")

    failed, fetched = asyncio.run(scenario())

    assert failed is None
    assert fetched is None


def test_due_events_oldest_first_and_capped(store_factory) -> None:
    clock = ManualClock()
    store = store_factory(clock)

    async def scenario():
        ids = []
        for n in range(3):
            ids.append(await store.append("org-1", "e", {"n": n}))
            clock.advance(1)
        return ids, await store.due_events(2)

    ids, due = asyncio.run(scenario())

    assert [e.id for e in due] == ids[:2]


def test_retry_waiting_event_is_skipped_for_newer_ones(store_factory) -> None:
    clock = ManualClock()
    store = store_factory(clock)

    async def scenario():
        old_id = await store.append("org-1", "e", {})
        clock.advance(1)
        new_id = await store.append("org-1", "e", {})
        await store.mark_failed(old_id, "HTTP 500")
        return new_id, await store.due_events(10)

    new_id, due = asyncio.run(scenario())

    assert [e.id for e in due] == [new_id]


def test_list_pending_filters_by_tenant_and_stats(store_factory) -> None:
    clock = ManualClock()
    store = store_factory(clock)

    async def scenario():
        a1 = await store.append("org-a", "e", {})
        clock.advance(1)
        await store.append("org-b", "e", {})
        clock.advance(1)
        a2 = await store.append("org-a", "e", {})
        await store.mark_delivered(a2)
        return (
            a1,
            await store.list_pending("org-a"),
            await store.list_pending(),
            await store.stats("org-a"),
            await store.stats(),
        )

    a1, pending_a, pending_all, stats_a, stats_all = asyncio.run(scenario())

    assert [e.id for e in pending_a] == [a1]
    assert len(pending_all) == 2
    assert (stats_a.total, stats_a.delivered, stats_a.pending, stats_a.failed) == (2, 1, 1, 0)
    assert stats_a.delivery_rate == 50.0
    assert stats_all.total == 3


def test_custom_max_attempts(store_factory) -> None:
    store = store_factory(ManualClock(), max_attempts=2)

    async def scenario():
        event_id = await store.append("org-1", "e", {})
        first = await store.mark_failed(event_id, "x")
        second = await store.mark_failed(event_id, "y")
        return first, second

    first, second = asyncio.run(scenario())

    assert not first.is_exhausted(2)
    assert second.is_exhausted(2)
    assert second.next_retry_at is None


def test_stats_empty_store(store_factory) -> None:
    stats = asyncio.run(store_factory(ManualClock()).stats())

    assert stats.total == 0
    assert stats.delivery_rate == 0.0


def test_add_outbox_event_commits_with_business_transaction(tmp_path: Path) -> None:
    clock = ManualClock()
    session_factory = make_session_factory(tmp_path)
    store = SqlOutboxStore(session_factory, clock)

    async def scenario():
        async with session_factory() as db:
            add_outbox_event(
                db,
                tenant_id="org-1",
                event_name="rolled_back",
                payload={},
                created_at=clock.now(),
            )
            await db.rollback()
        async with session_factory() as db:
            add_outbox_event(
                db,
                tenant_id="org-1",
                event_name="committed",
                payload={},
                created_at=clock.now(),
            )
            await db.commit()
        return await store.due_events(10)

    due = asyncio.run(scenario())

    assert [e.event_name for e in due] == ["committed"]


def test_sql_lease_hides_claimed_events(tmp_path: Path) -> None:
    clock = ManualClock()
    store = SqlOutboxStore(make_session_factory(tmp_path), clock, lease_seconds=300)

    async def scenario():
        event_id = await store.append("org-1", "e", {})
        first = await store.due_events(10)
        second = await store.due_events(10)
        clock.advance(300)
        third = await store.due_events(10)
        return event_id, first, second, third

    event_id, first, second, third = asyncio.run(scenario())

    assert [e.id for e in first] == [event_id]
    assert second == []
    assert [e.id for e in third] == [event_id]


def test_failure_delay_grows_by_schedule(store_factory) -> None:
    clock = ManualClock()
    store = store_factory(clock)

    async def scenario():
        event_id = await store.append("org-1", "e", {})
        await store.mark_failed(event_id, "x")
        clock.advance(60)
        before = clock.now()
        second = await store.mark_failed(event_id, "y")
        return before, second

    before, second = asyncio.run(scenario())

    assert second.attempt_count == 2
    assert second.next_retry_at - before == timedelta(seconds=300)
