"""Тесты delivery worker'а (webhook через httpx.MockTransport)."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from pathlib import Path

import httpx

from bridge.core.signing import Signer
from bridge.services.outbox import InMemoryOutboxStore, SqlOutboxStore
from bridge.workers.outbox_delivery import DeliveryWorker, build_event_body
from tests.helpers import WEBHOOK_SECRET, WEBHOOK_URL, ManualClock, make_session_factory


def make_worker(handler, *, store=None, clock=None, **kwargs):
    clock = clock or ManualClock()
    store = store or InMemoryOutboxStore(clock)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    worker = DeliveryWorker(
        store,
        Signer(WEBHOOK_SECRET, clock),
        clock,
        WEBHOOK_URL,
        http_client=client,
        **kwargs,
    )
    return worker, store, clock


def test_successful_delivery_is_signed_and_marked_delivered() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    worker, store, clock = make_worker(handler)

    async def scenario():
        event_id = await store.append("org-1", "record_created", {"record_id": "r1"})
        result = await worker.run_tick()
        return event_id, result, await store.get(event_id)

    event_id, result, entry = asyncio.run(scenario())

    assert (result.processed, result.successful, result.failed) == (1, 1, 0)
    assert result.skipped is False
    assert entry.delivered_at == clock.now()

    assert len(requests) == 1
    request = requests[0]
    assert str(request.url) == WEBHOOK_URL
    assert request.method == "POST"
    assert request.headers["content-type"] == "application/json"
    assert request.headers["user-agent"] == "Hikari-Automation-Bridge/1.0"

    body = request.content.decode("utf-8")
    assert json.loads(body) == {
        "event": "record_created",
        "payload": {"record_id": "r1"},
        "timestamp": clock.now().isoformat(),
    }
    signer = Signer(WEBHOOK_SECRET, clock)
    assert signer.verify(body, request.headers["x-signature"], request.headers["x-timestamp"])


def test_non_2xx_response_schedules_retry() -> None:
    worker, store, clock = make_worker(lambda request: httpx.Response(500, text="boom"))

    async def scenario():
        event_id = await store.append("org-1", "e", {})
        result = await worker.run_tick()
        return result, await store.get(event_id)

    result, entry = asyncio.run(scenario())

    assert (result.processed, result.successful, result.failed) == (1, 0, 1)
    assert entry.attempt_count == 1
    assert entry.last_error == "HTTP 500: boom"
    assert (entry.next_retry_at - clock.now()).total_seconds() == 60


def test_network_error_and_timeout_are_recorded() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)["payload"]
        if payload["kind"] == "timeout":
            raise httpx.ReadTimeout("read timed out", request=request)
        raise httpx.ConnectError("connection refused", request=request)

    worker, store, _ = make_worker(handler)

    async def scenario():
        timeout_id = await store.append("org-1", "e", {"kind": "timeout"})
        network_id = await store.append("org-1", "e", {"kind": "network"})
        result = await worker.run_tick()
        return result, await store.get(timeout_id), await store.get(network_id)

    result, timed_out, refused = asyncio.run(scenario())

    assert result.failed == 2
    assert timed_out.last_error.startswith("timeout after 30.0s")
    assert refused.last_error.startswith("network error")
    assert timed_out.attempt_count == refused.attempt_count == 1


def test_one_failing_event_does_not_abort_batch() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)["payload"]
        return httpx.Response(502 if payload["n"] == 1 else 204)

    clock = ManualClock()
    worker, store, _ = make_worker(handler, clock=clock)

    async def scenario():
        ids = []
        for n in range(3):
            ids.append(await store.append("org-1", "e", {"n": n}))
            clock.advance(1)
        result = await worker.run_tick()
        return ids, result, [await store.get(i) for i in ids]

    ids, result, entries = asyncio.run(scenario())

    assert (result.processed, result.successful, result.failed) == (3, 2, 1)
    assert entries[0].delivered_at is not None
    assert entries[1].delivered_at is None
    assert entries[1].attempt_count == 1
    assert entries[2].delivered_at is not None


def test_last_failure_counts_as_exhausted() -> None:
    clock = ManualClock()
    store = InMemoryOutboxStore(clock, max_attempts=1)
    worker, _, _ = make_worker(lambda r: httpx.Response(500), store=store, clock=clock)

    async def scenario():
        event_id = await store.append("org-1", "e", {})
        result = await worker.run_tick()
        return result, await store.list_exhausted()

    result, exhausted = asyncio.run(scenario())

    assert result.exhausted == 1
    assert result.failed == 1
    assert len(exhausted) == 1


def test_without_webhook_url_events_are_marked_delivered() -> None:
    clock = ManualClock()
    store = InMemoryOutboxStore(clock)
    worker = DeliveryWorker(store, None, clock, None)

    async def scenario():
        for n in range(2):
            await store.append("org-1", "e", {"n": n})
        result = await worker.run_tick()
        return result, await store.stats()

    result, stats = asyncio.run(scenario())

    assert (result.processed, result.successful, result.failed) == (2, 2, 0)
    assert stats.delivered == 2


def test_empty_tick() -> None:
    worker, _, _ = make_worker(lambda r: httpx.Response(200))

    result = asyncio.run(worker.run_tick())

    assert result.processed == 0
    assert result.skipped is False


def test_overlapping_tick_is_skipped() -> None:
    async def scenario():
        release = asyncio.Event()
        entered = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            entered.set()
            await release.wait()
            return httpx.Response(200)

        worker, store, _ = make_worker(handler)
        await store.append("org-1", "e", {})

        first = asyncio.create_task(worker.run_tick())
        await entered.wait()
        second = await worker.run_tick()
        release.set()
        return await first, second

    first, second = asyncio.run(scenario())

    assert first.successful == 1
    assert second.skipped is True
    assert second.processed == 0


def test_concurrency_is_bounded() -> None:
    async def scenario():
        in_flight = 0
        peak = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(200)

        worker, store, _ = make_worker(handler, concurrency=3)
        for n in range(6):
            await store.append("org-1", "e", {"n": n})
        result = await worker.run_tick()
        return result, peak

    result, peak = asyncio.run(scenario())

    assert result.successful == 6
    assert peak == 3


def test_tick_respects_limit() -> None:
    worker, store, clock = make_worker(lambda r: httpx.Response(200), batch_size=2)

    async def scenario():
        for n in range(3):
            await store.append("org-1", "e", {"n": n})
            clock.advance(1)
        first = await worker.run_tick()
        second = await worker.run_tick(limit=10)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.processed == 2
    assert second.processed == 1


def test_deliver_single_event_does_not_touch_outbox() -> None:
    worker, store, _ = make_worker(lambda r: httpx.Response(418, text="teapot"))

    async def scenario():
        event_id = await store.append("org-1", "e", {})
        entry = await store.get(event_id)
        return await worker.deliver(entry), await store.get(event_id)

    result, entry = asyncio.run(scenario())

    assert result.success is False
    assert result.status_code == 418
    assert result.error == "HTTP 418: teapot"
    assert entry.attempt_count == 0


def test_event_body_is_canonical() -> None:
    clock = ManualClock()
    store = InMemoryOutboxStore(clock)

    async def scenario():
        event_id = await store.append("org-1", "e", {"b": 2, "a": 1})
        return await store.get(event_id)

    entry = asyncio.run(scenario())

    body = build_event_body(entry, clock.now())
    assert body.startswith('{"event":"e","payload":{"a":1,"b":2},"timestamp":')


def test_worker_with_sql_store(tmp_path: Path) -> None:
    clock = ManualClock()
    store = SqlOutboxStore(make_session_factory(tmp_path), clock)
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(500 if calls["n"] == 1 else 200)

    worker, _, _ = make_worker(handler, store=store, clock=clock)

    async def scenario():
        event_id = await store.append("org-1", "e", {})
        first = await worker.run_tick()
        clock.advance(60)
        second = await worker.run_tick()
        return first, second, await store.get(event_id)

    first, second, entry = asyncio.run(scenario())

    assert first.failed == 1
    assert second.successful == 1
    assert entry.attempt_count == 1
    assert entry.delivered_at is not None


def test_retry_body_carries_delivery_time() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200)

    worker, store, clock = make_worker(handler)

    async def scenario():
        event_id = await store.append("org-1", "e", {})
        clock.advance(24 * 60 * 60)
        await worker.run_tick()
        return await store.get(event_id)

    entry = asyncio.run(scenario())

    body = json.loads(requests[0].content)
    assert body["timestamp"] == clock.now().isoformat()
    assert body["timestamp"] != entry.created_at.isoformat()


class _TrickleStream(httpx.AsyncByteStream):
    """Тело ответа, которое приходит по байту, не упираясь в read timeout."""

    async def __aiter__(self):
        for _ in range(100):
            await asyncio.sleep(0.05)
            yield b"."


def test_slow_response_body_hits_total_timeout() -> None:
    worker, store, _ = make_worker(
        lambda request: httpx.Response(200, stream=_TrickleStream()),
        timeout_seconds=0.3,
    )

    async def scenario():
        event_id = await store.append("org-1", "e", {})
        result = await worker.run_tick()
        return result, await store.get(event_id)

    result, entry = asyncio.run(scenario())

    assert (result.successful, result.failed) == (0, 1)
    assert entry.delivered_at is None
    assert entry.attempt_count == 1
    assert entry.last_error.startswith("timeout after 0.3s")


def test_parallel_workers_over_sql_store_deliver_once(tmp_path: Path) -> None:
    clock = ManualClock()
    store = SqlOutboxStore(make_session_factory(tmp_path), clock, lease_seconds=300)
    posts: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posts.append(request)
        return httpx.Response(500, text="down")

    first, _, _ = make_worker(handler, store=store, clock=clock)
    second, _, _ = make_worker(handler, store=store, clock=clock)

    async def scenario():
        event_id = await store.append("org-1", "e", {})
        results = await asyncio.gather(first.run_tick(), second.run_tick())
        return results, await store.get(event_id)

    results, entry = asyncio.run(scenario())

    assert len(posts) == 1
    assert sum(r.processed for r in results) == 1
    assert entry.attempt_count == 1
    assert entry.next_retry_at == clock.now() + timedelta(seconds=60)
