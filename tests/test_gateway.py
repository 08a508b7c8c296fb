"""Тесты MutationGateway (rate limit + идемпотентность)."""

from __future__ import annotations

import asyncio

import pytest
from fastapi import HTTPException

from bridge.core.errors import RateLimitExceeded
from bridge.core.gateway import CallContext, MutationGateway
from bridge.core.rate_limit_policy import PolicyTable
from bridge.core.rate_limiter import RateLimiter
from bridge.services.idempotency import (
    IdempotencyService,
    InMemoryIdempotencyStore,
    ProcedureResult,
)
from tests.helpers import ManualClock, make_settings


def make_gateway(*, limiter=..., derive_keys: bool = False, **settings_overrides):
    clock = ManualClock()
    store = InMemoryIdempotencyStore(clock)
    if limiter is ...:
        limiter = RateLimiter(clock)
    gateway = MutationGateway(
        limiter,
        IdempotencyService(store, clock),
        PolicyTable(make_settings(**settings_overrides)),
        derive_keys=derive_keys,
    )
    return gateway, store


def make_ctx(key: str | None = "key-1", **overrides) -> CallContext:
    values = dict(
        procedure="records.createRecord",
        method="POST",
        path="/records/",
        tenant_id="org-1",
        user_id="user-1",
        client_ip="10.0.0.1",
        idempotency_key=key,
        body={"name": "Alpha"},
        headers={"content-type": "application/json"},
    )
    values.update(overrides)
    return CallContext(**values)


def test_mutation_with_key_is_replayed() -> None:
    gateway, _ = make_gateway()
    calls = {"n": 0}

    async def proc() -> ProcedureResult:
        calls["n"] += 1
        return ProcedureResult(201, {"id": "r1"})

    async def scenario():
        first = await gateway.handle(make_ctx(), proc, mutation=True)
        second = await gateway.handle(make_ctx(), proc, mutation=True)
        return first, second

    first, second = asyncio.run(scenario())

    assert calls["n"] == 1
    assert (first.status, first.body, first.from_cache) == (201, {"id": "r1"}, False)
    assert (second.status, second.body, second.from_cache) == (201, {"id": "r1"}, True)
    assert second.idempotency_key == "key-1"
    assert first.rate_limit.remaining == 59
    assert second.rate_limit.remaining == 58


def test_client_error_is_cached_as_response() -> None:
    gateway, _ = make_gateway()
    calls = {"n": 0}

    async def proc() -> ProcedureResult:
        calls["n"] += 1
        raise HTTPException(status_code=422, detail="name is taken")

    async def scenario():
        first = await gateway.handle(make_ctx(), proc, mutation=True)
        second = await gateway.handle(make_ctx(), proc, mutation=True)
        return first, second

    first, second = asyncio.run(scenario())

    assert calls["n"] == 1
    assert (first.status, first.body) == (422, {"detail": "name is taken"})
    assert second.from_cache is True
    assert second.status == 422


def test_server_error_releases_key() -> None:
    gateway, store = make_gateway()
    calls = {"n": 0}

    async def proc() -> ProcedureResult:
        calls["n"] += 1
        if calls["n"] == 1:
            raise HTTPException(status_code=503, detail="downstream")
        return ProcedureResult(201, {"id": "r1"})

    async def scenario():
        with pytest.raises(HTTPException):
            await gateway.handle(make_ctx(), proc, mutation=True)
        released = await store.get("org-1:user-1:key-1")
        retried = await gateway.handle(make_ctx(), proc, mutation=True)
        return released, retried

    released, retried = asyncio.run(scenario())

    assert released is None
    assert retried.status == 201
    assert retried.from_cache is False
    assert calls["n"] == 2


def test_queries_and_keyless_mutations_bypass_cache() -> None:
    gateway, _ = make_gateway()
    calls = {"n": 0}

    async def proc() -> ProcedureResult:
        calls["n"] += 1
        return ProcedureResult(200, {"n": calls["n"]})

    async def scenario():
        query_ctx = make_ctx(procedure="records.listRecords", method="GET")
        a = await gateway.handle(query_ctx, proc, mutation=False)
        b = await gateway.handle(query_ctx, proc, mutation=False)
        c = await gateway.handle(make_ctx(key=None), proc, mutation=True)
        d = await gateway.handle(make_ctx(key=None), proc, mutation=True)
        return [a, b, c, d]

    results = asyncio.run(scenario())

    assert calls["n"] == 4
    assert [r.body["n"] for r in results] == [1, 2, 3, 4]
    assert not any(r.from_cache for r in results)


def test_keys_are_scoped_per_user() -> None:
    gateway, _ = make_gateway()
    calls = {"n": 0}

    async def proc() -> ProcedureResult:
        calls["n"] += 1
        return ProcedureResult(201, {"n": calls["n"]})

    async def scenario():
        a = await gateway.handle(make_ctx(user_id="user-1"), proc, mutation=True)
        b = await gateway.handle(make_ctx(user_id="user-2"), proc, mutation=True)
        return a, b

    a, b = asyncio.run(scenario())

    assert calls["n"] == 2
    assert a.from_cache is False
    assert b.from_cache is False


def test_derived_keys_deduplicate_identical_mutations() -> None:
    gateway, _ = make_gateway(derive_keys=True)
    calls = {"n": 0}

    async def proc() -> ProcedureResult:
        calls["n"] += 1
        return ProcedureResult(201, {"id": "r1"})

    async def scenario():
        first = await gateway.handle(make_ctx(key=None), proc, mutation=True)
        second = await gateway.handle(make_ctx(key=None), proc, mutation=True)
        return first, second

    first, second = asyncio.run(scenario())

    assert calls["n"] == 1
    assert second.from_cache is True
    assert second.idempotency_key.startswith("idem_")


def test_rate_limit_rejects_before_procedure() -> None:
    gateway, _ = make_gateway(
        rate_limit_policies='{"records.createRecord": {"limit": 1}}',
    )
    calls = {"n": 0}

    async def proc() -> ProcedureResult:
        calls["n"] += 1
        return ProcedureResult(201, {})

    async def scenario():
        await gateway.handle(make_ctx(key="a"), proc, mutation=True)
        await gateway.handle(make_ctx(key="b"), proc, mutation=True)

    with pytest.raises(RateLimitExceeded) as exc_info:
        asyncio.run(scenario())

    assert calls["n"] == 1
    assert exc_info.value.limit == 1
    assert exc_info.value.retry_after == pytest.approx(60.0)


def test_replays_also_consume_tokens() -> None:
    gateway, _ = make_gateway(
        rate_limit_policies='{"records.createRecord": {"limit": 1}}',
    )

    async def proc() -> ProcedureResult:
        return ProcedureResult(201, {})

    async def scenario():
        await gateway.handle(make_ctx(), proc, mutation=True)
        await gateway.handle(make_ctx(), proc, mutation=True)

    with pytest.raises(RateLimitExceeded):
        asyncio.run(scenario())


def test_without_limiter_no_rate_limit_metadata() -> None:
    gateway, _ = make_gateway(limiter=None)

    async def proc() -> ProcedureResult:
        return ProcedureResult(200, {"ok": True})

    result = asyncio.run(gateway.handle(make_ctx(), proc, mutation=True))

    assert result.rate_limit is None
    assert result.body == {"ok": True}
