"""Tests for the response cache, the rate limiter and the service envelope."""

from __future__ import annotations

import asyncio
import copy
import math
from typing import Any

import pytest

from decision_graph.adapters import RepairRequest
from decision_graph.cache import CacheError, ResponseCache
from decision_graph.canonical import canonical_json_dumps, normalize_for_hash, request_hash
from decision_graph.config import RepairConfig
from decision_graph.model import GraphInputError
from decision_graph.ratelimit import RateLimiter, RateLimitExceeded
from decision_graph.service import RepairService


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _BlockingAdapter:
    """Repair adapter that signals when called and then never returns."""

    def __init__(self) -> None:
        self.called = asyncio.Event()

    async def repair(self, request: RepairRequest) -> dict[str, Any]:
        self.called.set()
        await asyncio.sleep(60)
        return {"graph": request.graph}


def _count_pipeline_runs(service: RepairService) -> list[int]:
    calls: list[int] = []
    original = service.orchestrator.run

    async def counting(*args: Any, **kwargs: Any) -> Any:
        calls.append(1)
        return await original(*args, **kwargs)

    service.orchestrator.run = counting  # type: ignore[method-assign]
    return calls


# -----------------------------------------------------------------------------
# ResponseCache
# -----------------------------------------------------------------------------


class TestResponseCache:
    def test_put_get_returns_copies(self) -> None:
        cache = ResponseCache(ttl_s=60, max_entries=4)
        value = {"graph": {"nodes": []}}
        cache.put("k", value)
        value["graph"]["nodes"].append("mutated")

        first = cache.get("k")
        assert first == {"graph": {"nodes": []}}
        first["graph"]["nodes"].append("again")
        assert cache.get("k") == {"graph": {"nodes": []}}

    def test_entries_expire(self) -> None:
        clock = FakeClock()
        cache = ResponseCache(ttl_s=10, max_entries=4, clock=clock)
        cache.put("k", 1)
        clock.advance(9.9)
        assert "k" in cache
        clock.advance(0.1)
        assert "k" not in cache
        assert cache.get("k") is None
        assert len(cache) == 0
        assert cache.stats().expirations == 1

    def test_lru_eviction(self) -> None:
        cache = ResponseCache(ttl_s=60, max_entries=2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")
        cache.put("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert cache.stats().evictions == 1

    def test_stats(self) -> None:
        cache = ResponseCache(ttl_s=60, max_entries=2)
        assert cache.stats().hit_rate == 0.0
        cache.put("a", 1)
        cache.get("a")
        cache.get("missing")

        stats = cache.stats()
        assert (stats.hits, stats.misses, stats.entries) == (1, 1, 1)
        assert stats.to_dict()["hit_rate"] == 50.0

    def test_clear(self) -> None:
        cache = ResponseCache(ttl_s=60, max_entries=2)
        cache.put("a", 1)
        cache.clear()
        assert len(cache) == 0

    @pytest.mark.parametrize(("ttl_s", "max_entries"), [(0, 4), (-1, 4), (60, 0)])
    def test_invalid_settings(self, ttl_s: float, max_entries: int) -> None:
        with pytest.raises(CacheError):
            ResponseCache(ttl_s=ttl_s, max_entries=max_entries)


# -----------------------------------------------------------------------------
# RateLimiter
# -----------------------------------------------------------------------------


class TestRateLimiter:
    def test_budget_per_key(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(2, clock=clock)
        limiter.check("alice")
        limiter.check("alice")
        limiter.check("bob")

        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.check("alice")

        assert exc_info.value.key == "alice"
        assert exc_info.value.retry_after_s == pytest.approx(60.0)
        assert limiter.remaining("alice") == 0
        assert limiter.remaining("bob") == 1

    def test_window_slides(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(1, clock=clock)
        limiter.check("alice")
        clock.advance(30)
        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.check("alice")
        assert exc_info.value.retry_after_s == pytest.approx(30.0)

        clock.advance(30)
        limiter.check("alice")

    def test_idle_keys_are_forgotten(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(5, clock=clock)
        for client in ("alice", "bob", "carol"):
            limiter.check(client)
        assert len(limiter) == 3

        clock.advance(45)
        limiter.check("alice")
        clock.advance(15)
        limiter.check("dave")

        assert len(limiter) == 2
        assert limiter.remaining("bob") == 5
        assert limiter.remaining("alice") == 4

    def test_zero_disables(self) -> None:
        limiter = RateLimiter(0)
        assert not limiter.enabled
        for _ in range(100):
            limiter.check("alice")
        assert limiter.remaining("alice") is None


# -----------------------------------------------------------------------------
# Request hashing
# -----------------------------------------------------------------------------


class TestRequestHash:
    def test_stable_with_non_finite_values(self, clean_graph: dict[str, Any]) -> None:
        clean_graph["edges"][4]["strength_mean"] = math.nan
        clean_graph["edges"][5]["strength_std"] = math.inf

        first = request_hash(clean_graph, None, "brief")
        second = request_hash(copy.deepcopy(clean_graph), None, "brief")

        assert first == second
        assert len(first) == 64

    def test_key_order_irrelevant(self, clean_graph: dict[str, Any]) -> None:
        reordered = {key: clean_graph[key] for key in reversed(list(clean_graph))}
        assert request_hash(reordered, None, "") == request_hash(clean_graph, None, "")

    def test_dumps_keeps_unicode_and_rejects_nan(self) -> None:
        assert canonical_json_dumps({"b": "£20k", "a": 1}) == '{"a":1,"b":"£20k"}'
        with pytest.raises(ValueError):
            canonical_json_dumps({"mean": math.nan})
        assert canonical_json_dumps(normalize_for_hash({"mean": math.nan})) == '{"mean":"__nan__"}'

    def test_inputs_distinguished(self, clean_graph: dict[str, Any]) -> None:
        base = request_hash(clean_graph, None, "")
        assert request_hash(clean_graph, [], "") != base
        assert request_hash(clean_graph, None, "other brief") != base


# -----------------------------------------------------------------------------
# RepairService
# -----------------------------------------------------------------------------


class TestRepairService:
    def test_cache_hit_skips_pipeline(self, clean_graph: dict[str, Any], tripwire: Any) -> None:
        service = RepairService(RepairConfig(), repair_adapter=tripwire)
        calls = _count_pipeline_runs(service)

        first = asyncio.run(service.repair(clean_graph, brief="Should we raise prices?"))
        second = asyncio.run(service.repair(clean_graph, brief="Should we raise prices?"))

        assert not first.cache_hit
        assert second.cache_hit
        assert second.request_hash == first.request_hash
        assert second.response == first.response
        assert len(calls) == 1

    def test_cached_response_is_isolated(self, clean_graph: dict[str, Any]) -> None:
        service = RepairService(RepairConfig())
        first = asyncio.run(service.repair(clean_graph))
        first.response["graph"]["nodes"].clear()

        second = asyncio.run(service.repair(clean_graph))

        assert second.cache_hit
        assert len(second.response["graph"]["nodes"]) == 8

    def test_caller_graph_not_mutated(self, clean_graph: dict[str, Any]) -> None:
        clean_graph["edges"][4]["strength_mean"] = math.nan
        service = RepairService(RepairConfig())

        result = asyncio.run(service.repair(clean_graph))

        assert math.isnan(clean_graph["edges"][4]["strength_mean"])
        assert result.response["graph"]["edges"][4]["strength_mean"] == 0.5
        assert result.response["repair_summary"]["repair_counts"] == {"NAN_VALUE": 1}

    def test_cache_disabled(self, clean_graph: dict[str, Any]) -> None:
        service = RepairService(RepairConfig(cache_ttl_s=0))
        calls = _count_pipeline_runs(service)

        asyncio.run(service.repair(clean_graph))
        second = asyncio.run(service.repair(clean_graph))

        assert service.cache is None
        assert not second.cache_hit
        assert len(calls) == 2

    def test_rate_limit_checked_first(self, clean_graph: dict[str, Any]) -> None:
        service = RepairService(RepairConfig(rate_limit_per_minute=1))
        asyncio.run(service.repair(clean_graph, client_key="alice"))
        asyncio.run(service.repair(clean_graph, client_key="bob"))

        with pytest.raises(RateLimitExceeded):
            asyncio.run(service.repair({"nodes": "not a list"}, client_key="alice"))

    def test_malformed_input_rejected(self) -> None:
        service = RepairService(RepairConfig())
        with pytest.raises(GraphInputError):
            asyncio.run(service.repair({"edges": []}))
        with pytest.raises(GraphInputError):
            asyncio.run(service.repair({"nodes": [], "edges": []}, [{"severity": "error"}]))
        assert len(service.cache) == 0

    def test_cancelled_request_not_cached(self, clean_graph: dict[str, Any], make_edge: Any) -> None:
        clean_graph["edges"].append(make_edge("out_revenue", "fac_price", 0.2))

        async def scenario() -> RepairService:
            adapter = _BlockingAdapter()
            service = RepairService(RepairConfig(adapter_timeout_s=110), repair_adapter=adapter)
            task = asyncio.create_task(service.repair(clean_graph))
            await adapter.called.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return service

        service = asyncio.run(scenario())

        assert len(service.cache) == 0
