"""
Serving Orchestrator — TTL cache + single-flight refresh + stale fallback.

Request path for ``serve_forecast(generator, horizon, kpis)``:

    key = (horizon, sorted(kpis))
    fresh cache entry          → return it, PredictionServed(cache_hit=True)
    otherwise                  → join (or start) the in-flight refresh for key
        refresh done before the deadline → cache it, PredictionServed(cache_hit=False)
        timeout / failure      → last-known-good entry flagged degraded
        nothing cached         → ForecastUnavailableError

The cache check and the in-flight registration run without an ``await`` in
between, so concurrent callers for the same key always share one generator
call. The deadline is a wall-clock ``wait_for`` around a shielded task: the
generator itself is never cancelled, and a late result still refreshes the
cache for the next caller.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

import numpy as np
import structlog

from core.errors import ForecastUnavailableError
from core.events import EventBus, PredictionServed
from predictive.models_hub import ForecastResult

logger = structlog.get_logger()

CacheKey = tuple[str, tuple[str, ...]]
ForecastGenerator = Callable[
    [str, list[str], dict[str, Any] | None],
    ForecastResult | Awaitable[ForecastResult],
]


@dataclass
class _CacheEntry:
    result: ForecastResult
    stored_at: float


def cache_key(horizon: str, kpis: list[str]) -> CacheKey:
    return horizon, tuple(sorted(kpis))


class ServingOrchestrator:
    def __init__(
        self,
        bus: EventBus,
        ttl_seconds: float = 60.0,
        latency_budget_seconds: float = 2.0,
        latency_window: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.bus = bus
        self.ttl_seconds = ttl_seconds
        self.latency_budget_seconds = latency_budget_seconds
        self._clock = clock
        self._cache: dict[CacheKey, _CacheEntry] = {}
        self._inflight: dict[CacheKey, asyncio.Task] = {}
        self._latencies: deque[float] = deque(maxlen=latency_window)
        self.hits = 0
        self.misses = 0
        self.degraded = 0
        self.timeouts = 0
        self.generator_failures = 0
        self.generator_calls = 0

    async def serve_forecast(
        self,
        generator: ForecastGenerator,
        horizon: str,
        kpis: list[str],
        ctx: dict[str, Any] | None = None,
    ) -> ForecastResult:
        started = time.perf_counter()
        request_id = (ctx or {}).get("request_id") or f"req_{uuid.uuid4().hex[:12]}"
        key = cache_key(horizon, kpis)

        entry = self._cache.get(key)
        if entry is not None and self._is_fresh(entry):
            self.hits += 1
            return self._served(entry.result, request_id, started, cache_hit=True)

        self.misses += 1
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._refresh(key, generator, horizon, list(kpis), ctx))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._settle(k, t))

        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout=self.latency_budget_seconds)
        except asyncio.TimeoutError:
            self.timeouts += 1
            return self._fallback(key, request_id, started, reason="latency_budget_exceeded")
        except Exception as exc:
            return self._fallback(key, request_id, started, reason="generator_failed", error=str(exc))

        return self._served(result, request_id, started, cache_hit=False)

    async def _refresh(
        self,
        key: CacheKey,
        generator: ForecastGenerator,
        horizon: str,
        kpis: list[str],
        ctx: dict[str, Any] | None,
    ) -> ForecastResult:
        self.generator_calls += 1
        try:
            if inspect.iscoroutinefunction(generator):
                result = await generator(horizon, kpis, ctx)
            else:
                result = await asyncio.to_thread(generator, horizon, kpis, ctx)
                if inspect.isawaitable(result):
                    result = await result
        except Exception as exc:
            self.generator_failures += 1
            logger.warning("serving.generator_failed", horizon=horizon, kpis=kpis, error=str(exc))
            raise
        self._cache[key] = _CacheEntry(result=result, stored_at=self._clock())
        return result

    def _settle(self, key: CacheKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Marks a late failure as retrieved once every waiter has already fallen back
        if not task.cancelled():
            task.exception()

    def _is_fresh(self, entry: _CacheEntry) -> bool:
        return self._clock() - entry.stored_at < self.ttl_seconds

    def _fallback(
        self,
        key: CacheKey,
        request_id: str,
        started: float,
        reason: str,
        error: str | None = None,
    ) -> ForecastResult:
        entry = self._cache.get(key)
        if entry is None:
            logger.error("serving.forecast_unavailable", horizon=key[0], kpis=list(key[1]), reason=reason, error=error)
            raise ForecastUnavailableError(
                f"{ForecastUnavailableError.code}: no cached forecast for horizon={key[0]} kpis={list(key[1])} ({reason})"
            )
        self.degraded += 1
        logger.warning(
            "serving.degraded",
            request_id=request_id,
            reason=reason,
            error=error,
            forecast_id=entry.result.forecast_id,
        )
        return self._served(replace(entry.result, degraded=True), request_id, started, cache_hit=True)

    def _served(self, result: ForecastResult, request_id: str, started: float, cache_hit: bool) -> ForecastResult:
        latency_ms = (time.perf_counter() - started) * 1000.0
        self._latencies.append(latency_ms)
        logger.debug(
            "serving.cache_hit" if cache_hit else "serving.cache_miss",
            request_id=request_id,
            latency_ms=round(latency_ms, 3),
        )
        self.bus.publish(
            PredictionServed(
                request_id=request_id,
                model_version=result.model_version,
                latency_ms=latency_ms,
                cache_hit=cache_hit,
                degraded=result.degraded,
            )
        )
        return result

    def invalidate(self, horizon: str | None = None, kpis: list[str] | None = None) -> int:
        """Drop cache entries; no arguments clears everything. Returns entries removed."""
        if horizon is not None and kpis is not None:
            return 1 if self._cache.pop(cache_key(horizon, kpis), None) is not None else 0
        doomed = [k for k in self._cache if horizon is None or k[0] == horizon]
        for k in doomed:
            del self._cache[k]
        return len(doomed)

    def p95_latency_ms(self) -> float:
        if not self._latencies:
            return 0.0
        return float(np.percentile(np.fromiter(self._latencies, dtype=float), 95))

    def get_metrics(self) -> dict[str, Any]:
        return {
            "cache_size": len(self._cache),
            "cache_hits": self.hits,
            "cache_misses": self.misses,
            "degraded": self.degraded,
            "timeouts": self.timeouts,
            "generator_calls": self.generator_calls,
            "generator_failures": self.generator_failures,
            "inflight": len(self._inflight),
            "p95_latency_ms": round(self.p95_latency_ms(), 3),
            "latency_samples": len(self._latencies),
            "ttl_seconds": self.ttl_seconds,
            "latency_budget_seconds": self.latency_budget_seconds,
        }
