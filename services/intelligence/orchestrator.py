# services/intelligence/orchestrator.py
"""
Intelligence analysis orchestration.

One run per analysis key: the four sub-analyses are dispatched concurrently,
each under its own timeout, failures are replaced by fallback results, and
the aggregate is built only after all four have settled.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Mapping, Optional

from prometheus_client import Counter, Histogram

from config.intelligence_config import IntelligenceConfig
from schemas.intelligence import (
    ANALYSIS_KINDS,
    AnalysisAggregate,
    AnalysisContext,
    AnalysisKind,
    SubAnalysisResult,
)

from .aggregate_cache import AggregateCache, Clock, utc_now
from .analysis_key import ContextInput, analysis_key, coerce_context
from .clients import SubAnalysisClient, fallback_result
from .errors import PersistenceError, SubAnalysisError, SubAnalysisTimeout
from .progress import ProgressReporter
from .readiness import ReadinessAggregator, ReadinessPolicy
from .record_store import RecordStore

logger = logging.getLogger(__name__)

# Metrics
ANALYSIS_RUNS = Counter(
    "intelligence_analysis_runs_total",
    "Analysis requests by how they were served",
    ["outcome"],
)
SUB_ANALYSIS_DURATION = Histogram(
    "intelligence_sub_analysis_duration_seconds",
    "Time spent in one sub-analysis call",
    ["kind"],
)
SUB_ANALYSIS_FALLBACKS = Counter(
    "intelligence_sub_analysis_fallbacks_total",
    "Sub-analysis results replaced by a fallback",
    ["kind", "reason"],
)


class AnalysisRun:
    """Handle on one orchestrated run (new, joined, or served from cache)."""

    def __init__(self, key: str, context: AnalysisContext, reporter: ProgressReporter) -> None:
        self.key = key
        self.context = context
        self.reporter = reporter
        self.from_cache = False
        self._task: Optional[asyncio.Task] = None
        self._aggregate: Optional[AnalysisAggregate] = None

    @classmethod
    def completed(
        cls,
        key: str,
        context: AnalysisContext,
        aggregate: AnalysisAggregate,
    ) -> "AnalysisRun":
        reporter = ProgressReporter()
        reporter.complete()
        run = cls(key, context, reporter)
        run.from_cache = True
        run._aggregate = aggregate
        return run

    @property
    def done(self) -> bool:
        if self._aggregate is not None:
            return True
        return self._task is not None and self._task.done()

    @property
    def aggregate(self) -> Optional[AnalysisAggregate]:
        return self._aggregate

    def failure(self) -> Optional[BaseException]:
        if self._task is None or not self._task.done() or self._task.cancelled():
            return None
        return self._task.exception()

    async def wait(self) -> AnalysisAggregate:
        if self._aggregate is not None:
            return self._aggregate
        if self._task is None:
            raise RuntimeError(f"run {self.key} was never started")
        # shield: a waiter being cancelled must not cancel the shared run
        return await asyncio.shield(self._task)

    def add_done_callback(self, fn: Callable[["AnalysisRun"], None]) -> None:
        if self._task is None:
            fn(self)
            return
        self._task.add_done_callback(lambda _task: fn(self))


class AnalysisOrchestrator:
    def __init__(
        self,
        clients: Mapping[AnalysisKind, SubAnalysisClient],
        *,
        cache: Optional[AggregateCache] = None,
        aggregator: Optional[ReadinessAggregator] = None,
        store: Optional[RecordStore] = None,
        timeout_s: float = 8.0,
        fallback_score: float = 50.0,
        clock: Optional[Clock] = None,
    ) -> None:
        missing = [k for k in ANALYSIS_KINDS if k not in clients]
        if missing:
            raise ValueError(f"missing sub-analysis clients: {', '.join(missing)}")
        self._clients: Dict[AnalysisKind, SubAnalysisClient] = {k: clients[k] for k in ANALYSIS_KINDS}
        self._clock = clock or utc_now
        self.cache = cache if cache is not None else AggregateCache(clock=self._clock)
        self._aggregator = aggregator if aggregator is not None else ReadinessAggregator()
        self._store = store
        self._timeout_s = timeout_s
        self._fallback_score = fallback_score
        self._inflight: Dict[str, AnalysisRun] = {}

    @classmethod
    def from_config(
        cls,
        config: IntelligenceConfig,
        clients: Mapping[AnalysisKind, SubAnalysisClient],
        *,
        store: Optional[RecordStore] = None,
        cache: Optional[AggregateCache] = None,
        clock: Optional[Clock] = None,
    ) -> "AnalysisOrchestrator":
        return cls(
            clients,
            cache=cache if cache is not None else AggregateCache(stale_after_s=config.stale_after_s, clock=clock),
            aggregator=ReadinessAggregator(ReadinessPolicy.from_config(config)),
            store=store,
            timeout_s=config.sub_analysis_timeout_s,
            fallback_score=config.fallback_score,
            clock=clock,
        )

    # ── public API ──────────────────────────────────────────────────

    def in_flight(self, key: str) -> bool:
        run = self._inflight.get(key)
        return run is not None and not run.done

    def start(self, context: ContextInput, *, force: bool = False) -> AnalysisRun:
        """
        Start (or join, or serve from cache) the run for context.

        Synchronous: validation, key derivation and the local cache lookup
        never touch I/O; the shared cache and the record store are consulted
        inside the run task. Must be called with a running event loop when a
        dispatch is needed. Raises InvalidContext before anything is dispatched.
        """
        ctx = coerce_context(context)
        key = analysis_key(ctx)

        existing = self._inflight.get(key)
        if existing is not None and not existing.done:
            ANALYSIS_RUNS.labels(outcome="joined").inc()
            logger.info("analysis_joined key=%s", key)
            return existing

        if force:
            self.cache.invalidate(key)
        else:
            cached = self.cache.get_fresh(key)
            if cached is not None:
                ANALYSIS_RUNS.labels(outcome="cache_hit").inc()
                logger.info("analysis_cache_hit key=%s", key)
                return AnalysisRun.completed(key, ctx, cached)

        run = AnalysisRun(key, ctx, ProgressReporter())
        loop = asyncio.get_running_loop()
        run._task = loop.create_task(self._execute(run, restore=not force))
        self._inflight[key] = run
        run._task.add_done_callback(lambda _task: self._release(run))
        return run

    async def run(self, context: ContextInput, *, force: bool = False) -> AnalysisAggregate:
        return await self.start(context, force=force).wait()

    # ── internals ───────────────────────────────────────────────────

    def _release(self, run: AnalysisRun) -> None:
        if self._inflight.get(run.key) is run:
            self._inflight.pop(run.key, None)
        if run._task is not None and not run._task.cancelled() and run._task.exception() is not None:
            logger.error("analysis_run_failed key=%s err=%s", run.key, run._task.exception())

    async def _execute(self, run: AnalysisRun, *, restore: bool) -> AnalysisAggregate:
        if restore:
            shared = await self.cache.fetch_shared(run.key)
            if shared is not None:
                ANALYSIS_RUNS.labels(outcome="shared_cache_hit").inc()
                run.from_cache = True
                run._aggregate = shared
                run.reporter.complete()
                logger.info("analysis_shared_cache_hit key=%s", run.key)
                return shared

            restored = await self._restore(run.key)
            if restored is not None:
                ANALYSIS_RUNS.labels(outcome="restored").inc()
                self.cache.put(restored)
                await self.cache.publish(restored)
                run.from_cache = True
                run._aggregate = restored
                run.reporter.complete()
                logger.info("analysis_restored key=%s", run.key)
                return restored
        else:
            await self.cache.invalidate_shared(run.key)

        ANALYSIS_RUNS.labels(outcome="dispatched").inc()
        run.reporter.dispatched()
        logger.info(
            "analysis_dispatched key=%s markets=%s area=%s",
            run.key, ",".join(run.context.target_markets), run.context.therapeutic_area,
        )

        results: List[SubAnalysisResult] = await asyncio.gather(
            *(self._invoke(kind, run) for kind in ANALYSIS_KINDS)
        )
        sub_results = dict(zip(ANALYSIS_KINDS, results))

        outcome = self._aggregator.aggregate(sub_results)
        aggregate = AnalysisAggregate(
            key=run.key,
            context=run.context,
            sub_results=sub_results,
            overall_score=outcome.overall_score,
            status_tier=outcome.status_tier,
            degraded=outcome.degraded,
            fallback_kinds=outcome.fallback_kinds,
            quality_gates=outcome.quality_gates,
            computed_at=self._clock(),
        )
        self.cache.put(aggregate)
        await self.cache.publish(aggregate)
        run._aggregate = aggregate
        run.reporter.complete()
        logger.info(
            "analysis_completed key=%s score=%.2f tier=%s degraded=%s",
            run.key, aggregate.overall_score, aggregate.status_tier, aggregate.degraded,
        )
        return aggregate

    async def _restore(self, key: str) -> Optional[AnalysisAggregate]:
        if self._store is None:
            return None
        try:
            record = await self._store.get(key)
        except PersistenceError as exc:
            logger.warning("analysis_restore_failed key=%s err=%s", key, exc)
            return None
        if record is None or record.aggregate.key != key:
            return None
        if self.cache.is_stale(record.aggregate):
            return None
        return record.aggregate

    async def _invoke(self, kind: AnalysisKind, run: AnalysisRun) -> SubAnalysisResult:
        client = self._clients[kind]
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(client.analyze(run.context), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            result = self._fallback(kind, run.key, "timeout", SubAnalysisTimeout(kind, self._timeout_s))
        except Exception as exc:
            err = exc if isinstance(exc, SubAnalysisError) else SubAnalysisError(kind, str(exc) or type(exc).__name__)
            result = self._fallback(kind, run.key, "error", err)
        else:
            if not isinstance(result, SubAnalysisResult) or result.kind != kind:
                result = self._fallback(
                    kind, run.key, "invalid_result", SubAnalysisError(kind, "unexpected result shape")
                )
            elif result.status == "error":
                result = self._fallback(
                    kind, run.key, "error", SubAnalysisError(kind, result.error or "reported error")
                )
        finally:
            SUB_ANALYSIS_DURATION.labels(kind=kind).observe(time.perf_counter() - start)

        run.reporter.settled(kind)
        return result

    def _fallback(self, kind: AnalysisKind, key: str, reason: str, err: SubAnalysisError) -> SubAnalysisResult:
        SUB_ANALYSIS_FALLBACKS.labels(kind=kind, reason=reason).inc()
        logger.warning("sub_analysis_fallback key=%s kind=%s reason=%s err=%s", key, kind, reason, err)
        return fallback_result(kind, self._fallback_score, str(err))
