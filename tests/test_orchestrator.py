import asyncio
import time
import unittest
from datetime import datetime, timedelta, timezone

from config.intelligence_config import IntelligenceConfig
from schemas.intelligence import PersistenceRecord, SubAnalysisResult
from services.intelligence.aggregate_cache import AggregateCache
from services.intelligence.clients import StaticSubAnalysisClient
from services.intelligence.errors import InvalidContext
from services.intelligence.orchestrator import AnalysisOrchestrator
from services.intelligence.readiness import ReadinessAggregator, ReadinessPolicy
from services.intelligence.record_store import InMemoryRecordStore

CTX = {
    "asset_id": "A1",
    "brand_id": "B1",
    "target_markets": ["JP", "DE"],
    "therapeutic_area": "oncology",
}
SCORES = {"terminology": 90, "cultural": 82, "regulatory": 65, "quality": 88}
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


class _GatedClient:
    """Returns a fixed score once its event is set."""

    def __init__(self, kind, score):
        self.kind = kind
        self.score = score
        self.release = asyncio.Event()
        self.calls = 0

    async def analyze(self, context):
        self.calls += 1
        await self.release.wait()
        return SubAnalysisResult(kind=self.kind, score=self.score)


class _FailingClient:
    def __init__(self, kind):
        self.kind = kind
        self.calls = 0

    async def analyze(self, context):
        self.calls += 1
        raise RuntimeError("engine unavailable")


class _HangingClient:
    def __init__(self, kind):
        self.kind = kind

    async def analyze(self, context):
        await asyncio.sleep(3600)


class _WrongKindClient:
    def __init__(self, kind):
        self.kind = kind

    async def analyze(self, context):
        return SubAnalysisResult(kind="quality", score=99)


class _SlowRedis:
    """Sync redis stand-in whose reads block the calling thread."""

    def __init__(self, delay_s=0.0):
        self.delay_s = delay_s
        self.data = {}

    def get(self, key):
        time.sleep(self.delay_s)
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)


def _static(**overrides):
    clients = {k: StaticSubAnalysisClient(k, s) for k, s in SCORES.items()}
    clients.update(overrides)
    return clients


def _orchestrator(clients, clock=None, store=None, timeout_s=1.0):
    clock = clock or _Clock()
    return AnalysisOrchestrator(
        clients,
        cache=AggregateCache(stale_after_s=1800, clock=clock, use_redis=False),
        aggregator=ReadinessAggregator(ReadinessPolicy()),
        store=store,
        timeout_s=timeout_s,
        fallback_score=50.0,
        clock=clock,
    )


class OrchestratorDispatchTests(unittest.TestCase):
    def test_aggregate_from_four_results(self):
        async def run():
            orch = _orchestrator(_static())
            return await orch.run(CTX)

        agg = asyncio.run(run())
        self.assertEqual(agg.overall_score, 81.25)
        self.assertEqual(agg.status_tier, "needs_review")
        self.assertEqual(list(agg.sub_results), ["terminology", "cultural", "regulatory", "quality"])
        self.assertEqual(agg.context.target_markets, ("JP", "DE"))
        self.assertEqual(agg.computed_at, T0)

    def test_concurrent_runs_share_one_dispatch(self):
        async def run():
            clients = _static()
            orch = _orchestrator(clients)
            first, second = await asyncio.gather(orch.run(CTX), orch.run(dict(CTX, target_markets=["DE", "JP"])))
            return clients, first, second

        clients, first, second = asyncio.run(run())
        self.assertIs(first, second)
        for client in clients.values():
            self.assertEqual(client.calls, 1)

    def test_second_run_within_window_dispatches_nothing(self):
        async def run():
            clients = _static()
            orch = _orchestrator(clients)
            first = await orch.run(CTX)
            handle = orch.start(CTX)
            second = await handle.wait()
            return clients, first, second, handle

        clients, first, second, handle = asyncio.run(run())
        self.assertIs(first, second)
        self.assertTrue(handle.from_cache)
        self.assertEqual(handle.reporter.snapshot.percent, 100)
        self.assertTrue(all(c.calls == 1 for c in clients.values()))

    def test_stale_entry_is_recomputed(self):
        async def run():
            clock = _Clock()
            clients = _static()
            orch = _orchestrator(clients, clock=clock)
            await orch.run(CTX)
            clock.now = T0 + timedelta(seconds=1801)
            again = await orch.run(CTX)
            return clients, again

        clients, again = asyncio.run(run())
        self.assertEqual(again.computed_at, T0 + timedelta(seconds=1801))
        self.assertTrue(all(c.calls == 2 for c in clients.values()))

    def test_force_bypasses_cache(self):
        async def run():
            clients = _static()
            orch = _orchestrator(clients)
            await orch.run(CTX)
            await orch.run(CTX, force=True)
            return clients

        clients = asyncio.run(run())
        self.assertTrue(all(c.calls == 2 for c in clients.values()))

    def test_invalid_context_dispatches_nothing(self):
        async def run():
            clients = _static()
            orch = _orchestrator(clients)
            with self.assertRaises(InvalidContext):
                orch.start(dict(CTX, target_markets=[]))
            return clients

        clients = asyncio.run(run())
        self.assertTrue(all(c.calls == 0 for c in clients.values()))

    def test_missing_client_rejected(self):
        clients = _static()
        clients.pop("regulatory")
        with self.assertRaises(ValueError):
            AnalysisOrchestrator(clients)


class OrchestratorCacheTests(unittest.TestCase):
    def test_injected_empty_cache_is_used(self):
        mine = AggregateCache(stale_after_s=5, clock=_Clock(), use_redis=False)
        orch = AnalysisOrchestrator(_static(), cache=mine)
        self.assertEqual(len(mine), 0)
        self.assertIs(orch.cache, mine)

        orch = AnalysisOrchestrator.from_config(IntelligenceConfig(), _static(), cache=mine)
        self.assertIs(orch.cache, mine)

    def test_from_config_applies_stale_window(self):
        orch = AnalysisOrchestrator.from_config(IntelligenceConfig(stale_after_s=5.0), _static())
        self.assertEqual(orch.cache.stale_after, timedelta(seconds=5))

    def test_injected_short_window_recomputes(self):
        async def run():
            clock = _Clock()
            clients = _static()
            orch = AnalysisOrchestrator(
                clients,
                cache=AggregateCache(stale_after_s=5, clock=clock, use_redis=False),
                clock=clock,
            )
            await orch.run(CTX)
            clock.now = T0 + timedelta(seconds=6)
            await orch.run(CTX)
            return clients

        clients = asyncio.run(run())
        self.assertTrue(all(c.calls == 2 for c in clients.values()))

    def test_start_does_not_wait_on_shared_cache(self):
        async def run():
            clock = _Clock()
            redis = _SlowRedis(delay_s=0.2)
            orch = AnalysisOrchestrator(
                _static(),
                cache=AggregateCache(clock=clock, redis_client=redis),
                clock=clock,
            )
            began = time.perf_counter()
            handle = orch.start(CTX)
            elapsed = time.perf_counter() - began
            self.assertFalse(handle.done)
            agg = await handle.wait()
            return elapsed, redis, agg

        elapsed, redis, agg = asyncio.run(run())
        self.assertLess(elapsed, 0.1)
        self.assertEqual(len(redis.data), 1)
        self.assertEqual(agg.overall_score, 81.25)

    def test_other_worker_result_served_from_shared_cache(self):
        async def run():
            clock = _Clock()
            redis = _SlowRedis()
            first = AnalysisOrchestrator(
                _static(), cache=AggregateCache(clock=clock, redis_client=redis), clock=clock
            )
            await first.run(CTX)

            clients = _static()
            second = AnalysisOrchestrator(
                clients, cache=AggregateCache(clock=clock, redis_client=redis), clock=clock
            )
            handle = second.start(CTX)
            agg = await handle.wait()
            return clients, second, handle, agg

        clients, second, handle, agg = asyncio.run(run())
        self.assertTrue(handle.from_cache)
        self.assertEqual(agg.overall_score, 81.25)
        self.assertIn(agg.key, second.cache)
        self.assertTrue(all(c.calls == 0 for c in clients.values()))

    def test_force_clears_shared_entry(self):
        async def run():
            clock = _Clock()
            redis = _SlowRedis()
            clients = _static()
            orch = AnalysisOrchestrator(clients, cache=AggregateCache(clock=clock, redis_client=redis), clock=clock)
            await orch.run(CTX)
            await orch.run(CTX, force=True)
            return clients, redis

        clients, redis = asyncio.run(run())
        self.assertTrue(all(c.calls == 2 for c in clients.values()))
        self.assertEqual(len(redis.data), 1)


class OrchestratorOrderingTests(unittest.TestCase):
    def _run_with_release_order(self, order):
        async def run():
            clients = {k: _GatedClient(k, s) for k, s in SCORES.items()}
            orch = _orchestrator(clients)
            handle = orch.start(CTX)
            await asyncio.sleep(0)
            percents = []
            for kind in order:
                clients[kind].release.set()
                await asyncio.sleep(0.01)
                percents.append(handle.reporter.snapshot.percent)
                if kind != order[-1]:
                    self.assertIsNone(handle.aggregate)
                    self.assertNotIn(handle.key, orch.cache)
            return await handle.wait(), percents

        return asyncio.run(run())

    def test_completion_order_does_not_change_aggregate(self):
        forward, _ = self._run_with_release_order(["terminology", "cultural", "regulatory", "quality"])
        backward, _ = self._run_with_release_order(["quality", "regulatory", "cultural", "terminology"])
        self.assertEqual(forward, backward)

    def test_no_partial_aggregate_and_monotonic_progress(self):
        agg, percents = self._run_with_release_order(["regulatory", "quality", "terminology", "cultural"])
        self.assertEqual(percents, [30, 50, 70, 100])
        self.assertEqual(agg.overall_score, 81.25)


class OrchestratorFallbackTests(unittest.TestCase):
    def test_failing_client_falls_back(self):
        async def run():
            orch = _orchestrator(_static(cultural=_FailingClient("cultural")))
            return await orch.run(CTX)

        agg = asyncio.run(run())
        self.assertTrue(agg.degraded)
        self.assertEqual(agg.fallback_kinds, ("cultural",))
        self.assertEqual(agg.sub_results["cultural"].score, 50.0)
        self.assertEqual(agg.sub_results["cultural"].findings[0].category, "analysis_unavailable")
        self.assertEqual(agg.status_tier, "needs_review")

    def test_hanging_client_times_out(self):
        async def run():
            orch = _orchestrator(_static(regulatory=_HangingClient("regulatory")), timeout_s=0.05)
            return await orch.run(CTX)

        agg = asyncio.run(run())
        self.assertEqual(agg.fallback_kinds, ("regulatory",))
        self.assertIn("timeout", agg.sub_results["regulatory"].error)
        self.assertIn(agg.status_tier, ("needs_review",))

    def test_all_failing_still_aggregates(self):
        async def run():
            clients = {k: _FailingClient(k) for k in SCORES}
            orch = _orchestrator(clients)
            return await orch.run(CTX)

        agg = asyncio.run(run())
        self.assertEqual(agg.overall_score, 50.0)
        self.assertEqual(len(agg.fallback_kinds), 4)
        self.assertEqual(agg.status_tier, "needs_review")

    def test_wrong_kind_result_is_replaced(self):
        async def run():
            orch = _orchestrator(_static(terminology=_WrongKindClient("terminology")))
            return await orch.run(CTX)

        agg = asyncio.run(run())
        self.assertEqual(agg.sub_results["terminology"].kind, "terminology")
        self.assertTrue(agg.sub_results["terminology"].is_fallback)

    def test_reported_error_status_is_replaced(self):
        class _ErrorStatusClient:
            kind = "quality"

            async def analyze(self, context):
                return SubAnalysisResult(kind="quality", score=0, status="error", error="model offline")

        async def run():
            orch = _orchestrator(_static(quality=_ErrorStatusClient()))
            return await orch.run(CTX)

        agg = asyncio.run(run())
        self.assertEqual(agg.sub_results["quality"].score, 50.0)
        self.assertEqual(agg.fallback_kinds, ("quality",))


class OrchestratorRestoreTests(unittest.TestCase):
    def _saved_store(self, computed_at):
        async def build():
            orch = _orchestrator(_static(), clock=_Clock(computed_at))
            agg = await orch.run(CTX)
            store = InMemoryRecordStore()
            await store.put(agg.key, PersistenceRecord(key=agg.key, aggregate=agg, market="JP"))
            return store

        return asyncio.run(build())

    def test_restores_saved_aggregate_without_dispatch(self):
        store = self._saved_store(T0)

        async def run():
            clients = _static()
            orch = _orchestrator(clients, store=store)
            handle = orch.start(CTX)
            agg = await handle.wait()
            return clients, handle, agg

        clients, handle, agg = asyncio.run(run())
        self.assertTrue(handle.from_cache)
        self.assertEqual(agg.overall_score, 81.25)
        self.assertTrue(all(c.calls == 0 for c in clients.values()))

    def test_stale_saved_aggregate_is_recomputed(self):
        store = self._saved_store(T0 - timedelta(hours=2))

        async def run():
            clients = _static()
            orch = _orchestrator(clients, store=store)
            handle = orch.start(CTX)
            await handle.wait()
            return clients, handle

        clients, handle = asyncio.run(run())
        self.assertFalse(handle.from_cache)
        self.assertTrue(all(c.calls == 1 for c in clients.values()))


if __name__ == "__main__":
    unittest.main()
