import asyncio
import unittest
from datetime import datetime, timezone

from schemas.intelligence import GateState
from services.intelligence.aggregate_cache import AggregateCache
from services.intelligence.analysis_key import analysis_key
from services.intelligence.autosave import AutoSavePersister
from services.intelligence.clients import StaticSubAnalysisClient
from services.intelligence.errors import GateClosed, InvalidContext
from services.intelligence.orchestrator import AnalysisOrchestrator
from services.intelligence.record_store import InMemoryRecordStore
from services.intelligence.session import IntelligenceSession

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
CTX_JP_DE = {
    "asset_id": "A1",
    "brand_id": "B1",
    "target_markets": ["JP", "DE"],
    "therapeutic_area": "oncology",
    "project_id": "P1",
}
CTX_JP_FR = dict(CTX_JP_DE, target_markets=["JP", "FR"])
SCORES = {"terminology": 90, "cultural": 82, "regulatory": 65, "quality": 88}


class _BrokenAggregator:
    def aggregate(self, sub_results):
        raise RuntimeError("scoring bug")


def _clients(delay_s=0.0):
    return {k: StaticSubAnalysisClient(k, s, delay_s=delay_s) for k, s in SCORES.items()}


def _orchestrator(clients, **kwargs):
    clock = lambda: T0
    return AnalysisOrchestrator(
        clients,
        cache=AggregateCache(clock=clock, use_redis=False),
        timeout_s=1.0,
        clock=clock,
        **kwargs,
    )


def _session(orchestrator, store=None):
    if store is None:
        store = InMemoryRecordStore()
    persister = AutoSavePersister(store, debounce_s=0.01, clock=lambda: T0)
    return IntelligenceSession(orchestrator, persister)


class IntelligenceSessionTests(unittest.TestCase):
    def test_run_to_ready_and_autosave(self):
        async def run():
            store = InMemoryRecordStore()
            session = _session(_orchestrator(_clients()), store)
            self.assertEqual(session.get_progress().percent, 0)
            key = session.start_analysis(CTX_JP_DE)
            self.assertEqual(session.get_gate_state(), GateState.RUNNING)
            aggregate = await session.wait()
            await asyncio.sleep(0.05)
            saved = await store.get(key)
            return session, key, aggregate, saved

        session, key, aggregate, saved = asyncio.run(run())
        self.assertEqual(session.get_gate_state(), GateState.READY)
        self.assertEqual(aggregate.key, key)
        self.assertEqual(session.get_progress().percent, 100)
        self.assertIs(session.advance(), aggregate)
        self.assertEqual(saved.project_id, "P1")
        self.assertEqual(saved.market, "JP")
        self.assertFalse(session.save_status().dirty)

    def test_market_change_mid_run_goes_stale(self):
        async def run():
            orchestrator = _orchestrator(_clients(delay_s=0.05))
            session = _session(orchestrator)
            first_key = session.start_analysis(CTX_JP_DE)
            await asyncio.sleep(0.01)
            session.update_context(CTX_JP_FR)
            self.assertEqual(session.get_gate_state(), GateState.STALE)
            await asyncio.sleep(0.15)
            return orchestrator, session, first_key

        orchestrator, session, first_key = asyncio.run(run())
        self.assertEqual(session.get_gate_state(), GateState.STALE)
        self.assertIsNone(session.get_aggregate())
        with self.assertRaises(GateClosed):
            session.advance()
        # superseded result is still cached under its own key
        self.assertIn(first_key, orchestrator.cache)
        self.assertFalse(session.save_status().dirty)

    def test_new_context_supersedes_running_one(self):
        async def run():
            session = _session(_orchestrator(_clients(delay_s=0.05)))
            session.start_analysis(CTX_JP_DE)
            await asyncio.sleep(0.01)
            second_key = session.start_analysis(CTX_JP_FR)
            aggregate = await session.wait()
            await asyncio.sleep(0.1)
            return session, second_key, aggregate

        session, second_key, aggregate = asyncio.run(run())
        self.assertEqual(session.get_gate_state(), GateState.READY)
        self.assertEqual(session.key, second_key)
        self.assertEqual(aggregate.key, second_key)
        self.assertEqual(session.get_aggregate().context.target_markets, ("JP", "FR"))

    def test_restart_same_context_while_running_is_joined(self):
        async def run():
            clients = _clients(delay_s=0.02)
            session = _session(_orchestrator(clients))
            k1 = session.start_analysis(CTX_JP_DE)
            k2 = session.start_analysis(dict(CTX_JP_DE, target_markets=["DE", "JP"]))
            await session.wait()
            return clients, k1, k2

        clients, k1, k2 = asyncio.run(run())
        self.assertEqual(k1, k2)
        self.assertTrue(all(c.calls == 1 for c in clients.values()))

    def test_rejoining_run_after_context_flip_completes_once(self):
        async def run():
            clients = _clients(delay_s=0.05)
            session = _session(_orchestrator(clients))
            done = []
            on_done = session._on_run_done

            def counting(run):
                done.append(run.key)
                on_done(run)

            session._on_run_done = counting
            k1 = session.start_analysis(CTX_JP_DE)
            await asyncio.sleep(0.01)
            session.update_context(CTX_JP_FR)
            self.assertEqual(session.start_analysis(CTX_JP_DE), k1)
            await session.wait()
            await asyncio.sleep(0.05)
            return clients, session, k1, done

        clients, session, k1, done = asyncio.run(run())
        self.assertEqual(done, [k1])
        self.assertEqual(session.get_gate_state(), GateState.READY)
        self.assertTrue(all(c.calls == 1 for c in clients.values()))

    def test_closed_session_ignores_late_completion(self):
        async def run():
            store = InMemoryRecordStore()
            session = _session(_orchestrator(_clients(delay_s=0.05)), store)
            key = session.start_analysis(CTX_JP_DE)
            status = await session.aclose()
            await asyncio.sleep(0.1)
            return session, store, key, status

        session, store, key, status = asyncio.run(run())
        self.assertTrue(session.closed)
        self.assertFalse(status.dirty)
        self.assertEqual(session.get_gate_state(), GateState.RUNNING)
        self.assertEqual(len(store), 0)

    def test_cache_hit_opens_gate_immediately(self):
        async def run():
            orchestrator = _orchestrator(_clients())
            first = _session(orchestrator)
            first.start_analysis(CTX_JP_DE)
            await first.wait()

            second = _session(orchestrator)
            second.start_analysis(CTX_JP_DE)
            return second

        second = asyncio.run(run())
        self.assertEqual(second.get_gate_state(), GateState.READY)
        self.assertIsNotNone(second.get_aggregate())
        self.assertFalse(second.save_status().dirty)

    def test_force_reanalyze(self):
        async def run():
            clients = _clients()
            session = _session(_orchestrator(clients))
            session.start_analysis(CTX_JP_DE)
            await session.wait()
            session.force_reanalyze()
            self.assertEqual(session.get_gate_state(), GateState.RUNNING)
            await session.wait()
            return clients, session

        clients, session = asyncio.run(run())
        self.assertEqual(session.get_gate_state(), GateState.READY)
        self.assertTrue(all(c.calls == 2 for c in clients.values()))

    def test_force_reanalyze_without_context(self):
        session = _session(_orchestrator(_clients()))
        with self.assertRaises(InvalidContext):
            session.force_reanalyze()

    def test_invalid_context_leaves_gate_idle(self):
        async def run():
            session = _session(_orchestrator(_clients()))
            with self.assertRaises(InvalidContext):
                session.start_analysis(dict(CTX_JP_DE, asset_id=""))
            return session

        session = asyncio.run(run())
        self.assertEqual(session.get_gate_state(), GateState.IDLE)
        self.assertIsNone(session.context)

    def test_run_failure_leaves_gate_restartable(self):
        async def run():
            session = _session(_orchestrator(_clients(), aggregator=_BrokenAggregator()))
            key = session.start_analysis(CTX_JP_DE)
            with self.assertLogs("services.intelligence.session", level="ERROR"):
                aggregate = await session.wait()
            return session, key, aggregate

        session, key, aggregate = asyncio.run(run())
        self.assertIsNone(aggregate)
        self.assertEqual(session.get_gate_state(), GateState.STALE)
        self.assertEqual(session.key, key)
        self.assertEqual(key, analysis_key(CTX_JP_DE))


if __name__ == "__main__":
    unittest.main()
