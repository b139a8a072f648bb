# services/intelligence/session.py
from __future__ import annotations

import logging
import uuid
import weakref
from typing import Optional

from schemas.intelligence import (
    AnalysisAggregate,
    AnalysisContext,
    GateState,
    PersistenceRecord,
    ProgressSnapshot,
    SaveStatus,
)

from .analysis_key import ContextInput, analysis_key, coerce_context
from .autosave import AutoSavePersister
from .errors import InvalidContext
from .orchestrator import AnalysisOrchestrator, AnalysisRun
from .workflow_gate import WorkflowGate

logger = logging.getLogger(__name__)


class IntelligenceSession:
    """
    One user's intelligence step: the current context, its run, the gate and
    auto-save.

    Last context wins. When the context changes, the previous run keeps going
    (its result lands in the shared cache under its own key) but it can no
    longer open this session's gate or replace the visible aggregate.
    """

    def __init__(
        self,
        orchestrator: AnalysisOrchestrator,
        persister: AutoSavePersister,
        *,
        session_id: Optional[str] = None,
        gate: Optional[WorkflowGate] = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.gate = gate or WorkflowGate()
        self._orchestrator = orchestrator
        self._persister = persister
        self._context: Optional[AnalysisContext] = None
        self._run: Optional[AnalysisRun] = None
        self._aggregate: Optional[AnalysisAggregate] = None
        # runs that already carry this session's completion callback
        self._watched: "weakref.WeakSet[AnalysisRun]" = weakref.WeakSet()
        self._closed = False

    @property
    def context(self) -> Optional[AnalysisContext]:
        return self._context

    @property
    def key(self) -> Optional[str]:
        return self.gate.key

    # ── workflow consumer API ───────────────────────────────────────

    def start_analysis(self, context: ContextInput, *, force: bool = False) -> str:
        ctx = coerce_context(context)
        key = analysis_key(ctx)

        current = self._run
        if (
            current is not None
            and current.key == key
            and not current.done
            and self.gate.state == GateState.RUNNING
            and self.gate.key == key
        ):
            return key

        self.update_context(ctx)

        run = self._orchestrator.start(ctx, force=force)
        self._run = run
        self.gate.begin(key)

        if run.aggregate is not None:
            self._on_run_done(run)
        elif run not in self._watched:
            self._watched.add(run)
            run.add_done_callback(self._on_run_done)
        return key

    def update_context(self, context: ContextInput) -> str:
        """Record a context edit without dispatching. A different key closes the gate (stale)."""
        ctx = coerce_context(context)
        key = analysis_key(ctx)
        if key != self.gate.key:
            self._aggregate = None
        self.gate.context_changed(key)
        self._context = ctx
        return key

    def force_reanalyze(self) -> str:
        if self._context is None:
            raise InvalidContext("no analysis context to re-analyse")
        if self.gate.state == GateState.READY:
            self.gate.force()
        return self.start_analysis(self._context, force=True)

    def get_progress(self) -> ProgressSnapshot:
        if self._run is None:
            return ProgressSnapshot()
        return self._run.reporter.snapshot

    def get_aggregate(self) -> Optional[AnalysisAggregate]:
        agg = self._aggregate
        if agg is None or agg.key != self.gate.key:
            return None
        return agg

    def get_gate_state(self) -> GateState:
        return self.gate.state

    def advance(self) -> AnalysisAggregate:
        """Hand the aggregate to the next workflow step. Raises GateClosed unless ready."""
        key = self.gate.advance()
        aggregate = self.get_aggregate()
        if aggregate is None:
            # gate and aggregate are updated together; reaching this is a bug
            raise RuntimeError(f"gate ready for {key} without an aggregate")
        logger.info("intelligence_step_completed session=%s key=%s tier=%s", self.session_id, key, aggregate.status_tier)
        return aggregate

    async def wait(self) -> Optional[AnalysisAggregate]:
        """Await the current run (if any) and return the visible aggregate."""
        run = self._run
        if run is None:
            return None
        try:
            await run.wait()
        except Exception as exc:
            logger.warning("intelligence_wait_failed session=%s key=%s err=%s", self.session_id, run.key, exc)
        return self.get_aggregate()

    async def flush(self) -> SaveStatus:
        await self._persister.flush()
        return self._persister.status()

    def save_status(self) -> SaveStatus:
        return self._persister.status()

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self) -> SaveStatus:
        """Flush pending saves and stop reacting to run completions."""
        self._closed = True
        await self._persister.aclose()
        return self._persister.status()

    # ── internals ───────────────────────────────────────────────────

    def _on_run_done(self, run: AnalysisRun) -> None:
        if self._closed:
            return
        if run is not self._run or run.key != self.gate.key:
            logger.info("analysis_superseded session=%s key=%s", self.session_id, run.key)
            return

        aggregate = run.aggregate
        if aggregate is None:
            logger.error(
                "analysis_run_unfinished session=%s key=%s err=%s",
                self.session_id, run.key, run.failure(),
            )
            self.gate.fail(run.key)
            return

        self._aggregate = aggregate
        if not self.gate.complete(run.key):
            return
        if run.from_cache:
            return

        ctx = run.context
        self._persister.schedule(
            PersistenceRecord(
                key=run.key,
                aggregate=aggregate,
                project_id=ctx.project_id,
                market=ctx.primary_market,
            )
        )
