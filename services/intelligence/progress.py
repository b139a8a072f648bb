# services/intelligence/progress.py
from __future__ import annotations

import logging
from typing import Callable, List, Set

from schemas.intelligence import ANALYSIS_KINDS, ProgressPhase, ProgressSnapshot

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressSnapshot], None]

DISPATCHED_PERCENT = 10
PER_SETTLED_PERCENT = 20
AGGREGATING_PERCENT = 90
COMPLETE_PERCENT = 100


class ProgressReporter:
    """
    Turns run lifecycle events into a monotonic 0..100 progress value.

    dispatched=10, each settled sub-analysis +20 (30/50/70), all four settled
    = aggregating (90), aggregate built = complete (100). Updates that would
    lower the value or repeat the current snapshot are dropped, so listeners
    never see a value twice or out of order.
    """

    def __init__(self, total: int = len(ANALYSIS_KINDS)) -> None:
        self._total = total
        self._settled: Set[str] = set()
        self._snapshot = ProgressSnapshot(total=total)
        self._listeners: List[ProgressListener] = []

    @property
    def snapshot(self) -> ProgressSnapshot:
        return self._snapshot

    @property
    def is_complete(self) -> bool:
        return self._snapshot.phase == ProgressPhase.COMPLETE

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def dispatched(self) -> None:
        self._emit(DISPATCHED_PERCENT, ProgressPhase.DISPATCHED)

    def settled(self, kind: str) -> None:
        if kind in self._settled:
            return
        self._settled.add(kind)
        n = len(self._settled)
        if n >= self._total:
            self._emit(AGGREGATING_PERCENT, ProgressPhase.AGGREGATING)
        else:
            self._emit(DISPATCHED_PERCENT + PER_SETTLED_PERCENT * n, ProgressPhase.PARTIAL)

    def complete(self) -> None:
        self._emit(COMPLETE_PERCENT, ProgressPhase.COMPLETE)

    def _emit(self, percent: int, phase: ProgressPhase) -> None:
        current = self._snapshot
        percent = max(0, min(COMPLETE_PERCENT, percent))
        if percent <= current.percent:
            return
        self._snapshot = ProgressSnapshot(
            percent=percent,
            phase=phase,
            settled=len(self._settled),
            total=self._total,
        )
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception:
                logger.exception("progress_listener_failed percent=%s phase=%s", percent, phase.value)
