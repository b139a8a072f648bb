# services/intelligence/service.py
from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Callable, Dict, Mapping, Optional, Set

from config.intelligence_config import IntelligenceConfig
from schemas.intelligence import AnalysisKind

from .aggregate_cache import Clock
from .autosave import AutoSavePersister
from .clients import SubAnalysisClient, build_clients
from .orchestrator import AnalysisOrchestrator
from .record_store import InMemoryRecordStore, RecordStore, SqlRecordStore
from .session import IntelligenceSession

logger = logging.getLogger(__name__)


def build_record_store(config: IntelligenceConfig) -> RecordStore:
    if config.record_store == "sql":
        from database import SessionLocal

        return SqlRecordStore(SessionLocal)
    if config.record_store != "memory":
        logger.warning("record_store_unknown value=%s; using memory", config.record_store)
    return InMemoryRecordStore()


class IntelligenceService:
    """
    Process-wide wiring: one orchestrator (and aggregate cache) shared by all
    sessions, plus the session registry.

    The registry is bounded: sessions idle for ``session_idle_s`` are dropped
    on access, and creating a session beyond ``max_sessions`` evicts the least
    recently used one. An evicted session is closed, which flushes its
    pending auto-save.
    """

    def __init__(
        self,
        config: IntelligenceConfig,
        *,
        clients: Optional[Mapping[AnalysisKind, SubAnalysisClient]] = None,
        store: Optional[RecordStore] = None,
        clock: Optional[Clock] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.store = store if store is not None else build_record_store(config)
        self._clock = clock
        self._monotonic = monotonic
        self.orchestrator = AnalysisOrchestrator.from_config(
            config,
            clients if clients is not None else build_clients(config),
            store=self.store,
            clock=clock,
        )
        self._sessions: "OrderedDict[str, IntelligenceSession]" = OrderedDict()
        self._last_seen: Dict[str, float] = {}
        self._closing: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def create_session(self, session_id: Optional[str] = None) -> IntelligenceSession:
        self._evict_idle()
        while len(self._sessions) >= self.config.max_sessions:
            oldest = next(iter(self._sessions))
            self._evict(oldest, "capacity")

        persister = AutoSavePersister.from_config(self.store, self.config, clock=self._clock)
        session = IntelligenceSession(self.orchestrator, persister, session_id=session_id)
        self._sessions[session.session_id] = session
        self._last_seen[session.session_id] = self._monotonic()
        logger.info("intelligence_session_created session=%s active=%s", session.session_id, len(self._sessions))
        return session

    def get_session(self, session_id: str) -> Optional[IntelligenceSession]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._is_idle(session_id):
            self._evict(session_id, "idle")
            return None
        self._sessions.move_to_end(session_id)
        self._last_seen[session_id] = self._monotonic()
        return session

    async def close_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        self._last_seen.pop(session_id, None)
        if session is None:
            return False
        status = await session.aclose()
        if status.dirty:
            logger.warning("intelligence_unsaved_on_close session=%s err=%s", session_id, status.last_error)
        logger.info("intelligence_session_closed session=%s", session_id)
        return True

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            await self.close_session(session_id)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    # ── internals ───────────────────────────────────────────────────

    def _is_idle(self, session_id: str) -> bool:
        seen = self._last_seen.get(session_id)
        return seen is not None and self._monotonic() - seen > self.config.session_idle_s

    def _evict_idle(self) -> None:
        for session_id in [sid for sid in self._sessions if self._is_idle(sid)]:
            self._evict(session_id, "idle")

    def _evict(self, session_id: str, reason: str) -> None:
        session = self._sessions.pop(session_id, None)
        self._last_seen.pop(session_id, None)
        if session is None:
            return
        logger.info("intelligence_session_evicted session=%s reason=%s", session_id, reason)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if session.save_status().dirty:
                logger.warning("intelligence_unsaved_on_evict session=%s", session_id)
            return
        task = loop.create_task(session.aclose())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)


_service: Optional[IntelligenceService] = None


def get_intelligence_service() -> IntelligenceService:
    global _service
    if _service is None:
        _service = IntelligenceService(IntelligenceConfig.from_env())
    return _service
