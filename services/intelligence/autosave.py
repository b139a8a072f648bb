# services/intelligence/autosave.py
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from prometheus_client import Counter
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.intelligence_config import IntelligenceConfig
from schemas.intelligence import PersistenceRecord, SaveStatus

from .aggregate_cache import Clock, utc_now
from .errors import PersistenceError
from .record_store import RecordStore

logger = logging.getLogger(__name__)

AUTOSAVE_WRITES = Counter(
    "intelligence_autosave_writes_total",
    "Auto-save write outcomes",
    ["outcome"],
)


class AutoSavePersister:
    """
    Debounced, retried writer of PersistenceRecords.

    ``schedule`` keeps only the latest record per key and restarts a trailing
    debounce timer; when it fires every pending record is written once. A
    pending entry is cleared only after its write is confirmed and no newer
    revision was scheduled meanwhile. Owns the dirty flag, revisions and the
    last-saved timestamp.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        debounce_s: float = 2.0,
        max_attempts: int = 3,
        backoff_base_s: float = 0.5,
        backoff_max_s: float = 4.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._debounce_s = debounce_s
        self._max_attempts = max(1, max_attempts)
        self._backoff_base_s = backoff_base_s
        self._backoff_max_s = backoff_max_s
        self._clock = clock or utc_now

        self._pending: Dict[str, PersistenceRecord] = {}
        self._revision = 0
        self._timer: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._is_saving = False
        self._last_saved_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._failed_attempts = 0

    @classmethod
    def from_config(cls, store: RecordStore, config: IntelligenceConfig, *, clock: Optional[Clock] = None) -> "AutoSavePersister":
        return cls(
            store,
            debounce_s=config.autosave_debounce_s,
            max_attempts=config.autosave_max_attempts,
            backoff_base_s=config.autosave_backoff_base_s,
            backoff_max_s=config.autosave_backoff_max_s,
            clock=clock,
        )

    # ── public API ──────────────────────────────────────────────────

    def schedule(self, record: PersistenceRecord) -> PersistenceRecord:
        """Mark record dirty and (re)start the debounce window. Needs a running loop."""
        self._revision += 1
        pending = record.model_copy(update={"revision": self._revision, "dirty": True})
        self._pending[pending.key] = pending

        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._debounced_flush())
        return pending

    async def flush(self) -> bool:
        """Write everything pending now. Returns True when nothing is left dirty."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        await self._write_pending()
        return not self._pending

    def status(self) -> SaveStatus:
        return SaveStatus(
            is_saving=self._is_saving,
            dirty=bool(self._pending),
            last_saved_at=self._last_saved_at,
            last_error=self._last_error,
            failed_attempts=self._failed_attempts,
        )

    def is_dirty(self, key: str) -> bool:
        return key in self._pending

    async def load(self, key: str) -> Optional[PersistenceRecord]:
        return await self._store.get(key)

    async def aclose(self) -> None:
        """Flush pending writes on shutdown or navigation away."""
        await self.flush()

    # ── internals ───────────────────────────────────────────────────

    async def _debounced_flush(self) -> None:
        await asyncio.sleep(self._debounce_s)
        # detach so a schedule() during the write starts a fresh window
        self._timer = None
        await self._write_pending()

    async def _write_pending(self) -> None:
        async with self._write_lock:
            for key in list(self._pending):
                record = self._pending.get(key)
                if record is not None:
                    await self._write_one(record)

    async def _write_one(self, record: PersistenceRecord) -> None:
        saved_at = self._clock()
        stored = record.model_copy(update={"dirty": False, "last_saved_at": saved_at})
        self._is_saving = True
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=self._backoff_base_s, max=self._backoff_max_s),
                retry=retry_if_exception_type(PersistenceError),
                reraise=False,
            ):
                with attempt:
                    await self._put(stored)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            self._last_error = str(last) if last else "write failed"
            self._failed_attempts = self._max_attempts
            AUTOSAVE_WRITES.labels(outcome="failed").inc()
            logger.warning(
                "autosave_failed key=%s revision=%s attempts=%s err=%s",
                record.key, record.revision, self._max_attempts, self._last_error,
            )
            return
        finally:
            self._is_saving = False

        self._last_saved_at = saved_at
        self._last_error = None
        self._failed_attempts = 0
        AUTOSAVE_WRITES.labels(outcome="saved").inc()
        current = self._pending.get(record.key)
        if current is not None and current.revision == record.revision:
            self._pending.pop(record.key, None)
        logger.info("autosave_saved key=%s revision=%s", record.key, record.revision)

    async def _put(self, record: PersistenceRecord) -> None:
        try:
            await self._store.put(record.key, record)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"record write failed for {record.key}: {exc}") from exc
