# services/intelligence/record_store.py
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional, Protocol, runtime_checkable

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from schemas.intelligence import PersistenceRecord

from .errors import PersistenceError

logger = logging.getLogger(__name__)


@runtime_checkable
class RecordStore(Protocol):
    async def put(self, key: str, record: PersistenceRecord) -> None:
        """Store the full record under key, replacing any previous one. Raises PersistenceError."""
        ...

    async def get(self, key: str) -> Optional[PersistenceRecord]:
        ...


class InMemoryRecordStore:
    """Record store kept in process memory. Serializes like a network store would."""

    def __init__(self) -> None:
        self._rows: Dict[str, str] = {}
        self.puts = 0

    async def put(self, key: str, record: PersistenceRecord) -> None:
        self.puts += 1
        self._rows[key] = record.model_dump_json()

    async def get(self, key: str) -> Optional[PersistenceRecord]:
        raw = self._rows.get(key)
        if raw is None:
            return None
        return PersistenceRecord.model_validate_json(raw)

    def __len__(self) -> int:
        return len(self._rows)


class SqlRecordStore:
    """
    SQLAlchemy-backed store (table ``localization_intelligence_records``).

    Sessions are sync, so every call runs in a worker thread to keep the
    event loop free.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    async def put(self, key: str, record: PersistenceRecord) -> None:
        await asyncio.to_thread(self._put_sync, key, record)

    async def get(self, key: str) -> Optional[PersistenceRecord]:
        return await asyncio.to_thread(self._get_sync, key)

    def _put_sync(self, key: str, record: PersistenceRecord) -> None:
        from models.intelligence_record import IntelligenceRecord

        db = self._session_factory()
        try:
            db.merge(
                IntelligenceRecord(
                    key=key,
                    project_id=record.project_id,
                    market=record.market,
                    revision=record.revision,
                    data=record.model_dump(mode="json"),
                    last_saved_at=record.last_saved_at,
                )
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError(f"record write failed for {key}: {exc}") from exc
        finally:
            db.close()

    def _get_sync(self, key: str) -> Optional[PersistenceRecord]:
        from models.intelligence_record import IntelligenceRecord

        db = self._session_factory()
        try:
            row = db.get(IntelligenceRecord, key)
            if row is None:
                return None
            return PersistenceRecord.model_validate(row.data)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"record read failed for {key}: {exc}") from exc
        except ValidationError:
            logger.warning("intelligence_record_corrupt key=%s", key)
            return None
        finally:
            db.close()
