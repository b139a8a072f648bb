# models/intelligence_record.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class IntelligenceRecord(Base):
    """Latest persisted intelligence aggregate per analysis key."""

    __tablename__ = "localization_intelligence_records"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    project_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    market: Mapped[str] = mapped_column(String(16), nullable=False, default="global")
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    data: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), nullable=False
    )  # full PersistenceRecord payload
    last_saved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
