# schemas/intelligence.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

AnalysisKind = Literal["terminology", "cultural", "regulatory", "quality"]
Severity = Literal["low", "medium", "high", "critical"]
ResultStatus = Literal["ok", "fallback", "error"]
StatusTier = Literal["ready", "needs_review", "blocked"]

# Canonical order; aggregation and serialization always follow it.
ANALYSIS_KINDS: Tuple[AnalysisKind, ...] = ("terminology", "cultural", "regulatory", "quality")


class GateState(str, Enum):
    """Workflow gate states"""
    IDLE = "idle"
    RUNNING = "running"
    READY = "ready"
    STALE = "stale"


class ProgressPhase(str, Enum):
    IDLE = "idle"
    DISPATCHED = "dispatched"
    PARTIAL = "partial"
    AGGREGATING = "aggregating"
    COMPLETE = "complete"


# ── Inputs ─────────────────────────────────────────────────────────────

class AnalysisContext(BaseModel):
    """What an intelligence run is about. Immutable once a run starts."""

    model_config = ConfigDict(frozen=True)

    asset_id: str = Field(min_length=1, max_length=128)
    brand_id: str = Field(min_length=1, max_length=128)
    target_markets: Tuple[str, ...] = Field(min_length=1, max_length=64)
    therapeutic_area: str = Field(default="general", max_length=128)
    project_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("asset_id", "brand_id")
    @classmethod
    def _strip_ids(cls, v: str) -> str:
        out = (v or "").strip()
        if not out:
            raise ValueError("must be a non-empty string")
        return out

    @field_validator("target_markets", mode="before")
    @classmethod
    def _normalize_markets(cls, v):
        if v is None:
            v = []
        elif isinstance(v, str):
            v = v.split(",")
        elif not isinstance(v, (list, tuple, set, frozenset)):
            raise ValueError("must be a list of market codes")
        out: List[str] = []
        seen: set[str] = set()
        for item in v:
            if not isinstance(item, str):
                raise ValueError("market codes must be strings")
            code = item.strip().upper()
            if not code or code in seen:
                continue
            seen.add(code)
            out.append(code)
        return tuple(out)

    @field_validator("therapeutic_area")
    @classmethod
    def _normalize_area(cls, v: str) -> str:
        return (v or "").strip().lower() or "general"

    @property
    def primary_market(self) -> str:
        return self.target_markets[0] if self.target_markets else "global"


# ── Sub-analysis results ───────────────────────────────────────────────

class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    severity: Severity
    category: str = Field(max_length=64)
    description: str = Field(default="", max_length=2000)


class SubAnalysisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: AnalysisKind
    score: float = Field(..., ge=0, le=100)
    findings: Tuple[Finding, ...] = ()
    status: ResultStatus = "ok"
    error: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return self.status == "fallback"

    @property
    def has_critical(self) -> bool:
        return any(f.severity == "critical" for f in self.findings)


class QualityGate(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    kind: AnalysisKind
    score: float
    threshold: float
    passed: bool


class AnalysisAggregate(BaseModel):
    """
    Composite readiness for one analysis key.

    Only ever built from a complete set of four sub-results; a partial set
    fails validation, so no partial aggregate can exist.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    context: AnalysisContext
    sub_results: Dict[AnalysisKind, SubAnalysisResult]
    overall_score: float = Field(..., ge=0, le=100)
    status_tier: StatusTier
    degraded: bool = False
    fallback_kinds: Tuple[AnalysisKind, ...] = ()
    quality_gates: Tuple[QualityGate, ...] = ()
    computed_at: datetime

    @model_validator(mode="after")
    def _require_all_kinds(self) -> "AnalysisAggregate":
        missing = [k for k in ANALYSIS_KINDS if k not in self.sub_results]
        if missing:
            raise ValueError(f"aggregate is missing sub-results: {', '.join(missing)}")
        for kind, result in self.sub_results.items():
            if result.kind != kind:
                raise ValueError(f"sub-result stored under {kind} has kind {result.kind}")
        return self


# ── Persistence / status ───────────────────────────────────────────────

class PersistenceRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    aggregate: AnalysisAggregate
    project_id: Optional[str] = None
    market: str = "global"
    revision: int = 0
    dirty: bool = True
    last_saved_at: Optional[datetime] = None


class SaveStatus(BaseModel):
    is_saving: bool = False
    dirty: bool = False
    last_saved_at: Optional[datetime] = None
    last_error: Optional[str] = None
    failed_attempts: int = 0


class ProgressSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    percent: int = Field(default=0, ge=0, le=100)
    phase: ProgressPhase = ProgressPhase.IDLE
    settled: int = 0
    total: int = len(ANALYSIS_KINDS)
