# services/intelligence/readiness.py
"""
Readiness scoring for a complete set of sub-analysis results.

Pure and deterministic: the same four results always give the same score,
tier and gates. Weights and thresholds live in ReadinessPolicy so callers
(and tests) never depend on a literal threshold.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from config.intelligence_config import IntelligenceConfig
from schemas.intelligence import (
    ANALYSIS_KINDS,
    AnalysisKind,
    QualityGate,
    StatusTier,
    SubAnalysisResult,
)

_GATE_NAMES: Dict[str, str] = {
    "terminology": "Terminology Compliance",
    "cultural": "Cultural Appropriateness",
    "regulatory": "Regulatory Compliance",
    "quality": "Quality Prediction",
}


class ReadinessPolicy(BaseModel):
    weights: Dict[AnalysisKind, float] = Field(
        default_factory=lambda: {kind: 0.25 for kind in ANALYSIS_KINDS}
    )
    ready_threshold: float = Field(default=85.0, ge=0, le=100)
    gate_threshold: float = Field(default=70.0, ge=0, le=100)

    @field_validator("weights")
    @classmethod
    def _non_negative(cls, v: Dict[str, float]) -> Dict[str, float]:
        for kind, w in v.items():
            if w < 0:
                raise ValueError(f"weight for {kind} must be >= 0")
        return v

    @model_validator(mode="after")
    def _complete_weights(self) -> "ReadinessPolicy":
        missing = [k for k in ANALYSIS_KINDS if k not in self.weights]
        if missing:
            raise ValueError(f"missing weights for: {', '.join(missing)}")
        if sum(self.weights.values()) <= 0:
            raise ValueError("weights must not all be zero")
        return self

    @classmethod
    def from_config(cls, config: IntelligenceConfig) -> "ReadinessPolicy":
        return cls(
            weights={k: float(config.weights.get(k, 1.0)) for k in ANALYSIS_KINDS},
            ready_threshold=config.ready_threshold,
            gate_threshold=config.gate_threshold,
        )


@dataclass(frozen=True)
class ReadinessOutcome:
    overall_score: float
    status_tier: StatusTier
    degraded: bool
    fallback_kinds: Tuple[AnalysisKind, ...]
    quality_gates: Tuple[QualityGate, ...]


class ReadinessAggregator:
    def __init__(self, policy: ReadinessPolicy | None = None) -> None:
        self.policy = policy or ReadinessPolicy()

    def aggregate(self, sub_results: Mapping[AnalysisKind, SubAnalysisResult]) -> ReadinessOutcome:
        missing = [k for k in ANALYSIS_KINDS if k not in sub_results]
        if missing:
            raise ValueError(f"cannot aggregate without: {', '.join(missing)}")

        weights = self.policy.weights
        total_weight = sum(weights[k] for k in ANALYSIS_KINDS)
        weighted = sum(weights[k] * sub_results[k].score for k in ANALYSIS_KINDS)
        overall = round(weighted / total_weight, 2)

        fallback_kinds = tuple(k for k in ANALYSIS_KINDS if sub_results[k].is_fallback)
        has_critical = any(sub_results[k].has_critical for k in ANALYSIS_KINDS)

        return ReadinessOutcome(
            overall_score=overall,
            status_tier=self._tier(overall, has_critical, bool(fallback_kinds)),
            degraded=bool(fallback_kinds),
            fallback_kinds=fallback_kinds,
            quality_gates=self._gates(sub_results),
        )

    def _tier(self, overall: float, has_critical: bool, degraded: bool) -> StatusTier:
        if has_critical:
            return "blocked"
        if overall < self.policy.ready_threshold or degraded:
            return "needs_review"
        return "ready"

    def _gates(self, sub_results: Mapping[AnalysisKind, SubAnalysisResult]) -> Tuple[QualityGate, ...]:
        threshold = self.policy.gate_threshold
        gates: List[QualityGate] = []
        for kind in ANALYSIS_KINDS:
            result = sub_results[kind]
            gates.append(
                QualityGate(
                    name=_GATE_NAMES[kind],
                    kind=kind,
                    score=result.score,
                    threshold=threshold,
                    passed=result.score >= threshold and not result.is_fallback,
                )
            )
        return tuple(gates)
