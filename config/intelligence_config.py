"""
Runtime configuration for the intelligence orchestration layer.

Everything is env-driven (a .env file is honoured) so thresholds, timeouts and
weights can be tuned per environment without redeploying.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_DEFAULT_WEIGHTS = {
    "terminology": 1.0,
    "cultural": 1.0,
    "regulatory": 1.0,
    "quality": 1.0,
}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("config_invalid_float name=%s value=%r default=%s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("config_invalid_int name=%s value=%r default=%s", name, raw, default)
        return default


def parse_weights(raw: Optional[str]) -> Dict[str, float]:
    """Parse "terminology=2,cultural=1" into a weight map; unknown kinds are dropped."""
    weights = dict(_DEFAULT_WEIGHTS)
    if not raw:
        return weights
    for part in raw.split(","):
        name, sep, value = part.partition("=")
        name = name.strip().lower()
        if not sep or name not in weights:
            continue
        try:
            weights[name] = float(value)
        except ValueError:
            logger.warning("config_invalid_weight name=%s value=%r", name, value)
    return weights


@dataclass(frozen=True)
class IntelligenceConfig:
    sub_analysis_timeout_s: float = 8.0
    fallback_score: float = 50.0
    stale_after_s: float = 1800.0

    autosave_debounce_s: float = 2.0
    autosave_max_attempts: int = 3
    autosave_backoff_base_s: float = 0.5
    autosave_backoff_max_s: float = 4.0

    ready_threshold: float = 85.0
    gate_threshold: float = 70.0
    weights: Dict[str, float] = field(default_factory=lambda: dict(_DEFAULT_WEIGHTS))

    service_urls: Dict[str, str] = field(default_factory=dict)
    record_store: str = "memory"

    max_sessions: int = 1000
    session_idle_s: float = 3600.0

    @classmethod
    def from_env(cls) -> "IntelligenceConfig":
        urls = {
            kind: (os.getenv(f"{kind.upper()}_SERVICE_URL") or "").strip()
            for kind in _DEFAULT_WEIGHTS
        }
        return cls(
            sub_analysis_timeout_s=_env_float("SUB_ANALYSIS_TIMEOUT_SEC", 8.0),
            fallback_score=_env_float("FALLBACK_SCORE", 50.0),
            stale_after_s=_env_float("ANALYSIS_STALE_AFTER_SEC", 1800.0),
            autosave_debounce_s=_env_float("AUTOSAVE_DEBOUNCE_SEC", 2.0),
            autosave_max_attempts=max(1, _env_int("AUTOSAVE_MAX_ATTEMPTS", 3)),
            autosave_backoff_base_s=_env_float("AUTOSAVE_BACKOFF_BASE_SEC", 0.5),
            autosave_backoff_max_s=_env_float("AUTOSAVE_BACKOFF_MAX_SEC", 4.0),
            ready_threshold=_env_float("READINESS_READY_THRESHOLD", 85.0),
            gate_threshold=_env_float("READINESS_GATE_THRESHOLD", 70.0),
            weights=parse_weights(os.getenv("READINESS_WEIGHTS")),
            service_urls={k: v for k, v in urls.items() if v},
            record_store=(os.getenv("INTELLIGENCE_RECORD_STORE") or "memory").strip().lower(),
            max_sessions=max(1, _env_int("INTELLIGENCE_MAX_SESSIONS", 1000)),
            session_idle_s=_env_float("INTELLIGENCE_SESSION_IDLE_SEC", 3600.0),
        )
