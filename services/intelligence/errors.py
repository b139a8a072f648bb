# services/intelligence/errors.py
from __future__ import annotations

from typing import Optional


class IntelligenceError(Exception):
    """Base class for intelligence orchestration failures."""
    pass


class InvalidContext(IntelligenceError):
    """Bad analysis input. Raised before anything is dispatched."""

    def __init__(self, message: str, *, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class SubAnalysisError(IntelligenceError):
    """A sub-analysis call failed. Always recovered into a fallback result."""

    def __init__(self, kind: str, message: str):
        super().__init__(f"{kind}: {message}")
        self.kind = kind


class SubAnalysisTimeout(SubAnalysisError):
    def __init__(self, kind: str, timeout_s: float):
        super().__init__(kind, f"timeout after {timeout_s}s")
        self.timeout_s = timeout_s


class PersistenceError(IntelligenceError):
    """A record-store write or read failed. Writes are retried."""
    pass


class InvalidGateTransition(IntelligenceError):
    def __init__(self, current: str, target: str):
        super().__init__(f"gate cannot move from {current} to {target}")
        self.current = current
        self.target = target


class GateClosed(IntelligenceError):
    """The workflow tried to advance while the gate was not ready."""
    pass
