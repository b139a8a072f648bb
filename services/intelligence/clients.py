# services/intelligence/clients.py
"""
Sub-analysis clients.

The terminology, cultural, regulatory and quality engines are external
services. The orchestrator only needs one coroutine from each of them:
``analyze(context) -> SubAnalysisResult``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, Optional, Protocol, runtime_checkable

import httpx
from pydantic import ValidationError

from config.intelligence_config import IntelligenceConfig
from schemas.intelligence import (
    ANALYSIS_KINDS,
    AnalysisContext,
    AnalysisKind,
    Finding,
    SubAnalysisResult,
)

from .errors import SubAnalysisError

logger = logging.getLogger(__name__)


@runtime_checkable
class SubAnalysisClient(Protocol):
    kind: AnalysisKind

    async def analyze(self, context: AnalysisContext) -> SubAnalysisResult:
        ...


def fallback_result(kind: AnalysisKind, score: float, reason: str) -> SubAnalysisResult:
    """Substitute outcome for a failed sub-analysis: mid-range score, flagged as fallback."""
    return SubAnalysisResult(
        kind=kind,
        score=score,
        findings=(
            Finding(
                severity="medium",
                category="analysis_unavailable",
                description=f"{kind} analysis unavailable ({reason}); default score applied",
            ),
        ),
        status="fallback",
        error=reason,
    )


class HttpSubAnalysisClient:
    """POSTs the context to ``{base_url}/analyze`` and parses the JSON result."""

    def __init__(
        self,
        kind: AnalysisKind,
        base_url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.kind = kind
        self._url = base_url.rstrip("/") + "/analyze"
        self._client = client
        self._timeout = httpx.Timeout(timeout_s, connect=2.0)

    async def analyze(self, context: AnalysisContext) -> SubAnalysisResult:
        payload = context.model_dump(mode="json")
        try:
            if self._client is not None:
                response = await self._client.post(self._url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._url, json=payload)
        except httpx.HTTPError as exc:
            raise SubAnalysisError(self.kind, f"request failed: {exc}") from exc

        if response.status_code >= 400:
            raise SubAnalysisError(self.kind, f"http {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise SubAnalysisError(self.kind, "response is not JSON") from exc
        return self._parse(data)

    def _parse(self, data: Any) -> SubAnalysisResult:
        if not isinstance(data, dict):
            raise SubAnalysisError(self.kind, "response is not an object")
        body: Dict[str, Any] = dict(data)
        body["kind"] = self.kind
        try:
            return SubAnalysisResult.model_validate(body)
        except ValidationError as exc:
            raise SubAnalysisError(self.kind, f"invalid result: {exc.error_count()} errors") from exc


class StaticSubAnalysisClient:
    """Deterministic client returning a fixed result. Used for local runs and tests."""

    def __init__(
        self,
        kind: AnalysisKind,
        score: float,
        *,
        findings: Iterable[Finding] = (),
        delay_s: float = 0.0,
    ) -> None:
        self.kind = kind
        self.calls = 0
        self._delay_s = delay_s
        self._result = SubAnalysisResult(kind=kind, score=score, findings=tuple(findings))

    async def analyze(self, context: AnalysisContext) -> SubAnalysisResult:
        self.calls += 1
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        return self._result


class UnconfiguredSubAnalysisClient:
    """Stand-in when no service URL is set: every call falls back."""

    def __init__(self, kind: AnalysisKind) -> None:
        self.kind = kind

    async def analyze(self, context: AnalysisContext) -> SubAnalysisResult:
        raise SubAnalysisError(self.kind, "service not configured")


def build_clients(
    config: IntelligenceConfig,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Dict[AnalysisKind, SubAnalysisClient]:
    clients: Dict[AnalysisKind, SubAnalysisClient] = {}
    for kind in ANALYSIS_KINDS:
        url = config.service_urls.get(kind)
        if url:
            clients[kind] = HttpSubAnalysisClient(
                kind,
                url,
                client=http_client,
                timeout_s=config.sub_analysis_timeout_s,
            )
        else:
            logger.warning("sub_analysis_unconfigured kind=%s", kind)
            clients[kind] = UnconfiguredSubAnalysisClient(kind)
    return clients
