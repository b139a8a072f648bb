# routers/intelligence_routes.py
"""
FastAPI routes for the localization intelligence step.

A session holds one user's context, run, gate and auto-save state. Starting an
analysis returns immediately; clients poll progress (or pass wait=true) and
read the aggregate once the gate is ready.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel

from middleware.rate_limit import limiter
from schemas.intelligence import (
    AnalysisAggregate,
    GateState,
    ProgressSnapshot,
    SaveStatus,
)
from services.intelligence.errors import GateClosed, InvalidContext, InvalidGateTransition
from services.intelligence.service import IntelligenceService, get_intelligence_service
from services.intelligence.session import IntelligenceSession

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================================
# RESPONSE MODELS
# ============================================================================

class SessionCreatedResponse(BaseModel):
    session_id: str


class GateResponse(BaseModel):
    state: GateState
    key: Optional[str] = None
    can_advance: bool


class AnalysisStartedResponse(BaseModel):
    session_id: str
    key: str
    gate: GateResponse
    progress: ProgressSnapshot
    aggregate: Optional[AnalysisAggregate] = None


class AdvanceResponse(BaseModel):
    session_id: str
    key: str
    aggregate: AnalysisAggregate


class SaveResponse(BaseModel):
    saved: bool
    status: SaveStatus
    checked_at: datetime


# ============================================================================
# HELPERS
# ============================================================================

def _require_session(service: IntelligenceService, session_id: str) -> IntelligenceSession:
    session = service.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _gate(session: IntelligenceSession) -> GateResponse:
    return GateResponse(
        state=session.get_gate_state(),
        key=session.key,
        can_advance=session.gate.can_advance,
    )


def _invalid_context(exc: InvalidContext) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"message": str(exc), "errors": exc.errors},
    )


async def _started(session: IntelligenceSession, key: str, wait: bool) -> AnalysisStartedResponse:
    aggregate = await session.wait() if wait else session.get_aggregate()
    return AnalysisStartedResponse(
        session_id=session.session_id,
        key=key,
        gate=_gate(session),
        progress=session.get_progress(),
        aggregate=aggregate,
    )


# ============================================================================
# ENDPOINTS
# ============================================================================

@router.post("/sessions", response_model=SessionCreatedResponse, status_code=201)
@limiter.limit("30/minute")
async def create_session(
    request: Request,
    service: IntelligenceService = Depends(get_intelligence_service),
):
    session = service.create_session()
    return SessionCreatedResponse(session_id=session.session_id)


@router.delete("/sessions/{session_id}", status_code=204)
async def close_session(
    session_id: str,
    service: IntelligenceService = Depends(get_intelligence_service),
):
    """Flush pending saves and drop the session."""
    if not await service.close_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=204)


@router.post("/sessions/{session_id}/analysis", response_model=AnalysisStartedResponse, status_code=202)
@limiter.limit("20/minute")
async def start_analysis(
    request: Request,
    session_id: str,
    payload: dict = Body(..., description="AnalysisContext fields"),
    wait: bool = Query(False, description="Block until the run settles"),
    service: IntelligenceService = Depends(get_intelligence_service),
):
    """
    Start (or join, or serve from cache) the analysis for the posted context.

    The body is validated here rather than by FastAPI so that every invalid
    context, including blank ids and empty market lists, yields the same 422.
    """
    session = _require_session(service, session_id)
    try:
        key = session.start_analysis(payload)
    except InvalidContext as exc:
        logger.info("intelligence_context_rejected session=%s err=%s", session_id, exc)
        raise _invalid_context(exc)
    return await _started(session, key, wait)


@router.get("/sessions/{session_id}/progress", response_model=ProgressSnapshot)
async def get_progress(
    session_id: str,
    service: IntelligenceService = Depends(get_intelligence_service),
):
    return _require_session(service, session_id).get_progress()


@router.get("/sessions/{session_id}/aggregate", response_model=AnalysisAggregate)
async def get_aggregate(
    session_id: str,
    service: IntelligenceService = Depends(get_intelligence_service),
):
    aggregate = _require_session(service, session_id).get_aggregate()
    if aggregate is None:
        raise HTTPException(status_code=404, detail="No aggregate for the current context")
    return aggregate


@router.get("/sessions/{session_id}/gate", response_model=GateResponse)
async def get_gate(
    session_id: str,
    service: IntelligenceService = Depends(get_intelligence_service),
):
    return _gate(_require_session(service, session_id))


@router.post("/sessions/{session_id}/reanalyze", response_model=AnalysisStartedResponse, status_code=202)
@limiter.limit("10/minute")
async def reanalyze(
    request: Request,
    session_id: str,
    wait: bool = Query(False, description="Block until the run settles"),
    service: IntelligenceService = Depends(get_intelligence_service),
):
    session = _require_session(service, session_id)
    try:
        key = session.force_reanalyze()
    except InvalidContext as exc:
        raise _invalid_context(exc)
    except InvalidGateTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    logger.info("intelligence_reanalyze session=%s key=%s", session_id, key)
    return await _started(session, key, wait)


@router.post("/sessions/{session_id}/advance", response_model=AdvanceResponse)
async def advance(
    session_id: str,
    service: IntelligenceService = Depends(get_intelligence_service),
):
    session = _require_session(service, session_id)
    try:
        aggregate = session.advance()
    except GateClosed as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return AdvanceResponse(session_id=session_id, key=aggregate.key, aggregate=aggregate)


@router.post("/sessions/{session_id}/save", response_model=SaveResponse)
async def save_now(
    session_id: str,
    service: IntelligenceService = Depends(get_intelligence_service),
):
    """Flush pending auto-save writes immediately."""
    session = _require_session(service, session_id)
    try:
        status = await session.flush()
    except Exception as e:
        logger.exception("intelligence_save_failed session=%s: %s", session_id, e)
        raise HTTPException(status_code=500, detail="Save failed")
    return SaveResponse(saved=not status.dirty, status=status, checked_at=datetime.now(timezone.utc))


@router.get("/sessions/{session_id}/save-status", response_model=SaveStatus)
async def get_save_status(
    session_id: str,
    service: IntelligenceService = Depends(get_intelligence_service),
):
    return _require_session(service, session_id).save_status()
