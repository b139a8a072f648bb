# services/intelligence/analysis_key.py
from __future__ import annotations

import hashlib
from typing import Any, Dict, Union

from pydantic import ValidationError

from schemas.intelligence import AnalysisContext

from .errors import InvalidContext

ContextInput = Union[AnalysisContext, Dict[str, Any]]


def coerce_context(context: ContextInput) -> AnalysisContext:
    """Validate raw input into an AnalysisContext, raising InvalidContext on bad input."""
    if isinstance(context, AnalysisContext):
        return context
    if not isinstance(context, dict):
        raise InvalidContext(f"unsupported context type {type(context).__name__}")
    try:
        return AnalysisContext.model_validate(context)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()})
        raise InvalidContext(
            f"invalid analysis context: {', '.join(fields) or 'unknown field'}",
            errors=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc


def analysis_key(context: ContextInput) -> str:
    """
    Stable identity for (asset, brand, markets, therapeutic area).

    Markets are sorted so order never matters. The readable prefix matches the
    dashboard's old "{asset}_{brand}_{markets}_{area}" key; the digest suffix
    keeps contexts whose ids contain separators from colliding.
    """
    ctx = coerce_context(context)
    markets = ",".join(sorted(ctx.target_markets))
    readable = f"{ctx.asset_id}_{ctx.brand_id}_{markets}_{ctx.therapeutic_area}"
    canonical = "\x1f".join([ctx.asset_id, ctx.brand_id, markets, ctx.therapeutic_area])
    digest = hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:12]
    return f"{readable}:{digest}"
