# main.py
import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from config.logging_config import configure_logging
from middleware.rate_limit import limiter
from middleware.request_logging import RequestLoggingMiddleware
from routers.intelligence_routes import router as intelligence_router
from services.intelligence.service import get_intelligence_service

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Localization Intelligence")

origins = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if o.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)
app.add_middleware(RequestLoggingMiddleware)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Include routers
app.include_router(intelligence_router, prefix="/api/intelligence")

# Prometheus scrape endpoint
app.mount("/metrics", make_asgi_app())


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.on_event("shutdown")
async def flush_pending_saves():
    # pending auto-saves are written before the process exits
    await get_intelligence_service().shutdown()


# db startup
if get_intelligence_service().config.record_store == "sql":
    from database import Base, engine
    import models  # this triggers models/__init__.py which imports all tables

    Base.metadata.create_all(bind=engine)
    logger.info("intelligence_records_table_ready")
