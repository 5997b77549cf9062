"""FastAPI server for the chatdesk support core.

Run with:
    uvicorn chatdesk.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from chatdesk.api.routes import router
from chatdesk.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from chatdesk.demo import seed_demo_tenant
from chatdesk.service import SupportService
from chatdesk.services.metrics import metrics
from chatdesk.store import InMemoryStore

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the support service once and keep it in app state.

    A database-backed :class:`~chatdesk.store.Store` can be assigned to
    ``app.state.store`` before start-up; otherwise an in-memory store with
    the demo tenant is used.
    """
    store = getattr(application.state, "store", None)
    if store is None:
        logger.warning("No store configured; using in-memory store with the demo tenant")
        store = InMemoryStore()
        seed_demo_tenant(store)
    application.state.service = SupportService.from_config(store)
    logger.info("Support service ready.")
    yield
    metrics.close()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="chatdesk",
    description=(
        "Multi-channel support and sales assistant: lead capture, "
        "human handoff and calendar booking."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (web widget) ───────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID to every request and echo it as ``X-Request-ID``."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "chatdesk",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting chatdesk API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "chatdesk.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
