"""FastAPI application wiring for the faucet service."""

from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .api.routes import install_error_handlers, router as v1_router
from .bootstrap import build_components, configure_logging
from .config import get_settings
from .security.throttle import build_throttle
from .worker import start_worker_threads

settings = get_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise the store, ledger client, service and embedded workers for the app lifecycle."""
    components = build_components(settings)
    app.state.faucet_service = components.service
    app.state.mint_throttle = build_throttle(settings)
    stop_event = threading.Event()
    threads = start_worker_threads(components.worker_factory, settings.embedded_workers, stop_event)
    logger.info(
        "faucet service started backend=%s embedded_workers=%s",
        settings.storage_backend,
        len(threads),
    )
    try:
        yield
    finally:
        stop_event.set()
        for thread in threads:
            thread.join(timeout=settings.lease_seconds)
        components.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

# CORS for the web channel during local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", tags=["health"])
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)
install_error_handlers(app)
