"""
Forecast Collaboration -- FastAPI application.

Provides REST endpoints for the collaboration grid: building the
per-customer / per-product period matrix from the planning feeds, YTD / YTG /
TOTAL rollups in cases, volume and weight, and KAM adjustment edits that are
redistributed and persisted to Unity Catalog.

The application is designed to run inside a Databricks App with SDK
auto-authentication.  For local development, set DATABRICKS_HOST and
DATABRICKS_TOKEN environment variables.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from forecast_collab.routers.collaboration import router as collaboration_router
from forecast_collab.services.session import reset_sessions
from forecast_collab.utils.config import (
    APP_TITLE,
    APP_VERSION,
    LOG_LEVEL,
    REFERENCE_YEAR,
    STATIC_FILES_DIR,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan (startup / shutdown)
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup and shutdown hooks."""
    logger.info("Starting %s v%s (reference year %d)", APP_TITLE, APP_VERSION, REFERENCE_YEAR)
    yield
    reset_sessions()
    logger.info("Shutting down %s", APP_TITLE)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
app = FastAPI(
    title=APP_TITLE,
    version=APP_VERSION,
    lifespan=lifespan,
)

# CORS -- allow all origins for Databricks App iframe embedding
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(collaboration_router)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------
@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Return a simple health-check response."""
    return {"status": "healthy", "version": APP_VERSION}


# ---------------------------------------------------------------------------
# Static files (frontend) -- must be last so it doesn't shadow API routes
# ---------------------------------------------------------------------------
_static_dir = os.path.join(os.path.dirname(__file__), "..", STATIC_FILES_DIR)
if os.path.isdir(_static_dir):
    app.mount("/", StaticFiles(directory=_static_dir, html=True), name="static")
    logger.info("Mounted static files from %s", _static_dir)
else:
    logger.warning(
        "Static directory %s not found; frontend will not be served", _static_dir
    )
