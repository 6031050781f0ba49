"""ReBAC Access API."""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from packages.api.config import Settings
from packages.api.directory import UserDirectory, set_user_directory
from packages.api.security import add_security_headers
from packages.rebac.errors import (
    CheckCancelledError,
    InvalidTupleError,
    RebacError,
    SchemaError,
    UnknownRelationError,
)
from packages.rebac.service import build_access_service, get_access_service, set_access_service

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "1.0.0"
    types_loaded: int = 0
    tuple_count: int = 0


# =============================================================================
# FastAPI App
# =============================================================================

settings = Settings()

app = FastAPI(
    title=settings.api_title,
    description="Relationship-based access control: permission checks, subject "
    "expansion and dashboard ACL management.",
    version=settings.api_version,
    docs_url="/docs" if os.getenv("REBAC_ENV", "development") == "development" else None,
    redoc_url="/redoc" if os.getenv("REBAC_ENV", "development") == "development" else None,
)

# Security headers middleware
app.middleware("http")(add_security_headers)

allowed_origins = os.getenv("REBAC_CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-User-ID", "X-User-Login"],
)

# Schema errors abort start-up here
app.state.settings = settings
set_user_directory(UserDirectory(settings.users))
set_access_service(
    build_access_service(
        schema_path=settings.schema_path,
        store_type=settings.tuple_store_type,
        store_path=settings.tuple_store_path,
        config=settings.engine_config,
    )
)

from packages.api.access import router as access_router
from packages.api.dashboards import router as dashboards_router

app.include_router(access_router)
app.include_router(dashboards_router)


# =============================================================================
# Error Handlers
# =============================================================================


def _error(status_code: int, exc: RebacError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(UnknownRelationError)
async def unknown_relation_handler(request: Request, exc: UnknownRelationError) -> JSONResponse:
    return _error(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(InvalidTupleError)
async def invalid_tuple_handler(request: Request, exc: InvalidTupleError) -> JSONResponse:
    return _error(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(CheckCancelledError)
async def check_cancelled_handler(request: Request, exc: CheckCancelledError) -> JSONResponse:
    logger.warning("Request %s %s cancelled: %s", request.method, request.url.path, exc.message)
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)


@app.exception_handler(SchemaError)
async def schema_error_handler(request: Request, exc: SchemaError) -> JSONResponse:
    logger.error("Schema error during %s %s: %s", request.method, request.url.path, exc.message)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, exc)


# =============================================================================
# Health Endpoint (Public)
# =============================================================================


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint (no auth required)."""
    service = get_access_service()
    return HealthResponse(
        status="ok",
        version=settings.api_version,
        types_loaded=len(service.schema.type_names),
        tuple_count=service.store.count(),
    )
