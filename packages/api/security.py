"""Request security for the access API.

Provides caller identification, relationship-based authorization
dependencies, and security headers.
"""

from __future__ import annotations

import logging
import re

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from packages.api.config import Settings
from packages.api.directory import get_user_directory
from packages.rebac.service import AccessService, get_access_service

security_logger = logging.getLogger("rebac.security")

_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_.@-]{1,128}$")


# =============================================================================
# Models
# =============================================================================


class Principal(BaseModel):
    """Identified caller."""

    user_id: str = Field(description="User identifier, used as the user:<id> subject")
    login: str = Field(description="Login name, used for hidden-user filtering")


# =============================================================================
# Dependencies
# =============================================================================


def get_settings(request: Request) -> Settings:
    """Settings attached to the running app."""
    return request.app.state.settings


def get_service() -> AccessService:
    """Access service used by the endpoints."""
    return get_access_service()


async def get_current_principal(request: Request) -> Principal:
    """Identify the caller from development headers.

    Required headers:
    - X-User-ID: User identifier

    Optional headers:
    - X-User-Login: Login name (default: the user id); ignored for users
      whose login is configured
    """
    user_id = request.headers.get("X-User-ID")
    if not user_id:
        host = request.client.host if request.client else "unknown"
        security_logger.warning("Missing X-User-ID header from %s", host)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-ID header",
        )

    validate_identifier(user_id, "X-User-ID")
    login = get_user_directory().register(user_id, request.headers.get("X-User-Login", user_id))
    return Principal(user_id=user_id, login=login)


def require_relation(object_type: str, relation: str, id_param: str = "uid"):
    """Dependency factory for relationship-based authorization.

    The object id is read from the ``id_param`` path parameter; the caller
    must hold ``relation`` on ``<object_type>:<id>``.
    """

    def check_relation(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        service: AccessService = Depends(get_service),
    ) -> Principal:
        object_id = request.path_params[id_param]
        if not service.check(object_type, object_id, relation, "user", principal.user_id):
            security_logger.warning(
                "Permission denied: %s lacks %s on %s:%s",
                principal.user_id, relation, object_type, object_id,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {relation} required",
            )
        return principal

    return check_relation


def require_admin(
    principal: Principal = Depends(get_current_principal),
    settings: Settings = Depends(get_settings),
) -> Principal:
    """Allow only configured administrators (direct tuple management)."""
    if principal.user_id not in settings.admin_users:
        security_logger.warning("Admin access denied for %s", principal.user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Permission denied: administrator required",
        )
    return principal


# =============================================================================
# Security Headers Middleware
# =============================================================================


async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

    # Permission answers must never be cached
    if request.url.path.startswith("/api"):
        response.headers["Cache-Control"] = "no-store, max-age=0"

    return response


# =============================================================================
# Input Validation Utilities
# =============================================================================


def validate_identifier(value: str, name: str = "identifier") -> str:
    """Validate an object or subject identifier."""
    if not _ID_PATTERN.match(value):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {name} format. Use letters, digits, '_', '.', '@' or '-' (max 128 chars).",
        )
    return value
