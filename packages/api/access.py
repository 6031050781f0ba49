"""Raw access endpoints: check, expand and tuple management."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from packages.api.security import (
    Principal,
    get_current_principal,
    get_service,
    require_admin,
)
from packages.rebac.models import CheckResult, RelationTuple
from packages.rebac.service import AccessService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/access", tags=["Access"])


# =============================================================================
# Request/Response Models
# =============================================================================


class CheckRequest(BaseModel):
    """Request for a permission check."""

    object_type: str = Field(..., min_length=1, max_length=64)
    object_id: str = Field(..., min_length=1, max_length=128)
    relation: str = Field(..., min_length=1, max_length=64)
    subject_type: str = Field(..., min_length=1, max_length=64)
    subject_id: str = Field(..., min_length=1, max_length=128)
    context: dict[str, Any] = Field(default_factory=dict, description="Request-time condition values")


class ExpandRequest(BaseModel):
    """Request for subject expansion."""

    object_type: str = Field(..., min_length=1, max_length=64)
    object_id: str = Field(..., min_length=1, max_length=128)
    relation: str = Field(..., min_length=1, max_length=64)
    context: dict[str, Any] = Field(default_factory=dict, description="Request-time condition values")


class ExpandResponse(BaseModel):
    subjects: list[str] = Field(description="Subjects as type:id, sorted")


class TupleWrite(BaseModel):
    """Tuple in string form with an optional condition."""

    relationship: str = Field(..., description="object_type:object_id#relation@subject_type:subject_id[#relation]")
    condition: str | None = None
    condition_params: dict[str, Any] = Field(default_factory=dict)


class TupleChangeRequest(BaseModel):
    writes: list[TupleWrite] = Field(default_factory=list)
    deletes: list[str] = Field(default_factory=list)


class TupleChangeResponse(BaseModel):
    written: int
    deleted: int


def _parse(text: str, condition: str | None = None, params: dict[str, Any] | None = None) -> RelationTuple:
    try:
        return RelationTuple.from_string(text, condition, **(params or {}))
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid tuple: {text}",
        ) from e


# =============================================================================
# Endpoints
# =============================================================================


@router.post("/check", response_model=CheckResult)
def check_access(
    request: CheckRequest,
    principal: Principal = Depends(get_current_principal),
    service: AccessService = Depends(get_service),
) -> CheckResult:
    """Check whether a subject holds a relation on an object.

    Unknown types or relations are rejected with 400.
    """
    return service.check_detailed(
        request.object_type,
        request.object_id,
        request.relation,
        request.subject_type,
        request.subject_id,
        request.context,
    )


@router.post("/expand", response_model=ExpandResponse)
def expand_access(
    request: ExpandRequest,
    principal: Principal = Depends(get_current_principal),
    service: AccessService = Depends(get_service),
) -> ExpandResponse:
    """List every subject holding a relation on an object."""
    subjects = service.expand(request.object_type, request.object_id, request.relation, request.context)
    return ExpandResponse(subjects=[f"{t}:{i}" for t, i in sorted(subjects)])


@router.post("/tuples", response_model=TupleChangeResponse)
def change_tuples(
    request: TupleChangeRequest,
    principal: Principal = Depends(require_admin),
    service: AccessService = Depends(get_service),
) -> TupleChangeResponse:
    """Write and delete relationship tuples.

    Deletes are applied first, in the same store change as the writes.
    Nothing changes if any write is invalid. Requires an administrator.
    """
    writes = [_parse(w.relationship, w.condition, w.condition_params) for w in request.writes]
    deletes = [_parse(d) for d in request.deletes]
    deleted, written = service.apply_changes(deletes, writes)
    logger.info("User %s changed tuples: +%d -%d", principal.user_id, written, deleted)
    return TupleChangeResponse(written=written, deleted=deleted)
