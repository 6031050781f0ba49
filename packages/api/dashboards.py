"""Dashboard permission (ACL) endpoints."""

from __future__ import annotations

import logging
from collections import deque

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from packages.api.config import Settings
from packages.api.directory import get_user_directory
from packages.api.security import (
    Principal,
    get_service,
    get_settings,
    require_relation,
    validate_identifier,
)
from packages.rebac.builtin import DASHBOARD_PERMISSIONS
from packages.rebac.models import RelationTuple
from packages.rebac.service import AccessService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dashboards", tags=["Dashboard Permissions"])

MANAGED_RELATIONS = set(DASHBOARD_PERMISSIONS.values())
PERMISSION_NAMES = {relation: name for name, relation in DASHBOARD_PERMISSIONS.items()}
# Legacy numeric permission levels
PERMISSION_LEVELS = {1: "view", 2: "edit", 4: "admin"}


# =============================================================================
# Request/Response Models
# =============================================================================


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AclEntry(CamelModel):
    """One grant shown in an ACL listing."""

    user_id: str | None = None
    user_login: str | None = None
    team_id: str | None = None
    role: str | None = None
    permission: str = Field(description="Permission name (View, Edit or Admin)")
    relation: str = Field(description="Relation backing the permission")
    inherited: bool = Field(default=False, description="Granted on an ancestor folder")
    inherited_from: str | None = Field(default=None, description="Folder the grant comes from")


class AclItem(CamelModel):
    """One grant in an ACL update; exactly one subject field must be set."""

    user_id: str | int | None = None
    team_id: str | int | None = None
    role: str | None = None
    permission: str | int | None = None


class AclUpdateRequest(BaseModel):
    """Full replacement of a dashboard's managed grants."""

    items: list[AclItem] = Field(default_factory=list)


class AclUpdateResponse(BaseModel):
    message: str
    written: int


class EffectiveSubject(CamelModel):
    """Subject holding a relation after expansion."""

    subject_type: str
    subject_id: str
    login: str | None = None


# =============================================================================
# Helpers
# =============================================================================


def _to_entry(tup: RelationTuple, inherited_from: str | None = None) -> AclEntry | None:
    entry = AclEntry(
        permission=PERMISSION_NAMES[tup.relation],
        relation=tup.relation,
        inherited=inherited_from is not None,
        inherited_from=inherited_from,
    )
    if tup.subject_type == "user" and not tup.is_userset:
        entry.user_id = tup.subject_id
        entry.user_login = get_user_directory().login_for(tup.subject_id)
    elif tup.subject_type == "team":
        entry.team_id = tup.subject_id
    elif tup.subject_type == "role":
        entry.role = tup.subject_id
    else:
        return None
    return entry


def _ancestor_folders(service: AccessService, object_type: str, object_id: str) -> list[str]:
    """Folder ids above an object, breadth first so nearer folders come first.

    Every ``parent`` tuple is followed; folders reached twice are listed once.
    """
    folders: list[str] = []
    seen: set[str] = set()
    queue = deque([(object_type, object_id)])
    while queue:
        current_type, current_id = queue.popleft()
        for tup in service.read(current_type, current_id, "parent"):
            if tup.subject_type != "folder2" or tup.subject_id in seen:
                continue
            seen.add(tup.subject_id)
            folders.append(tup.subject_id)
            queue.append(("folder2", tup.subject_id))
    return folders


def _item_to_tuple(uid: str, item: AclItem) -> RelationTuple:
    subjects = [value for value in (item.user_id, item.team_id, item.role) if value not in (None, "")]
    if len(subjects) != 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Each ACL item must name exactly one of userId, teamId or role",
        )

    if isinstance(item.permission, int):
        relation = PERMISSION_LEVELS.get(item.permission)
    elif item.permission:
        relation = DASHBOARD_PERMISSIONS.get(item.permission, item.permission.lower())
    else:
        relation = None
    if relation not in MANAGED_RELATIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid permission: {item.permission!r}",
        )

    if item.user_id not in (None, ""):
        subject_type, subject_id, subject_relation = "user", str(item.user_id), None
    elif item.team_id not in (None, ""):
        subject_type, subject_id, subject_relation = "team", str(item.team_id), "member"
    else:
        subject_type, subject_id, subject_relation = "role", str(item.role), "assignee"
    validate_identifier(subject_id, subject_type)

    return RelationTuple(
        object_type="dashboard",
        object_id=uid,
        relation=relation,
        subject_type=subject_type,
        subject_id=subject_id,
        subject_relation=subject_relation,
    )


def _hidden(login: str | None, settings: Settings) -> bool:
    return bool(login) and login in settings.hidden_users


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/uid/{uid}/permissions", response_model=list[AclEntry], response_model_exclude_none=True)
def get_dashboard_permissions(
    uid: str,
    principal: Principal = Depends(require_relation("dashboard", "permissions_read")),
    service: AccessService = Depends(get_service),
    settings: Settings = Depends(get_settings),
) -> list[AclEntry]:
    """List the grants on a dashboard, including those inherited from folders.

    Hidden users are never listed. Requires permissions_read on the dashboard.
    """
    entries: list[AclEntry] = []
    for tup in service.read("dashboard", uid):
        if tup.relation in MANAGED_RELATIONS:
            entry = _to_entry(tup)
            if entry is not None:
                entries.append(entry)

    for folder_id in _ancestor_folders(service, "dashboard", uid):
        for tup in service.read("folder2", folder_id):
            if tup.relation in MANAGED_RELATIONS:
                entry = _to_entry(tup, inherited_from=folder_id)
                if entry is not None:
                    entries.append(entry)

    return [entry for entry in entries if not _hidden(entry.user_login, settings)]


@router.post("/uid/{uid}/permissions", response_model=AclUpdateResponse)
def update_dashboard_permissions(
    uid: str,
    request: AclUpdateRequest,
    principal: Principal = Depends(require_relation("dashboard", "permissions_write")),
    service: AccessService = Depends(get_service),
) -> AclUpdateResponse:
    """Replace the managed grants on a dashboard.

    Requires permissions_write on the dashboard.
    """
    tuples = [_item_to_tuple(uid, item) for item in request.items]
    written = service.replace("dashboard", uid, MANAGED_RELATIONS, tuples)
    logger.info("User %s updated permissions of dashboard %s", principal.user_id, uid)
    return AclUpdateResponse(message="Dashboard permissions updated", written=written)


@router.get(
    "/uid/{uid}/permissions/effective",
    response_model=list[EffectiveSubject],
    response_model_exclude_none=True,
)
def get_effective_permissions(
    uid: str,
    relation: str = Query(default="view", description="Relation to expand"),
    principal: Principal = Depends(require_relation("dashboard", "permissions_read")),
    service: AccessService = Depends(get_service),
    settings: Settings = Depends(get_settings),
) -> list[EffectiveSubject]:
    """Every subject that effectively holds a relation on the dashboard."""
    directory = get_user_directory()
    subjects = []
    for subject_type, subject_id in sorted(service.expand("dashboard", uid, relation)):
        login = directory.login_for(subject_id) if subject_type == "user" else None
        if subject_type == "user" and _hidden(login, settings):
            continue
        subjects.append(EffectiveSubject(subject_type=subject_type, subject_id=subject_id, login=login or None))
    return subjects
