"""Relationship-Based Access Control (ReBAC).

Zanzibar-style permission checks over relationship tuples, with a
declarative schema, inherited permissions and conditional grants.

Usage:
    from packages.rebac import RelationTuple, get_access_service

    service = get_access_service()
    service.write([RelationTuple.from_string("folder2:reports#view@team:eng#member")])

    # Check
    if service.check("folder2", "reports", "read", "user", "alice"):
        # Allowed
        pass

    # Who can view?
    service.expand("folder2", "reports", "view")
"""

from packages.rebac.errors import (
    CheckCancelledError,
    ConditionError,
    ConditionNotFoundError,
    ConditionParamError,
    InvalidTupleError,
    RebacError,
    SchemaError,
    UnknownRelationError,
)
from packages.rebac.models import (
    CheckResult,
    ComputedRelation,
    ConditionDefinition,
    DirectSet,
    ObjectType,
    Relation,
    RelationTuple,
    SubjectSpec,
    TupleToUserset,
    Union,
)
from packages.rebac.conditions import ConditionEvaluator
from packages.rebac.config import EngineConfig
from packages.rebac.schema import CompiledSchema, SchemaLoader, compile_schema
from packages.rebac.store import FileTupleStore, InMemoryTupleStore, TupleStore
from packages.rebac.engine import CheckEngine
from packages.rebac.expand import ExpansionService
from packages.rebac.builtin import DEFAULT_SCHEMA, load_default_schema
from packages.rebac.service import (
    AccessService,
    build_access_service,
    get_access_service,
    set_access_service,
)

__all__ = [
    "RebacError",
    "SchemaError",
    "UnknownRelationError",
    "InvalidTupleError",
    "ConditionError",
    "ConditionNotFoundError",
    "ConditionParamError",
    "CheckCancelledError",
    "SubjectSpec",
    "DirectSet",
    "Union",
    "TupleToUserset",
    "ComputedRelation",
    "Relation",
    "ObjectType",
    "ConditionDefinition",
    "RelationTuple",
    "CheckResult",
    "ConditionEvaluator",
    "EngineConfig",
    "CompiledSchema",
    "SchemaLoader",
    "compile_schema",
    "TupleStore",
    "InMemoryTupleStore",
    "FileTupleStore",
    "CheckEngine",
    "ExpansionService",
    "DEFAULT_SCHEMA",
    "load_default_schema",
    "AccessService",
    "build_access_service",
    "get_access_service",
    "set_access_service",
]
