"""Access service.

Wires schema, tuple store, check engine and expansion service together and
is the single entry point used by consumers such as the HTTP API.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Literal, Mapping

from packages.rebac.builtin import load_default_schema
from packages.rebac.conditions import ConditionEvaluator
from packages.rebac.config import EngineConfig
from packages.rebac.engine import CheckEngine
from packages.rebac.expand import ExpansionService
from packages.rebac.models import CheckResult, RelationTuple
from packages.rebac.schema import CompiledSchema, SchemaLoader
from packages.rebac.store import FileTupleStore, InMemoryTupleStore, TupleStore

logger = logging.getLogger(__name__)


class AccessService:
    """Facade over the relationship engine.

    Tuple writes are validated against the schema before they reach the
    store; reads go straight to the engine.

    Usage:
        service = AccessService(load_default_schema(), InMemoryTupleStore())
        service.write([RelationTuple.from_string("namespace:n1#admin@user:u1")])
        service.check("namespace", "n1", "view", "user", "u1")  # True
        service.expand("namespace", "n1", "view")  # {("user", "u1")}
    """

    def __init__(
        self,
        schema: CompiledSchema,
        store: TupleStore,
        config: EngineConfig | None = None,
    ):
        self.schema = schema
        self.store = store
        self.config = config or EngineConfig()
        self.engine = CheckEngine(schema, store, self.config)
        self.expansion = ExpansionService(schema, store, self.config)

    def check(
        self,
        object_type: str,
        object_id: str,
        relation: str,
        subject_type: str,
        subject_id: str,
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        return self.engine.check(object_type, object_id, relation, subject_type, subject_id, context)

    def check_detailed(
        self,
        object_type: str,
        object_id: str,
        relation: str,
        subject_type: str,
        subject_id: str,
        context: Mapping[str, Any] | None = None,
    ) -> CheckResult:
        return self.engine.check_detailed(
            object_type, object_id, relation, subject_type, subject_id, context
        )

    def expand(
        self,
        object_type: str,
        object_id: str,
        relation: str,
        context: Mapping[str, Any] | None = None,
    ) -> set[tuple[str, str]]:
        return self.expansion.expand(object_type, object_id, relation, context)

    def read(
        self,
        object_type: str,
        object_id: str,
        relation: str | None = None,
    ) -> list[RelationTuple]:
        """Stored tuples on an object, sorted for stable listings."""
        return sorted(
            self.store.list_tuples(object_type, object_id, relation),
            key=lambda t: (t.relation, t.subject_type, t.subject_id, t.subject_relation or ""),
        )

    def write(self, tuples: Iterable[RelationTuple]) -> int:
        """Validate and write tuples; nothing is written if any tuple is invalid.

        Raises:
            InvalidTupleError: if a tuple does not fit the schema
        """
        tuples = list(tuples)
        for tup in tuples:
            self.schema.validate_tuple(tup)
        written = self.store.write(tuples)
        logger.info("Wrote %d relationship tuples", written)
        return written

    def apply_changes(
        self,
        deletes: Iterable[RelationTuple],
        writes: Iterable[RelationTuple],
    ) -> tuple[int, int]:
        """Delete then write in one store change; writes are validated first.

        Raises:
            InvalidTupleError: if a write does not fit the schema
        """
        writes = list(writes)
        for tup in writes:
            self.schema.validate_tuple(tup)
        deleted, written = self.store.apply_changes(deletes, writes)
        logger.info("Applied relationship changes: -%d +%d", deleted, written)
        return deleted, written

    def replace(
        self,
        object_type: str,
        object_id: str,
        relations: Iterable[str],
        tuples: Iterable[RelationTuple],
    ) -> int:
        """Replace every tuple of the given relations on an object.

        Used by ACL editors that submit the full list of grants at once.
        Concurrent replacements of the same object are serialized by the
        store, so the last one wins.
        """
        relations = set(relations)
        tuples = list(tuples)
        for tup in tuples:
            if (tup.object_type, tup.object_id) != (object_type, object_id) or tup.relation not in relations:
                raise ValueError(f"Tuple {tup} is outside the replaced relations")
            self.schema.validate_tuple(tup)

        removed, written = self.store.replace(object_type, object_id, relations, tuples)
        logger.info(
            "Replaced %s:%s relations %s: removed %d, wrote %d",
            object_type, object_id, sorted(relations), removed, written,
        )
        return written

    def close(self) -> None:
        self.engine.shutdown()


def build_access_service(
    schema_path: str | Path | None = None,
    store_type: Literal["memory", "file"] = "memory",
    store_path: str | Path | None = None,
    config: EngineConfig | None = None,
    evaluator: ConditionEvaluator | None = None,
) -> AccessService:
    """Build a service from configuration values.

    Raises:
        SchemaError: if the schema cannot be loaded
    """
    if schema_path:
        schema = SchemaLoader(evaluator).load_file(schema_path)
    else:
        schema = load_default_schema(evaluator)

    if store_type == "file":
        if not store_path:
            raise ValueError("store_path is required for the file tuple store")
        store: TupleStore = FileTupleStore(store_path)
    else:
        store = InMemoryTupleStore()

    logger.info(
        "AccessService ready: schema=%s store=%s",
        schema_path or "builtin",
        store_type,
    )
    return AccessService(schema, store, config)


# Singleton instance
_access_service: AccessService | None = None


def get_access_service() -> AccessService:
    """Get the access service singleton."""
    global _access_service
    if _access_service is None:
        _access_service = build_access_service(config=EngineConfig.from_env())
    return _access_service


def set_access_service(service: AccessService | None) -> None:
    """Install (or clear, with None) the access service singleton."""
    global _access_service
    if _access_service is not None and _access_service is not service:
        _access_service.close()
    _access_service = service
