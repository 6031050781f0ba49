"""Expansion service.

Enumerates the concrete subjects that hold a relation on an object. Used to
build access-control listings ("who can view dashboard X").
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Mapping

from packages.rebac.engine import CheckScope, RelationWalker
from packages.rebac.errors import CheckCancelledError
from packages.rebac.models import (
    WILDCARD,
    ComputedRelation,
    DirectSet,
    RelationExpression,
    TupleToUserset,
    Union,
)

logger = logging.getLogger(__name__)

# (object_type, object_id, relation)
ExpandKey = tuple[str, str, str]
Subject = tuple[str, str]


class ExpansionService(RelationWalker):
    """Enumerate subjects by walking relation expressions.

    - Direct set: concrete subjects, plus the expansion of every userset
    - Union: set union of the branches
    - Tuple-to-userset: expansion of the computed relation on each related object
    - Computed relation: expansion of the referenced relation

    Wildcard grants contribute ``(type, "*")``. Conditional tuples are
    included only when their condition holds for the supplied context.

    Usage:
        service = ExpansionService(schema, store)
        service.expand("namespace", "n1", "view")  # {("user", "u1")}
    """

    def expand(
        self,
        object_type: str,
        object_id: str,
        relation: str,
        context: Mapping[str, Any] | None = None,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> set[Subject]:
        """Return every (subject_type, subject_id) holding the relation.

        Raises:
            UnknownRelationError: if the type or relation is undefined
            CheckCancelledError: if the deadline passes
        """
        self.schema.get_expression(object_type, relation)
        scope = self.new_scope(context, timeout, cancel_event)
        try:
            subjects, _ = self._expand(scope, (object_type, object_id, relation), frozenset(), 0)
        except CheckCancelledError:
            logger.warning(
                "Expansion cancelled: %s:%s#%s after %d dispatches",
                object_type, object_id, relation, scope.dispatch_count,
            )
            raise
        logger.debug(
            "Expanded %s:%s#%s to %d subjects (dispatches=%d)",
            object_type, object_id, relation, len(subjects), scope.dispatch_count,
        )
        return set(subjects)

    def _expand(
        self,
        scope: CheckScope,
        key: ExpandKey,
        visited: frozenset[ExpandKey],
        depth: int,
    ) -> tuple[frozenset[Subject], bool]:
        scope.ensure_active()

        if key in visited:
            return frozenset(), True
        if depth > self.config.max_depth:
            logger.warning("Max depth %d reached expanding %s:%s#%s", self.config.max_depth, *key)
            return frozenset(), True

        memo_key = ("expand",) + key + (scope.context_key,)
        cached = scope.memo_get(memo_key)
        if cached is not None:
            return cached, False

        scope.record_dispatch()
        expression = self.schema.get_expression(key[0], key[2])
        subjects, cut = self._expand_expression(scope, expression, key, visited | {key}, depth)

        # a partial set produced under a cycle cut is only valid for this chain
        if not cut:
            scope.memo_put(memo_key, subjects)
        return subjects, cut

    def _expand_expression(
        self,
        scope: CheckScope,
        expression: RelationExpression,
        key: ExpandKey,
        visited: frozenset[ExpandKey],
        depth: int,
    ) -> tuple[frozenset[Subject], bool]:
        object_type, object_id, relation = key
        subjects: set[Subject] = set()
        cut = False

        if isinstance(expression, DirectSet):
            for tup in self.direct_tuples(object_type, object_id, relation, expression):
                if not self.condition_holds(scope, tup):
                    continue
                if tup.is_userset:
                    found, sub_cut = self._expand(
                        scope,
                        (tup.subject_type, tup.subject_id, tup.subject_relation),
                        visited,
                        depth + 1,
                    )
                    subjects |= found
                    cut = cut or sub_cut
                else:
                    subjects.add((tup.subject_type, WILDCARD if tup.is_wildcard else tup.subject_id))

        elif isinstance(expression, Union):
            for child in expression.children:
                found, sub_cut = self._expand_expression(scope, child, key, visited, depth)
                subjects |= found
                cut = cut or sub_cut

        elif isinstance(expression, TupleToUserset):
            for parent_type, parent_id in self.related_objects(object_type, object_id, expression):
                found, sub_cut = self._expand(
                    scope, (parent_type, parent_id, expression.computed), visited, depth + 1
                )
                subjects |= found
                cut = cut or sub_cut

        elif isinstance(expression, ComputedRelation):
            return self._expand(scope, (object_type, object_id, expression.relation), visited, depth + 1)

        else:
            raise TypeError(f"Unknown expression: {expression!r}")

        return frozenset(subjects), cut
