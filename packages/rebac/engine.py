"""Check engine.

Answers "does subject S hold relation R on object O?" by expanding the
relation's expression against stored tuples.

Evaluation:
1. Look up the expression for (object type, relation)
2. Direct set: match tuples written against the relation; concrete subjects
   compare by identity, usersets recurse through check
3. Union: branches in declaration order, first true wins
4. Tuple-to-userset: check the computed relation on every related object
5. Computed relation: check another relation on the same object

Every sub-problem goes through a single dispatch point that applies the
per-chain cycle cut, the depth limit, the deadline and the request memo.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Executor, ThreadPoolExecutor, wait
from typing import Any, Mapping, NamedTuple

from packages.rebac.config import EngineConfig
from packages.rebac.errors import CheckCancelledError, ConditionError, UnknownRelationError
from packages.rebac.models import (
    CheckResult,
    ComputedRelation,
    DirectSet,
    RelationExpression,
    RelationTuple,
    TupleToUserset,
    Union,
)
from packages.rebac.schema import CompiledSchema
from packages.rebac.store import TupleStore

logger = logging.getLogger(__name__)
decision_logger = logging.getLogger("rebac.decisions")

# (object_type, object_id, relation, subject_type, subject_id)
CheckKey = tuple[str, str, str, str, str]


class Outcome(NamedTuple):
    """Result of a sub-problem.

    ``cut`` marks a false answer that relied on a cycle cut or the depth
    limit. Such answers are only valid for the chain that produced them and
    are never memoized.
    """

    allowed: bool
    cut: bool = False


ALLOWED = Outcome(True)
DENIED = Outcome(False)
CUT = Outcome(False, True)


def context_signature(context: Mapping[str, Any] | None) -> str:
    """Stable, hashable rendering of a request context."""
    if not context:
        return ""
    return json.dumps(context, sort_keys=True, default=str)


class CheckScope:
    """State owned by one top-level check or expansion.

    Holds the request context, the memo, the deadline and counters. It is
    discarded when the request ends so memoized answers never leak across
    requests with different contexts.
    """

    def __init__(
        self,
        context: Mapping[str, Any] | None = None,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.context: dict[str, Any] = dict(context or {})
        self.context_key = context_signature(self.context)
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        # the caller's event is only ever read; stop() sets the scope's own
        self._caller_event = cancel_event
        self._stopped = threading.Event()
        self._memo: dict[tuple, Any] = {}
        self._lock = threading.Lock()
        self.dispatch_count = 0
        self.memo_hits = 0

    def stop(self) -> None:
        """End the scope; workers still running give up at their next dispatch."""
        self._stopped.set()

    def ensure_active(self) -> None:
        """Raise if the request was cancelled or ran past its deadline."""
        if self._caller_event is not None and self._caller_event.is_set():
            raise CheckCancelledError("Check cancelled by caller")
        if self._stopped.is_set():
            raise CheckCancelledError("Check stopped")
        if self.deadline is not None and time.monotonic() > self.deadline:
            self._stopped.set()
            raise CheckCancelledError()

    def memo_get(self, key: tuple) -> Any:
        with self._lock:
            value = self._memo.get(key)
            if value is not None:
                self.memo_hits += 1
            return value

    def memo_put(self, key: tuple, value: Any) -> None:
        with self._lock:
            self._memo[key] = value

    def record_dispatch(self) -> None:
        with self._lock:
            self.dispatch_count += 1


class RelationWalker:
    """Shared plumbing for check and expansion.

    Both read tuples the same way, filter them against the schema's subject
    specs and evaluate tuple conditions fail-closed.
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

    def new_scope(
        self,
        context: Mapping[str, Any] | None = None,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CheckScope:
        if timeout is None:
            timeout = self.config.check_timeout_seconds
        return CheckScope(context, timeout, cancel_event)

    def direct_tuples(
        self,
        object_type: str,
        object_id: str,
        relation: str,
        expression: DirectSet,
    ) -> list[RelationTuple]:
        """Tuples on the object that match one of the direct subject specs.

        Tuples that do not fit the schema are ignored rather than trusted.
        """
        return [
            tup
            for tup in self.store.list_tuples(object_type, object_id, relation)
            if any(spec.matches(tup) for spec in expression.subjects)
        ]

    def related_objects(
        self,
        object_type: str,
        object_id: str,
        expression: TupleToUserset,
    ) -> list[tuple[str, str]]:
        """Objects reached from the current one via the hierarchy relation."""
        tupleset = self.schema.get_expression(object_type, expression.tupleset)
        return [
            (tup.subject_type, tup.subject_id)
            for tup in self.direct_tuples(object_type, object_id, expression.tupleset, tupleset)
        ]

    def condition_holds(self, scope: CheckScope, tup: RelationTuple) -> bool:
        """Evaluate a tuple's condition; evaluation failures deny this tuple only."""
        if not tup.condition:
            return True
        try:
            return self.schema.evaluator.evaluate(tup.condition, tup.condition_params, scope.context)
        except ConditionError as exc:
            logger.debug("Condition failed closed for %s: %s", tup, exc.message)
            return False


class CheckEngine(RelationWalker):
    """Recursive relationship check engine.

    Usage:
        engine = CheckEngine(schema, store)
        if engine.check("folder2", "reports", "read", "user", "alice"):
            ...

        result = engine.check_detailed(
            "resource", "r1", "view", "user", "u1",
            context={"requested_group": "teamA"},
        )
    """

    def __init__(
        self,
        schema: CompiledSchema,
        store: TupleStore,
        config: EngineConfig | None = None,
        executor: Executor | None = None,
    ):
        super().__init__(schema, store, config)
        self._owns_executor = executor is None and self.config.max_concurrency > 1
        if self._owns_executor:
            executor = ThreadPoolExecutor(
                max_workers=self.config.max_concurrency,
                thread_name_prefix="rebac-check",
            )
        self.executor = executor

    def check(
        self,
        object_type: str,
        object_id: str,
        relation: str,
        subject_type: str,
        subject_id: str,
        context: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Check whether a subject holds a relation on an object.

        Raises:
            UnknownRelationError: if the type, relation or subject type is undefined
            CheckCancelledError: if the deadline passes
        """
        return self.check_detailed(
            object_type, object_id, relation, subject_type, subject_id, context, timeout
        ).allowed

    def check_detailed(
        self,
        object_type: str,
        object_id: str,
        relation: str,
        subject_type: str,
        subject_id: str,
        context: Mapping[str, Any] | None = None,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CheckResult:
        """Check and return evaluation statistics alongside the answer."""
        self.schema.get_expression(object_type, relation)
        if not self.schema.has_type(subject_type):
            raise UnknownRelationError(subject_type)

        scope = self.new_scope(context, timeout, cancel_event)
        started = time.perf_counter()
        try:
            outcome = self._dispatch(
                scope,
                (object_type, object_id, relation, subject_type, subject_id),
                frozenset(),
                0,
                fan_out=self.executor is not None,
            )
        except CheckCancelledError:
            decision_logger.warning(
                "Check cancelled: %s:%s#%s@%s:%s after %d dispatches",
                object_type, object_id, relation, subject_type, subject_id,
                scope.dispatch_count,
            )
            raise
        finally:
            scope.stop()

        result = CheckResult(
            allowed=outcome.allowed,
            object=f"{object_type}:{object_id}",
            relation=relation,
            subject=f"{subject_type}:{subject_id}",
            dispatch_count=scope.dispatch_count,
            memo_hits=scope.memo_hits,
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        decision_logger.info(
            "Check %s#%s@%s -> %s (dispatches=%d memo_hits=%d)",
            result.object, relation, result.subject,
            "ALLOWED" if result.allowed else "DENIED",
            result.dispatch_count, result.memo_hits,
        )
        return result

    def _dispatch(
        self,
        scope: CheckScope,
        key: CheckKey,
        visited: frozenset[CheckKey],
        depth: int,
        fan_out: bool = False,
    ) -> Outcome:
        scope.ensure_active()

        if key in visited:
            return CUT
        if depth > self.config.max_depth:
            logger.warning("Max depth %d reached at %s:%s#%s", self.config.max_depth, *key[:3])
            return CUT

        memo_key = key + (scope.context_key,)
        cached = scope.memo_get(memo_key)
        if cached is not None:
            return ALLOWED if cached else DENIED

        scope.record_dispatch()
        object_type, _, relation, _, _ = key
        expression = self.schema.get_expression(object_type, relation)
        outcome = self._evaluate(scope, expression, key, visited | {key}, depth, fan_out)

        if outcome.allowed or not outcome.cut:
            scope.memo_put(memo_key, outcome.allowed)
        return outcome

    def _evaluate(
        self,
        scope: CheckScope,
        expression: RelationExpression,
        key: CheckKey,
        visited: frozenset[CheckKey],
        depth: int,
        fan_out: bool = False,
    ) -> Outcome:
        object_type, object_id, relation, subject_type, subject_id = key

        if isinstance(expression, DirectSet):
            return self._evaluate_direct(scope, expression, key, visited, depth)

        if isinstance(expression, Union):
            branches = [
                (self._evaluate, (scope, child, key, visited, depth))
                for child in expression.children
            ]
            return self._any(scope, branches, fan_out)

        if isinstance(expression, TupleToUserset):
            branches = [
                (self._dispatch, (
                    scope,
                    (parent_type, parent_id, expression.computed, subject_type, subject_id),
                    visited,
                    depth + 1,
                ))
                for parent_type, parent_id in self.related_objects(object_type, object_id, expression)
            ]
            return self._any(scope, branches, fan_out)

        if isinstance(expression, ComputedRelation):
            return self._dispatch(
                scope,
                (object_type, object_id, expression.relation, subject_type, subject_id),
                visited,
                depth + 1,
            )

        raise TypeError(f"Unknown expression: {expression!r}")

    def _evaluate_direct(
        self,
        scope: CheckScope,
        expression: DirectSet,
        key: CheckKey,
        visited: frozenset[CheckKey],
        depth: int,
    ) -> Outcome:
        object_type, object_id, relation, subject_type, subject_id = key
        tuples = self.direct_tuples(object_type, object_id, relation, expression)

        usersets = []
        for tup in tuples:
            if tup.is_userset:
                usersets.append(tup)
            elif tup.subject_type == subject_type and (tup.subject_id == subject_id or tup.is_wildcard):
                if self.condition_holds(scope, tup):
                    return ALLOWED

        cut = False
        for tup in usersets:
            if not self.condition_holds(scope, tup):
                continue
            outcome = self._dispatch(
                scope,
                (tup.subject_type, tup.subject_id, tup.subject_relation, subject_type, subject_id),
                visited,
                depth + 1,
            )
            if outcome.allowed:
                return ALLOWED
            cut = cut or outcome.cut
        return Outcome(False, cut)

    def _any(self, scope: CheckScope, branches: list, fan_out: bool) -> Outcome:
        """OR over branches, short-circuiting on the first true one.

        With ``fan_out`` the branches run on the executor; nested levels stay
        sequential inside the workers so the pool can never starve itself.
        """
        if not branches:
            return DENIED

        if not fan_out or self.executor is None or len(branches) == 1:
            cut = False
            for func, args in branches:
                outcome = func(*args)
                if outcome.allowed:
                    return ALLOWED
                cut = cut or outcome.cut
            return Outcome(False, cut)

        pending = {self.executor.submit(func, *args) for func, args in branches}
        cut = False
        try:
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    outcome = future.result()
                    if outcome.allowed:
                        return ALLOWED
                    cut = cut or outcome.cut
        finally:
            for future in pending:
                future.cancel()
        return Outcome(False, cut)

    def shutdown(self) -> None:
        """Release the fan-out worker pool, if the engine created one."""
        if self._owns_executor:
            self.executor.shutdown(wait=False, cancel_futures=True)
