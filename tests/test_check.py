"""Check engine tests."""

from __future__ import annotations

import threading
import time

import pytest

from packages.rebac.builtin import load_default_schema
from packages.rebac.config import EngineConfig
from packages.rebac.engine import CheckEngine, context_signature
from packages.rebac.errors import CheckCancelledError, UnknownRelationError
from packages.rebac.models import RelationTuple
from packages.rebac.schema import CompiledSchema, SchemaLoader
from packages.rebac.store import InMemoryTupleStore


def t(value: str, condition: str | None = None, **params) -> RelationTuple:
    return RelationTuple.from_string(value, condition, **params)


@pytest.fixture
def schema() -> CompiledSchema:
    """Built-in schema fixture."""
    return load_default_schema()


@pytest.fixture
def store() -> InMemoryTupleStore:
    """Empty tuple store fixture."""
    return InMemoryTupleStore()


@pytest.fixture
def engine(schema: CompiledSchema, store: InMemoryTupleStore) -> CheckEngine:
    """Sequential engine fixture."""
    return CheckEngine(schema, store)


class TestNamespaceScenario:
    """A user granted admin on a namespace."""

    def test_admin_implies_edit_and_view(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Admin on N1 grants admin, edit and view; others get nothing."""
        store.write([t("namespace:N1#admin@user:U")])
        assert engine.check("namespace", "N1", "view", "user", "U")
        assert engine.check("namespace", "N1", "edit", "user", "U")
        assert engine.check("namespace", "N1", "admin", "user", "U")
        assert not engine.check("namespace", "N1", "view", "user", "U2")

    def test_derived_actions(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Fine-grained actions follow the action sets."""
        store.write([t("namespace:N1#edit@user:U")])
        assert engine.check("namespace", "N1", "write", "user", "U")
        assert engine.check("namespace", "N1", "read", "user", "U")
        assert not engine.check("namespace", "N1", "permissions_write", "user", "U")

    def test_edit_does_not_imply_admin(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Grants never flow up the action-set chain."""
        store.write([t("namespace:N1#edit@user:U")])
        assert not engine.check("namespace", "N1", "admin", "user", "U")

    @pytest.mark.parametrize("grant", [
        "namespace:N1#admin@user:alice",
        "namespace:N1#edit@team:eng#member",
        "namespace:N1#view@role:viewer#assignee",
        "namespace:N1#admin@role:ops#assignee",
    ])
    def test_monotonic_action_sets(self, engine: CheckEngine, store: InMemoryTupleStore, grant: str) -> None:
        """admin implies edit implies view, for every subject."""
        store.write([
            t(grant),
            t("team:eng#member@user:bob"),
            t("team:eng#admin@user:carol"),
            t("role:viewer#assignee@user:dave"),
            t("role:ops#assignee@team:eng#member"),
        ])
        for subject in ("alice", "bob", "carol", "dave", "erin"):
            admin = engine.check("namespace", "N1", "admin", "user", subject)
            edit = engine.check("namespace", "N1", "edit", "user", subject)
            view = engine.check("namespace", "N1", "view", "user", subject)
            assert not admin or edit
            assert not edit or view


class TestUsersets:
    """Tests for team and role subjects."""

    def test_team_member(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Team members hold what the team was granted."""
        store.write([t("namespace:N1#view@team:eng#member"), t("team:eng#member@user:bob")])
        assert engine.check("namespace", "N1", "view", "user", "bob")
        assert not engine.check("namespace", "N1", "view", "user", "eve")

    def test_team_admin_is_member(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Team admins count as members."""
        store.write([t("namespace:N1#view@team:eng#member"), t("team:eng#admin@user:carol")])
        assert engine.check("namespace", "N1", "view", "user", "carol")

    def test_role_assigned_to_team(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Roles assigned to a team reach its members."""
        store.write([
            t("dashboard:d1#edit@role:editor#assignee"),
            t("role:editor#assignee@team:eng#member"),
            t("team:eng#member@user:bob"),
        ])
        assert engine.check("dashboard", "d1", "edit", "user", "bob")
        assert engine.check("dashboard", "d1", "write", "user", "bob")

    def test_role_cycle_terminates(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Roles assigned to each other do not loop."""
        store.write([
            t("role:a#assignee@role:b#assignee"),
            t("role:b#assignee@role:a#assignee"),
            t("namespace:N1#view@role:a#assignee"),
        ])
        assert engine.check("namespace", "N1", "view", "user", "u1") is False
        store.write([t("role:b#assignee@user:u1")])
        assert engine.check("namespace", "N1", "view", "user", "u1") is True


class TestHierarchy:
    """Tests for folder inheritance."""

    def test_child_inherits_parent_read(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Read on a folder implies read on its children."""
        store.write([
            t("folder2:child#parent@folder2:parent"),
            t("folder2:parent#read@user:alice"),
        ])
        assert engine.check("folder2", "parent", "read", "user", "alice")
        assert engine.check("folder2", "child", "read", "user", "alice")

    def test_parent_does_not_inherit_from_child(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """The converse does not hold."""
        store.write([
            t("folder2:child#parent@folder2:parent"),
            t("folder2:child#read@user:alice"),
        ])
        assert engine.check("folder2", "child", "read", "user", "alice")
        assert not engine.check("folder2", "parent", "read", "user", "alice")

    def test_dashboard_inherits_through_folders(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Folder admins administer dashboards several levels down."""
        store.write([
            t("dashboard:d1#parent@folder2:reports"),
            t("folder2:reports#parent@folder2:root"),
            t("folder2:root#admin@team:ops#member"),
            t("team:ops#member@user:olga"),
        ])
        assert engine.check("dashboard", "d1", "admin", "user", "olga")
        assert engine.check("dashboard", "d1", "view", "user", "olga")
        assert engine.check("dashboard", "d1", "permissions_write", "user", "olga")

    def test_missing_parent_is_false(self, engine: CheckEngine) -> None:
        """An object without a parent tuple ends the chain as false."""
        assert engine.check("folder2", "orphan", "read", "user", "alice") is False

    def test_parent_cycle_terminates(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """A parent chain A -> B -> A yields a definite answer."""
        store.write([t("folder2:A#parent@folder2:B"), t("folder2:B#parent@folder2:A")])
        assert engine.check("folder2", "A", "read", "user", "alice") is False

        store.write([t("folder2:B#view@user:alice")])
        assert engine.check("folder2", "A", "read", "user", "alice") is True
        assert engine.check("folder2", "B", "read", "user", "alice") is True
        assert engine.check("folder2", "A", "edit", "user", "alice") is False

    def test_depth_limit(self, schema: CompiledSchema, store: InMemoryTupleStore) -> None:
        """Chains deeper than max_depth resolve to false."""
        store.write([t(f"folder2:f{i}#parent@folder2:f{i + 1}") for i in range(6)])
        store.write([t("folder2:f6#read@user:alice")])

        shallow = CheckEngine(schema, store, EngineConfig(max_depth=3))
        assert shallow.check("folder2", "f0", "read", "user", "alice") is False
        assert CheckEngine(schema, store).check("folder2", "f0", "read", "user", "alice") is True


class TestConditions:
    """Tests for conditional grants."""

    def test_group_filter(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """The grant applies only when the requested group matches."""
        store.write([t("resource:R#view@user:U", "group_filter", resource_group="teamA")])
        assert engine.check("resource", "R", "view", "user", "U", {"requested_group": "teamA"})
        assert not engine.check("resource", "R", "view", "user", "U", {"requested_group": "teamB"})

    def test_missing_context_fails_closed(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """A condition without its runtime value denies that tuple only."""
        store.write([
            t("resource:R#view@user:U", "group_filter", resource_group="teamA"),
            t("resource:R#edit@team:eng#member"),
            t("team:eng#member@user:U"),
        ])
        assert engine.check("resource", "R", "view", "user", "U") is True
        assert engine.check("resource", "R", "read", "user", "U") is True

    def test_missing_context_without_other_grant(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Without other grants the check is simply false."""
        store.write([t("resource:R#view@user:U", "group_filter", resource_group="teamA")])
        assert engine.check("resource", "R", "view", "user", "U") is False

    def test_conditional_userset(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Conditions gate userset grants as well."""
        store.write([
            t("resource:R#edit@team:eng#member", "group_filter", resource_group="teamA"),
            t("team:eng#member@user:bob"),
        ])
        assert engine.check("resource", "R", "view", "user", "bob", {"requested_group": "teamA"})
        assert not engine.check("resource", "R", "view", "user", "bob", {"requested_group": "teamC"})

    def test_context_is_request_scoped(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Answers for one context are never reused for another."""
        store.write([t("resource:R#view@user:U", "group_filter", resource_group="teamA")])
        results = [
            engine.check("resource", "R", "view", "user", "U", {"requested_group": group})
            for group in ("teamA", "teamB", "teamA")
        ]
        assert results == [True, False, True]

    def test_context_signature_is_stable(self) -> None:
        """Key order does not change the signature."""
        assert context_signature({"a": 1, "b": 2}) == context_signature({"b": 2, "a": 1})
        assert context_signature(None) == context_signature({}) == ""


class TestEngineBehaviour:
    """Tests for determinism, errors, memoization and cancellation."""

    def test_idempotent(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Identical inputs give identical results."""
        store.write([
            t("dashboard:d1#parent@folder2:f1"),
            t("folder2:f1#view@team:eng#member"),
            t("team:eng#member@user:bob"),
        ])
        first = engine.check_detailed("dashboard", "d1", "read", "user", "bob")
        second = engine.check_detailed("dashboard", "d1", "read", "user", "bob")
        assert first.allowed is second.allowed is True
        assert first.dispatch_count == second.dispatch_count

    def test_unknown_relation(self, engine: CheckEngine) -> None:
        """Undefined relations are rejected, not denied."""
        with pytest.raises(UnknownRelationError):
            engine.check("dashboard", "d1", "own", "user", "bob")

    def test_unknown_object_type(self, engine: CheckEngine) -> None:
        """Undefined object types are rejected."""
        with pytest.raises(UnknownRelationError):
            engine.check("widget", "w1", "view", "user", "bob")

    def test_unknown_subject_type(self, engine: CheckEngine) -> None:
        """Undefined subject types are rejected."""
        with pytest.raises(UnknownRelationError):
            engine.check("dashboard", "d1", "view", "robot", "r2")

    def test_tuples_outside_schema_ignored(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Tuples that bypassed validation never grant access."""
        store.write([t("namespace:N1#view@folder2:f1")])
        assert engine.check("namespace", "N1", "view", "folder2", "f1") is False

    def test_memoizes_shared_subproblems(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """A sub-problem reached twice is answered once."""
        store.write([
            t("namespace:N1#view@team:eng#member"),
            t("namespace:N1#edit@team:eng#member"),
        ])
        result = engine.check_detailed("namespace", "N1", "view", "user", "eve")
        assert result.allowed is False
        assert result.memo_hits >= 1

    def test_wildcard(self, store: InMemoryTupleStore) -> None:
        """A wildcard grant matches every subject of the type."""
        schema = SchemaLoader().load_from_text(
            "type user\ntype bot\ntype doc\n  relations\n    define view: [user, user:*]\n"
        )
        engine = CheckEngine(schema, store)
        store.write([t("doc:d1#view@user:*")])
        assert engine.check("doc", "d1", "view", "user", "anyone")
        assert not engine.check("doc", "d1", "view", "bot", "b1")

    def test_cancel_event(self, engine: CheckEngine) -> None:
        """A cancelled request stops at the next boundary."""
        cancelled = threading.Event()
        cancelled.set()
        with pytest.raises(CheckCancelledError, match="cancelled by caller"):
            engine.check_detailed("namespace", "N1", "view", "user", "U", cancel_event=cancelled)

    def test_cancel_event_reusable(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Finishing a check leaves the caller's event untouched."""
        store.write([t("namespace:N1#admin@user:U")])
        event = threading.Event()
        assert engine.check_detailed("namespace", "N1", "view", "user", "U", cancel_event=event).allowed
        assert not event.is_set()
        assert engine.check_detailed("namespace", "N1", "edit", "user", "U", cancel_event=event).allowed

    def test_cancel_event_reusable_with_fan_out(self, schema: CompiledSchema, store: InMemoryTupleStore) -> None:
        """Stopping fan-out workers does not touch the caller's event."""
        store.write([t("namespace:N1#view@user:U")])
        engine = CheckEngine(schema, store, EngineConfig(max_concurrency=4))
        event = threading.Event()
        try:
            for _ in range(3):
                assert engine.check_detailed("namespace", "N1", "view", "user", "U", cancel_event=event).allowed
            assert not event.is_set()
        finally:
            engine.shutdown()

    def test_timeout(self, schema: CompiledSchema) -> None:
        """Checks running past their deadline are cancelled."""

        class SlowStore(InMemoryTupleStore):
            def list_tuples(self, *args, **kwargs):
                time.sleep(0.05)
                return super().list_tuples(*args, **kwargs)

        engine = CheckEngine(schema, SlowStore(), EngineConfig(check_timeout_seconds=0.01))
        with pytest.raises(CheckCancelledError):
            engine.check("namespace", "N1", "view", "user", "U")


class TestConcurrentFanOut:
    """Tests for evaluating root branches on a worker pool."""

    def test_matches_sequential(self, schema: CompiledSchema, store: InMemoryTupleStore) -> None:
        """Fan-out gives the same answers as sequential evaluation."""
        store.write([
            t("dashboard:d1#parent@folder2:f1"),
            t("folder2:f1#parent@folder2:f2"),
            t("folder2:f2#edit@team:eng#member"),
            t("team:eng#member@user:bob"),
            t("dashboard:d1#view@role:viewer#assignee"),
            t("role:viewer#assignee@user:vic"),
        ])
        sequential = CheckEngine(schema, store)
        concurrent = CheckEngine(schema, store, EngineConfig(max_concurrency=4))
        try:
            for relation in ("view", "edit", "admin", "write"):
                for user in ("bob", "vic", "eve"):
                    assert concurrent.check("dashboard", "d1", relation, "user", user) == \
                        sequential.check("dashboard", "d1", relation, "user", user)
        finally:
            concurrent.shutdown()

    def test_parallel_requests(self, engine: CheckEngine, store: InMemoryTupleStore) -> None:
        """Independent checks can run from many threads at once."""
        store.write([t("namespace:N1#admin@user:U")])
        results: list[bool] = []
        lock = threading.Lock()

        def worker(subject: str) -> None:
            allowed = engine.check("namespace", "N1", "view", "user", subject)
            with lock:
                results.append(allowed)

        threads = [threading.Thread(target=worker, args=("U" if i % 2 else "X",)) for i in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert sorted(results) == [False] * 5 + [True] * 5
