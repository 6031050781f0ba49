"""Tuple store tests."""

from __future__ import annotations

import json
import threading
import time

import pytest

from packages.rebac.models import RelationTuple
from packages.rebac.store import FileTupleStore, InMemoryTupleStore


def t(value: str, condition: str | None = None, **params) -> RelationTuple:
    return RelationTuple.from_string(value, condition, **params)


class TestRelationTuple:
    """Tests for tuple parsing and shape rules."""

    def test_from_string(self) -> None:
        """Userset subjects keep their relation."""
        tup = t("folder2:f1#view@team:eng#member")
        assert (tup.object_type, tup.object_id, tup.relation) == ("folder2", "f1", "view")
        assert (tup.subject_type, tup.subject_id, tup.subject_relation) == ("team", "eng", "member")
        assert tup.is_userset
        assert str(tup) == "folder2:f1#view@team:eng#member"

    def test_wildcard(self) -> None:
        """'*' subjects are wildcards."""
        assert t("doc:d1#view@user:*").is_wildcard

    def test_wildcard_userset_rejected(self) -> None:
        """A wildcard cannot be a userset."""
        with pytest.raises(ValueError):
            t("doc:d1#view@team:*#member")

    def test_params_need_condition(self) -> None:
        """Stored params without a condition are rejected."""
        with pytest.raises(ValueError):
            RelationTuple(
                object_type="doc", object_id="d1", relation="view",
                subject_type="user", subject_id="u1",
                condition_params={"x": 1},
            )

    @pytest.mark.parametrize("value", ["doc:d1@user:u1", "doc:d1#view", "doc#view@user:u1"])
    def test_malformed(self, value: str) -> None:
        """Malformed strings are rejected."""
        with pytest.raises(ValueError):
            t(value)

    def test_condition_is_not_identity(self) -> None:
        """Tuples differing only in their condition share a key."""
        assert t("resource:r1#view@user:u1").key == t("resource:r1#view@user:u1", "group_filter").key


class TestInMemoryTupleStore:
    """Tests for the in-memory store."""

    def test_list_by_object_and_relation(self) -> None:
        """Listing filters by relation and subject type."""
        store = InMemoryTupleStore([
            t("doc:d1#view@user:u1"),
            t("doc:d1#view@team:eng#member"),
            t("doc:d1#edit@user:u2"),
            t("doc:d2#view@user:u3"),
        ])
        assert len(store.list_tuples("doc", "d1")) == 3
        assert len(store.list_tuples("doc", "d1", "view")) == 2
        assert [x.subject_id for x in store.list_tuples("doc", "d1", "view", "team")] == ["eng"]
        assert store.list_tuples("doc", "missing") == []

    def test_write_is_idempotent(self) -> None:
        """Writing an existing tuple does not duplicate it."""
        store = InMemoryTupleStore()
        store.write([t("doc:d1#view@user:u1")])
        store.write([t("doc:d1#view@user:u1")])
        assert store.count() == 1

    def test_rewrite_replaces_condition(self) -> None:
        """A rewrite with a new condition replaces the stored tuple."""
        store = InMemoryTupleStore([t("resource:r1#view@user:u1")])
        store.write([t("resource:r1#view@user:u1", "group_filter", resource_group="a")])
        (stored,) = store.list_tuples("resource", "r1")
        assert stored.condition == "group_filter"

    def test_delete(self) -> None:
        """Deleting returns the number of tuples removed."""
        store = InMemoryTupleStore([t("doc:d1#view@user:u1"), t("doc:d1#view@user:u2")])
        assert store.delete([t("doc:d1#view@user:u1"), t("doc:d1#view@user:u9")]) == 1
        assert store.count() == 1
        assert store.delete([t("doc:d1#view@user:u2")]) == 1
        assert store.list_tuples("doc", "d1") == []
        assert list(store.all_tuples()) == []


class TestAtomicChanges:
    """Tests for combined delete-and-write changes."""

    def test_apply_changes(self) -> None:
        """Deletes and writes are applied together."""
        store = InMemoryTupleStore([t("doc:d1#view@user:u1")])
        assert store.apply_changes([t("doc:d1#view@user:u1")], [t("doc:d1#edit@user:u2")]) == (1, 1)
        assert [str(x) for x in store.list_tuples("doc", "d1")] == ["doc:d1#edit@user:u2"]

    def test_replace_keeps_other_relations(self) -> None:
        """Only the named relations are replaced."""
        store = InMemoryTupleStore([
            t("dashboard:1#parent@folder2:f1"),
            t("dashboard:1#view@user:u1"),
            t("dashboard:1#edit@user:u2"),
        ])
        assert store.replace("dashboard", "1", {"view", "edit"}, [t("dashboard:1#view@user:u3")]) == (2, 1)
        assert sorted(str(x) for x in store.list_tuples("dashboard", "1")) == [
            "dashboard:1#parent@folder2:f1",
            "dashboard:1#view@user:u3",
        ]

    def test_concurrent_replacements_do_not_merge(self) -> None:
        """Two full replacements racing each other leave exactly one list."""

        class SlowDeleteStore(InMemoryTupleStore):
            def _apply_delete(self, tuples):
                time.sleep(0.05)
                return super()._apply_delete(tuples)

        store = SlowDeleteStore([t("dashboard:1#view@user:old")])
        threads = [
            threading.Thread(
                target=store.replace,
                args=("dashboard", "1", {"view"}, [t(f"dashboard:1#view@user:{user}")]),
            )
            for user in ("a", "b")
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        users = [x.subject_id for x in store.list_tuples("dashboard", "1", "view")]
        assert users in (["a"], ["b"])

    def test_file_store_replays_replace(self, tmp_path) -> None:
        """A replacement survives reopening the file store."""
        path = tmp_path / "tuples.jsonl"
        store = FileTupleStore(path)
        store.write([t("dashboard:1#view@user:u1"), t("dashboard:1#parent@folder2:f1")])
        store.replace("dashboard", "1", {"view"}, [t("dashboard:1#view@user:u2")])

        reopened = FileTupleStore(path)
        assert sorted(str(x) for x in reopened.list_tuples("dashboard", "1")) == [
            "dashboard:1#parent@folder2:f1",
            "dashboard:1#view@user:u2",
        ]


class TestFileTupleStore:
    """Tests for the change-log backed store."""

    def test_replays_log(self, tmp_path) -> None:
        """Writes and deletes survive reopening the store."""
        path = tmp_path / "tuples.jsonl"
        store = FileTupleStore(path)
        store.write([
            t("doc:d1#view@user:u1"),
            t("resource:r1#view@user:u2", "group_filter", resource_group="a"),
        ])
        store.delete([t("doc:d1#view@user:u1")])

        reopened = FileTupleStore(path)
        assert reopened.count() == 1
        (stored,) = reopened.list_tuples("resource", "r1")
        assert stored.condition_params == {"resource_group": "a"}

    def test_skips_corrupt_lines(self, tmp_path) -> None:
        """Corrupt log lines are skipped."""
        path = tmp_path / "tuples.jsonl"
        good = t("doc:d1#view@user:u1").model_dump(mode="json")
        path.write_text(
            "not json\n"
            + json.dumps({"op": "write"}) + "\n"
            + json.dumps({"op": "write", "tuple": good}) + "\n",
            encoding="utf-8",
        )
        store = FileTupleStore(path)
        assert store.count() == 1

    def test_creates_parent_directory(self, tmp_path) -> None:
        """The log directory is created on demand."""
        store = FileTupleStore(tmp_path / "nested" / "tuples.jsonl")
        store.write([t("doc:d1#view@user:u1")])
        assert (tmp_path / "nested" / "tuples.jsonl").exists()
