"""Relationship tuple storage.

The engine only reads tuples; owning workflows write them. Any backend is
acceptable as long as reads reflect the latest writes for the same object.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import Iterable, Iterator

from packages.rebac.models import RelationTuple

logger = logging.getLogger(__name__)


class TupleStore(ABC):
    """Abstract tuple store.

    Implementations:
    - InMemoryTupleStore: process-local, for tests and small deployments
    - FileTupleStore: JSON-lines change log replayed on start-up
    """

    @abstractmethod
    def list_tuples(
        self,
        object_type: str,
        object_id: str,
        relation: str | None = None,
        subject_type: str | None = None,
    ) -> list[RelationTuple]:
        """List tuples on an object.

        Args:
            object_type: Object type
            object_id: Object identifier
            relation: Restrict to one relation (all relations if None)
            subject_type: Restrict to subjects of this type
        """
        pass

    @abstractmethod
    def write(self, tuples: Iterable[RelationTuple]) -> int:
        """Insert or replace tuples. Returns the number written."""
        pass

    @abstractmethod
    def delete(self, tuples: Iterable[RelationTuple]) -> int:
        """Delete tuples by key. Returns the number removed."""
        pass

    @abstractmethod
    def apply_changes(
        self,
        deletes: Iterable[RelationTuple],
        writes: Iterable[RelationTuple],
    ) -> tuple[int, int]:
        """Delete then write as one change; readers never see the middle.

        Returns:
            (deleted, written)
        """
        pass

    @abstractmethod
    def replace(
        self,
        object_type: str,
        object_id: str,
        relations: Iterable[str],
        tuples: Iterable[RelationTuple],
    ) -> tuple[int, int]:
        """Swap every tuple of the given relations on an object for ``tuples``.

        Returns:
            (deleted, written)
        """
        pass

    @abstractmethod
    def all_tuples(self) -> Iterator[RelationTuple]:
        """Iterate over every stored tuple."""
        pass

    def count(self) -> int:
        return sum(1 for _ in self.all_tuples())


class InMemoryTupleStore(TupleStore):
    """Thread-safe in-memory tuple store.

    Tuples are indexed by object so that a check reads one bucket per
    object it visits.
    """

    def __init__(self, tuples: Iterable[RelationTuple] = ()):
        self._lock = threading.RLock()
        self._by_object: dict[tuple[str, str], dict[tuple, RelationTuple]] = defaultdict(dict)
        self._apply_write(tuples)

    def _apply_write(self, tuples: Iterable[RelationTuple]) -> int:
        written = 0
        with self._lock:
            for tup in tuples:
                self._by_object[(tup.object_type, tup.object_id)][tup.key] = tup
                written += 1
        return written

    def _apply_delete(self, tuples: Iterable[RelationTuple]) -> int:
        removed = 0
        with self._lock:
            for tup in tuples:
                bucket = self._by_object.get((tup.object_type, tup.object_id))
                if bucket and bucket.pop(tup.key, None) is not None:
                    removed += 1
                    if not bucket:
                        del self._by_object[(tup.object_type, tup.object_id)]
        return removed

    def list_tuples(
        self,
        object_type: str,
        object_id: str,
        relation: str | None = None,
        subject_type: str | None = None,
    ) -> list[RelationTuple]:
        with self._lock:
            bucket = self._by_object.get((object_type, object_id))
            if not bucket:
                return []
            return [
                tup for tup in bucket.values()
                if (relation is None or tup.relation == relation)
                and (subject_type is None or tup.subject_type == subject_type)
            ]

    def write(self, tuples: Iterable[RelationTuple]) -> int:
        written = self._apply_write(list(tuples))
        logger.debug("Wrote %d tuples", written)
        return written

    def delete(self, tuples: Iterable[RelationTuple]) -> int:
        removed = self._apply_delete(list(tuples))
        logger.debug("Deleted %d tuples", removed)
        return removed

    def apply_changes(
        self,
        deletes: Iterable[RelationTuple],
        writes: Iterable[RelationTuple],
    ) -> tuple[int, int]:
        deletes, writes = list(deletes), list(writes)
        with self._lock:
            removed = self._apply_delete(deletes)
            written = self._apply_write(writes)
        logger.debug("Applied changes: -%d +%d", removed, written)
        return removed, written

    def replace(
        self,
        object_type: str,
        object_id: str,
        relations: Iterable[str],
        tuples: Iterable[RelationTuple],
    ) -> tuple[int, int]:
        relations = set(relations)
        tuples = list(tuples)
        with self._lock:
            existing = [
                tup for tup in self.list_tuples(object_type, object_id)
                if tup.relation in relations
            ]
            return self.apply_changes(existing, tuples)

    def all_tuples(self) -> Iterator[RelationTuple]:
        with self._lock:
            snapshot = [tup for bucket in self._by_object.values() for tup in bucket.values()]
        return iter(snapshot)

    def count(self) -> int:
        with self._lock:
            return sum(len(bucket) for bucket in self._by_object.values())


class FileTupleStore(InMemoryTupleStore):
    """File-backed tuple store for development and small deployments.

    Every write and delete is appended to a JSON-lines change log, which is
    replayed into memory when the store is opened.

    WARNING: the log is never compacted. Use a database-backed store for
    high-volume deployments.
    """

    def __init__(self, storage_path: str | Path):
        """Initialize file storage.

        Args:
            storage_path: Path of the change log file
        """
        super().__init__()
        self.storage_path = Path(storage_path)
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        self._replay()
        logger.info(
            "FileTupleStore initialized at %s with %d tuples",
            self.storage_path,
            self.count(),
        )

    def _replay(self) -> None:
        if not self.storage_path.exists():
            return
        with open(self.storage_path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                    tup = RelationTuple.model_validate(event["tuple"])
                except (ValueError, KeyError) as exc:
                    logger.error(
                        "Skipping corrupt tuple log entry %s:%d: %s",
                        self.storage_path, line_no, exc,
                    )
                    continue
                if event.get("op") == "delete":
                    self._apply_delete([tup])
                else:
                    self._apply_write([tup])

    def _append(self, op: str, tuples: list[RelationTuple]) -> None:
        with open(self.storage_path, "a", encoding="utf-8") as f:
            for tup in tuples:
                f.write(json.dumps({"op": op, "tuple": tup.model_dump(mode="json")}) + "\n")

    def write(self, tuples: Iterable[RelationTuple]) -> int:
        tuples = list(tuples)
        with self._lock:
            self._append("write", tuples)
            return super().write(tuples)

    def delete(self, tuples: Iterable[RelationTuple]) -> int:
        tuples = list(tuples)
        with self._lock:
            self._append("delete", tuples)
            return super().delete(tuples)

    def apply_changes(
        self,
        deletes: Iterable[RelationTuple],
        writes: Iterable[RelationTuple],
    ) -> tuple[int, int]:
        deletes, writes = list(deletes), list(writes)
        with self._lock:
            self._append("delete", deletes)
            self._append("write", writes)
            return super().apply_changes(deletes, writes)
