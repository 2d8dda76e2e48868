"""JSON-backed document store with unique indexes and atomic batch inserts."""
from __future__ import annotations

import copy
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import PersistenceError

logger = logging.getLogger(__name__)

IndexFunction = Callable[[Mapping[str, Any]], Iterable[str]]


class DuplicateKeyError(Exception):
    """Raised when an insert collides with a primary key or unique index value."""

    def __init__(self, collection: str, index: str, value: str) -> None:
        super().__init__(f"Duplicate value for {collection}.{index}")
        self.collection = collection
        self.index = index
        self.value = value


@dataclass(frozen=True)
class Insert:
    collection: str
    key: str
    document: Mapping[str, Any]


class DocumentStore:
    """Collections of JSON documents persisted to a single file.

    Every mutation happens under one re-entrant lock and is written through a
    temporary file followed by an atomic replace. If the write fails the
    in-memory state is rolled back and :class:`PersistenceError` is raised.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.RLock()
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._indexes: Dict[str, Dict[str, IndexFunction]] = {}
        self._index_values: Dict[Tuple[str, str], Dict[str, str]] = {}
        self._load()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def _load(self) -> None:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._collections = {}
            return
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Document store {self.path} is corrupt") from exc
        except OSError as exc:
            raise PersistenceError(f"Document store {self.path} is unreadable") from exc

        collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        if isinstance(raw, dict):
            for name, documents in raw.items():
                if not isinstance(documents, dict):
                    continue
                collections[name] = {
                    str(key): dict(value) for key, value in documents.items() if isinstance(value, dict)
                }
        self._collections = collections

    def _persist(self) -> None:
        tmp_path = self.path.with_suffix(".tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(self._collections, handle, indent=2, sort_keys=True)
            tmp_path.replace(self.path)
        except OSError as exc:
            logger.error("Failed to persist document store %s: %s", self.path, exc)
            raise PersistenceError("Document store write failed") from exc

    # ------------------------------------------------------------------
    # Indexes
    # ------------------------------------------------------------------
    def ensure_unique_index(self, collection: str, name: str, function: IndexFunction) -> None:
        with self._lock:
            values: Dict[str, str] = {}
            for key, document in self._collections.get(collection, {}).items():
                for value in function(document):
                    owner = values.get(value)
                    if owner is not None and owner != key:
                        raise DuplicateKeyError(collection, name, value)
                    values[value] = key
            self._indexes.setdefault(collection, {})[name] = function
            self._index_values[(collection, name)] = values

    def _index_entries(self, collection: str, document: Mapping[str, Any]) -> List[Tuple[str, str]]:
        entries: List[Tuple[str, str]] = []
        for name, function in self._indexes.get(collection, {}).items():
            for value in function(document):
                entries.append((name, value))
        return entries

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def find_one(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._collections.get(collection, {}).get(key)
            return copy.deepcopy(document) if document is not None else None

    def find_by_index(self, collection: str, index: str, value: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            key = self._index_values.get((collection, index), {}).get(value)
            if key is None:
                return None
            document = self._collections.get(collection, {}).get(key)
            if document is None:
                return None
            return key, copy.deepcopy(document)

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._collections.get(collection, {}))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def insert(self, collection: str, key: str, document: Mapping[str, Any]) -> None:
        self.insert_many([Insert(collection=collection, key=key, document=document)])

    def insert_many(self, inserts: Sequence[Insert]) -> None:
        """Insert all documents or none of them."""
        with self._lock:
            pending_keys: set[Tuple[str, str]] = set()
            pending_values: Dict[Tuple[str, str], Dict[str, str]] = {}
            for item in inserts:
                if item.key in self._collections.get(item.collection, {}) or (
                    item.collection,
                    item.key,
                ) in pending_keys:
                    raise DuplicateKeyError(item.collection, "_key", item.key)
                pending_keys.add((item.collection, item.key))
                for name, value in self._index_entries(item.collection, item.document):
                    existing = self._index_values.get((item.collection, name), {})
                    staged = pending_values.setdefault((item.collection, name), {})
                    if value in existing or value in staged:
                        raise DuplicateKeyError(item.collection, name, value)
                    staged[value] = item.key

            for item in inserts:
                self._collections.setdefault(item.collection, {})[item.key] = copy.deepcopy(
                    dict(item.document)
                )
            try:
                self._persist()
            except PersistenceError:
                for item in inserts:
                    self._collections.get(item.collection, {}).pop(item.key, None)
                raise
            for index_key, values in pending_values.items():
                self._index_values.setdefault(index_key, {}).update(values)

    def update(self, collection: str, key: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        """Apply ``changes`` in place; indexed values may not change."""
        return self.modify(collection, key, lambda current: changes)

    def modify(
        self,
        collection: str,
        key: str,
        function: Callable[[Mapping[str, Any]], Mapping[str, Any]],
    ) -> Dict[str, Any]:
        """Read, change and write one document under the store lock.

        ``function`` receives a copy of the current document and returns the
        fields to change, so read-modify-write sequences cannot interleave.
        """
        with self._lock:
            documents = self._collections.get(collection, {})
            current = documents.get(key)
            if current is None:
                raise KeyError(f"{collection}/{key} not found")
            changes = function(copy.deepcopy(current))
            updated = copy.deepcopy(current)
            updated.update(copy.deepcopy(dict(changes)))
            if sorted(self._index_entries(collection, updated)) != sorted(
                self._index_entries(collection, current)
            ):
                raise ValueError("Updates may not change unique index values")
            documents[key] = updated
            try:
                self._persist()
            except PersistenceError:
                documents[key] = current
                raise
            return copy.deepcopy(updated)


__all__ = ["DocumentStore", "DuplicateKeyError", "Insert"]
