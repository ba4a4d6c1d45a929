"""
In-process record store with one lock per key.
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple, Type

from dispatch.errors import Conflict, NotFound
from dispatch.store.base import Mutator, RecordStore, T, Versioned

logger = logging.getLogger(__name__)


class InMemoryRecordStore(RecordStore[T]):
    """
    Thread-safe in-memory store.

    - ``_entries`` maps key -> (version, record); entries are replaced, never edited
    - ``_locks`` holds one lock per key and serializes writers of that key
    - ``_index_lock`` guards the two dicts themselves (insertions and snapshots)
    """

    def __init__(self, model: Type[T], namespace: str):
        super().__init__(model, namespace)
        self._entries: Dict[str, Tuple[int, T]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._index_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._index_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def get_versioned(self, key: str) -> Optional[Versioned[T]]:
        with self._index_lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        version, record = entry
        return Versioned(record=record.model_copy(deep=True), version=version)

    def list(self) -> List[T]:
        with self._index_lock:
            snapshot = list(self._entries.values())
        return [record.model_copy(deep=True) for _, record in snapshot]

    def add(self, key: str, record: T) -> T:
        with self._lock_for(key):
            with self._index_lock:
                if key in self._entries:
                    raise Conflict(f"{self.namespace} record {key} already exists")
                self._entries[key] = (1, record.model_copy(deep=True))
        logger.debug(f"Added {self.namespace}/{key}")
        return record.model_copy(deep=True)

    def update(self, key: str, mutator: Mutator) -> T:
        with self._lock_for(key):
            with self._index_lock:
                entry = self._entries.get(key)
            if entry is None:
                raise NotFound(f"{self.namespace} record {key} not found")
            version, current = entry
            updated = mutator(current.model_copy(deep=True))
            stored = updated.model_copy(deep=True)
            with self._index_lock:
                self._entries[key] = (version + 1, stored)
        return stored.model_copy(deep=True)

    def compare_and_set(self, key: str, expected_version: int, record: T) -> bool:
        with self._lock_for(key):
            with self._index_lock:
                entry = self._entries.get(key)
                if entry is None or entry[0] != expected_version:
                    return False
                self._entries[key] = (expected_version + 1, record.model_copy(deep=True))
        return True
