"""
Keyed record store abstraction.

A store holds one kind of record (a pydantic model) per string key and
offers per-key atomic read-modify-write. Records handed out are copies;
writes replace the stored record wholesale, so a reader never observes a
record half way through a mutation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel

T = TypeVar("T", bound=BaseModel)

Mutator = Callable[[T], T]


@dataclass(frozen=True)
class Versioned(Generic[T]):
    """A record together with the version it was read at."""

    record: T
    version: int


class RecordStore(ABC, Generic[T]):
    """
    Per-identity store with atomic read-modify-write.

    Implementations must guarantee that two ``update`` calls on the same key
    never interleave, and that a mutator raising leaves the stored record
    untouched.
    """

    def __init__(self, model: Type[T], namespace: str):
        self.model = model
        self.namespace = namespace

    @abstractmethod
    def get_versioned(self, key: str) -> Optional[Versioned[T]]:
        """Return a copy of the record and its version, or None."""

    @abstractmethod
    def list(self) -> List[T]:
        """Return a consistent snapshot (copies) of every record."""

    @abstractmethod
    def add(self, key: str, record: T) -> T:
        """
        Insert a new record.

        Raises:
            Conflict: If the key already exists
        """

    @abstractmethod
    def update(self, key: str, mutator: Mutator) -> T:
        """
        Atomically apply ``mutator`` to the record stored under ``key``.

        The mutator receives a private copy and returns the record to store.
        Any exception it raises propagates and nothing is written.

        Raises:
            NotFound: If the key does not exist
        """

    @abstractmethod
    def compare_and_set(self, key: str, expected_version: int, record: T) -> bool:
        """Replace the record only if it is still at ``expected_version``."""

    def get(self, key: str) -> Optional[T]:
        entry = self.get_versioned(key)
        return entry.record if entry is not None else None

    def find(self, predicate: Callable[[T], bool]) -> Optional[T]:
        for record in self.list():
            if predicate(record):
                return record
        return None

    def filter(self, predicate: Callable[[T], bool]) -> List[T]:
        return [record for record in self.list() if predicate(record)]
