"""Key-value store abstraction and its in-memory partitioned implementation.

The span map is keyed by ``StorageKey`` and searched with predicates; the
service index maps a service name to the set of span names seen for it.
Results of a predicate search come back in arbitrary order.
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from trace_store.model import LegacySpan
from trace_store.predicates import Predicate, resolve


class StoreClosedError(RuntimeError):
    """Raised by store calls made after the store was closed."""


@dataclass(frozen=True, order=True)
class StorageKey:
    trace_id_high: int
    trace_id: int
    id: int

    @classmethod
    def of(cls, span: LegacySpan) -> StorageKey:
        return cls(span.trace_id_high, span.trace_id, span.id)


class SpanMap(ABC):
    @abstractmethod
    def get(self, key: StorageKey) -> Optional[LegacySpan]: ...

    @abstractmethod
    def put(self, key: StorageKey, value: LegacySpan) -> None: ...

    @abstractmethod
    def put_if_absent(self, key: StorageKey, value: LegacySpan) -> Optional[LegacySpan]:
        """Store ``value`` unless a value exists; return the existing value, if any."""

    @abstractmethod
    def values(self, predicate: Predicate) -> List[LegacySpan]: ...

    @abstractmethod
    def project(self, predicate: Predicate, fields: Sequence[str]) -> List[Tuple[Any, ...]]:
        """Return the named attributes of every matching value, one tuple each."""


class ServiceIndex(ABC):
    @abstractmethod
    def get(self, service_name: str) -> Set[str]: ...

    @abstractmethod
    def put(self, service_name: str, span_name: str) -> None: ...

    @abstractmethod
    def contains_entry(self, service_name: str, span_name: str) -> bool: ...

    @abstractmethod
    def key_set(self) -> Set[str]: ...


class _Closeable:
    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def ensure_open(self) -> None:
        if self.closed:
            raise StoreClosedError(f"{type(self).__name__} is closed")


class InMemorySpanMap(_Closeable, SpanMap):
    """Spans spread over ``partition_count`` dicts by key hash.

    Searches visit partitions starting from a random one, so result order is
    not stable between calls.
    """

    def __init__(self, partition_count: int = 4):
        super().__init__()
        if partition_count < 1:
            raise ValueError("partition_count must be at least 1")
        self._partitions: List[Dict[StorageKey, LegacySpan]] = [
            {} for _ in range(partition_count)
        ]

    def _partition(self, key: StorageKey) -> Dict[StorageKey, LegacySpan]:
        return self._partitions[hash(key) % len(self._partitions)]

    def _scan(self):
        count = len(self._partitions)
        start = random.randrange(count)
        for offset in range(count):
            # copy so concurrent writers can't break iteration
            yield from list(self._partitions[(start + offset) % count].values())

    def get(self, key: StorageKey) -> Optional[LegacySpan]:
        self.ensure_open()
        return self._partition(key).get(key)

    def put(self, key: StorageKey, value: LegacySpan) -> None:
        self.ensure_open()
        self._partition(key)[key] = value

    def put_if_absent(self, key: StorageKey, value: LegacySpan) -> Optional[LegacySpan]:
        self.ensure_open()
        existing = self._partition(key).setdefault(key, value)
        return None if existing is value else existing

    def values(self, predicate: Predicate) -> List[LegacySpan]:
        self.ensure_open()
        return [span for span in self._scan() if predicate.test(span)]

    def project(self, predicate: Predicate, fields: Sequence[str]) -> List[Tuple[Any, ...]]:
        self.ensure_open()
        return [
            tuple(resolve(span, f) for f in fields)
            for span in self._scan()
            if predicate.test(span)
        ]

    def __len__(self) -> int:
        return sum(len(p) for p in self._partitions)


class InMemoryServiceIndex(_Closeable, ServiceIndex):
    def __init__(self) -> None:
        super().__init__()
        self._entries: Dict[str, Set[str]] = {}

    def get(self, service_name: str) -> Set[str]:
        self.ensure_open()
        return set(self._entries.get(service_name, ()))

    def put(self, service_name: str, span_name: str) -> None:
        self.ensure_open()
        self._entries.setdefault(service_name, set()).add(span_name)

    def contains_entry(self, service_name: str, span_name: str) -> bool:
        self.ensure_open()
        return span_name in self._entries.get(service_name, ())

    def key_set(self) -> Set[str]:
        self.ensure_open()
        return set(self._entries)
