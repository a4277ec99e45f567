"""Composable predicates evaluated by the store against stored span values.

Attributes are addressed by dotted paths (``"endpoint.service_name"``); a path
that runs into ``None`` yields ``None``, which no comparison matches.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


def resolve(value: Any, path: str) -> Any:
    """Follow a dotted attribute path, returning None on a missing link."""
    for part in path.split("."):
        if value is None:
            return None
        value = getattr(value, part, None)
    return value


class Predicate(ABC):
    @abstractmethod
    def test(self, value: Any) -> bool: ...

    def __call__(self, value: Any) -> bool:
        return self.test(value)

    def __and__(self, other: Predicate) -> Predicate:
        return And(self, other)

    def __or__(self, other: Predicate) -> Predicate:
        return Or(self, other)


@dataclass(frozen=True)
class Equal(Predicate):
    attribute: str
    expected: Any

    def test(self, value: Any) -> bool:
        actual = resolve(value, self.attribute)
        return actual is not None and actual == self.expected


@dataclass(frozen=True)
class In(Predicate):
    attribute: str
    expected: frozenset

    def __post_init__(self):
        object.__setattr__(self, "expected", frozenset(self.expected))

    def test(self, value: Any) -> bool:
        return resolve(value, self.attribute) in self.expected


@dataclass(frozen=True)
class Between(Predicate):
    """Inclusive numeric range."""

    attribute: str
    low: int
    high: int

    def test(self, value: Any) -> bool:
        actual = resolve(value, self.attribute)
        return actual is not None and self.low <= actual <= self.high


@dataclass(frozen=True)
class GreaterEqual(Predicate):
    attribute: str
    bound: int

    def test(self, value: Any) -> bool:
        actual = resolve(value, self.attribute)
        return actual is not None and actual >= self.bound


@dataclass(frozen=True)
class LessEqual(Predicate):
    attribute: str
    bound: int

    def test(self, value: Any) -> bool:
        actual = resolve(value, self.attribute)
        return actual is not None and actual <= self.bound


class And(Predicate):
    def __init__(self, *predicates: Predicate):
        self.predicates = predicates

    def test(self, value: Any) -> bool:
        return all(p.test(value) for p in self.predicates)

    def __repr__(self) -> str:
        return f"And{self.predicates!r}"


class Or(Predicate):
    """Matches when any operand does. An empty ``Or`` matches nothing."""

    def __init__(self, *predicates: Predicate):
        self.predicates = predicates

    def test(self, value: Any) -> bool:
        return any(p.test(value) for p in self.predicates)

    def __repr__(self) -> str:
        return f"Or{self.predicates!r}"


@dataclass(frozen=True)
class AnyMatch(Predicate):
    """Matches when some element of a nested collection satisfies ``predicate``."""

    attribute: str
    predicate: Predicate

    def test(self, value: Any) -> bool:
        items = resolve(value, self.attribute) or ()
        return any(self.predicate.test(item) for item in items)


class Always(Predicate):
    def test(self, value: Any) -> bool:
        return True

    def __repr__(self) -> str:
        return "Always()"
