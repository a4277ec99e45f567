"""Trace query requests and the span-level search predicate built from them."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional

from trace_store.model import AnnotationType, Endpoint, LegacySpan
from trace_store.predicates import (
    AnyMatch,
    And,
    Between,
    Equal,
    LessEqual,
    Or,
    Predicate,
)

DEFAULT_LOOKBACK = 86400000  # one day, in milliseconds
DEFAULT_LIMIT = 10


def _cleanse(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().lower()
    return value or None


@dataclass(frozen=True)
class QueryRequest:
    """Criteria for ``SpanStore.get_traces``.

    ``end_ts`` and ``lookback`` are epoch milliseconds; durations are
    microseconds. ``annotations`` match an annotation value or a binary
    annotation key; ``tags`` match a string binary annotation by key and value.
    Service and span names are lowercased and trimmed, and blank ones dropped.
    """

    service_name: Optional[str] = None
    span_name: Optional[str] = None
    annotations: FrozenSet[str] = frozenset()
    tags: Dict[str, str] = field(default_factory=dict)
    min_duration: Optional[int] = None
    max_duration: Optional[int] = None
    end_ts: Optional[int] = None
    lookback: int = DEFAULT_LOOKBACK
    limit: int = DEFAULT_LIMIT

    def __post_init__(self):
        set_ = object.__setattr__
        set_(self, "service_name", _cleanse(self.service_name))
        set_(self, "span_name", _cleanse(self.span_name))
        set_(self, "annotations", frozenset(a.strip() for a in self.annotations if a.strip()))
        set_(self, "tags", dict(self.tags))
        if self.end_ts is None:
            set_(self, "end_ts", int(time.time() * 1000))

        if self.limit <= 0:
            raise ValueError(f"limit should be positive: was {self.limit}")
        if self.end_ts <= 0:
            raise ValueError(f"end_ts should be positive, in epoch milliseconds: was {self.end_ts}")
        if self.lookback <= 0:
            raise ValueError(f"lookback should be positive: was {self.lookback}")
        for key in self.tags:
            if not key:
                raise ValueError("tag keys should not be empty")
        if self.min_duration is not None:
            if self.min_duration <= 0:
                raise ValueError(f"min_duration should be positive: was {self.min_duration}")
            if self.max_duration is not None and self.max_duration < self.min_duration:
                raise ValueError("max_duration should be >= min_duration")
        elif self.max_duration is not None and self.max_duration <= 0:
            raise ValueError(f"max_duration should be positive: was {self.max_duration}")

    @property
    def start_ts_micros(self) -> int:
        return (self.end_ts - self.lookback) * 1000

    @property
    def end_ts_micros(self) -> int:
        return self.end_ts * 1000

    def _duration_ok(self, duration: Optional[int]) -> bool:
        if duration is None:
            return False
        if self.min_duration is not None and duration < self.min_duration:
            return False
        if self.max_duration is not None and duration > self.max_duration:
            return False
        return True

    def _applies_to_service(self, endpoint: Optional[Endpoint]) -> bool:
        return (
            self.service_name is None
            or endpoint is None
            or endpoint.service_name == self.service_name
        )

    def test(self, trace: List[LegacySpan]) -> bool:
        """Return True when the spans of one trace, taken together, match."""
        timestamps = [s.timestamp for s in trace if s.timestamp is not None]
        if not timestamps:
            return False
        first = min(timestamps)
        if first < self.start_ts_micros or first > self.end_ts_micros:
            return False

        service_names = set()
        span_name_to_match = self.span_name
        annotations_to_match = set(self.annotations)
        tags_to_match = dict(self.tags)
        tested_duration = self.min_duration is None and self.max_duration is None

        for span in trace:
            current_service_names = set()
            for a in span.annotations:
                if self._applies_to_service(a.endpoint):
                    annotations_to_match.discard(a.value)
                if a.endpoint is not None:
                    current_service_names.add(a.endpoint.service_name)
            for b in span.binary_annotations:
                if self._applies_to_service(b.endpoint):
                    annotations_to_match.discard(b.key)
                    if b.type == AnnotationType.STRING and tags_to_match.get(b.key) == b.value:
                        del tags_to_match[b.key]
                if b.endpoint is not None:
                    current_service_names.add(b.endpoint.service_name)
            service_names |= current_service_names

            if not tested_duration and (
                self.service_name is None or self.service_name in current_service_names
            ):
                tested_duration = self._duration_ok(span.duration)

            if span.name == span_name_to_match:
                span_name_to_match = None

        return (
            (self.service_name is None or self.service_name in service_names)
            and span_name_to_match is None
            and not annotations_to_match
            and not tags_to_match
            and tested_duration
        )


def span_predicate(request: QueryRequest, span_names: Optional[List[str]] = None) -> Predicate:
    """Build the span-level search predicate for a request.

    ``span_names`` are the names indexed for the request's service; they are
    only consulted when the request names a service but no span.
    """
    clauses: List[Predicate] = []

    if request.span_name is not None:
        clauses.append(Equal("name", request.span_name))
    elif request.service_name is not None:
        clauses.append(Or(*(Equal("name", name) for name in sorted(span_names or ()))))

    clauses.append(Between("timestamp", request.start_ts_micros, request.end_ts_micros))

    if request.min_duration is not None:
        upper = request.max_duration if request.max_duration is not None else 2**63 - 1
        clauses.append(Between("duration", request.min_duration, upper))
    elif request.max_duration is not None:
        clauses.append(LessEqual("duration", request.max_duration))

    for value in sorted(request.annotations):
        clauses.append(
            Or(
                AnyMatch("annotations", Equal("value", value)),
                AnyMatch("binary_annotations", Equal("key", value)),
            )
        )

    for key, value in sorted(request.tags.items()):
        clauses.append(
            AnyMatch(
                "binary_annotations",
                And(
                    Equal("key", key),
                    Equal("value", value),
                    Equal("type", AnnotationType.STRING),
                ),
            )
        )

    return And(*clauses)
