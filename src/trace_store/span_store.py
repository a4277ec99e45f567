"""Trace queries over the span map and service index."""

from __future__ import annotations

import sys
from typing import Dict, List, Optional, Set

from trace_store.dependencies import DependencyLinker
from trace_store.diagnostics import DiagnosticSink, warn_sink
from trace_store.merge import apply_timestamp_and_duration, merge_by_id, sort_by_timestamp
from trace_store.model import DependencyLink, LegacySpan
from trace_store.predicates import And, Equal, In, Or, Predicate
from trace_store.query import QueryRequest, span_predicate
from trace_store.skew import correct_for_clock_skew
from trace_store.storage import ServiceIndex, SpanMap
from trace_store.tree import group_by_trace, trace_key


def _cleanse(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().lower()
    return value or None


def _representative_timestamp(trace: List[LegacySpan]) -> int:
    return max((s.timestamp for s in trace if s.timestamp is not None), default=0)


def _trace_sort_key(trace: List[LegacySpan]):
    first = trace[0]
    return (_representative_timestamp(trace), first.trace_id_high, first.trace_id)


class SpanStore:
    """Serves trace, service and dependency queries.

    The store returns search results unordered, so ranking, grouping and
    truncation to ``limit`` all happen here. With ``strict_trace_id`` off,
    traces are identified by the low 64 bits of their id only.
    """

    def __init__(
        self,
        spans: SpanMap,
        services: ServiceIndex,
        strict_trace_id: bool = True,
        sink: DiagnosticSink = warn_sink,
    ):
        self._spans = spans
        self._services = services
        self.strict_trace_id = strict_trace_id
        self._sink = sink

    def get_traces(self, request: QueryRequest) -> List[List[LegacySpan]]:
        """Return matching traces, newest first, at most ``request.limit`` of them."""
        span_names = None
        if request.service_name is not None and request.span_name is None:
            span_names = sorted(self._services.get(request.service_name))
            if not span_names:
                return []

        matches = self._spans.project(
            span_predicate(request, span_names), ("trace_id_high", "trace_id")
        )
        candidates = self._rank_trace_ids({self._key(high, low) for high, low in matches})

        result: List[List[LegacySpan]] = []
        while candidates and len(result) < request.limit:
            batch = candidates[: request.limit - len(result)]
            candidates = candidates[len(batch) :]
            for trace in self._fetch_traces(batch):
                if request.test(trace):
                    result.append(trace)

        result.sort(key=_trace_sort_key, reverse=True)
        return result[: request.limit]

    def _key(self, trace_id_high: int, trace_id: int):
        return (trace_id_high, trace_id) if self.strict_trace_id else trace_id

    def _rank_trace_ids(self, keys: Set) -> list:
        """Order trace keys by the newest span of each whole trace, then by id, descending."""
        if not keys:
            return []
        newest: Dict = {}
        low_ids = {k[1] for k in keys} if self.strict_trace_id else keys
        spans = self._spans.project(
            In("trace_id", low_ids), ("trace_id_high", "trace_id", "timestamp")
        )
        for trace_id_high, trace_id, timestamp in spans:
            key = self._key(trace_id_high, trace_id)
            if timestamp is None or key not in keys:
                continue
            if key not in newest or timestamp > newest[key]:
                newest[key] = timestamp
        return sorted(newest, key=lambda k: (newest[k], k), reverse=True)

    def _trace_predicate(self, keys: list) -> Predicate:
        if self.strict_trace_id:
            return Or(
                *(And(Equal("trace_id_high", high), Equal("trace_id", low)) for high, low in keys)
            )
        return In("trace_id", keys)

    def _fetch_traces(self, keys: list) -> List[List[LegacySpan]]:
        spans = self._spans.values(self._trace_predicate(keys))
        by_key = {
            trace_key(group[0], self.strict_trace_id): group
            for group in group_by_trace(spans, self.strict_trace_id)
        }
        traces = []
        for key in keys:
            group = by_key.get(key)
            if not group:
                continue
            group = [apply_timestamp_and_duration(s) for s in group]
            traces.append(correct_for_clock_skew(merge_by_id(group), self._sink))
        return traces

    def _get_trace(self, trace_id_high: int, trace_id: int) -> Optional[List[LegacySpan]]:
        if self.strict_trace_id:
            predicate: Predicate = And(
                Equal("trace_id_high", trace_id_high), Equal("trace_id", trace_id)
            )
        else:
            predicate = Equal("trace_id", trace_id)
        spans = self._spans.values(predicate)
        return spans or None

    def get_trace(self, trace_id_high: int, trace_id: int) -> Optional[List[LegacySpan]]:
        """Return the merged, skew-corrected spans of a trace, or None."""
        spans = self._get_trace(trace_id_high, trace_id)
        if spans is None:
            return None
        return correct_for_clock_skew(merge_by_id(sort_by_timestamp(spans)), self._sink)

    def get_raw_trace(self, trace_id_high: int, trace_id: int) -> Optional[List[LegacySpan]]:
        """Return the spans of a trace as stored, in no particular order, or None."""
        return self._get_trace(trace_id_high, trace_id)

    def get_service_names(self) -> List[str]:
        return sorted(self._services.key_set())

    def get_span_names(self, service_name: Optional[str]) -> List[str]:
        service_name = _cleanse(service_name)
        if service_name is None:
            return []
        return sorted(self._services.get(service_name))

    def get_dependencies(self, end_ts: int, lookback: Optional[int] = None) -> List[DependencyLink]:
        """Link every trace in the window; ``lookback`` defaults to ``end_ts``."""
        request = QueryRequest(
            end_ts=end_ts,
            lookback=end_ts if lookback is None else lookback,
            limit=sys.maxsize,
        )
        linker = DependencyLinker(self._sink)
        for trace in self.get_traces(request):
            linker.put_trace(trace)
        return linker.link()
