"""Span ingestion: merge incoming spans into the store and index service names."""

from __future__ import annotations

from typing import Iterable, Optional, Union

from trace_store.converter import to_legacy_span
from trace_store.merge import apply_timestamp_and_duration, merge_spans
from trace_store.model import LegacySpan, Span
from trace_store.storage import ServiceIndex, SpanMap, StorageKey


def _clean(name: Optional[str]) -> str:
    return (name or "").strip().lower()


class SpanConsumer:
    """Writes span batches into a ``SpanMap`` and keeps the ``ServiceIndex`` current.

    Writes are insert-if-absent, then merge-and-put on conflict. The two steps
    are separate store calls, so concurrent writers to the same span may lose
    an update.
    """

    def __init__(self, spans: SpanMap, services: ServiceIndex):
        self._spans = spans
        self._services = services

    def accept(self, spans: Optional[Iterable[Union[LegacySpan, Span]]]) -> None:
        if not spans:
            return
        for span in spans:
            if isinstance(span, Span):
                span = to_legacy_span(span)
            span = apply_timestamp_and_duration(span)
            key = StorageKey.of(span)

            previous = self._spans.put_if_absent(key, span)
            if previous is not None:
                self._spans.put(key, merge_spans(previous, span))

            self._index(span)

    def _index(self, span: LegacySpan) -> None:
        """Index the span, then each ancestor found in the store."""
        seen = set()
        current: Optional[LegacySpan] = span
        while current is not None:
            self._index_names(current)
            seen.add(current.id)
            if current.parent_id is None or current.parent_id in seen:
                return
            current = self._spans.get(
                StorageKey(current.trace_id_high, current.trace_id, current.parent_id)
            )

    def _index_names(self, span: LegacySpan) -> None:
        span_name = _clean(span.name)
        if not span_name:
            return
        for service_name in span.service_names():
            service_name = _clean(service_name)
            if not service_name:
                continue
            if not self._services.contains_entry(service_name, span_name):
                self._services.put(service_name, span_name)
