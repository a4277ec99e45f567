"""Merging of legacy spans that share an id, and timestamp derivation."""

from __future__ import annotations

import dataclasses
from typing import Dict, Iterable, List, Optional

from trace_store.model import LegacySpan


def merge_spans(left: LegacySpan, right: LegacySpan) -> LegacySpan:
    """Merge two reports of the same span without losing any annotation.

    Annotations and binary annotations are unioned. ``right`` fills in the
    name (when ``left``'s is empty or "unknown"), parent id, debug flag and
    trace id high bits. With one timestamp, or two equal ones, the longer
    duration wins; otherwise the earlier timestamp wins and the duration
    stretches to the later end.
    """
    name = left.name
    if not name or name == "unknown":
        name = right.name

    timestamp: Optional[int]
    duration: Optional[int]
    if left.timestamp is None or right.timestamp is None or left.timestamp == right.timestamp:
        timestamp = left.timestamp if left.timestamp is not None else right.timestamp
        if left.duration is None:
            duration = right.duration
        elif right.duration is None:
            duration = left.duration
        else:
            duration = max(left.duration, right.duration)
    else:
        left_end = left.timestamp + (left.duration or 0)
        right_end = right.timestamp + (right.duration or 0)
        timestamp = min(left.timestamp, right.timestamp)
        duration = max(left_end, right_end) - timestamp

    return dataclasses.replace(
        left,
        trace_id_high=left.trace_id_high or right.trace_id_high,
        name=name,
        parent_id=left.parent_id if left.parent_id is not None else right.parent_id,
        timestamp=timestamp,
        duration=duration,
        annotations=left.annotations + right.annotations,
        binary_annotations=left.binary_annotations + right.binary_annotations,
        debug=left.debug if left.debug is not None else right.debug,
    )


def _sort_key(span: LegacySpan):
    # spans without a timestamp sort first
    timestamp = span.timestamp if span.timestamp is not None else -(2**63)
    return (timestamp, span.name)


def sort_by_timestamp(spans: Iterable[LegacySpan]) -> List[LegacySpan]:
    """Sort spans ascending by timestamp, then by name."""
    return sorted(spans, key=_sort_key)


def merge_by_id(spans: Iterable[LegacySpan]) -> List[LegacySpan]:
    """Collapse spans reported more than once into one span per id.

    Ids are compared on the low 64 bits of the trace id, so a span reported
    by a 64-bit instrumented host merges with its 128-bit counterpart.
    """
    by_id: Dict[tuple, LegacySpan] = {}
    for span in spans:
        key = (span.trace_id, span.id)
        existing = by_id.get(key)
        by_id[key] = span if existing is None else merge_spans(existing, span)

    trace_id_high = next((s.trace_id_high for s in by_id.values() if s.trace_id_high), 0)
    merged = [
        dataclasses.replace(s, trace_id_high=trace_id_high)
        if s.trace_id_high != trace_id_high
        else s
        for s in by_id.values()
    ]
    return sort_by_timestamp(merged)


def apply_timestamp_and_duration(span: LegacySpan) -> LegacySpan:
    """Derive a missing timestamp and duration from the annotations.

    Needs at least two annotations; the first one's timestamp becomes the
    span timestamp and the distance to the last one its duration.
    """
    if span.timestamp is not None or len(span.annotations) < 2:
        return span
    first = span.annotations[0].timestamp
    last = span.annotations[-1].timestamp
    return dataclasses.replace(
        span,
        timestamp=first,
        duration=last - first if last != first else None,
    )
