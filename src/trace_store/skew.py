"""Clock skew correction for traces whose hosts disagree about the time.

When a client and a server record the same RPC, the server's interval should
sit inside the client's. If it doesn't, the server host's clock is assumed
to be off; its annotations are shifted so the RPC latency is split evenly on
both sides, and the shift carries down to that host's work in the subtree.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from trace_store.converter import close_enough
from trace_store.diagnostics import DiagnosticSink, Level, warn_sink
from trace_store.model import (
    CLIENT_RECV,
    CLIENT_SEND,
    LOCAL_COMPONENT,
    SERVER_RECV,
    SERVER_SEND,
    Annotation,
    Endpoint,
    LegacySpan,
)
from trace_store.tree import TraceNode, TraceTreeBuilder


@dataclass(frozen=True)
class ClockSkew:
    endpoint: Endpoint
    skew: int


def correct_for_clock_skew(
    spans: List[LegacySpan], sink: DiagnosticSink = warn_sink
) -> List[LegacySpan]:
    """Return the spans of one trace with server clock skew removed.

    The result is in breadth-first tree order. If the trace can't be built
    into a tree cleanly the input is returned untouched.
    """
    if not spans:
        return spans

    trace_id = spans[0].trace_id_string()
    builder = TraceTreeBuilder(sink, trace_id)
    data_error = False
    for span in spans:
        if not builder.add_node(span.parent_id, span.id, span):
            data_error = True
    if data_error:
        sink(Level.FINE, f"skipping clock skew adjustment due to data errors: traceId={trace_id}")
        return spans

    root = builder.build()
    _adjust(root, None)
    return [node.value for node in root.traverse() if node.value is not None]


def _adjust(root: TraceNode, root_skew: Optional[ClockSkew]) -> None:
    """Walk the tree top-down, carrying each node's skew to its children."""
    stack: List[Tuple[TraceNode, Optional[ClockSkew]]] = [(root, root_skew)]
    while stack:
        node, skew_from_parent = stack.pop()
        skew: Optional[ClockSkew] = None
        if node.value is not None:
            if skew_from_parent is not None:
                node.value = _adjust_timestamps(node.value, skew_from_parent)

            skew = clock_skew(node.value)
            if skew is not None:
                # this span may be skewed on a different host than its parent
                node.value = _adjust_timestamps(node.value, skew)
            elif skew_from_parent is not None and _is_local_span(node.value):
                skew = skew_from_parent

        stack.extend((child, skew) for child in node.children)


def _is_local_span(span: LegacySpan) -> bool:
    """True when every annotation endpoint in the span is the same host."""
    endpoint: Optional[Endpoint] = None
    for item in (*span.annotations, *span.binary_annotations):
        if endpoint is None:
            endpoint = item.endpoint
        if endpoint is not None and item.endpoint is not None and item.endpoint != endpoint:
            return False
    return True


def _adjust_timestamps(span: LegacySpan, skew: ClockSkew) -> LegacySpan:
    if skew.skew == 0:
        return span

    changed = False
    span_timestamp: Optional[int] = None
    annotations: List[Annotation] = []
    for a in span.annotations:
        if a.endpoint is not None and close_enough(skew.endpoint, a.endpoint):
            if span.timestamp is not None and a.timestamp == span.timestamp:
                span_timestamp = a.timestamp
            a = dataclasses.replace(a, timestamp=a.timestamp - skew.skew)
            changed = True
        annotations.append(a)

    if changed:
        timestamp = span.timestamp
        if span_timestamp is not None:
            timestamp = span_timestamp - skew.skew
        return dataclasses.replace(span, annotations=tuple(annotations), timestamp=timestamp)

    # a local span on the skewed host
    for b in span.binary_annotations:
        if (
            b.key == LOCAL_COMPONENT
            and b.endpoint is not None
            and close_enough(skew.endpoint, b.endpoint)
            and span.timestamp is not None
        ):
            return dataclasses.replace(span, timestamp=span.timestamp - skew.skew)
    return span


def clock_skew(span: LegacySpan) -> Optional[ClockSkew]:
    """Compute the skew of the server side of an RPC span, if any."""
    by_value: Dict[str, Annotation] = {a.value: a for a in span.annotations}
    cs, cr = by_value.get(CLIENT_SEND), by_value.get(CLIENT_RECV)
    sr, ss = by_value.get(SERVER_RECV), by_value.get(SERVER_SEND)
    if cs is None or cr is None or sr is None or ss is None:
        return None

    server = sr.endpoint if sr.endpoint is not None else ss.endpoint
    if server is None:
        return None

    client_duration = cr.timestamp - cs.timestamp
    server_duration = ss.timestamp - sr.timestamp
    # skew exists only when cs is after sr or cr is before ss
    cs_ahead = cs.timestamp < sr.timestamp
    cr_ahead = cr.timestamp > ss.timestamp
    if server_duration > client_duration or (cs_ahead and cr_ahead):
        return None

    latency = (client_duration - server_duration) // 2
    skew = sr.timestamp - latency - cs.timestamp
    if skew == 0:
        return None
    return ClockSkew(server, skew)
