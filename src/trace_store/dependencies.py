"""Derives caller/callee service links from traces."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

from trace_store.converter import from_legacy_span
from trace_store.diagnostics import DiagnosticSink, Level, warn_sink
from trace_store.merge import merge_by_id
from trace_store.model import DependencyLink, Kind, LegacySpan, Span
from trace_store.tree import TraceNode, TraceTreeBuilder


def _service_name(endpoint) -> Optional[str]:
    if endpoint is None or not endpoint.service_name:
        return None
    return endpoint.service_name


def _first_remote_ancestor(node: TraceNode) -> Optional[Span]:
    ancestor = node.parent
    while ancestor is not None:
        span = ancestor.value
        if span is not None and span.kind is not None:
            return span
        ancestor = ancestor.parent
    return None


class DependencyLinker:
    """Accumulates service call counts one trace at a time.

    Client spans with children are skipped: the server span below them
    records the same call. A span without a kind that knows both its local
    and remote service counts as a client call.
    """

    def __init__(self, sink: DiagnosticSink = warn_sink):
        self._sink = sink
        self._links: Dict[Tuple[str, str], int] = {}

    def put_trace(self, spans: Iterable[LegacySpan]) -> DependencyLinker:
        legacy = merge_by_id(spans)
        if not legacy:
            return self

        converted: List[Span] = []
        for span in legacy:
            converted.extend(from_legacy_span(span))

        # the server half of a shared span reuses the client's id
        shared_ids = {s.id for s in converted if s.shared}
        unshared_ids = {s.id for s in converted if not s.shared}

        builder = TraceTreeBuilder(self._sink, legacy[0].trace_id_string())
        for span in converted:
            if span.shared:
                key = (span.id, True)
                if span.id in unshared_ids:
                    parent_key = (span.id, False)
                elif span.parent_id is not None:
                    parent_key = (span.parent_id, span.parent_id in shared_ids)
                else:
                    parent_key = None
            else:
                key = (span.id, False)
                if span.parent_id is None:
                    parent_key = None
                else:
                    parent_key = (span.parent_id, span.parent_id in shared_ids)
            builder.add_node(parent_key, key, span)
        root = builder.build()

        for node in root.traverse():
            if node.is_synthetic_root_for_partial_tree:
                continue
            self._link_node(node, node is root)
        return self

    def _link_node(self, node: TraceNode, is_root: bool) -> None:
        span: Span = node.value
        kind = span.kind
        if kind is Kind.CLIENT and node.children:
            return

        service = _service_name(span.local_endpoint)
        remote_service = _service_name(span.remote_endpoint)
        if kind is None:
            if service is not None and remote_service is not None:
                kind = Kind.CLIENT
            else:
                self._sink(Level.FINE, "non-rpc span; skipping")
                return

        if kind is Kind.SERVER:
            parent, child = remote_service, service
            if is_root and parent is None:
                self._sink(Level.FINE, "root's client is unknown; skipping")
                return
        else:
            parent, child = service, remote_service

        remote_ancestor = _first_remote_ancestor(node)
        ancestor_name = _service_name(remote_ancestor.local_endpoint) if remote_ancestor else None
        if ancestor_name is not None:
            # a client call from a service whose inbound server span is missing
            if kind is Kind.CLIENT and service is not None and ancestor_name != service:
                self._sink(Level.FINE, "detected missing link to client span")
                self._add_link(ancestor_name, service)
            if kind is Kind.SERVER and parent is None:
                parent = ancestor_name

        if parent is None or child is None:
            self._sink(Level.FINE, "cannot find remote service; skipping")
            return
        self._add_link(parent, child)

    def _add_link(self, parent: str, child: str) -> None:
        key = (parent, child)
        self._links[key] = self._links.get(key, 0) + 1

    def link(self) -> List[DependencyLink]:
        """Return the accumulated links sorted by parent, then child."""
        return [
            DependencyLink(parent, child, count)
            for (parent, child), count in sorted(self._links.items())
        ]
