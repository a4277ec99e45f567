"""Trace tree builder: reconstructs a single-rooted hierarchy from flat spans."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Iterable, Iterator, List, Optional

from trace_store.diagnostics import DiagnosticSink, Level, warn_sink
from trace_store.model import LegacySpan, to_lower_hex


@dataclass(eq=False)
class TraceNode:
    """A node in a trace tree. A synthetic root carries no value."""

    value: Any = None
    children: List[TraceNode] = field(default_factory=list)
    parent: Optional[TraceNode] = field(default=None, repr=False)
    is_synthetic_root_for_partial_tree: bool = False

    def add_child(self, child: TraceNode) -> TraceNode:
        if child is self:
            raise ValueError(f"circular dependency on {self!r}")
        child.parent = self
        self.children.append(child)
        return self

    def traverse(self) -> Iterator[TraceNode]:
        """Yield this node and its descendants breadth-first."""
        queue = deque([self])
        while queue:
            node = queue.popleft()
            yield node
            queue.extend(node.children)


def _format_id(value: Hashable) -> str:
    if isinstance(value, int):
        return to_lower_hex(value)
    return str(value)


class TraceTreeBuilder:
    """Collects ``(parent_id, id, value)`` triples and links them into one tree.

    - The first node added with no parent is the natural root.
    - Nodes whose parent is unknown, and later parentless nodes, are attached to
      the natural root; each such event is reported.
    - With no natural root a synthetic one is substituted, reported once.
    - Links that would form a cycle are skipped and reported.
    - Duplicate ids keep the first occurrence.

    A builder is used for a single ``build()`` pass.
    """

    def __init__(self, sink: DiagnosticSink = warn_sink, trace_id: str = ""):
        self._sink = sink
        self._trace_id = trace_id
        self._root_id: Optional[Hashable] = None
        self._root: Optional[TraceNode] = None
        self._nodes: Dict[Hashable, TraceNode] = {}
        self._parents: Dict[Hashable, Optional[Hashable]] = {}

    def add_node(self, parent_id: Optional[Hashable], id: Hashable, value: Any) -> bool:
        """Add a node, returning False when it was skipped."""
        if parent_id is not None and self._creates_cycle(parent_id, id):
            self._sink(
                Level.FINE,
                f"skipping circular dependency: traceId={self._trace_id}, "
                f"spanId={_format_id(id)}",
            )
            return False
        if id in self._nodes:
            self._sink(
                Level.FINE,
                f"skipping duplicate span: traceId={self._trace_id}, spanId={_format_id(id)}",
            )
            return False

        node = TraceNode(value)
        if parent_id is None:
            if self._root is None:
                self._root = node
                self._root_id = id
            else:
                self._report_attributed_to_root(id)
        self._nodes[id] = node
        self._parents[id] = parent_id
        return True

    def _creates_cycle(self, parent_id: Hashable, id: Hashable) -> bool:
        visited = set()
        current: Optional[Hashable] = parent_id
        while current is not None and current not in visited:
            if current == id:
                return True
            visited.add(current)
            current = self._parents.get(current)
        return False

    def _report_attributed_to_root(self, id: Hashable) -> None:
        self._sink(
            Level.FINE,
            f"attributing span missing parent to root: traceId={self._trace_id}, "
            f"rootSpanId={_format_id(self._root_id)}, spanId={_format_id(id)}",
        )

    def build(self) -> TraceNode:
        """Link all added nodes and return the root."""
        root = self._root
        if root is None:
            root = TraceNode(is_synthetic_root_for_partial_tree=True)
            self._sink(
                Level.FINE,
                f"substituting dummy node for missing root span: traceId={self._trace_id}",
            )

        for id, node in self._nodes.items():
            if node is self._root:
                continue
            parent_id = self._parents[id]
            parent = self._nodes.get(parent_id) if parent_id is not None else None
            if parent is None:
                # parentless nodes were reported when added
                if self._root is not None and parent_id is not None:
                    self._report_attributed_to_root(id)
                root.add_child(node)
            else:
                parent.add_child(node)
        return root


def trace_key(span: LegacySpan, strict: bool = True):
    """Return the grouping key for a span's trace id."""
    if strict:
        return (span.trace_id_high, span.trace_id)
    return span.trace_id


def group_by_trace(spans: Iterable[LegacySpan], strict: bool = True) -> List[List[LegacySpan]]:
    """Group spans by trace id, in the order each trace is first seen.

    Strict grouping matches the full 128-bit id; otherwise only the low 64 bits.
    """
    groups: Dict[Any, List[LegacySpan]] = {}
    for span in spans:
        groups.setdefault(trace_key(span, strict), []).append(span)
    return list(groups.values())
