"""Converts between the annotation-tagged span form and the explicit-kind form.

The legacy form records one span per RPC, with core annotations (cs, sr, ss, cr)
telling which host did what. The explicit form records one span per host and
says so with ``kind``. Converting in either direction is a pure function.
"""

from __future__ import annotations

from typing import Optional

from trace_store.model import (
    CLIENT_ADDR,
    CLIENT_RECV,
    CLIENT_SEND,
    CORE_ANNOTATIONS,
    LOCAL_COMPONENT,
    SERVER_ADDR,
    SERVER_RECV,
    SERVER_SEND,
    Annotation,
    AnnotationType,
    BinaryAnnotation,
    Endpoint,
    Kind,
    LegacySpan,
    Span,
)


def close_enough(left: Endpoint, right: Endpoint) -> bool:
    """Endpoints are treated as the same host when their service names match."""
    return left.service_name == right.service_name


class _SpanBuilder:
    """Accumulates the data of one explicit-kind span during conversion."""

    def __init__(self, source: LegacySpan, local_endpoint: Optional[Endpoint] = None):
        self.source = source
        self.kind: Optional[Kind] = None
        self.timestamp: Optional[int] = None
        self.duration: Optional[int] = None
        self.local_endpoint = local_endpoint
        self.remote_endpoint: Optional[Endpoint] = None
        self.annotations: list[Annotation] = []
        self.tags: dict[str, str] = {}
        self.shared: Optional[bool] = None

    def add_annotation(self, timestamp: int, value: str) -> None:
        self.annotations.append(Annotation(timestamp, value))

    def build(self) -> Span:
        source = self.source
        return Span(
            trace_id_high=source.trace_id_high,
            trace_id=source.trace_id,
            parent_id=source.parent_id,
            id=source.id,
            kind=self.kind,
            name=source.name or None,
            timestamp=self.timestamp,
            duration=self.duration,
            local_endpoint=self.local_endpoint,
            remote_endpoint=self.remote_endpoint,
            annotations=tuple(self.annotations),
            tags=self.tags,
            debug=source.debug,
            shared=self.shared,
        )


class _Builders:
    """One builder per distinct endpoint, in the order endpoints are first seen."""

    def __init__(self, source: LegacySpan):
        self.source = source
        self.spans: list[_SpanBuilder] = [_SpanBuilder(source)]
        self.cs: Optional[Annotation] = None
        self.sr: Optional[Annotation] = None
        self.ss: Optional[Annotation] = None
        self.cr: Optional[Annotation] = None

    def process_annotations(self) -> None:
        source = self.source
        for a in source.annotations:
            current = self.for_endpoint(a.endpoint)
            # core annotations require an endpoint
            if a.value in CORE_ANNOTATIONS and a.endpoint is not None:
                if a.value == CLIENT_SEND:
                    current.kind = Kind.CLIENT
                    self.cs = a
                elif a.value == SERVER_RECV:
                    current.kind = Kind.SERVER
                    self.sr = a
                elif a.value == SERVER_SEND:
                    current.kind = Kind.SERVER
                    self.ss = a
                else:
                    current.kind = Kind.CLIENT
                    self.cr = a
            else:
                current.add_annotation(a.timestamp, a.value)

        cs, sr, ss, cr = self.cs, self.sr, self.ss, self.cr
        if cs is not None and sr is not None:
            # the client side owns the duration of a shared span
            self.maybe_timestamp_duration(cs, cr)

            client = self.for_endpoint(cs.endpoint)
            if close_enough(cs.endpoint, sr.endpoint):
                # loopback: fork a second span for the server side
                client.kind = Kind.CLIENT
                server = self.new_span_builder(sr.endpoint)
                server.kind = Kind.SERVER
            else:
                server = self.for_endpoint(sr.endpoint)

            server.shared = True
            server.timestamp = sr.timestamp
            if ss is not None:
                server.duration = ss.timestamp - sr.timestamp
            if cr is None and source.duration is None:
                client.duration = None  # one-way
        elif cs is not None and cr is not None:
            self.maybe_timestamp_duration(cs, cr)
        elif sr is not None and ss is not None:
            self.maybe_timestamp_duration(sr, ss)
        else:
            # incomplete RPC: undo the special-casing
            for builder in self.spans:
                if builder.kind is Kind.CLIENT and cs is not None:
                    builder.timestamp = cs.timestamp
                elif builder.kind is Kind.SERVER and sr is not None:
                    builder.timestamp = sr.timestamp
            self.revert_core_annotation(ss)
            self.revert_core_annotation(cr)

            if source.timestamp is not None:
                self.spans[0].timestamp = source.timestamp
                self.spans[0].duration = source.duration

    def revert_core_annotation(self, a: Optional[Annotation]) -> None:
        if a is None:
            return
        builder = self.for_endpoint(a.endpoint)
        builder.kind = None
        builder.add_annotation(a.timestamp, a.value)

    def maybe_timestamp_duration(self, begin: Annotation, end: Optional[Annotation]) -> None:
        source = self.source
        builder = self.for_endpoint(begin.endpoint)
        if source.timestamp is not None and source.duration is not None:
            builder.timestamp = source.timestamp
            builder.duration = source.duration
        else:
            builder.timestamp = begin.timestamp
            if end is not None:
                builder.duration = end.timestamp - begin.timestamp

    def process_binary_annotations(self) -> None:
        ca: Optional[Endpoint] = None
        sa: Optional[Endpoint] = None
        for b in self.source.binary_annotations:
            if b.type == AnnotationType.BOOL:
                if b.key == CLIENT_ADDR:
                    ca = b.endpoint
                elif b.key == SERVER_ADDR:
                    sa = b.endpoint
                continue
            current = self.for_endpoint(b.endpoint)
            if b.type == AnnotationType.STRING:
                # the empty "lc" marker only exists to carry an endpoint
                if b.key == LOCAL_COMPONENT and not b.value:
                    continue
                current.tags[b.key] = b.value

        cs, sr = self.cs, self.sr
        if cs is not None and sa is not None and not close_enough(sa, cs.endpoint):
            self.for_endpoint(cs.endpoint).remote_endpoint = sa

        if sr is not None and ca is not None and not close_enough(ca, sr.endpoint):
            self.for_endpoint(sr.endpoint).remote_endpoint = ca

        # address-only span: no core annotations, but both sides are known
        if cs is None and sr is None and ca is not None and sa is not None:
            self.for_endpoint(ca).remote_endpoint = sa

    def for_endpoint(self, endpoint: Optional[Endpoint]) -> _SpanBuilder:
        if endpoint is None:
            return self.spans[0]
        for builder in self.spans:
            if builder.local_endpoint is None:
                builder.local_endpoint = endpoint
                return builder
            if close_enough(builder.local_endpoint, endpoint):
                return builder
        return self.new_span_builder(endpoint)

    def new_span_builder(self, endpoint: Endpoint) -> _SpanBuilder:
        builder = _SpanBuilder(self.source, endpoint)
        self.spans.append(builder)
        return builder

    def build(self) -> list[Span]:
        return [builder.build() for builder in self.spans]


def from_legacy_span(source: LegacySpan) -> list[Span]:
    """Convert a legacy span, parsing RPC annotations into ``Span.kind``.

    Returns one span per distinct annotation endpoint (by service name), in the
    order the endpoints are first seen. A loopback RPC, where client and
    server share an endpoint, still yields separate client and server spans.
    """
    builders = _Builders(source)
    builders.process_annotations()
    builders.process_binary_annotations()
    return builders.build()


def to_legacy_span(span: Span) -> LegacySpan:
    """Convert an explicit-kind span, synthesizing core annotations from ``kind``."""
    local = span.local_endpoint
    timestamp = span.timestamp or 0
    duration = span.duration or 0

    cs = sr = ss = cr = None
    remote_type: Optional[str] = None

    if span.kind is not None:
        if span.kind is Kind.CLIENT:
            remote_type = SERVER_ADDR
            if timestamp:
                cs = Annotation(timestamp, CLIENT_SEND, local)
            if duration:
                cr = Annotation(timestamp + duration, CLIENT_RECV, local)
        elif span.kind is Kind.SERVER:
            remote_type = CLIENT_ADDR
            if timestamp:
                sr = Annotation(timestamp, SERVER_RECV, local)
            if duration:
                ss = Annotation(timestamp + duration, SERVER_SEND, local)
        else:
            raise AssertionError(f"update kind mapping: {span.kind!r}")

    annotations: list[Annotation] = []
    binary_annotations: list[BinaryAnnotation] = []
    wrote_endpoint = False

    for a in span.annotations:
        a = Annotation(a.timestamp, a.value, local)
        if a.value == CLIENT_SEND:
            cs = a
            remote_type = SERVER_ADDR
        elif a.value == SERVER_RECV:
            sr = a
            remote_type = CLIENT_ADDR
        elif a.value == SERVER_SEND:
            ss = a
        elif a.value == CLIENT_RECV:
            cr = a
        else:
            wrote_endpoint = True
            annotations.append(a)

    for key, value in span.tags.items():
        wrote_endpoint = True
        binary_annotations.append(BinaryAnnotation(key, value, AnnotationType.STRING, local))

    core = [a for a in (cs, sr, ss, cr) if a is not None]
    if core:
        annotations.extend(core)
        wrote_endpoint = True
    elif local is not None and span.remote_endpoint is not None:
        # address-only span
        binary_annotations.append(BinaryAnnotation.address(CLIENT_ADDR, local))
        wrote_endpoint = True
        remote_type = SERVER_ADDR

    if remote_type is not None and span.remote_endpoint is not None:
        binary_annotations.append(BinaryAnnotation.address(remote_type, span.remote_endpoint))

    result_timestamp = timestamp or None
    result_duration = duration if timestamp and duration else None
    # the server side of a shared span doesn't own its timing
    if span.shared and sr is not None:
        result_timestamp = result_duration = None

    if local is not None and not wrote_endpoint:
        binary_annotations.append(
            BinaryAnnotation(LOCAL_COMPONENT, "", AnnotationType.STRING, local)
        )

    return LegacySpan(
        trace_id_high=span.trace_id_high,
        trace_id=span.trace_id,
        parent_id=span.parent_id,
        id=span.id,
        name=span.name or "",
        timestamp=result_timestamp,
        duration=result_duration,
        annotations=tuple(annotations),
        binary_annotations=tuple(binary_annotations),
        debug=span.debug,
    )
