"""
Pytest configuration and Hypothesis strategies for property-based testing.

This module provides custom Hypothesis strategies for generating endpoints,
legacy spans with complete RPC annotations, span trees and query fixtures.
"""

import json
from typing import Optional

import pytest
from hypothesis import strategies as st

from trace_store.component import Storage, StorageOptions
from trace_store.diagnostics import CollectingSink
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
    LegacySpan,
)

# ============================================================================
# Shared Test Data
# ============================================================================

FRONTEND = Endpoint(service_name="frontend", ipv4="127.0.0.1")
BACKEND = Endpoint(service_name="backend", ipv4="192.168.99.101", port=9000)
KAFKA = Endpoint(service_name="kafka")

TODAY_MS = 1472470996199  # epoch milliseconds
TS = TODAY_MS * 1000  # the same instant in microseconds
DURATION = 207000

SERVICE_NAMES = ["frontend", "backend", "db", "cache", "auth", "kafka"]
RESERVED_KEYS = {CLIENT_ADDR, SERVER_ADDR, LOCAL_COMPONENT}


@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def storage():
    with Storage(StorageOptions(sink=CollectingSink())) as s:
        yield s


# ============================================================================
# Basic Building Blocks
# ============================================================================


@st.composite
def hex_id(draw, length: int = 16) -> str:
    """
    Generate a valid lower-hex ID string.

    Args:
        length: Number of hex characters (16 for a span id, 16 or 32 for a trace id)

    Returns:
        Hexadecimal string of specified length
    """
    hex_chars = "0123456789abcdef"
    return "".join(draw(st.lists(st.sampled_from(hex_chars), min_size=length, max_size=length)))


def span_ids():
    """Unsigned, non-zero 64-bit ids."""
    return st.integers(min_value=1, max_value=2**64 - 1)


def names():
    return st.text(alphabet="abcdefghijklmnopqrstuvwxyz/_-", min_size=1, max_size=20)


@st.composite
def endpoint(draw, service_name: Optional[str] = None) -> Endpoint:
    """Generate an endpoint, optionally with a fixed service name."""
    if service_name is None:
        service_name = draw(st.sampled_from(SERVICE_NAMES))
    ipv4 = draw(st.none() | st.ip_addresses(v=4).map(str))
    port = draw(st.none() | st.integers(min_value=1, max_value=65535))
    return Endpoint(service_name=service_name, ipv4=ipv4, port=port)


@st.composite
def plain_annotations(draw, host: Endpoint, base_ts: int) -> list[Annotation]:
    """Generate non-core annotations recorded by ``host``."""
    values = draw(
        st.lists(
            names().filter(lambda v: v not in CORE_ANNOTATIONS),
            max_size=4,
            unique=True,
        )
    )
    offsets = draw(st.lists(st.integers(min_value=0, max_value=10**6), min_size=len(values),
                            max_size=len(values)))
    return [Annotation(base_ts + o, v, host) for o, v in zip(offsets, values)]


@st.composite
def string_tags(draw, host: Endpoint) -> list[BinaryAnnotation]:
    """Generate string binary annotations with unique keys recorded by ``host``."""
    tags = draw(
        st.dictionaries(
            names().filter(lambda k: k not in RESERVED_KEYS),
            st.text(min_size=1, max_size=30),
            max_size=4,
        )
    )
    return [BinaryAnnotation(k, v, AnnotationType.STRING, host) for k, v in tags.items()]


# ============================================================================
# Legacy Span Strategies
# ============================================================================


@st.composite
def single_host_rpc_span(draw, kind: Optional[str] = None) -> LegacySpan:
    """
    Generate a legacy span recorded by one host with a complete cs/cr or sr/ss pair.

    The span-level timestamp and duration agree with the core annotations, and
    an optional remote address names a different service.

    Args:
        kind: "CLIENT" or "SERVER"; drawn when omitted

    Returns:
        LegacySpan carrying exactly one host's view of an RPC
    """
    if kind is None:
        kind = draw(st.sampled_from(["CLIENT", "SERVER"]))
    host = draw(endpoint())
    timestamp = draw(st.integers(min_value=1, max_value=2**53))
    duration = draw(st.integers(min_value=1, max_value=10**9))

    if kind == "CLIENT":
        begin, end, remote_key = CLIENT_SEND, CLIENT_RECV, SERVER_ADDR
    else:
        begin, end, remote_key = SERVER_RECV, SERVER_SEND, CLIENT_ADDR

    annotations = [
        Annotation(timestamp, begin, host),
        Annotation(timestamp + duration, end, host),
    ]
    annotations += draw(plain_annotations(host, timestamp))
    binary_annotations = draw(string_tags(host))

    if draw(st.booleans()):
        remote_service = draw(st.sampled_from([s for s in SERVICE_NAMES if s != host.service_name]))
        remote = draw(endpoint(service_name=remote_service))
        binary_annotations.append(BinaryAnnotation.address(remote_key, remote))

    return LegacySpan(
        trace_id=draw(span_ids()),
        id=draw(span_ids()),
        parent_id=draw(st.none() | span_ids()),
        name=draw(names()),
        timestamp=timestamp,
        duration=duration,
        annotations=tuple(annotations),
        binary_annotations=tuple(binary_annotations),
    )


@st.composite
def local_span(draw, trace_id: int, id: int, parent_id: Optional[int] = None,
               timestamp: Optional[int] = None) -> LegacySpan:
    """Generate a span carrying only a local component marker and some tags."""
    host = draw(endpoint())
    if timestamp is None:
        timestamp = draw(st.integers(min_value=1, max_value=2**53))
    binary = [BinaryAnnotation(LOCAL_COMPONENT, draw(names()), AnnotationType.STRING, host)]
    binary += draw(string_tags(host))
    return LegacySpan(
        trace_id=trace_id,
        id=id,
        parent_id=parent_id,
        name=draw(names()),
        timestamp=timestamp,
        duration=draw(st.integers(min_value=1, max_value=10**6)),
        binary_annotations=tuple(binary),
    )


@st.composite
def span_batch(draw, max_traces: int = 3, max_spans: int = 6) -> list[LegacySpan]:
    """
    Generate spans across a few traces, with some span ids reported twice.

    Returns:
        List of LegacySpans, possibly containing repeated keys
    """
    batch = []
    trace_ids = draw(st.lists(span_ids(), min_size=1, max_size=max_traces, unique=True))
    for trace_id in trace_ids:
        ids = draw(st.lists(span_ids(), min_size=1, max_size=max_spans, unique=True))
        for index, id in enumerate(ids):
            parent_id = ids[0] if index else None
            span = draw(local_span(trace_id, id, parent_id))
            batch.append(span)
            if draw(st.booleans()):
                batch.append(draw(local_span(trace_id, id, parent_id)))
    return batch


# ============================================================================
# Span Tree Strategies
# ============================================================================


@st.composite
def span_tree(draw, max_depth: int = 3, max_children: int = 3) -> list[tuple]:
    """
    Generate a proper tree as ``(parent_id, id)`` pairs, root first.

    Args:
        max_depth: Maximum tree depth
        max_children: Maximum children per node

    Returns:
        List of (parent_id, id) tuples; the root's parent_id is None
    """
    next_id = [1]
    pairs = []

    def generate_subtree(parent_id: Optional[int], depth: int) -> None:
        id = next_id[0]
        next_id[0] += 1
        pairs.append((parent_id, id))
        if depth < max_depth:
            num_children = draw(st.integers(min_value=0, max_value=max_children))
            for _ in range(num_children):
                generate_subtree(id, depth + 1)

    generate_subtree(None, 0)
    return pairs


# ============================================================================
# JSON Lines Strategies
# ============================================================================


@st.composite
def json_span(draw, trace_id: Optional[str] = None) -> dict:
    """Generate one explicit-kind span as a JSON-ready dict."""
    result = {
        "traceId": trace_id or draw(st.sampled_from([16, 32]).flatmap(lambda n: hex_id(n))),
        "id": draw(hex_id()),
        "name": draw(names()),
        "timestamp": draw(st.integers(min_value=1, max_value=2**53)),
        "duration": draw(st.integers(min_value=1, max_value=10**9)),
        "localEndpoint": {"serviceName": draw(st.sampled_from(SERVICE_NAMES))},
    }
    kind = draw(st.sampled_from([None, "CLIENT", "SERVER"]))
    if kind is not None:
        result["kind"] = kind
    return result


@st.composite
def json_line(draw) -> str:
    """Generate one line holding a span object or an array of spans."""
    if draw(st.booleans()):
        return json.dumps(draw(json_span()))
    return json.dumps(draw(st.lists(json_span(), min_size=1, max_size=4)))
