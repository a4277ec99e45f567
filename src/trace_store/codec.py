"""JSON lines reader and writer for explicit-kind spans.

Each line holds one span object or an array of them, with hex ids and
camelCase keys::

    {"traceId": "000000000000007b", "id": "0000000000000002", "kind": "CLIENT",
     "name": "get", "timestamp": 1472470996199000, "duration": 207000,
     "localEndpoint": {"serviceName": "frontend", "ipv4": "127.0.0.1"}}
"""

from __future__ import annotations

import gzip
import json
import sys
import warnings
from typing import IO, Any, Iterable, Optional

from trace_store.model import (
    Annotation,
    Endpoint,
    Kind,
    Span,
    lower_hex_to_unsigned,
    parse_trace_id,
    to_lower_hex,
)


def decode_endpoint(raw: Optional[dict[str, Any]]) -> Optional[Endpoint]:
    if not raw:
        return None
    if not isinstance(raw, dict):
        raise ValueError("Endpoint is not a JSON object")
    port = raw.get("port")
    return Endpoint(
        service_name=raw.get("serviceName", ""),
        ipv4=raw.get("ipv4"),
        ipv6=raw.get("ipv6"),
        port=int(port) if port else None,
    )


def decode_span(raw: dict[str, Any]) -> Span:
    """Convert one JSON span object into a ``Span``.

    Raises ValueError, KeyError or TypeError on malformed input.
    """
    if not isinstance(raw, dict):
        raise ValueError("Span is not a JSON object")
    trace_id_high, trace_id = parse_trace_id(raw["traceId"])
    parent_id = raw.get("parentId")
    kind = raw.get("kind")
    if kind is not None and kind not in Kind.__members__:
        raise ValueError(f"Unsupported span kind {kind!r}")

    timestamp = raw.get("timestamp")
    duration = raw.get("duration")
    return Span(
        trace_id_high=trace_id_high,
        trace_id=trace_id,
        parent_id=lower_hex_to_unsigned(parent_id) if parent_id else None,
        id=lower_hex_to_unsigned(raw["id"]),
        kind=Kind[kind] if kind else None,
        name=raw.get("name"),
        timestamp=int(timestamp) if timestamp else None,
        duration=int(duration) if duration else None,
        local_endpoint=decode_endpoint(raw.get("localEndpoint")),
        remote_endpoint=decode_endpoint(raw.get("remoteEndpoint")),
        annotations=tuple(
            Annotation(int(a["timestamp"]), str(a["value"])) for a in raw.get("annotations", [])
        ),
        tags={str(k): str(v) for k, v in (raw.get("tags") or {}).items()},
        debug=raw.get("debug"),
        shared=raw.get("shared"),
    )


def parse_line(line: str) -> list[Span]:
    """Parse one line holding a span object or an array of span objects.

    Raises ValueError if the line is not JSON or holds neither shape.
    Individual malformed spans inside an array are skipped.
    """
    data = json.loads(line)
    if isinstance(data, dict):
        return [decode_span(data)]
    if not isinstance(data, list):
        raise ValueError("Line is neither a span object nor an array of spans")

    spans: list[Span] = []
    for raw in data:
        try:
            spans.append(decode_span(raw))
        except (KeyError, TypeError, ValueError):
            continue
    return spans


def parse_stream(stream: IO) -> list[Span]:
    """Parse a JSON lines stream, skipping malformed lines with a warning."""
    spans: list[Span] = []
    for line_num, line in enumerate(stream, start=1):
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.strip()
        if not line:
            continue
        try:
            spans.extend(parse_line(line))
        except (KeyError, TypeError, ValueError) as exc:
            warnings.warn(f"Skipping malformed line {line_num}: {exc}", stacklevel=2)
    return spans


def parse_file(path: str) -> list[Span]:
    """Parse a span file: plain, gzip-compressed (``.gz``), or ``-`` for stdin."""
    if path == "-":
        return parse_stream(sys.stdin)

    if path.endswith(".gz"):
        with gzip.open(path, "rt", encoding="utf-8") as f:
            return parse_stream(f)

    with open(path, encoding="utf-8") as f:
        return parse_stream(f)


def encode_endpoint(endpoint: Endpoint) -> dict[str, Any]:
    result: dict[str, Any] = {}
    if endpoint.service_name:
        result["serviceName"] = endpoint.service_name
    if endpoint.ipv4:
        result["ipv4"] = endpoint.ipv4
    if endpoint.ipv6:
        result["ipv6"] = endpoint.ipv6
    if endpoint.port:
        result["port"] = endpoint.port
    return result


def encode_span(span: Span) -> dict[str, Any]:
    """Convert a ``Span`` into a JSON-ready dict, omitting absent fields."""
    result: dict[str, Any] = {"traceId": span.trace_id_string()}
    if span.parent_id is not None:
        result["parentId"] = to_lower_hex(span.parent_id)
    result["id"] = to_lower_hex(span.id)
    if span.kind is not None:
        result["kind"] = span.kind.value
    if span.name:
        result["name"] = span.name
    if span.timestamp is not None:
        result["timestamp"] = span.timestamp
    if span.duration is not None:
        result["duration"] = span.duration
    if span.local_endpoint is not None:
        result["localEndpoint"] = encode_endpoint(span.local_endpoint)
    if span.remote_endpoint is not None:
        result["remoteEndpoint"] = encode_endpoint(span.remote_endpoint)
    if span.annotations:
        result["annotations"] = [
            {"timestamp": a.timestamp, "value": a.value} for a in span.annotations
        ]
    if span.tags:
        result["tags"] = dict(span.tags)
    if span.debug is not None:
        result["debug"] = span.debug
    if span.shared is not None:
        result["shared"] = span.shared
    return result


def write_spans(spans: Iterable[Span], stream: IO[str]) -> int:
    """Write spans to ``stream``, one JSON object per line. Returns the count."""
    count = 0
    for span in spans:
        stream.write(json.dumps(encode_span(span), separators=(",", ":")))
        stream.write("\n")
        count += 1
    return count
