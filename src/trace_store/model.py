"""Span value objects in both the annotation-tagged and explicit-kind forms."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional

CLIENT_SEND = "cs"
CLIENT_RECV = "cr"
SERVER_SEND = "ss"
SERVER_RECV = "sr"
CORE_ANNOTATIONS = (CLIENT_SEND, SERVER_RECV, SERVER_SEND, CLIENT_RECV)

CLIENT_ADDR = "ca"
SERVER_ADDR = "sa"
LOCAL_COMPONENT = "lc"


class Kind(Enum):
    CLIENT = "CLIENT"
    SERVER = "SERVER"


class AnnotationType(IntEnum):
    BOOL = 0
    BYTES = 1
    I16 = 2
    I32 = 3
    I64 = 4
    DOUBLE = 5
    STRING = 6


_HEX_DIGITS = frozenset("0123456789abcdef")


def lower_hex_to_unsigned(text: str, index: int = 0) -> int:
    """Parse up to 16 lower-hex characters starting at ``index`` into an unsigned long."""
    chunk = (text or "")[index : index + 16]
    if not chunk or not _HEX_DIGITS.issuperset(chunk):
        raise ValueError(f"{text!r} is not a lower-hex id")
    return int(chunk, 16)


def parse_trace_id(text: str) -> tuple[int, int]:
    """Split a 16 or 32 character hex trace id into ``(trace_id_high, trace_id)``."""
    text = (text or "").strip().lower()
    if len(text) > 32:
        raise ValueError(f"{text!r} is longer than 32 hex characters")
    if len(text) > 16:
        text = text.rjust(32, "0")
        return lower_hex_to_unsigned(text, 0), lower_hex_to_unsigned(text, 16)
    return 0, lower_hex_to_unsigned(text)


def to_lower_hex(value: int) -> str:
    """Render an unsigned long as 16 lower-hex characters."""
    return f"{value & 0xFFFFFFFFFFFFFFFF:016x}"


@dataclass(frozen=True)
class Endpoint:
    """The network context of a node in the service graph.

    Service names are lowercased; ``close_enough`` comparison uses them alone.
    """

    service_name: str
    ipv4: Optional[str] = None
    ipv6: Optional[str] = None
    port: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "service_name", (self.service_name or "").lower())


@dataclass(frozen=True)
class Annotation:
    timestamp: int
    value: str
    endpoint: Optional[Endpoint] = None


@dataclass(frozen=True)
class BinaryAnnotation:
    """A tag in the legacy form. Address markers use ``AnnotationType.BOOL``."""

    key: str
    value: str = ""
    type: AnnotationType = AnnotationType.STRING
    endpoint: Optional[Endpoint] = None

    @classmethod
    def address(cls, key: str, endpoint: Endpoint) -> BinaryAnnotation:
        return cls(key=key, value="true", type=AnnotationType.BOOL, endpoint=endpoint)


def _annotation_key(a: Annotation):
    return (a.timestamp, a.value)


def _dedupe(items):
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


@dataclass(frozen=True)
class LegacySpan:
    """A span in the annotation-tagged form.

    Annotations are kept sorted by timestamp; binary annotations keep the order
    they were reported in. Duplicates of either are dropped.
    """

    trace_id: int
    id: int
    trace_id_high: int = 0
    parent_id: Optional[int] = None
    name: str = ""
    timestamp: Optional[int] = None
    duration: Optional[int] = None
    annotations: tuple[Annotation, ...] = ()
    binary_annotations: tuple[BinaryAnnotation, ...] = ()
    debug: Optional[bool] = None

    def __post_init__(self):
        annotations = sorted(_dedupe(self.annotations), key=_annotation_key)
        binary = _dedupe(self.binary_annotations)
        object.__setattr__(self, "annotations", tuple(annotations))
        object.__setattr__(self, "binary_annotations", tuple(binary))
        object.__setattr__(self, "name", (self.name or "").lower())

    def trace_id_string(self) -> str:
        if self.trace_id_high:
            return to_lower_hex(self.trace_id_high) + to_lower_hex(self.trace_id)
        return to_lower_hex(self.trace_id)

    def service_names(self) -> set[str]:
        """Return the service names of every endpoint this span mentions."""
        names = set()
        for item in (*self.annotations, *self.binary_annotations):
            if item.endpoint is not None and item.endpoint.service_name:
                names.add(item.endpoint.service_name)
        return names


@dataclass(frozen=True)
class Span:
    """A span in the explicit-kind form, one per host that recorded it."""

    trace_id: int
    id: int
    trace_id_high: int = 0
    parent_id: Optional[int] = None
    kind: Optional[Kind] = None
    name: Optional[str] = None
    timestamp: Optional[int] = None
    duration: Optional[int] = None
    local_endpoint: Optional[Endpoint] = None
    remote_endpoint: Optional[Endpoint] = None
    annotations: tuple[Annotation, ...] = ()
    tags: dict[str, str] = field(default_factory=dict)
    debug: Optional[bool] = None
    shared: Optional[bool] = None

    # tags is a dict
    __hash__ = None  # type: ignore[assignment]

    def __post_init__(self):
        if self.kind is not None and not isinstance(self.kind, Kind):
            raise AssertionError(f"unmapped span kind: {self.kind!r}")
        annotations = sorted(_dedupe(self.annotations), key=_annotation_key)
        object.__setattr__(self, "annotations", tuple(annotations))
        object.__setattr__(self, "tags", dict(self.tags))
        object.__setattr__(self, "name", self.name.lower() if self.name else None)
        if self.duration is not None and self.duration < 1:
            object.__setattr__(self, "duration", 1)

    def trace_id_string(self) -> str:
        if self.trace_id_high:
            return to_lower_hex(self.trace_id_high) + to_lower_hex(self.trace_id)
        return to_lower_hex(self.trace_id)


@dataclass(frozen=True)
class DependencyLink:
    parent: str
    child: str
    call_count: int
