"""The storage component: one in-memory store with its query and ingest views."""

from __future__ import annotations

from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Optional

from trace_store.async_store import AsyncSpanConsumer, AsyncSpanStore
from trace_store.consumer import SpanConsumer
from trace_store.diagnostics import DiagnosticSink, warn_sink
from trace_store.span_store import SpanStore
from trace_store.storage import InMemoryServiceIndex, InMemorySpanMap, StoreClosedError


@dataclass
class StorageOptions:
    """Configuration for a ``Storage`` instance."""

    strict_trace_id: bool = True
    partition_count: int = 4
    executor: Optional[Executor] = None
    sink: DiagnosticSink = warn_sink


@dataclass(frozen=True)
class CheckResult:
    ok: bool
    error: Optional[BaseException] = None


class Storage:
    """Owns the span map and service index and hands out views over them.

    Usable as a context manager; leaving the block closes the store.
    """

    def __init__(self, options: Optional[StorageOptions] = None):
        self.options = options or StorageOptions()
        self.spans = InMemorySpanMap(self.options.partition_count)
        self.services = InMemoryServiceIndex()

    def span_store(self) -> SpanStore:
        return SpanStore(
            self.spans,
            self.services,
            strict_trace_id=self.options.strict_trace_id,
            sink=self.options.sink,
        )

    def span_consumer(self) -> SpanConsumer:
        return SpanConsumer(self.spans, self.services)

    def _executor(self) -> Executor:
        if self.options.executor is None:
            raise ValueError("an executor is required for asynchronous access")
        return self.options.executor

    def async_span_store(self) -> AsyncSpanStore:
        return AsyncSpanStore(self.span_store(), self._executor())

    def async_span_consumer(self) -> AsyncSpanConsumer:
        return AsyncSpanConsumer(self.span_consumer(), self._executor())

    def check(self) -> CheckResult:
        """Report whether the store is usable, without raising."""
        try:
            self.spans.ensure_open()
            self.services.ensure_open()
        except StoreClosedError as exc:
            return CheckResult(ok=False, error=exc)
        return CheckResult(ok=True)

    def close(self) -> None:
        self.spans.close()
        self.services.close()

    def __enter__(self) -> Storage:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
