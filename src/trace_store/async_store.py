"""Executor-backed asynchronous views of the span store and consumer.

Each call is submitted to the caller's executor and returns a
``concurrent.futures.Future`` that completes with the result or with the
store's exception. Cancelling the future does not stop a call already running.
"""

from __future__ import annotations

from concurrent.futures import Executor, Future
from typing import Iterable, List, Optional

from trace_store.consumer import SpanConsumer
from trace_store.model import DependencyLink, LegacySpan
from trace_store.query import QueryRequest
from trace_store.span_store import SpanStore


class AsyncSpanStore:
    def __init__(self, delegate: SpanStore, executor: Executor):
        self.delegate = delegate
        self.executor = executor

    def get_traces(self, request: QueryRequest) -> Future[List[List[LegacySpan]]]:
        return self.executor.submit(self.delegate.get_traces, request)

    def get_trace(self, trace_id_high: int, trace_id: int) -> Future[Optional[List[LegacySpan]]]:
        return self.executor.submit(self.delegate.get_trace, trace_id_high, trace_id)

    def get_raw_trace(
        self, trace_id_high: int, trace_id: int
    ) -> Future[Optional[List[LegacySpan]]]:
        return self.executor.submit(self.delegate.get_raw_trace, trace_id_high, trace_id)

    def get_service_names(self) -> Future[List[str]]:
        return self.executor.submit(self.delegate.get_service_names)

    def get_span_names(self, service_name: str) -> Future[List[str]]:
        return self.executor.submit(self.delegate.get_span_names, service_name)

    def get_dependencies(
        self, end_ts: int, lookback: Optional[int] = None
    ) -> Future[List[DependencyLink]]:
        return self.executor.submit(self.delegate.get_dependencies, end_ts, lookback)


class AsyncSpanConsumer:
    def __init__(self, delegate: SpanConsumer, executor: Executor):
        self.delegate = delegate
        self.executor = executor

    def accept(self, spans: Optional[Iterable[LegacySpan]]) -> Future[None]:
        # materialize so a generator isn't consumed on another thread
        batch = list(spans) if spans else []
        return self.executor.submit(self.delegate.accept, batch)
