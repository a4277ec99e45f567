"""CLI entry point for trace-store."""

from __future__ import annotations

import argparse
import json
import sys
import time

from trace_store import __version__
from trace_store.codec import encode_span, parse_file
from trace_store.component import Storage, StorageOptions
from trace_store.converter import from_legacy_span
from trace_store.diagnostics import null_sink
from trace_store.model import parse_trace_id
from trace_store.query import DEFAULT_LIMIT, DEFAULT_LOOKBACK, QueryRequest


def _tag(text: str) -> tuple[str, str]:
    key, sep, value = text.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {text!r}")
    return key, value


def _encode_trace(trace) -> list[dict]:
    return [encode_span(span) for legacy in trace for span in from_legacy_span(legacy)]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trace-store",
        description="Load span files into an in-memory trace store and query it",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-i",
        "--input",
        action="append",
        required=True,
        help="Span file path (.json or .json.gz), or - for stdin; repeatable",
    )
    common.add_argument(
        "--no-strict-trace-id",
        action="store_true",
        help="Identify traces by the low 64 bits of their id only",
    )
    common.add_argument(
        "--partitions",
        type=int,
        default=4,
        help="Number of in-memory store partitions (default: 4)",
    )

    window = argparse.ArgumentParser(add_help=False)
    window.add_argument(
        "--end-ts",
        type=int,
        default=None,
        help="End of the query window, epoch milliseconds (default: now)",
    )
    window.add_argument(
        "--lookback",
        type=int,
        default=None,
        help=f"Window length in milliseconds (default: {DEFAULT_LOOKBACK})",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("services", parents=[common], help="List service names")

    spans = commands.add_parser("spans", parents=[common], help="List span names of a service")
    spans.add_argument("service", help="Service name")

    traces = commands.add_parser("traces", parents=[common, window], help="Search for traces")
    traces.add_argument("--service", default=None, help="Service name")
    traces.add_argument("--span", default=None, help="Span name")
    traces.add_argument(
        "--annotation",
        action="append",
        default=[],
        help="Annotation value or tag key that must be present; repeatable",
    )
    traces.add_argument(
        "--tag",
        action="append",
        type=_tag,
        default=[],
        metavar="KEY=VALUE",
        help="Tag that must match exactly; repeatable",
    )
    traces.add_argument("--min-duration", type=int, default=None, help="Microseconds")
    traces.add_argument("--max-duration", type=int, default=None, help="Microseconds")
    traces.add_argument(
        "--limit",
        type=int,
        default=DEFAULT_LIMIT,
        help=f"Maximum number of traces (default: {DEFAULT_LIMIT})",
    )

    trace = commands.add_parser("trace", parents=[common], help="Show one trace")
    trace.add_argument("trace_id", help="16 or 32 character hex trace id")
    trace.add_argument(
        "--raw",
        action="store_true",
        help="Show spans as stored, without merging or clock skew correction",
    )

    commands.add_parser(
        "dependencies", parents=[common, window], help="Show service dependency links"
    )
    return parser


def _load(args: argparse.Namespace) -> Storage:
    storage = Storage(
        StorageOptions(
            strict_trace_id=not args.no_strict_trace_id,
            partition_count=args.partitions,
            sink=null_sink,
        )
    )
    consumer = storage.span_consumer()
    for path in args.input:
        consumer.accept(parse_file(path))
    return storage


def _run(args: argparse.Namespace, storage: Storage):
    store = storage.span_store()
    if args.command == "services":
        return store.get_service_names()
    if args.command == "spans":
        return store.get_span_names(args.service)
    if args.command == "trace":
        trace_id_high, trace_id = parse_trace_id(args.trace_id)
        if args.raw:
            found = store.get_raw_trace(trace_id_high, trace_id)
        else:
            found = store.get_trace(trace_id_high, trace_id)
        return None if found is None else _encode_trace(found)

    end_ts = args.end_ts if args.end_ts is not None else int(time.time() * 1000)
    if args.command == "dependencies":
        return [
            {"parent": link.parent, "child": link.child, "callCount": link.call_count}
            for link in store.get_dependencies(end_ts, args.lookback)
        ]

    request = QueryRequest(
        service_name=args.service,
        span_name=args.span,
        annotations=frozenset(args.annotation),
        tags=dict(args.tag),
        min_duration=args.min_duration,
        max_duration=args.max_duration,
        end_ts=end_ts,
        lookback=args.lookback if args.lookback is not None else DEFAULT_LOOKBACK,
        limit=args.limit,
    )
    return [_encode_trace(t) for t in store.get_traces(request)]


def main() -> int:
    """CLI entry point. Returns 0 on success, 1 on error."""
    parser = build_parser()
    args = parser.parse_args()

    try:
        with _load(args) as storage:
            result = _run(args, storage)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except PermissionError as exc:
        print(f"Error: Permission denied: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if result is None:
        print(f"Error: trace {args.trace_id} not found", file=sys.stderr)
        return 1
    json.dump(result, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
