"""Unit tests for CLI entry point."""

import json

import pytest

from tests.conftest import TODAY_MS, TS
from trace_store.cli import build_parser, main

CLIENT = {
    "traceId": "7b",
    "id": "2",
    "kind": "CLIENT",
    "name": "get",
    "timestamp": TS,
    "duration": 300,
    "localEndpoint": {"serviceName": "frontend", "ipv4": "127.0.0.1"},
    "remoteEndpoint": {"serviceName": "backend", "ipv4": "192.168.99.101", "port": 9000},
}
SERVER = {
    "traceId": "7b",
    "id": "2",
    "kind": "SERVER",
    "name": "get",
    "timestamp": TS + 100,
    "duration": 100,
    "shared": True,
    "localEndpoint": {"serviceName": "backend", "ipv4": "192.168.99.101", "port": 9000},
    "tags": {"http.path": "/api"},
}
LOCAL = {
    "traceId": "c8",
    "id": "5",
    "name": "render",
    "timestamp": TS - 5000,
    "duration": 50,
    "localEndpoint": {"serviceName": "frontend"},
}


@pytest.fixture
def span_file(tmp_path):
    path = tmp_path / "spans.json"
    path.write_text(json.dumps([CLIENT, SERVER]) + "\n" + json.dumps(LOCAL) + "\n")
    return str(path)


def run(monkeypatch, capsys, *argv):
    """Run the CLI with ``argv`` and return (exit code, parsed stdout, stderr)."""
    monkeypatch.setattr("sys.argv", ["trace-store", *argv])
    exit_code = main()
    captured = capsys.readouterr()
    output = json.loads(captured.out) if captured.out else None
    return exit_code, output, captured.err


class TestArgumentParsing:
    """Test CLI argument parsing."""

    def test_command_is_required(self, monkeypatch):
        monkeypatch.setattr("sys.argv", ["trace-store"])

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 2

    def test_input_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["services"])

    def test_input_is_repeatable(self):
        args = build_parser().parse_args(["services", "-i", "a.json", "-i", "b.json.gz"])

        assert args.input == ["a.json", "b.json.gz"]
        assert args.no_strict_trace_id is False
        assert args.partitions == 4

    def test_tag_needs_key_and_value(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["traces", "-i", "a.json", "--tag", "novalue"])

    def test_tags_parsed_into_pairs(self):
        args = build_parser().parse_args(
            ["traces", "-i", "a.json", "--tag", "http.path=/api", "--tag", "error="]
        )

        assert args.tag == [("http.path", "/api"), ("error", "")]

    def test_version(self, monkeypatch, capsys):
        monkeypatch.setattr("sys.argv", ["trace-store", "--version"])

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 0
        assert "trace-store" in capsys.readouterr().out


class TestCommands:
    """Test each subcommand end to end against a span file."""

    def test_services(self, monkeypatch, capsys, span_file):
        exit_code, output, _ = run(monkeypatch, capsys, "services", "-i", span_file)

        assert exit_code == 0
        assert output == ["backend", "frontend"]

    def test_spans(self, monkeypatch, capsys, span_file):
        exit_code, output, _ = run(monkeypatch, capsys, "spans", "frontend", "-i", span_file)

        assert exit_code == 0
        assert output == ["get", "render"]

    def test_traces_newest_first(self, monkeypatch, capsys, span_file):
        exit_code, output, _ = run(
            monkeypatch, capsys, "traces", "-i", span_file, "--end-ts", str(TODAY_MS + 1000)
        )

        assert exit_code == 0
        assert [trace[0]["traceId"] for trace in output] == [
            "000000000000007b",
            "00000000000000c8",
        ]

    def test_traces_with_filters(self, monkeypatch, capsys, span_file):
        exit_code, output, _ = run(
            monkeypatch,
            capsys,
            "traces",
            "-i",
            span_file,
            "--end-ts",
            str(TODAY_MS + 1000),
            "--service",
            "backend",
            "--tag",
            "http.path=/api",
        )

        assert exit_code == 0
        assert len(output) == 1
        assert {span["kind"] for span in output[0]} == {"CLIENT", "SERVER"}

    def test_traces_limit(self, monkeypatch, capsys, span_file):
        exit_code, output, _ = run(
            monkeypatch,
            capsys,
            "traces",
            "-i",
            span_file,
            "--end-ts",
            str(TODAY_MS + 1000),
            "--limit",
            "1",
        )

        assert exit_code == 0
        assert len(output) == 1

    def test_trace(self, monkeypatch, capsys, span_file):
        exit_code, output, _ = run(monkeypatch, capsys, "trace", "c8", "-i", span_file)

        assert exit_code == 0
        assert [span["name"] for span in output] == ["render"]

    def test_raw_trace(self, monkeypatch, capsys, span_file):
        exit_code, output, _ = run(monkeypatch, capsys, "trace", "7b", "--raw", "-i", span_file)

        assert exit_code == 0
        assert {span["id"] for span in output} == {"0000000000000002"}

    def test_dependencies(self, monkeypatch, capsys, span_file):
        exit_code, output, _ = run(
            monkeypatch,
            capsys,
            "dependencies",
            "-i",
            span_file,
            "--end-ts",
            str(TODAY_MS + 1000),
        )

        assert exit_code == 0
        assert output == [{"parent": "frontend", "child": "backend", "callCount": 1}]


class TestErrors:
    """Test error reporting and exit codes."""

    def test_missing_input_file(self, monkeypatch, capsys, tmp_path):
        exit_code, output, err = run(
            monkeypatch, capsys, "services", "-i", str(tmp_path / "missing.json")
        )

        assert exit_code == 1
        assert output is None
        assert err.startswith("Error:")

    def test_unknown_trace(self, monkeypatch, capsys, span_file):
        exit_code, _, err = run(monkeypatch, capsys, "trace", "ff", "-i", span_file)

        assert exit_code == 1
        assert "trace ff not found" in err

    def test_invalid_trace_id(self, monkeypatch, capsys, span_file):
        exit_code, _, err = run(monkeypatch, capsys, "trace", "not-hex", "-i", span_file)

        assert exit_code == 1
        assert err.startswith("Error:")

    def test_invalid_query(self, monkeypatch, capsys, span_file):
        exit_code, _, err = run(monkeypatch, capsys, "traces", "-i", span_file, "--limit", "0")

        assert exit_code == 1
        assert "limit" in err

    def test_invalid_partition_count(self, monkeypatch, capsys, span_file):
        exit_code, _, err = run(
            monkeypatch, capsys, "services", "-i", span_file, "--partitions", "0"
        )

        assert exit_code == 1
        assert err.startswith("Error:")
