"""Tests for Codex parser."""

import json
from pathlib import Path

import pytest

from session_meter.models import FileCandidate, TokenUsage
from session_meter.processor.normalizer import normalize_session
from session_meter.processor.parsers import CodexParser
from session_meter.processor.pricing import PricingResolver

ROLLOUT = "rollout-2026-01-22T10-52-33-019be668-4c23-7792-8b9c-7995e5bfdeee.jsonl"


def write_rollout(path: Path, lines: list[dict]) -> FileCandidate:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(json.dumps(line) for line in lines) + "\n")
    return FileCandidate(path=str(path), source="codex", mtime=0, size=path.stat().st_size)


def token_count(ts: str, input_tokens: int, cached: int, output: int, reasoning: int, cost: float | None = None) -> dict:
    info = {
        "total_token_usage": {
            "input_tokens": input_tokens,
            "cached_input_tokens": cached,
            "output_tokens": output,
            "reasoning_output_tokens": reasoning,
            "total_tokens": input_tokens + output,
        }
    }
    if cost is not None:
        info["total_cost_usd"] = cost
    return {"timestamp": ts, "type": "event_msg", "payload": {"type": "token_count", "info": info}}


@pytest.fixture
def parser() -> CodexParser:
    return CodexParser()


@pytest.fixture
def sample_lines() -> list[dict]:
    return [
        {
            "timestamp": "2026-01-22T10:52:33.000Z",
            "type": "session_meta",
            "payload": {
                "id": "session-123",
                "cwd": "/home/user/repo",
                "cli_version": "0.40.0",
                "git": {"branch": "feature"},
            },
        },
        {
            "timestamp": "2026-01-22T10:52:34.000Z",
            "type": "turn_context",
            "payload": {"model": "gpt-5-codex", "cwd": "/home/user/repo"},
        },
        {
            "timestamp": "2026-01-22T10:52:35.000Z",
            "type": "response_item",
            "payload": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": "List the files"}],
            },
        },
        {
            "timestamp": "2026-01-22T10:52:36.000Z",
            "type": "response_item",
            "payload": {
                "type": "function_call",
                "name": "shell",
                "arguments": "{\"command\": [\"ls\"]}",
                "call_id": "call_shared",
            },
        },
        {
            "timestamp": "2026-01-22T10:52:37.000Z",
            "type": "response_item",
            "payload": {"type": "function_call_output", "call_id": "call_shared", "output": "a.py\nb.py"},
        },
        token_count("2026-01-22T10:52:38.000Z", 500, 250, 100, 10),
    ]


class TestCodexParser:
    """Tests for CodexParser.parse."""

    def test_session_id_from_meta(self, parser: CodexParser, tmp_path: Path, sample_lines: list[dict]) -> None:
        raw = parser.parse(write_rollout(tmp_path / ROLLOUT, sample_lines))
        assert raw.session_id == "session-123"

    def test_session_id_from_filename(self, parser: CodexParser, tmp_path: Path, sample_lines: list[dict]) -> None:
        raw = parser.parse(write_rollout(tmp_path / ROLLOUT, sample_lines[1:]))
        assert raw.session_id == "019be668-4c23-7792-8b9c-7995e5bfdeee"

    def test_session_id_from_stem(self, parser: CodexParser, tmp_path: Path, sample_lines: list[dict]) -> None:
        raw = parser.parse(write_rollout(tmp_path / "odd-name.jsonl", sample_lines[1:]))
        assert raw.session_id == "odd-name"

    def test_metadata(self, parser: CodexParser, tmp_path: Path, sample_lines: list[dict]) -> None:
        raw = parser.parse(write_rollout(tmp_path / ROLLOUT, sample_lines))

        assert raw.metadata.cwd == "/home/user/repo"
        assert raw.metadata.git_branch == "feature"
        assert raw.metadata.cli_version == "0.40.0"
        assert raw.metadata.model == "gpt-5-codex"
        assert raw.metadata.title == "List the files"

    def test_call_and_output_correlate(self, parser: CodexParser, tmp_path: Path, sample_lines: list[dict]) -> None:
        raw = parser.parse(write_rollout(tmp_path / ROLLOUT, sample_lines))

        call = next(e for e in raw.events if e.kind == "tool_call")
        output = next(e for e in raw.events if e.kind == "tool_result")

        assert call.message_id == output.message_id == "call_shared"
        assert call.id != output.id
        assert output.parent_id == "call_shared"
        assert call.tool_name == "shell"
        assert output.tool_output == "a.py\nb.py"

    def test_token_count_reports_non_cached_input(
        self, parser: CodexParser, tmp_path: Path, sample_lines: list[dict]
    ) -> None:
        raw = parser.parse(write_rollout(tmp_path / ROLLOUT, sample_lines))

        usage = [e.tokens for e in raw.events if e.tokens is not None]

        assert usage == [
            TokenUsage(input_tokens=250, output_tokens=90, cache_read_tokens=250, reasoning_tokens=10)
        ]

    def test_cumulative_cost_deltas(self, parser: CodexParser, tmp_path: Path, sample_lines: list[dict]) -> None:
        lines = sample_lines[:5] + [
            token_count("2026-01-22T10:52:38.000Z", 100, 0, 10, 0, cost=0.015),
            token_count("2026-01-22T10:52:39.000Z", 100, 0, 10, 0, cost=0.015),
            token_count("2026-01-22T10:52:40.000Z", 200, 0, 20, 0, cost=0.021),
        ]

        normalized = normalize_session(parser.parse(write_rollout(tmp_path / ROLLOUT, lines)))
        costs = [e.cost_usd for e in normalized.events if e.cost_usd is not None]

        assert costs == pytest.approx([0.015, 0.0, 0.006])
        assert normalized.session.total_cost_usd == pytest.approx(0.021)

    def test_pricing_fills_missing_cost(self, parser: CodexParser, tmp_path: Path, sample_lines: list[dict]) -> None:
        lines = [sample_lines[0], sample_lines[1], token_count("2026-01-22T10:52:38.000Z", 500, 250, 100, 10)]

        normalized = normalize_session(
            parser.parse(write_rollout(tmp_path / ROLLOUT, lines)),
            pricing=PricingResolver(),
        )

        # 250 input @1.25 + 90 output @10 + 250 cached @0.125 + 10 reasoning @10 per million
        assert normalized.session.total_cost_usd == pytest.approx(0.00134375)

    def test_blank_file_returns_none(self, parser: CodexParser, tmp_path: Path) -> None:
        path = tmp_path / ROLLOUT
        path.write_text("\n\n")
        assert parser.parse(FileCandidate(path=str(path), source="codex", mtime=0, size=2)) is None
