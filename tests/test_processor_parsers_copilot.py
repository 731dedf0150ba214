"""Tests for GitHub Copilot CLI parser."""

import json
from pathlib import Path

import pytest

from session_meter.models import FileCandidate
from session_meter.processor.normalizer import normalize_session
from session_meter.processor.parsers import CopilotParser


def write_jsonl(path: Path, lines: list[dict]) -> FileCandidate:
    path.write_text("\n".join(json.dumps(line) for line in lines) + "\n")
    return FileCandidate(path=str(path), source="copilot", mtime=0, size=path.stat().st_size)


@pytest.fixture
def parser() -> CopilotParser:
    return CopilotParser()


@pytest.fixture
def sample_lines() -> list[dict]:
    return [
        {
            "id": "e1",
            "timestamp": "2026-03-01T12:00:00.000Z",
            "type": "session.start",
            "data": {
                "sessionId": "cop-1",
                "copilotVersion": "0.0.340",
                "selectedModel": "gpt-5",
                "context": {"cwd": "/src/widgets", "branch": "dev"},
            },
        },
        {
            "id": "e2",
            "timestamp": "2026-03-01T12:00:01.000Z",
            "type": "session.model_change",
            "data": {"newModel": "claude-sonnet-4.5"},
        },
        {"id": "e3", "timestamp": "2026-03-01T12:00:02.000Z", "type": "user.message", "data": {"content": "Add a test"}},
        {
            "id": "e4",
            "parentId": "e3",
            "timestamp": "2026-03-01T12:00:03.000Z",
            "type": "assistant.message",
            "data": {"content": "Writing it", "messageId": "msg-1"},
        },
        {
            "id": "e5",
            "timestamp": "2026-03-01T12:00:04.000Z",
            "type": "tool.execution_start",
            "data": {"toolCallId": "tc-1", "toolName": "create", "arguments": {"path": "test_widget.py"}},
        },
        {
            "id": "e6",
            "timestamp": "2026-03-01T12:00:05.000Z",
            "type": "tool.execution_complete",
            "data": {"toolCallId": "tc-1", "success": True, "result": {"content": "Created file"}},
        },
        {"note": "not an event"},
    ]


class TestCopilotParser:
    """Tests for CopilotParser.parse."""

    def test_metadata(self, parser: CopilotParser, tmp_path: Path, sample_lines: list[dict]) -> None:
        raw = parser.parse(write_jsonl(tmp_path / "abc.jsonl", sample_lines))

        assert raw.session_id == "cop-1"
        assert raw.metadata.cwd == "/src/widgets"
        assert raw.metadata.git_branch == "dev"
        assert raw.metadata.cli_version == "0.0.340"
        assert raw.metadata.model == "claude-sonnet-4.5"

    def test_event_kinds(self, parser: CopilotParser, tmp_path: Path, sample_lines: list[dict]) -> None:
        raw = parser.parse(write_jsonl(tmp_path / "abc.jsonl", sample_lines))

        assert [event.kind for event in raw.events] == [
            "meta",
            "meta",
            "user",
            "assistant",
            "tool_call",
            "tool_result",
        ]

    def test_assistant_uses_current_model(self, parser: CopilotParser, tmp_path: Path, sample_lines: list[dict]) -> None:
        raw = parser.parse(write_jsonl(tmp_path / "abc.jsonl", sample_lines))

        assistant = next(e for e in raw.events if e.kind == "assistant")

        assert assistant.model == "claude-sonnet-4.5"
        assert assistant.text == "Writing it"
        assert assistant.message_id == "msg-1"

    def test_tool_events_correlate(self, parser: CopilotParser, tmp_path: Path, sample_lines: list[dict]) -> None:
        raw = parser.parse(write_jsonl(tmp_path / "abc.jsonl", sample_lines))

        call = next(e for e in raw.events if e.kind == "tool_call")
        result = next(e for e in raw.events if e.kind == "tool_result")

        assert call.tool_name == "create"
        assert call.message_id == result.message_id == "tc-1"
        assert result.parent_id == "tc-1"
        assert result.tool_output == "Created file"

    def test_normalized_title_from_first_user(self, parser: CopilotParser, tmp_path: Path, sample_lines: list[dict]) -> None:
        normalized = normalize_session(parser.parse(write_jsonl(tmp_path / "abc.jsonl", sample_lines)))

        assert normalized.session.title == "Add a test"
        assert normalized.session.is_housekeeping is False

    def test_session_id_falls_back_to_stem(self, parser: CopilotParser, tmp_path: Path, sample_lines: list[dict]) -> None:
        raw = parser.parse(write_jsonl(tmp_path / "stem-7.jsonl", sample_lines[2:]))
        assert raw.session_id == "stem-7"

    def test_no_dotted_events_returns_none(self, parser: CopilotParser, tmp_path: Path) -> None:
        assert parser.parse(write_jsonl(tmp_path / "x.jsonl", [{"type": "user", "content": "hi"}])) is None
