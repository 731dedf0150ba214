"""Tests for source discovery module."""

from pathlib import Path
from unittest.mock import patch

import pytest

from session_meter.collector.sources import (
    DISCOVERERS,
    dedupe_candidates,
    discover_all,
    expand_home,
    get_codex_root,
)
from session_meter.models import FileCandidate


def write(path: Path, size: int = 200) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("x" * size)
    return path


class TestExpandHome:
    """Tests for ~ expansion."""

    def test_expands_tilde_prefix(self, tmp_path: Path) -> None:
        with patch.object(Path, "home", return_value=tmp_path):
            assert expand_home("~/.claude/projects") == tmp_path / ".claude" / "projects"

    def test_bare_tilde(self, tmp_path: Path) -> None:
        with patch.object(Path, "home", return_value=tmp_path):
            assert expand_home("~") == tmp_path

    def test_absolute_path_unchanged(self) -> None:
        assert expand_home("/var/data") == Path("/var/data")


class TestGetCodexRoot:
    """Tests for the CODEX_HOME override."""

    def test_defaults_to_home_codex(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("CODEX_HOME", raising=False)
        with patch.object(Path, "home", return_value=tmp_path):
            assert get_codex_root() == tmp_path / ".codex" / "sessions"

    def test_codex_home_appends_sessions(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CODEX_HOME", str(tmp_path / "custom"))
        assert get_codex_root() == tmp_path / "custom" / "sessions"

    def test_blank_codex_home_ignored(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CODEX_HOME", "   ")
        with patch.object(Path, "home", return_value=tmp_path):
            assert get_codex_root() == tmp_path / ".codex" / "sessions"


class TestSourceDiscoverer:
    """Tests for per-source glob patterns."""

    def test_missing_root_returns_empty(self, tmp_path: Path) -> None:
        assert DISCOVERERS["claude"].discover(tmp_path / "nope") == []

    def test_claude_patterns_and_min_size(self, tmp_path: Path) -> None:
        session = write(tmp_path / "proj" / "abc.jsonl")
        subagent = write(tmp_path / "proj" / "abc" / "subagents" / "agent-1.jsonl")
        write(tmp_path / "proj" / "tiny.jsonl", size=10)
        write(tmp_path / "proj" / "notes.txt")

        result = DISCOVERERS["claude"].discover(tmp_path)

        assert [c.path for c in result] == sorted([str(session), str(subagent)])
        assert all(c.source == "claude" for c in result)

    def test_codex_date_layout(self, tmp_path: Path) -> None:
        rollout = write(tmp_path / "2025" / "01" / "15" / "rollout-2025-01-15T10-00-00-abc.jsonl")
        write(tmp_path / "2025" / "01" / "other.jsonl")

        result = DISCOVERERS["codex"].discover(tmp_path)

        assert [c.path for c in result] == [str(rollout)]

    def test_gemini_chats(self, tmp_path: Path) -> None:
        chat = write(tmp_path / "hash1" / "chats" / "session-1.json")
        write(tmp_path / "hash1" / "logs.json")

        assert [c.path for c in DISCOVERERS["gemini"].discover(tmp_path)] == [str(chat)]

    def test_opencode_session_files(self, tmp_path: Path) -> None:
        session = write(tmp_path / "session" / "proj" / "ses_1.json")
        write(tmp_path / "message" / "ses_1" / "msg_1.json")

        assert [c.path for c in DISCOVERERS["opencode"].discover(tmp_path)] == [str(session)]

    def test_candidate_carries_size_and_mtime(self, tmp_path: Path) -> None:
        path = write(tmp_path / "s.jsonl", size=321)

        [candidate] = DISCOVERERS["droid"].discover(tmp_path)

        assert candidate.size == 321
        assert candidate.mtime == pytest.approx(path.stat().st_mtime * 1000, abs=1)


class TestDedupeCandidates:
    """Tests for path deduplication."""

    def test_latest_wins_and_sorted(self) -> None:
        first = FileCandidate(path="/b", source="claude", mtime=1.0, size=1)
        second = FileCandidate(path="/a", source="codex", mtime=1.0, size=1)
        replacement = FileCandidate(path="/b", source="claude", mtime=2.0, size=2)

        result = dedupe_candidates([first, second, replacement])

        assert result == [second, replacement]


class TestDiscoverAll:
    """Tests for discover_all."""

    def test_uses_root_overrides(self, tmp_path: Path) -> None:
        droid = write(tmp_path / "droid" / "s1.jsonl")
        copilot = write(tmp_path / "copilot" / "s2.jsonl")

        result = discover_all(
            ["droid", "copilot"],
            {"droid": tmp_path / "droid", "copilot": tmp_path / "copilot"},
        )

        assert [(c.path, c.source) for c in result] == sorted(
            [(str(droid), "droid"), (str(copilot), "copilot")]
        )

    def test_unknown_source_ignored(self, tmp_path: Path) -> None:
        assert discover_all(["vim"], {}) == []

    def test_all_sources_by_default(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("CODEX_HOME", raising=False)
        write(tmp_path / ".factory" / "sessions" / "d.jsonl")
        write(tmp_path / ".codex" / "sessions" / "2025" / "02" / "03" / "rollout-x.jsonl")

        with patch.object(Path, "home", return_value=tmp_path):
            result = discover_all()

        assert sorted(c.source for c in result) == ["codex", "droid"]
