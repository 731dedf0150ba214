"""Tests for scan orchestration."""

import json
import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from session_meter.models import FileCandidate, ScanStateEntry
from session_meter.processor.pricing import PricingResolver
from session_meter.processor.scanner import (
    ScanInProgressError,
    ScanOrchestrator,
    SessionAccumulator,
    is_unchanged,
    unique_by_id,
)
from session_meter.processor.store import SQLiteStore


def write_droid(root: Path, session_id: str, timestamp: str, text: str = "hello") -> Path:
    root.mkdir(parents=True, exist_ok=True)
    lines = [
        {"type": "session_start", "id": session_id, "title": f"Session {session_id}", "cwd": "/work/app"},
        {
            "type": "message",
            "id": "m1",
            "timestamp": timestamp,
            "message": {"role": "user", "content": [{"type": "text", "text": text}]},
        },
        {
            "type": "message",
            "id": "m2",
            "parentId": "m1",
            "timestamp": timestamp,
            "message": {
                "role": "assistant",
                "model": "claude-sonnet-4-5",
                "content": [{"type": "text", "text": "done"}],
                "usage": {"input_tokens": 10, "output_tokens": 5},
            },
        },
    ]
    path = root / f"{session_id}.jsonl"
    path.write_text("\n".join(json.dumps(line) for line in lines) + "\n")
    return path


def write_copilot(root: Path, session_id: str, timestamp: str) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    lines = [
        {
            "id": "e1",
            "timestamp": timestamp,
            "type": "session.start",
            "data": {"sessionId": session_id, "selectedModel": "gpt-5", "context": {"cwd": "/src/widgets"}},
        },
        {"id": "e2", "timestamp": timestamp, "type": "user.message", "data": {"content": "Add a test"}},
    ]
    path = root / f"{session_id}.jsonl"
    path.write_text("\n".join(json.dumps(line) for line in lines) + "\n")
    return path


@pytest.fixture
def store(tmp_path: Path) -> SQLiteStore:
    with SQLiteStore(tmp_path / "meter.db") as s:
        yield s


@pytest.fixture
def roots(tmp_path: Path) -> dict[str, Path]:
    return {"droid": tmp_path / "droid", "copilot": tmp_path / "copilot"}


@pytest.fixture
def orchestrator(store: SQLiteStore, roots: dict[str, Path]) -> ScanOrchestrator:
    return ScanOrchestrator(store, PricingResolver(), max_workers=2, sources=["droid", "copilot"], roots=roots)


class TestIsUnchanged:
    def test_requires_size_and_mtime_match(self) -> None:
        state = {"/a.jsonl": ScanStateEntry(source="droid", file_size=10, mtime_ms=5.0, parsed_at="x")}

        assert is_unchanged(FileCandidate("/a.jsonl", "droid", 5.0, 10), state)
        assert not is_unchanged(FileCandidate("/a.jsonl", "droid", 6.0, 10), state)
        assert not is_unchanged(FileCandidate("/a.jsonl", "droid", 5.0, 11), state)
        assert not is_unchanged(FileCandidate("/b.jsonl", "droid", 5.0, 10), state)


class TestSessionAccumulator:
    def test_failure_records_state_and_error(self) -> None:
        accumulator = SessionAccumulator()

        accumulator.add_failure(FileCandidate("/a.jsonl", "droid", 1.0, 2), "2026-01-01T00:00:00.000Z")

        assert accumulator.errors == 1
        assert accumulator.scan_state["/a.jsonl"].file_size == 2
        assert accumulator.sessions == []


class TestUniqueById:
    def test_last_path_wins(self) -> None:
        first, other, second = (MagicMock(**{"session.id": sid}) for sid in ("same", "other", "same"))

        kept, dropped = unique_by_id([first, other, second])

        assert kept == [other, second]
        assert dropped == [first]

    def test_distinct_ids_kept_in_order(self) -> None:
        sessions = [MagicMock(**{"session.id": sid}) for sid in ("a", "b")]

        assert unique_by_id(sessions) == (sessions, [])


class TestRunScan:
    """Tests for ScanOrchestrator.run_scan."""

    def test_first_scan_parses_everything(
        self, orchestrator: ScanOrchestrator, store: SQLiteStore, roots: dict[str, Path]
    ) -> None:
        write_droid(roots["droid"], "d1", "2026-02-01T09:00:00.000Z")
        write_droid(roots["droid"], "d2", "2026-02-01T10:00:00.000Z")
        write_copilot(roots["copilot"], "c1", "2026-02-02T09:00:00.000Z")

        result = orchestrator.run_scan()

        assert (result.scanned, result.total, result.errors) == (3, 3, 0)
        assert {s.id for s in store.list_sessions()} == {"d1", "d2", "c1"}
        assert len(store.read_scan_state()) == 3
        daily = store.read_daily()
        assert list(daily) == ["2026-02-01", "2026-02-02"]
        assert daily["2026-02-01"].by_source["droid"].sessions == 2
        assert daily["2026-02-02"].totals.sessions == 1

    def test_unchanged_files_are_skipped(
        self, orchestrator: ScanOrchestrator, store: SQLiteStore, roots: dict[str, Path]
    ) -> None:
        write_droid(roots["droid"], "d1", "2026-02-01T09:00:00.000Z")
        orchestrator.run_scan()
        daily = store.read_daily()

        result = orchestrator.run_scan()

        assert (result.scanned, result.total) == (0, 1)
        assert store.read_daily() == daily

    def test_changed_file_is_rescanned(
        self, orchestrator: ScanOrchestrator, store: SQLiteStore, roots: dict[str, Path]
    ) -> None:
        write_droid(roots["droid"], "d1", "2026-02-01T09:00:00.000Z")
        write_droid(roots["droid"], "d2", "2026-02-01T10:00:00.000Z")
        orchestrator.run_scan()

        write_droid(roots["droid"], "d1", "2026-02-01T09:00:00.000Z", text="a much longer prompt")
        result = orchestrator.run_scan()

        assert result.scanned == 1
        assert store.get_session("d1").title == "Session d1"
        assert store.read_daily()["2026-02-01"].totals.sessions == 2

    def test_moved_session_leaves_no_empty_date(
        self, orchestrator: ScanOrchestrator, store: SQLiteStore, roots: dict[str, Path]
    ) -> None:
        write_droid(roots["droid"], "d1", "2026-02-01T09:00:00.000Z")
        orchestrator.run_scan()

        write_droid(roots["droid"], "d1", "2026-02-05T09:00:00.000Z", text="rewritten session")
        orchestrator.run_scan()

        daily = store.read_daily()
        assert list(daily) == ["2026-02-05"]
        assert daily["2026-02-05"].totals.sessions == 1

    def test_full_scan_reparses_and_rebuilds(
        self, orchestrator: ScanOrchestrator, store: SQLiteStore, roots: dict[str, Path]
    ) -> None:
        write_droid(roots["droid"], "d1", "2026-02-01T09:00:00.000Z")
        write_copilot(roots["copilot"], "c1", "2026-02-01T11:00:00.000Z")
        orchestrator.run_scan()
        incremental = store.read_daily()

        result = orchestrator.run_scan(full_scan=True)

        assert result.scanned == 2
        assert store.read_daily() == incremental

    def test_source_restricted_full_scan_keeps_other_sources(
        self, orchestrator: ScanOrchestrator, store: SQLiteStore, roots: dict[str, Path]
    ) -> None:
        write_droid(roots["droid"], "d1", "2026-02-01T09:00:00.000Z")
        write_copilot(roots["copilot"], "c1", "2026-02-01T11:00:00.000Z")
        orchestrator.run_scan()

        result = orchestrator.run_scan(full_scan=True, sources=["droid"])

        assert (result.scanned, result.total) == (1, 1)
        entry = store.read_daily()["2026-02-01"]
        assert entry.totals.sessions == 2
        assert list(entry.by_source) == ["copilot", "droid"]

    def test_parse_failures_are_counted_and_remembered(
        self, orchestrator: ScanOrchestrator, store: SQLiteStore, roots: dict[str, Path]
    ) -> None:
        roots["droid"].mkdir(parents=True)
        broken = roots["droid"] / "broken.jsonl"
        broken.write_text("this is not json\n")
        write_droid(roots["droid"], "d1", "2026-02-01T09:00:00.000Z")

        first = orchestrator.run_scan()
        second = orchestrator.run_scan()

        assert (first.scanned, first.total, first.errors) == (1, 2, 1)
        assert str(broken) in store.read_scan_state()
        assert [s.id for s in store.list_sessions()] == ["d1"]
        assert (second.scanned, second.errors) == (0, 0)

    def test_shared_session_id_counted_once(
        self, orchestrator: ScanOrchestrator, store: SQLiteStore, roots: dict[str, Path]
    ) -> None:
        write_droid(roots["droid"], "same", "2026-02-01T09:00:00.000Z").rename(roots["droid"] / "a.jsonl")
        write_droid(roots["droid"], "same", "2026-02-03T09:00:00.000Z").rename(roots["droid"] / "b.jsonl")
        write_droid(roots["droid"], "d3", "2026-02-01T10:00:00.000Z")

        result = orchestrator.run_scan()
        incremental = store.read_daily()

        assert (result.scanned, result.total, result.errors) == (2, 3, 1)
        assert store.get_session("same").file_path == str(roots["droid"] / "b.jsonl")
        assert sum(day.totals.sessions for day in incremental.values()) == len(store.list_sessions()) == 2
        assert incremental["2026-02-01"].totals.sessions == 1
        assert incremental["2026-02-03"].totals.sessions == 1

        orchestrator.run_scan(full_scan=True)

        assert store.read_daily() == incremental

    def test_session_id_moving_to_another_file_replaces_its_date(
        self, orchestrator: ScanOrchestrator, store: SQLiteStore, roots: dict[str, Path]
    ) -> None:
        write_droid(roots["droid"], "same", "2026-02-01T09:00:00.000Z").rename(roots["droid"] / "a.jsonl")
        orchestrator.run_scan()

        write_droid(roots["droid"], "same", "2026-02-03T09:00:00.000Z").rename(roots["droid"] / "b.jsonl")
        orchestrator.run_scan()

        assert list(store.read_daily()) == ["2026-02-03"]
        assert len(store.list_sessions()) == 1

    def test_no_candidates(self, orchestrator: ScanOrchestrator, store: SQLiteStore) -> None:
        result = orchestrator.run_scan()

        assert (result.scanned, result.total, result.errors) == (0, 0, 0)
        assert store.read_daily() == {}

    def test_concurrent_scan_rejected(self, orchestrator: ScanOrchestrator) -> None:
        orchestrator._lock.acquire()
        try:
            assert orchestrator.is_scanning
            with pytest.raises(ScanInProgressError):
                orchestrator.run_scan()
        finally:
            orchestrator._lock.release()

        assert not orchestrator.is_scanning
        orchestrator.run_scan()


class TestPricingRefresh:
    def test_refresh_attempted_each_scan(self, store: SQLiteStore, roots: dict[str, Path]) -> None:
        pricing = PricingResolver()
        orchestrator = ScanOrchestrator(store, pricing, sources=["droid"], roots=roots)

        with patch.object(pricing, "refresh", return_value=False) as refresh:
            orchestrator.run_scan()
            orchestrator.run_scan()

        assert refresh.call_count == 2

    def test_refresh_disabled(self, store: SQLiteStore, roots: dict[str, Path]) -> None:
        pricing = PricingResolver()
        orchestrator = ScanOrchestrator(store, pricing, sources=["droid"], roots=roots, refresh_pricing=False)

        with patch.object(pricing, "refresh") as refresh:
            orchestrator.run_scan()

        refresh.assert_not_called()

    def test_events_priced_during_scan(self, store: SQLiteStore, roots: dict[str, Path]) -> None:
        write_droid(roots["droid"], "d1", "2026-02-01T09:00:00.000Z")
        orchestrator = ScanOrchestrator(store, PricingResolver(), sources=["droid"], roots=roots)

        orchestrator.run_scan()

        assert store.get_session("d1").total_cost_usd is not None


class TestIndexing:
    """Tests for feeding the search index after a scan."""

    def test_indexer_receives_collected_sessions(self, store: SQLiteStore, roots: dict[str, Path]) -> None:
        write_droid(roots["droid"], "d1", "2026-02-01T09:00:00.000Z")
        indexer = MagicMock()
        orchestrator = ScanOrchestrator(store, sources=["droid"], roots=roots, indexer=indexer)

        orchestrator.run_scan()

        indexer.upsert_events.assert_called_once()
        session, events = indexer.upsert_events.call_args[0]
        assert session.id == "d1"
        assert [e.id for e in events] == [e.id for e in store.get_events("d1")]
        indexer.update_session.assert_called_once_with(session)

    def test_indexer_not_called_without_new_sessions(self, store: SQLiteStore, roots: dict[str, Path]) -> None:
        indexer = MagicMock()
        orchestrator = ScanOrchestrator(store, sources=["droid"], roots=roots, indexer=indexer)

        orchestrator.run_scan()

        indexer.upsert_events.assert_not_called()

    def test_indexer_failure_does_not_fail_scan(self, store: SQLiteStore, roots: dict[str, Path]) -> None:
        write_droid(roots["droid"], "d1", "2026-02-01T09:00:00.000Z")
        write_droid(roots["droid"], "d2", "2026-02-01T10:00:00.000Z")
        indexer = MagicMock()
        indexer.upsert_events.side_effect = [ConnectionError("down"), {"success": 2, "failed": 0}]
        orchestrator = ScanOrchestrator(store, sources=["droid"], roots=roots, indexer=indexer)

        result = orchestrator.run_scan()

        assert result.errors == 0
        assert len(store.list_sessions()) == 2
        assert indexer.upsert_events.call_count == 2
        indexer.update_session.assert_called_once()


def test_unreadable_root_is_empty(store: SQLiteStore, tmp_path: Path) -> None:
    missing = tmp_path / "missing"
    orchestrator = ScanOrchestrator(store, sources=["droid"], roots={"droid": missing})

    assert orchestrator.run_scan().total == 0
    assert not os.path.exists(missing)
