"""Scan orchestration: discover, parse, normalize, aggregate, persist.

One scan is a batch: candidates are classified against the persisted scan
state, changed files are parsed and normalized on a bounded worker pool,
and everything the scan produced is committed in a single transaction.
"""

import threading
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from session_meter.collector.sources import discover_all
from session_meter.logging import get_logger
from session_meter.models import DailyStore, FileCandidate, ScanResult, ScanStateEntry, Session
from session_meter.processor.aggregator import aggregate_sessions, date_key, merge_daily, resolve_timezone
from session_meter.processor.indexer import TypesenseIndexer
from session_meter.processor.normalizer import NormalizedSession, normalize_session, normalize_timestamp
from session_meter.processor.parsers import parse_file
from session_meter.processor.pricing import PricingResolver
from session_meter.processor.store import SQLiteStore

logger = get_logger("scanner")


class ScanInProgressError(RuntimeError):
    """Raised when a scan is requested while another one is running."""


@dataclass
class SessionAccumulator:
    """Collects per-file outcomes from worker threads."""

    sessions: list[NormalizedSession] = field(default_factory=list)
    scan_state: dict[str, ScanStateEntry] = field(default_factory=dict)
    errors: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add_success(self, candidate: FileCandidate, normalized: NormalizedSession, parsed_at: str) -> None:
        with self._lock:
            self.sessions.append(normalized)
            self.scan_state[candidate.path] = _state_entry(candidate, parsed_at)

    def add_failure(self, candidate: FileCandidate, parsed_at: str) -> None:
        # Failed files are recorded too, so they are not retried until a full scan
        with self._lock:
            self.scan_state[candidate.path] = _state_entry(candidate, parsed_at)
            self.errors += 1

    def ordered_sessions(self) -> list[NormalizedSession]:
        """Collected sessions in file path order, independent of completion order."""
        with self._lock:
            return sorted(self.sessions, key=lambda n: (n.session.file_path, n.session.id))


def unique_by_id(ordered: list[NormalizedSession]) -> tuple[list[NormalizedSession], list[NormalizedSession]]:
    """Keep one session per id; among files sharing an id the last path wins.

    Returns:
        (kept sessions in input order, dropped duplicates)
    """
    winners: dict[str, NormalizedSession] = {}
    for normalized in ordered:
        winners[normalized.session.id] = normalized
    kept = [n for n in ordered if winners[n.session.id] is n]
    dropped = [n for n in ordered if winners[n.session.id] is not n]
    return kept, dropped


def _state_entry(candidate: FileCandidate, parsed_at: str) -> ScanStateEntry:
    return ScanStateEntry(
        source=candidate.source,
        file_size=candidate.size,
        mtime_ms=candidate.mtime,
        parsed_at=parsed_at,
    )


def is_unchanged(candidate: FileCandidate, state: Mapping[str, ScanStateEntry]) -> bool:
    """A file is unchanged when both its size and mtime match the stored entry."""
    entry = state.get(candidate.path)
    return entry is not None and entry.file_size == candidate.size and entry.mtime_ms == candidate.mtime


class ScanOrchestrator:
    """Runs scans against one store.

    Only one scan runs at a time; a concurrent request raises
    ScanInProgressError instead of waiting.
    """

    def __init__(
        self,
        store: SQLiteStore,
        pricing: PricingResolver | None = None,
        max_workers: int = 8,
        timezone_name: str = "UTC",
        sources: Iterable[str] | None = None,
        roots: Mapping[str, Path] | None = None,
        indexer: TypesenseIndexer | None = None,
        refresh_pricing: bool = True,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Storage for scan state, sessions and the daily store
            pricing: Resolver used to price events without a recorded cost
            max_workers: Size of the parse worker pool
            timezone_name: IANA zone used for daily buckets
            sources: Sources scanned by default (all when None)
            roots: Per-source discovery root overrides
            indexer: Optional Typesense indexer fed after each commit
            refresh_pricing: Attempt a pricing refresh at scan start
        """
        self._store = store
        self._pricing = pricing
        self._max_workers = max(1, max_workers)
        self._timezone_name = timezone_name
        self._sources = list(sources) if sources else None
        self._roots = dict(roots or {})
        self._indexer = indexer
        self._refresh_pricing = refresh_pricing
        self._lock = threading.Lock()

    @property
    def is_scanning(self) -> bool:
        return self._lock.locked()

    def run_scan(self, full_scan: bool = False, sources: Iterable[str] | None = None) -> ScanResult:
        """Run one scan.

        Args:
            full_scan: Reparse every candidate and rebuild the daily store
            sources: Restrict this scan to these sources

        Returns:
            ScanResult with sessions persisted, files discovered and errors

        Raises:
            ScanInProgressError: If another scan is running
            sqlite3.Error: If persisting the scan fails
        """
        if not self._lock.acquire(blocking=False):
            raise ScanInProgressError("a scan is already in progress")
        try:
            return self._run(full_scan, list(sources) if sources else self._sources)
        finally:
            self._lock.release()

    def _run(self, full_scan: bool, sources: list[str] | None) -> ScanResult:
        if self._pricing is not None and self._refresh_pricing:
            self._pricing.refresh()

        parsed_at = normalize_timestamp(datetime.now(timezone.utc))
        candidates = discover_all(sources, self._roots)
        state = self._store.read_scan_state()

        if full_scan:
            pending = candidates
        else:
            pending = [c for c in candidates if not is_unchanged(c, state)]

        logger.info(
            "Scan started: full=%s candidates=%d pending=%d", full_scan, len(candidates), len(pending)
        )

        accumulator = SessionAccumulator()
        if pending:
            with ThreadPoolExecutor(max_workers=min(self._max_workers, len(pending))) as pool:
                # Consume results so the pool drains before aggregation
                list(pool.map(lambda c: self._process(c, parsed_at, accumulator), pending))

        collected, duplicates = unique_by_id(accumulator.ordered_sessions())
        for duplicate in duplicates:
            kept = next(n for n in collected if n.session.id == duplicate.session.id)
            logger.warning(
                "Duplicate session id, keeping later file: id=%s kept=%s dropped=%s",
                duplicate.session.id,
                kept.session.file_path,
                duplicate.session.file_path,
            )

        if full_scan:
            daily = aggregate_sessions(
                [n.session for n in collected] + self._unscanned_sessions(collected, sources),
                self._timezone_name,
            )
        else:
            daily = self._incremental_daily(collected)

        self._store.commit_scan(accumulator.scan_state, collected, daily, replace_daily=True)

        # Only files that produced a persisted session count as scanned
        result = ScanResult(
            scanned=len(collected),
            total=len(candidates),
            errors=accumulator.errors + len(duplicates),
        )
        logger.info(
            "Scan complete: scanned=%d total=%d errors=%d sessions=%d",
            result.scanned,
            result.total,
            result.errors,
            len(collected),
        )

        if self._indexer is not None and collected:
            self._index(collected)

        return result

    def _process(self, candidate: FileCandidate, parsed_at: str, accumulator: SessionAccumulator) -> None:
        try:
            raw = parse_file(candidate)
            normalized = normalize_session(raw, parsed_at, self._pricing) if raw is not None else None
        except Exception:
            logger.warning("Failed to process file: source=%s path=%s", candidate.source, candidate.path, exc_info=True)
            normalized = None

        if normalized is None:
            logger.debug("No session extracted: source=%s path=%s", candidate.source, candidate.path)
            accumulator.add_failure(candidate, parsed_at)
        else:
            accumulator.add_success(candidate, normalized, parsed_at)

    def _unscanned_sessions(self, collected: list[NormalizedSession], sources: list[str] | None) -> list[Session]:
        """Stored sessions of sources a source-restricted full scan did not visit."""
        if not sources:
            return []
        scanned = set(sources)
        new_ids = {n.session.id for n in collected}
        new_paths = {n.session.file_path for n in collected}
        return [
            s
            for s in self._store.list_sessions()
            if s.source not in scanned and s.id not in new_ids and s.file_path not in new_paths
        ]

    def _incremental_daily(self, collected: list[NormalizedSession]) -> DailyStore:
        """Rebuild the dates touched by this scan and merge them into the stored store.

        A date is touched when a collected session falls on it, or when a
        stored session being replaced by this scan used to fall on it.
        """
        existing = self._store.read_daily()
        if not collected:
            return existing

        zone = resolve_timezone(self._timezone_name)
        new_sessions = [n.session for n in collected]
        new_ids = {s.id for s in new_sessions}
        new_paths = {s.file_path for s in new_sessions}

        replaced = {s.id: s for s in self._store.sessions_for_files(new_paths)}
        for session_id in new_ids - replaced.keys():
            previous = self._store.get_session(session_id)
            if previous is not None:
                replaced[session_id] = previous

        touched = {date_key(s, zone) for s in new_sessions} | {date_key(s, zone) for s in replaced.values()}
        # Pad by a day: stored timestamps are UTC, touched dates are local
        first = (date.fromisoformat(min(touched)) - timedelta(days=1)).isoformat()
        last = (date.fromisoformat(max(touched)) + timedelta(days=1)).isoformat()
        neighbours: list[Session] = [
            s
            for s in self._store.sessions_between(f"{first}T00:00:00.000Z", f"{last}T23:59:59.999Z")
            if s.id not in new_ids and s.file_path not in new_paths and date_key(s, zone) in touched
        ]

        incoming = aggregate_sessions(new_sessions + neighbours, self._timezone_name)
        merged = merge_daily(existing, incoming)
        # Dates left with no sessions after replacement disappear
        return {day: entry for day, entry in merged.items() if day in incoming or day not in touched}

    def _index(self, collected: list[NormalizedSession]) -> None:
        for normalized in collected:
            session = normalized.session
            try:
                self._indexer.upsert_events(session, normalized.events)
                self._indexer.update_session(session)
            except Exception:
                logger.exception("Error indexing session: id=%s", session.id)
