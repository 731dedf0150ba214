"""SQLite persistence for scan state, sessions, events and daily rollups."""

import json
import sqlite3
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Self

from session_meter.models import (
    DailyAggregateEntry,
    DailyStore,
    DayStats,
    ScanStateEntry,
    Session,
    SessionEvent,
    TokenUsage,
)
from session_meter.processor.normalizer import NormalizedSession

SESSION_COLUMNS = (
    "id",
    "source",
    "file_path",
    "file_size_bytes",
    "start_time",
    "end_time",
    "duration_ms",
    "title",
    "model",
    "cwd",
    "repo_name",
    "git_branch",
    "cli_version",
    "event_count",
    "message_count",
    "tool_call_count",
    "input_tokens",
    "output_tokens",
    "cache_read_tokens",
    "cache_write_tokens",
    "reasoning_tokens",
    "total_cost_usd",
    "is_housekeeping",
    "parsed_at",
)

EVENT_COLUMNS = (
    "session_id",
    "seq",
    "id",
    "kind",
    "timestamp",
    "role",
    "text",
    "tool_name",
    "tool_input",
    "tool_output",
    "model",
    "parent_id",
    "message_id",
    "is_delta",
    "tokens",
    "cost_usd",
)


class SQLiteStore:
    """Storage for the ingestion pipeline backed by one SQLite database.

    Reads are plain queries; every scan's writes go through commit_scan,
    which applies scan state, sessions, events and the daily store in a
    single transaction.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file. Parent directories
                     will be created if they don't exist.
        """
        self._db_path = db_path
        if str(db_path) != ":memory:":
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self.ensure_schema()

    def ensure_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS scan_state (
                path TEXT PRIMARY KEY,
                source TEXT NOT NULL,
                file_size INTEGER NOT NULL,
                mtime_ms REAL NOT NULL,
                parsed_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                source TEXT NOT NULL,
                file_path TEXT NOT NULL,
                file_size_bytes INTEGER NOT NULL DEFAULT 0,
                start_time TEXT,
                end_time TEXT,
                duration_ms INTEGER,
                title TEXT,
                model TEXT,
                cwd TEXT,
                repo_name TEXT,
                git_branch TEXT,
                cli_version TEXT,
                event_count INTEGER NOT NULL DEFAULT 0,
                message_count INTEGER NOT NULL DEFAULT 0,
                tool_call_count INTEGER NOT NULL DEFAULT 0,
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                cache_read_tokens INTEGER NOT NULL DEFAULT 0,
                cache_write_tokens INTEGER NOT NULL DEFAULT 0,
                reasoning_tokens INTEGER NOT NULL DEFAULT 0,
                total_cost_usd REAL,
                is_housekeeping INTEGER NOT NULL DEFAULT 0,
                parsed_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_source ON sessions(source);
            CREATE INDEX IF NOT EXISTS idx_sessions_start ON sessions(start_time);
            CREATE INDEX IF NOT EXISTS idx_sessions_file ON sessions(file_path);

            CREATE TABLE IF NOT EXISTS events (
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                id TEXT NOT NULL,
                kind TEXT NOT NULL,
                timestamp TEXT,
                role TEXT,
                text TEXT,
                tool_name TEXT,
                tool_input TEXT,
                tool_output TEXT,
                model TEXT,
                parent_id TEXT,
                message_id TEXT,
                is_delta INTEGER NOT NULL DEFAULT 0,
                tokens TEXT,
                cost_usd REAL,
                PRIMARY KEY (session_id, id)
            );

            CREATE TABLE IF NOT EXISTS daily (
                date TEXT PRIMARY KEY,
                data TEXT NOT NULL
            );
        """)
        self._conn.commit()

    # Reads

    def read_scan_state(self) -> dict[str, ScanStateEntry]:
        """Return scan state keyed by file path."""
        cursor = self._conn.execute("SELECT path, source, file_size, mtime_ms, parsed_at FROM scan_state")
        return {
            row["path"]: ScanStateEntry(
                source=row["source"],
                file_size=row["file_size"],
                mtime_ms=row["mtime_ms"],
                parsed_at=row["parsed_at"],
            )
            for row in cursor
        }

    def read_daily(self) -> DailyStore:
        """Return the full daily store, sorted by date."""
        cursor = self._conn.execute("SELECT date, data FROM daily ORDER BY date")
        return {row["date"]: DailyAggregateEntry.from_dict(json.loads(row["data"])) for row in cursor}

    def query_daily(
        self,
        date_from: str | None = None,
        date_to: str | None = None,
        source: str | None = None,
        model: str | None = None,
    ) -> dict[str, DayStats]:
        """Per-date statistics within an inclusive date range.

        Args:
            date_from: First date (YYYY-MM-DD), unbounded if None
            date_to: Last date (YYYY-MM-DD), unbounded if None
            source: Restrict to one source's bucket
            model: Restrict to one model's bucket

        Returns:
            Date-sorted mapping of date to DayStats; dates without a
            matching bucket are omitted

        Raises:
            ValueError: If both source and model are given
        """
        if source and model:
            raise ValueError("Filter by source or by model, not both")

        clauses: list[str] = []
        params: list[str] = []
        if date_from:
            clauses.append("date >= ?")
            params.append(date_from)
        if date_to:
            clauses.append("date <= ?")
            params.append(date_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        result: dict[str, DayStats] = {}
        cursor = self._conn.execute(f"SELECT date, data FROM daily {where} ORDER BY date", params)
        for row in cursor:
            entry = DailyAggregateEntry.from_dict(json.loads(row["data"]))
            if source:
                stats = entry.by_source.get(source)
            elif model:
                stats = entry.by_model.get(model)
            else:
                stats = entry.totals
            if stats is not None:
                result[row["date"]] = stats
        return result

    def get_session(self, session_id: str) -> Session | None:
        cursor = self._conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,))
        row = cursor.fetchone()
        return _row_to_session(row) if row is not None else None

    def list_sessions(self, source: str | None = None, limit: int | None = None) -> list[Session]:
        """List sessions, newest first.

        Args:
            source: Only sessions of this source
            limit: Maximum number of sessions to return

        Returns:
            List of Session objects
        """
        query = "SELECT * FROM sessions"
        params: list[object] = []
        if source:
            query += " WHERE source = ?"
            params.append(source)
        query += " ORDER BY COALESCE(start_time, parsed_at) DESC, id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return [_row_to_session(row) for row in self._conn.execute(query, params)]

    def sessions_for_files(self, paths: Iterable[str]) -> list[Session]:
        """Sessions currently stored for any of the given file paths."""
        paths = list(paths)
        if not paths:
            return []
        sessions: list[Session] = []
        # Chunked to stay under SQLite's bound-parameter limit
        for start in range(0, len(paths), 500):
            chunk = paths[start:start + 500]
            placeholders = ", ".join("?" for _ in chunk)
            cursor = self._conn.execute(f"SELECT * FROM sessions WHERE file_path IN ({placeholders})", chunk)
            sessions.extend(_row_to_session(row) for row in cursor)
        return sessions

    def sessions_between(self, start: str, end: str) -> list[Session]:
        """Sessions whose start (else parse) time lies in [start, end].

        Bounds are canonical UTC timestamps, compared as strings.
        """
        cursor = self._conn.execute(
            "SELECT * FROM sessions WHERE COALESCE(start_time, parsed_at) BETWEEN ? AND ? ORDER BY file_path, id",
            (start, end),
        )
        return [_row_to_session(row) for row in cursor]

    def get_events(self, session_id: str) -> list[SessionEvent]:
        """Return a session's events in canonical order."""
        cursor = self._conn.execute(
            f"SELECT {', '.join(EVENT_COLUMNS)} FROM events WHERE session_id = ? ORDER BY seq",
            (session_id,),
        )
        return [_row_to_event(row) for row in cursor]

    # Writes

    def delete_session(self, session_id: str) -> None:
        """Delete a session and its events."""
        with self._conn:
            self._conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))

    def commit_scan(
        self,
        scan_state: Mapping[str, ScanStateEntry],
        sessions: Iterable[NormalizedSession],
        daily: DailyStore,
        replace_daily: bool = False,
    ) -> None:
        """Persist the outcome of one scan atomically.

        Sessions replace any stored session with the same id, and any
        session previously stored for the same file under another id.

        Args:
            scan_state: Scan state entries to upsert, keyed by path
            sessions: Normalized sessions with their events
            daily: Daily entries to upsert (or the whole store)
            replace_daily: Drop every stored daily entry first (full scan)

        Raises:
            sqlite3.Error: On any storage failure; nothing is written
        """
        with self._conn:
            self._conn.executemany(
                """
                INSERT OR REPLACE INTO scan_state (path, source, file_size, mtime_ms, parsed_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (path, entry.source, entry.file_size, entry.mtime_ms, entry.parsed_at)
                    for path, entry in scan_state.items()
                ],
            )

            for normalized in sessions:
                session = normalized.session
                self._conn.execute(
                    "DELETE FROM sessions WHERE id = ? OR file_path = ?",
                    (session.id, session.file_path),
                )
                self._conn.execute(
                    f"INSERT INTO sessions ({', '.join(SESSION_COLUMNS)}) "
                    f"VALUES ({', '.join('?' for _ in SESSION_COLUMNS)})",
                    _session_to_row(session),
                )
                self._conn.executemany(
                    f"INSERT INTO events ({', '.join(EVENT_COLUMNS)}) "
                    f"VALUES ({', '.join('?' for _ in EVENT_COLUMNS)})",
                    [_event_to_row(event, seq) for seq, event in enumerate(normalized.events)],
                )

            if replace_daily:
                self._conn.execute("DELETE FROM daily")
            self._conn.executemany(
                "INSERT OR REPLACE INTO daily (date, data) VALUES (?, ?)",
                [(date, json.dumps(entry.to_dict(), sort_keys=True)) for date, entry in daily.items()],
            )

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> Self:
        """Enter context manager."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Exit context manager, closing database connection."""
        self.close()


def _session_to_row(session: Session) -> tuple:
    tokens = session.total_tokens
    return (
        session.id,
        session.source,
        session.file_path,
        session.file_size_bytes,
        session.start_time,
        session.end_time,
        session.duration_ms,
        session.title,
        session.model,
        session.cwd,
        session.repo_name,
        session.git_branch,
        session.cli_version,
        session.event_count,
        session.message_count,
        session.tool_call_count,
        tokens.input_tokens,
        tokens.output_tokens,
        tokens.cache_read_tokens,
        tokens.cache_write_tokens,
        tokens.reasoning_tokens,
        session.total_cost_usd,
        int(session.is_housekeeping),
        session.parsed_at,
    )


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        source=row["source"],
        file_path=row["file_path"],
        file_size_bytes=row["file_size_bytes"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        duration_ms=row["duration_ms"],
        title=row["title"],
        model=row["model"],
        cwd=row["cwd"],
        repo_name=row["repo_name"],
        git_branch=row["git_branch"],
        cli_version=row["cli_version"],
        event_count=row["event_count"],
        message_count=row["message_count"],
        tool_call_count=row["tool_call_count"],
        total_tokens=TokenUsage(
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            cache_read_tokens=row["cache_read_tokens"],
            cache_write_tokens=row["cache_write_tokens"],
            reasoning_tokens=row["reasoning_tokens"],
        ),
        total_cost_usd=row["total_cost_usd"],
        is_housekeeping=bool(row["is_housekeeping"]),
        parsed_at=row["parsed_at"],
    )


def _event_to_row(event: SessionEvent, seq: int) -> tuple:
    return (
        event.session_id,
        seq,
        event.id,
        event.kind,
        event.timestamp,
        event.role,
        event.text,
        event.tool_name,
        event.tool_input,
        event.tool_output,
        event.model,
        event.parent_id,
        event.message_id,
        int(event.is_delta),
        json.dumps(event.tokens.to_dict()) if event.tokens else None,
        event.cost_usd,
    )


def _row_to_event(row: sqlite3.Row) -> SessionEvent:
    data = {key: row[key] for key in EVENT_COLUMNS if key not in ("seq", "tokens")}
    data["tokens"] = json.loads(row["tokens"]) if row["tokens"] else None
    return SessionEvent.from_dict(data)
