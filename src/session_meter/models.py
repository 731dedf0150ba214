"""Canonical data models."""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any

SOURCES = ("claude", "codex", "gemini", "opencode", "droid", "copilot")


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one event or session. Every field is clamped at zero."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    reasoning_tokens: int = 0

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            object.__setattr__(self, f.name, max(0, int(value or 0)))

    def __add__(self, other: "TokenUsage | None") -> "TokenUsage":
        if other is None:
            return self
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_write_tokens=self.cache_write_tokens + other.cache_write_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
        )

    @property
    def total(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_write_tokens
            + self.reasoning_tokens
        )

    def is_empty(self) -> bool:
        return self.total == 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TokenUsage | None":
        if data is None:
            return None
        return cls(**{f.name: data.get(f.name, 0) for f in fields(cls)})


@dataclass(frozen=True)
class FileCandidate:
    """A discovered transcript file. Identity is the path."""

    path: str
    source: str
    mtime: float  # milliseconds since epoch
    size: int


@dataclass(frozen=True)
class SessionEvent:
    """One event of a session.

    Parsers emit raw events (source-specific ids, loosely formatted
    timestamps); the normalizer returns canonical events of the same type.
    """

    id: str
    session_id: str
    kind: str  # user, assistant, tool_call, tool_result, error, meta
    timestamp: Any = None
    role: str | None = None
    text: str | None = None
    tool_name: str | None = None
    tool_input: str | None = None
    tool_output: str | None = None
    model: str | None = None
    parent_id: str | None = None
    message_id: str | None = None
    is_delta: bool = False
    tokens: TokenUsage | None = None
    cost_usd: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["tokens"] = self.tokens.to_dict() if self.tokens else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionEvent":
        values = {f.name: data.get(f.name) for f in fields(cls)}
        values["tokens"] = TokenUsage.from_dict(data.get("tokens"))
        values["is_delta"] = bool(data.get("is_delta"))
        return cls(**values)


@dataclass(frozen=True)
class SessionMetadata:
    cwd: str | None = None
    git_branch: str | None = None
    model: str | None = None
    cli_version: str | None = None
    title: str | None = None


@dataclass
class RawParsedSession:
    """Parser output for one transcript file."""

    session_id: str
    source: str
    file_path: str
    file_size_bytes: int
    metadata: SessionMetadata = field(default_factory=SessionMetadata)
    events: list[SessionEvent] = field(default_factory=list)


@dataclass
class Session:
    """Aggregated metadata for one conversation file."""

    id: str
    source: str
    file_path: str
    file_size_bytes: int
    start_time: str | None
    end_time: str | None
    duration_ms: int | None
    title: str | None
    model: str | None
    cwd: str | None
    repo_name: str | None
    git_branch: str | None
    cli_version: str | None
    event_count: int
    message_count: int
    tool_call_count: int
    total_tokens: TokenUsage
    total_cost_usd: float | None
    is_housekeeping: bool
    parsed_at: str

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["total_tokens"] = self.total_tokens.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        values = {f.name: data.get(f.name) for f in fields(cls)}
        values["total_tokens"] = TokenUsage.from_dict(data.get("total_tokens")) or TokenUsage()
        values["is_housekeeping"] = bool(data.get("is_housekeeping"))
        return cls(**values)

    def to_typesense_doc(self) -> dict[str, Any]:
        """Convert to Typesense document format."""
        return {
            "id": self.id,
            "source": self.source,
            "model": self.model or "unknown",
            "repo_name": self.repo_name or "",
            "cwd": self.cwd or "",
            "title": self.title or "",
            "start_ts": iso_to_epoch_seconds(self.start_time),
            "end_ts": iso_to_epoch_seconds(self.end_time),
            "message_count": self.message_count,
            "total_tokens": self.total_tokens.total,
            "total_cost_usd": self.total_cost_usd or 0.0,
        }


@dataclass(frozen=True)
class DayStats:
    """Additive counters for one aggregation bucket."""

    sessions: int = 0
    messages: int = 0
    tool_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    reasoning_tokens: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0

    def __add__(self, other: "DayStats") -> "DayStats":
        return DayStats(**{f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)})

    @classmethod
    def from_session(cls, session: Session) -> "DayStats":
        tokens = session.total_tokens
        return cls(
            sessions=1,
            messages=session.message_count,
            tool_calls=session.tool_call_count,
            input_tokens=tokens.input_tokens,
            output_tokens=tokens.output_tokens,
            cache_read_tokens=tokens.cache_read_tokens,
            cache_write_tokens=tokens.cache_write_tokens,
            reasoning_tokens=tokens.reasoning_tokens,
            cost_usd=session.total_cost_usd or 0.0,
            duration_ms=session.duration_ms or 0,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DayStats":
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = data.get(f.name, 0)
            values[f.name] = raw if isinstance(raw, (int, float)) and not isinstance(raw, bool) else 0
        return cls(**values)


@dataclass(frozen=True)
class DailyAggregateEntry:
    """Statistics for one calendar day."""

    by_source: dict[str, DayStats] = field(default_factory=dict)
    by_model: dict[str, DayStats] = field(default_factory=dict)
    by_repo: dict[str, DayStats] = field(default_factory=dict)
    by_hour: dict[str, DayStats] = field(default_factory=dict)
    by_hour_source: dict[str, dict[str, DayStats]] = field(default_factory=dict)
    totals: DayStats = field(default_factory=DayStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "by_source": {k: v.to_dict() for k, v in self.by_source.items()},
            "by_model": {k: v.to_dict() for k, v in self.by_model.items()},
            "by_repo": {k: v.to_dict() for k, v in self.by_repo.items()},
            "by_hour": {k: v.to_dict() for k, v in self.by_hour.items()},
            "by_hour_source": {
                hour: {k: v.to_dict() for k, v in sources.items()} for hour, sources in self.by_hour_source.items()
            },
            "totals": self.totals.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DailyAggregateEntry":
        def buckets(raw: Any) -> dict[str, DayStats]:
            if not isinstance(raw, dict):
                return {}
            return {k: DayStats.from_dict(v) for k, v in raw.items() if isinstance(v, dict)}

        hour_source = data.get("by_hour_source")
        totals = data.get("totals")
        return cls(
            by_source=buckets(data.get("by_source")),
            by_model=buckets(data.get("by_model")),
            by_repo=buckets(data.get("by_repo")),
            by_hour=buckets(data.get("by_hour")),
            by_hour_source={
                hour: buckets(sources) for hour, sources in hour_source.items() if isinstance(sources, dict)
            }
            if isinstance(hour_source, dict)
            else {},
            totals=DayStats.from_dict(totals) if isinstance(totals, dict) else DayStats(),
        )


DailyStore = dict[str, DailyAggregateEntry]


@dataclass(frozen=True)
class ScanStateEntry:
    """Bookkeeping for one scanned file, keyed by path."""

    source: str
    file_size: int
    mtime_ms: float
    parsed_at: str


@dataclass(frozen=True)
class ScanResult:
    scanned: int
    total: int
    errors: int


def iso_to_epoch_seconds(value: str | None) -> int:
    """Convert a canonical ISO timestamp to Unix seconds (0 when missing)."""
    if not value:
        return 0

    try:
        return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp())
    except ValueError:
        return 0
