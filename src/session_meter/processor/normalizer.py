"""Canonicalization of parsed sessions.

Turns a RawParsedSession into a Session plus its ordered, uniquely
identified events. Pure apart from reading the clock for parsed_at.
"""

import math
import re
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import PurePath
from typing import TYPE_CHECKING, Any

from session_meter.models import RawParsedSession, Session, SessionEvent, TokenUsage

if TYPE_CHECKING:
    from session_meter.processor.pricing import PricingResolver

TEXT_MAX_DEPTH = 6
TITLE_MAX_LENGTH = 200
EPOCH_SECONDS_LIMIT = 100_000_000_000

TOOL_CALL_TYPES = frozenset(
    {"tool_call", "tool-call", "tool_use", "function_call", "custom_tool_call", "web_search_call"}
)

TOOL_RESULT_TYPES = frozenset(
    {
        "tool_result",
        "tool-result",
        "function_result",
        "function_call_output",
        "custom_tool_call_output",
        "web_search_call_output",
    }
)

ERROR_TYPES = frozenset({"error", "err"})

PREFERRED_TEXT_KEYS = ("text", "message", "summary", "description", "thinking", "content", "output", "input", "args")

# Ordered alias lists per TokenUsage field; the first numeric hit wins
TOKEN_ALIASES: dict[str, tuple[tuple[str, ...], ...]] = {
    "input_tokens": (("inputTokens",), ("input_tokens",), ("input",), ("prompt_tokens",)),
    "output_tokens": (("outputTokens",), ("output_tokens",), ("output",), ("completion_tokens",)),
    "cache_read_tokens": (
        ("cacheReadTokens",),
        ("cache_read_tokens",),
        ("cache_read_input_tokens",),
        ("cached_input_tokens",),
        ("cached",),
        ("cache", "read"),
        ("prompt_tokens_details", "cached_tokens"),
    ),
    "cache_write_tokens": (
        ("cacheWriteTokens",),
        ("cache_write_tokens",),
        ("cache_write_input_tokens",),
        ("cache_creation_input_tokens",),
        ("cacheCreationTokens",),
        ("cache", "write"),
    ),
    "reasoning_tokens": (
        ("reasoningTokens",),
        ("reasoning_tokens",),
        ("reasoning",),
        ("reasoning_output_tokens",),
        ("thinkingTokens",),
        ("thoughts",),
    ),
}


def to_number(value: Any) -> float | None:
    """Coerce a JSON number or numeric string to a finite float."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


@dataclass(frozen=True)
class NormalizedSession:
    session: Session
    events: list[SessionEvent]


def normalize_timestamp(value: Any) -> str | None:
    """Canonicalize a timestamp to YYYY-MM-DDTHH:MM:SS.mmmZ.

    Accepts ISO-8601 strings, numeric strings, and epoch numbers. Numbers
    below 10^11 are seconds, anything larger is milliseconds.

    Args:
        value: Raw timestamp value from a transcript

    Returns:
        Canonical UTC timestamp, or None if the value is unusable
    """
    if value is None or value == "" or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return _format_utc(moment)

    numeric = to_number(value)
    if numeric is not None:
        millis = numeric * 1000 if numeric < EPOCH_SECONDS_LIMIT else numeric
        try:
            moment = datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
        return _format_utc(moment)

    if not isinstance(value, str):
        return None

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return _format_utc(moment)


def _format_utc(moment: datetime) -> str:
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a canonical timestamp back into an aware datetime."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def extract_text(value: Any, depth: int = 0) -> str | None:
    """Collect human-readable text from a loosely shaped payload.

    Strings, numbers, lists, and objects (via PREFERRED_TEXT_KEYS) are walked
    up to TEXT_MAX_DEPTH levels; chunks are joined with newlines.
    """
    chunks: list[str] = []
    _collect_text(value, chunks, depth)
    joined = "\n".join(chunks).strip()
    return joined or None


def _collect_text(value: Any, output: list[str], depth: int) -> None:
    if value is None or depth > TEXT_MAX_DEPTH:
        return

    if isinstance(value, str):
        text = value.strip()
        if text:
            output.append(text)
    elif isinstance(value, bool):
        output.append("true" if value else "false")
    elif isinstance(value, (int, float)):
        output.append(str(value))
    elif isinstance(value, list):
        for entry in value:
            _collect_text(entry, output, depth + 1)
    elif isinstance(value, dict):
        for key in PREFERRED_TEXT_KEYS:
            if key in value:
                _collect_text(value[key], output, depth + 1)


def _lookup(source: dict[str, Any], path: tuple[str, ...]) -> Any:
    current: Any = source
    for part in path:
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def normalize_token_usage(value: Any) -> TokenUsage | None:
    """Resolve a token usage object in any known dialect into TokenUsage.

    Returns None when the value carries no usage field at all, so that
    "unknown" stays distinguishable from "zero".
    """
    if isinstance(value, TokenUsage):
        return value
    if not isinstance(value, dict):
        return None

    found = False
    counts: dict[str, int] = {}
    for field_name, aliases in TOKEN_ALIASES.items():
        counts[field_name] = 0
        for path in aliases:
            raw = _lookup(value, path)
            if raw is None:
                continue
            found = True
            number = to_number(raw)
            if number is not None:
                counts[field_name] = int(number)
                break

    if not found:
        return None
    return TokenUsage(**counts)


def resolve_event_kind(raw_type: Any, raw_role: Any) -> str:
    """Map a source-specific type/role pair onto an event kind."""
    kind = raw_type.strip().lower() if isinstance(raw_type, str) else ""
    role = raw_role.strip().lower() if isinstance(raw_role, str) else ""

    if kind == "user" or role == "user":
        return "user"
    if kind == "assistant" or role == "assistant":
        return "assistant"
    if kind in TOOL_CALL_TYPES:
        return "tool_call"
    if kind in TOOL_RESULT_TYPES or role == "tool":
        return "tool_result"
    if kind in ERROR_TYPES:
        return "error"
    return "meta"


def scope_event_id(session_id: str, value: Any, fallback_index: int | None = None) -> str | None:
    """Scope a raw id to "<session_id>:event:<raw>". Idempotent."""
    suffix: str | None = None
    if isinstance(value, str) and value.strip():
        suffix = value.strip()
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        suffix = str(value)
    elif fallback_index is not None:
        suffix = f"index:{fallback_index}"

    if suffix is None:
        return None

    prefix = f"{session_id}:event:"
    if suffix.startswith(prefix):
        return suffix
    return f"{prefix}{suffix}"


def _repo_name(cwd: str | None) -> str | None:
    if not cwd:
        return None
    name = PurePath(cwd.rstrip("/\\").replace("\\", "/")).name
    return name or None


def _session_model(events: list[SessionEvent], fallback: str | None) -> str | None:
    counts = Counter(event.model for event in events if event.kind == "assistant" and event.model)
    if not counts:
        return fallback
    # most_common keeps first-seen order among equal counts
    return counts.most_common(1)[0][0]


def _session_title(events: list[SessionEvent], explicit: str | None) -> str | None:
    if explicit and explicit.strip():
        return explicit.strip()
    for event in events:
        if event.kind == "user" and event.text and event.text.strip():
            return re.sub(r"\s+", " ", event.text).strip()[:TITLE_MAX_LENGTH]
    return None


def _shape_event(
    event: SessionEvent,
    index: int,
    session_id: str,
    raw_ids: set[str],
) -> SessionEvent:
    parent_id = event.parent_id
    if parent_id is not None and parent_id in raw_ids:
        parent_id = scope_event_id(session_id, parent_id)

    cost = event.cost_usd
    if isinstance(cost, bool) or not isinstance(cost, (int, float)):
        cost = None

    return replace(
        event,
        id=scope_event_id(session_id, event.id, index),
        session_id=session_id,
        timestamp=normalize_timestamp(event.timestamp),
        parent_id=parent_id,
        is_delta=bool(event.is_delta),
        tokens=normalize_token_usage(event.tokens),
        cost_usd=cost,
    )


def normalize_session(
    raw: RawParsedSession,
    parsed_at: str | None = None,
    pricing: "PricingResolver | None" = None,
) -> NormalizedSession:
    """Normalize a parsed session into a canonical Session and its events.

    Args:
        raw: Parser output
        parsed_at: Timestamp to stamp on the session (defaults to now)
        pricing: Resolver used to price events that carry no cost

    Returns:
        NormalizedSession holding the Session and its ordered events
    """
    session_id = raw.session_id
    metadata = raw.metadata
    raw_ids = {event.id for event in raw.events if isinstance(event.id, str)}

    shaped: list[SessionEvent] = []
    for index, event in enumerate(raw.events):
        event = _shape_event(event, index, session_id, raw_ids)
        if event.cost_usd is None and pricing is not None:
            event = replace(event, cost_usd=pricing.cost(event.tokens, event.model or metadata.model))
        shaped.append(event)

    # Stable sort; untimestamped events keep file order after the rest
    ordered = sorted(
        enumerate(shaped),
        key=lambda item: (item[1].timestamp is None, item[1].timestamp or "", item[0]),
    )

    seen: Counter[str] = Counter()
    events: list[SessionEvent] = []
    for _, event in ordered:
        count = seen[event.id]
        seen[event.id] += 1
        events.append(event if count == 0 else replace(event, id=f"{event.id}:dup:{count}"))

    timestamps = [event.timestamp for event in events if event.timestamp]
    start_time = timestamps[0] if timestamps else None
    end_time = timestamps[-1] if timestamps else None

    duration_ms: int | None = None
    start_dt, end_dt = parse_timestamp(start_time), parse_timestamp(end_time)
    if start_dt is not None and end_dt is not None:
        duration_ms = max(0, int((end_dt - start_dt).total_seconds() * 1000))

    total_tokens = TokenUsage()
    total_cost = 0.0
    has_cost = False
    message_count = 0
    tool_call_count = 0
    for event in events:
        total_tokens = total_tokens + event.tokens
        if event.cost_usd is not None:
            total_cost += event.cost_usd
            has_cost = True
        if event.kind in ("user", "assistant"):
            message_count += 1
        elif event.kind == "tool_call":
            tool_call_count += 1

    is_housekeeping = message_count == 0 or all(event.kind == "meta" for event in events)

    session = Session(
        id=session_id,
        source=raw.source,
        file_path=raw.file_path,
        file_size_bytes=raw.file_size_bytes,
        start_time=start_time,
        end_time=end_time,
        duration_ms=duration_ms,
        title=_session_title(events, metadata.title),
        model=_session_model(events, metadata.model),
        cwd=metadata.cwd,
        repo_name=_repo_name(metadata.cwd),
        git_branch=metadata.git_branch,
        cli_version=metadata.cli_version,
        event_count=len(events),
        message_count=message_count,
        tool_call_count=tool_call_count,
        total_tokens=total_tokens,
        total_cost_usd=total_cost if has_cost else None,
        is_housekeeping=is_housekeeping,
        parsed_at=parsed_at or normalize_timestamp(datetime.now(timezone.utc)),
    )
    return NormalizedSession(session=session, events=events)
