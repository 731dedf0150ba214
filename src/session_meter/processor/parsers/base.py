"""Base parser interface, registry, and shared record helpers."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from session_meter.models import FileCandidate, RawParsedSession, SessionEvent, SessionMetadata, TokenUsage
from session_meter.processor.normalizer import extract_text, to_number

__all__ = [
    "CumulativeUsageTracker",
    "Parser",
    "ParserRegistry",
    "UsageTotals",
    "as_record",
    "detect_delta",
    "fan_out_blocks",
    "first_string",
    "get_string",
    "message_block_text",
    "parse_json_or_jsonl",
    "parse_jsonl_records",
    "read_text",
    "to_json",
    "to_number",
]


def as_record(value: Any) -> dict[str, Any] | None:
    """Return value if it is a JSON object, else None."""
    return value if isinstance(value, dict) else None


def get_string(value: Any) -> str | None:
    """Return value if it is a non-blank string, else None."""
    if isinstance(value, str) and value.strip():
        return value
    return None


def first_string(*values: Any) -> str | None:
    """First non-blank string among values, in order."""
    for value in values:
        text = get_string(value)
        if text is not None:
            return text
    return None


def to_json(value: Any) -> str | None:
    """Serialize a tool input for storage; empty values become None."""
    if value is None or value == "" or value == {} or value == []:
        return None
    return json.dumps(value, ensure_ascii=False)


def read_text(path: str | Path) -> str:
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return f.read()


def parse_jsonl_records(content: str) -> list[dict[str, Any]]:
    """Split JSONL content into object records.

    Blank lines, malformed lines, and non-object values are skipped.
    """
    records: list[dict[str, Any]] = []
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            # Skip malformed lines
            continue
        if isinstance(parsed, dict):
            records.append(parsed)
    return records


def parse_json_or_jsonl(path: str, content: str) -> list[dict[str, Any]]:
    """Split a JSON or JSONL document into object records.

    A .jsonl path is always read line by line. Otherwise the content is
    parsed as one document:
    - an array yields its object elements
    - an object with a "messages" array yields a synthetic header record
      followed by one record per message (tagged with "_kind")
    - any other object yields itself
    If the document does not parse, the content is retried as JSONL.

    Args:
        path: File path (only its suffix is consulted)
        content: Raw file content

    Returns:
        List of object records in file order
    """
    if not content.strip():
        return []

    if path.endswith(".jsonl"):
        return parse_jsonl_records(content)

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        return parse_jsonl_records(content)

    if isinstance(parsed, list):
        return [entry for entry in parsed if isinstance(entry, dict)]

    if not isinstance(parsed, dict):
        return []

    messages = parsed.get("messages")
    if isinstance(messages, list):
        header = {
            "_kind": "json_header",
            "sessionId": parsed.get("sessionId"),
            "cwd": parsed.get("cwd"),
            "startTime": parsed.get("startTime"),
            "lastUpdated": parsed.get("lastUpdated"),
        }
        return [header] + [
            {**entry, "_kind": "json_message"} for entry in messages if isinstance(entry, dict)
        ]

    return [parsed]


def detect_delta(raw_type: str | None, payload: dict[str, Any] | None) -> bool:
    """Whether a record is a streaming partial update.

    True when the type mentions "delta", or the payload carries an
    isDelta flag, a delta/content_delta field, or delta-typed content blocks.
    """
    if raw_type and "delta" in raw_type.lower():
        return True
    if payload is None:
        return False

    is_delta = payload.get("isDelta")
    if isinstance(is_delta, bool):
        return is_delta
    if "delta" in payload or "content_delta" in payload:
        return True

    content = payload.get("content")
    if isinstance(content, list):
        for block in content:
            block_type = get_string(block.get("type")) if isinstance(block, dict) else None
            if block_type and "delta" in block_type.lower():
                return True
    return False


@dataclass(frozen=True)
class UsageTotals:
    """One cumulative usage snapshot as reported by the CLI."""

    input_tokens: int
    cache_read_tokens: int
    output_tokens: int
    reasoning_tokens: int

    @classmethod
    def from_payload(cls, value: Any) -> "UsageTotals | None":
        record = as_record(value)
        if record is None:
            return None

        input_tokens = to_number(record.get("input_tokens"))
        output_tokens = to_number(record.get("output_tokens"))
        if input_tokens is None and output_tokens is None:
            return None

        return cls(
            input_tokens=max(0, int(input_tokens or 0)),
            cache_read_tokens=max(0, int(to_number(record.get("cached_input_tokens")) or 0)),
            output_tokens=max(0, int(output_tokens or 0)),
            reasoning_tokens=max(0, int(to_number(record.get("reasoning_output_tokens")) or 0)),
        )

    def minus(self, previous: "UsageTotals | None") -> "UsageTotals":
        if previous is None:
            return self
        return UsageTotals(
            input_tokens=max(0, self.input_tokens - previous.input_tokens),
            cache_read_tokens=max(0, self.cache_read_tokens - previous.cache_read_tokens),
            output_tokens=max(0, self.output_tokens - previous.output_tokens),
            reasoning_tokens=max(0, self.reasoning_tokens - previous.reasoning_tokens),
        )

    def to_token_usage(self) -> TokenUsage | None:
        """Split into non-cached input and non-reasoning output; None if all zero."""
        usage = TokenUsage(
            input_tokens=self.input_tokens - self.cache_read_tokens,
            output_tokens=self.output_tokens - self.reasoning_tokens,
            cache_read_tokens=self.cache_read_tokens,
            cache_write_tokens=0,
            reasoning_tokens=self.reasoning_tokens,
        )
        return None if usage.is_empty() else usage


class CumulativeUsageTracker:
    """Turns running-total token_count snapshots into per-event deltas.

    One tracker per parsed file. Token totals and the cumulative USD cost
    are tracked independently.
    """

    def __init__(self) -> None:
        self.previous_totals: UsageTotals | None = None
        self.previous_cost: float | None = None

    def consume(self, payload: dict[str, Any] | None) -> tuple[TokenUsage | None, float | None]:
        """Consume one token_count payload.

        Args:
            payload: The record payload holding "info" (and maybe a top-level
                total_cost_usd)

        Returns:
            Tuple of (token delta or None, cost delta or None)
        """
        info = as_record(payload.get("info")) if payload else None
        return self._token_delta(info), self._cost_delta(payload, info)

    def _token_delta(self, info: dict[str, Any] | None) -> TokenUsage | None:
        total = UsageTotals.from_payload(info.get("total_token_usage")) if info else None
        last = UsageTotals.from_payload(info.get("last_token_usage")) if info else None

        if total is not None:
            previous = self.previous_totals
            self.previous_totals = total
            delta = total.minus(previous).to_token_usage()
            if delta is not None:
                return delta
            if previous is None and last is not None:
                return last.to_token_usage()
            return None

        if last is not None:
            return last.to_token_usage()
        return None

    def _cost_delta(self, payload: dict[str, Any] | None, info: dict[str, Any] | None) -> float | None:
        total = to_number(info.get("total_cost_usd")) if info else None
        if total is None and payload:
            total = to_number(payload.get("total_cost_usd"))
        if total is None:
            return None

        previous = self.previous_cost
        self.previous_cost = total
        if previous is None:
            return max(0.0, total)
        return max(0.0, total - previous)


class Parser(ABC):
    """Base class for session parsers.

    Subclasses set the `source_name` class attribute and implement
    `parse()`. A parser returns None when the file yields no events and
    must never raise.
    """

    source_name: str

    @abstractmethod
    def parse(self, candidate: FileCandidate) -> RawParsedSession | None:
        """Parse one session file.

        Args:
            candidate: The discovered file

        Returns:
            RawParsedSession, or None if nothing could be extracted
        """

    def build_session(
        self,
        candidate: FileCandidate,
        session_id: str,
        metadata: SessionMetadata,
        events: list[SessionEvent],
    ) -> RawParsedSession | None:
        if not events:
            return None
        return RawParsedSession(
            session_id=session_id,
            source=candidate.source,
            file_path=candidate.path,
            file_size_bytes=candidate.size,
            metadata=metadata,
            events=events,
        )


class ParserRegistry:
    """Registry of parsers by source name."""

    _parsers: dict[str, Parser] = {}

    @classmethod
    def register(cls, parser: Parser) -> None:
        """Register a parser."""
        cls._parsers[parser.source_name] = parser

    @classmethod
    def get(cls, source_name: str) -> Parser | None:
        """Get parser by source name."""
        return cls._parsers.get(source_name)

    @classmethod
    def all_sources(cls) -> list[str]:
        """List all registered source names."""
        return list(cls._parsers.keys())


def message_block_text(content: Any) -> str | None:
    """Text of a chat message: a string, or its text and thinking blocks."""
    if isinstance(content, str):
        return content.strip() or None
    if not isinstance(content, list):
        return extract_text(content)

    chunks: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            text = get_string(block.get("text"))
        elif block_type == "thinking":
            text = get_string(block.get("thinking"))
        else:
            continue
        if text:
            chunks.append(text)
    return "\n".join(chunks).strip() or None


def fan_out_blocks(base: SessionEvent, content: Any) -> list[SessionEvent]:
    """Derive tool events from the content blocks of one message.

    tool_use blocks become tool_call events whose parent is the base event;
    tool_result blocks become tool_result events correlated by tool_use_id.
    Derived events carry no tokens or cost so usage is counted once.
    """
    if not isinstance(content, list):
        return []

    events: list[SessionEvent] = []
    for index, block in enumerate(content):
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "tool_use":
            events.append(
                replace(
                    base,
                    id=f"{base.id}:tool_use:{index}",
                    kind="tool_call",
                    text=None,
                    tool_name=get_string(block.get("name")),
                    tool_input=to_json(block.get("input")),
                    tool_output=None,
                    parent_id=base.id,
                    message_id=get_string(block.get("id")) or base.message_id,
                    tokens=None,
                    cost_usd=None,
                )
            )
        elif block_type == "tool_result":
            tool_use_id = get_string(block.get("tool_use_id"))
            events.append(
                replace(
                    base,
                    id=f"{base.id}:tool_result:{index}",
                    kind="tool_result",
                    text=None,
                    tool_name=None,
                    tool_input=None,
                    tool_output=extract_text(block.get("content")),
                    parent_id=tool_use_id or base.parent_id,
                    message_id=tool_use_id or base.message_id,
                    tokens=None,
                    cost_usd=None,
                )
            )
    return events
