"""Parser for Claude Code session transcripts.

Claude Code stores conversations as JSONL files at:
    ~/.claude/projects/<encoded-project-path>/<session-id>.jsonl
    ~/.claude/projects/<encoded-project-path>/<session-id>/subagents/agent-*.jsonl

Each line is a JSON object with:
- type: "user", "assistant", "summary", "system", "progress", ...
- uuid / parentUuid: record identity and threading
- message.role, message.model, message.id, message.usage
- message.content: string or array of text/thinking/tool_use/tool_result blocks
- timestamp: ISO 8601 timestamp
- sessionId, cwd, gitBranch, version: session metadata
- costUSD: optional record-level cost
"""

from pathlib import Path
from typing import Any

from session_meter.models import FileCandidate, RawParsedSession, SessionEvent, SessionMetadata
from session_meter.processor.normalizer import extract_text, normalize_token_usage, resolve_event_kind
from session_meter.processor.parsers.base import (
    Parser,
    as_record,
    fan_out_blocks,
    get_string,
    message_block_text,
    parse_jsonl_records,
    read_text,
    to_number,
)


class ClaudeParser(Parser):
    """Parser for Claude Code JSONL transcript files."""

    source_name = "claude"

    def parse(self, candidate: FileCandidate) -> RawParsedSession | None:
        """Parse a Claude Code JSONL file.

        Args:
            candidate: The discovered transcript file

        Returns:
            RawParsedSession, or None if the file holds no records
        """
        try:
            records = parse_jsonl_records(read_text(candidate.path))
        except OSError:
            return None
        if not records:
            return None

        path = Path(candidate.path)
        session_id = self._first(records, lambda r: r.get("sessionId")) or path.stem
        if path.parent.name == "subagents" and session_id != path.stem:
            # Subagent transcripts carry their parent's sessionId
            session_id = f"{session_id}:{path.stem}"

        metadata = SessionMetadata(
            cwd=self._first(records, lambda r: r.get("cwd")),
            git_branch=self._first(records, lambda r: r.get("gitBranch")),
            model=self._first(records, lambda r: (as_record(r.get("message")) or {}).get("model")),
            cli_version=self._first(records, lambda r: r.get("version")),
            title=self._first(records, lambda r: r.get("summary") if r.get("type") == "summary" else None),
        )

        events: list[SessionEvent] = []
        for index, record in enumerate(records):
            events.extend(self._record_events(record, session_id, index))

        return self.build_session(candidate, session_id, metadata, events)

    def _first(self, records: list[dict[str, Any]], accessor) -> str | None:
        """First non-blank string an accessor yields across records."""
        for record in records:
            value = get_string(accessor(record))
            if value:
                return value
        return None

    def _record_events(self, record: dict[str, Any], session_id: str, index: int) -> list[SessionEvent]:
        """Build the base event for a record plus its tool fan-out."""
        message = as_record(record.get("message"))
        content = message.get("content") if message else None
        record_type = get_string(record.get("type"))
        role = get_string((message or {}).get("role")) or get_string(record.get("role"))

        text = None
        if record_type in ("user", "assistant"):
            text = message_block_text(content)
        if not text:
            text = extract_text(content if content is not None else message or record.get("summary") or record.get("data"))

        usage = as_record((message or {}).get("usage"))
        tokens = None
        if usage is not None:
            tokens = normalize_token_usage(
                {
                    "input_tokens": usage.get("input_tokens"),
                    "output_tokens": usage.get("output_tokens"),
                    "cache_read_input_tokens": usage.get("cache_read_input_tokens"),
                    "cache_creation_input_tokens": usage.get("cache_creation_input_tokens"),
                }
            )

        message_id = get_string((message or {}).get("id"))
        base = SessionEvent(
            id=get_string(record.get("uuid")) or message_id or f"{session_id}:claude:{index}",
            session_id=session_id,
            kind=resolve_event_kind(record_type, role),
            timestamp=record.get("timestamp"),
            role=role,
            text=text,
            model=get_string((message or {}).get("model")),
            parent_id=get_string(record.get("parentUuid")),
            message_id=message_id,
            tokens=tokens,
            # Record-level cost belongs to the base event only
            cost_usd=to_number(record.get("costUSD")),
        )

        return [base] + fan_out_blocks(base, content)
