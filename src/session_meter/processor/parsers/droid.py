"""Parser for Factory Droid session transcripts.

Droid stores conversations as JSONL files at:
    ~/.factory/sessions/<session-id>.jsonl

Each line is a JSON object with a type field:
- session_start: Session header (id, title, cwd, version)
- message: One chat message {id, timestamp, parentId, message: {role, content, model, usage}}
  where content is a string or Claude-style blocks (text, thinking, tool_use, tool_result)
- todo_state and others: bookkeeping records
"""

from pathlib import Path
from typing import Any

from session_meter.models import FileCandidate, RawParsedSession, SessionEvent, SessionMetadata
from session_meter.processor.normalizer import extract_text, normalize_token_usage, resolve_event_kind
from session_meter.processor.parsers.base import (
    Parser,
    as_record,
    fan_out_blocks,
    first_string,
    get_string,
    message_block_text,
    parse_jsonl_records,
    read_text,
    to_number,
)


class DroidParser(Parser):
    """Parser for Factory Droid JSONL session files."""

    source_name = "droid"

    def parse(self, candidate: FileCandidate) -> RawParsedSession | None:
        """Parse a Droid session file.

        Files without a session_start header are left to the generic parser.

        Args:
            candidate: The discovered session file

        Returns:
            RawParsedSession, or None if the file is not a Droid session
        """
        try:
            records = parse_jsonl_records(read_text(candidate.path))
        except OSError:
            return None

        header = next((r for r in records if r.get("type") == "session_start"), None)
        if header is None:
            return None

        session_id = first_string(header.get("id"), header.get("sessionId")) or Path(candidate.path).stem

        model: str | None = get_string(header.get("model"))
        events: list[SessionEvent] = []
        for index, record in enumerate(records):
            if record is header:
                continue
            event_list = self._record_events(record, session_id, index)
            for event in event_list:
                model = model or (event.model if event.kind == "assistant" else None)
            events.extend(event_list)

        metadata = SessionMetadata(
            cwd=first_string(header.get("cwd"), header.get("workingDirectory")),
            git_branch=get_string(header.get("gitBranch")),
            model=model,
            cli_version=get_string(header.get("version")),
            title=first_string(header.get("title"), header.get("sessionTitle")),
        )
        return self.build_session(candidate, session_id, metadata, events)

    def _record_events(self, record: dict[str, Any], session_id: str, index: int) -> list[SessionEvent]:
        record_type = get_string(record.get("type"))
        message = as_record(record.get("message"))

        if record_type != "message" or message is None:
            return [
                SessionEvent(
                    id=first_string(record.get("id")) or f"{session_id}:droid:{index}",
                    session_id=session_id,
                    kind=resolve_event_kind(record_type, None),
                    timestamp=record.get("timestamp"),
                    text=extract_text(record),
                )
            ]

        role = get_string(message.get("role"))
        content = message.get("content")
        message_id = first_string(record.get("id"), message.get("id"))
        base = SessionEvent(
            id=message_id or f"{session_id}:droid:{index}",
            session_id=session_id,
            kind=resolve_event_kind(None, role),
            timestamp=record.get("timestamp"),
            role=role,
            text=message_block_text(content),
            model=first_string(message.get("model"), record.get("model")),
            parent_id=get_string(record.get("parentId")),
            message_id=message_id,
            tokens=normalize_token_usage(message.get("usage") or record.get("usage")),
            cost_usd=to_number(record.get("costUSD")),
        )
        return [base] + fan_out_blocks(base, content)
