"""Parser for GitHub Copilot CLI session transcripts.

Copilot CLI stores conversations as JSONL event logs at:
    ~/.copilot/session-state/<session-id>.jsonl

Each line is {id, parentId, timestamp, type, data} where type is dotted:
- session.start: data.sessionId, data.copilotVersion, data.context.{cwd, branch}
- session.model_change: data.newModel
- user.message: data.content
- assistant.message: data.content, data.messageId, optional token counts
- tool.execution_start: data.toolCallId, data.toolName, data.arguments
- tool.execution_complete: data.toolCallId, data.success, data.result
- assistant.turn_start / assistant.turn_end / session.truncation: bookkeeping
"""

from pathlib import Path
from typing import Any

from session_meter.models import FileCandidate, RawParsedSession, SessionEvent, SessionMetadata
from session_meter.processor.normalizer import extract_text, normalize_token_usage, resolve_event_kind
from session_meter.processor.parsers.base import (
    Parser,
    as_record,
    detect_delta,
    first_string,
    get_string,
    parse_jsonl_records,
    read_text,
    to_json,
)

EVENT_KINDS = {
    "user.message": "user",
    "assistant.message": "assistant",
    "assistant.message_delta": "assistant",
    "tool.execution_start": "tool_call",
    "tool.execution_complete": "tool_result",
    "session.error": "error",
}


class CopilotParser(Parser):
    """Parser for Copilot CLI JSONL event logs."""

    source_name = "copilot"

    def parse(self, candidate: FileCandidate) -> RawParsedSession | None:
        """Parse a Copilot CLI event log.

        Args:
            candidate: The discovered event log

        Returns:
            RawParsedSession, or None if no dotted Copilot events were found
        """
        try:
            records = parse_jsonl_records(read_text(candidate.path))
        except OSError:
            return None

        records = [r for r in records if "." in (get_string(r.get("type")) or "")]
        if not records:
            return None

        session_id = self._session_id(records) or Path(candidate.path).stem

        cwd: str | None = None
        git_branch: str | None = None
        cli_version: str | None = None
        model: str | None = None
        events: list[SessionEvent] = []

        for index, record in enumerate(records):
            record_type = record["type"]
            data = as_record(record.get("data")) or {}

            if record_type == "session.start":
                context = as_record(data.get("context")) or {}
                cwd = cwd or first_string(context.get("cwd"), data.get("cwd"))
                git_branch = git_branch or get_string(context.get("branch"))
                cli_version = cli_version or first_string(data.get("copilotVersion"), data.get("version"))
                model = model or get_string(data.get("selectedModel"))
            elif record_type == "session.model_change":
                model = get_string(data.get("newModel")) or model

            events.append(self._event(record, record_type, data, session_id, index, model))

        metadata = SessionMetadata(cwd=cwd, git_branch=git_branch, model=model, cli_version=cli_version)
        return self.build_session(candidate, session_id, metadata, events)

    def _event(
        self,
        record: dict[str, Any],
        record_type: str,
        data: dict[str, Any],
        session_id: str,
        index: int,
        model: str | None,
    ) -> SessionEvent:
        kind = EVENT_KINDS.get(record_type) or resolve_event_kind(record_type, None)
        tool_call_id = get_string(data.get("toolCallId"))

        text = None
        if kind in ("user", "assistant", "error", "meta"):
            text = extract_text(data.get("content") if data.get("content") is not None else data.get("message"))

        tool_output = None
        if kind == "tool_result":
            tool_output = extract_text(data.get("result") if data.get("result") is not None else data.get("error"))

        return SessionEvent(
            id=first_string(record.get("id")) or f"{session_id}:copilot:{index}",
            session_id=session_id,
            kind=kind,
            timestamp=record.get("timestamp"),
            role=kind if kind in ("user", "assistant") else None,
            text=text,
            tool_name=get_string(data.get("toolName")) if kind == "tool_call" else None,
            tool_input=to_json(data.get("arguments")) if kind == "tool_call" else None,
            tool_output=tool_output,
            model=first_string(data.get("model"), model) if kind == "assistant" else None,
            parent_id=tool_call_id if kind == "tool_result" else get_string(record.get("parentId")),
            message_id=tool_call_id or get_string(data.get("messageId")),
            is_delta=detect_delta(record_type, data),
            tokens=normalize_token_usage(data.get("usage") or data) if kind == "assistant" else None,
        )

    def _session_id(self, records: list[dict[str, Any]]) -> str | None:
        for record in records:
            if record.get("type") == "session.start":
                session_id = get_string((as_record(record.get("data")) or {}).get("sessionId"))
                if session_id:
                    return session_id
        return None
