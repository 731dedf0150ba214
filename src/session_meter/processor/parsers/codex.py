"""Parser for Codex (OpenAI) session transcripts.

Codex stores conversations as JSONL rollout files at:
    $CODEX_HOME/sessions/<year>/<month>/<day>/rollout-*.jsonl
    (CODEX_HOME defaults to ~/.codex)

Each line is a JSON object with a type field:
- session_meta: Session metadata (id, cwd, git, cli_version, model_provider)
- turn_context: Turn-level context (model, cwd)
- response_item: Messages, tool calls and tool outputs
- event_msg: user_message, agent_message, token_count and other notifications

Tool calls and their outputs arrive on separate lines and correlate through
payload.call_id. token_count events report running totals, which are turned
into per-event deltas.
"""

import re
from pathlib import Path
from typing import Any

from session_meter.models import FileCandidate, RawParsedSession, SessionEvent, SessionMetadata, TokenUsage
from session_meter.processor.normalizer import extract_text, normalize_token_usage, resolve_event_kind
from session_meter.processor.parsers.base import (
    CumulativeUsageTracker,
    Parser,
    as_record,
    detect_delta,
    first_string,
    get_string,
    parse_jsonl_records,
    read_text,
    to_json,
)

ROLLOUT_NAME = re.compile(r"^rollout-\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-(.+)\.jsonl$")

TOOL_CALL_TYPES = ("function_call", "custom_tool_call", "web_search_call")
TOOL_OUTPUT_TYPES = ("function_call_output", "custom_tool_call_output", "web_search_call_output")


class CodexParser(Parser):
    """Parser for Codex JSONL rollout files."""

    source_name = "codex"

    def parse(self, candidate: FileCandidate) -> RawParsedSession | None:
        """Parse a Codex rollout file.

        Args:
            candidate: The discovered rollout file

        Returns:
            RawParsedSession, or None if the file holds no records
        """
        try:
            records = parse_jsonl_records(read_text(candidate.path))
        except OSError:
            return None
        if not records:
            return None

        session_id = self._extract_session_id(candidate.path, records)
        state = _CodexState(session_id)

        for line_index, record in enumerate(records):
            state.events.append(state.handle(record, line_index))

        metadata = SessionMetadata(
            cwd=state.cwd,
            git_branch=state.git_branch,
            model=state.model,
            cli_version=state.cli_version,
            title=state.title,
        )
        return self.build_session(candidate, session_id, metadata, state.events)

    def _extract_session_id(self, path: str, records: list[dict[str, Any]]) -> str:
        """Session id from session_meta, else the rollout filename, else the stem.

        Filename format: rollout-2026-01-22T10-52-33-019be668-4c23-7792-8b9c-7995e5bfdeee.jsonl
        """
        for record in records:
            if record.get("type") == "session_meta":
                payload_id = get_string((as_record(record.get("payload")) or {}).get("id"))
                if payload_id:
                    return payload_id

        name = Path(path).name
        match = ROLLOUT_NAME.match(name)
        if match:
            return match.group(1)
        return Path(path).stem


class _CodexState:
    """Per-file parse state: metadata found so far and the usage tracker."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.cwd: str | None = None
        self.git_branch: str | None = None
        self.model: str | None = None
        self.cli_version: str | None = None
        self.title: str | None = None
        self.usage = CumulativeUsageTracker()
        self.events: list[SessionEvent] = []

    def handle(self, record: dict[str, Any], line_index: int) -> SessionEvent:
        record_type = get_string(record.get("type"))
        payload = as_record(record.get("payload"))
        payload_type = get_string((payload or {}).get("type"))

        if record_type == "session_meta":
            return self._session_meta(record, payload, line_index)
        if record_type == "turn_context":
            self.model = get_string((payload or {}).get("model")) or self.model
            self.cwd = get_string((payload or {}).get("cwd")) or self.cwd
            return self._event(record, line_index, "meta", scope=record_type, text=extract_text(payload))
        if record_type == "response_item":
            return self._response_item(record, payload, payload_type, line_index)
        if record_type == "event_msg":
            return self._event_msg(record, payload, payload_type, line_index)

        return self._event(
            record,
            line_index,
            resolve_event_kind(record_type, None),
            scope=record_type,
            text=_codex_text(record, payload),
            is_delta=detect_delta(record_type, payload or record),
        )

    def _session_meta(self, record: dict[str, Any], payload: dict[str, Any] | None, line_index: int) -> SessionEvent:
        payload = payload or {}
        self.cwd = self.cwd or get_string(payload.get("cwd"))
        self.git_branch = self.git_branch or get_string((as_record(payload.get("git")) or {}).get("branch"))
        self.cli_version = self.cli_version or get_string(payload.get("cli_version"))
        self.model = self.model or get_string(payload.get("model_provider"))
        return self._event(
            record,
            line_index,
            "meta",
            scope="session_meta",
            text=extract_text(payload),
            message_id=get_string(payload.get("id")),
        )

    def _response_item(
        self,
        record: dict[str, Any],
        payload: dict[str, Any] | None,
        payload_type: str | None,
        line_index: int,
    ) -> SessionEvent:
        payload = payload or {}
        is_delta = detect_delta(payload_type, payload)

        if payload_type == "message":
            role = get_string(payload.get("role"))
            text = _codex_text(record, payload)
            if not self.title and role == "user" and text:
                self.title = text[:200]
            return self._event(
                record,
                line_index,
                resolve_event_kind(payload_type, role),
                scope=payload_type,
                role=role,
                text=text,
                is_delta=is_delta,
            )

        if payload_type in TOOL_CALL_TYPES:
            tool_input = payload.get("arguments") or payload.get("input") or payload.get("query")
            return self._event(
                record,
                line_index,
                "tool_call",
                scope=payload_type,
                role="assistant",
                tool_name=get_string(payload.get("name")),
                tool_input=to_json(tool_input),
                message_id=first_string(payload.get("call_id"), payload.get("id")),
                is_delta=is_delta,
            )

        if payload_type in TOOL_OUTPUT_TYPES:
            call_id = get_string(payload.get("call_id"))
            output = payload.get("output")
            return self._event(
                record,
                line_index,
                "tool_result",
                scope=payload_type,
                role="tool",
                tool_output=extract_text(output if output is not None else payload.get("result")),
                parent_id=call_id,
                message_id=call_id or get_string(payload.get("id")),
                is_delta=is_delta,
            )

        usage = payload.get("usage") or payload.get("tokens") or (as_record(payload.get("data")) or {}).get("usage")
        return self._event(
            record,
            line_index,
            resolve_event_kind(payload_type, None),
            scope=payload_type,
            text=_codex_text(record, payload),
            is_delta=is_delta,
            tokens=normalize_token_usage(usage),
        )

    def _event_msg(
        self,
        record: dict[str, Any],
        payload: dict[str, Any] | None,
        payload_type: str | None,
        line_index: int,
    ) -> SessionEvent:
        payload = payload or {}

        if payload_type == "token_count":
            tokens, cost = self.usage.consume(payload)
            return self._event(
                record,
                line_index,
                "meta",
                scope=payload_type,
                role="meta",
                text=first_string(payload.get("text"), payload.get("message")) or _codex_text(record, payload),
                tokens=tokens,
                cost_usd=cost,
            )

        if payload_type in ("user_message", "agent_message"):
            kind = "user" if payload_type == "user_message" else "assistant"
            text = get_string(payload.get("message")) or extract_text(payload)
            if kind == "user" and not self.title and text:
                self.title = text[:200]
            return self._event(record, line_index, kind, scope=payload_type, role=kind, text=text)

        return self._event(
            record,
            line_index,
            resolve_event_kind(payload_type, None),
            scope=payload_type,
            text=first_string(payload.get("text"), payload.get("message")) or _codex_text(record, payload),
        )

    def _event(
        self,
        record: dict[str, Any],
        line_index: int,
        kind: str,
        scope: str | None = None,
        role: str | None = None,
        text: str | None = None,
        tool_name: str | None = None,
        tool_input: str | None = None,
        tool_output: str | None = None,
        parent_id: str | None = None,
        message_id: str | None = None,
        is_delta: bool = False,
        tokens: TokenUsage | None = None,
        cost_usd: float | None = None,
    ) -> SessionEvent:
        """Build one event.

        Ids take the form <session>:<kind>:<scope>:<message-or-line>:<line>,
        so a call and its output sharing a call_id still get distinct ids.
        """
        payload = as_record(record.get("payload")) or {}
        message_id = message_id or first_string(payload.get("id"), payload.get("call_id"))
        scope = scope or kind

        return SessionEvent(
            id=f"{self.session_id}:{kind}:{scope}:{message_id or line_index}:{line_index}",
            session_id=self.session_id,
            kind=kind,
            timestamp=record.get("timestamp"),
            role=role or first_string(payload.get("role"), record.get("role")),
            text=text,
            tool_name=tool_name,
            tool_input=tool_input,
            tool_output=tool_output,
            model=self.model,
            parent_id=parent_id,
            message_id=message_id,
            is_delta=is_delta,
            tokens=tokens,
            cost_usd=cost_usd,
        )


def _codex_text(record: dict[str, Any], payload: dict[str, Any] | None) -> str | None:
    """Text from the payload's content/message/text/summary, else the record."""
    if payload:
        for key in ("content", "message", "text", "summary"):
            if payload.get(key) is not None:
                text = extract_text(payload[key])
                break
        else:
            text = extract_text(payload)
        if text:
            return text

    for key in ("content", "text", "message"):
        if record.get(key) is not None:
            return extract_text(record[key])
    return extract_text(record)
