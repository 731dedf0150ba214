"""Parser for Gemini CLI session transcripts.

Gemini CLI stores conversations as JSON files at:
    ~/.gemini/tmp/<project_hash>/chats/session-*.json

Each file is a JSON object with:
- sessionId: UUID session identifier
- projectHash: Hash of the project path
- startTime, lastUpdated: ISO 8601 timestamps
- messages: Array of message objects
  - id: Message UUID
  - timestamp: ISO 8601 timestamp
  - type: "user", "gemini", "info", or "error"
  - content: String content
  - model: Model name (gemini messages)
  - tokens: {input, output, cached, thoughts, tool, total} (gemini messages)
  - toolCalls: Optional array of {id, name, args, result, status, timestamp}
"""

from pathlib import Path
from typing import Any

from session_meter.models import FileCandidate, RawParsedSession, SessionEvent, SessionMetadata, TokenUsage
from session_meter.processor.normalizer import extract_text, to_number
from session_meter.processor.parsers.base import (
    Parser,
    as_record,
    first_string,
    get_string,
    parse_json_or_jsonl,
    read_text,
    to_json,
)

MESSAGE_KINDS = {
    "user": "user",
    "gemini": "assistant",
    "info": "meta",
    "error": "error",
}


class GeminiParser(Parser):
    """Parser for Gemini CLI JSON session files."""

    source_name = "gemini"

    def parse(self, candidate: FileCandidate) -> RawParsedSession | None:
        """Parse a Gemini CLI session file.

        Returns None for documents without a messages array so that the
        generic parser gets a chance at them.

        Args:
            candidate: The discovered session file

        Returns:
            RawParsedSession, or None if the file is not a Gemini session
        """
        try:
            records = parse_json_or_jsonl(candidate.path, read_text(candidate.path))
        except OSError:
            return None
        if not records or records[0].get("_kind") != "json_header":
            return None

        header = records[0]
        session_id = get_string(header.get("sessionId")) or Path(candidate.path).stem

        events: list[SessionEvent] = []
        model: str | None = None
        for index, message in enumerate(records[1:]):
            model = model or get_string(message.get("model"))
            events.extend(self._message_events(message, session_id, index))

        metadata = SessionMetadata(cwd=get_string(header.get("cwd")), model=model)
        return self.build_session(candidate, session_id, metadata, events)

    def _message_events(self, message: dict[str, Any], session_id: str, index: int) -> list[SessionEvent]:
        """Build the message event plus a call/result pair per tool call."""
        message_type = get_string(message.get("type")) or ""
        kind = MESSAGE_KINDS.get(message_type, "meta")
        message_id = get_string(message.get("id")) or f"{session_id}:gemini:{index}"

        base = SessionEvent(
            id=message_id,
            session_id=session_id,
            kind=kind,
            timestamp=message.get("timestamp"),
            role="assistant" if kind == "assistant" else message_type or None,
            text=extract_text(message.get("content")),
            model=get_string(message.get("model")),
            message_id=message_id,
            tokens=self._tokens(message.get("tokens")),
        )
        events = [base]

        tool_calls = message.get("toolCalls")
        if not isinstance(tool_calls, list):
            return events

        for call_index, call in enumerate(tool_calls):
            call = as_record(call)
            if call is None:
                continue
            call_id = first_string(call.get("id")) or f"{message_id}:tool:{call_index}"
            timestamp = call.get("timestamp") or message.get("timestamp")
            events.append(
                SessionEvent(
                    id=f"{message_id}:tool_call:{call_index}",
                    session_id=session_id,
                    kind="tool_call",
                    timestamp=timestamp,
                    role="assistant",
                    tool_name=first_string(call.get("name"), call.get("displayName")),
                    tool_input=to_json(call.get("args")),
                    model=base.model,
                    parent_id=message_id,
                    message_id=call_id,
                )
            )
            if call.get("result") is not None or call.get("resultDisplay") is not None:
                events.append(
                    SessionEvent(
                        id=f"{message_id}:tool_result:{call_index}",
                        session_id=session_id,
                        kind="tool_result",
                        timestamp=timestamp,
                        role="tool",
                        tool_output=self._tool_output(call),
                        model=base.model,
                        parent_id=call_id,
                        message_id=call_id,
                    )
                )
        return events

    def _tokens(self, value: Any) -> TokenUsage | None:
        """Map Gemini token counts; input includes the cached prompt tokens."""
        tokens = as_record(value)
        if tokens is None:
            return None
        cached = int(to_number(tokens.get("cached")) or 0)
        return TokenUsage(
            input_tokens=int(to_number(tokens.get("input")) or 0) - cached,
            output_tokens=int(to_number(tokens.get("output")) or 0),
            cache_read_tokens=cached,
            reasoning_tokens=int(to_number(tokens.get("thoughts")) or 0),
        )

    def _tool_output(self, call: dict[str, Any]) -> str | None:
        """Text of a tool result: functionResponse outputs, else the display."""
        outputs: list[str] = []
        results = call.get("result")
        if isinstance(results, list):
            for result in results:
                response = (as_record((as_record(result) or {}).get("functionResponse")) or {}).get("response")
                text = extract_text(response)
                if text:
                    outputs.append(text)
        if outputs:
            return "\n".join(outputs)
        return extract_text(call.get("resultDisplay"))
