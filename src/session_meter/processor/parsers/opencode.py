"""Parser for OpenCode (SST) session transcripts.

OpenCode stores conversations in a hierarchical structure at:
    ~/.local/share/opencode/storage/

Directory layout:
    session/<projectHash>/ses_<id>.json    - Session metadata
    message/<sessionID>/msg_<id>.json      - Message metadata
    part/<messageID>/prt_<id>.json         - Content parts

Session file contains:
- id: Session identifier (e.g., "ses_419ccecd4ffe0HogypcacqYZnm")
- directory: Working directory path
- title: Display title
- version: OpenCode version
- time.created / time.updated: timestamps (milliseconds)

Message file contains:
- id, sessionID, role ("user" or "assistant")
- time.created / time.completed: timestamps (milliseconds)
- modelID, providerID: model used for assistant messages
- cost: USD cost reported by OpenCode
- tokens: {input, output, reasoning, cache: {read, write}}

Part file contains various types:
- TextPart: {type: "text", text: string}
- ReasoningPart: {type: "reasoning", text: string}
- ToolPart: {type: "tool", callID, tool, state: {input, output, status, time}}
- StepFinish, patch, file, snapshot: bookkeeping, no events

The parser is handed the session file and reconstructs the conversation
from the associated message and part files.
"""

import json
from pathlib import Path
from typing import Any

from session_meter.models import FileCandidate, RawParsedSession, SessionEvent, SessionMetadata
from session_meter.processor.normalizer import extract_text, normalize_token_usage, resolve_event_kind, to_number
from session_meter.processor.parsers.base import Parser, as_record, first_string, get_string, to_json


class OpenCodeParser(Parser):
    """Parser for OpenCode JSON session files.

    OpenCode uses a hierarchical file structure with separate files for
    sessions, messages, and parts. This parser reconstructs conversations
    by reading the session file and then loading associated messages and parts.
    """

    source_name = "opencode"

    def parse(self, candidate: FileCandidate) -> RawParsedSession | None:
        """Parse an OpenCode session and its messages.

        Args:
            candidate: The discovered session file (ses_*.json)

        Returns:
            RawParsedSession, or None if the session has no messages
        """
        path = Path(candidate.path)
        session_data = self._load_json(path)
        if session_data is None:
            return None

        session_id = get_string(session_data.get("id")) or path.stem
        storage_root = self._find_storage_root(path)

        events: list[SessionEvent] = []
        model: str | None = None
        message_dir = storage_root / "message" / session_id
        if message_dir.is_dir():
            for msg_file in sorted(message_dir.glob("*.json")):
                msg_data = self._load_json(msg_file)
                if msg_data is None:
                    continue
                if msg_data.get("role") == "assistant":
                    model = model or get_string(msg_data.get("modelID"))
                events.extend(self._message_events(msg_data, msg_file, storage_root, session_id))

        metadata = SessionMetadata(
            cwd=get_string(session_data.get("directory")),
            model=model,
            cli_version=get_string(session_data.get("version")),
            title=get_string(session_data.get("title")),
        )
        return self.build_session(candidate, session_id, metadata, events)

    def _load_json(self, path: Path) -> dict[str, Any] | None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return as_record(json.load(f))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError):
            return None

    def _find_storage_root(self, session_path: Path) -> Path:
        """Find the storage root directory from a session file path.

        session_path: .../storage/session/<projectHash>/ses_*.json
        storage_root: .../storage/
        """
        parts = session_path.parts
        if "session" in parts:
            session_idx = len(parts) - 1 - parts[::-1].index("session")
            if session_idx > 0:
                return Path(*parts[:session_idx])
        return session_path.parent.parent.parent

    def _message_events(
        self,
        msg_data: dict[str, Any],
        msg_path: Path,
        storage_root: Path,
        session_id: str,
    ) -> list[SessionEvent]:
        """Build the message event plus call/result pairs for its tool parts.

        Args:
            msg_data: Parsed message JSON
            msg_path: Path to the message file
            storage_root: Root storage directory
            session_id: Session identifier

        Returns:
            Events for this message in part order
        """
        message_id = get_string(msg_data.get("id")) or msg_path.stem
        role = get_string(msg_data.get("role"))
        time_data = as_record(msg_data.get("time")) or {}
        model = get_string(msg_data.get("modelID"))

        # OpenCode reports 0 for subscription providers; let pricing fill those in
        cost = to_number(msg_data.get("cost"))
        if cost is not None and cost <= 0:
            cost = None

        parts = self._load_parts(storage_root, message_id)
        text_chunks = [
            part["text"] for part in parts if part.get("type") == "text" and get_string(part.get("text"))
        ]

        base = SessionEvent(
            id=message_id,
            session_id=session_id,
            kind=resolve_event_kind(None, role),
            timestamp=time_data.get("created"),
            role=role,
            text="\n\n".join(text_chunks).strip() or None,
            model=model,
            message_id=message_id,
            tokens=normalize_token_usage(msg_data.get("tokens")),
            cost_usd=cost,
        )
        events = [base]

        for index, part in enumerate(parts):
            if part.get("type") != "tool":
                continue
            state = as_record(part.get("state")) or {}
            state_time = as_record(state.get("time")) or {}
            call_id = first_string(part.get("callID"), part.get("id")) or f"{message_id}:tool:{index}"
            events.append(
                SessionEvent(
                    id=f"{message_id}:tool_call:{index}",
                    session_id=session_id,
                    kind="tool_call",
                    timestamp=state_time.get("start") or time_data.get("created"),
                    role="assistant",
                    tool_name=get_string(part.get("tool")),
                    tool_input=to_json(state.get("input")),
                    model=model,
                    parent_id=message_id,
                    message_id=call_id,
                )
            )
            if state.get("output") is not None or state.get("status") in ("completed", "error"):
                events.append(
                    SessionEvent(
                        id=f"{message_id}:tool_result:{index}",
                        session_id=session_id,
                        kind="tool_result",
                        timestamp=state_time.get("end") or time_data.get("completed") or time_data.get("created"),
                        role="tool",
                        tool_output=extract_text(state.get("output") or state.get("error")),
                        model=model,
                        parent_id=call_id,
                        message_id=call_id,
                    )
                )
        return events

    def _load_parts(self, storage_root: Path, message_id: str) -> list[dict[str, Any]]:
        """Load the part files of a message in filename order."""
        parts_dir = storage_root / "part" / message_id
        if not parts_dir.is_dir():
            return []

        parts: list[dict[str, Any]] = []
        for part_file in sorted(parts_dir.glob("*.json")):
            part = self._load_json(part_file)
            if part is not None:
                parts.append(part)
        return parts
