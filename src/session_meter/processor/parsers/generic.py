"""Heuristic parser for any JSON/JSONL transcript.

Used when a source parser returns None or fails. Every record becomes one
event; metadata, usage and cost are read through ordered alias lists.
Records typed token_count (directly or in their payload) carry cumulative
usage snapshots and are converted to deltas.
"""

from pathlib import Path
from typing import Any

from session_meter.models import FileCandidate, RawParsedSession, SessionEvent, SessionMetadata, TokenUsage
from session_meter.processor.normalizer import extract_text, normalize_token_usage, resolve_event_kind
from session_meter.processor.parsers.base import (
    CumulativeUsageTracker,
    Parser,
    UsageTotals,
    as_record,
    detect_delta,
    first_string,
    get_string,
    parse_json_or_jsonl,
    read_text,
    to_json,
    to_number,
)

TOKEN_COUNT_TYPE = "token_count"
COST_KEYS = ("costUSD", "cost_usd", "costUsd", "cost")


class GenericParser(Parser):
    """Parser of last resort for every source."""

    source_name = "generic"

    def parse(self, candidate: FileCandidate) -> RawParsedSession | None:
        """Parse any JSON or JSONL file into one event per record.

        Args:
            candidate: The discovered file; its source is kept on the result

        Returns:
            RawParsedSession, or None if the file holds no records
        """
        try:
            records = parse_json_or_jsonl(candidate.path, read_text(candidate.path))
        except OSError:
            return None
        if not records:
            return None

        session_id = self._session_id(candidate, records)
        tracker = CumulativeUsageTracker()

        cwd = git_branch = model = cli_version = title = None
        events: list[SessionEvent] = []
        for index, record in enumerate(records):
            payload = as_record(record.get("payload"))
            payload_data = payload or {}

            cwd = cwd or first_string(record.get("cwd"), payload_data.get("cwd"))
            git_branch = git_branch or first_string(
                record.get("gitBranch"),
                payload_data.get("gitBranch"),
                (as_record(payload_data.get("git")) or {}).get("branch"),
            )
            model = model or first_string(record.get("model"), payload_data.get("model"))
            cli_version = cli_version or first_string(
                record.get("version"), payload_data.get("cli_version"), payload_data.get("copilotVersion")
            )
            title = title or first_string(record.get("title"), record.get("summary"))

            events.append(self._record_event(record, payload, session_id, index, model, tracker))

        metadata = SessionMetadata(
            cwd=cwd,
            git_branch=git_branch,
            model=model,
            cli_version=cli_version,
            title=title,
        )
        return self.build_session(candidate, session_id, metadata, events)

    def _session_id(self, candidate: FileCandidate, records: list[dict[str, Any]]) -> str:
        for record in records:
            direct = first_string(record.get("sessionId"), record.get("id"), record.get("uuid"))
            if direct:
                return direct
            payload_id = get_string((as_record(record.get("payload")) or {}).get("id"))
            if payload_id:
                return payload_id
        return Path(candidate.path).stem

    def _record_event(
        self,
        record: dict[str, Any],
        payload: dict[str, Any] | None,
        session_id: str,
        index: int,
        model: str | None,
        tracker: CumulativeUsageTracker,
    ) -> SessionEvent:
        payload_data = payload or {}
        message = as_record(record.get("message")) or {}

        raw_type = first_string(record.get("type"), payload_data.get("type"), message.get("type"), record.get("_kind"))
        role = first_string(record.get("role"), payload_data.get("role"), message.get("role"))

        message_id = first_string(
            record.get("messageId"),
            record.get("message_id"),
            record.get("id"),
            payload_data.get("id"),
            payload_data.get("call_id"),
            message.get("id"),
        )
        event_id = (
            first_string(
                record.get("uuid"),
                record.get("id"),
                message.get("id"),
                payload_data.get("id"),
                payload_data.get("call_id"),
                message_id,
            )
            or f"{session_id}:generic:{index}"
        )

        if TOKEN_COUNT_TYPE in (record.get("type"), payload_data.get("type")):
            tokens, cost = tracker.consume(payload if payload is not None else record)
        else:
            tokens, cost = self._usage(record, payload_data, message), self._cost(record, payload_data)

        tool_input = _first_present(
            payload_data.get("arguments"), payload_data.get("input"), record.get("toolInput"), message.get("input")
        )
        tool_output = _first_present(
            payload_data.get("output"), payload_data.get("result"), record.get("toolOutput"), message.get("output")
        )

        return SessionEvent(
            id=event_id,
            session_id=session_id,
            kind=resolve_event_kind(raw_type, role),
            timestamp=_first_present(
                record.get("timestamp"), payload_data.get("timestamp"), message.get("timestamp"), record.get("time")
            ),
            role=role,
            text=self._text(record, payload_data, message),
            tool_name=first_string(payload_data.get("name"), record.get("toolName"), message.get("name")),
            tool_input=to_json(tool_input),
            tool_output=extract_text(tool_output) if tool_output else None,
            model=first_string(record.get("model"), payload_data.get("model"), message.get("model"), model),
            parent_id=first_string(
                record.get("parentId"), record.get("parentUuid"), payload_data.get("parent_id"), message.get("parentId")
            ),
            message_id=message_id,
            is_delta=detect_delta(raw_type, payload),
            tokens=tokens,
            cost_usd=cost,
        )

    def _text(self, record: dict[str, Any], payload: dict[str, Any], message: dict[str, Any]) -> str | None:
        """Text from content, then message, then summary, then text."""
        value = _first_present(
            payload.get("content"),
            payload.get("message"),
            message.get("content"),
            record.get("content"),
            record.get("message") if not message else None,
            record.get("summary"),
            payload.get("summary"),
            record.get("text"),
            record.get("finalText"),
        )
        return extract_text(value)

    def _usage(self, record: dict[str, Any], payload: dict[str, Any], message: dict[str, Any]) -> TokenUsage | None:
        info = as_record(payload.get("info")) or {}
        for candidate in (
            payload.get("tokens"),
            payload.get("usage"),
            message.get("usage"),
            record.get("usage"),
            record.get("tokens"),
        ):
            tokens = normalize_token_usage(candidate)
            if tokens is not None:
                return tokens

        last = as_record(info.get("last_token_usage"))
        if last is not None:
            totals = UsageTotals.from_payload(last)
            return totals.to_token_usage() if totals is not None else None
        return None

    def _cost(self, record: dict[str, Any], payload: dict[str, Any]) -> float | None:
        for source in (record, payload):
            for key in COST_KEYS:
                cost = to_number(source.get(key))
                if cost is not None:
                    return cost
        return None


def _first_present(*values: Any) -> Any:
    """First value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None
