"""Typesense indexer for session-meter events and sessions."""

from typing import Any

import typesense
from typesense.exceptions import ObjectNotFound

from session_meter.config import TypesenseConfig
from session_meter.logging import get_logger
from session_meter.models import Session, SessionEvent, iso_to_epoch_seconds

logger = get_logger("indexer")

EVENTS_SCHEMA: dict[str, Any] = {
    "name": "events",
    "fields": [
        {"name": "id", "type": "string"},
        {"name": "session_id", "type": "string", "facet": True},
        {"name": "source", "type": "string", "facet": True},
        {"name": "kind", "type": "string", "facet": True},
        {"name": "model", "type": "string", "facet": True},
        {"name": "repo_name", "type": "string", "facet": True, "optional": True},
        {"name": "ts", "type": "int64", "sort": True},
        {"name": "text", "type": "string"},
        {"name": "tool_name", "type": "string", "facet": True, "optional": True},
    ],
    "default_sorting_field": "ts",
}

SESSIONS_SCHEMA: dict[str, Any] = {
    "name": "sessions",
    "fields": [
        {"name": "id", "type": "string"},
        {"name": "source", "type": "string", "facet": True},
        {"name": "model", "type": "string", "facet": True},
        {"name": "repo_name", "type": "string", "facet": True, "optional": True},
        {"name": "cwd", "type": "string"},
        {"name": "title", "type": "string"},
        {"name": "start_ts", "type": "int64", "sort": True},
        {"name": "end_ts", "type": "int64", "sort": True},
        {"name": "message_count", "type": "int32"},
        {"name": "total_tokens", "type": "int64"},
        {"name": "total_cost_usd", "type": "float"},
    ],
    "default_sorting_field": "end_ts",
}


def event_document(event: SessionEvent, session: Session) -> dict[str, Any]:
    """Build the Typesense document for one canonical event.

    Document ids must be unique across sessions, and canonical event ids
    already carry their session id.
    """
    text = event.text or event.tool_output or event.tool_input or ""
    return {
        "id": event.id,
        "session_id": session.id,
        "source": session.source,
        "kind": event.kind,
        "model": event.model or session.model or "unknown",
        "repo_name": session.repo_name or "",
        "ts": iso_to_epoch_seconds(event.timestamp or session.start_time),
        "text": text,
        "tool_name": event.tool_name or "",
    }


def _filter_by(filters: dict[str, Any] | None, fields: tuple[str, ...], ts_field: str, ts_end_field: str) -> str | None:
    if not filters:
        return None

    filter_parts = [f"{name}:={filters[name]}" for name in fields if name in filters]
    if "start_ts" in filters:
        filter_parts.append(f"{ts_field}:>={filters['start_ts']}")
    if "end_ts" in filters:
        filter_parts.append(f"{ts_end_field}:<={filters['end_ts']}")
    return " && ".join(filter_parts) or None


class TypesenseIndexer:
    """Indexes events and sessions in Typesense.

    Handles collection creation/verification and document upserts.
    """

    def __init__(self, config: TypesenseConfig) -> None:
        """Initialize indexer with Typesense configuration.

        Args:
            config: TypesenseConfig with connection details
        """
        self._config = config
        self._client = typesense.Client({
            "nodes": [{
                "host": config.host,
                "port": str(config.port),
                "protocol": config.protocol,
            }],
            "api_key": config.api_key,
            "connection_timeout_seconds": 5,
        })

    @property
    def client(self) -> typesense.Client:
        """Access the underlying Typesense client."""
        return self._client

    def ensure_collections(self) -> None:
        """Create the 'events' and 'sessions' collections if missing."""
        self._ensure_collection(EVENTS_SCHEMA)
        self._ensure_collection(SESSIONS_SCHEMA)

    def _ensure_collection(self, schema: dict[str, Any]) -> None:
        name = schema["name"]
        try:
            self._client.collections[name].retrieve()
            logger.debug("Collection already exists: collection=%s", name)
        except ObjectNotFound:
            self._client.collections.create(schema)
            logger.info("Created collection: collection=%s", name)

    def upsert_events(self, session: Session, events: list[SessionEvent]) -> dict[str, int]:
        """Index the events of one session.

        Events without any text are skipped; there is nothing to search.

        Args:
            session: The session the events belong to
            events: Canonical events of that session

        Returns:
            Dict with counts: {"success": N, "failed": M}
        """
        documents = [event_document(event, session) for event in events]
        documents = [doc for doc in documents if doc["text"]]
        if not documents:
            return {"success": 0, "failed": 0}

        results = self._client.collections["events"].documents.import_(
            documents,
            {"action": "upsert"},
        )

        success = 0
        failed = 0
        for result in results:
            if result.get("success", False):
                success += 1
            else:
                failed += 1
                logger.debug("Failed to index event: error=%s", result.get("error", "unknown"))

        if failed > 0:
            logger.warning(
                "Some events failed to index: session_id=%s success=%d failed=%d", session.id, success, failed
            )

        return {"success": success, "failed": failed}

    def update_session(self, session: Session) -> bool:
        """Update or create a session document.

        Returns:
            True if successful, False otherwise
        """
        doc = session.to_typesense_doc()

        try:
            self._client.collections["sessions"].documents.upsert(doc)
            return True
        except Exception:
            logger.exception("Failed to update session: id=%s", doc.get("id", "unknown"))
            return False

    def search_events(
        self,
        query: str,
        page: int = 1,
        per_page: int = 10,
        filters: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Search event text.

        Args:
            query: Search query string (use "*" for all)
            page: Page number (1-based)
            per_page: Number of results per page
            filters: dictionary of filters (source, session_id, kind, model, repo_name, start_ts, end_ts)

        Returns:
            Search results from Typesense
        """
        search_params: dict[str, Any] = {
            "q": query,
            "query_by": "text",
            "page": page,
            "per_page": per_page,
            "sort_by": "ts:desc",
        }
        filter_by = _filter_by(filters, ("source", "session_id", "kind", "model", "repo_name"), "ts", "ts")
        if filter_by:
            search_params["filter_by"] = filter_by

        return self._client.collections["events"].documents.search(search_params)

    def search_sessions(
        self,
        query: str,
        page: int = 1,
        per_page: int = 10,
        filters: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Search session titles and working directories.

        Args:
            query: Search query string (use "*" for all)
            page: Page number (1-based)
            per_page: Number of results per page
            filters: dictionary of filters (source, model, repo_name, start_ts, end_ts)

        Returns:
            Search results from Typesense
        """
        search_params: dict[str, Any] = {
            "q": query,
            "query_by": "title,cwd",
            "page": page,
            "per_page": per_page,
            "sort_by": "end_ts:desc",
        }
        # Sessions active in the window: ended after its start, started before its end
        filter_by = _filter_by(filters, ("source", "model", "repo_name"), "end_ts", "start_ts")
        if filter_by:
            search_params["filter_by"] = filter_by

        return self._client.collections["sessions"].documents.search(search_params)
