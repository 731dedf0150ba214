"""Daily rollups of canonical sessions.

aggregate_sessions folds sessions into per-date buckets; merge_daily lets
incremental scans replace just the dates they touched. Aggregating all
sessions at once gives the same store as merging aggregates of
date-disjoint subsets.
"""

from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from session_meter.logging import get_logger
from session_meter.models import DailyAggregateEntry, DailyStore, DayStats, Session
from session_meter.processor.normalizer import parse_timestamp

logger = get_logger("aggregator")

DEFAULT_TIMEZONE = "UTC"
UNKNOWN_MODEL = "unknown"


def resolve_timezone(name: str | None) -> ZoneInfo:
    """Resolve an IANA zone name; blank or invalid names fall back to UTC."""
    candidate = (name or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone, using UTC: timezone=%s", candidate)
        return ZoneInfo(DEFAULT_TIMEZONE)


def session_moment(session: Session) -> datetime | None:
    """When a session counts as happening: its start, else its parse time."""
    return parse_timestamp(session.start_time) or parse_timestamp(session.parsed_at)


def date_key(session: Session, zone: ZoneInfo) -> str:
    moment = session_moment(session)
    if moment is not None:
        return moment.astimezone(zone).strftime("%Y-%m-%d")
    fallback = session.start_time or session.parsed_at
    if fallback and len(fallback) >= 10:
        return fallback[:10]
    return datetime.now(timezone.utc).astimezone(zone).strftime("%Y-%m-%d")


def _add(bucket: dict[str, DayStats], key: str, stats: DayStats) -> None:
    bucket[key] = bucket.get(key, DayStats()) + stats


def _sorted(bucket: Mapping[str, DayStats]) -> dict[str, DayStats]:
    return {key: bucket[key] for key in sorted(bucket)}


def aggregate_sessions(sessions: Iterable[Session], timezone_name: str | None = DEFAULT_TIMEZONE) -> DailyStore:
    """Bucket sessions by calendar date in the given time zone.

    Args:
        sessions: Canonical sessions to fold
        timezone_name: IANA zone used to derive date and hour keys

    Returns:
        DailyStore with sorted dates and sorted bucket keys
    """
    zone = resolve_timezone(timezone_name)

    by_date: dict[str, dict[str, dict[str, DayStats]]] = {}
    hour_source: dict[str, dict[str, dict[str, DayStats]]] = {}
    totals: dict[str, DayStats] = {}

    for session in sessions:
        date = date_key(session, zone)
        buckets = by_date.setdefault(date, {"by_source": {}, "by_model": {}, "by_repo": {}, "by_hour": {}})
        stats = DayStats.from_session(session)

        model = session.model.strip() if session.model and session.model.strip() else UNKNOWN_MODEL
        repo = session.repo_name.strip() if session.repo_name else ""

        _add(buckets["by_source"], session.source, stats)
        _add(buckets["by_model"], model, stats)
        if repo:
            _add(buckets["by_repo"], repo, stats)

        moment = session_moment(session)
        if moment is not None:
            hour = moment.astimezone(zone).strftime("%H")
            _add(buckets["by_hour"], hour, stats)
            _add(hour_source.setdefault(date, {}).setdefault(hour, {}), session.source, stats)

        totals[date] = totals.get(date, DayStats()) + stats

    return {
        date: DailyAggregateEntry(
            by_source=_sorted(by_date[date]["by_source"]),
            by_model=_sorted(by_date[date]["by_model"]),
            by_repo=_sorted(by_date[date]["by_repo"]),
            by_hour=_sorted(by_date[date]["by_hour"]),
            by_hour_source={
                hour: _sorted(sources) for hour, sources in sorted(hour_source.get(date, {}).items())
            },
            totals=totals[date],
        )
        for date in sorted(by_date)
    }


def merge_daily(existing: Mapping[str, DailyAggregateEntry], incoming: Mapping[str, DailyAggregateEntry]) -> DailyStore:
    """Return a new store where each incoming date replaces the existing one.

    Neither argument is modified; entries are immutable and shared.
    """
    merged = dict(existing)
    merged.update(incoming)
    return {date: merged[date] for date in sorted(merged)}
