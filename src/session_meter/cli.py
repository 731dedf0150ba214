"""Command line interface for session-meter.

    session-meter scan [--full] [--source claude ...]
    session-meter daily [--from 2025-01-01] [--to 2025-01-31] [--source codex | --model gpt-5]
    session-meter sessions [--source claude] [--limit 20]
    session-meter search QUERY [--sessions]
"""

import sys
from datetime import datetime
from pathlib import Path
from typing import Any

import click

from session_meter.config import Config, load_config
from session_meter.logging import setup_logging
from session_meter.models import SOURCES, DayStats, Session
from session_meter.processor.daemon import build_orchestrator
from session_meter.processor.indexer import TypesenseIndexer
from session_meter.processor.scanner import ScanInProgressError
from session_meter.processor.store import SQLiteStore


def format_timestamp(ts: int) -> str:
    """Format timestamp for display."""
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def format_cost(cost: float | None) -> str:
    return "-" if cost is None else f"${cost:.4f}"


def format_day(date: str, stats: DayStats) -> str:
    tokens = (
        stats.input_tokens
        + stats.output_tokens
        + stats.cache_read_tokens
        + stats.cache_write_tokens
        + stats.reasoning_tokens
    )
    return (
        f"{date}  sessions={stats.sessions} messages={stats.messages} "
        f"tool_calls={stats.tool_calls} tokens={tokens} cost={format_cost(stats.cost_usd)}"
    )


def print_session(session: Session) -> None:
    """Print one stored session."""
    click.echo(f"\033[36m[{session.start_time or session.parsed_at}]\033[0m \033[1m{session.title or '(untitled)'}\033[0m")
    click.echo(
        f"Source: \033[32m{session.source}\033[0m | Model: {session.model or 'unknown'} "
        f"| Messages: {session.message_count} | Tokens: {session.total_tokens.total} "
        f"| Cost: {format_cost(session.total_cost_usd)}"
    )
    click.echo(f"ID: {session.id}")
    if session.repo_name:
        click.echo(f"Repo: {session.repo_name}")
    click.echo("-" * 40)


def print_event_hit(hit: dict[str, Any]) -> None:
    """Print an event search hit."""
    doc = hit["document"]

    # Use highlighted snippet if available
    text = doc["text"]
    for hl in hit.get("highlights", []):
        if hl["field"] == "text":
            text = hl["snippet"]
            break

    # Clean up snippet tags for terminal
    text = text.replace("<mark>", "\033[1m").replace("</mark>", "\033[0m")

    click.echo(f"\033[36m[{format_timestamp(doc['ts'])}]\033[0m \033[32m{doc['source']}\033[0m ({doc['kind']})")
    click.echo(f"Session: {doc['session_id']}")
    click.echo(f"\n{text}\n")
    click.echo("-" * 40)


def print_session_hit(hit: dict[str, Any]) -> None:
    """Print a session search hit."""
    doc = hit["document"]

    click.echo(f"\033[36m[{format_timestamp(doc['end_ts'])}]\033[0m \033[1m{doc['title']}\033[0m")
    click.echo(f"Source: \033[32m{doc['source']}\033[0m | Messages: {doc['message_count']}")
    click.echo(f"ID: {doc['id']}")
    click.echo("-" * 40)


def _config(ctx: click.Context) -> Config:
    return ctx.obj["config"]


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="Path to config.yaml",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Usage and cost accounting for AI coding CLI sessions."""
    setup_logging("cli")
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config_path)


@cli.command()
@click.option("--full", is_flag=True, help="Reparse every file and rebuild daily stats")
@click.option("--source", "sources", multiple=True, type=click.Choice(SOURCES), help="Only scan this source")
@click.pass_context
def scan(ctx: click.Context, full: bool, sources: tuple[str, ...]) -> None:
    """Scan session logs and update the store."""
    config = _config(ctx)
    with SQLiteStore(config.scan.db_path) as store:
        # The CLI never feeds Typesense; the daemon owns indexing
        orchestrator = build_orchestrator(config, store)
        try:
            result = orchestrator.run_scan(full_scan=full, sources=sources or None)
        except ScanInProgressError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    click.echo(f"Scanned {result.scanned} of {result.total} files ({result.errors} errors)")


@cli.command()
@click.option("--from", "date_from", help="First date (YYYY-MM-DD)")
@click.option("--to", "date_to", help="Last date (YYYY-MM-DD)")
@click.option("--source", help="Only this source")
@click.option("--model", help="Only this model")
@click.pass_context
def daily(ctx: click.Context, date_from: str | None, date_to: str | None, source: str | None, model: str | None) -> None:
    """Show daily usage and cost."""
    if source and model:
        raise click.UsageError("--source and --model cannot be combined")

    config = _config(ctx)
    with SQLiteStore(config.scan.db_path) as store:
        days = store.query_daily(date_from, date_to, source, model)

    if not days:
        click.echo("No usage recorded")
        return

    total = DayStats()
    for date, stats in days.items():
        click.echo(format_day(date, stats))
        total = total + stats
    click.echo("-" * 40)
    click.echo(format_day("total     ", total))


@cli.command()
@click.option("--source", type=click.Choice(SOURCES), help="Only this source")
@click.option("--limit", "-n", default=20, help="Number of sessions")
@click.pass_context
def sessions(ctx: click.Context, source: str | None, limit: int) -> None:
    """List stored sessions, newest first."""
    config = _config(ctx)
    with SQLiteStore(config.scan.db_path) as store:
        found = store.list_sessions(source=source, limit=limit)

    if not found:
        click.echo("No sessions found")
        return

    for session in found:
        print_session(session)


@cli.command()
@click.argument("query")
@click.option("--sessions", "search_sessions", is_flag=True, help="Search sessions instead of events")
@click.option("--source", type=click.Choice(SOURCES), help="Filter by source")
@click.option("--limit", "-n", default=10, help="Number of results")
@click.pass_context
def search(ctx: click.Context, query: str, search_sessions: bool, source: str | None, limit: int) -> None:
    """Full-text search over indexed sessions (requires Typesense)."""
    config = _config(ctx)
    indexer = TypesenseIndexer(config.typesense)

    filters = {"source": source} if source else {}
    try:
        if search_sessions:
            results = indexer.search_sessions(query, per_page=limit, filters=filters)
        else:
            results = indexer.search_events(query, per_page=limit, filters=filters)
    except Exception as e:
        click.echo(f"Error searching: {e}", err=True)
        sys.exit(1)

    found = results.get("found", 0)
    hits = results.get("hits", [])
    label = "sessions" if search_sessions else "events"

    click.echo(f"Found {found} {label} (showing {len(hits)}):\n")

    for hit in hits:
        if search_sessions:
            print_session_hit(hit)
        else:
            print_event_hit(hit)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
