"""Source discovery for AI coding assistant session files."""

import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from session_meter.logging import get_logger
from session_meter.models import SOURCES, FileCandidate

logger = get_logger("sources")


def expand_home(path: str | Path) -> Path:
    """Expand a leading ~ against the current home directory."""
    text = str(path)
    if text == "~":
        return Path.home()
    if text.startswith("~/"):
        return Path.home() / text[2:]
    return Path(text)


def get_codex_root() -> Path:
    """Codex session root, honouring CODEX_HOME.

    Location: $CODEX_HOME/sessions, else ~/.codex/sessions
    """
    codex_home = os.environ.get("CODEX_HOME", "").strip()
    if codex_home:
        return expand_home(codex_home) / "sessions"
    return expand_home("~/.codex/sessions")


@dataclass(frozen=True)
class SourceDiscoverer:
    """Globs one source root for candidate files."""

    source: str
    default_root: str
    patterns: tuple[str, ...]
    min_bytes: int = 0

    def root(self) -> Path:
        if self.source == "codex":
            return get_codex_root()
        return expand_home(self.default_root)

    def discover(self, root: Path | None = None) -> list[FileCandidate]:
        """Return candidates under root (or the default root), sorted by path.

        Missing or unreadable roots produce an empty list.
        """
        base = root if root is not None else self.root()
        candidates: list[FileCandidate] = []
        try:
            if not base.is_dir():
                return []
            for pattern in self.patterns:
                for path in base.glob(pattern):
                    candidate = _stat_candidate(path, self.source, self.min_bytes)
                    if candidate is not None:
                        candidates.append(candidate)
        except OSError:
            logger.debug("Cannot scan source root: source=%s root=%s", self.source, base, exc_info=True)
            return []
        return dedupe_candidates(candidates)


def _stat_candidate(path: Path, source: str, min_bytes: int) -> FileCandidate | None:
    try:
        stats = path.stat()
    except OSError:
        return None
    if not path.is_file() or stats.st_size < min_bytes:
        return None
    return FileCandidate(
        path=str(path),
        source=source,
        mtime=stats.st_mtime_ns / 1_000_000,
        size=stats.st_size,
    )


def dedupe_candidates(candidates: Iterable[FileCandidate]) -> list[FileCandidate]:
    """Deduplicate by path (latest wins) and sort by path."""
    by_path: dict[str, FileCandidate] = {}
    for candidate in candidates:
        by_path[candidate.path] = candidate
    return sorted(by_path.values(), key=lambda c: c.path)


DISCOVERERS: dict[str, SourceDiscoverer] = {
    # Claude Code: ~/.claude/projects/<project>/<session>.jsonl plus subagent transcripts
    "claude": SourceDiscoverer(
        source="claude",
        default_root="~/.claude/projects",
        patterns=("*/*.jsonl", "*/*/subagents/agent-*.jsonl"),
        min_bytes=100,
    ),
    # Codex: <root>/<year>/<month>/<day>/rollout-*.jsonl
    "codex": SourceDiscoverer(
        source="codex",
        default_root="~/.codex/sessions",
        patterns=("????/??/??/rollout-*.jsonl",),
    ),
    # Gemini CLI: ~/.gemini/tmp/<project_hash>/chats/session-*.json
    "gemini": SourceDiscoverer(
        source="gemini",
        default_root="~/.gemini/tmp",
        patterns=("*/chats/session-*.json",),
    ),
    # OpenCode: storage/session/<projectHash>/ses_*.json
    "opencode": SourceDiscoverer(
        source="opencode",
        default_root="~/.local/share/opencode/storage",
        patterns=("session/*/*.json",),
    ),
    # Factory Droid: ~/.factory/sessions/*.jsonl
    "droid": SourceDiscoverer(
        source="droid",
        default_root="~/.factory/sessions",
        patterns=("*.jsonl",),
    ),
    # GitHub Copilot CLI: ~/.copilot/session-state/*.jsonl
    "copilot": SourceDiscoverer(
        source="copilot",
        default_root="~/.copilot/session-state",
        patterns=("*.jsonl",),
    ),
}


def discover_all(
    sources: Iterable[str] | None = None,
    roots: Mapping[str, Path] | None = None,
) -> list[FileCandidate]:
    """Discover candidate files for the requested sources (all by default).

    Args:
        sources: Source names to visit; None or empty visits every source
        roots: Optional per-source root overrides

    Returns:
        Path-sorted, path-deduplicated candidates
    """
    wanted = list(sources) if sources else list(SOURCES)
    roots = roots or {}

    found: list[FileCandidate] = []
    counts: dict[str, int] = {}
    for name in wanted:
        discoverer = DISCOVERERS.get(name)
        if discoverer is None:
            logger.warning("Unknown source requested: source=%s", name)
            continue
        candidates = discoverer.discover(roots.get(name))
        counts[name] = len(candidates)
        found.extend(candidates)

    result = dedupe_candidates(found)
    logger.debug(
        "Discovered sources: %s total=%d",
        " ".join(f"{name}={count}" for name, count in counts.items()),
        len(result),
    )
    return result
