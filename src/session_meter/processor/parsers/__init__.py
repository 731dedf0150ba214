"""Parsers for the supported AI coding CLI transcript formats."""

from session_meter.logging import get_logger
from session_meter.models import FileCandidate, RawParsedSession

from .base import CumulativeUsageTracker, Parser, ParserRegistry
from .claude import ClaudeParser
from .codex import CodexParser
from .copilot import CopilotParser
from .droid import DroidParser
from .gemini import GeminiParser
from .generic import GenericParser
from .opencode import OpenCodeParser

__all__ = [
    "ClaudeParser",
    "CodexParser",
    "CopilotParser",
    "CumulativeUsageTracker",
    "DroidParser",
    "GeminiParser",
    "GenericParser",
    "OpenCodeParser",
    "Parser",
    "ParserRegistry",
    "parse_file",
]

logger = get_logger("parsers")

# Register parsers
ParserRegistry.register(ClaudeParser())
ParserRegistry.register(CodexParser())
ParserRegistry.register(GeminiParser())
ParserRegistry.register(OpenCodeParser())
ParserRegistry.register(DroidParser())
ParserRegistry.register(CopilotParser())

GENERIC_PARSER = GenericParser()


def parse_file(candidate: FileCandidate) -> RawParsedSession | None:
    """Parse one candidate with its source parser, falling back to the generic parser.

    Never raises: a failure in either parser is logged and yields None.

    Args:
        candidate: The discovered file

    Returns:
        RawParsedSession, or None if neither parser could extract events
    """
    parser = ParserRegistry.get(candidate.source)
    if parser is not None:
        try:
            parsed = parser.parse(candidate)
        except Exception:
            logger.warning("Parser failed: source=%s path=%s", candidate.source, candidate.path, exc_info=True)
            parsed = None
        if parsed is not None:
            return parsed

    try:
        return GENERIC_PARSER.parse(candidate)
    except Exception:
        logger.warning("Generic parser failed: source=%s path=%s", candidate.source, candidate.path, exc_info=True)
        return None
