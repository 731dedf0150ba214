"""Package logging: one shared handler set on the ``session_meter`` logger."""

import logging
import sys
from pathlib import Path

ROOT_LOGGER = "session_meter"
DEFAULT_LOG_DIR = Path.home() / "session-meter" / "logs"

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def setup_logging(
    name: str,
    log_dir: Path | None = None,
    level: int = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """Attach file and stderr handlers to the package logger once.

    The log file is ``<log_dir>/<name>.log``; later calls only adjust the
    level. Returns the ``session_meter.<name>`` logger.
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)
    if root.handlers:
        return get_logger(name)

    directory = log_dir or DEFAULT_LOG_DIR
    directory.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [logging.FileHandler(directory / f"{name}.log", encoding="utf-8")]
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))

    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    return get_logger(name)
