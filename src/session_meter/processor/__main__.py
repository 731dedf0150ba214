"""CLI entry point for the scan daemon.

Allows running the daemon as a module:
    python -m session_meter.processor
"""

import signal
import sys
from types import FrameType

from session_meter.config import load_config
from session_meter.logging import get_logger
from session_meter.processor.daemon import request_shutdown, run_processor

logger = get_logger("processor")


def signal_handler(signum: int, frame: FrameType | None) -> None:
    """Handle shutdown signals gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info("Received signal %s, shutting down", sig_name)
    request_shutdown()


def main() -> None:
    """Main entry point for the scan daemon."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    config = load_config()

    try:
        run_processor(config)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        request_shutdown()

    sys.exit(0)


if __name__ == "__main__":
    main()
