"""
Logging helpers for the receiver.
"""

from __future__ import annotations

import logging
import sys
from typing import Iterable, Optional

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"

# Third-party loggers that are very chatty at DEBUG.
NOISY_LOGGERS = ("aioice", "aiortc", "websockets")


def configure_logging(
    level: int = logging.INFO,
    format: Optional[str] = None,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """
    Ensure the root logger is configured exactly once.

    Libraries listed in ``quiet`` are capped at INFO so ``--debug`` output stays
    focused on signaling.
    """

    if logging.getLogger().handlers:
        # Respect any user provided configuration.
        return

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    for name in quiet:
        logging.getLogger(name).setLevel(max(level, logging.INFO))
