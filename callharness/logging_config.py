from __future__ import annotations

import logging
import os
from typing import Optional


NOISY_LOGGERS = ("aioice", "aiortc")


def setup_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging for the harness.

    The console already prints operator-facing lines; this config targets the
    diagnostic log on stderr.
    """

    effective_level = (level or os.environ.get("CALLHARNESS_LOG_LEVEL") or "INFO").upper()

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root.setLevel(effective_level)

    # aioice/aiortc are chatty at INFO.
    if effective_level != "DEBUG":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
