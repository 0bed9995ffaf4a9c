"""Process-wide logging configuration."""

from __future__ import annotations

import logging
import sys

from dmarcsieve.config import LoggingConfig

_configured = False


def setup_logging(config: LoggingConfig | None = None, level: str | None = None) -> None:
    """Attach a timestamped stream handler to the package logger once.

    Repeated calls only adjust the level, so the CLI and the web app can both
    call this without doubling output.
    """
    global _configured

    config = config or LoggingConfig()
    effective = (level or config.level or "INFO").upper()

    root = logging.getLogger("dmarcsieve")
    root.setLevel(getattr(logging, effective, logging.INFO))

    if _configured:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(config.format))
    root.addHandler(handler)
    _configured = True
