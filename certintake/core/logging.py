from __future__ import annotations

import logging
import sys

from certintake.core.config import get_settings


_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Install one stdout handler so API and worker processes share a log shape.
    global _configured
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    # Keep per-request client logs out of the intake log stream.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
