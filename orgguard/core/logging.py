from __future__ import annotations

import logging
import sys

from orgguard.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once; repeated app factories must not stack handlers.
    global _configured
    resolved_level = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved_level)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # SQLAlchemy engine logs are noisy at INFO.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True
