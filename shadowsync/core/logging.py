from __future__ import annotations

import logging

from shadowsync.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once; repeated calls only adjust the level.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    if not any(getattr(handler, "_shadowsync", False) for handler in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._shadowsync = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level)
    # Keep driver chatter out of import logs.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    logging.getLogger("sqlalchemy.engine").setLevel(max(level, logging.WARNING))
