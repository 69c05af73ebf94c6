from __future__ import annotations

import logging

from consortium.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_NOISY_LOGGERS = ("httpx", "httpcore", "arq.jobs")


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once; repeated calls only adjust the level.
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    root.setLevel(resolved)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))
