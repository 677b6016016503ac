from __future__ import annotations

import logging
import sys
from typing import Iterable, Optional

HANDLER_NAME = "servicekit"
LOG_FORMAT = "%(asctime)s | [{label}] | %(levelname)s | %(name)s | %(message)s [%(filename)s:%(lineno)d]"

# per-request INFO lines from the HTTP client duplicate the dispatcher's own DEBUG lines
QUIET_LOGGERS = ("httpx", "httpcore")
SERVER_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error")


def setup_logging(
    level: str = "INFO",
    label: str = "servicekit",
    *,
    follow: Iterable[str] = SERVER_LOGGERS,
) -> logging.Handler:
    """
    Send every record to stdout through one named root handler.

    Calling it again replaces the handler installed by the previous call;
    handlers attached by anything else are left in place. Loggers in
    ``follow`` get the same level, client libraries are held at WARNING.
    """
    level = level.upper()
    root = logging.getLogger()
    for h in [h for h in root.handlers if h.get_name() == HANDLER_NAME]:
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT.format(label=label), datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)
    root.setLevel(level)

    for name in follow:
        logging.getLogger(name).setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name or "servicekit")
