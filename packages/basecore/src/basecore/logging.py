"""
Logging setup shared by all services.

Modules log through ``logging.getLogger(__name__)`` and attach structured
fields with ``extra={...}``; the JSON formatter renders those fields as keys.
"""

import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from basecore.settings import get_settings

_HANDLER_NAME = "basecore"


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """
    Configure the root logger. Safe to call more than once.

    Args:
        level: Log level name (defaults to LOG_LEVEL)
        fmt: "json" or "console" (defaults to LOG_FORMAT)
    """
    settings = get_settings()
    level = (level or settings.LOG_LEVEL).upper()
    fmt = fmt or settings.LOG_FORMAT

    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)

    if fmt == "json":
        handler.setFormatter(
            JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={"levelname": "level", "asctime": "timestamp"},
            )
        )
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )

    root.addHandler(handler)
    root.setLevel(level)

    # Keep third-party chatter down
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
