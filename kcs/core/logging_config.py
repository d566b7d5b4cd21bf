"""
Logging setup shared by the API and the workers.
"""

import logging

from kcs.core.config import settings


class _StageContextFilter(logging.Filter):
    """Give every record `order_id` and `stage` so the format string never fails."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "order_id"):
            record.order_id = "-"
        if not hasattr(record, "stage"):
            record.stage = "-"
        return True


LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s [order=%(order_id)s stage=%(stage)s] %(message)s"
)


def configure_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    if any(getattr(h, "_kcs_handler", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler._kcs_handler = True
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(_StageContextFilter())
    root.addHandler(handler)
    root.setLevel(level or settings.LOG_LEVEL)
