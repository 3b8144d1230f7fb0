"""
Logging configuration

Errors are logged with ``extra={"error_context": exc.to_dict()}``; the
formatter here appends that context to the line so provider failures,
quota refusals and store errors stay searchable in plain-text logs.
"""

import json
import logging
import sys
from typing import Optional
from core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries that are chatty at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "httpx", "apscheduler")


class ErrorContextFormatter(logging.Formatter):
    """Formatter that appends a record's ``error_context`` as JSON"""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "error_context", None)
        if context:
            line = f"{line} | context={json.dumps(context, default=str, sort_keys=True)}"
        return line


def setup_logging(level: Optional[str] = None):
    """Configure application logging"""

    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ErrorContextFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    logging.basicConfig(level=log_level, handlers=[handler])

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level_name} level")
