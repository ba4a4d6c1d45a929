"""
Structured logging configuration

Every module logs through ``logging.getLogger(__name__)``; this module only
decides how records are rendered. JSON output is meant for log shippers,
plain text for local development.
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dispatch.utils.config import settings


class StructuredFormatter(logging.Formatter):
    """JSON structured logging formatter"""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON"""
        log_obj: Dict[str, Any] = {
            "@timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "location": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
                "module": record.module,
            },
        }

        if record.exc_info:
            log_obj["error"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "stacktrace": traceback.format_exception(*record.exc_info),
            }

        # Custom fields passed as extra={"extra_fields": {...}}
        if hasattr(record, "extra_fields"):
            log_obj["custom"] = record.extra_fields

        return json.dumps(log_obj, default=str)


def setup_logging(
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
    service_name: Optional[str] = None,
) -> None:
    """
    Configure the root logger for the dispatch core.

    Args:
        level: Log level name (defaults to settings.LOG_LEVEL)
        json_output: Emit JSON lines (defaults to settings.LOG_JSON)
        service_name: Service name stamped on records (defaults to settings.SERVICE_NAME)
    """
    level = (level or settings.LOG_LEVEL).upper()
    json_output = settings.LOG_JSON if json_output is None else json_output
    service_name = service_name or settings.SERVICE_NAME

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    root_logger.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(StructuredFormatter(service_name))
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
        )
    root_logger.addHandler(handler)

    # psycopg2 pool chatter is not interesting at INFO
    logging.getLogger("psycopg2").setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized",
        extra={"extra_fields": {"service": service_name, "level": level, "json": json_output}},
    )
