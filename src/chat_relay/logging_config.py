"""
Structured logging setup for relay processes.

Environment Variables:
    CHAT_RELAY_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR - default: INFO
    CHAT_RELAY_LOG_FORMAT: json, text - default: json

Library code only calls logging.getLogger(__name__); setup_logging() is for
entry points (CLI, embedding servers that want JSON lines).
"""

import logging
import os
import sys
from typing import Optional

from pythonjsonlogger import jsonlogger


class OriginFilter(logging.Filter):
    """Stamp every record with the relay's origin_id."""

    def __init__(self, origin_id: str):
        super().__init__()
        self.origin_id = origin_id

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "origin_id"):
            record.origin_id = self.origin_id  # type: ignore[attr-defined]
        return True


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None, origin_id: str = "-") -> None:
    level_name = (level or os.getenv("CHAT_RELAY_LOG_LEVEL", "INFO")).upper()
    log_format = (fmt or os.getenv("CHAT_RELAY_LOG_FORMAT", "json")).lower()
    log_level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.addFilter(OriginFilter(origin_id))

    if log_format == "json":
        formatter: logging.Formatter = jsonlogger.JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s %(origin_id)s",
            rename_fields={"asctime": "timestamp", "name": "logger", "levelname": "level"},
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(origin_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
