"""Structured logging configuration."""

import logging
import re
import sys
from datetime import datetime
from pathlib import Path

from pythonjsonlogger import jsonlogger

from stocksniper.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with timestamp, level and source location fields."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"
        if record.funcName:
            log_record['function'] = record.funcName


class RedactSecretsFilter(logging.Filter):
    """
    Mask secret values before a record reaches any handler.

    Handles ``key=value`` / ``"key": "value"`` patterns inside the rendered
    message as well as matching attributes passed through ``extra``.
    """

    MASK = "***"

    def __init__(self, fields: list[str] | None = None):
        super().__init__()
        self.fields = [f.lower() for f in (fields or settings.redacted_log_fields)]
        names = "|".join(re.escape(f) for f in self.fields)
        self._pattern = re.compile(
            rf"(?i)([\"']?(?:{names})[\"']?\s*[:=]\s*[\"']?)([^\"'\s,}}]+)"
        )

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self._pattern.sub(rf"\1{self.MASK}", message)
        if redacted != message:
            record.msg = redacted
            record.args = None

        for field in self.fields:
            if field in record.__dict__:
                setattr(record, field, self.MASK)
        return True


def setup_logging(base_dir: str | Path | None = None):
    """Configure logging for the application.

    Args:
        base_dir: Optional base directory to place the logs/ folder in.
                  If omitted, uses the current working directory.
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    redact = RedactSecretsFilter()

    # Console handler (human-readable for development)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    console_handler.addFilter(redact)
    root_logger.addHandler(console_handler)

    json_formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    json_handler = logging.FileHandler(logs_dir / "app.log")
    json_handler.setLevel(logging.DEBUG)
    json_handler.setFormatter(json_formatter)
    json_handler.addFilter(redact)
    root_logger.addHandler(json_handler)

    error_handler = logging.FileHandler(logs_dir / "error.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    error_handler.addFilter(redact)
    root_logger.addHandler(error_handler)

    # httpx logs every request URL at INFO, which includes API keys in query strings
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root_logger

