"""
streamvest - Structured Logging Configuration

Configures JSON logging for converter deployments:
- JSON format so the ``extra={"event": ...}`` fields survive aggregation
- Optional rotating file handler
- Idempotent: re-running setup replaces handlers instead of stacking them

Usage:
    from streamvest.core.logging_config import setup_logging

    logger = setup_logging(name="streamvest", level="INFO")
    logger.info("Stream created", extra={"event": "converter.stream_created"})
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from pythonjsonlogger.json import JsonFormatter


class ConverterJsonFormatter(JsonFormatter):
    """One JSON object per record, stamped with deployment context."""

    def __init__(self, environment: Optional[str] = None, service_name: str = "streamvest"):
        super().__init__(
            "%(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level"},
            static_fields={
                "environment": environment or "production",
                "service": service_name,
            },
        )

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["level"] = record.levelname.lower()
        log_record["timestamp"] = datetime.fromtimestamp(
            record.created, timezone.utc
        ).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        log_record["source"] = f"{record.module}.{record.funcName}:{record.lineno}"


def setup_logging(
    name: str = "streamvest",
    log_file: Optional[str] = None,
    level: str = "INFO",
    environment: str = "production",
    enable_console: bool = True,
    max_bytes: int = 50 * 1024 * 1024,  # 50MB
    backup_count: int = 5,
) -> logging.Logger:
    """
    Setup structured JSON logging.

    Args:
        name: Logger name; child loggers (streamvest.core.*) inherit it
        log_file: Path to a JSON log file (optional)
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        environment: Environment identifier (dev, staging, prod)
        enable_console: Whether to log to stdout
        max_bytes: Maximum log file size before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    logger = logging.getLogger(name)
    logger.setLevel(numeric_level)
    logger.handlers = []

    formatter = ConverterJsonFormatter(
        environment=environment,
        service_name=name.split(".")[0],
    )

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    """Return ``name``'s logger, configuring it on first use."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        return setup_logging(name=name, level=level)
    return logger
