"""
Centralized Logging Configuration for the directory sync engine.

Provides structured logging with console output, rotating log files and a
dedicated audit logger that receives one record per sync event.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from typing import Any, Dict, Optional

from dirsync.config.settings import settings


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured logging."""

    def format(self, record):
        # Add custom fields to log record
        record.service_name = getattr(record, 'service_name', 'dirsync')
        record.tenant = getattr(record, 'tenant', None)
        record.task_id = getattr(record, 'task_id', None)
        record.event_type = getattr(record, 'event_type', None)

        # Format timestamp
        record.timestamp = datetime.fromtimestamp(record.created).isoformat()

        return super().format(record)


def setup_logging(log_dir: Optional[str] = None, log_level: Optional[str] = None) -> None:
    """
    Setup logging configuration.

    Args:
        log_dir: Directory for rotating log files; console only when empty
        log_level: Root log level name, defaults to settings.app.log_level
    """
    log_dir = log_dir or settings.app.log_dir
    level_name = (log_level or settings.app.log_level).upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))
    root_logger.handlers.clear()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    if settings.app.debug:
        console_format = (
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(filename)s:%(lineno)d] - %(message)s"
        )
    console_handler.setFormatter(logging.Formatter(console_format))
    root_logger.addHandler(console_handler)

    audit_logger = logging.getLogger("audit")
    audit_logger.setLevel(logging.INFO)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

        app_file_handler = logging.handlers.RotatingFileHandler(
            filename=os.path.join(log_dir, "app.log"),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        app_file_handler.setLevel(logging.INFO)
        app_file_handler.setFormatter(StructuredFormatter(
            "%(timestamp)s - %(name)s - %(levelname)s - "
            "%(service_name)s - %(message)s"
        ))
        root_logger.addHandler(app_file_handler)

        error_file_handler = logging.handlers.RotatingFileHandler(
            filename=os.path.join(log_dir, "errors.log"),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=10
        )
        error_file_handler.setLevel(logging.ERROR)
        error_file_handler.setFormatter(StructuredFormatter(
            "%(timestamp)s - %(name)s - %(levelname)s - "
            "%(service_name)s - %(tenant)s - %(task_id)s - %(message)s"
        ))
        root_logger.addHandler(error_file_handler)

        # Audit trail of sync events stays out of the general logs
        audit_logger.propagate = False
        audit_file_handler = logging.handlers.RotatingFileHandler(
            filename=os.path.join(log_dir, "audit.log"),
            maxBytes=50 * 1024 * 1024,  # 50MB
            backupCount=50
        )
        audit_file_handler.setFormatter(StructuredFormatter(
            "%(timestamp)s - %(event_type)s - %(tenant)s - "
            "%(task_id)s - %(message)s"
        ))
        audit_logger.addHandler(audit_file_handler)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logging.info("Logging configuration initialized")


def log_sync_event(
    event_type: str,
    tenant: Optional[str] = None,
    task_id: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
    level: int = logging.INFO
) -> None:
    """Write a sync event to the audit logger."""
    audit_logger = logging.getLogger("audit")
    audit_logger.log(
        level,
        json.dumps(data or {}, sort_keys=True, default=str),
        extra={
            "event_type": event_type,
            "tenant": tenant,
            "task_id": task_id,
        }
    )
