"""
Centralized logging configuration for the settlement engine.

Every module asks for a child logger of the ``farm_settlement`` namespace
through get_logger(__name__). Payment polling runs as asyncio tasks, so the
current task name is attached to each record alongside the thread name.

Log Format:
    2026-10-19 10:15:30 [INFO    ] [MainThread/poll-PI-1718...] farm_settlement.payments.poller - Intent PI-... resolved success

Usage:
    from logging_config import setup_logging, get_logger

    setup_logging(log_level=logging.INFO, enable_file_logging=False)
    logger = get_logger(__name__)
"""

import asyncio
import logging
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

APP_LOGGER_NAME = "farm_settlement"


class TaskContextFilter(logging.Filter):
    """Adds ``task_context`` (thread name plus asyncio task name, if any) to records."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = threading.current_thread().name
        try:
            task = asyncio.current_task()
        except RuntimeError:
            task = None
        if task is not None:
            context = f"{context}/{task.get_name()}"
        record.task_context = context
        return True


def setup_logging(
    app_name: str = APP_LOGGER_NAME,
    log_level: int = logging.INFO,
    log_dir: Optional[Path] = None,
    enable_file_logging: bool = False,
) -> logging.Logger:
    """
    Configure the application logger.

    Sets up a console handler and, optionally, a rotating application log plus
    a separate error log. Calling it again replaces the existing handlers.

    Args:
        app_name: Name of the root application logger
        log_level: Minimum log level
        log_dir: Directory for log files (default: ./logs next to this file)
        enable_file_logging: Whether to write rotating log files

    Returns:
        The configured application logger
    """
    logger = logging.getLogger(app_name)
    logger.setLevel(log_level)
    logger.propagate = False
    logger.handlers.clear()

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)-8s] [%(task_context)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    context_filter = TaskContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(context_filter)
    logger.addHandler(console_handler)

    if enable_file_logging:
        if log_dir is None:
            log_dir = Path(__file__).parent / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)

        app_log_file = log_dir / f"{app_name}.log"
        file_handler = RotatingFileHandler(
            filename=app_log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(context_filter)
        logger.addHandler(file_handler)

        error_handler = RotatingFileHandler(
            filename=log_dir / f"{app_name}_error.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        error_handler.addFilter(context_filter)
        logger.addHandler(error_handler)

        logger.info(f"File logging enabled: {app_log_file}")

    logger.info(f"Logging configured at level {logging.getLevelName(log_level)}")
    return logger


def get_logger(name: str) -> logging.Logger:
    """Child logger under the application namespace (pass ``__name__``)."""
    if name.startswith(APP_LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{APP_LOGGER_NAME}.{name}")
