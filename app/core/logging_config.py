# -*- coding: utf-8 -*-
"""
Production-grade logging configuration.

Routes logs by severity for correct container/platform classification:
- DEBUG/INFO/WARNING → STDOUT
- ERROR, CRITICAL → STDERR

Uses QueueHandler + QueueListener so the event loop never blocks on
stdout/stderr: only the listener thread blocks if a stream stalls.
Structured fields passed via extra= (component, operation, outcome, ...)
are appended to the line as key=value pairs.
"""

import atexit
import logging
import os
import queue
import sys
from logging.handlers import QueueHandler, QueueListener

# Fields emitted by app.core.structured_logger.log_event
STRUCTURED_FIELDS = ("component", "operation", "outcome", "correlation_id", "duration_ms", "reason")


class MaxLevelFilter(logging.Filter):
    """Allows only records up to a specified level (inclusive)."""

    def __init__(self, max_level):
        super().__init__()
        self.max_level = max_level

    def filter(self, record):
        return record.levelno <= self.max_level


class StructuredFormatter(logging.Formatter):
    """Appends structured extra= fields after the message."""

    def format(self, record):
        line = super().format(record)
        pairs = [
            f"{name}={getattr(record, name)}"
            for name in STRUCTURED_FIELDS
            if getattr(record, name, None) is not None
        ]
        if pairs:
            line = f"{line} [{' '.join(pairs)}]"
        return line


_log_listener: QueueListener | None = None


def setup_logging(level: str | None = None):
    """
    Configure logging: QueueHandler on the root logger; QueueListener in a
    background thread owns the stream handlers. Must be called before any
    logger is used. Level defaults to LOG_LEVEL env var, then INFO.
    """
    global _log_listener

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))
    root_logger.handlers.clear()

    formatter = StructuredFormatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.addFilter(MaxLevelFilter(logging.WARNING))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    log_queue = queue.Queue()
    root_logger.addHandler(QueueHandler(log_queue))

    # httpx logs every request at INFO; Panel calls are logged by panel_client itself
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if _log_listener is not None:
        _log_listener.stop()
    _log_listener = QueueListener(
        log_queue,
        stdout_handler,
        stderr_handler,
        respect_handler_level=True,
    )
    _log_listener.start()
    atexit.register(_stop_log_listener)


def _stop_log_listener():
    """Stop the queue listener (called at exit)."""
    global _log_listener
    if _log_listener is not None:
        _log_listener.stop()
        _log_listener = None
