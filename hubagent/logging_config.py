"""Centralized logging configuration.

The agent logs to stderr, which the container runtime collects. With
LOG_DIR set it also keeps rotating files:
- {log_dir}/{process}.log (+ .YYYY-MM-DD rotations, 14 days)
- {log_dir}/{process}-current.log (5MB x 5)

Usage in the process entry point:
    from .logging_config import setup_process_logging
    setup_process_logging("agent", log_dir=config.log_dir)

Then in any module:
    from .logging_config import get_logger
    logger = get_logger(__name__)
"""

import logging
import sys
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from pathlib import Path

# Libraries whose INFO output drowns out the agent's own
_QUIET_LOGGERS = ("aiohttp.access", "aiohttp.server", "asyncio")


class FlushingStreamHandler(logging.StreamHandler):
    """StreamHandler that flushes after every emit."""

    def emit(self, record):
        super().emit(record)
        self.flush()


def _formatter(process_name: str, datefmt: str) -> logging.Formatter:
    return logging.Formatter(
        fmt=f"[%(asctime)s] [{process_name}] [%(levelname)s] %(name)s: %(message)s",
        datefmt=datefmt,
    )


def setup_process_logging(
    process_name: str,
    level: int = logging.INFO,
    console: bool = True,
    log_dir: Path | None = None,
) -> logging.Logger:
    """
    Set up logging for the agent process. Call this ONCE, from the entry point.

    Args:
        process_name: Tag included in every line (e.g. "agent")
        level: Minimum log level (default INFO)
        console: Whether to log to stderr
        log_dir: Directory for rotating log files (None = stderr only)

    Returns:
        The configured root logger
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handlers: list[logging.Handler] = []
    if console:
        console_handler = FlushingStreamHandler(sys.stderr)
        console_handler.setFormatter(_formatter(process_name, "%H:%M:%S"))
        handlers.append(console_handler)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_fmt = _formatter(process_name, "%Y-%m-%d %H:%M:%S")

        daily_handler = TimedRotatingFileHandler(
            log_dir / f"{process_name}.log",
            when="midnight",
            interval=1,
            backupCount=14,
            encoding="utf-8",
        )
        daily_handler.suffix = "%Y-%m-%d"
        daily_handler.setFormatter(file_fmt)
        handlers.append(daily_handler)

        # A tab that floods output can log a lot in one day
        size_handler = RotatingFileHandler(
            log_dir / f"{process_name}-current.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        size_handler.setFormatter(file_fmt)
        handlers.append(size_handler)

    for handler in handlers:
        handler.setLevel(level)
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return root


def get_logger(name: str) -> logging.Logger:
    """Module logger: logger = get_logger(__name__)."""
    return logging.getLogger(name)
