"""
Logging for the ``toolflow`` logger tree.

Every module logs through ``get_logger(__name__)``, so records land under
``toolflow.llm.*`` (model calls and the conversation loop), ``toolflow.tools.*``
(dispatch, validation, idempotent writes, MCP), ``toolflow.workflow.*`` and
``toolflow.execution.*`` (tracking and persistence) and ``toolflow.__main__``.
Console output goes to stderr so the CLI can print results on stdout.

Levels: execution lifecycle at INFO, per-step detail at DEBUG, tool and
callback failures at WARNING, failed executions and persistence at ERROR.
Chatty third-party loggers (LiteLLM, httpx, mcp) are held at WARNING
unless the tree runs at DEBUG.
"""

import logging
import sys
from pathlib import Path

from toolflow.config.settings import Settings

THIRD_PARTY_LOGGERS = ("LiteLLM", "LiteLLM Router", "LiteLLM Proxy", "httpx", "mcp")


class ColoredFormatter(logging.Formatter):
    """Formatter that adds color to console output."""

    # ANSI color codes
    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with color, leaving the record untouched for other handlers."""
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def setup_logging(settings: Settings) -> None:
    """
    Configure logging based on settings.

    Args:
        settings: Application settings containing log configuration
    """
    root_logger = logging.getLogger("toolflow")
    root_logger.setLevel(getattr(logging, settings.log_level))

    # Remove existing handlers
    root_logger.handlers.clear()

    # Console handler with color
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, settings.log_level))
    console_handler.setFormatter(
        ColoredFormatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root_logger.addHandler(console_handler)

    # File handler if configured
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(getattr(logging, settings.log_level))
        file_handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(file_handler)

    # Don't propagate to root logger
    root_logger.propagate = False

    third_party_level = logging.DEBUG if settings.log_level == "DEBUG" else logging.WARNING
    for name in THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)

    root_logger.info(f"Logging initialized - Level: {settings.log_level}")
    if settings.log_file:
        root_logger.info(f"Logging to file: {settings.log_file}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Module names already under the package are used as-is so that
    ``get_logger(__name__)`` and ``get_logger("cli")`` both land in the
    ``toolflow`` tree.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    if name == "toolflow" or name.startswith("toolflow."):
        return logging.getLogger(name)
    return logging.getLogger(f"toolflow.{name}")
