# core/logging_config.py
"""Configure EFB cache logging sinks and formatting.

This module configures:
- Standard library logging handlers (console and optional rotating file).
- Rich console integration unless simple mode is enabled.
- Baseline log level overrides for noisy third-party libraries.

Notes:
    This module intentionally performs side-effectful logger configuration and should be
    called once at process startup via [`core.logging_config.setup_logging()`](core/logging_config.py:1).
"""

import logging as stdlib_logging
import logging.handlers
import os

import structlog
from rich.console import Console
from rich.logging import RichHandler

import config
from config import rich_formatter, simple_formatter


def _file_handler(log_path: str) -> stdlib_logging.Handler:
    os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
    file_handler = stdlib_logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        mode="a",
        encoding="utf-8",
    )
    file_handler.setLevel(config.LOG_LEVEL_STR)
    file_handler.setFormatter(simple_formatter)
    return file_handler


def setup_logging(console: Console | None = None) -> None:
    """Set up logging handlers and formatting.

    This configures:
    - Console logging in simple mode.
    - Rotating file logging when a log file is configured.
    - Rich console output when enabled.

    Args:
        console: Rich console to render to. A new one is created when omitted.

    Notes:
        This function mutates the root logger handler list and is intended to be called
        once during application startup.
    """
    root_logger = stdlib_logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(config.LOG_LEVEL_STR)

    simple_mode = getattr(config, "SIMPLE_LOGGING_MODE", False)

    if simple_mode:
        stream_handler = stdlib_logging.StreamHandler()
        stream_handler.setLevel(config.LOG_LEVEL_STR)
        stream_handler.setFormatter(simple_formatter)
        root_logger.addHandler(stream_handler)
        root_logger.info("Simple logging mode enabled: console only.")
    elif config.LOG_FILE:
        log_path = os.path.join(config.LOG_DIR, config.LOG_FILE)
        try:
            root_logger.addHandler(_file_handler(log_path))
            root_logger.info(f"File logging enabled. Log file: {log_path}")
        except OSError as e:
            console_handler_fallback = stdlib_logging.StreamHandler()
            console_handler_fallback.setFormatter(simple_formatter)
            root_logger.addHandler(console_handler_fallback)
            root_logger.error(
                f"Failed to configure file logging: {e}. Logging to console instead.",
                exc_info=True,
            )

    if not simple_mode and config.ENABLE_RICH_CONSOLE:
        rich_handler = RichHandler(
            level=config.LOG_LEVEL_STR,
            rich_tracebacks=True,
            show_path=False,
            markup=True,
            show_time=False,  # Timestamp already in our formatter
            show_level=False,  # Level already in our formatter
            console=console or Console(stderr=True),
        )
        rich_handler.setFormatter(rich_formatter)
        root_logger.addHandler(rich_handler)
    elif not any(isinstance(h, stdlib_logging.StreamHandler) for h in root_logger.handlers):
        stream_handler = stdlib_logging.StreamHandler()
        stream_handler.setLevel(config.LOG_LEVEL_STR)
        stream_handler.setFormatter(simple_formatter)
        root_logger.addHandler(stream_handler)

    stdlib_logging.getLogger("asyncio").setLevel(stdlib_logging.WARNING)

    structlog.get_logger().info(
        f"EFB cache logging setup complete. Application Log Level: {stdlib_logging.getLevelName(config.LOG_LEVEL_STR)}."
    )
