"""Shared utilities for the sheet nesting engine."""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

# Rich console for pretty output
console = Console(stderr=True)


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Set up logging with Rich handler.

    Without an explicit level the ``log_level`` setting is used.
    """
    if level is None:
        from src.config import get_settings

        level = get_settings().log_level
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )
    return logging.getLogger("sheetnest")


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a module."""
    return logging.getLogger(f"sheetnest.{name}")


def format_percent(ratio: float) -> str:
    """Format a 0..1 ratio as a percentage string."""
    return f"{ratio * 100:.1f}%"
