"""Tests for shared utilities."""

from unittest.mock import patch

from src.config import Settings
from src.utils import format_percent, get_logger, setup_logging


class TestLogging:
    """Tests for logging helpers."""

    def test_module_loggers_share_root(self):
        """Test module loggers live under the sheetnest logger."""
        assert get_logger("nesting.coordinator").name == "sheetnest.nesting.coordinator"

    def test_setup_logging_explicit_level(self):
        """Test setup returns the root engine logger."""
        with patch("src.utils.logging.basicConfig") as basic_config:
            logger = setup_logging("DEBUG")

        assert logger.name == "sheetnest"
        assert basic_config.call_args.kwargs["level"] == "DEBUG"

    def test_setup_logging_uses_settings(self):
        """Test the level defaults to the log_level setting."""
        with patch("src.config.get_settings", return_value=Settings(log_level="WARNING")), \
                patch("src.utils.logging.basicConfig") as basic_config:
            setup_logging()

        assert basic_config.call_args.kwargs["level"] == "WARNING"


class TestFormatPercent:
    """Tests for format_percent."""

    def test_format(self):
        """Test one decimal place."""
        assert format_percent(0.4567) == "45.7%"
        assert format_percent(0) == "0.0%"
