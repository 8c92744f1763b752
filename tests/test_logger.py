"""Tests for the loguru logging setup."""

import pytest
from loguru import logger

from strata.logger import LoggerSettings, get_logger, init


@pytest.fixture
def records():
    messages: list[str] = []
    handler_id = logger.add(
        messages.append, format="{extra[mod_name]}|{level}|{message}", level="DEBUG"
    )
    yield messages
    logger.remove(handler_id)


@pytest.mark.unit
class TestLogger:
    def test_module_name_bound(self, records: list[str]) -> None:
        get_logger("strata.repository.cache").info("hello")

        assert records == ["repository.cache|INFO|hello\n"]

    def test_default_module_name(self, records: list[str]) -> None:
        logger.warning("plain")

        assert records == ["strata|WARNING|plain\n"]

    def test_init_replaces_handlers(self) -> None:
        handler_id = init(LoggerSettings(log_level="debug", colorize=False))
        try:
            assert isinstance(handler_id, int)
        finally:
            logger.remove(handler_id)

    def test_settings_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STRATA_LOGGER_LOG_LEVEL", "WARNING")

        assert LoggerSettings().log_level == "WARNING"
