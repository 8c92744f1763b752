"""Loguru logging for strata.

Modules obtain a bound logger with ``get_logger(__name__)``; applications opt
into the formatted stderr sink by calling ``init()`` once at startup.
"""

import sys

import typing as t
from loguru import logger as _logger
from pydantic_settings import SettingsConfigDict

from .config import Settings

if t.TYPE_CHECKING:
    from loguru import Logger


class LoggerSettings(Settings):
    model_config = SettingsConfigDict(env_prefix="STRATA_LOGGER_")

    log_level: str = "INFO"
    serialize: bool = False
    colorize: bool = True
    format: dict[str, str] = {
        "time": "<b><e>[</e> <w>{time:YYYY-MM-DD HH:mm:ss.SSS}</w> <e>]</e></b>",
        "level": " <level>{level:>8}</level>",
        "sep": " <b><w>in</w></b> ",
        "name": "<b>{extra[mod_name]:>20}</b>",
        "line": "<b><e>[</e><w>{line:^5}</w><e>]</e></b>",
        "message": "  <level>{message}</level>",
    }


_logger.configure(extra={"mod_name": "strata"})


def get_logger(name: str) -> "Logger":
    return _logger.bind(mod_name=name.removeprefix("strata."))


def init(settings: LoggerSettings | None = None) -> int:
    """Replace loguru's default handler with the strata stderr sink.

    Returns:
        The loguru handler id, usable with ``logger.remove``.
    """
    settings = settings or LoggerSettings()
    _logger.remove()
    return _logger.add(
        sys.stderr,
        level=settings.log_level.upper(),
        format="".join(settings.format.values()),
        colorize=settings.colorize,
        serialize=settings.serialize,
    )


__all__ = ["LoggerSettings", "get_logger", "init"]
