"""Settings base for strata.

All configuration objects are pydantic models loaded through
``pydantic-settings`` so that defaults can be overridden from the environment.
Validation failures are reported as ``InvalidConfigurationError`` so callers
only ever deal with the layer's own error taxonomy.
"""

from datetime import timedelta

import typing as t
from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import InvalidConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STRATA_",
        extra="forbid",
        arbitrary_types_allowed=True,
        validate_default=True,
        protected_namespaces=("model_", "settings_"),
    )

    def __init__(self, **values: t.Any) -> None:
        try:
            super().__init__(**values)
        except ValidationError as e:
            errors = e.errors()
            field_name = ".".join(str(p) for p in errors[0]["loc"]) if errors else None
            msg = f"Invalid {type(self).__name__}: {e}"
            raise InvalidConfigurationError(msg, field_name=field_name) from e


def positive_duration(value: timedelta) -> timedelta:
    if value <= timedelta(0):
        msg = "duration must be positive"
        raise ValueError(msg)
    return value
