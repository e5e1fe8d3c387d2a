"""Application settings for the DevOps flow editor.

Automatically reads from environment variables (or a .env file). Just
instantiate: AppSettings()

Environment variables:
  DEVOPS_FLOW_DATA_DIR           — root for saved graphs and config (default: ~/.devops-flow)
  DEVOPS_FLOW_INTEGRATIONS_FILE  — integrations JSON (default: <data_dir>/integrations.json)
  DEVOPS_FLOW_LOG_LEVEL          — logging level name (default: WARNING)
  DEVOPS_FLOW_HTTP_TIMEOUT       — per-request timeout for fetchers, seconds (default: 30)
  DEVOPS_FLOW_RETRY_DELAY        — first retry backoff for failed fetches, seconds (default: 1)
  DEVOPS_FLOW_API_KEY            — bearer key required by the HTTP bridge; unset = open
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_FORMAT = "%(levelname)s: %(message)s"


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    data_dir: Path = Field(default=Path("~/.devops-flow"), validation_alias="DEVOPS_FLOW_DATA_DIR")
    integrations_file: Path | None = Field(default=None, validation_alias="DEVOPS_FLOW_INTEGRATIONS_FILE")
    log_level: str = Field(default="WARNING", validation_alias="DEVOPS_FLOW_LOG_LEVEL")
    http_timeout: float = Field(default=30.0, validation_alias="DEVOPS_FLOW_HTTP_TIMEOUT")
    retry_delay: float = Field(default=1.0, validation_alias="DEVOPS_FLOW_RETRY_DELAY")
    api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="DEVOPS_FLOW_API_KEY",
        repr=False,
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def uppercase_level(cls, v: object) -> str:
        return str(v).upper()

    @field_validator("integrations_file", mode="before")
    @classmethod
    def empty_str_to_none(cls, v: object) -> object:
        """Treat an empty DEVOPS_FLOW_INTEGRATIONS_FILE as unset."""
        return v or None

    @field_validator("http_timeout", "retry_delay")
    @classmethod
    def non_negative(cls, v: float) -> float:
        return max(0.0, v)

    @property
    def resolved_data_dir(self) -> Path:
        return self.data_dir.expanduser()

    @property
    def integrations_path(self) -> Path:
        if self.integrations_file is not None:
            return self.integrations_file.expanduser()
        return self.resolved_data_dir / "integrations.json"

    def configure_logging(self) -> None:
        logging.basicConfig(level=getattr(logging, self.log_level, logging.WARNING), format=_LOG_FORMAT)

    # Keep from_env() as a convenience alias for call-sites that use it explicitly.
    @classmethod
    def from_env(cls) -> AppSettings:
        return cls()
