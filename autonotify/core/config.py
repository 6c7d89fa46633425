from __future__ import annotations

import json

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    app_name: str = "autonotify"
    environment: str = "dev"
    app_version: str | None = None
    hostname: str | None = None

    # Error reporting
    sentry_dsn: str | None = None
    sentry_environment: str | None = None
    sentry_enabled_environments: list[str] = ["staging", "prod"]
    sentry_traces_sample_rate: float = 0.0
    sentry_send_default_pii: bool = False

    error_reporting_project_packages: list[str] = ["autonotify"]
    error_reporting_auto_capture_sessions: bool = True
    # Flush the delivery queue after every report (scripts, short-lived workers)
    error_reporting_synchronous: bool = False

    # Logging
    log_level: str = "INFO"
    json_logs: bool = True

    @model_validator(mode="after")
    def _validate_list_config(self) -> Settings:
        self.sentry_enabled_environments = self._parse_env_list(self.sentry_enabled_environments)
        self.error_reporting_project_packages = self._parse_env_list(
            self.error_reporting_project_packages
        )
        return self

    @staticmethod
    def _parse_env_list(raw_value: list[str] | str) -> list[str]:
        if isinstance(raw_value, list):
            return [item.strip() for item in raw_value if item.strip()]

        value = raw_value.strip()
        if not value:
            return []

        if value.startswith("["):
            parsed = json.loads(value)
            if not isinstance(parsed, list):
                raise ValueError("list config must deserialize to a list")
            return [str(item).strip() for item in parsed if str(item).strip()]

        return [item.strip() for item in value.split(",") if item.strip()]


settings = Settings()
