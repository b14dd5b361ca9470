# main app settings/configs
import os
from pathlib import Path
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from taskpilot.config.settings_mixins import (
    RecordAPISettingsMixin,
    OpenAISettingsMixin,
    RouterSettingsMixin,
    AgentSettingsMixin,
    RetrySettingsMixin,
    MemorySettingsMixin,
    LoggingSettingsMixin,
)

# Determine which environment we're in. Default to 'dev'.
APP_ENV = os.getenv("APP_ENV", "dev")

# The .env file lives at the project root, two levels above this package directory.
# NOTE: the .env file names must match the APP_ENV config.
SERVICE_ROOT = Path(__file__).resolve().parents[2]
env_file_path = SERVICE_ROOT / f".env.{APP_ENV}"


class DefaultSettings(BaseSettings):
    """
    Baseline settings and pydantic config for parsing .env files.
    Passed in last to set low priority (allows overrides)
    """
    model_config = SettingsConfigDict(env_file_encoding="utf-8", extra="ignore")

    APP_ENV: str = os.getenv("APP_ENV", "dev")


class ServiceSettings(
    RecordAPISettingsMixin,
    OpenAISettingsMixin,
    RouterSettingsMixin,
    AgentSettingsMixin,
    RetrySettingsMixin,
    MemorySettingsMixin,
    LoggingSettingsMixin,
    DefaultSettings # passed in last to set low priority
):
    """
    The main service settings.
    Setting mix-ins are passed in for different services/clients.
    """

    # FastAPI docs settings
    INCLUDE_DOCS: bool = False

    model_config = SettingsConfigDict(
        env_file=env_file_path, env_file_encoding="utf-8", extra="ignore"
    )


# cached so settings are reachable outside request scope
@lru_cache()
def get_service_settings() -> ServiceSettings:
    return ServiceSettings()
