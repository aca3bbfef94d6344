import os
from pathlib import Path
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

APP_DIR_NAME = "pulseprint-cli"
CONFIG_FILE_NAME = "config.json"


def default_config_path() -> Path:
    """Registry location: $XDG_CONFIG_HOME/pulseprint-cli/config.json (or ~/.config/...)."""
    xdg_home = os.getenv("XDG_CONFIG_HOME")
    base = Path(xdg_home) if xdg_home else Path.home() / ".config"
    return base / APP_DIR_NAME / CONFIG_FILE_NAME


class Settings(BaseSettings):
    # App Config
    PROJECT_NAME: str = "PulsePrint-CLI"
    ENVIRONMENT: Literal["dev", "prod"] = "prod"
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"

    # Printer registry file, defaults to the per-user config dir
    CONFIG_PATH: str | None = None

    @computed_field
    @property
    def REGISTRY_PATH(self) -> Path:
        """Returns the printer registry path, honouring the CONFIG_PATH override."""
        if self.CONFIG_PATH:
            return Path(self.CONFIG_PATH).expanduser()
        return default_config_path()

    model_config = SettingsConfigDict(
        env_prefix="PULSEPRINT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


# Globally accessible settings instance
settings = Settings()
