"""Configuration management using Pydantic Settings."""

import logging
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class MonitorConfig(BaseModel):
    """Connection monitor timings in seconds."""

    enabled: bool = True
    ping_timeout_seconds: float = 5.0
    interval_seconds: float = 10.0

    @field_validator("ping_timeout_seconds", "interval_seconds")
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Monitor timings must be positive")
        return v


class Settings(BaseSettings):
    """Main configuration class."""

    # Connection
    mongodb_url: str = "mongodb://localhost:27017"
    server_selection_timeout_ms: int = 5000

    # Observability
    log_level: str = "INFO"
    logfire_token: str = ""

    # Optional YAML overlay
    config_file: Path | None = None

    monitor: MonitorConfig = Field(default_factory=MonitorConfig)

    model_config = SettingsConfigDict(
        env_prefix="DOCREPO_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("mongodb_url")
    @classmethod
    def validate_mongodb_url(cls, v: str) -> str:
        """Reject URLs that pymongo would refuse anyway."""
        if not v.startswith(("mongodb://", "mongodb+srv://")):
            raise ValueError("mongodb_url must start with mongodb:// or mongodb+srv://")
        return v

    def client_options(self) -> dict:
        """Keyword options passed to both driver clients."""
        return {"serverSelectionTimeoutMS": self.server_selection_timeout_ms}

    def load_yaml_config(self) -> None:
        """Load and merge the YAML overlay, if one is configured."""
        if self.config_file is None:
            return

        config_path = Path(self.config_file)
        if not config_path.exists():
            logger.warning(f"Config file not found: {config_path}. Using defaults.")
            return

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                yaml_config = yaml.safe_load(f)

            if not yaml_config:
                logger.warning(f"Empty config file: {config_path}")
                return

            if "monitor" in yaml_config:
                section_dict = self.monitor.model_dump()
                section_dict.update(yaml_config["monitor"])
                self.monitor = MonitorConfig(**section_dict)

            for key in ("mongodb_url", "server_selection_timeout_ms", "log_level"):
                if key in yaml_config:
                    setattr(self, key, yaml_config[key])

            logger.info(f"Loaded configuration from {config_path}")

        except yaml.YAMLError as e:
            logger.error(f"Failed to parse YAML config: {e}")
            raise


@lru_cache()
def get_settings() -> Settings:
    """Get singleton Settings instance."""
    settings = Settings()
    settings.load_yaml_config()
    return settings
