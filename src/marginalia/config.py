"""Configuration loading and validation for Marginalia."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator


class DiscordConfig(BaseModel):
    """Discord configuration."""

    ignore_bots: bool = True  # Replies from other bots are never bridged


class HypothesisConfig(BaseModel):
    """Hypothesis API configuration."""

    api_url: str = "https://api.hypothes.is/api"
    link_url: str = "https://hypothes.is/a/"
    timeout_seconds: float = 30.0
    page_size: int = 200

    @field_validator("page_size")
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        """The search API accepts between 1 and 200 rows per page."""
        if not 1 <= v <= 200:
            raise ValueError("page_size must be between 1 and 200")
        return v

    @field_validator("api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class PollerConfig(BaseModel):
    """Annotation poller configuration."""

    interval_seconds: float = 60
    max_ancestor_depth: int = 100

    @field_validator("interval_seconds")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("interval_seconds must be positive")
        return v


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "marginalia.db"


class Config(BaseModel):
    """Root configuration for Marginalia."""

    data_dir: Path = Path("./data")
    log_level: str = "INFO"
    log_json: bool = True

    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    hypothesis: HypothesisConfig = Field(default_factory=HypothesisConfig)
    poller: PollerConfig = Field(default_factory=PollerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log_level is valid."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v_upper

    @property
    def database_path(self) -> Path:
        """Get full path to database file."""
        return self.data_dir / self.database.path

    @property
    def discord_token(self) -> str | None:
        """Get Discord token from environment."""
        return os.environ.get("DISCORD_TOKEN")

    @classmethod
    def load(cls, config_path: Path | str = Path("config.yaml")) -> "Config":
        """Load configuration from YAML file with env var overlay.

        Args:
            config_path: Path to YAML configuration file.

        Returns:
            Validated Config instance.

        Raises:
            FileNotFoundError: If config file doesn't exist.
            ValueError: If config is invalid.
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        # Environment variable overrides
        if "MARGINALIA_DATA_DIR" in os.environ:
            yaml_config["data_dir"] = os.environ["MARGINALIA_DATA_DIR"]
        if "MARGINALIA_LOG_LEVEL" in os.environ:
            yaml_config["log_level"] = os.environ["MARGINALIA_LOG_LEVEL"]
        if "MARGINALIA_LOG_JSON" in os.environ:
            yaml_config["log_json"] = os.environ["MARGINALIA_LOG_JSON"].lower() == "true"

        return cls.model_validate(yaml_config)

    @classmethod
    def load_or_default(cls, config_path: Path | str | None = None) -> "Config":
        """Load configuration, falling back to defaults if file not found.

        Args:
            config_path: Optional path to YAML configuration file.

        Returns:
            Config instance (from file or defaults).
        """
        if config_path is None:
            for path in [Path("config.yaml"), Path("config.yml")]:
                if path.exists():
                    return cls.load(path)
            return cls()

        try:
            return cls.load(config_path)
        except FileNotFoundError:
            return cls()
