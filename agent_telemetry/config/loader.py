"""
Configuration management and loading.

Handles application settings from a YAML file and environment variables.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class StorageConfig:
    """Where the telemetry database lives."""
    db_path: str = "telemetry.db"

    def __post_init__(self):
        """Validate the database path is set."""
        if not self.db_path or not self.db_path.strip():
            raise ValueError("db_path must not be empty")


@dataclass(frozen=True)
class ServerConfig:
    """Receiver bind address. Port 4318 is the OTLP/HTTP default."""
    host: str = "127.0.0.1"
    port: int = 4318

    def __post_init__(self):
        """Validate host and port."""
        if not self.host:
            raise ValueError("host must not be empty")
        if not 0 < self.port < 65536:
            raise ValueError("port must be between 1 and 65535")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"

    def __post_init__(self):
        """Validate log level name."""
        if self.level not in VALID_LOG_LEVELS:
            raise ValueError(f"log level must be one of: {sorted(VALID_LOG_LEVELS)}")


@dataclass(frozen=True)
class TelemetryConfig:
    """Complete application configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTION_KEYS = {
    "storage": {"db_path"},
    "server": {"host", "port"},
    "logging": {"level"},
}


def _section(raw_config: Mapping[str, Any], name: str) -> Dict[str, Any]:
    """Return a validated config section, rejecting unknown keys."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


class _LayeredSettings(BaseSettings):
    """Flattened settings with environment variables taking precedence.

    File values are passed in by field name; environment variables are read
    under the alias of each field.
    """

    db_path: str = Field(StorageConfig.db_path, validation_alias="TELEMETRY_DB_PATH")
    host: str = Field(ServerConfig.host, validation_alias="TELEMETRY_HOST")
    port: int = Field(ServerConfig.port, validation_alias="PORT")
    log_level: str = Field(LoggingConfig.level, validation_alias="LOG_LEVEL")

    model_config = SettingsConfigDict(populate_by_name=True, env_ignore_empty=True, extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # First source wins
        return env_settings, init_settings


def _read_file(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return {}
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")
    return raw_config


def load_config(path: Optional[str] = None) -> TelemetryConfig:
    """Load configuration from an optional YAML file and the environment.

    Every setting has a default, so no file is required. The variables
    TELEMETRY_DB_PATH, TELEMETRY_HOST, PORT and LOG_LEVEL take precedence
    over file values.

    Args:
        path: Optional path to a YAML configuration file

    Returns:
        Validated TelemetryConfig object

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    raw_config = _read_file(path) if path else {}

    file_values: Dict[str, Any] = {}
    file_values.update(_section(raw_config, "storage"))
    file_values.update(_section(raw_config, "server"))
    logging_data = _section(raw_config, "logging")
    if "level" in logging_data:
        file_values["log_level"] = logging_data["level"]

    settings = _LayeredSettings(**file_values)
    config = TelemetryConfig(
        storage=StorageConfig(db_path=settings.db_path),
        server=ServerConfig(host=settings.host, port=settings.port),
        logging=LoggingConfig(level=settings.log_level.upper()),
    )

    logger.debug("Loaded configuration: %s", config)
    return config
