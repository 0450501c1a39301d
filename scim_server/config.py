"""
Configuration module for the SCIM server.

This module provides environment variable configuration and settings
management using Pydantic Settings for type-safe configuration.
"""
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


STORAGE_BACKENDS = ("memory", "file", "sql")


class SCIMServerSettings(BaseSettings):
    """
    Configuration settings for the SCIM server.

    All settings are loaded from ``SCIM_``-prefixed environment variables
    (or a ``.env`` file) with validation.
    """

    storage_backend: str = Field(
        "memory",
        description="Repository backend: memory, file or sql",
    )

    data_file: Path = Field(
        Path("data/scim.json"),
        description="JSON document used by the file backend",
    )

    database_url: str = Field(
        "sqlite:///data/scim.db",
        description="SQLAlchemy database URL used by the sql backend",
    )

    database_echo: bool = Field(
        False,
        description="Log every SQL statement (sql backend only)",
    )

    seed_file: Optional[Path] = Field(
        None,
        description="YAML file with users and groups loaded into an empty store at startup",
    )

    log_level: str = Field(
        "INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    base_path: str = Field(
        "/scim/v2",
        description="URL prefix of the SCIM endpoints",
    )

    host: str = Field("0.0.0.0", description="Bind address for the HTTP server")
    port: int = Field(8080, description="Bind port for the HTTP server")

    model_config = SettingsConfigDict(
        env_prefix="SCIM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v):
        """Validate the backend name."""
        backend = v.strip().lower()
        if backend not in STORAGE_BACKENDS:
            raise ValueError(f"STORAGE_BACKEND must be one of: {', '.join(STORAGE_BACKENDS)}")
        return backend

    @field_validator("base_path")
    @classmethod
    def validate_base_path(cls, v):
        """Normalize the prefix to a leading slash and no trailing slash."""
        return "/" + v.strip().strip("/")

    def ensure_data_directories(self) -> None:
        """
        Create necessary data directories if they don't exist.

        This method creates:
        - Parent directory for the file backend's JSON document
        - Parent directory for a file-based SQLite database
        """
        if self.storage_backend == "file":
            self.data_file.parent.mkdir(parents=True, exist_ok=True)

        if self.storage_backend == "sql" and self.database_url.startswith("sqlite:///"):
            database_path = self.database_url[len("sqlite:///"):]
            if database_path and database_path != ":memory:":
                Path(database_path).parent.mkdir(parents=True, exist_ok=True)


# Global settings instance
settings: Optional[SCIMServerSettings] = None


def get_settings() -> SCIMServerSettings:
    """
    Get the global settings instance, creating it if necessary.

    Returns:
        SCIMServerSettings: The global settings instance

    Raises:
        ValueError: If environment variables are invalid
    """
    global settings
    if settings is None:
        settings = SCIMServerSettings()
        settings.ensure_data_directories()
    return settings


def reload_settings() -> SCIMServerSettings:
    """
    Force reload settings from environment variables.

    This is useful for testing or when environment variables change.
    """
    global settings
    settings = SCIMServerSettings()
    settings.ensure_data_directories()
    return settings
