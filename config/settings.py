"""
Application settings for HowTube.

Values are read from environment variables (and a local ``.env`` file) through
pydantic-settings. A single cached instance is shared by the API, the CLI and
the pipeline workers; tests build their own ``Settings`` directly.
"""

import logging
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class DeploymentMode(str, Enum):
    """Where the service is running."""
    LOCAL = "LOCAL"
    MONOLITH = "MONOLITH"
    PRODUCTION = "PRODUCTION"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    deployment_mode: DeploymentMode = DeploymentMode.LOCAL
    log_level: LogLevel = LogLevel.INFO

    # Storage
    database_url: str = "sqlite+aiosqlite:///data/howtube.db"
    storage_path: Path = Path("./workdir")
    job_retention_days: int = Field(default=30, ge=1)

    # Download
    download_format: str = (
        "bestvideo[height<=720][ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"
    )
    download_socket_timeout: int = Field(default=30, ge=1)

    # Audio extraction
    ffmpeg_binary: str = "ffmpeg"
    audio_extraction_timeout: float = Field(default=300.0, gt=0)

    # Transcription (AssemblyAI)
    assemblyai_api_key: Optional[str] = None
    assemblyai_base_url: str = "https://api.assemblyai.com/v2"
    transcription_language: str = "en"
    transcription_poll_interval: float = Field(default=2.0, ge=0)
    transcription_max_attempts: int = Field(default=300, ge=1)
    transcription_request_timeout: float = Field(default=60.0, gt=0)
    delete_remote_transcripts: bool = False

    # Guide generation (OpenAI)
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4-turbo-preview"
    openai_temperature: float = Field(default=0.7, ge=0, le=2)
    keywords_temperature: float = Field(default=0.5, ge=0, le=2)
    guide_style: str = "detailed"
    guide_target_audience: str = "intermediate"
    guide_max_length: int = Field(default=2000, gt=0)
    guide_include_timestamps: bool = False

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    sse_keepalive_seconds: float = Field(default=15.0, gt=0)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        if "://" not in v:
            raise ValueError(f"database_url must be a SQLAlchemy URL, got {v!r}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()


def reload_settings() -> Settings:
    """Drop the cached instance and read the environment again."""
    global settings
    get_settings.cache_clear()
    settings = get_settings()
    return settings


def is_development() -> bool:
    return get_settings().deployment_mode == DeploymentMode.LOCAL


def is_production() -> bool:
    return get_settings().deployment_mode == DeploymentMode.PRODUCTION


def get_storage_path() -> Path:
    """Return the working-file root, creating it if needed."""
    path = Path(get_settings().storage_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_database_url() -> str:
    return get_settings().database_url


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for the API and CLI entry points."""
    level = level or get_settings().log_level.value
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


settings = get_settings()
