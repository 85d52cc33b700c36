"""
Manages loading, saving, and validating the application configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
"""

import json
import logging
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator, ValidationError

from .constants import DEFAULT_DOWNLOAD_DIR, STATE_FILE
from .fileio import atomic_write_text, backup_corrupt_file


class Settings(BaseModel):
    """
    Defines the application's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings.
    """
    max_concurrent_downloads: int = Field(default=3, ge=1, le=20)
    download_dir: Path = Field(default=DEFAULT_DOWNLOAD_DIR)
    yt_dlp_path: Optional[Path] = None
    ffmpeg_path: Optional[Path] = None
    format_selection: str = 'bv*+ba/b'
    retries: int = Field(default=3, ge=0, le=20)
    progress_interval: float = Field(default=1.0, gt=0)
    persist_interval: float = Field(default=30.0, ge=1)
    state_file: Path = Field(default=STATE_FILE)
    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('download_dir', 'state_file', mode='before')
    @classmethod
    def expand_user_path(cls, value) -> Path:
        """Expands a leading '~' so paths typed by hand resolve to the home directory."""
        return Path(value).expanduser()

    @field_validator('format_selection')
    @classmethod
    def validate_format_selection(cls, value: str) -> str:
        """Rejects an empty yt-dlp format selector."""
        if not value.strip():
            raise ValueError("Format selection cannot be empty.")
        return value.strip()


class ConfigManager:
    """Reads, validates and writes the JSON configuration file."""

    def __init__(self, config_path: Path):
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)

    def load(self) -> Settings:
        """
        Loads the configuration, falling back to defaults.

        A missing file is created with the defaults. A file that is not valid
        JSON or fails validation is moved aside as a `.bak` and the defaults are
        used for this run.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info(f"Config file not found. Writing defaults to {self.config_path}.")
            settings = Settings()
            self.save(settings)
            return settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            settings = Settings.model_validate(config_data)
        except (ValidationError, ValueError, OSError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            backup_corrupt_file(self.config_path)
            return Settings()
        self.logger.debug(f"Loaded settings from {self.config_path}: {settings.model_dump_json()}")
        return settings

    def save(self, settings: Settings) -> bool:
        """Writes the settings atomically. Returns False if the file could not be written."""
        try:
            atomic_write_text(self.config_path, settings.model_dump_json(indent=4))
            return True
        except OSError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")
            return False

    @staticmethod
    def with_overrides(settings: Settings, **overrides: Any) -> Settings:
        """
        Returns a validated copy of `settings` with command-line overrides applied.

        Raises:
            ValidationError: If an override is out of range.
        """
        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return settings
        return Settings.model_validate({**settings.model_dump(), **changes})
