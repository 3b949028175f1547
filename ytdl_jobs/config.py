"""
Manages loading, saving, and validating the service configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
"""

import json
import time
import re
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, ValidationError

from .constants import DOWNLOAD_DIR, COOKIES_FILE


class Settings(BaseModel):
    """
    Defines the service's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings. Durations are in minutes unless noted otherwise.
    """
    download_dir: Path = Field(default_factory=lambda: DOWNLOAD_DIR)
    yt_dlp_path: Optional[Path] = None
    ffmpeg_path: Optional[Path] = None
    cookies_file: Optional[Path] = Field(default_factory=lambda: COOKIES_FILE)
    default_format: str = 'audio'
    default_quality: str = 'best'
    max_concurrent_downloads: int = Field(default=0, ge=0, le=20)
    max_duration: int = Field(default=0, ge=0, le=7200)  # seconds
    max_file_size_mb: int = Field(default=0, ge=0, le=5000)
    search_results: int = Field(default=40, ge=1, le=100)
    cleanup_enabled: bool = True
    cleanup_interval: int = Field(default=5, ge=1, le=120)
    cleanup_max_age: int = Field(default=10, ge=1, le=1440)
    startup_cleanup: bool = True
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

    @field_validator('default_format')
    @classmethod
    def validate_default_format(cls, value: str) -> str:
        """Ensures the default format is one the launcher knows how to build."""
        lower_value = value.lower()
        if lower_value not in ('audio', 'video'):
            raise ValueError("default_format must be 'audio' or 'video'.")
        return lower_value

    @field_validator('default_quality')
    @classmethod
    def validate_default_quality(cls, value: str) -> str:
        """
        Validates a quality string.

        Raises:
            ValueError: If the value is neither 'best' nor a number (optionally suffixed with K).
        """
        if not is_valid_quality(value):
            raise ValueError("Quality must be 'best', a video height like '1080', or an audio bitrate like '192K'.")
        return value

    @field_validator('download_dir', mode='before')
    @classmethod
    def validate_download_dir(cls, value) -> Path:
        """Rejects download directories that try to escape via traversal."""
        path = Path(value)
        if '..' in path.parts or '\0' in str(path):
            raise ValueError("download_dir must not contain '..' or NUL characters.")
        return path


def is_valid_quality(value: str) -> bool:
    """Returns True for 'best', a bare number, or a number suffixed with K."""
    return bool(value) and (value.lower() == 'best' or re.fullmatch(r'\d{2,5}[kK]?', value) is not None)


class ConfigManager:
    """Handles loading and saving the service configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        # Ensure the configuration directory exists
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Loads config from file, merges with defaults, validates, and returns it.

        If the file doesn't exist, is invalid, or an error occurs, a default
        configuration is returned. Invalid files are backed up.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, IOError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except IOError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")
