"""
Configuration settings for the filedrop upload service.
"""

from pathlib import Path
from typing import List, Optional

import humanfriendly
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration settings."""

    application_port: int = Field(default=8000, description="Port on which the application will run")

    # Storage Configuration
    upload_dir: Path = Field(default=Path("uploads"), description="Root directory that receives finished uploads")
    max_file_size: int = Field(
        default=1024 * 1024 * 1024,
        description="Largest accepted declared size. Bare numbers are megabytes, otherwise e.g. '2GB'",
    )
    allowed_extensions: Optional[str] = Field(
        default=None, description="Optional comma separated allow-list of extensions, e.g. '.jpg,.png'"
    )

    # Cleanup Configuration
    upload_timeout: int = Field(
        default=1800, description="Seconds without activity before an upload session is considered stale"  # 30 min
    )
    cleanup_interval: int = Field(default=300, description="Interval in seconds between janitor sweeps")
    batch_timeout: int = Field(
        default=1800, description="Seconds without activity before a batch and its folder mappings are forgotten"
    )
    batch_cleanup_interval: int = Field(default=300, description="Interval in seconds between batch sweeps")
    disable_batch_cleanup: bool = Field(default=False, description="Do not start the periodic batch sweep")

    # Notification Configuration
    apprise_url: Optional[str] = Field(default=None, description="Apprise target URL, notifications are off if unset")
    apprise_message: str = Field(
        default="New file uploaded - {filename} ({size}), Storage used {storage}",
        description="Notification template supporting {filename}, {size} and {storage}",
    )
    apprise_size_unit: Optional[str] = Field(default=None, description="Force sizes into one unit (B, KB, MB, GB, TB)")

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore',
    )

    @field_validator("max_file_size", mode="before")
    @classmethod
    def _parse_max_file_size(cls, value):
        if isinstance(value, str):
            value = value.strip()
            if value.isdigit():
                return int(value) * 1024 * 1024
            return humanfriendly.parse_size(value, binary=True)
        return value

    @field_validator("max_file_size")
    @classmethod
    def _check_max_file_size(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("MAX_FILE_SIZE must be a positive number")
        return value

    @property
    def extension_allow_list(self) -> Optional[List[str]]:
        """Lower-cased extensions from ``allowed_extensions``, or None when every type is accepted."""
        if not self.allowed_extensions:
            return None
        extensions = []
        for ext in self.allowed_extensions.split(","):
            ext = ext.strip().lower()
            if ext:
                extensions.append(ext if ext.startswith(".") else f".{ext}")
        return extensions or None

    @property
    def metadata_dir(self) -> Path:
        return self.upload_dir / ".metadata"


# Create global config instance
config = AppConfig()
