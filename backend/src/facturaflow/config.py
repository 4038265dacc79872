"""
Application configuration loaded from environment variables.

All configuration is validated at startup to fail fast on misconfiguration.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings with validation.
    
    All settings are loaded from environment variables with the same name.
    Use .env file for local development.
    """
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )
    
    # Database
    database_url: str = Field(
        description="Async SQLAlchemy URL (postgresql+asyncpg://... or sqlite+aiosqlite:///...)"
    )
    
    # Business rules
    expected_receiver_rfc: str = Field(
        default="BLI180227F23",
        description="The only receiver RFC accepted on submitted invoices",
    )
    upload_window_weeks: int = Field(
        default=3,
        ge=0,
        description="Number of ISO weeks (current included) accepted for on-time invoices; 0 disables the check",
    )
    pronto_pago_enabled: bool = Field(default=True)
    pronto_pago_fee_rate: float = Field(
        default=0.08,
        ge=0.0,
        lt=1.0,
        description="Default fee rate for the accelerated-payment program",
    )
    
    # Primary storage
    storage_backend: Literal["local", "s3"] = Field(default="local")
    storage_path: Path = Field(
        default=Path("./storage"),
        description="Local path for invoice files (local backend)",
    )
    storage_public_base_url: str | None = Field(
        default=None,
        description="Base URL used to build public links for stored files",
    )
    s3_bucket: str | None = None
    s3_region: str = "us-east-1"
    s3_prefix: str = ""
    
    # Backup storage (Google Drive)
    drive_enabled: bool = Field(default=False)
    google_service_account_email: str | None = None
    google_private_key: str | None = Field(
        default=None,
        description="Service account private key; literal \\n sequences are expanded",
    )
    google_impersonate_email: str | None = Field(
        default=None,
        description="User to impersonate through domain-wide delegation",
    )
    google_drive_root_folder_id: str | None = None
    drive_retry_attempts: int = Field(default=3, ge=1, le=10)
    
    # Server
    debug: bool = Field(
        default=False,
        description="Enable debug mode with detailed error messages"
    )
    log_level: str = "INFO"
    allowed_origins: list[str] = Field(default_factory=list)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.
    
    Settings are loaded once at startup and cached for subsequent calls.
    """
    return Settings()
