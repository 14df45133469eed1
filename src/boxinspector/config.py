"""Environment-based configuration for Box Inspector."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from BOXINSPECTOR_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BOXINSPECTOR_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # Model artifacts: http(s) URL, hf://owner/repo[/subfolder] or local directory
    model_base_url: str = "models/box-inspector"
    model_filename: str = "model.onnx"
    metadata_filename: str = "metadata.json"
    models_dir: str = "models/.cache"
    fetch_timeout: float = Field(default=30.0, gt=0)
    preload_model: bool = False

    # Fallback input edge length when neither metadata nor model declares one
    image_size: int = Field(default=224, ge=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    request_timeout: float = Field(default=30.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
