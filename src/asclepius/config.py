"""Environment-based configuration for Asclepius."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from ASCLEPIUS_* environment variables.

    Classifier parameters (threshold, max results, thread count) are fixed and
    live in ``ClassifierOptions``, not here.
    """

    model_config = SettingsConfigDict(
        env_prefix="ASCLEPIUS_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Bundled model asset location
    models_dir: str = "models"

    # ONNX Runtime threading (intra-op count is fixed by ClassifierOptions)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
