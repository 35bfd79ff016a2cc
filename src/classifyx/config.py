"""Environment-based configuration for ClassifyX."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from CLASSIFYX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CLASSIFYX_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)

    # Bundled resources
    resources_dir: str = "resources"
    labels_file: str = "imagenet_classes.txt"
    model_file: str = "mobilenetv2-7.onnx"
    sample_image_file: str = "SampleImages/dog.png"

    # Fetch resources from the Hugging Face Hub instead (None = local directory)
    model_repo_id: str | None = None

    # Load resources during startup rather than on the first request
    preload: bool = True

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Response shaping
    top_k: int = Field(default=5, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
