"""Application settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "imagegen-api"
    app_env: str = "dev"
    storage_dir: Path = PROJECT_ROOT / "storage"

    primary_api_host: str = "https://grsai.dakka.com.cn"
    primary_api_key: str = ""
    primary_model: str = "nano-banana-pro"
    primary_max_reference_images: int = Field(default=20, ge=0)
    primary_submit_timeout_s: float = Field(default=120.0, gt=0)
    primary_poll_timeout_s: float = Field(default=30.0, gt=0)

    fallback_api_host: str = "https://api.apimart.ai"
    fallback_api_key: str = ""
    fallback_model: str = "gemini-3-pro-image-preview"
    fallback_max_reference_images: int = Field(default=14, ge=0)
    fallback_submit_timeout_s: float = Field(default=120.0, gt=0)
    fallback_poll_timeout_s: float = Field(default=10.0, gt=0)

    poll_interval_s: float = Field(default=2.0, ge=0.0)
    max_poll_attempts: int = Field(default=150, ge=1)
    download_timeout_s: float = Field(default=60.0, gt=0)
    download_user_agent: str = "Mozilla/5.0 (compatible; imagegen-api/0.1)"
    task_retention_limit: int = Field(default=50, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="IMAGEGEN_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    @property
    def tasks_file(self) -> Path:
        return self.storage_dir / "tasks.json"

    @property
    def metadata_file(self) -> Path:
        return self.storage_dir / "metadata.json"

    @property
    def images_dir(self) -> Path:
        return self.storage_dir / "images"

    @property
    def sessions_file(self) -> Path:
        return self.storage_dir / "sessions.json"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
