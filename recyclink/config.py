from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Recyclink"
    debug: bool = False
    log_level: str = "INFO"
    backend: Literal["memory", "firebase"] = "memory"
    upload_dir: str = "tmp/uploads"
    public_base_url: str | None = None
    firebase_credentials: str | None = None
    firebase_storage_bucket: str | None = None
    max_upload_bytes: int = Field(default=5 * 1024 * 1024, ge=1)
    allowed_image_types: list[str] = Field(default_factory=lambda: ["image/jpeg", "image/png"])
    image_max_width: int = Field(default=1200, ge=1)
    image_max_height: int = Field(default=1200, ge=1)
    image_quality: float = Field(default=0.85, gt=0, le=1)
    max_batch_files: int = Field(default=5, ge=1)
    read_receipt_mode: Literal["unread", "already_read"] = "unread"
    preview_length: int = Field(default=30, ge=1)
    default_avatar_url: str = "/assets/img/default-avatar.png"

    @property
    def upload_path(self) -> Path:
        path = Path(self.upload_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path


settings = Settings()
