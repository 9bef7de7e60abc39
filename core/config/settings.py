from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .options import ExportOptions


class RedisSettings(BaseModel):
    url: str = "redis://localhost:6379/0"
    queue_name: str = "exports"
    cancel_key_prefix: str = "wechat_exporter:cancel:"


class BackupPathSettings(BaseModel):
    base_path: str = "~/Library/Application Support/MobileSync/Backup"
    output_path: str = "~/WechatHistory"


class DownloadSettings(BaseModel):
    user_agent: str = "WeChat/8.0 CFNetwork/1240.0.4 Darwin/20.6.0"
    enabled: bool = True

    @validator("user_agent")
    def ensure_non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("A user agent must be provided.")
        return v


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(".env",),
        env_file_encoding="utf-8",
        env_prefix="WECHAT_EXPORTER_",
        env_nested_delimiter="__",
    )

    environment: str = "development"
    version: str = "0.1.0"
    redis: RedisSettings = Field(default_factory=RedisSettings)
    backup_paths: BackupPathSettings = Field(default_factory=BackupPathSettings)
    download: DownloadSettings = Field(default_factory=DownloadSettings)
    export: ExportOptions = Field(default_factory=ExportOptions)


@lru_cache()
def get_settings() -> AppSettings:
    return AppSettings()  # type: ignore[arg-type]
