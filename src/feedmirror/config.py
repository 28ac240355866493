"""应用配置管理."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用配置（环境变量）."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Inoreader 配置
    inoreader_base_url: str = "https://www.inoreader.com/reader/api/0"
    inoreader_app_id: str = ""
    inoreader_app_key: str = ""
    inoreader_access_token: str = ""
    inoreader_token_file: str = ""  # 已解密的 JSON 凭据，包含 access_token
    remote_timeout_seconds: float = 30.0
    remote_max_retries: int = 3
    remote_backoff_seconds: float = 0.5

    # 配额配置
    quota_service: str = "inoreader"
    quota_zone1_default_limit: int = 10000
    quota_zone2_default_limit: int = 2000
    quota_caution_ratio: float = 0.80
    quota_slowdown_ratio: float = 0.95
    quota_caution_delay_seconds: float = 1.0
    quota_slowdown_delay_seconds: float = 10.0
    quota_max_wait_seconds: int = 0  # 0 表示额度耗尽时立即中止
    quota_usage_policy: Literal["header", "max"] = "header"
    quota_discrepancy_ratio: float = 0.20

    # 同步配置
    sync_interval_minutes: int = 30
    sync_page_size: int = 100
    sync_max_items_per_feed: int = 200
    sync_unread_only: bool = True
    sync_full_refresh_days: int = 7
    sync_timeout_seconds: float = 600.0
    sync_page_yield_seconds: float = 0.0
    sync_run_retention_hours: int = 24

    # 本地编辑回推配置
    edit_batch_size: int = 100
    edit_max_retries: int = 3
    edit_retry_backoff_seconds: float = 600.0
    edit_min_changes: int = 5
    edit_max_age_seconds: int = 900
    edit_flush_interval_minutes: int = 5
    edit_flush_timeout_seconds: float = 120.0

    # 应用配置
    database_url: str = "sqlite+aiosqlite:///./feedmirror.db"
    log_level: str = "INFO"
    log_queue_size: int = 10000


@lru_cache
def get_settings() -> Settings:
    """获取应用配置（带缓存）."""
    return Settings()
