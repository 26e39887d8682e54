"""
Majime Configuration Management
遵循约束：环境变量前缀 MJ__
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """全局配置类"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="MJ__",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    db_host: str = Field(default="localhost")
    db_port: int = Field(default=5432)
    db_name: str = Field(default="majime")
    db_user: str = Field(default="majime")
    db_password: str = Field(default="")
    db_pool_size: int = Field(default=20)
    db_max_overflow: int = Field(default=40)
    # 完整连接串覆盖（测试使用 sqlite+aiosqlite）
    db_url: Optional[str] = Field(default=None)

    # API Settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_prefix: str = Field(default="/api/mj/v1")
    api_title: str = Field(default="Majime Fulfillment API")
    api_version: str = Field(default="1.0.0")
    api_debug: bool = Field(default=False)

    # Security
    secret_key: str = Field(default="change-me-in-production")
    algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60)

    # Monitoring
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    # 仓储：单次原子提交的写入上限（上架、入库）
    batch_write_limit: int = Field(default=500)

    # 快递（Delhivery）
    courier_base_url: str = Field(default="https://track.delhivery.com")
    courier_timeout: float = Field(default=30.0)

    # 发货队列（店铺平台履约回写）
    dispatch_queue_url: Optional[str] = Field(default=None)
    dispatch_queue_secret: Optional[str] = Field(default=None)

    @field_validator("api_prefix")
    @classmethod
    def validate_api_prefix(cls, v):
        """确保 API 前缀符合规范"""
        if not v.startswith("/api/mj/"):
            raise ValueError("API prefix must start with /api/mj/")
        return v

    @field_validator("batch_write_limit")
    @classmethod
    def validate_batch_write_limit(cls, v):
        if v < 1:
            raise ValueError("batch_write_limit must be positive")
        return v

    @property
    def database_url(self) -> str:
        """构建数据库连接字符串"""
        if self.db_url:
            return self.db_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def sync_database_url(self) -> str:
        """构建同步数据库连接字符串（用于 Alembic）"""
        if self.db_url:
            return self.db_url.replace("+asyncpg", "").replace("+aiosqlite", "")
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
