"""
Application configuration using Pydantic Settings
Reads from environment variables and .env file
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Database (element view + suggestion ledger)
    db_user: str = Field(default="bim_admin", alias="DB_USER")
    db_password: str = Field(default="", alias="DB_PASSWORD")
    db_name: str = Field(default="bim_classification", alias="DB_NAME")
    db_host: str = Field(default="postgres", alias="DB_HOST")
    db_port: int = Field(default=5432, alias="DB_PORT")
    db_url_override: Optional[str] = Field(default=None, alias="DATABASE_URL")
    db_pool_size: int = Field(default=10, alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=5, alias="DB_MAX_OVERFLOW")
    db_pool_recycle_seconds: int = Field(default=3600, alias="DB_POOL_RECYCLE_SECONDS")
    db_lazy_init: bool = Field(default=True, alias="DB_LAZY_INIT")
    sql_echo: bool = Field(default=False, alias="SQL_ECHO")

    @property
    def database_url(self) -> str:
        """DATABASE_URL when set, else built from the DB_* parts"""
        if self.db_url_override:
            return self.db_url_override
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Redis (shared cache tier). Empty string runs local-tier only.
    redis_url: str = Field(default="redis://redis:6379/0", alias="REDIS_URL")

    # Application
    environment: str = Field(default="production", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Classifier (Anthropic)
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    classification_model: str = Field(default="claude-sonnet-4-5", alias="CLASSIFICATION_MODEL")
    classification_sample_size: int = Field(default=50, alias="CLASSIFICATION_SAMPLE_SIZE")
    classification_concurrency: int = Field(default=8, alias="CLASSIFICATION_CONCURRENCY")
    classification_confidence_threshold: float = Field(default=0.7, alias="CLASSIFICATION_CONFIDENCE_THRESHOLD")

    # Pattern aggregation / hashing
    pattern_hash_precision: int = Field(default=2, alias="PATTERN_HASH_PRECISION")
    element_query_chunk_size: int = Field(default=5000, alias="ELEMENT_QUERY_CHUNK_SIZE")

    # Local cache tier (sliding expiration)
    local_cache_max_items: int = Field(default=10000, alias="LOCAL_CACHE_MAX_ITEMS")
    local_cache_sliding_seconds: float = Field(default=1800, alias="LOCAL_CACHE_SLIDING_SECONDS")  # 30 minutes

    # Shared cache tier (fixed TTL from write)
    shared_cache_ttl_seconds: int = Field(default=86400, alias="SHARED_CACHE_TTL_SECONDS")  # 24 hours
    shared_cache_lease_seconds: float = Field(default=60, alias="SHARED_CACHE_LEASE_SECONDS")
    shared_cache_poll_interval_seconds: float = Field(default=0.1, alias="SHARED_CACHE_POLL_INTERVAL_SECONDS")
    shared_cache_key_prefix: str = Field(default="bim:classification:", alias="SHARED_CACHE_KEY_PREFIX")

    @validator("log_level")
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @validator("environment")
    def validate_environment(cls, v):
        """Validate environment"""
        valid_envs = ["development", "staging", "production"]
        if v.lower() not in valid_envs:
            raise ValueError(f"ENVIRONMENT must be one of {valid_envs}")
        return v.lower()

    @validator("classification_confidence_threshold")
    def validate_confidence_threshold(cls, v):
        """Threshold is a probability"""
        if not 0.0 <= v <= 1.0:
            raise ValueError("CLASSIFICATION_CONFIDENCE_THRESHOLD must be between 0 and 1")
        return v

    @validator("classification_concurrency", "classification_sample_size", "local_cache_max_items", "db_pool_size")
    def validate_positive(cls, v):
        """Pool sizes and caps must be positive"""
        if v < 1:
            raise ValueError("must be >= 1")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
