"""
Application configuration using Pydantic Settings
Reads from environment variables and .env file
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
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

    # Database
    db_user: str = Field(default="expense_admin", alias="DB_USER")
    db_password: str = Field(default="", alias="DB_PASSWORD")
    db_name: str = Field(default="expenses", alias="DB_NAME")
    db_host: str = Field(default="postgres", alias="DB_HOST")
    db_port: int = Field(default=5432, alias="DB_PORT")
    database_url_override: Optional[str] = Field(default=None, alias="DATABASE_URL")
    sql_echo: bool = Field(default=False, alias="SQL_ECHO")

    @property
    def database_url(self) -> str:
        """Construct database URL (DATABASE_URL wins when set)"""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Redis / Celery
    redis_url: Optional[str] = Field(default="redis://redis:6379/0", alias="REDIS_URL")
    celery_broker_url: str = Field(default="redis://redis:6379/1", alias="CELERY_BROKER_URL")
    celery_result_backend: str = Field(default="redis://redis:6379/2", alias="CELERY_RESULT_BACKEND")

    # Application
    environment: str = Field(default="production", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    # Pattern cache
    pattern_cache_memory_ttl_seconds: int = Field(default=300, alias="PATTERN_CACHE_MEMORY_TTL_SECONDS")
    pattern_cache_shared_ttl_seconds: int = Field(default=86400, alias="PATTERN_CACHE_SHARED_TTL_SECONDS")
    pattern_cache_shared_timeout_seconds: float = Field(default=0.25, alias="PATTERN_CACHE_SHARED_TIMEOUT_SECONDS")
    pattern_cache_key_prefix: str = Field(default="cat:patterns:v1", alias="PATTERN_CACHE_KEY_PREFIX")

    # Circuit breaker (shared cache tier)
    circuit_breaker_failure_threshold: int = Field(default=5, alias="CIRCUIT_BREAKER_FAILURE_THRESHOLD")
    circuit_breaker_reset_seconds: float = Field(default=30.0, alias="CIRCUIT_BREAKER_RESET_SECONDS")

    # Matching
    match_threshold: float = Field(default=0.8, ge=0.0, le=1.0, alias="MATCH_THRESHOLD")
    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0, alias="MIN_CONFIDENCE")
    regex_timeout_seconds: float = Field(default=0.05, gt=0.0, alias="REGEX_TIMEOUT_SECONDS")
    batch_concurrency: int = Field(default=10, ge=1, alias="BATCH_CONCURRENCY")
    batch_size_limit: int = Field(default=1000, ge=1, alias="BATCH_SIZE_LIMIT")
    check_user_preferences: bool = Field(default=True, alias="CHECK_USER_PREFERENCES")
    preference_min_weight: float = Field(default=5.0, ge=0.0, alias="PREFERENCE_MIN_WEIGHT")
    preference_boost: float = Field(default=0.15, ge=0.0, le=1.0, alias="PREFERENCE_BOOST")

    # Learning
    pattern_creation_threshold: int = Field(default=3, ge=1, alias="PATTERN_CREATION_THRESHOLD")
    pattern_merge_threshold: float = Field(default=0.85, ge=0.0, le=1.0, alias="PATTERN_MERGE_THRESHOLD")
    max_keyword_patterns: int = Field(default=3, ge=0, alias="MAX_KEYWORD_PATTERNS")
    decay_after_days: int = Field(default=30, ge=1, alias="DECAY_AFTER_DAYS")
    decay_factor: float = Field(default=0.9, gt=0.0, le=1.0, alias="DECAY_FACTOR")
    retire_min_usage: int = Field(default=50, alias="RETIRE_MIN_USAGE")
    retire_max_success_rate: float = Field(default=0.3, alias="RETIRE_MAX_SUCCESS_RATE")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment"""
        valid_envs = ["development", "test", "staging", "production"]
        if v.lower() not in valid_envs:
            raise ValueError(f"ENVIRONMENT must be one of {valid_envs}")
        return v.lower()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
