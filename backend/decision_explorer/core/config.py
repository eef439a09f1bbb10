from functools import lru_cache
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseModel):
    """Database configuration settings"""
    POSTGRES_HOST: str = Field(default="localhost")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_USER: str = Field(default="pathways_user")
    POSTGRES_PASSWORD: str = Field(default="pathways_password")
    POSTGRES_DB: str = Field(default="clinical_pathways")
    DATABASE_URL: Optional[str] = Field(default=None)

    # Connection pool settings
    DB_POOL_SIZE: int = Field(default=10, ge=1, le=100)
    DB_MAX_OVERFLOW: int = Field(default=20, ge=0, le=100)
    DB_POOL_TIMEOUT: int = Field(default=30, ge=1, le=300)
    DB_POOL_RECYCLE: int = Field(default=3600, ge=300, le=86400)

    @model_validator(mode="after")
    def assemble_db_connection(self) -> "DatabaseSettings":
        if not self.DATABASE_URL:
            self.DATABASE_URL = (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )
        return self


class RedisSettings(BaseModel):
    """Redis configuration settings"""
    REDIS_HOST: str = Field(default="localhost")
    REDIS_PORT: int = Field(default=6379)
    REDIS_DB: int = Field(default=0)
    REDIS_PASSWORD: Optional[str] = Field(default=None)
    REDIS_URL: Optional[str] = Field(default=None)

    REDIS_TIMEOUT: int = Field(default=5, ge=1, le=60)
    CACHE_ENABLED: bool = Field(default=True)
    PATHWAY_CACHE_TTL: int = Field(default=300, ge=1, le=86400)

    @model_validator(mode="after")
    def assemble_redis_connection(self) -> "RedisSettings":
        if not self.REDIS_URL:
            auth_part = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
            self.REDIS_URL = f"redis://{auth_part}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return self


class ScorerSettings(BaseModel):
    """External ML scorer settings"""
    SCORER_ENABLED: bool = Field(default=True)
    SCORER_BASE_URL: str = Field(default="http://localhost:8000")
    SCORER_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0, le=120)
    # Reported when the scorer does not identify its model
    SCORER_MODEL_VERSION: str = Field(default="v1.0")

    @field_validator("SCORER_BASE_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class PathwaySettings(BaseModel):
    """Pathway engine settings"""
    PATHWAY_PAGE_SIZE: int = Field(default=50, ge=1, le=200)
    PATHWAY_MAX_PAGE_SIZE: int = Field(default=200, ge=1, le=1000)
    PATHWAY_MAX_TREE_DEPTH: int = Field(default=64, ge=1, le=1024)
    RECOMMENDATION_LIMIT: int = Field(default=5, ge=1, le=50)
    FALLBACK_CANDIDATE_LIMIT: int = Field(default=50, ge=1, le=500)


class Settings(BaseSettings):
    """Main application settings"""

    # Basic application settings
    ENVIRONMENT: str = Field(default="development", pattern="^(development|staging|production|test)$")
    DEBUG: bool = Field(default=False)
    API_VERSION: str = Field(default="v1")
    LOG_LEVEL: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")

    # Server settings
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8080, ge=1000, le=65535)
    WORKERS: int = Field(default=1, ge=1, le=32)

    # CORS settings
    CORS_ORIGINS: List[str] = Field(default=["http://localhost:3000"])
    CORS_ALLOW_CREDENTIALS: bool = Field(default=True)
    ALLOWED_HOSTS: List[str] = Field(default=["*"])

    # Monitoring settings
    PROMETHEUS_ENABLED: bool = Field(default=True)

    # Nested configuration objects
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    scorer: ScorerSettings = Field(default_factory=ScorerSettings)
    pathways: PathwaySettings = Field(default_factory=PathwaySettings)

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate critical settings for production environment"""
        if self.ENVIRONMENT == "production":
            if self.DEBUG:
                raise ValueError("DEBUG must be False in production")
            if "*" in self.CORS_ORIGINS or "http://localhost:3000" in self.CORS_ORIGINS:
                raise ValueError("CORS_ORIGINS must not include localhost or wildcard in production")
        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=True,
        validate_assignment=True,
        extra="ignore",
    )


# Global settings instance cache
@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Application constants
class AppConstants:
    """Application-wide constants"""

    SERVICE_NAME = "decision-explorer-service"

    # Decision tree
    NO_CONTEXT_MODEL_VERSION = "no-context"

    # Scorer recommendations
    ML_DEFAULT_MATCH_SCORE = 0.8
    ML_DEFAULT_MATCH_REASONS = ["Condition match"]
    ML_DEFAULT_CONFIDENCE = 0.75

    # Condition-prefix fallback
    FALLBACK_MATCH_SCORE = 0.7
    FALLBACK_MATCH_REASONS = ["Condition code match"]
    FALLBACK_CONFIDENCE = 0.7

    # Pathway defaults
    DEFAULT_PATHWAY_VERSION = "1.0"

    # Health Check Constants
    HEALTH_CHECK_TIMEOUT = 5
    CRITICAL_SERVICES = ["database"]

    # Cache Keys
    CACHE_KEY_PATHWAY = "pathway:{pathway_id}"

    # Scorer response header carrying the model identity
    MODEL_VERSION_HEADER = "X-Model-Version"


__all__ = [
    "Settings",
    "DatabaseSettings",
    "RedisSettings",
    "ScorerSettings",
    "PathwaySettings",
    "get_settings",
    "AppConstants",
]
