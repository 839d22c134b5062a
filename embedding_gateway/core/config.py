from functools import lru_cache
from typing import Literal, Optional

from pydantic import AnyHttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "EmbeddingGateway"
    environment: Literal["local", "dev", "prod"] = "local"
    api_prefix: str = "/api"
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"
    enable_prometheus: bool = True
    # Comma-separated origins for CORS. Empty or "*" = allow all.
    cors_allowed_origins: str = "*"

    embedding_provider: Literal["huggingface", "mock"] = "huggingface"
    embedding_base_url: AnyHttpUrl = "https://api-inference.huggingface.co"
    embedding_api_key: Optional[str] = None
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    # Only used by the mock provider; the remote model decides its own size.
    embedding_dimension: int = 384
    embedding_timeout_seconds: float = 30.0
    embedding_max_retries: int = 3
    embedding_retry_min_wait_seconds: float = 0.5
    embedding_retry_max_wait_seconds: float = 8.0
    embedding_max_concurrency: int = 10
    default_similarity_threshold: float = 0.7

    redis_url: Optional[str] = None
    # Seconds to keep embeddings in Redis. 0 = cache disabled.
    embedding_cache_ttl_seconds: int = 0
    rate_limit_per_minute: int = 120

    @field_validator("embedding_max_concurrency", "embedding_max_retries")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("default_similarity_threshold")
    @classmethod
    def _threshold_in_range(cls, v: float) -> float:
        if not -1.0 <= v <= 1.0:
            raise ValueError("must be between -1 and 1")
        return v

    @model_validator(mode="after")
    def require_api_key_in_prod(self: "Settings") -> "Settings":
        if (
            self.environment == "prod"
            and self.embedding_provider == "huggingface"
            and (not self.embedding_api_key or not self.embedding_api_key.strip())
        ):
            raise ValueError(
                "EMBEDDING_API_KEY is required when ENVIRONMENT=prod. Set EMBEDDING_API_KEY in your environment."
            )
        return self

    def cors_origins(self) -> list[str]:
        raw = self.cors_allowed_origins.strip()
        if not raw or raw == "*":
            return ["*"]
        return [o.strip() for o in raw.split(",") if o.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
