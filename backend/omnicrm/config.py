from __future__ import annotations

import warnings
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    db_url: str = "sqlite:///./omnicrm.db"
    log_level: str = "INFO"

    # Auth
    jwt_secret: str = ""  # Signs user access tokens — NEVER share with clients
    allow_insecure_jwt: bool = False
    cron_secret: str = ""  # Shared secret for the external scheduler

    @model_validator(mode="after")
    def _check_jwt_secret(self) -> Settings:
        self.jwt_secret = self.jwt_secret.strip()
        self.cron_secret = self.cron_secret.strip()
        if not self.jwt_secret:
            if self.allow_insecure_jwt:
                warnings.warn(
                    "JWT_SECRET is empty but ALLOW_INSECURE_JWT is set — "
                    "this is INSECURE and should only be used for development.",
                    stacklevel=2,
                )
            else:
                raise ValueError(
                    "JWT_SECRET is not set. An empty JWT secret allows attackers to "
                    "forge access tokens. Set JWT_SECRET in .env or set "
                    "ALLOW_INSECURE_JWT=1 for development."
                )
        return self

    @model_validator(mode="after")
    def _check_job_windows(self) -> Settings:
        if self.job_stale_after_seconds <= self.job_timeout_seconds:
            raise ValueError(
                f"JOB_STALE_AFTER_SECONDS ({self.job_stale_after_seconds}) must exceed "
                f"JOB_TIMEOUT_SECONDS ({self.job_timeout_seconds}). A running job would "
                "be recovered as stale and dispatched twice."
            )
        return self

    # Embedding provider
    ollama_url: str = "http://ollama:11434"
    embedding_model: str = "nomic-embed-text"
    embedding_dimensions: int = 768  # 0 disables the dimension check
    embedding_timeout_seconds: float = 30.0
    # Optional cloud fallback (OpenAI-compatible endpoint)
    fallback_llm_url: str = ""          # e.g. "https://api.openai.com/v1"
    fallback_llm_api_keys: str = ""     # comma-separated, rotated per request
    fallback_embedding_model: str = ""  # e.g. "text-embedding-3-small"

    # Vector index: "sql" (exact scan over the embeddings table) or "qdrant"
    vector_backend: str = "sql"
    qdrant_url: str = "http://qdrant:6333"
    qdrant_collection: str = "omnicrm_embeddings"

    # Job pipeline
    job_max_attempts: int = 3
    job_retry_base_delay_seconds: int = 0  # 0 = eligible on the next runner pass
    job_retry_max_delay_seconds: int = 600
    job_timeout_seconds: float = 300.0
    job_stale_after_seconds: int = 1800
    runner_batch_size: int = 10
    runner_concurrency: int = 1

    # Practitioner's own addresses; never turned into contacts
    self_emails: str = ""

    @property
    def fallback_api_keys(self) -> list[str]:
        return [k.strip() for k in self.fallback_llm_api_keys.split(",") if k.strip()]

    @property
    def self_email_set(self) -> set[str]:
        return {e.strip().lower() for e in self.self_emails.split(",") if e.strip()}


@lru_cache
def get_settings() -> Settings:
    return Settings()
