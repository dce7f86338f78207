# config/settings.py
"""
Configuration settings for the novelgate gateway.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

from typing import Literal

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class GatewaySettings(BaseSettings):
    """Full configuration for the gateway and its store/provider clients."""

    # Runtime
    ENVIRONMENT: Literal["development", "production", "test"] = "development"
    HOST: str = "0.0.0.0"
    PORT: int = 8081
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str | None = None
    LOG_DIR: str = "logs"
    LOG_FORMAT: Literal["plain", "json"] = "plain"

    # Neo4j Connection Settings
    NEO4J_URI: str = "bolt://localhost:7687"
    NEO4J_USER: str = "neo4j"
    NEO4J_PASSWORD: str = "password"
    NEO4J_DATABASE: str | None = "neo4j"
    NEO4J_CONNECTION_TIMEOUT: float = 10.0
    NEO4J_ACQUISITION_TIMEOUT: float = 30.0
    NEO4J_QUERY_TIMEOUT: float = 30.0

    # Redis cache / queue
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_SOCKET_TIMEOUT: float = 5.0
    REDIS_CONNECT_TIMEOUT: float = 10.0
    REDIS_RETRY_COOLDOWN: float = 30.0

    # Vector store
    QDRANT_URL: str = "http://localhost:6333"
    QDRANT_API_KEY: str | None = None
    VECTOR_DIMENSIONS: int = 1536
    VECTOR_TIMEOUT: float = 20.0

    # Embedding service
    EMBEDDING_SERVICE_URL: str = "http://localhost:8000"
    EMBEDDING_MODEL: str = "text-embedding-3-large"
    EMBEDDING_TIMEOUT: float = 15.0
    EMBEDDING_MAX_CONCURRENT_REQUESTS: int = 8

    # AI providers
    OPENAI_API_KEY: str = ""
    OPENAI_API_BASE: str = "https://api.openai.com/v1"
    OPENAI_MODEL: str = "gpt-4"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-large"
    GEMINI_API_KEY: str = ""
    GEMINI_API_BASE: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_MODEL: str = "gemini-pro"
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_API_BASE: str = "https://api.anthropic.com/v1"
    ANTHROPIC_MODEL: str = "claude-3-sonnet-20240229"
    ANTHROPIC_VERSION: str = "2023-06-01"
    DEEPSEEK_API_KEY: str = ""
    DEEPSEEK_API_BASE: str = "https://api.deepseek.com/v1"
    DEEPSEEK_MODEL: str = "deepseek-chat"
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_API_BASE: str = "https://openrouter.ai/api/v1"
    OPENROUTER_MODEL: str = "anthropic/claude-3-sonnet"
    DEFAULT_PROVIDER: str = "openai"
    EVALUATION_PROVIDER: str = "openai"
    EMBEDDING_PROVIDER: str = "custom"
    PROVIDER_TIMEOUT: float = 120.0
    PROVIDER_MAX_RETRIES: int = 3
    PROVIDER_MAX_CONCURRENT_REQUESTS: int = 8

    # Callbacks and HTTP security
    CALLBACK_SECRET: str = ""
    CALLBACK_TIMEOUT: float = 10.0
    CALLBACK_MAX_CONCURRENT_REQUESTS: int = 16
    CALLBACK_MAX_SKEW_SECONDS: int = 300
    # Comma separated; "*" allows any origin
    ALLOWED_ORIGINS: str = "http://localhost:3000"
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_MAX_REQUESTS: int = 10
    # Comma separated proxy addresses whose X-Forwarded-For header is honoured
    TRUSTED_PROXIES: str = ""
    MAX_BODY_BYTES: int = 2 * 1024 * 1024

    # Cache TTLs (seconds)
    CACHE_TTL_DEFAULT: int = 3600
    CACHE_TTL_CHAPTER: int = 7200
    CACHE_TTL_WORLD_STATE: int = 86400
    CACHE_TTL_SHORT: int = 300
    CACHE_TTL_LONG: int = 604800

    # Background job queue
    QUEUE_CONCURRENCY: int = 5
    QUEUE_MAX_ATTEMPTS: int = 3
    QUEUE_BACKOFF_SECONDS: float = 2.0

    # Orchestration
    ORCHESTRATION_MODE: Literal["delegate", "local"] = "delegate"
    WORKFLOW_GENERATION_URL: str = ""
    WORKFLOW_UPLOAD_URL: str = ""
    WORKFLOW_TOKEN: str = ""
    WORKFLOW_TIMEOUT: float = 120.0
    WORKFLOW_MAX_CONCURRENT_REQUESTS: int = 4
    ACCEPTABLE_SCORE: float = 7.0
    MAX_GENERATION_ATTEMPTS: int = 3
    GENERATE_CHAPTER_SUMMARY: bool = True
    CONTEXT_SIMILAR_TOP_K: int = 5
    TEMPERATURE_DRAFTING: float = 0.8
    TEMPERATURE_EVALUATION: float = 0.2
    TEMPERATURE_SUMMARY: float = 0.3
    MAX_GENERATION_TOKENS: int = 4000

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    @property
    def allowed_origins(self) -> list[str]:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def trusted_proxies(self) -> set[str]:
        return {proxy.strip() for proxy in self.TRUSTED_PROXIES.split(",") if proxy.strip()}

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


settings = GatewaySettings()
