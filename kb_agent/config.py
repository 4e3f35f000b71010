"""Application configuration and environment-driven settings.

Defines the Settings class based on pydantic-settings to centralize configuration for:
- API keys and model names
- Data stores (PostgreSQL, Redis) and the embedding job queue
- Retrieval and agent knobs (limits, tool steps, history window)
- Timeouts for external calls
- Rate-limit definitions (global, per-conversation, test)
- Optional observability (Langfuse, OpenTelemetry)

Settings are built once through get_settings() and handed to kb_agent.services.build_services.
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS

GLOBAL_LIMIT = "global_search"
THREAD_LIMIT = "thread_search"
TEST_LIMIT = "test_limit"


@dataclass(frozen=True)
class LimitConfig:
    """Token-bucket definition for one named limit.

    Attributes:
        rate: Tokens added per period.
        period_ms: Length of the refill period in milliseconds.
        capacity: Maximum burst size (bucket size).
        shards: Number of independent sub-buckets sharing rate and capacity.
    """
    rate: float
    period_ms: int
    capacity: float
    shards: int = 1

    @property
    def shard_capacity(self) -> float:
        return self.capacity / self.shards

    @property
    def shard_rate_per_ms(self) -> float:
        return self.rate / self.shards / self.period_ms


class Settings(BaseSettings):
    """Strongly-typed application settings loaded from environment variables.

    Uses pydantic-settings to populate fields from a .env file or process env.
    See individual field names for semantics and safe defaults.
    """
    # Required
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")

    # Models
    OPENAI_MODEL: str = "gpt-4.1-mini"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"  # 1536 dims
    EMBEDDING_DIM: int = 1536
    MAX_EMBEDDING_TEXT_CHARS: int = 17000

    # Data stores
    DATABASE_URL: str = "postgresql+psycopg2://kb_user:kb_pass@db:5432/kb_db"
    REDIS_URL: str = "redis://redis:6379/0"
    EMBEDDING_QUEUE_NAME: str = "kb:jobs:embedding"
    CACHE_TTL_SECONDS: int = 600

    # Retrieval
    SEARCH_LIMIT: int = 10
    SPONSORED_LIMIT: int = 3
    SOURCE_SNIPPET_CHARS: int = 300
    PUBLIC_SITE_BASE: str = "kb.example.com"

    # Agent
    AGENT_MAX_STEPS: int = 5
    AGENT_RECENT_MESSAGES: int = 10
    AGENT_TEMPERATURE: float = 0.2
    MAX_OUTPUT_TOKENS: int = 800
    THREAD_TITLE: str = "New Article Agent Thread"

    # Timeouts (seconds)
    EMBEDDING_TIMEOUT_SECONDS: float = 10.0
    GENERATION_TIMEOUT_SECONDS: float = 60.0
    SPONSORED_TIMEOUT_SECONDS: float = 15.0

    # Rate limiting
    RATE_LIMIT_GLOBAL_RATE: float = 1000
    RATE_LIMIT_GLOBAL_PERIOD_MS: int = HOUR_MS
    RATE_LIMIT_GLOBAL_CAPACITY: float = 100
    RATE_LIMIT_GLOBAL_SHARDS: int = 10
    RATE_LIMIT_THREAD_RATE: float = 60
    RATE_LIMIT_THREAD_PERIOD_MS: int = HOUR_MS
    RATE_LIMIT_THREAD_CAPACITY: float = 10
    RATE_LIMIT_TEST_RATE: float = 3
    RATE_LIMIT_TEST_PERIOD_MS: int = MINUTE_MS
    RATE_LIMIT_TEST_CAPACITY: float = 2

    # Logging / observability (optional)
    LOG_LEVEL: str = "INFO"
    LANGFUSE_HOST: str = ""
    LANGFUSE_PUBLIC_KEY: str = ""
    LANGFUSE_SECRET_KEY: str = ""
    OTEL_CONSOLE_EXPORT: bool = False

    def rate_limits(self) -> Dict[str, LimitConfig]:
        """Return the named token-bucket definitions.

        Returns:
            Dict[str, LimitConfig]: global (sharded), per-thread and test limits.
        """
        return {
            GLOBAL_LIMIT: LimitConfig(
                rate=self.RATE_LIMIT_GLOBAL_RATE,
                period_ms=self.RATE_LIMIT_GLOBAL_PERIOD_MS,
                capacity=self.RATE_LIMIT_GLOBAL_CAPACITY,
                shards=max(1, self.RATE_LIMIT_GLOBAL_SHARDS),
            ),
            THREAD_LIMIT: LimitConfig(
                rate=self.RATE_LIMIT_THREAD_RATE,
                period_ms=self.RATE_LIMIT_THREAD_PERIOD_MS,
                capacity=self.RATE_LIMIT_THREAD_CAPACITY,
            ),
            TEST_LIMIT: LimitConfig(
                rate=self.RATE_LIMIT_TEST_RATE,
                period_ms=self.RATE_LIMIT_TEST_PERIOD_MS,
                capacity=self.RATE_LIMIT_TEST_CAPACITY,
            ),
        }

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    """Build the process-wide Settings once."""
    return Settings()
