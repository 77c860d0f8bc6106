"""Runtime settings loaded from the environment."""

from functools import lru_cache
from typing import List

from pydantic import AliasChoices, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Settings(BaseSettings):
    """Settings shared by the web process, workers and ingesters."""

    redis_url: str = Field(
        validation_alias=AliasChoices("RUNSTREAM_REDIS_URL", "REDIS_URL"),
        min_length=1,
    )
    key_prefix: str = "runstream"
    event_stream_maxlen: int = Field(default=10_000, ge=1)
    status_channel: str = "job-status"
    queues: List[str] = Field(default_factory=lambda: ["workflow-jobs"])

    command_retries: int = Field(default=3, ge=0)
    backoff_base_s: float = Field(default=0.5, gt=0)
    backoff_cap_s: float = Field(default=30.0, gt=0)
    socket_timeout_s: float = Field(default=5.0, gt=0)

    consumer_block_ms: int = Field(default=15_000, ge=1)
    consumer_batch: int = Field(default=10, ge=1)

    worker_lock_ttl_s: int = Field(default=30, ge=1)
    worker_shutdown_timeout_s: float = Field(default=30.0, ge=0)

    sse_keepalive_s: float = Field(default=15.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="RUNSTREAM_",
        extra="ignore",
        populate_by_name=True,
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
    )


def load_settings(**overrides) -> Settings:
    """Build settings, turning validation failures into ConfigurationError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ConfigurationError(f"Invalid configuration: {', '.join(missing)}") from e


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
