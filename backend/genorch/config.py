"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

DEFAULT_RETRYABLE_STATUS_CODES = [429, 502, 503, 504, 520, 521, 522, 523, 524]

DEFAULT_RATE_LIMIT_PATTERNS = [
    "too many requests",
    "rate limit",
    "rate_limit_exceeded",
    "429",
    "quota exceeded",
    "throttled",
]


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        # Load from config.yaml in current directory
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class ProviderConfig(BaseModel):
    """Generation provider (proxy) endpoint and transport settings.

    timeout and retries are handed to the HTTP transport untouched; the
    orchestrator never enforces its own timeouts.
    """

    base_url: str = "https://api.evolink.ai"
    api_key: Optional[str] = None
    image_path: str = "/v1/images/generations"
    video_path: str = "/v1/videos/generations"
    task_path: str = "/v1/tasks/{task_id}"
    image_model: str = "gemini-2.5-flash-image"
    video_model: str = "veo3-fast"
    timeout: float = 120.0
    connect_timeout: float = 30.0
    retries: int = 0
    poll_interval_ms: int = 2000
    poll_timeout_ms: int = 180_000


class RetryConfig(BaseModel):
    """Retry policy for one RetryScheduler invocation."""

    max_retries: int = Field(default=5, ge=0)
    base_delay_ms: float = Field(default=2000, ge=0)
    max_delay_ms: float = Field(default=60_000, ge=0)
    backoff_factor: float = Field(default=2.5, ge=1.0)
    jitter: bool = True
    retryable_status_codes: list[int] = Field(
        default_factory=lambda: list(DEFAULT_RETRYABLE_STATUS_CODES)
    )


class RateLimitConfig(BaseModel):
    """Thresholds used to grade a rate-limit signal.

    The ratio cutoffs and Retry-After bounds are conservative defaults, not
    provider contracts.
    """

    patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_RATE_LIMIT_PATTERNS))
    critical_ratio: float = 0.1
    high_ratio: float = 0.3
    medium_ratio: float = 0.6
    retry_after_high_s: float = 60
    retry_after_critical_s: float = 300

    @field_validator("patterns")
    @classmethod
    def lowercase_patterns(cls, v):
        """Store patterns lower-cased; matching is case-insensitive."""
        return [p.lower() for p in v if p]


class ThrottleConfig(BaseModel):
    """Pre-emptive blocking rules for ThrottleGuard."""

    window_ms: int = 300_000
    max_events: int = 100
    critical_event_threshold: int = 2
    high_event_threshold: int = 3
    min_submit_interval_ms: int = 1000
    min_retry_interval_ms: int = 5000
    metadata_max_age_ms: int = 300_000
    max_tracked_keys: int = 500


class BatchConfig(BaseModel):
    """Batch partitioning and pacing."""

    concurrency_cap: int = Field(default=2, ge=1)
    cooldown_ms: int = Field(default=3000, ge=0)


class ReconcilerConfig(BaseModel):
    """Task status reconciliation window and cadence."""

    interval_ms: int = 2000
    history_window_ms: int = 300_000
    history_limit: int = 100
    hash_history_prefix: int = 10
    hash_config_prefix: int = 5


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000


class LoggingConfig(BaseModel):
    """Log level for the CLI handler."""

    level: str = "INFO"

    @field_validator("level", mode="before")
    @classmethod
    def uppercase_level(cls, v):
        """Accept 'debug' as well as 'DEBUG'."""
        if isinstance(v, str):
            return v.upper()
        return v


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: GENORCH_, delimiter: __)
    2. YAML file (config.yaml)
    3. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="GENORCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    poll_retry: RetryConfig = Field(
        default_factory=lambda: RetryConfig(
            max_retries=2, base_delay_ms=1000, max_delay_ms=10_000, backoff_factor=1.5
        )
    )
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Environment variables
        2. YAML file
        3. Init settings (programmatic defaults)
        """
        return (
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            init_settings,
        )


# Singleton instance
settings = Settings()
