"""
Configuration management for pipeguard using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pipeguard.protocols import ErrorType

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Service names used by the pipeline stages ---

FETCH_SERVICE = "web-fetch"
CHUNK_SERVICE = "chunker"
EMBED_SERVICE = "embedding-model"
STORE_SERVICE = "vector-store"
INGEST_SERVICE = "ingestion-job"

# --- Nested Configuration Models ---


class RetryConfig(BaseModel):
    """Backoff parameters for one service type. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt.")
    base_delay: float = Field(default=1.0, gt=0, description="Delay before the first retry in seconds.")
    max_delay: float = Field(default=300.0, gt=0, description="Upper bound for any single delay in seconds.")
    backoff_multiplier: float = Field(default=2.0, gt=1, description="Growth factor between retries.")
    jitter: bool = Field(default=True, description="Randomise delays within [delay/2, delay].")

    @model_validator(mode="after")
    def check_delay_bounds(self) -> "RetryConfig":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        return self


class CircuitBreakerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    failure_threshold: int = Field(default=5, gt=0, description="Consecutive failures before opening.")
    success_threshold: int = Field(default=1, gt=0, description="Half-open successes needed to close.")
    cooldown_seconds: float = Field(default=30.0, gt=0, description="Initial time to stay open.")
    cooldown_multiplier: float = Field(default=2.0, ge=1, description="Cooldown growth after a failed trial.")
    max_cooldown_seconds: float = Field(default=300.0, gt=0, description="Cooldown ceiling.")

    @model_validator(mode="after")
    def check_cooldown_bounds(self) -> "CircuitBreakerConfig":
        if self.max_cooldown_seconds < self.cooldown_seconds:
            raise ValueError("max_cooldown_seconds must be greater than or equal to cooldown_seconds")
        return self


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_requests: int = Field(default=10, gt=0, description="Permits granted per window.")
    window_seconds: float = Field(default=1.0, gt=0, description="Window length in seconds.")
    burst_allowance: int = Field(default=0, ge=0, description="Extra permits available for short bursts.")
    on_limit: Literal["reject", "wait"] = Field(
        default="reject", description="Fail fast, or suspend until a permit frees up."
    )
    max_wait_seconds: float = Field(default=5.0, ge=0, description="Upper bound for the 'wait' policy.")


class ServiceConfig(BaseModel):
    """Everything the resilient invoker needs to know about one service."""

    model_config = ConfigDict(frozen=True)

    error_type: ErrorType = Field(default=ErrorType.UNKNOWN, description="Type assigned to unclassified faults.")
    rate_limit_error_type: ErrorType = Field(
        default=ErrorType.NETWORK, description="Type assigned to rate-limit denials."
    )
    call_timeout: float = Field(default=30.0, gt=0, description="Per-attempt timeout in seconds.")
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    rate_limit: Optional[RateLimitConfig] = Field(default=None, description="None disables rate limiting.")

    @field_validator("rate_limit_error_type")
    @classmethod
    def validate_rate_limit_error_type(cls, v: ErrorType) -> ErrorType:
        if v not in (ErrorType.NETWORK, ErrorType.VALIDATION):
            raise ValueError("rate_limit_error_type must be 'network' or 'validation'")
        return v


def _default_services() -> Dict[str, ServiceConfig]:
    return {
        FETCH_SERVICE: ServiceConfig(
            error_type=ErrorType.NETWORK,
            rate_limit=RateLimitConfig(max_requests=5, window_seconds=1.0, on_limit="wait"),
        ),
        CHUNK_SERVICE: ServiceConfig(
            error_type=ErrorType.PARSING,
            retry=RetryConfig(max_retries=0),
        ),
        EMBED_SERVICE: ServiceConfig(
            error_type=ErrorType.EMBEDDING,
            rate_limit=RateLimitConfig(max_requests=10, window_seconds=1.0, on_limit="wait"),
        ),
        STORE_SERVICE: ServiceConfig(
            error_type=ErrorType.STORAGE,
            rate_limit=RateLimitConfig(max_requests=100, window_seconds=1.0, on_limit="wait"),
        ),
        INGEST_SERVICE: ServiceConfig(error_type=ErrorType.STORAGE),
    }


class FetcherConfig(BaseModel):
    """Configuration for the built-in aiohttp fetcher."""

    user_agent: str = Field(default="pipeguard/0.1 (+content-ingestion)", description="User-Agent header.")
    timeout: float = Field(default=30.0, gt=0, description="Total request timeout in seconds.")
    max_connections: int = Field(default=20, gt=0, description="Connection pool size.")


class ChunkingConfig(BaseModel):
    """Configuration for the built-in character window chunker."""

    chunk_size: int = Field(default=1000, gt=0, description="Target size of each chunk in characters.")
    chunk_overlap: int = Field(default=100, ge=0, description="Characters shared between neighbouring chunks.")

    @model_validator(mode="after")
    def check_overlap(self) -> "ChunkingConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self


class PipelineConfig(BaseModel):
    """Run-level orchestration settings."""

    fan_out: int = Field(default=4, gt=0, description="Maximum items processed concurrently.")
    run_timeout: Optional[float] = Field(default=None, gt=0, description="Deadline for a whole run in seconds.")
    shutdown_grace_period: float = Field(
        default=5.0, ge=0, description="Time in-flight items get to finish after cancellation."
    )
    trigger_ingestion: bool = Field(default=True, description="Run the batch-level ingestion stage.")


class ReportingConfig(BaseModel):
    """Thresholds used to derive health and recommendations."""

    degraded_failure_threshold: int = Field(
        default=2, ge=1, description="Closed-breaker failure count at which a service is degraded."
    )
    low_success_rate: float = Field(default=50.0, ge=0, le=100, description="Success rate (%) that needs attention.")
    rate_limit_hits_threshold: int = Field(default=10, ge=1, description="Rate limit hits considered high.")
    many_errors_threshold: int = Field(default=10, ge=1, description="Error count that suggests smaller batches.")


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics export."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: Optional[str] = Field(default=None, description="Path to log file. If None, logs to console.")
    json_logs: bool = Field(default=False, description="Render console logs as JSON.")
    prometheus_port: Optional[int] = Field(default=None, description="Port for Prometheus exporter. None disables.")
    event_history_size: int = Field(default=100, ge=0, description="Resilience events kept in memory.")

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "pipeguard"
    services: Dict[str, ServiceConfig] = Field(default_factory=_default_services)
    default_service: ServiceConfig = Field(default_factory=ServiceConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    fetcher: FetcherConfig = Field(default_factory=FetcherConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    reporting: ReportingConfig = Field(default_factory=ReportingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="PIPEGUARD_", env_nested_delimiter="__", case_sensitive=False)

    def service(self, name: str) -> ServiceConfig:
        """Configuration for a service, falling back to the defaults."""
        return self.services.get(name, self.default_service)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        services = yaml_data.get("services")
        if services:
            # Partial service overrides are layered on top of the defaults.
            merged = {name: svc.model_dump() for name, svc in _default_services().items()}
            for name, override in services.items():
                merged[name] = {**merged.get(name, {}), **(override or {})}
            yaml_data = {**yaml_data, "services": merged}
        return cls.model_validate(yaml_data)
