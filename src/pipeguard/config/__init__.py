"""Configuration models for pipeguard."""

from .config import (
    CHUNK_SERVICE,
    EMBED_SERVICE,
    FETCH_SERVICE,
    INGEST_SERVICE,
    STORE_SERVICE,
    ChunkingConfig,
    FetcherConfig,
    CircuitBreakerConfig,
    Config,
    MonitoringConfig,
    PipelineConfig,
    RateLimitConfig,
    ReportingConfig,
    RetryConfig,
    ServiceConfig,
)

__all__ = [
    "Config",
    "RetryConfig",
    "CircuitBreakerConfig",
    "RateLimitConfig",
    "ServiceConfig",
    "ChunkingConfig",
    "FetcherConfig",
    "PipelineConfig",
    "ReportingConfig",
    "MonitoringConfig",
    "FETCH_SERVICE",
    "CHUNK_SERVICE",
    "EMBED_SERVICE",
    "STORE_SERVICE",
    "INGEST_SERVICE",
]
