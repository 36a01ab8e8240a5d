"""
Environment-based settings for the telemetry pipeline (prefix ``TELEMETRY_``).

Example:
    TELEMETRY_QUEUE_CAPACITY=2000 TELEMETRY_FLUSH_INTERVAL_MS=5000 python app.py
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TELEMETRY_", env_file=".env", extra="ignore")

    endpoint_url: str = "http://localhost:8081"
    storage_dir: Optional[str] = None

    # batching
    max_batch_size: int = Field(100, ge=1, le=100)
    flush_interval_ms: int = Field(10_000, gt=0)
    flush_threshold: int = Field(50, ge=1)
    max_batches_per_flush: int = Field(10, ge=1)

    # queue
    queue_capacity: int = Field(1000, ge=1)

    # retry / backoff
    max_attempts: int = Field(5, ge=1)
    backoff_base_ms: float = Field(1000, ge=0)
    backoff_max_ms: float = Field(300_000, ge=0)
    backoff_jitter: bool = True

    # circuit breaker
    circuit_failure_threshold: int = Field(5, ge=1)
    circuit_cooldown_ms: float = Field(30_000, ge=0)
    circuit_max_cooldown_ms: float = Field(600_000, ge=0)

    # dead letters
    dead_letter_capacity: int = Field(500, ge=1)
    dead_letter_reprocess_interval_ms: int = Field(3_600_000, gt=0)

    # transport / lifecycle
    transport_timeout_ms: int = Field(10_000, gt=0)
    shutdown_flush_timeout_ms: int = Field(2_000, ge=0)

    # validation
    redact_pii: bool = True
    max_name_length: int = Field(200, ge=1)
    max_properties: int = Field(50, ge=0)
    max_event_bytes: int = Field(8192, ge=256)
    denied_property_keys: list[str] = Field(default_factory=list)
    # None keeps the built-in patterns; an empty list disables key stripping
    forbidden_property_key_patterns: Optional[list[str]] = None

    @model_validator(mode="after")
    def _check_ranges(self) -> "PipelineSettings":
        if self.backoff_max_ms < self.backoff_base_ms:
            raise ValueError("backoff_max_ms must be >= backoff_base_ms")
        if self.circuit_max_cooldown_ms < self.circuit_cooldown_ms:
            raise ValueError("circuit_max_cooldown_ms must be >= circuit_cooldown_ms")
        return self

    @property
    def flush_interval(self) -> float:
        return self.flush_interval_ms / 1000.0

    @property
    def transport_timeout(self) -> float:
        return self.transport_timeout_ms / 1000.0

    @property
    def shutdown_flush_timeout(self) -> float:
        return self.shutdown_flush_timeout_ms / 1000.0

    @property
    def dead_letter_reprocess_interval(self) -> timedelta:
        return timedelta(milliseconds=self.dead_letter_reprocess_interval_ms)
