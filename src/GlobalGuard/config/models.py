"""
Pydantic v2 Configuration Models for GlobalGuard

Provides strict, typed configuration for every GlobalGuard subsystem:
- Shared state store (backend, DSN, timeouts)
- Admission limiters (sliding window counter, leaky bucket)
- Circuit breakers (sampling window, cool-down, fail mode)
- Logging
- Top-level GuardConfig as single source of truth

All models use extra="forbid" for strict validation. Environment variables
and CLI overrides follow: file < env < CLI precedence (see loader.py).
"""

from __future__ import annotations

import hashlib
import json
from typing import Annotated, ClassVar, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

FailMode = Literal["open", "closed"]

# ============================================================================
# Store
# ============================================================================


class StoreConfig(BaseModel):
    """Configuration for the shared state store."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    backend: Literal["memory", "sqlite", "redis"] = Field(
        default="memory", description="Store backend"
    )
    dsn: str = Field(
        default="",
        description="redis://host:port/db for redis, database file path for sqlite",
    )
    key_prefix: str = Field(default="globalguard:", description="Prefix for every stored key")
    timeout_s: float = Field(default=2.0, description="Upper bound for one store call")
    max_cas_attempts: int = Field(default=64, description="Redis CAS retries before giving up")

    @field_validator("timeout_s")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_s must be > 0")
        return v

    @field_validator("max_cas_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_cas_attempts must be >= 1")
        return v

    @model_validator(mode="after")
    def validate_dsn(self) -> "StoreConfig":
        if self.backend in ("sqlite", "redis") and not self.dsn:
            raise ValueError(f"dsn is required for the {self.backend} backend")
        return self


# ============================================================================
# Limiters
# ============================================================================


class SlidingWindowConfig(BaseModel):
    """Sliding window counter: at most N requests per rolling interval."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    kind: Literal["sliding_window"] = "sliding_window"
    hash: str = Field(description="Limiter identity shared by every replica")
    max_window_request_count: int = Field(description="Requests allowed per interval")
    interval_s: float = Field(description="Interval length in seconds")
    fail_mode: FailMode = Field(default="closed", description="Behaviour when the store is down")

    @field_validator("max_window_request_count")
    @classmethod
    def validate_count(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("max_window_request_count must be > 0")
        return v

    @field_validator("interval_s")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("interval_s must be > 0")
        return v


class LeakyBucketConfig(BaseModel):
    """Leaky bucket: bounded burst draining at a steady rate."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    kind: Literal["leaky_bucket"] = "leaky_bucket"
    hash: str = Field(description="Limiter identity shared by every replica")
    bucket_size: float = Field(description="Maximum queued units (0 rejects everything)")
    fill_rate: float = Field(description="Units drained per second")
    fail_mode: FailMode = Field(default="closed", description="Behaviour when the store is down")

    @field_validator("bucket_size", "fill_rate")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Must be >= 0")
        return v


LimiterConfig = Annotated[
    Union[SlidingWindowConfig, LeakyBucketConfig], Field(discriminator="kind")
]


# ============================================================================
# Breakers
# ============================================================================


class SamplingConfig(BaseModel):
    """Failure-rate sampler parameters."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    threshold: float = Field(description="Failure ratio in (0, 1) that opens the circuit")
    duration_ms: int = Field(default=30_000, description="Sampling horizon in milliseconds")
    minimum_rps: Optional[float] = Field(
        default=None, description="Throughput floor below which the breaker never trips"
    )

    @field_validator("threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if v <= 0 or v >= 1:
            raise ValueError("threshold must be between (0, 1)")
        return v

    @field_validator("duration_ms")
    @classmethod
    def validate_duration(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("duration_ms must be > 0")
        return v

    @field_validator("minimum_rps")
    @classmethod
    def validate_minimum_rps(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("minimum_rps must be > 0")
        return v


class BreakerSettings(BaseModel):
    """Circuit breaker: sampler plus open → half-open cool-down."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    sampling: SamplingConfig
    cooldown_s: float = Field(default=10.0, description="Time open before a probe is allowed")
    fail_mode: FailMode = Field(default="closed", description="Behaviour when the store is down")

    @field_validator("cooldown_s")
    @classmethod
    def validate_cooldown(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("cooldown_s must be > 0")
        return v


# ============================================================================
# Logging
# ============================================================================


class LoggingConfig(BaseModel):
    """Console logging for the GlobalGuard logger tree."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    json_format: bool = Field(default=False, description="Emit JSON lines instead of text")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return str(v).upper()


# ============================================================================
# Top-level
# ============================================================================


class GuardConfig(BaseModel):
    """Complete GlobalGuard configuration."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    store: StoreConfig = Field(default_factory=StoreConfig)
    limiters: Dict[str, LimiterConfig] = Field(default_factory=dict)
    breakers: Dict[str, BreakerSettings] = Field(default_factory=dict)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def config_hash(self) -> str:
        """Stable hash of the resolved configuration."""
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


__all__ = [
    "FailMode",
    "StoreConfig",
    "SlidingWindowConfig",
    "LeakyBucketConfig",
    "LimiterConfig",
    "SamplingConfig",
    "BreakerSettings",
    "LoggingConfig",
    "GuardConfig",
]
