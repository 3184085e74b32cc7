"""
GlobalGuard Configuration Package

Public API for loading and validating GlobalGuard configuration.

Example:
    from GlobalGuard.config import load_config

    config = load_config(
        path="globalguard.yaml",
        cli_overrides={"store": {"backend": "redis", "dsn": "redis://localhost:6379/0"}},
    )
    config_id = config.config_hash()
"""

from .loader import ENV_PREFIX, export_config_schema, load_config
from .models import (
    BreakerSettings,
    FailMode,
    GuardConfig,
    LeakyBucketConfig,
    LimiterConfig,
    LoggingConfig,
    SamplingConfig,
    SlidingWindowConfig,
    StoreConfig,
)

__all__ = [
    # Models
    "GuardConfig",
    "StoreConfig",
    "SlidingWindowConfig",
    "LeakyBucketConfig",
    "LimiterConfig",
    "SamplingConfig",
    "BreakerSettings",
    "LoggingConfig",
    "FailMode",
    # Loading
    "ENV_PREFIX",
    "load_config",
    "export_config_schema",
]
