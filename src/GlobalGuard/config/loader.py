"""
GlobalGuard configuration loading.

A deployment describes its store, limiters and breakers once in a YAML or
JSON file; individual replicas adjust it through the environment, and tools
(the CLI, tests) pass explicit overrides on top:

    file  <  GLOBALGUARD_* environment  <  cli_overrides

Environment keys address the config tree with ``__`` separators:
  GLOBALGUARD_STORE__DSN=redis://cache:6379/0         →  store.dsn
  GLOBALGUARD_LIMITERS__API__INTERVAL_S=30            →  limiters.api.interval_s
  GLOBALGUARD_BREAKERS__PAYMENTS__FAIL_MODE=open      →  breakers.payments.fail_mode

Limiter and breaker names are matched case-insensitively against the names
already present in the file, so ``...LIMITERS__API__...`` targets a limiter
declared as ``API``. Values are parsed as JSON except for identity and
enum-like keys (``hash``, ``dsn``, ``kind`` ...), which always stay strings.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from .models import GuardConfig

_LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "GLOBALGUARD_"

# Sections whose children are user-chosen names rather than fixed fields.
_NAMED_SECTIONS = frozenset({"limiters", "breakers"})

# Leaf keys whose values are strings even when they look like numbers.
_STRING_KEYS = frozenset({"hash", "dsn", "key_prefix", "kind", "backend", "fail_mode", "level"})

# ============================================================================
# Reading
# ============================================================================


def _read_file(path: str) -> dict[str, Any]:
    """Parse a ``.yaml``/``.yml``/``.json`` config file into the raw config tree.

    Raises:
        ValueError: If the file is missing, unreadable, malformed, or its top
            level is not a mapping of sections.
    """
    p = Path(path)
    if not p.exists():
        raise ValueError(f"Config file not found: {path}")

    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ValueError(f"Cannot read config file {path}: {e}") from e

    suffix = p.suffix.lower()
    if suffix in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e
    elif suffix == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path}: {e}") from e
    else:
        raise ValueError(f"Unsupported file format: {suffix}. Use .yaml or .json")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(
            f"{path} must contain a mapping of sections (store, limiters, breakers, logging)"
        )
    return data


# ============================================================================
# Environment
# ============================================================================


def _env_value(leaf: str, raw: str) -> Any:
    if leaf in _STRING_KEYS:
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        pass
    if raw.lower() in ("true", "false"):
        return raw.lower() == "true"
    return raw


def _resolve_path(data: Mapping[str, Any], parts: list[str]) -> list[str]:
    # second segment under limiters/breakers is a name; reuse the file's spelling
    if len(parts) >= 2 and parts[0] in _NAMED_SECTIONS:
        existing = data.get(parts[0])
        if isinstance(existing, Mapping):
            for name in existing:
                if str(name).lower() == parts[1]:
                    return [parts[0], str(name), *parts[2:]]
    return parts


def _set_path(data: dict[str, Any], parts: list[str], value: Any) -> None:
    current = data
    for key in parts[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[parts[-1]] = value


def _apply_env(data: dict[str, Any], env_prefix: str) -> dict[str, Any]:
    """Overlay ``<env_prefix>SECTION__...`` variables onto the raw config tree."""
    for env_key in sorted(os.environ):
        if not env_key.startswith(env_prefix):
            continue
        parts = [p for p in env_key[len(env_prefix) :].lower().split("__") if p]
        if not parts:
            continue
        parts = _resolve_path(data, parts)
        _set_path(data, parts, _env_value(parts[-1], os.environ[env_key]))
        # values are not logged; store.dsn may carry credentials
        _LOGGER.debug("Environment override %s -> %s", env_key, ".".join(parts))
    return data


# ============================================================================
# Overrides
# ============================================================================


def _deep_merge(base: dict[str, Any], overrides: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge ``overrides`` into ``base``; nested mappings merge, everything else replaces."""
    if not overrides:
        return base
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = dict(value) if isinstance(value, Mapping) else value
    return base


# ============================================================================
# Public API
# ============================================================================


def load_config(
    path: str | None = None,
    env_prefix: str = ENV_PREFIX,
    cli_overrides: Mapping[str, Any] | None = None,
) -> GuardConfig:
    """
    Build the validated :class:`GuardConfig` for this replica.

    Args:
        path: Optional YAML/JSON file with the shared deployment config.
        env_prefix: Prefix of the environment variables to overlay.
        cli_overrides: Nested mapping applied last (for example from the CLI).

    Returns:
        Validated GuardConfig.

    Raises:
        ValueError: If the file cannot be used. Validation failures surface
            as ``pydantic.ValidationError`` (a ValueError subclass).
    """
    data: dict[str, Any] = _read_file(path) if path else {}
    data = _apply_env(data, env_prefix)
    data = _deep_merge(data, cli_overrides)

    config = GuardConfig.model_validate(data)
    _LOGGER.info(
        "Configuration loaded",
        extra={
            "config_path": path,
            "backend": config.store.backend,
            "limiters": sorted(config.limiters),
            "breakers": sorted(config.breakers),
            "config_hash": config.config_hash()[:8],
        },
    )
    return config


def export_config_schema(output_path: str | Path | None = None) -> dict[str, Any]:
    """JSON Schema of :class:`GuardConfig`; also written to ``output_path`` when given."""
    schema = GuardConfig.model_json_schema()
    if output_path is not None:
        Path(output_path).write_text(json.dumps(schema, indent=2), encoding="utf-8")
    return schema


__all__ = ["ENV_PREFIX", "load_config", "export_config_schema"]
