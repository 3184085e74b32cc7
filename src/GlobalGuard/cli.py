"""Operator CLI for GlobalGuard.

Provides commands to:
- Inspect and reset shared limiter state
- Inspect, force open and close shared circuit breakers
- Validate, print and export configuration

Every command reads the same file < environment precedence as the library
(``--config/-c`` plus ``GLOBALGUARD_*`` variables) and talks to the configured
store, so the commands act on the state every replica sees.

Example:
    globalguard breaker show payments -c globalguard.yaml
    globalguard breaker open payments --seconds 120 -c globalguard.yaml
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import typer

from GlobalGuard.bootstrap import GuardRegistry
from GlobalGuard.config.loader import export_config_schema, load_config
from GlobalGuard.config.models import GuardConfig
from GlobalGuard.errors import GuardError
from GlobalGuard.logging_config import setup_logging

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

app = typer.Typer(help="Distributed rate limiting and circuit breaking", no_args_is_help=True)
limiter_app = typer.Typer(help="Shared limiter state", no_args_is_help=True)
breaker_app = typer.Typer(help="Shared circuit breaker state", no_args_is_help=True)
config_app = typer.Typer(help="Configuration inspection and validation", no_args_is_help=True)
app.add_typer(limiter_app, name="limiter")
app.add_typer(breaker_app, name="breaker")
app.add_typer(config_app, name="config")


def _config_option() -> Any:
    return typer.Option(None, "--config", "-c", help="Config file path (YAML/JSON)")


def _fail(message: str) -> typer.Exit:
    typer.secho(f"❌ {message}", fg="red", err=True)
    return typer.Exit(1)


def _describe(exc: Exception) -> str:
    if isinstance(exc, KeyError) and exc.args:
        return str(exc.args[0])
    return str(exc)


def _load(config_file: Optional[str]) -> GuardConfig:
    try:
        cfg = load_config(config_file)
    except ValueError as e:
        raise _fail(f"Config error: {e}") from e
    setup_logging(cfg.logging)
    return cfg


def _with_registry(
    config_file: Optional[str], fn: Callable[[GuardRegistry], Awaitable[T]]
) -> T:
    cfg = _load(config_file)

    async def runner() -> T:
        registry = GuardRegistry.from_config(cfg)
        try:
            return await fn(registry)
        finally:
            await registry.close()

    try:
        return asyncio.run(runner())
    except (KeyError, ValueError, GuardError) as e:
        raise _fail(_describe(e)) from e


def _echo_json(payload: Dict[str, Any]) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


# ============================================================================
# limiter
# ============================================================================


@limiter_app.command("show")
def cmd_limiter_show(
    name: str = typer.Argument(..., help="Limiter name from the config"),
    config_file: Optional[str] = _config_option(),
) -> None:
    """Show a limiter's current load and stored state."""

    async def show(registry: GuardRegistry) -> Dict[str, Any]:
        driver = registry.driver(name)
        cfg = registry.config.limiters[name]
        return {
            "name": name,
            "kind": driver.kind,
            "hash": driver.hash,
            "load": await driver.load(registry.store),
            "config": cfg.model_dump(mode="json"),
            "state": await registry.store.get(driver.key),
        }

    _echo_json(_with_registry(config_file, show))


@limiter_app.command("reset")
def cmd_limiter_reset(
    name: str = typer.Argument(..., help="Limiter name from the config"),
    config_file: Optional[str] = _config_option(),
) -> None:
    """Forget every admission counted by a limiter."""

    async def reset(registry: GuardRegistry) -> None:
        await registry.driver(name).reset(registry.store)

    _with_registry(config_file, reset)
    LOGGER.warning("Limiter reset from CLI", extra={"limiter": name})
    typer.secho(f"✅ Limiter {name} reset", fg="green")


# ============================================================================
# breaker
# ============================================================================


@breaker_app.command("show")
def cmd_breaker_show(
    name: str = typer.Argument(..., help="Breaker name from the config"),
    config_file: Optional[str] = _config_option(),
) -> None:
    """Show a breaker's state and sampled outcomes."""

    async def show(registry: GuardRegistry) -> Dict[str, Any]:
        circuit = registry.circuit(name)
        snapshot = await circuit.snapshot()
        sampler = await circuit.sampler.snapshot()
        payload = asdict(snapshot)
        payload["state"] = snapshot.state.value
        payload["sampler"] = (
            {
                "failures": sampler.current_failures,
                "successes": sampler.current_successes,
                "total": sampler.total,
                "windows": len(sampler.windows),
                "window_size_ms": sampler.window_size_ms,
            }
            if sampler is not None
            else None
        )
        return payload

    _echo_json(_with_registry(config_file, show))


@breaker_app.command("open")
def cmd_breaker_open(
    name: str = typer.Argument(..., help="Breaker name from the config"),
    seconds: float = typer.Option(..., "--seconds", "-s", min=0.001, help="How long to stay open"),
    reason: str = typer.Option("manual", "--reason", help="Recorded with the open state"),
    config_file: Optional[str] = _config_option(),
) -> None:
    """Force a breaker open on every replica."""

    async def force_open(registry: GuardRegistry) -> None:
        await registry.circuit(name).force_open(seconds, reason=reason)

    _with_registry(config_file, force_open)
    typer.secho(f"✅ Breaker {name} open for {seconds:g}s", fg="green")


@breaker_app.command("close")
def cmd_breaker_close(
    name: str = typer.Argument(..., help="Breaker name from the config"),
    config_file: Optional[str] = _config_option(),
) -> None:
    """Close a breaker and clear its sampled history."""

    async def close(registry: GuardRegistry) -> None:
        await registry.circuit(name).reset()

    _with_registry(config_file, close)
    typer.secho(f"✅ Breaker {name} closed", fg="green")


# ============================================================================
# config
# ============================================================================


@config_app.command("validate")
def cmd_config_validate(config_file: Optional[str] = _config_option()) -> None:
    """
    Validate configuration.

    Exit code 0 if valid, 1 if invalid.
    """
    cfg = _load(config_file)
    typer.secho("✅ Config is valid", fg="green")
    typer.echo(f"   Limiters: {', '.join(sorted(cfg.limiters)) or '-'}")
    typer.echo(f"   Breakers: {', '.join(sorted(cfg.breakers)) or '-'}")
    typer.echo(f"   Config hash: {cfg.config_hash()[:16]}...")


@config_app.command("print-merged")
def cmd_config_print_merged(config_file: Optional[str] = _config_option()) -> None:
    """Print configuration after file → environment precedence."""
    _echo_json(_load(config_file).model_dump(mode="json"))


@config_app.command("export-schema")
def cmd_config_export_schema(
    output_file: Optional[str] = typer.Option(
        None, "--output", "-o", help="Write the JSON Schema here instead of stdout"
    ),
) -> None:
    """Export the GuardConfig JSON Schema."""
    schema = export_config_schema(output_file)
    if output_file is None:
        _echo_json(schema)
    else:
        typer.secho(f"✅ Schema exported to {output_file}", fg="green")


def main() -> None:
    app()


__all__ = ["app", "main"]
