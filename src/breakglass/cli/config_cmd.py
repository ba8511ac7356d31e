"""CLI commands for config management."""

from __future__ import annotations

import typer
from rich.console import Console

console = Console()

# Never echoed back by `config show`
_SECRET_FIELDS = {"password", "token"}


def _redact(data):
    if isinstance(data, dict):
        return {k: ("***" if k in _SECRET_FIELDS and v else _redact(v)) for k, v in data.items()}
    if isinstance(data, list):
        return [_redact(v) for v in data]
    return data


def register(config_app: typer.Typer, get_config, get_config_value, set_config_value) -> None:
    """Register config commands on the config sub-app."""

    @config_app.command("show")
    def config_show():
        """Show current configuration (secrets redacted)."""
        cfg = get_config()
        console.print_json(data=_redact(cfg.model_dump()))

    @config_app.command("set")
    def config_set(key: str = typer.Argument(...), value: str = typer.Argument(...)):
        """Set a config value (dot notation: policy.positive_ttl)."""
        set_config_value(key, value)
        console.print(f"[green]Set[/green] {key} = {value}")

    @config_app.command("get")
    def config_get(key: str = typer.Argument(...)):
        """Get a config value."""
        cfg = get_config()
        val = get_config_value(cfg, key)
        console.print(f"{key} = {val}")
