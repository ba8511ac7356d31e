"""breakglass CLI - operator tools for the break-glass grant cache."""

from __future__ import annotations

import typer

from breakglass.config import (
    Config,
    get_config_value,
    load_config,
    set_config_value,
)
from breakglass.logging_setup import setup_logging

# Bootstrap logging from config (respects BREAKGLASS_LOG_FORMAT / BREAKGLASS_LOG_LEVEL)
setup_logging(load_config())

app = typer.Typer(name="breakglass", help="Break-glass grant cache operator tools")
config_app = typer.Typer(help="Manage configuration")
keys_app = typer.Typer(help="Master keys and field encryption")
index_app = typer.Typer(help="Inspect the grant index")

app.add_typer(config_app, name="config")
app.add_typer(keys_app, name="keys")
app.add_typer(index_app, name="index")

_config: Config | None = None


def _get_config() -> Config:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def _set_config_value(key: str, value: str) -> Config:
    global _config
    _config = set_config_value(key, value)
    return _config


# Register commands from sub-modules
from breakglass.cli import config_cmd as _config_cmd_mod  # noqa: E402
from breakglass.cli import keys_cmd as _keys_cmd_mod  # noqa: E402
from breakglass.cli import index_cmd as _index_cmd_mod  # noqa: E402

_config_cmd_mod.register(config_app, _get_config, get_config_value, _set_config_value)
_keys_cmd_mod.register(keys_app, _get_config)
_index_cmd_mod.register(app, index_app, _get_config)

if __name__ == "__main__":
    app()
