"""CLI commands for master keys: generate, encrypt, decrypt."""

from __future__ import annotations

import json
import time
from typing import Callable, Optional

import typer
from rich.console import Console

from breakglass.config import Config
from breakglass.crypto import KeyRing
from breakglass.errors import BreakGlassError

console = Console()


def _load_keyring(cfg: Config) -> KeyRing:
    try:
        return KeyRing.from_env(cfg.encryption.master_key_env)
    except BreakGlassError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1)


def register(keys_app: typer.Typer, get_config: Callable[[], Config]) -> None:
    """Register key subcommands onto keys_app typer group."""

    @keys_app.command("generate")
    def generate(
        key_id: Optional[int] = typer.Option(
            None, "--key-id", help="Unix time from which the key is used. Default: now",
        ),
    ):
        """Print a fresh 256-bit master key and the secret value to export."""
        kid = key_id if key_id is not None else int(time.time())
        key = KeyRing.generate_key()
        env = get_config().encryption.master_key_env
        console.print(f"[green]Key ID:[/green] {kid}")
        console.print(f"[green]Key:[/green]    {key}")
        console.print(f"\n[bold]Add to {env}:[/bold]")
        console.print(json.dumps({"Keys": {str(kid): key}}), markup=False, soft_wrap=True)

    @keys_app.command("encrypt")
    def encrypt(text: str = typer.Argument(..., help="Plaintext to encrypt")):
        """Encrypt a value with the current master key, as stored in the index."""
        keyring = _load_keyring(get_config())
        try:
            ciphertext, key_id = keyring.encrypt_for_index(text)
        except BreakGlassError as exc:
            console.print(f"[red]{exc.message}[/red]")
            raise typer.Exit(1)
        console.print(f"keyID      = {key_id}")
        console.print(f"ciphertext = {ciphertext}", markup=False, soft_wrap=True)

    @keys_app.command("decrypt")
    def decrypt(
        ciphertext: str = typer.Argument(..., help="Base64 ciphertext from the index"),
        key_id: int = typer.Argument(..., help="keyID stored next to the ciphertext"),
    ):
        """Decrypt a value taken from a grant document."""
        keyring = _load_keyring(get_config())
        try:
            plaintext = keyring.decrypt_from_index(ciphertext, key_id)
        except BreakGlassError as exc:
            console.print(f"[red]{exc.message}[/red]")
            raise typer.Exit(1)
        console.print(plaintext, markup=False, soft_wrap=True)
