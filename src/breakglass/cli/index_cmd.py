"""CLI commands that talk to the grant index: dump, bootstrap."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable

import typer
from rich.console import Console
from rich.table import Table

from breakglass.config import Config
from breakglass.crypto import KeyRing
from breakglass.errors import BreakGlassError
from breakglass.grants import BootstrapLoader, GrantCache, PersistedDocument, WriteGate
from breakglass.grants.bootstrap import QUERY_ALL
from breakglass.index.client import IndexClient

console = Console()


def _fmt_time(ts: int) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def register(app: typer.Typer, index_app: typer.Typer, get_config: Callable[[], Config]) -> None:
    """Register index subcommands and the top-level bootstrap command."""

    @index_app.command("dump")
    def dump():
        """List every grant document in the index."""
        cfg = get_config()

        async def _dump():
            client = IndexClient.from_config(cfg)
            try:
                return await client.search(QUERY_ALL, cfg.grants.index_name)
            finally:
                await client.aclose()

        try:
            response = asyncio.run(_dump())
        except BreakGlassError as exc:
            console.print(f"[red]{exc.message}[/red]")
            raise typer.Exit(1)

        if not response.hits:
            console.print("[dim]No grant documents found.[/dim]")
            return

        table = Table(title=f"Grant documents ({cfg.grants.index_name})")
        table.add_column("Document ID", style="cyan")
        table.add_column("User", style="magenta")
        table.add_column("isAPI", style="blue")
        table.add_column("Keys", justify="right")
        table.add_column("Last updated", style="dim")
        for hit in response.hits:
            doc = PersistedDocument.model_validate(hit.source)
            last = max((k.last_updated for k in doc.keys), default=0)
            table.add_row(hit.id, doc.user, doc.is_api, str(len(doc.keys)), _fmt_time(last))
        console.print(table)

    @app.command("bootstrap")
    def bootstrap(
        delay: float = typer.Option(0.0, "--delay", help="Seconds to wait before reading the index"),
    ):
        """Load the grant index once, as the service does at startup, and report."""
        cfg = get_config()

        async def _bootstrap():
            keyring = KeyRing.from_env(cfg.encryption.master_key_env)
            client = IndexClient.from_config(cfg)
            gate = WriteGate()
            cache = GrantCache(
                keyring, gate, lambda: client,
                index_name=cfg.grants.index_name, duration_limit=cfg.grants.duration_limit,
            )
            loader = BootstrapLoader(
                cache, lambda: client, keyring, gate,
                index_name=cfg.grants.index_name, delay=delay,
            )
            try:
                return await loader.run(), cache.stats()
            finally:
                await client.aclose()

        try:
            result, stats = asyncio.run(_bootstrap())
        except BreakGlassError as exc:
            console.print(f"[red]{exc.message}[/red]")
            raise typer.Exit(1)

        if not result.completed:
            console.print(f"[red]Bootstrap failed:[/red] {'; '.join(result.errors)}")
            raise typer.Exit(1)
        console.print(f"[green]Bootstrap complete[/green] ({result.hits} documents)")
        console.print(f"  API grants:       {result.api_grants} ({stats['auth_keys']} auth keys)")
        console.print(f"  Identity grants:  {result.identity_grants} ({stats['identities']} identities)")
        console.print(f"  Skipped:          {result.skipped_documents} documents, {result.skipped_keys} keys")
