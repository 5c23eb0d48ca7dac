"""``rool config`` commands."""

from __future__ import annotations

import typer
from rich.table import Table

from rool_sync.auth import endpoint_hash
from rool_sync.cli.helpers import console
from rool_sync.config import BASE_URL_ENV_VAR, RoolConfig

app = typer.Typer(help="Client configuration")


@app.command()
def show() -> None:
    """Display the resolved endpoints and where configuration is stored."""
    config = RoolConfig()

    table = Table(title="rool configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Base URL", config.get_base_url())
    table.add_row("GraphQL", config.graphql_url)
    table.add_row("Auth", config.auth_url)
    table.add_row("Events", config.stream_url)
    table.add_row("Config file", str(config.config_file))
    table.add_row("Credential scope", endpoint_hash(config.auth_url))
    console.print(table)
    console.print(f"[dim]{BASE_URL_ENV_VAR} overrides the configured base URL.[/dim]")


@app.command("set-server")
def set_server(url: str = typer.Argument(..., help="Deployment base URL, e.g. https://api.rool.dev")) -> None:
    """Persist the deployment base URL."""
    if not url.startswith(("http://", "https://")):
        console.print("❌ Server URL must start with http:// or https://")
        raise typer.Exit(1)
    config = RoolConfig()
    config.set_base_url(url)
    console.print(f"✅ Server set to {config.get_base_url()}")
