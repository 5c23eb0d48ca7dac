"""Authentication commands for rool."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import typer

from rool_sync.cli.helpers import console, make_client, run
from rool_sync.client import RoolClient

app = typer.Typer(help="Authentication commands")


def _format_expiry(expires_at: float) -> str:
    remaining = int(expires_at - datetime.now(timezone.utc).timestamp())
    if remaining <= 0:
        return "expired (will refresh on next use)"
    if remaining < 60:
        return f"{remaining}s"
    if remaining < 3600:
        return f"{remaining // 60}m"
    return f"{remaining // 3600}h"


@app.command()
def login(
    force: bool = typer.Option(False, "--force", "-f", help="Re-authenticate even if already logged in"),
    server: Optional[str] = typer.Option(None, "--server", help="Override the deployment base URL"),
) -> None:
    """Log in through the browser."""
    client = make_client(server)

    async def _login() -> bool:
        async with client:
            if client.auth.is_authenticated() and not force:
                return False
            console.print(f"Opening browser to authenticate with {client.config.auth_url}...")
            await client.login("rool")
            return True

    if not run(_login()):
        console.print("✅ Already authenticated.")
        console.print("Use --force to re-authenticate or 'rool auth logout' first.")
        return

    user = client.get_auth_user()
    console.print("✅ Login successful!")
    console.print(f"   Logged in as: {user.email or 'unknown'}")


@app.command()
def logout(
    server: Optional[str] = typer.Option(None, "--server", help="Override the deployment base URL"),
) -> None:
    """Clear stored credentials."""
    client = make_client(server)

    async def _logout(client: RoolClient) -> Optional[str]:
        async with client:
            if not client.auth.is_authenticated():
                return None
            email = client.get_auth_user().email or "unknown"
            await client.logout()
            return email

    email = run(_logout(client))
    if email is None:
        console.print("ℹ️  No active session. Already logged out.")
        return
    console.print("✅ Logged out successfully.")
    console.print(f"   Cleared credentials for: {email}")


@app.command()
def status(
    server: Optional[str] = typer.Option(None, "--server", help="Override the deployment base URL"),
) -> None:
    """Show current authentication status."""
    client = make_client(server)
    credentials = client.auth.credentials
    if credentials is None:
        console.print("❌ Not authenticated")
        console.print("   Run 'rool auth login' to authenticate.")
        return

    user = client.get_auth_user()
    console.print("✅ Authenticated")
    console.print(f"   Email: {user.email or 'unknown'}")
    if user.name:
        console.print(f"   Name: {user.name}")
    console.print(f"   Server: {client.config.get_base_url()}")
    console.print(f"   Access token expires in: {_format_expiry(credentials.expires_at)}")
