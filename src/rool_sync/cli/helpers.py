"""Shared console and session helpers for CLI commands."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional, TypeVar

import typer
from rich.console import Console

from rool_sync.client import RoolClient
from rool_sync.config import RoolConfig
from rool_sync.errors import NotAuthenticated, RoolError

console = Console()

T = TypeVar("T")


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def make_client(server: Optional[str] = None) -> RoolClient:
    return RoolClient(RoolConfig(base_url=server))


def run(coro: Awaitable[T]) -> T:
    """Run a coroutine to completion, turning library errors into exit codes."""
    try:
        return asyncio.run(coro)  # type: ignore[arg-type]
    except NotAuthenticated as exc:
        console.print(f"❌ Not authenticated: {exc}")
        console.print("   Run 'rool auth login' to authenticate.")
        raise typer.Exit(1)
    except RoolError as exc:
        console.print(f"❌ {exc}")
        raise typer.Exit(1)


async def require_session(client: RoolClient) -> None:
    if not await client.initialize():
        raise NotAuthenticated("no stored credentials")


def format_value(value: Any) -> str:
    if value is None:
        return "-"
    return str(value)
