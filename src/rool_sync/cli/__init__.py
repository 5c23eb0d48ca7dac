"""Command-line interface for rool."""

from __future__ import annotations

import typer

from rool_sync.cli.commands import auth, config_cmd, space
from rool_sync.cli.helpers import configure_logging, console

app = typer.Typer(
    name="rool",
    help="Inspect and watch Rool spaces from the terminal",
    add_completion=False,
    no_args_is_help=True,
)
app.add_typer(auth.app, name="auth")
app.add_typer(space.app, name="space")
app.add_typer(config_cmd.app, name="config")


@app.callback()
def callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log sync activity to stderr"),
) -> None:
    configure_logging(verbose)


def main():
    app()


__all__ = ["app", "console", "main"]
