"""Space commands: list, inspect, watch, export and import."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import typer
from rich.table import Table

from rool_sync.cli.helpers import console, format_value, make_client, require_session, run
from rool_sync.client import RoolClient
from rool_sync.models import SpaceInfo

app = typer.Typer(help="Inspect and manage spaces")

SERVER_OPTION = typer.Option(None, "--server", help="Override the deployment base URL")

# Notifications printed by ``watch`` and the payload attribute that names the subject.
_WATCHED = {
    "object_created": "object_id",
    "object_updated": "object_id",
    "object_deleted": "object_id",
    "linked": "source_id",
    "unlinked": "source_id",
    "metadata_updated": None,
    "conversations_changed": "conversation_id",
    "reset": None,
    "sync_error": None,
    "connection_state_changed": None,
}


def _spaces_table(spaces: list[SpaceInfo]) -> Table:
    table = Table(title="Spaces")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Role", style="magenta")
    table.add_column("Size", justify="right")
    table.add_column("Updated")
    for info in spaces:
        table.add_row(info.id, info.name, info.role, str(info.size), info.updated_at or "-")
    return table


def _describe(kind: str, payload: Any) -> str:
    attribute = _WATCHED.get(kind)
    source = getattr(payload, "source", None)
    parts = [f"[bold]{kind}[/bold]"]
    if attribute:
        parts.append(str(getattr(payload, attribute)))
    if kind == "linked" or kind == "unlinked":
        parts.append(f"-{payload.relation}-> {payload.target_id}")
    if kind == "connection_state_changed":
        parts.append(payload.value)
    if kind == "sync_error":
        parts.append(f"[red]{payload}[/red]")
    if source is not None:
        parts.append(f"[dim]({getattr(source, 'value', source)})[/dim]")
    return " ".join(parts)


@app.command("list")
def list_spaces(server: Optional[str] = SERVER_OPTION) -> None:
    """List the spaces you can access."""

    async def _list(client: RoolClient) -> list[SpaceInfo]:
        async with client:
            await require_session(client)
            return await client.list_spaces()

    spaces = run(_list(make_client(server)))
    if not spaces:
        console.print("ℹ️  No spaces found.")
        return
    console.print(_spaces_table(spaces))


@app.command()
def show(
    space_id: str = typer.Argument(..., help="Space to inspect"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum objects to list"),
    server: Optional[str] = SERVER_OPTION,
) -> None:
    """Show a space's metadata and most recently modified objects."""

    async def _show(client: RoolClient) -> None:
        async with client:
            await require_session(client)
            space = await client.open_space(space_id)
            console.print(f"[bold]{space.name}[/bold] ({space.id})")
            console.print(f"   Role: {space.role}")
            console.print(f"   Version: {space.version}")
            console.print(f"   Link access: {space.link_access}")

            metadata = space.get_all_metadata()
            if metadata:
                console.print("   Metadata:")
                for key, value in sorted(metadata.items()):
                    console.print(f"     {key}: {format_value(value)}")

            table = Table(title="Objects", show_lines=False)
            table.add_column("ID", style="cyan")
            table.add_column("Fields")
            table.add_column("Modified by")
            for object_id in space.get_object_ids(limit=limit):
                data = space.get_object(object_id) or {}
                stat = space.stat(object_id)
                fields = ", ".join(sorted(key for key in data if key != "id"))
                modified_by = (stat.modified_by_name or stat.modified_by) if stat else "-"
                table.add_row(object_id, fields or "-", modified_by or "-")
            console.print(table)

    run(_show(make_client(server)))


@app.command()
def watch(
    space_id: str = typer.Argument(..., help="Space to watch"),
    server: Optional[str] = SERVER_OPTION,
) -> None:
    """Print change notifications for a space until interrupted."""

    async def _watch(client: RoolClient) -> None:
        async with client:
            await require_session(client)
            space = await client.open_space(space_id)
            for kind in _WATCHED:
                space.subscribe(kind, lambda payload, kind=kind: console.print(_describe(kind, payload)))
            console.print(f"Watching {space.name} ({space.id}). Press Ctrl+C to stop.")
            await asyncio.Event().wait()

    try:
        run(_watch(make_client(server)))
    except KeyboardInterrupt:
        console.print("ℹ️  Stopped watching.")


@app.command()
def export(
    space_id: str = typer.Argument(..., help="Space to export"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout"),
    server: Optional[str] = SERVER_OPTION,
) -> None:
    """Export a space's objects and relations as JSON-LD."""

    async def _export(client: RoolClient) -> dict[str, Any]:
        async with client:
            await require_session(client)
            space = await client.open_space(space_id)
            return space.export_jsonld()

    document = run(_export(make_client(server)))
    text = json.dumps(document, indent=2)
    if output is None:
        typer.echo(text)
        return
    output.write_text(text + "\n", encoding="utf-8")
    console.print(f"✅ Exported {len(document['@graph'])} object(s) to {output}")


@app.command("import")
def import_space(
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON-LD file to import"),
    name: str = typer.Option("Imported", "--name", help="Name of the new space"),
    server: Optional[str] = SERVER_OPTION,
) -> None:
    """Create a new space from a JSON-LD export."""
    try:
        document = json.loads(source.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        console.print(f"❌ {source} is not valid JSON: {exc}")
        raise typer.Exit(1)

    async def _import(client: RoolClient) -> str:
        async with client:
            await require_session(client)
            space = await client.create_space(name)
            await space.import_jsonld(document)
            return space.id

    new_id = run(_import(make_client(server)))
    console.print(f"✅ Imported into new space {new_id}")


@app.command()
def create(
    name: str = typer.Argument("Untitled", help="Name of the new space"),
    server: Optional[str] = SERVER_OPTION,
) -> None:
    """Create an empty space."""

    async def _create(client: RoolClient) -> str:
        async with client:
            await require_session(client)
            space = await client.create_space(name)
            return space.id

    new_id = run(_create(make_client(server)))
    console.print(f"✅ Created space {new_id}")


@app.command()
def delete(
    space_id: str = typer.Argument(..., help="Space to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    server: Optional[str] = SERVER_OPTION,
) -> None:
    """Delete a space permanently."""
    if not yes and not typer.confirm(f"Delete space {space_id}?"):
        console.print("ℹ️  Aborted.")
        raise typer.Exit(0)

    async def _delete(client: RoolClient) -> None:
        async with client:
            await require_session(client)
            await client.delete_space(space_id)

    run(_delete(make_client(server)))
    console.print(f"✅ Deleted space {space_id}")
