"""
CLI interface for saved items.

Usage:
    retain add https://example.com/article --title "An article"
    retain add-image ~/Pictures/photo.heic
    retain list unread
    retain read <ID>
    retain status
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from typing_extensions import Annotated

from .api import Library
from .errors import NotFoundError, RetainError, log_exception
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import Category, SavedItem, item_to_dict

T = TypeVar("T")

# Configure quiet mode by default (suppress verbose library output)
# Set RETAIN_VERBOSE=1 to enable debug mode via environment
if os.environ.get("RETAIN_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"retain {version('retain')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


app = typer.Typer(
    name="retain",
    help="Save links and images, read them later, offline.",
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="RETAIN_STORE_PATH",
        help="Path to the store directory (default: ~/.retain)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Saved links and images with offline content."""


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _run(action: Callable[[Library], Awaitable[T]], context: str) -> T:
    """Open the library, run one action, close it, and map errors to exit codes."""

    async def runner() -> T:
        lib = Library(_store_override)
        try:
            # One-shot commands do not need background polling
            await lib.open(watch=False)
            return await action(lib)
        finally:
            await lib.close()

    try:
        return asyncio.run(runner())
    except NotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except (RetainError, OSError, ValueError) as e:
        log_path = log_exception(e, context)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise typer.Exit(1)


def _format_item(item: SavedItem) -> str:
    flags = "".join((
        "R" if item.is_read else "-",
        "*" if item.is_starred else "-",
        "H" if item.is_highlighted else "-",
        "O" if item.is_offline_cached else "-",
        "D" if item.is_deleted else "-",
    ))
    date = item.created_at.astimezone().strftime("%Y-%m-%d")
    kind = "img " if item.is_image else "link"
    return f"{item.id}  {flags}  {date}  {kind}  {item.title}"


def _echo_items(items: list[SavedItem]) -> None:
    if _json_output:
        typer.echo(json.dumps([item_to_dict(i) for i in items], indent=2, ensure_ascii=False))
        return
    for item in items:
        typer.echo(_format_item(item))


def _echo_item(item: SavedItem) -> None:
    if _json_output:
        typer.echo(json.dumps(item_to_dict(item), indent=2, ensure_ascii=False))
    else:
        typer.echo(_format_item(item))


def _parse_category(value: str) -> Category:
    try:
        return Category.parse(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def add(
    url: Annotated[str, typer.Argument(help="URL to save")],
    title: Annotated[Optional[str], typer.Option("--title", "-t", help="Display title")] = None,
    excerpt: Annotated[str, typer.Option("--excerpt", "-e", help="Short description")] = "",
    thumbnail: Annotated[Optional[str], typer.Option("--thumbnail", help="Thumbnail image URL")] = None,
):
    """Save a link."""
    item = _run(
        lambda lib: lib.save_link(url, title or url, excerpt, thumbnail_url=thumbnail),
        "add",
    )
    _echo_item(item)


@app.command("add-image")
def add_image(
    path: Annotated[Path, typer.Argument(help="Image file (JPEG, PNG or HEIC)", exists=True, dir_okay=False)],
    title: Annotated[Optional[str], typer.Option("--title", "-t", help="Display title")] = None,
):
    """Save an image."""
    data = path.read_bytes()
    item = _run(lambda lib: lib.save_image(data, title=title or path.stem), "add-image")
    _echo_item(item)


@app.command("list")
def list_items(
    category: Annotated[str, typer.Argument(
        help="unread, read, starred, highlighted, all, recently-deleted",
    )] = "unread",
):
    """List saved items in a category, newest first."""
    cat = _parse_category(category)

    async def action(lib: Library) -> list[SavedItem]:
        return lib.items(cat)

    _echo_items(_run(action, "list"))


@app.command()
def show(item_id: Annotated[str, typer.Argument(help="Item ID")]):
    """Show one item."""

    async def action(lib: Library):
        item = lib.get_item(item_id)
        return item, lib.assets.offline_entry(item_id), lib.image_path(item_id)

    item, offline, image = _run(action, "show")
    if _json_output:
        d = item_to_dict(item)
        d["offline"] = offline is not None
        d["imageFile"] = str(image) if image else None
        typer.echo(json.dumps(d, indent=2, ensure_ascii=False))
        return
    typer.echo(_format_item(item))
    typer.echo(f"  url: {item.url}")
    if item.excerpt:
        typer.echo(f"  excerpt: {item.excerpt}")
    if image:
        typer.echo(f"  image: {image}")
    if offline:
        typer.echo(f"  offline: {offline.file_url}")


def _toggle_command(name: str, method: str, help_text: str):
    def command(item_id: Annotated[str, typer.Argument(help="Item ID")]):
        async def action(lib: Library) -> SavedItem:
            return await getattr(lib, method)(lib.get_item(item_id))
        _echo_item(_run(action, name))

    command.__doc__ = help_text
    app.command(name)(command)


_toggle_command("read", "toggle_read", "Toggle read/unread.")
_toggle_command("star", "toggle_star", "Toggle starred.")
_toggle_command("highlight", "toggle_highlight", "Toggle highlighted.")
_toggle_command("delete", "delete", "Move an item to Recently Deleted.")
_toggle_command("restore", "restore", "Restore an item from Recently Deleted.")


@app.command()
def purge(
    item_id: Annotated[str, typer.Argument(help="Item ID")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
):
    """Delete an item permanently, with its stored content."""
    if not yes:
        typer.confirm(f"Permanently delete {item_id}?", abort=True)

    async def action(lib: Library) -> None:
        await lib.purge(lib.get_item(item_id))

    _run(action, "purge")
    typer.echo(f"Deleted {item_id}")


@app.command()
def cache(
    item_id: Annotated[str, typer.Argument(help="Item ID")],
    html: Annotated[Path, typer.Option("--html", help="Downloaded page HTML", exists=True, dir_okay=False)],
    article: Annotated[Optional[Path], typer.Option(
        "--article", help="Extracted article JSON", exists=True, dir_okay=False,
    )] = None,
):
    """Store page content for offline reading."""
    html_bytes = html.read_bytes()
    article_data = None
    if article is not None:
        try:
            article_data = json.loads(article.read_text(encoding="utf-8"))
        except ValueError as e:
            typer.echo(f"Error: {article} is not valid JSON: {e}", err=True)
            raise typer.Exit(1)

    async def action(lib: Library) -> SavedItem:
        return await lib.cache_page(lib.get_item(item_id), html_bytes, article_data)

    _echo_item(_run(action, "cache"))


@app.command()
def migrate():
    """Copy the legacy local collection into the shared store (once)."""

    async def action(lib: Library):
        return await lib.migrate()

    result = _run(action, "migrate")
    if _json_output:
        typer.echo(json.dumps(result.__dict__, indent=2))
        return
    typer.echo(f"Migration: {result.status}")
    if result.status == "migrated":
        typer.echo(f"  migrated: {result.migrated}, already present: {result.already_present}")
    if not result.flag_written:
        typer.echo("  warning: migration flag not recorded; will retry next start", err=True)


@app.command()
def status():
    """Show storage diagnostics."""

    async def action(lib: Library):
        return lib.status()

    info = _run(action, "status")
    if _json_output:
        typer.echo(json.dumps(info, indent=2))
        return
    typer.echo(f"Store: {info['store']} ({info['backend']})")
    typer.echo(f"Keys: {', '.join(info['keys']) or '(none)'}")
    size = info["collection_bytes"]
    typer.echo(f"Collection: {size if size is not None else 0} bytes")
    for name, count in info["counts"].items():
        typer.echo(f"  {name}: {count}")
    typer.echo(f"Migrated: {'yes' if info['migrated'] else 'no'}")
    if info["legacy_items"] is not None:
        typer.echo(f"Legacy items still present: {info['legacy_items']}")
    typer.echo(f"Offline items: {info['offline_items']}")
    typer.echo(f"Asset storage: {info['asset_bytes']} bytes")


@app.command()
def clear(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
):
    """Remove all saved items from the shared store."""
    if not yes:
        typer.confirm("Remove ALL saved items?", abort=True)

    async def action(lib: Library) -> None:
        await lib.clear_all()

    _run(action, "clear")
    typer.echo("Cleared")


def main():
    try:
        app()
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
