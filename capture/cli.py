"""
CLI interface for the capture pipeline.

Usage:
    capture add https://example.com/article
    capture add "note to self" --session trip-2024
    capture drain
    capture list --status failed
"""

import asyncio
import json
import os
import shutil
import sys
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import CaptureService
from .config import save_config
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import CaptureInput, InputType, ItemDescriptor, ItemStatus, ProcessedItem, Session, resolve_item_id

# Quiet by default; CAPTURE_VERBOSE=1 enables debug logging
if os.environ.get("CAPTURE_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from . import __version__
        print(f"capture {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


app = typer.Typer(
    name="capture",
    help="Capture enrichment pipeline.",
    no_args_is_help=True,
    rich_markup_mode=None,
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
        envvar="CAPTURE_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Capture enrichment pipeline."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="CAPTURE_STORE_PATH",
        help="Path to the store directory (default: ~/.capture/)"
    )
]


def _get_service(store: Optional[Path]) -> CaptureService:
    """Open the store, reporting configuration errors cleanly."""
    actual_store = store if store is not None else _store_override
    try:
        return CaptureService(actual_store)
    except (ValueError, RuntimeError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _run(service: CaptureService, coro):
    """Run a coroutine against the service, then close it."""
    async def runner():
        try:
            return await coro
        finally:
            await service.aclose()
    return asyncio.run(runner())


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _output_width() -> int:
    if not sys.stdout.isatty():
        return 200
    return shutil.get_terminal_size((120, 24)).columns


def _item_line(item: ProcessedItem) -> str:
    head = f"{item.id}  {item.status.value:<14} {item.created_at[:10]}  "
    text = item.title or item.summary or ""
    room = max(_output_width() - len(head), 20)
    if len(text) > room:
        text = text[:room - 3] + "..."
    return head + text


def _session_line(session: Session) -> str:
    where = session.location_name or (
        f"{session.latitude:.5f},{session.longitude:.5f}" if session.has_coordinate else "")
    return f"{session.session_id}  {session.created_at}  {session.title or ''}  {where}".rstrip()


def _render_item(item: ProcessedItem) -> str:
    lines = [
        f"id: {item.id}",
        f"title: {item.title}",
        f"status: {item.status.value}",
        f"created: {item.created_at}",
    ]
    if item.url:
        lines.append(f"url: {item.url}")
    if item.summary:
        lines.append(f"summary: {item.summary}")
    if item.place is not None and item.place.name:
        lines.append(f"place: {item.place.name}")
    elif item.location:
        lines.append(f"location: {item.location}")
    if item.has_coordinate:
        lines.append(f"coordinate: {item.latitude},{item.longitude}")
    if item.session_id:
        lines.append(f"session: {item.session_id}")
    if item.tags:
        lines.append(f"tags: {', '.join(item.tags)}")
    if item.categories:
        lines.append(f"categories: {', '.join(item.categories)}")
    if item.purposes:
        lines.append(f"purposes: {', '.join(item.purposes)}")
    if item.questions:
        lines.append("statements:")
        lines.extend(f"  - {q}" for q in item.questions)
    if item.failure_count:
        lines.append(f"failures: {item.failure_count}")
    if item.processing_log:
        lines.append("log:")
        lines.extend(f"  {entry}" for entry in item.processing_log)
    return "\n".join(lines)


def _echo_stats(stats: dict) -> None:
    if _json_output:
        typer.echo(json.dumps(stats, indent=2))
        return
    typer.echo(
        f"processed {stats['processed']}, failed {stats['failed']}, "
        f"deleted {stats['deleted']}, conflicts {stats['conflicts']}"
    )
    for error in stats["errors"]:
        typer.echo(f"  {error}", err=True)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def add(
    source: Annotated[str, typer.Argument(help="URL or text to capture")],
    title: Annotated[Optional[str], typer.Option(
        "--title", "-t", help="Title hint for the record"
    )] = None,
    session: Annotated[Optional[str], typer.Option(
        "--session", help="Session id to group the capture under"
    )] = None,
    input_type: Annotated[Optional[str], typer.Option(
        "--type", help="Input type (web, text, image, document, media, product, place, qrCode)"
    )] = None,
    queue: Annotated[bool, typer.Option(
        "--queue", "-q", help="Queue for the next drain instead of processing now"
    )] = False,
    store: StoreOption = None,
):
    """
    Capture a URL or a piece of text.

    \b
    Examples:
        capture add https://example.com/recipe
        capture add "Lunch with Sam" --session 2024-05-01-lunch
    """
    kind = InputType.parse(input_type) if input_type else None
    if "://" in source:
        capture = CaptureInput.from_url(source, source="cli", input_type=kind or InputType.WEB)
    else:
        capture = CaptureInput.from_text(source, source="cli", input_type=kind or InputType.TEXT)
    descriptor = None
    if title or session:
        descriptor = ItemDescriptor(title=title, session_id=session)

    service = _get_service(store)
    if queue:
        service.enqueue(capture, descriptor)
        service.close()
        typer.echo(f"Queued {capture.id}")
        return

    item_id = resolve_item_id(capture, descriptor)

    async def go():
        await service.add(capture, descriptor)
        await service.wait_idle()
        return service.get(item_id)

    item = _run(service, go())
    if item is None:
        typer.echo("Capture failed and was discarded.", err=True)
        raise typer.Exit(1)
    if _json_output:
        typer.echo(json.dumps(item.to_dict(), indent=2))
    else:
        typer.echo(_item_line(item))


@app.command()
def drain(store: StoreOption = None):
    """Process every queued capture (runs crash recovery first)."""
    service = _get_service(store)
    _echo_stats(_run(service, service.drain()))


@app.command()
def resume(store: StoreOption = None):
    """Recover records left mid-processing by a crash."""
    service = _get_service(store)
    _echo_stats(_run(service, service.resume()))


@app.command()
def reprocess(
    since: Annotated[str, typer.Option(
        "--since", help="Reprocess records created on or after this UTC date (YYYY-MM-DD)"
    )],
    store: StoreOption = None,
):
    """Re-run enrichment for every record created since a date."""
    service = _get_service(store)

    def progress(done: int, total: int) -> None:
        typer.echo(f"{done}/{total}", err=True)

    _echo_stats(_run(service, service.reprocess_since(since, progress=progress)))


@app.command()
def retry(store: StoreOption = None):
    """Move failed records and captures back to the queue."""
    service = _get_service(store)
    count = _run(service, service.retry_failed())
    typer.echo(f"Queued {count} for retry")


@app.command()
def consolidate(store: StoreOption = None):
    """Rebuild missing sessions and merge fragmented ones."""
    service = _get_service(store)
    result = _run(service, service.consolidate_sessions())
    if _json_output:
        typer.echo(json.dumps(result))
    else:
        typer.echo(f"regenerated {result['regenerated']}, merged {result['merged']}")


@app.command()
def sessions(store: StoreOption = None):
    """List sessions, oldest first."""
    service = _get_service(store)
    try:
        found = service.list_sessions()
    finally:
        service.close()
    if _json_output:
        typer.echo(json.dumps([s.to_dict() for s in found], indent=2))
        return
    for session in found:
        typer.echo(_session_line(session))


@app.command()
def show(
    id: Annotated[str, typer.Argument(help="Record id")],
    store: StoreOption = None,
):
    """Show one record with its processing log."""
    service = _get_service(store)
    try:
        item = service.get(id)
    finally:
        service.close()
    if item is None:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    if _json_output:
        typer.echo(json.dumps(item.to_dict(), indent=2))
    else:
        typer.echo(_render_item(item))


@app.command("list")
def list_cmd(
    status: Annotated[Optional[str], typer.Option(
        "--status", help="Filter by status (queued, processing, ready, failed, reviewRequired)"
    )] = None,
    limit: Annotated[Optional[int], typer.Option(
        "--limit", "-n", help="Maximum records to show"
    )] = None,
    store: StoreOption = None,
):
    """List records, oldest first."""
    try:
        wanted = ItemStatus(status) if status else None
    except ValueError:
        valid = ", ".join(s.value for s in ItemStatus)
        typer.echo(f"Error: unknown status '{status}' (expected one of: {valid})", err=True)
        raise typer.Exit(1)
    service = _get_service(store)
    try:
        items = service.list_items(status=wanted, limit=limit)
    finally:
        service.close()
    if _json_output:
        typer.echo(json.dumps([i.to_dict() for i in items], indent=2))
        return
    for item in items:
        typer.echo(_item_line(item))


@app.command()
def config(
    home: Annotated[Optional[str], typer.Option(
        "--home", help="Set the home coordinate as 'lat,lon'"
    )] = None,
    store: StoreOption = None,
):
    """Show the store configuration, or set the home coordinate."""
    from .location import parse_coordinate

    service = _get_service(store)
    try:
        cfg = service.config
        if home is not None:
            coordinate = parse_coordinate(home)
            if coordinate is None:
                typer.echo(f"Error: expected 'lat,lon', got '{home}'", err=True)
                raise typer.Exit(1)
            cfg.home.latitude, cfg.home.longitude = coordinate.latitude, coordinate.longitude
            save_config(cfg)
        stats = service.queue_stats()
    finally:
        service.close()

    if _json_output:
        typer.echo(json.dumps({
            "store": str(cfg.path),
            "config": str(cfg.config_path),
            "reasoning": cfg.reasoning.name,
            "links": cfg.links.name,
            "home": [cfg.home.latitude, cfg.home.longitude] if cfg.home.is_set else None,
            "queue": stats,
        }, indent=2))
        return
    typer.echo(f"store: {cfg.path}")
    typer.echo(f"config: {cfg.config_path}")
    typer.echo(f"reasoning: {cfg.reasoning.name}")
    typer.echo(f"links: {cfg.links.name}")
    if cfg.home.is_set:
        typer.echo(f"home: {cfg.home.latitude},{cfg.home.longitude}")
    typer.echo(f"queue: {stats['pending']} pending, {stats['failed']} failed")


def main():
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        raise SystemExit(130)
    except Exception as e:
        # Full traceback to file, clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="capture CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
