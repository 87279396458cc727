"""
CLI interface for the video record store.

Usage:
    vibrary history --limit 20
    vibrary record https://youtu.be/abcdefghijk "Intro to SQLite"
    vibrary playlist add youtube:abcdefghijk Databases --create
    vibrary retention 30
"""

import atexit
import json
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import Vibrary
from .logging_config import configure_quiet_mode, enable_debug_mode
from .store import KEEP_EXISTING, KEEP_INCOMING, SORT_DATE, SORT_RATING, HistoryFilter
from .types import DETECTION_SOURCES, Detection, VideoRecord, ms_to_iso, ms_to_local_date

# Configure quiet mode by default
# Set VIBRARY_VERBOSE=1 to enable debug mode via environment
if os.environ.get("VIBRARY_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"vibrary {version('vibrary')}")
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


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="vibrary",
    help="Video watch history and playlist library.",
    no_args_is_help=False,
    invoke_without_command=True,
    rich_markup_mode=None,
)


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _stars(rating: int) -> str:
    return "*" * rating + "." * (5 - rating) if rating else "     "


def format_record(rec: VideoRecord) -> str:
    """One line per record: id  date  rating  title."""
    return f"{rec.id}  {ms_to_local_date(rec.watched_at)}  {_stars(rec.rating)}  {rec.title}"


def _echo_records(records: list[VideoRecord]) -> None:
    if _get_json_output():
        typer.echo(json.dumps([r.to_dict() for r in records], indent=2, ensure_ascii=False))
        return
    for rec in records:
        typer.echo(format_record(rec))


def _echo_json_or(data, text: str) -> None:
    if _get_json_output():
        typer.echo(json.dumps(data, indent=2, ensure_ascii=False))
    else:
        typer.echo(text)


@contextmanager
def _user_errors():
    """Report bad arguments (unknown ids, invalid values) without a traceback."""
    try:
        yield
    except KeyError as e:
        typer.echo(f"Error: {e.args[0] if e.args else e}", err=True)
        raise typer.Exit(1)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
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
        envvar="VIBRARY_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Video watch history and playlist library."""
    # No subcommand: show the most recent history
    if ctx.invoked_subcommand is None:
        vb = _get_vibrary()
        _echo_records(vb.list_history(limit=10))
        vb.close()


def _get_vibrary() -> Vibrary:
    """Open the store, handling errors gracefully."""
    try:
        vb = Vibrary(_get_store_override())
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(vb.close)
    return vb


LimitOption = Annotated[
    Optional[int],
    typer.Option("--limit", "-n", help="Maximum results to return"),
]


# -----------------------------------------------------------------------------
# History and Library
# -----------------------------------------------------------------------------

@app.command()
def history(
    rating: Annotated[Optional[int], typer.Option("--rating", "-r", help="Only this exact rating")] = None,
    min_rating: Annotated[Optional[int], typer.Option("--min-rating", help="Only ratings >= this")] = None,
    platform: Annotated[Optional[str], typer.Option("--platform", "-p", help="Only this platform")] = None,
    search: Annotated[Optional[str], typer.Option("--search", "-q", help="Title contains this text")] = None,
    sort: Annotated[str, typer.Option("--sort", help=f"{SORT_DATE} or {SORT_RATING}")] = SORT_DATE,
    limit: LimitOption = None,
):
    """List watch history, newest first."""
    vb = _get_vibrary()
    flt = HistoryFilter(rating=rating, min_rating=min_rating, platform=platform, text=search)
    with _user_errors():
        records = vb.list_history(flt, sort=sort, limit=limit)
    _echo_records(records)
    vb.close()


@app.command()
def library(
    playlist: Annotated[Optional[str], typer.Argument(help="Only this playlist, in playlist order")] = None,
):
    """List videos kept in playlists."""
    vb = _get_vibrary()
    with _user_errors():
        records = vb.list_library(playlist)
    _echo_records(records)
    vb.close()


@app.command()
def record(
    url: Annotated[str, typer.Argument(help="Page URL of the video")],
    title: Annotated[str, typer.Argument(help="Video title")],
    thumbnail: Annotated[str, typer.Option("--thumbnail", "-t", help="Thumbnail URL")] = "",
    platform: Annotated[str, typer.Option("--platform", "-p", help="Platform hint")] = "",
    source: Annotated[str, typer.Option("--source", help="Detection source tag")] = "",
):
    """Record a watched video (as a detection would)."""
    if source and source not in DETECTION_SOURCES:
        expected = ", ".join(sorted(DETECTION_SOURCES))
        typer.echo(f"Error: unknown source {source!r} (expected one of {expected})", err=True)
        raise typer.Exit(1)
    vb = _get_vibrary()
    admission = vb.record(Detection(
        title=title, url=url, thumbnail=thumbnail, platform=platform, source=source,
    ))
    vb.close()
    if admission.record_id is None:
        typer.echo(f"Rejected: {admission.reason}", err=True)
        raise typer.Exit(1)
    _echo_json_or(
        {"action": admission.action.value, "id": admission.record_id},
        f"{admission.action.value}: {admission.record_id}",
    )


@app.command()
def rate(
    record_id: Annotated[str, typer.Argument(help="Record id")],
    rating: Annotated[int, typer.Argument(help="Rating 0-5 (0 clears)")],
):
    """Rate a video."""
    vb = _get_vibrary()
    with _user_errors():
        rec = vb.set_rating(record_id, rating)
    vb.close()
    _echo_json_or(rec.to_dict(), format_record(rec))


@app.command()
def title(
    record_id: Annotated[str, typer.Argument(help="Record id")],
    new_title: Annotated[str, typer.Argument(help="New title")],
):
    """Edit a video's title."""
    vb = _get_vibrary()
    with _user_errors():
        rec = vb.edit_title(record_id, new_title)
    vb.close()
    _echo_json_or(rec.to_dict(), format_record(rec))


@app.command()
def delete(
    record_id: Annotated[str, typer.Argument(help="Record id")],
):
    """Delete a video from history (playlist copies are kept)."""
    vb = _get_vibrary()
    deleted = vb.delete_from_history(record_id)
    vb.close()
    if not deleted:
        typer.echo(f"Not found: {record_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted {record_id}", err=True)


# -----------------------------------------------------------------------------
# Playlists
# -----------------------------------------------------------------------------

playlist_app = typer.Typer(
    name="playlist",
    help="Playlist management.",
    no_args_is_help=False,
    invoke_without_command=True,
    rich_markup_mode=None,
)
app.add_typer(playlist_app)


@playlist_app.callback(invoke_without_command=True)
def playlist_list(ctx: typer.Context):
    """List playlists with their member counts."""
    if ctx.invoked_subcommand is not None:
        return
    vb = _get_vibrary()
    playlists = vb.list_playlists()
    vb.close()
    _echo_json_or(
        playlists,
        "\n".join(f"{name}  ({len(members)})" for name, members in playlists.items()),
    )


@playlist_app.command("create")
def playlist_create(name: Annotated[str, typer.Argument(help="Playlist name")]):
    """Create an empty playlist."""
    vb = _get_vibrary()
    with _user_errors():
        vb.create_playlist(name)
    vb.close()
    typer.echo(f"Created {name}", err=True)


@playlist_app.command("rename")
def playlist_rename(
    old: Annotated[str, typer.Argument(help="Current name")],
    new: Annotated[str, typer.Argument(help="New name")],
):
    """Rename a playlist."""
    vb = _get_vibrary()
    with _user_errors():
        vb.rename_playlist(old, new)
    vb.close()
    typer.echo(f"Renamed {old} -> {new}", err=True)


@playlist_app.command("delete")
def playlist_delete(name: Annotated[str, typer.Argument(help="Playlist name")]):
    """Delete a playlist; videos in no other playlist leave the library."""
    vb = _get_vibrary()
    with _user_errors():
        dropped = vb.delete_playlist(name)
    vb.close()
    typer.echo(f"Deleted {name} ({len(dropped)} removed from library)", err=True)


@playlist_app.command("add")
def playlist_add(
    record_id: Annotated[str, typer.Argument(help="Record id")],
    name: Annotated[str, typer.Argument(help="Playlist name")],
    create: Annotated[bool, typer.Option("--create", "-c", help="Create the playlist if missing")] = False,
):
    """Add a video to a playlist."""
    vb = _get_vibrary()
    with _user_errors():
        added = vb.add_to_playlist(record_id, name, create=create)
    vb.close()
    typer.echo(f"{'Added' if added else 'Already in'} {name}: {record_id}", err=True)


@playlist_app.command("remove")
def playlist_remove(
    record_id: Annotated[str, typer.Argument(help="Record id")],
    name: Annotated[str, typer.Argument(help="Playlist name")],
):
    """Remove a video from a playlist."""
    vb = _get_vibrary()
    with _user_errors():
        removed = vb.remove_from_playlist(record_id, name)
    vb.close()
    if not removed:
        typer.echo(f"Not in {name}: {record_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Removed from {name}: {record_id}", err=True)


# -----------------------------------------------------------------------------
# Maintenance
# -----------------------------------------------------------------------------

@app.command()
def retention(
    policy: Annotated[Optional[str], typer.Argument(
        help="'off' or a number of days (e.g. 30 or 30d); omit to show"
    )] = None,
):
    """Show or set the history retention policy."""
    vb = _get_vibrary()
    if policy is None:
        settings = vb.get_settings()
    else:
        if policy.strip().lower() not in ("off", "never", "none"):
            digits = policy.strip().lower().removesuffix("d")
            if not digits.isdigit() or int(digits) <= 0:
                vb.close()
                typer.echo(f"Error: retention must be 'off' or a positive number of days: {policy}", err=True)
                raise typer.Exit(1)
        settings = vb.set_retention_policy(policy)
    vb.close()
    shown = settings.retention_policy
    _echo_json_or(
        settings.to_dict(),
        f"retention: {shown if shown == 'off' else f'{shown} days'}",
    )


@app.command()
def cleanup(
    quota: Annotated[bool, typer.Option("--quota", help="Run quota pressure relief instead")] = False,
    force: Annotated[bool, typer.Option("--force", "-f", help="Ignore the interval guard / high-water mark")] = False,
):
    """Run a maintenance cycle now."""
    vb = _get_vibrary()
    result = vb.run_quota_check(force=force) if quota else vb.run_cleanup(force=force)
    vb.close()
    if result.skipped:
        _echo_json_or({"state": result.state.value, "reason": result.reason},
                      f"Skipped: {result.reason}")
        return
    _echo_json_or(
        {"state": result.state.value, "evicted": result.evicted, "repaired": result.repaired},
        f"Evicted {len(result.evicted)} history records",
    )


@app.command()
def sweep():
    """Collapse duplicate records and repair playlist/library consistency."""
    vb = _get_vibrary()
    result = vb.sweep()
    vb.close()
    repaired = result["repaired"]
    _echo_json_or(
        result,
        f"Removed {len(result['history'])} history and {len(result['library'])} library duplicates; "
        f"dropped {repaired['dangling']} dangling references and {repaired['orphans']} orphans",
    )


@app.command()
def migrate():
    """Migrate a legacy single-map store (no-op once migrated)."""
    vb = _get_vibrary()
    plan = vb.migration or vb.migrate()
    vb.close()
    if plan is None:
        typer.echo("Nothing to migrate", err=True)
        return
    typer.echo(
        f"Migrated {len(plan.history)} history and {len(plan.library)} library records",
        err=True,
    )


@app.command()
def stats():
    """Show record counts and storage usage."""
    vb = _get_vibrary()
    info = vb.stats()
    vb.close()
    if _get_json_output():
        typer.echo(json.dumps(info, indent=2))
        return
    quota = info["quota_bytes"]
    usage = f"{info['bytes_in_use']} / {quota} bytes" if quota else f"{info['bytes_in_use']} bytes"
    last = info["last_cleanup_at"]
    typer.echo(f"store:     {info['store_path']} ({info['backend']})")
    typer.echo(f"history:   {info['history']}")
    typer.echo(f"library:   {info['library']}")
    typer.echo(f"playlists: {info['playlists']}")
    typer.echo(f"storage:   {usage}")
    typer.echo(f"retention: {info['retention_policy']}")
    typer.echo(f"cleaned:   {ms_to_iso(last) if last else 'never'}")


# -----------------------------------------------------------------------------
# Data Management
# -----------------------------------------------------------------------------

data_app = typer.Typer(
    name="data",
    help="Data management: export, import.",
    rich_markup_mode=None,
)
app.add_typer(data_app)


@data_app.command("export")
def data_export(
    output: Annotated[str, typer.Argument(help="Output file path (use '-' for stdout)")],
):
    """Export history, library, playlists and settings to JSON."""
    vb = _get_vibrary()
    data = vb.export_data()
    vb.close()

    text = json.dumps(data, indent=2, ensure_ascii=False)
    if output == "-":
        typer.echo(text)
        return
    Path(output).write_text(text + "\n", encoding="utf-8")
    typer.echo(
        f"Exported {len(data['history'])} history and {len(data['library'])} library records, "
        f"{len(data['playlists'])} playlists to {output}",
        err=True,
    )


@data_app.command("import")
def data_import(
    file: Annotated[str, typer.Argument(help="JSON export file to import")],
    prefer: Annotated[str, typer.Option(
        "--prefer", help="On conflict keep 'existing' or 'incoming' data"
    )] = "existing",
):
    """Merge a JSON export into the store."""
    if prefer not in ("existing", "incoming"):
        typer.echo(f"Error: --prefer must be 'existing' or 'incoming', got '{prefer}'", err=True)
        raise SystemExit(1)

    if file == "-":
        data = json.loads(sys.stdin.read())
    else:
        path = Path(file)
        if not path.exists():
            typer.echo(f"Error: file not found: {file}", err=True)
            raise SystemExit(1)
        data = json.loads(path.read_text(encoding="utf-8"))

    vb = _get_vibrary()
    with _user_errors():
        stats = vb.import_data(data, conflict=KEEP_INCOMING if prefer == "incoming" else KEEP_EXISTING)
    vb.close()

    h, lib = stats["history"], stats["library"]
    typer.echo(
        f"Imported history: {h['added']} added, {h['replaced']} replaced, {h['kept']} kept; "
        f"library: {lib['added']} added, {lib['replaced']} replaced, {lib['kept']} kept; "
        f"{stats['swept']} duplicates removed",
        err=True,
    )


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="vibrary CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
