"""
CLI interface for the moodleaf journal pipeline.

Usage:
    moodleaf entry new alice --body "Had a great day"
    moodleaf run
    moodleaf status ENTRY_ID
"""

import json
import os
import sys
from dataclasses import asdict, fields
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import Journal
from .errors import ConflictError, NotFoundError
from .logging_config import configure_quiet_mode, enable_debug_mode

# Configure quiet mode by default (suppress verbose library output)
# Set MOODLEAF_VERBOSE=1 to enable debug mode via environment
if os.environ.get("MOODLEAF_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


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
    if value is not None:
        _store_override = value


app = typer.Typer(
    name="moodleaf",
    help="Journal entries with AI mood scores and personal quotes.",
    no_args_is_help=True,
    rich_markup_mode=None,
)
entry_app = typer.Typer(help="Create, edit, show and delete entries.", no_args_is_help=True)
app.add_typer(entry_app, name="entry")


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
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="MOODLEAF_STORE_PATH",
        help="Path to the store directory (default: ~/.moodleaf/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Journal entries with AI mood scores and personal quotes."""


def _get_journal() -> Journal:
    """Open the journal store, handling errors gracefully."""
    import atexit
    try:
        journal = Journal(_store_override)
    except (ValueError, OSError) as e:
        typer.echo(f"Error: cannot open store: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(journal.close)
    return journal


def _echo(data, text: str) -> None:
    """Print JSON in --json mode, else the plain text rendering."""
    if _json_output:
        typer.echo(json.dumps(data, indent=2, default=str))
    else:
        typer.echo(text)


def _render_entry(entry) -> str:
    mood = "-" if entry.mood_score is None else str(entry.mood_score)
    if entry.mood_is_stale:
        mood += " (stale)"
    lines = [
        f"id: {entry.id}",
        f"user: {entry.user_id}",
        f"date: {entry.entry_date}",
        f"title: {entry.title}",
        f"version: {entry.version}",
        f"mood: {mood}",
        f"updated: {entry.updated_at}",
    ]
    if entry.body:
        lines += ["", entry.body]
    return "\n".join(lines)


def _read_body(body: Optional[str]) -> Optional[str]:
    if body == "-":
        return sys.stdin.read()
    return body


# -----------------------------------------------------------------------------
# Entries
# -----------------------------------------------------------------------------

@entry_app.command("new")
def entry_new(
    user_id: Annotated[str, typer.Argument(help="Owning user id")],
    title: Annotated[Optional[str], typer.Option("--title", "-t", help="Title (default: the date)")] = None,
    body: Annotated[Optional[str], typer.Option("--body", "-b", help="Body text, or - for stdin")] = None,
    entry_date: Annotated[Optional[str], typer.Option("--date", help="Entry date YYYY-MM-DD")] = None,
):
    """Create an entry."""
    journal = _get_journal()
    try:
        entry = journal.create_entry(
            user_id, title=title, body=_read_body(body) or "", entry_date=entry_date,
        )
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    _echo(asdict(entry), entry.id)


@entry_app.command("edit")
def entry_edit(
    entry_id: Annotated[str, typer.Argument(help="Entry id")],
    title: Annotated[Optional[str], typer.Option("--title", "-t", help="New title")] = None,
    body: Annotated[Optional[str], typer.Option("--body", "-b", help="New body, or - for stdin")] = None,
    expected_version: Annotated[Optional[int], typer.Option(
        "--expected-version", "-e",
        help="Reject the edit unless the entry is still at this version",
    )] = None,
):
    """Edit an entry's title and/or body.

    Title and body are separate versioned writes, so a checked edit
    (--expected-version) changes one of them at a time.
    """
    if title is None and body is None:
        typer.echo("Nothing to change: give --title and/or --body.", err=True)
        raise typer.Exit(1)
    if title is not None and body is not None and expected_version is not None:
        typer.echo(
            "With --expected-version, edit --title and --body in separate commands.",
            err=True,
        )
        raise typer.Exit(1)
    journal = _get_journal()
    try:
        if title is not None:
            journal.update_metadata(entry_id, title=title, expected_version=expected_version)
        if body is not None:
            journal.update_body(entry_id, _read_body(body), expected_version=expected_version)
    except NotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except ConflictError as e:
        typer.echo(f"Conflict: {e}", err=True)
        raise typer.Exit(2)
    entry = journal.get_entry(entry_id)
    _echo(asdict(entry), f"{entry.id} now at version {entry.version}")


@entry_app.command("show")
def entry_show(entry_id: Annotated[str, typer.Argument(help="Entry id")]):
    """Show an entry with its mood score."""
    journal = _get_journal()
    entry = journal.get_entry(entry_id)
    if entry is None:
        typer.echo(f"Not found: {entry_id}", err=True)
        raise typer.Exit(1)
    _echo(asdict(entry), _render_entry(entry))


@entry_app.command("delete")
def entry_delete(entry_id: Annotated[str, typer.Argument(help="Entry id")]):
    """Delete an entry and its pending analysis."""
    journal = _get_journal()
    if not journal.delete_entry(entry_id):
        typer.echo(f"Not found: {entry_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted {entry_id}", err=True)


# -----------------------------------------------------------------------------
# State
# -----------------------------------------------------------------------------

@app.command("status")
def status_cmd(entry_id: Annotated[str, typer.Argument(help="Entry id")]):
    """Show the mood analysis state of an entry."""
    journal = _get_journal()
    try:
        state = journal.get_pending_analysis_state(entry_id)
    except NotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    entry = journal.get_entry(entry_id)
    item = journal.queue.get(entry_id)
    data = {
        "id": entry_id,
        "state": state.value,
        "mood_score": entry.mood_score,
        "version": entry.version,
        "queue": asdict(item) if item else None,
    }
    text = f"{entry_id}: {state.value}"
    if entry.mood_score is not None:
        text += f" (mood {entry.mood_score})"
    if item is not None:
        text += f"\n  scheduled for {item.scheduled_for}, attempts {item.attempt_count}"
        if item.last_error:
            text += f"\n  last error: {item.last_error}"
    _echo(data, text)


@app.command("quote")
def quote_cmd(user_id: Annotated[str, typer.Argument(help="User id")]):
    """Show a user's inspirational quote."""
    journal = _get_journal()
    quote = journal.get_quote(user_id)
    state = journal.quote_state(user_id)
    if quote is None:
        if state is None:
            typer.echo(f"No quote for {user_id}.", err=True)
        else:
            typer.echo(f"No quote for {user_id} yet ({state.value}).", err=True)
        raise typer.Exit(1)
    data = asdict(quote)
    data["state"] = state.value if state else None
    _echo(data, f"\"{quote.quote}\"\n  {', '.join(quote.tags)}  [{data['state']}]")


@app.command("queue")
def queue_cmd(
    retry: Annotated[bool, typer.Option(
        "--retry",
        help="Reset dropped analyses back to pending for retry"
    )] = False,
):
    """Show analysis queue statistics and dropped analyses."""
    journal = _get_journal()
    if retry:
        n = journal.retry_failed()
        if n:
            typer.echo(f"Reset {n} failed analyses back to pending.", err=True)
        else:
            typer.echo("No failed analyses to retry.", err=True)
    stats = journal.queue_stats()
    failed = journal.list_failed()
    if _json_output:
        stats["failed_items"] = [asdict(item) for item in failed]
        typer.echo(json.dumps(stats, indent=2))
        return
    typer.echo(
        f"pending: {stats['pending']}  processing: {stats['processing']}  "
        f"failed: {stats['failed']}"
    )
    if stats["next_due"]:
        typer.echo(f"next due: {stats['next_due']}")
    for item in failed[:5]:
        typer.echo(f"  {item.entry_id}: {item.last_error or 'unknown'}", err=True)
    if len(failed) > 5:
        typer.echo(f"  ... and {len(failed) - 5} more", err=True)


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------

@app.command("run")
def run_cmd():
    """Run the scheduler until interrupted (SIGINT/SIGTERM)."""
    import logging
    import signal
    import threading

    journal = _get_journal()
    scheduler = journal.create_scheduler()
    stop = threading.Event()
    _run_logger = logging.getLogger("moodleaf.cli.run")

    def handle_signal(signum, frame):
        stop.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    _run_logger.info("Scheduler started (pid=%d)", os.getpid())
    typer.echo(f"Running on {journal.store_path} (Ctrl-C to stop)", err=True)
    try:
        scheduler.run(stop)
    finally:
        scheduler.shutdown()
        _run_logger.info("Scheduler stopped: %s", scheduler.stats)
    _echo(scheduler.stats, " ".join(f"{k}={v}" for k, v in scheduler.stats.items()))


@app.command("tick")
def tick_cmd(
    timeout: Annotated[float, typer.Option(
        "--timeout",
        help="Seconds to wait for dispatched work",
    )] = 120.0,
):
    """Run one mood tick and one quote tick, and wait for the results."""
    journal = _get_journal()
    scheduler = journal.create_scheduler()
    try:
        moods = scheduler.tick_mood()
        quotes = scheduler.tick_quotes()
        finished = scheduler.wait_idle(timeout=timeout)
    finally:
        scheduler.shutdown(wait=False)
    data = dict(scheduler.stats, claimed_entries=moods, claimed_quotes=quotes,
                finished=finished)
    _echo(data, " ".join(f"{k}={v}" for k, v in data.items()))


@app.command("rebuild")
def rebuild_cmd():
    """Re-create lost queue rows and quote flags from the entries."""
    journal = _get_journal()
    result = journal.rebuild_schedules()
    _echo(result, f"Queued {result['entries']} entries, tracked {result['users']} new users.")


@app.command("config")
def config_cmd():
    """Show the store configuration."""
    journal = _get_journal()
    cfg = journal.config
    pipeline = {f.name: getattr(cfg.pipeline, f.name) for f in fields(cfg.pipeline)}
    data = {
        "file": str(cfg.config_path),
        "database": str(cfg.database_path),
        "pipeline": pipeline,
        "primary": {"name": cfg.primary.name, **cfg.primary.params},
        "fallback": {"name": cfg.fallback.name, "enabled": cfg.fallback.enabled,
                     **cfg.fallback.params},
    }
    lines = [f"file: {data['file']}", f"database: {data['database']}",
             f"primary: {cfg.primary.name}",
             f"fallback: {cfg.fallback.name}" + ("" if cfg.fallback.enabled else " (disabled)")]
    lines += [f"{k}: {v}" for k, v in pipeline.items()]
    _echo(data, "\n".join(lines))


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
        log_path = log_exception(e, context="moodleaf CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
