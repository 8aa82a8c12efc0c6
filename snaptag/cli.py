"""
CLI interface for snaptag.

Usage:
    snaptag add file:///photos/cat.jpg --tags "cat, dog" --comment vet
    snaptag search cat
    snaptag remind <record-id> +1h
    snaptag watch
"""

import json
import os
import queue
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import PhotoTagger
from .errors import NotFound, PlatformSchedulingError, ValidationError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .timers import NullTimerService
from .types import (
    Alarm,
    AlarmStatus,
    ShowRecordEvent,
    TaggedRecord,
    ensure_utc,
    local_display,
    utc_now,
)

# Relative reminder times: +90s, +30m, +2h, +1d, +1w
_OFFSET_PATTERN = re.compile(r'^\+(\d+)\s*([smhdw])$')
_OFFSET_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


# Configure quiet mode by default (suppress INFO chatter on the terminal)
# Set SNAPTAG_VERBOSE=1 to enable debug mode via environment
if os.environ.get("SNAPTAG_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"snaptag {version('snaptag')}")
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
    name="snaptag",
    help="Tagged photos with one-shot reminders.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


def parse_when(value: str, now: Optional[datetime] = None) -> datetime:
    """
    Parse a reminder time.

    Accepts an offset from now (+90s, +30m, +2h, +1d, +1w) or an ISO 8601
    datetime. Naive datetimes are local time.
    """
    value = value.strip()
    match = _OFFSET_PATTERN.match(value)
    if match:
        amount, unit = int(match.group(1)), match.group(2)
        return (now or utc_now()) + timedelta(**{_OFFSET_UNITS[unit]: amount})
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise typer.BadParameter(
            f"Invalid time {value!r}. Use +30m, +2h, +1d or an ISO datetime like 2026-05-01T09:00"
        )
    if dt.tzinfo is None:
        dt = dt.astimezone()  # local time
    return ensure_utc(dt)


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _format_record_line(record: TaggedRecord) -> str:
    tags = ", ".join(record.tags)
    line = f"{record.id} {local_display(record.created_at)} [{tags}]"
    if record.comment:
        line += f" {record.comment}"
    return line


def _format_alarm_line(alarm: Alarm) -> str:
    line = f"{alarm.id} {alarm.status.value:<9} {local_display(alarm.fire_at)} record={alarm.record_id}"
    if alarm.last_error:
        line += f" (error: {alarm.last_error})"
    return line


def _format_records(records: list[TaggedRecord]) -> str:
    if _get_json_output():
        return json.dumps([r.to_dict() for r in records], indent=2)
    return "\n".join(_format_record_line(r) for r in records)


def _format_alarms(alarms: list[Alarm]) -> str:
    if _get_json_output():
        return json.dumps([a.to_dict() for a in alarms], indent=2)
    return "\n".join(_format_alarm_line(a) for a in alarms)


def _format_event(event: ShowRecordEvent) -> str:
    if _get_json_output():
        return json.dumps({
            "event": event.source,
            "alarm_id": event.alarm_id,
            "record": event.record.to_dict(),
        })
    return f"Reminder {event.alarm_id}: {event.record.photo_ref} {_format_record_line(event.record)}"


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="SNAPTAG_STORE_PATH",
        help="Path to the store directory (default: ~/.snaptag/)"
    )
]


def _get_tagger(store: Optional[Path], *, long_running: bool = False) -> PhotoTagger:
    """Open the store, handling errors gracefully.

    One-shot commands use the null timer service: the alarm is durable and
    `snaptag watch` arms it. Long-running commands get real timers and must
    call reconcile() themselves once their listeners are subscribed.
    """
    import atexit

    actual_store = store if store is not None else _get_store_override()
    try:
        if long_running:
            tagger = PhotoTagger(actual_store, reconcile=False)
        else:
            tagger = PhotoTagger(actual_store, timers=NullTimerService())
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(tagger.close)
    return tagger


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
        envvar="SNAPTAG_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Tagged photos with one-shot reminders."""


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------

@app.command()
def add(
    photo_ref: Annotated[str, typer.Argument(help="Reference to the stored photo (path or URI)")],
    tags: Annotated[str, typer.Option(
        "--tags", "-t",
        help="Comma-separated tags, e.g. \"cat, dog\"",
    )] = "",
    comment: Annotated[str, typer.Option(
        "--comment", "-c",
        help="Free-text comment",
    )] = "",
    remind: Annotated[Optional[str], typer.Option(
        "--remind", "-r",
        help="Also set a reminder (+2h, +1d, or ISO datetime)",
    )] = None,
    store: StoreOption = None,
):
    """
    Tag a photo.

    \b
    Examples:
        snaptag add ~/Pictures/cat.jpg -t "cat, vet" -c "booster due"
        snaptag add photos://1234 -t receipt -r +1w
    """
    fire_at = parse_when(remind) if remind else None
    tagger = _get_tagger(store)
    try:
        record = tagger.create_tagged_record(photo_ref, tags, comment)
    except ValidationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(_format_records([record]) if _get_json_output() else _format_record_line(record))
    if fire_at is not None:
        _schedule(tagger, record.id, fire_at)


@app.command()
def show(
    id: Annotated[str, typer.Argument(help="Record ID")],
    store: StoreOption = None,
):
    """Show a record and its reminders."""
    tagger = _get_tagger(store)
    try:
        record = tagger.get_record(id)
    except NotFound:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    alarms = tagger.list_alarms(record_id=id)
    if _get_json_output():
        data = record.to_dict()
        data["alarms"] = [a.to_dict() for a in alarms]
        typer.echo(json.dumps(data, indent=2))
        return
    typer.echo(f"id: {record.id}")
    typer.echo(f"photo: {record.photo_ref}")
    typer.echo(f"tags: {', '.join(record.tags)}")
    typer.echo(f"comment: {record.comment}")
    typer.echo(f"created: {local_display(record.created_at)}")
    for alarm in alarms:
        typer.echo(f"reminder: {_format_alarm_line(alarm)}")


@app.command("list")
def list_records(
    store: StoreOption = None,
):
    """List all tagged photos, oldest first."""
    tagger = _get_tagger(store)
    records = tagger.list_records()
    if records or _get_json_output():
        typer.echo(_format_records(records))


@app.command()
def search(
    tag: Annotated[str, typer.Argument(help="Tag to look for")],
    prefix: Annotated[bool, typer.Option(
        "--prefix", "-p",
        help="Match tags starting with TAG",
    )] = False,
    substring: Annotated[bool, typer.Option(
        "--substring", "-S",
        help="Match tags containing TAG",
    )] = False,
    store: StoreOption = None,
):
    """Find photos by tag."""
    if prefix and substring:
        typer.echo("Error: Specify either --prefix or --substring, not both", err=True)
        raise typer.Exit(1)
    match = "prefix" if prefix else "substring" if substring else None
    tagger = _get_tagger(store)
    records = tagger.search_by_tag(tag, match=match)
    if records or _get_json_output():
        typer.echo(_format_records(records))


@app.command()
def tags(
    store: StoreOption = None,
):
    """List distinct tags."""
    tagger = _get_tagger(store)
    values = tagger.list_tags()
    if _get_json_output():
        typer.echo(json.dumps(values))
    elif values:
        typer.echo("\n".join(values))


@app.command()
def edit(
    id: Annotated[str, typer.Argument(help="Record ID")],
    tags: Annotated[Optional[str], typer.Option(
        "--tags", "-t",
        help="Replace tags (comma-separated)",
    )] = None,
    comment: Annotated[Optional[str], typer.Option(
        "--comment", "-c",
        help="Replace comment",
    )] = None,
    store: StoreOption = None,
):
    """Change the tags or comment of a photo."""
    if tags is None and comment is None:
        typer.echo("Error: Nothing to change (use --tags and/or --comment)", err=True)
        raise typer.Exit(1)
    tagger = _get_tagger(store)
    try:
        record = tagger.update_record(id, tags, comment)
    except NotFound:
        typer.echo(f"Not found: {id}", err=True)
        raise typer.Exit(1)
    typer.echo(_format_records([record]) if _get_json_output() else _format_record_line(record))


@app.command("del")
def del_cmd(
    id: Annotated[list[str], typer.Argument(help="ID(s) of record(s) to delete")],
    store: StoreOption = None,
):
    """
    Delete photo record(s) along with their reminders.

    The photo itself is not touched.
    """
    tagger = _get_tagger(store)
    had_errors = False
    for one_id in id:
        try:
            tagger.delete_record(one_id)
        except NotFound:
            typer.echo(f"Not found: {one_id}", err=True)
            had_errors = True
            continue
        typer.echo(f"Deleted {one_id}")
    if had_errors:
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Reminders
# -----------------------------------------------------------------------------

def _schedule(tagger: PhotoTagger, record_id: str, fire_at: datetime) -> Alarm:
    try:
        alarm = tagger.schedule_alarm(record_id, fire_at)
    except NotFound:
        typer.echo(f"Not found: {record_id}", err=True)
        raise typer.Exit(1)
    except PlatformSchedulingError as e:
        typer.echo(f"Warning: {e}", err=True)
        if e.alarm is not None:
            typer.echo(_format_alarms([e.alarm]) if _get_json_output() else _format_alarm_line(e.alarm))
        raise typer.Exit(1)
    typer.echo(_format_alarms([alarm]) if _get_json_output() else _format_alarm_line(alarm))
    return alarm


@app.command()
def remind(
    record_id: Annotated[str, typer.Argument(help="Record ID")],
    when: Annotated[str, typer.Argument(help="+30m, +2h, +1d, +1w or ISO datetime")],
    store: StoreOption = None,
):
    """
    Set a one-shot reminder for a photo.

    Replaces any reminder still pending for the same photo. Reminders fire
    while `snaptag watch` is running; overdue ones fire when it starts.
    """
    fire_at = parse_when(when)
    tagger = _get_tagger(store)
    _schedule(tagger, record_id, fire_at)


@app.command()
def cancel(
    alarm_id: Annotated[str, typer.Argument(help="Reminder ID")],
    store: StoreOption = None,
):
    """Cancel a pending reminder. Fired or cancelled reminders are left as is."""
    tagger = _get_tagger(store)
    try:
        tagger.cancel_alarm(alarm_id)
    except NotFound:
        typer.echo(f"Not found: {alarm_id}", err=True)
        raise typer.Exit(1)
    alarm = tagger.get_alarm(alarm_id)
    typer.echo(_format_alarms([alarm]) if _get_json_output() else _format_alarm_line(alarm))


@app.command()
def alarms(
    record: Annotated[Optional[str], typer.Option(
        "--record", "-r",
        help="Only reminders for this record",
    )] = None,
    status: Annotated[Optional[str], typer.Option(
        "--status",
        help="Only reminders in this status (pending, fired, cancelled)",
    )] = None,
    store: StoreOption = None,
):
    """List reminders by fire time."""
    if status is not None and status not in {s.value for s in AlarmStatus}:
        typer.echo(f"Error: Unknown status {status!r}", err=True)
        raise typer.Exit(1)
    tagger = _get_tagger(store)
    found = tagger.list_alarms(record_id=record, status=status)
    if found or _get_json_output():
        typer.echo(_format_alarms(found))


@app.command("open")
def open_cmd(
    notification_id: Annotated[str, typer.Argument(help="Notification (reminder) ID")],
    store: StoreOption = None,
):
    """Show the photo a reminder notification points to."""
    tagger = _get_tagger(store)
    try:
        record = tagger.on_notification_tapped(notification_id)
    except NotFound:
        typer.echo("Reminder no longer available")
        return
    typer.echo(_format_records([record]) if _get_json_output() else _format_record_line(record))


@app.command()
def watch(
    poll: Annotated[float, typer.Option(
        "--poll",
        help="Seconds between idle checks",
    )] = 1.0,
    exit_when_idle: Annotated[bool, typer.Option(
        "--exit-when-idle",
        help="Stop once no reminders are pending",
    )] = False,
    store: StoreOption = None,
):
    """
    Run reminder timers and print each reminder as it fires.

    Pending reminders are re-armed on start; overdue ones fire at once.
    Reminders added by other commands are picked up at each poll.
    Stop with Ctrl+C.
    """
    events: "queue.Queue[ShowRecordEvent]" = queue.Queue()
    tagger = _get_tagger(store, long_running=True)
    tagger.subscribe(events.put)
    tagger.reconcile()
    try:
        while True:
            try:
                typer.echo(_format_event(events.get(timeout=poll)))
                continue
            except queue.Empty:
                pass
            # Reminders added by other snaptag commands since the last poll
            tagger.arm_new_alarms()
            if exit_when_idle and not tagger.list_alarms(status=AlarmStatus.PENDING):
                # Drain a delivery that raced the idle check
                try:
                    typer.echo(_format_event(events.get(timeout=poll)))
                    continue
                except queue.Empty:
                    break
    except KeyboardInterrupt:
        pass
    finally:
        tagger.close()


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
        log_path = log_exception(e, context="snaptag CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
