"""CLI entry point for track."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError

from track.activities import ActivityRegistry, DeletePolicy, normalize_name
from track.db import ExportedSession, TrackDatabase
from track.errors import NotFound, TrackError
from track.paths import get_db_path
from track.query import UNBOUNDED, TimeRange, query, resolve
from track.sessions import Session, SessionStore, now_utc, to_utc
from track.stats import Summary, summarize
from track.times import (
    TIMESPEC_HELP,
    TimeSpec,
    between_range,
    day_range,
    format_duration,
    format_range,
    format_stat_duration,
    format_timestamp,
    parse_timespec,
    past_range,
    since_range,
)


class TimeSpecParam(click.ParamType):
    """Click parameter accepting the formats understood by parse_timespec."""

    name = "time"

    def convert(self, value: Any, param: click.Parameter | None, ctx: click.Context | None) -> TimeSpec:
        if isinstance(value, TimeSpec):
            return value
        try:
            return parse_timespec(value)
        except ValueError as e:
            self.fail(str(e), param, ctx)


class SessionRefParam(click.ParamType):
    """A session id, or the keyword 'last'."""

    name = "id|last"

    def convert(self, value: Any, param: click.Parameter | None, ctx: click.Context | None) -> int | str:
        if isinstance(value, int) or value == "last":
            return value
        try:
            session_id = int(value)
        except ValueError:
            self.fail("must be either 'last' or a positive session id", param, ctx)
        if session_id <= 0:
            self.fail("must be either 'last' or a positive session id", param, ctx)
        return session_id


TIMESPEC = TimeSpecParam()
SESSION_REF = SessionRefParam()


def db_option(func: Callable[..., Any]) -> Callable[..., Any]:
    return click.option(
        "--db",
        type=click.Path(path_type=Path),
        default=None,
        envvar="TRACK_DB",
        help="Path to SQLite database (default: user data directory)",
    )(func)


def activity_option(func: Callable[..., Any]) -> Callable[..., Any]:
    return click.option(
        "-a",
        "--activity",
        default=None,
        help="Activity name (default: the active activity)",
    )(func)


def notes_option(func: Callable[..., Any]) -> Callable[..., Any]:
    return click.option("-n", "--notes", default=None, help="Notes for the session")(func)


@contextmanager
def report_errors() -> Iterator[None]:
    """Turn TrackError into an 'Error:' line on stderr and exit status 1."""
    try:
        yield
    except TrackError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def resolve_activity(registry: ActivityRegistry, name: str | None) -> str:
    """Explicit name if given, else the active activity."""
    if name is None:
        if registry.active is None:
            raise NotFound("No activity currently selected; use --activity or 'track set'")
        return registry.active
    return registry.require(name.strip())


def resolve_session(store: SessionStore, ref: int | str) -> Session:
    if ref == "last":
        return store.last()
    return store.get(int(ref))


def format_session(session: Session, *, now: datetime | None = None) -> str:
    """One-line description, e.g. '#3 reading: 20/01/25 10:00 to 11:30 (1h 30m)'."""
    duration = format_stat_duration(session.duration_seconds(now))
    line = f"#{session.id} {session.activity}: {format_range(session.start, session.end)} ({duration})"
    if session.notes:
        line += f" - {session.notes}"
    return line


def make_progress_bar(value: int, max_value: int, width: int = 16) -> str:
    """Create ASCII progress bar.

    Args:
        value: Current value.
        max_value: Maximum value (100%).
        width: Total width of bar (default: 16).

    Returns:
        Progress bar string like '████████░░░░░░░░'.
    """
    if max_value == 0 or value == 0:
        return "░" * width
    filled = max(1, min(width, round((value / max_value) * width)))
    return "█" * filled + "░" * (width - filled)


def _open(db: Path | None) -> TrackDatabase:
    return TrackDatabase.open(db or get_db_path())


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """Track time spent on activities."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


# Activities


@main.command("new")
@click.argument("name")
@db_option
def new_command(name: str, db: Path | None) -> None:
    """Create a new activity and make it active."""
    with report_errors(), _open(db) as database, database.transaction() as (registry, _):
        try:
            name = registry.create(name)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="NAME") from None
        registry.set_active(name)
    click.echo(f'Created new activity "{name}"')
    click.echo(f'"{name}" is now active')


@main.command("set")
@click.argument("name")
@db_option
def set_command(name: str, db: Path | None) -> None:
    """Set the activity that other commands act on."""
    with report_errors(), _open(db) as database, database.transaction() as (registry, _):
        name = registry.require(name.strip())
        registry.set_active(name)
    click.echo(f'"{name}" is now active')


@main.command("rename")
@click.argument("old")
@click.argument("new")
@db_option
def rename_command(old: str, new: str, db: Path | None) -> None:
    """Rename an activity; its sessions follow."""
    with report_errors(), _open(db) as database, database.transaction() as (_, store):
        try:
            new = store.rename_activity(old.strip(), new)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="NEW") from None
    click.echo(f'Renamed activity "{old.strip()}" to "{new}"')


@main.command("delete")
@click.argument("name")
@click.option(
    "--policy",
    type=click.Choice([p.value for p in DeletePolicy]),
    envvar="TRACK_DELETE_POLICY",
    default=None,
    help="What to do with the activity's sessions (default: configured policy, else reject)",
)
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@db_option
def delete_command(name: str, policy: str | None, yes: bool, db: Path | None) -> None:
    """Delete an activity.

    With the reject policy, deletion fails while sessions reference the
    activity. cascade deletes those sessions too; orphan keeps them.
    """
    name = name.strip()
    with report_errors(), _open(db) as database:
        chosen = DeletePolicy(policy) if policy else database.get_delete_policy()
        registry, _ = database.load()
        registry.require(name)
        if not yes and not click.confirm(f'Are you sure you want to delete activity "{name}"?'):
            click.echo(f'Did not delete activity "{name}"')
            return
        with database.transaction() as (_, store):
            removed = store.delete_activity(name, chosen)
    click.echo(f'Deleted activity "{name}"')
    if removed:
        click.echo(f"Deleted {len(removed)} session{'s' if len(removed) != 1 else ''}")


@main.command("current")
@db_option
def current_command(db: Path | None) -> None:
    """Display the name of the active activity."""
    with report_errors(), _open(db) as database:
        registry, _ = database.load()
    if registry.active is None:
        click.echo("There is no activity currently active")
    else:
        click.echo(f'"{registry.active}" is active')


@main.command("all")
@db_option
def all_command(db: Path | None) -> None:
    """Display all activities with their session counts."""
    with report_errors(), _open(db) as database:
        registry, store = database.load()
    if not len(registry):
        click.echo("There are currently no recorded activities")
        return
    click.echo("The recorded activities are:")
    for name in registry.names:
        marker = "*" if name == registry.active else " "
        count = store.count_for(name)
        click.echo(f"{marker} {name} ({count} session{'s' if count != 1 else ''})")


@main.command("config")
@click.option(
    "--delete-policy",
    type=click.Choice([p.value for p in DeletePolicy]),
    default=None,
    help="Default policy for 'track delete'",
)
@db_option
def config_command(delete_policy: str | None, db: Path | None) -> None:
    """Show or change persisted settings."""
    with report_errors(), _open(db) as database:
        if delete_policy is not None:
            database.set_delete_policy(DeletePolicy(delete_policy))
        click.echo(f"delete-policy: {database.get_delete_policy().value}")


# Tracking


@main.command("start")
@activity_option
@click.option("--at", "at", type=TIMESPEC, default=None, help=f"Start time {TIMESPEC_HELP} (default: now)")
@db_option
def start_command(activity: str | None, at: TimeSpec | None, db: Path | None) -> None:
    """Start tracking a session."""
    start = at.to_start() if at else now_utc()
    with report_errors(), _open(db) as database, database.transaction() as (registry, store):
        session = store.start(resolve_activity(registry, activity), start)
    local = session.start.astimezone()
    click.echo(
        f'Started new session of "{session.activity}" on {local:%d/%m/%y} at {local:%H:%M}'
    )


@main.command("end")
@click.option("--at", "at", type=TIMESPEC, default=None, help=f"End time {TIMESPEC_HELP} (default: now)")
@notes_option
@db_option
def end_command(at: TimeSpec | None, notes: str | None, db: Path | None) -> None:
    """End tracking of the ongoing session."""
    with report_errors(), _open(db) as database, database.transaction() as (_, store):
        ongoing = store.current_ongoing()
        end = at.to_end(ongoing.start if ongoing else None) if at else now_utc()
        session = store.end(end, notes.strip() if notes is not None else None)
    click.echo(f'Ended session of "{session.activity}"')
    click.echo(format_session(session))


@main.command("cancel")
@db_option
def cancel_command(db: Path | None) -> None:
    """Cancel tracking of the ongoing session."""
    with report_errors(), _open(db) as database, database.transaction() as (_, store):
        session = store.cancel()
    click.echo(f'Cancelled ongoing session of "{session.activity}"')


@main.command("ongoing")
@db_option
def ongoing_command(db: Path | None) -> None:
    """Display details of the ongoing session."""
    with report_errors(), _open(db) as database:
        _, store = database.load()
    session = store.current_ongoing()
    if session is None:
        click.echo("There is no ongoing session")
        return
    local = session.start.astimezone()
    click.echo(
        f'There is an ongoing session of "{session.activity}" '
        f"that started on {local:%d/%m/%y} at {local:%H:%M}"
    )
    click.echo(f"Current duration: {format_stat_duration(session.duration_seconds())}")


# Editing


@main.command("add")
@click.option("-s", "--start", type=TIMESPEC, required=True, help=f"Session start {TIMESPEC_HELP}")
@click.option(
    "-e",
    "--end",
    type=TIMESPEC,
    required=True,
    help="Session end; a bare date means the end of that day, a bare time is on the start's date",
)
@activity_option
@notes_option
@db_option
def add_command(
    start: TimeSpec,
    end: TimeSpec,
    activity: str | None,
    notes: str | None,
    db: Path | None,
) -> None:
    """Add a finished session."""
    start_dt = start.to_start()
    end_dt = end.to_end(start_dt)
    with report_errors(), _open(db) as database, database.transaction() as (registry, store):
        session = store.add(
            resolve_activity(registry, activity), start_dt, end_dt, (notes or "").strip()
        )
    click.echo(f'Added a new session of "{session.activity}":')
    click.echo(format_session(session))


@main.command("past")
@click.option("-w", "--weeks", type=click.IntRange(min=0), default=0, help="Number of weeks")
@click.option("-d", "--days", type=click.IntRange(min=0), default=0, help="Number of days")
@click.option("-H", "--hours", type=click.IntRange(min=0), default=0, help="Number of hours")
@click.option("-M", "--minutes", type=click.IntRange(min=0), default=0, help="Number of minutes")
@activity_option
@notes_option
@db_option
def past_command(
    weeks: int,
    days: int,
    hours: int,
    minutes: int,
    activity: str | None,
    notes: str | None,
    db: Path | None,
) -> None:
    """Record a session that started some time ago and ends now."""
    now = now_utc()
    window = past_range(now, weeks=weeks, days=days, hours=hours, minutes=minutes)
    if window.start is None:
        raise click.UsageError("Specify how long ago the session started")
    with report_errors(), _open(db) as database, database.transaction() as (registry, store):
        session = store.past(
            resolve_activity(registry, activity), window.start, now, (notes or "").strip()
        )
    click.echo(f'Added a new session of "{session.activity}":')
    click.echo(format_session(session))


@main.command("edit")
@click.argument("ref", type=SESSION_REF)
@click.option("-s", "--start", type=TIMESPEC, default=None, help="New session start")
@click.option("-e", "--end", type=TIMESPEC, default=None, help="New session end")
@activity_option
@notes_option
@db_option
def edit_command(
    ref: int | str,
    start: TimeSpec | None,
    end: TimeSpec | None,
    activity: str | None,
    notes: str | None,
    db: Path | None,
) -> None:
    """Edit a session, given its id or 'last'.

    Omitted fields are left unchanged.
    """
    if start is None and end is None and activity is None and notes is None:
        raise click.UsageError("No edits specified")
    with report_errors(), _open(db) as database, database.transaction() as (registry, store):
        before = resolve_session(store, ref)
        start_dt = start.to_start() if start else None
        end_dt = end.to_end(start_dt or before.start) if end else None
        after = store.edit(
            before.id,
            activity=registry.require(activity.strip()) if activity is not None else None,
            start=start_dt,
            end=end_dt,
            notes=notes.strip() if notes is not None else None,
        )
    click.echo("Edited session from:")
    click.echo(format_session(before))
    click.echo("to:")
    click.echo(format_session(after))


@main.command("remove")
@click.argument("ref", type=SESSION_REF)
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@db_option
def remove_command(ref: int | str, yes: bool, db: Path | None) -> None:
    """Remove a session, given its id or 'last'."""
    with report_errors(), _open(db) as database:
        _, snapshot = database.load()
        session = resolve_session(snapshot, ref)
        click.echo(format_session(session))
        if not yes and not click.confirm("Are you sure you want to remove this session?"):
            click.echo("Did not remove session")
            return
        with database.transaction() as (_, store):
            store.remove(session.id)
    click.echo("Removed session")


# Ranges


def range_options(func: Callable[..., Any]) -> Callable[..., Any]:
    func = db_option(func)
    func = click.option("--json", "output_json", is_flag=True, help="Output as JSON")(func)
    return activity_option(func)


def add_range_commands(group: click.Group) -> None:
    """Attach the past/since/range/on subcommands to a list/stats group.

    The group callback stores a render function in ctx.obj; subcommands pass
    it a factory for their TimeRange, called once errors are being reported.
    """

    @group.command("past")
    @click.option("-w", "--weeks", type=click.IntRange(min=0), default=0, help="Number of weeks")
    @click.option("-d", "--days", type=click.IntRange(min=0), default=0, help="Number of days")
    @click.option("-H", "--hours", type=click.IntRange(min=0), default=0, help="Number of hours")
    @click.option("-M", "--minutes", type=click.IntRange(min=0), default=0, help="Number of minutes")
    @click.pass_obj
    def past_range_command(obj: dict[str, Any], weeks: int, days: int, hours: int, minutes: int) -> None:
        """Sessions between some time in the past and now.

        Omit all amounts to start from the first session.
        """
        obj["render"](
            lambda: past_range(now_utc(), weeks=weeks, days=days, hours=hours, minutes=minutes)
        )

    @group.command("since")
    @click.argument("start", type=TIMESPEC, required=False)
    @click.pass_obj
    def since_range_command(obj: dict[str, Any], start: TimeSpec | None) -> None:
        """Sessions between a specific time and now."""
        obj["render"](lambda: since_range(start, now_utc()))

    @group.command("range")
    @click.option("-s", "--start", type=TIMESPEC, default=None, help="Start of the range")
    @click.option("-e", "--end", type=TIMESPEC, default=None, help="End of the range")
    @click.pass_obj
    def between_range_command(obj: dict[str, Any], start: TimeSpec | None, end: TimeSpec | None) -> None:
        """Sessions between two specific times.

        An omitted start or end is the first start or last end recorded.
        """
        obj["render"](lambda: between_range(start, end))

    @group.command("on")
    @click.argument("day", type=click.DateTime(formats=["%d/%m/%y", "%Y-%m-%d"]))
    @click.pass_obj
    def on_range_command(obj: dict[str, Any], day: datetime) -> None:
        """Sessions on a specific date."""
        obj["render"](lambda: day_range(day.date()))


def _run_range(ctx: click.Context, render: Callable[[TimeRange], None]) -> None:
    def guarded(make_window: Callable[[], TimeRange]) -> None:
        with report_errors():
            render(make_window())

    ctx.obj = {"render": guarded}
    if ctx.invoked_subcommand is None:
        guarded(lambda: UNBOUNDED)


@main.group("list", invoke_without_command=True)
@range_options
@click.pass_context
def list_group(ctx: click.Context, activity: str | None, output_json: bool, db: Path | None) -> None:
    """Display session history, or the sessions in a time range.

    Without a subcommand, the full history is shown.
    """

    def render(window: TimeRange) -> None:
        with _open(db) as database:
            registry, store = database.load()
        name = registry.require(activity.strip()) if activity else None
        sessions = [s for s in query(store, window) if name is None or s.activity == name]
        if output_json:
            records = [ExportedSession.from_session(s).model_dump(mode="json") for s in sessions]
            click.echo(json.dumps(records, indent=2))
            return
        where = f' of "{name}"' if name else ""
        if not sessions:
            click.echo(f"There are no recorded sessions{where}{_describe_range(window)}")
            return
        click.echo(f"The recorded sessions{where}{_describe_range(window)} are:")
        for session in sessions:
            click.echo(f"  {format_session(session)}")

    _run_range(ctx, render)


@main.group("stats", invoke_without_command=True)
@range_options
@click.pass_context
def stats_group(ctx: click.Context, activity: str | None, output_json: bool, db: Path | None) -> None:
    """Display session statistics, overall or in a time range.

    Without a subcommand, statistics cover the full history.
    """

    def render(window: TimeRange) -> None:
        with _open(db) as database:
            registry, store = database.load()
        name = registry.require(activity.strip()) if activity else None
        now = now_utc()
        sessions = query(store, window)
        summary = summarize(sessions, window, name, now=now)
        if output_json:
            click.echo(summary.model_dump_json(indent=2))
            return
        if summary.session_count == 0:
            where = f' of "{name}"' if name else ""
            click.echo(f"There are no recorded sessions{where}{_describe_range(window)}")
            return
        resolved = resolve(window, [s for s in sessions if name is None or s.activity == name], now)
        _output_human_stats(summary, resolved)

    _run_range(ctx, render)


add_range_commands(list_group)
add_range_commands(stats_group)


def _describe_range(window: TimeRange) -> str:
    if window.start is not None and window.end is not None:
        return f" from {format_range(window.start, window.end)}"
    if window.start is not None:
        return f" since {format_timestamp(window.start)}"
    if window.end is not None:
        return f" until {format_timestamp(window.end)}"
    return ""


def _output_human_stats(summary: Summary, resolved: TimeRange) -> None:
    """Output human-readable statistics."""
    span = format_stat_duration(summary.span_seconds)
    subject = f' for "{summary.activity}"' if summary.activity else ""
    click.echo(f"Session statistics{subject}{_describe_range(resolved)} ({span}):")
    click.echo(f"Number of sessions: {summary.session_count}")
    click.echo(f"Total time: {format_stat_duration(summary.total_seconds)}")
    click.echo(f"Average time per day: {format_stat_duration(summary.average_per_day_seconds)}")
    click.echo(f"Average session length: {format_stat_duration(summary.average_session_seconds)}")
    click.echo(f"Proportion of time tracked: {summary.proportion * 100:.1f}%")
    if summary.longest is not None:
        click.echo(
            f"Longest session: #{summary.longest.id} {summary.longest.activity} "
            f"({format_stat_duration(summary.longest_seconds)})"
        )
    if summary.busiest_day is not None:
        click.echo(
            f"Busiest day: {summary.busiest_day:%d/%m/%y} "
            f"({format_stat_duration(summary.busiest_day_seconds)})"
        )
    click.echo()

    click.echo("By activity:")
    max_total = max(summary.by_activity.values(), default=0)
    ordered = sorted(summary.by_activity.items(), key=lambda item: (-item[1], item[0]))
    for name, seconds in ordered:
        display = name if len(name) <= 20 else name[:17] + "..."
        count = summary.session_counts.get(name, 0)
        bar = make_progress_bar(seconds, max_total)
        click.echo(f"  {display:<20} {format_duration(seconds):>9} {count:>4}   {bar}")


# Import/export


@main.command("export")
@activity_option
@db_option
def export_command(activity: str | None, db: Path | None) -> None:
    """Write sessions to stdout as JSONL."""
    with report_errors(), _open(db) as database:
        _, store = database.load()
    for session in store:
        if activity is None or session.activity == activity:
            click.echo(ExportedSession.from_session(session).model_dump_json())


@main.command("import")
@db_option
def import_command(db: Path | None) -> None:
    """Import sessions from stdin (JSONL format, as written by export).

    Unknown activities are created. Sessions already present (same activity,
    start and end) are skipped; sessions conflicting with existing ones are
    reported and skipped.

    Example usage:
        ssh laptop "track export" | track import
    """
    imported_count = 0
    valid_count = 0
    has_input = False

    with report_errors(), _open(db) as database, database.transaction() as (registry, store):
        for line_number, line in enumerate(sys.stdin, 1):
            stripped = line.strip()
            if not stripped:
                continue

            has_input = True

            try:
                record = ExportedSession.model_validate(json.loads(stripped))
            except json.JSONDecodeError as e:
                click.echo(f"Warning: line {line_number}: invalid JSON: {e}", err=True)
                continue
            except ValidationError as e:
                click.echo(f"Warning: line {line_number}: validation error: {e}", err=True)
                continue

            valid_count += 1
            try:
                name = normalize_name(record.activity)
            except ValueError as e:
                click.echo(f"Warning: line {line_number}: {e}", err=True)
                continue
            if _already_imported(store, name, record):
                continue
            # A new activity is dropped again if its session is rejected
            created = name not in registry
            if created:
                registry.create(name)
            try:
                if record.end is None:
                    store.start(name, record.start)
                else:
                    store.add(name, record.start, record.end, record.notes)
            except TrackError as e:
                if created:
                    registry.delete(name)
                click.echo(f"Warning: line {line_number}: {e}", err=True)
                continue
            imported_count += 1

    click.echo(f"Imported {imported_count} sessions")

    # Exit code 1 if we had input but no valid records (all lines were errors)
    if has_input and valid_count == 0:
        sys.exit(1)


def _already_imported(store: SessionStore, name: str, record: ExportedSession) -> bool:
    """Whether the store holds a session of ``name`` with the record's times."""
    start = to_utc(record.start)
    end = to_utc(record.end) if record.end is not None else None
    index = store.bisect_left(start)
    return any(
        (existing.activity, existing.start, existing.end) == (name, start, end)
        for existing in store.slice(index, index + 1)
    )


if __name__ == "__main__":
    main()
