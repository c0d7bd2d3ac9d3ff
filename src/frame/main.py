"""Main entry point: the ``frame`` command group.

One-shot commands open the project, apply one change through an
``EditSession`` (so locking, undo bookkeeping and the recovery log behave
exactly as in the interactive loop) and commit any deferred move before
exiting. A ``FrameError`` is reported as a single ``Error:`` line with exit
status 1.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

import click

from . import recovery
from .board import Position
from .clean import run_clean
from .cli import SECTION_ALIASES, STATE_ALIASES, run_tui
from .errors import FrameError, PreconditionFailedError
from .render import (
    clean_report_lines,
    inbox_lines,
    recovery_lines,
    search_lines,
    task_detail_lines,
    track_lines,
)
from .search import compile_pattern, search_inbox, search_tasks
from .session import EditSession
from .storage import init_project, slugify
from .tracks import task_counts

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: int = 0) -> None:
    level_name = os.environ.get("FRAME_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    if verbose:
        level = min(level, logging.INFO if verbose == 1 else logging.DEBUG)
    logging.basicConfig(level=level, format=LOG_FORMAT)


class FrameGroup(click.Group):
    """Turns FrameError from any subcommand into a click error (exit 1)."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except FrameError as exc:
            raise click.ClickException(str(exc)) from exc


def _start(ctx: click.Context) -> Optional[Path]:
    return ctx.find_root().obj.get("project_dir")


def _open(ctx: click.Context) -> EditSession:
    return EditSession.open(_start(ctx))


def _locate(session: EditSession, task_id: str) -> str:
    track_id, _ = session.board.locate(task_id)
    return track_id


def _position(top: bool, after: Optional[str]) -> Position:
    if top and after:
        raise PreconditionFailedError("use either --top or --after")
    if top:
        return Position.top()
    if after:
        return Position.after(after)
    return Position.bottom()


def _echo_lines(lines: List[str]) -> None:
    for line in lines:
        click.echo(line)


@click.group(cls=FrameGroup)
@click.option("-C", "--project-dir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Start project discovery here instead of the current directory.")
@click.option("-v", "--verbose", count=True, help="More log output (-vv for debug).")
@click.pass_context
def cli(ctx: click.Context, project_dir: Optional[Path], verbose: int) -> None:
    """Plain-text task tracking."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["project_dir"] = project_dir


# -------------------- project --------------------
@cli.command()
@click.option("--name", default=None, help="Project name (defaults to the directory name).")
@click.option("--track", "tracks", multiple=True, help="Create a track with this name (repeatable).")
@click.pass_context
def init(ctx: click.Context, name: Optional[str], tracks: List[str]) -> None:
    """Create frame/ in the current (or -C) directory."""
    root = (_start(ctx) or Path.cwd()).resolve()
    try:
        frame_dir = init_project(root, name or root.name, tracks)
    except FileExistsError as exc:
        raise PreconditionFailedError(str(exc)) from exc
    click.echo(f"initialized {frame_dir}")


@cli.command()
@click.argument("track_id")
@click.argument("title", nargs=-1, required=True)
@click.option("--top", is_flag=True, help="Insert at the top of Backlog.")
@click.option("--after", default=None, metavar="ID", help="Insert after this task.")
@click.pass_context
def add(ctx, track_id, title, top, after):
    """Add a task to a track's Backlog."""
    session = _open(ctx)
    task_id = session.add_task(track_id, " ".join(title), _position(top, after))
    click.echo(task_id)


@cli.command()
@click.argument("parent_id")
@click.argument("title", nargs=-1, required=True)
@click.option("--after", default=None, metavar="ID", help="Insert after this sibling.")
@click.pass_context
def sub(ctx, parent_id, title, after):
    """Add a subtask."""
    session = _open(ctx)
    click.echo(session.add_subtask(_locate(session, parent_id), parent_id, " ".join(title), after))


@cli.command()
@click.argument("task_id")
@click.argument("state", type=click.Choice(sorted(STATE_ALIASES), case_sensitive=False))
@click.pass_context
def state(ctx, task_id, state):
    """Set a task's state (done and reopen move the task between sections)."""
    session = _open(ctx)
    session.set_state(_locate(session, task_id), task_id, STATE_ALIASES[state.lower()])
    session.close()


@cli.command()
@click.argument("task_id")
@click.argument("tags", nargs=-1, required=True)
@click.option("--remove", is_flag=True, help="Remove the tags instead of adding them.")
@click.pass_context
def tag(ctx, task_id, tags, remove):
    """Add (or --remove) tags."""
    session = _open(ctx)
    track_id = _locate(session, task_id)
    for name in tags:
        if remove:
            session.remove_tag(track_id, task_id, name)
        else:
            session.add_tag(track_id, task_id, name)


@cli.command()
@click.argument("task_id")
@click.argument("dep_ids", nargs=-1, required=True)
@click.option("--remove", is_flag=True, help="Remove the dependencies instead.")
@click.pass_context
def dep(ctx, task_id, dep_ids, remove):
    """Add (or --remove) dependencies on other tasks."""
    session = _open(ctx)
    track_id = _locate(session, task_id)
    for dep_id in dep_ids:
        if remove:
            session.remove_dep(track_id, task_id, dep_id)
        else:
            session.add_dep(track_id, task_id, dep_id)


@cli.command()
@click.argument("task_id")
@click.argument("text")
@click.option("--append", is_flag=True, help="Append a paragraph instead of replacing.")
@click.pass_context
def note(ctx, task_id, text, append):
    """Set a task's note (an empty TEXT removes it)."""
    session = _open(ctx)
    track_id = _locate(session, task_id)
    if append:
        session.append_note(track_id, task_id, text)
    else:
        session.set_note(track_id, task_id, text)


@cli.command()
@click.argument("task_id")
@click.argument("path")
@click.pass_context
def ref(ctx, task_id, path):
    """Add a file reference."""
    session = _open(ctx)
    session.add_ref(_locate(session, task_id), task_id, path)


@cli.command()
@click.argument("task_id")
@click.argument("path")
@click.pass_context
def spec(ctx, task_id, path):
    """Set the spec reference (path#section)."""
    session = _open(ctx)
    session.set_spec(_locate(session, task_id), task_id, path)


@cli.command()
@click.argument("task_id")
@click.argument("title", nargs=-1, required=True)
@click.pass_context
def title(ctx, task_id, title):
    """Retitle a task (trailing #tags replace its tags)."""
    session = _open(ctx)
    session.edit_title(_locate(session, task_id), task_id, " ".join(title))


@cli.command()
@click.argument("task_id")
@click.option("--top", is_flag=True, help="Move to the top of Backlog.")
@click.option("--bottom", is_flag=True, help="Move to the bottom of Backlog.")
@click.option("--after", default=None, metavar="ID", help="Move after this task.")
@click.option("--track", "to_track", default=None, help="Move to another track.")
@click.option("--section", type=click.Choice(sorted(SECTION_ALIASES)), default=None,
              help="Move to another section of the same track.")
@click.option("--parent", default=None, metavar="ID", help="Make it a subtask of this task.")
@click.option("--promote", is_flag=True, help="Make a subtask top level.")
@click.pass_context
def mv(ctx, task_id, top, bottom, after, to_track, section, parent, promote):
    """Reorder, move between sections or tracks, or reparent a task."""
    session = _open(ctx)
    track_id = _locate(session, task_id)
    if to_track:
        click.echo(session.move_task_to_track(track_id, to_track, task_id, _position(top, after)))
    elif section:
        session.move_to_section(track_id, task_id, SECTION_ALIASES[section])
    elif parent or promote:
        click.echo(session.reparent_task(track_id, task_id, parent).new_id)
    elif top or bottom or after:
        session.move_task(track_id, task_id, _position(top, after))
    else:
        raise PreconditionFailedError("nothing to do: give --top, --bottom, --after, --track, "
                                      "--section, --parent or --promote")


@cli.command()
@click.argument("task_id")
@click.option("--wontdo", is_flag=True, help="Keep the task, marked done with #wontdo.")
@click.pass_context
def delete(ctx, task_id, wontdo):
    """Delete a task and its subtasks (logged to the recovery log)."""
    session = _open(ctx)
    track_id = _locate(session, task_id)
    if wontdo:
        session.soft_delete(track_id, task_id)
    else:
        session.delete_task(track_id, task_id)
    session.close()


# -------------------- inbox --------------------
@cli.group()
def inbox():
    """Capture and triage inbox items."""


@inbox.command("add")
@click.argument("title", nargs=-1, required=True)
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable).")
@click.option("--body", default=None, help="Body text.")
@click.pass_context
def inbox_add(ctx, title, tags, body):
    session = _open(ctx)
    click.echo(session.add_inbox_item(" ".join(title), list(tags), body))


@inbox.command("list")
@click.pass_context
def inbox_list(ctx):
    session = _open(ctx)
    _echo_lines(inbox_lines(session.project.inbox, tag_colors=session.project.config.ui.tag_colors))


@inbox.command("triage")
@click.argument("index", type=int)
@click.argument("track_id")
@click.option("--top", is_flag=True)
@click.option("--after", default=None, metavar="ID")
@click.pass_context
def inbox_triage(ctx, index, track_id, top, after):
    """Turn inbox item INDEX into a task in TRACK_ID."""
    session = _open(ctx)
    click.echo(session.triage(index, track_id, _position(top, after)))


# -------------------- tracks --------------------
@cli.group()
def track():
    """Create, rename, archive and delete tracks."""


@track.command("new")
@click.argument("name")
@click.option("--id", "track_id", default=None, help="Track id (defaults to a slug of NAME).")
@click.pass_context
def track_new(ctx, name, track_id):
    session = _open(ctx)
    track_id = track_id or slugify(name)
    session.new_track(track_id, name)
    click.echo(f"{track_id} ({session.project.config.prefix_for(track_id)})")


@track.command("list")
@click.pass_context
def track_list(ctx):
    session = _open(ctx)
    for tc in session.project.config.tracks:
        line = f"{tc.id:<20} {tc.state:<9} {session.project.config.prefix_for(tc.id) or '-':<6} {tc.name}"
        loaded = session.project.tracks.get(tc.id)
        if loaded is not None:
            stats = task_counts(loaded)
            line += f"  ({stats.todo + stats.active + stats.blocked} open, {stats.done} done)"
        click.echo(line)


@track.command("rename")
@click.argument("track_id")
@click.option("--name", default=None, help="New display name.")
@click.option("--id", "new_id", default=None, help="New track id.")
@click.option("--prefix", default=None, help="New task id prefix (rewrites ids and deps).")
@click.option("--yes", is_flag=True, help="Skip the prefix rename confirmation.")
@click.pass_context
def track_rename(ctx, track_id, name, new_id, prefix, yes):
    session = _open(ctx)
    if not (name or new_id or prefix):
        raise PreconditionFailedError("give --name, --id or --prefix")
    if prefix:
        impact = session.tracks.prefix_impact(track_id, prefix)
        click.echo(f"{impact.old_prefix} -> {impact.new_prefix}: {impact.task_ids} task id(s), "
                   f"{impact.dep_references} dependency reference(s) in "
                   f"{len(impact.affected_tracks)} track(s)")
        if not yes:
            click.confirm("This cannot be undone. Continue?", abort=True)
        session.rename_prefix(track_id, prefix)
    if name or new_id:
        session.rename_track(track_id, name=name, new_id=new_id)


@track.command("shelve")
@click.argument("track_id")
@click.pass_context
def track_shelve(ctx, track_id):
    _open(ctx).tracks.shelve(track_id)


@track.command("activate")
@click.argument("track_id")
@click.pass_context
def track_activate(ctx, track_id):
    _open(ctx).tracks.activate(track_id)


@track.command("archive")
@click.argument("track_id")
@click.pass_context
def track_archive(ctx, track_id):
    _open(ctx).archive_track(track_id)


@track.command("unarchive")
@click.argument("track_id")
@click.pass_context
def track_unarchive(ctx, track_id):
    _open(ctx).unarchive_track(track_id)


@track.command("delete")
@click.argument("track_id")
@click.option("--yes", is_flag=True, help="Skip confirmation.")
@click.pass_context
def track_delete(ctx, track_id, yes):
    """Delete a track and its file (content goes to the recovery log)."""
    session = _open(ctx)
    if not yes:
        click.confirm(f"Delete track {track_id}?", abort=True)
    session.delete_track(track_id)


# -------------------- reading --------------------
@cli.command()
@click.argument("target", required=False)
@click.option("--meta", is_flag=True, help="Include metadata lines.")
@click.pass_context
def show(ctx, target, meta):
    """Show a track (default: every active track) or a single task."""
    session = _open(ctx)
    project = session.project
    tag_colors = project.config.ui.tag_colors
    if target and target in project.tracks:
        _echo_lines(track_lines(target, project.tracks[target], tag_colors=tag_colors, show_meta=meta))
        return
    if target:
        track_id, task = session.board.locate(target)
        _echo_lines(task_detail_lines(track_id, task, tag_colors=tag_colors))
        return
    for i, tc in enumerate(project.config.tracks_in_state("active")):
        if tc.id not in project.tracks:
            continue
        if i:
            click.echo("")
        _echo_lines(track_lines(tc.id, project.tracks[tc.id], tag_colors=tag_colors, show_meta=meta))


@cli.command()
@click.argument("pattern")
@click.option("--track", "track_id", default=None, help="Search only this track.")
@click.pass_context
def search(ctx, pattern, track_id):
    """Regex search over ids, titles, tags, notes, deps, refs, specs and the inbox."""
    session = _open(ctx)
    regex = compile_pattern(pattern)
    hits = search_tasks(session.project, regex, track_id)
    inbox_hits = [] if track_id else search_inbox(session.project.inbox, regex)
    _echo_lines(search_lines(hits, inbox_hits))


@cli.command()
@click.option("--no-archive", is_flag=True, help="Do not move old Done tasks to archive/.")
@click.pass_context
def clean(ctx, no_archive):
    """Assign missing ids and dates, fix duplicates, report problems."""
    session = _open(ctx)
    report = run_clean(session.storage, session.project, archive=not no_archive)
    _echo_lines(clean_report_lines(report))


@cli.command("recovery")
@click.option("--limit", type=int, default=None, help="Show at most this many entries.")
@click.option("--prune", is_flag=True, help="Remove entries older than 30 days.")
@click.option("--all", "prune_all", is_flag=True, help="With --prune, remove every entry.")
@click.pass_context
def recovery_cmd(ctx, limit, prune, prune_all):
    """Show (or prune) the recovery log."""
    frame_dir = _open(ctx).storage.frame_dir
    if prune:
        removed = recovery.prune_entries(frame_dir, all_entries=prune_all)
        click.echo(f"pruned {removed} entr{'y' if removed == 1 else 'ies'}")
        return
    _echo_lines(recovery_lines(recovery.read_entries(frame_dir, limit=limit)))


@cli.command()
@click.pass_context
def tui(ctx):
    """Interactive session."""
    run_tui(_start(ctx))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
