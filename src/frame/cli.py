"""Interactive session loop (``frame tui``).

A line-based REPL in the terminal's alternate screen. Between keystrokes the
loop waits on stdin with a short timeout so deferred moves and file-change
events are processed each tick even while the user is idle.
"""
from __future__ import annotations

import logging
import os
import select
import sys
from typing import Callable, Dict, List, Optional

from . import recovery
from .board import Position
from .errors import FrameError, PreconditionFailedError
from .models import SectionKind, TaskState
from .render import inbox_lines, recovery_lines, search_lines, task_detail_lines, track_lines
from .search import compile_pattern, search_inbox, search_tasks
from .session import EditSession, EditTarget
from .state import UiState, read_ui_state, write_ui_state
from .theme import DIM, STATUS_COLOR, color
from .watcher import FileWatcher

logger = logging.getLogger(__name__)

TICK_INTERVAL = 0.25


def _clear_screen() -> None:
    # ESC[3J first (scrollback), then home + clear
    print("\033[3J\033[H\033[2J\033[H", end="", flush=True)


def _truthy_env(value: Optional[str], default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off", ""}


def _enter_alt_screen() -> None:
    print("\033[?1049h", end="", flush=True)


def _leave_alt_screen() -> None:
    print("\033[?1049l", end="", flush=True)


STATE_ALIASES = {
    't': TaskState.TODO, 'todo': TaskState.TODO,
    'a': TaskState.ACTIVE, 'active': TaskState.ACTIVE,
    'b': TaskState.BLOCKED, 'blocked': TaskState.BLOCKED,
    'd': TaskState.DONE, 'done': TaskState.DONE,
    'p': TaskState.PARKED, 'parked': TaskState.PARKED,
}

SECTION_ALIASES = {
    'backlog': SectionKind.BACKLOG,
    'parked': SectionKind.PARKED,
    'done': SectionKind.DONE,
}

VIEWS = ("track", "inbox", "recovery", "search")


def parse_position(tokens: List[str]) -> Position:
    """``top`` | ``bottom`` | ``after <id>`` (empty means bottom)."""
    if not tokens or tokens[0] == 'bottom':
        return Position.bottom()
    if tokens[0] == 'top':
        return Position.top()
    if tokens[0] == 'after' and len(tokens) == 2:
        return Position.after(tokens[1])
    raise PreconditionFailedError("position must be top, bottom or after <id>")


class CLI:
    def __init__(self, session: EditSession, ui: Optional[UiState] = None,
                 input_fn: Callable[[str], str] = input):
        self.session = session
        self.ui = ui or read_ui_state(session.storage.frame_dir) or UiState()
        self.input_fn = input_fn
        # Alt screen default ON; disable with FRAME_ALT_SCREEN=0 (or false/no/off)
        self.alt_screen: bool = _truthy_env(os.getenv("FRAME_ALT_SCREEN"), True)
        self.search_output: List[str] = []
        self.detail_task: Optional[str] = None
        self.running = True
        self.awaiting_edit = False
        if self.ui.active_track not in session.project.tracks:
            self.ui.active_track = next(iter(session.project.tracks), "")
        if self.ui.view not in VIEWS:
            self.ui.view = "track"
        self.commands: Dict[str, Callable[[List[str]], None]] = {
            'help': self._cmd_help, '?': self._cmd_help,
            'q': self._cmd_quit, 'quit': self._cmd_quit, 'exit': self._cmd_quit,
            'track': self._cmd_track, 'tracks': self._cmd_tracks,
            'inbox': self._cmd_inbox, 'recovery': self._cmd_recovery,
            'add': self._cmd_add, 'push': self._cmd_push, 'sub': self._cmd_sub,
            'x': self._cmd_done, 'done': self._cmd_done, 'reopen': self._cmd_reopen,
            'c': self._cmd_cycle, 'state': self._cmd_state,
            'block': self._cmd_block, 'park': self._cmd_park,
            'e': self._cmd_edit, 'edit': self._cmd_edit, 'note': self._cmd_note, 'tags': self._cmd_tags,
            'tag': self._cmd_tag, 'dep': self._cmd_dep, 'ref': self._cmd_ref, 'spec': self._cmd_spec,
            'mv': self._cmd_mv, 'mvt': self._cmd_mvt, 'section': self._cmd_section,
            'indent': self._cmd_indent, 'outdent': self._cmd_outdent,
            'rm': self._cmd_rm, 'wontdo': self._cmd_wontdo,
            'open': self._cmd_open, 'close': self._cmd_close, 'show': self._cmd_show,
            'i': self._cmd_inbox_add, 'triage': self._cmd_triage, 'irm': self._cmd_inbox_rm,
            'imv': self._cmd_inbox_mv, 'iedit': self._cmd_inbox_edit,
            '/': self._cmd_search, 'search': self._cmd_search,
            'u': self._cmd_undo, 'undo': self._cmd_undo, 'redo': self._cmd_redo,
        }

    # -------------------- loop --------------------
    def run(self) -> None:
        """Main REPL loop; the view is cleared and redrawn each cycle.

        A FrameError from any command becomes a status line. Anything else
        leaves the alternate screen before propagating.
        """
        exit_message: Optional[str] = None
        if self.alt_screen:
            _enter_alt_screen()
        try:
            while self.running:
                self.redraw()
                line = self._read_line(self._prompt())
                if line is None:
                    continue
                self.handle_line(line)
            exit_message = "Goodbye."
        except (KeyboardInterrupt, EOFError):
            exit_message = "Interrupted. Goodbye."
        finally:
            self._shutdown()
            if self.alt_screen:
                _leave_alt_screen()
            if exit_message:
                print(exit_message)

    def _shutdown(self) -> None:
        try:
            self.session.close()
        except FrameError as exc:
            logger.error("could not save pending moves on exit: %s", exc)
        try:
            write_ui_state(self.session.storage.frame_dir, self.ui)
        except OSError as exc:
            logger.warning("could not save ui state: %s", exc)

    def _prompt(self) -> str:
        if self.awaiting_edit:
            field = self.session.edit.field if self.session.edit else "text"
            return f"edit {field}> "
        return "\n: "

    def _read_line(self, prompt: str) -> Optional[str]:
        """Read one line while ticking the session; None means redraw."""
        print(prompt, end="", flush=True)
        if not sys.stdin.isatty():
            self.session.tick()
            return self.input_fn("")
        while True:
            ready, _, _ = select.select([sys.stdin], [], [], TICK_INTERVAL)
            if ready:
                line = sys.stdin.readline()
                if not line:
                    raise EOFError
                return line.rstrip("\n")
            if self.session.tick():
                return None

    def redraw(self) -> None:
        _clear_screen()
        for line in self.view_lines():
            print(line)
        if self.session.conflict_text is not None:
            print(color(f"unsaved text: {self.session.conflict_text}", DIM))
        if self.session.pending_moves:
            print(color(f"{len(self.session.pending_moves)} move(s) pending", DIM))
        if self.session.status_message:
            print(color(self.session.status_message, STATUS_COLOR))
            self.session.status_message = None

    def view_lines(self) -> List[str]:
        project = self.session.project
        tag_colors = project.config.ui.tag_colors
        if self.ui.view == "inbox":
            return inbox_lines(project.inbox, tag_colors=tag_colors)
        if self.ui.view == "recovery":
            return recovery_lines(recovery.read_entries(self.session.storage.frame_dir, limit=20))
        if self.ui.view == "search":
            return self.search_output
        if self.detail_task:
            try:
                track_id, task = self.session.board.locate(self.detail_task)
                return task_detail_lines(track_id, task, tag_colors=tag_colors)
            except FrameError:
                self.detail_task = None
        track_id = self.ui.active_track
        if track_id not in project.tracks:
            return [color("no tracks: create one with `frame track new`", DIM)]
        ts = self.ui.track_state(track_id)
        return track_lines(track_id, project.tracks[track_id], tag_colors=tag_colors,
                           expanded=set(ts.expanded))

    # -------------------- dispatch --------------------
    def handle_line(self, line: str) -> None:
        if self.awaiting_edit:
            self.awaiting_edit = False
            self._finish_edit(line)
            return
        tokens = line.split()
        if not tokens:
            return
        if line.startswith('/') and len(line) > 1:
            tokens = ['/', line[1:]]
        handler = self.commands.get(tokens[0].lower())
        if handler is None:
            self.session.status_message = "Unknown command. Type 'help' for instructions."
            return
        try:
            handler(tokens[1:])
        except FrameError as exc:
            self.session.status_message = f"error: {exc}"

    def _finish_edit(self, line: str) -> None:
        try:
            if line.strip() == '.':
                if self.session.editing:
                    self.session.cancel_edit()
                self.session.status_message = "edit cancelled"
            else:
                self.session.commit_edit(line.replace('\\n', '\n'))
        except FrameError as exc:
            self.session.status_message = f"error: {exc}"

    def _change_view(self, view: str) -> None:
        # leaving a view commits whatever is still waiting for its grace period
        self.session.flush_all()
        self.ui.view = view
        self.detail_task = None

    def _track_of(self, task_id: str) -> str:
        track_id, _ = self.session.board.locate(task_id)
        return track_id

    @staticmethod
    def _need(args: List[str], count: int, usage: str) -> None:
        if len(args) < count:
            raise PreconditionFailedError(f"usage: {usage}")

    # -------------------- views --------------------
    def _cmd_help(self, args: List[str]) -> None:
        _clear_screen()
        for line in HELP_TEXT.strip('\n').split('\n'):
            print(line)
        self.input_fn("\nPress Enter to return...")

    def _cmd_quit(self, args: List[str]) -> None:
        self.running = False

    def _cmd_track(self, args: List[str]) -> None:
        self._need(args, 1, "track <id>")
        if args[0] not in self.session.project.tracks:
            raise PreconditionFailedError(f"track {args[0]} is not loaded")
        self._change_view("track")
        self.ui.active_track = args[0]

    def _cmd_tracks(self, args: List[str]) -> None:
        names = [f"{tc.id} ({tc.state})" for tc in self.session.project.config.tracks]
        self.session.status_message = "tracks: " + ", ".join(names) if names else "no tracks"

    def _cmd_inbox(self, args: List[str]) -> None:
        self._change_view("inbox")

    def _cmd_recovery(self, args: List[str]) -> None:
        self._change_view("recovery")

    def _cmd_search(self, args: List[str]) -> None:
        self._need(args, 1, "/<pattern>")
        pattern = " ".join(args)
        regex = compile_pattern(pattern)
        project = self.session.project
        self.search_output = search_lines(search_tasks(project, regex), search_inbox(project.inbox, regex))
        self.ui.remember_search(pattern)
        self._change_view("search")

    def _cmd_open(self, args: List[str]) -> None:
        self._need(args, 1, "open <id>")
        track_id = self._track_of(args[0])
        expanded = self.ui.track_state(track_id).expanded
        if args[0] not in expanded:
            expanded.append(args[0])

    def _cmd_close(self, args: List[str]) -> None:
        self._need(args, 1, "close <id>")
        expanded = self.ui.track_state(self._track_of(args[0])).expanded
        if args[0] in expanded:
            expanded.remove(args[0])

    def _cmd_show(self, args: List[str]) -> None:
        self._need(args, 1, "show <id>")
        self._track_of(args[0])
        self.detail_task = args[0]

    # -------------------- tasks --------------------
    def _cmd_add(self, args: List[str]) -> None:
        self._need(args, 1, "add <title...>")
        task_id = self.session.add_task(self.ui.active_track, " ".join(args))
        self.session.status_message = f"added {task_id}"

    def _cmd_push(self, args: List[str]) -> None:
        self._need(args, 1, "push <title...>")
        task_id = self.session.add_task(self.ui.active_track, " ".join(args), Position.top())
        self.session.status_message = f"added {task_id} at top"

    def _cmd_sub(self, args: List[str]) -> None:
        self._need(args, 2, "sub <parent-id> <title...>")
        sub_id = self.session.add_subtask(self._track_of(args[0]), args[0], " ".join(args[1:]))
        self._cmd_open([args[0]])
        self.session.status_message = f"added {sub_id}"

    def _cmd_done(self, args: List[str]) -> None:
        self._need(args, 1, "x <id>")
        self.session.toggle_done(self._track_of(args[0]), args[0])

    def _cmd_reopen(self, args: List[str]) -> None:
        self._need(args, 1, "reopen <id>")
        self.session.reopen(self._track_of(args[0]), args[0])

    def _cmd_cycle(self, args: List[str]) -> None:
        self._need(args, 1, "c <id>")
        self.session.cycle_state(self._track_of(args[0]), args[0])

    def _cmd_state(self, args: List[str]) -> None:
        self._need(args, 2, "state <id> <t|a|b|d|p>")
        state = STATE_ALIASES.get(args[1].lower())
        if state is None:
            raise PreconditionFailedError("Invalid state.")
        self.session.set_state(self._track_of(args[0]), args[0], state)

    def _cmd_block(self, args: List[str]) -> None:
        self._need(args, 1, "block <id>")
        self.session.toggle_blocked(self._track_of(args[0]), args[0])

    def _cmd_park(self, args: List[str]) -> None:
        self._need(args, 1, "park <id>")
        self.session.toggle_parked(self._track_of(args[0]), args[0])

    def _begin(self, field: str, args: List[str]) -> None:
        self._need(args, 1, f"{field} <id>")
        initial = self.session.begin_edit(EditTarget(field, self._track_of(args[0]), args[0]))
        self.awaiting_edit = True
        self.session.status_message = f"current: {initial!r}  (enter new text, '.' to cancel)"

    def _cmd_edit(self, args: List[str]) -> None:
        self._begin("title", args)

    def _cmd_note(self, args: List[str]) -> None:
        self._begin("note", args)

    def _cmd_tags(self, args: List[str]) -> None:
        self._begin("tags", args)

    def _cmd_tag(self, args: List[str]) -> None:
        self._need(args, 2, "tag <id> +tag|-tag ...")
        track_id = self._track_of(args[0])
        for raw in args[1:]:
            if raw.startswith('-'):
                self.session.remove_tag(track_id, args[0], raw[1:])
            else:
                self.session.add_tag(track_id, args[0], raw.lstrip('+'))

    def _cmd_dep(self, args: List[str]) -> None:
        self._need(args, 2, "dep <id> +ID|-ID ...")
        track_id = self._track_of(args[0])
        for raw in args[1:]:
            if raw.startswith('-'):
                self.session.remove_dep(track_id, args[0], raw[1:])
            else:
                self.session.add_dep(track_id, args[0], raw.lstrip('+'))

    def _cmd_ref(self, args: List[str]) -> None:
        self._need(args, 2, "ref <id> <path>")
        self.session.add_ref(self._track_of(args[0]), args[0], args[1])

    def _cmd_spec(self, args: List[str]) -> None:
        self._need(args, 2, "spec <id> <path#section>")
        self.session.set_spec(self._track_of(args[0]), args[0], args[1])

    def _cmd_mv(self, args: List[str]) -> None:
        self._need(args, 2, "mv <id> top|bottom|after <id>")
        self.session.move_task(self._track_of(args[0]), args[0], parse_position(args[1:]))

    def _cmd_mvt(self, args: List[str]) -> None:
        self._need(args, 2, "mvt <id> <track> [top|bottom|after <id>]")
        new_id = self.session.move_task_to_track(self._track_of(args[0]), args[1], args[0],
                                                 parse_position(args[2:]))
        self.session.status_message = f"moved to {args[1]} as {new_id}"

    def _cmd_section(self, args: List[str]) -> None:
        self._need(args, 2, "section <id> backlog|parked|done")
        kind = SECTION_ALIASES.get(args[1].lower())
        if kind is None:
            raise PreconditionFailedError("section must be backlog, parked or done")
        self.session.move_to_section(self._track_of(args[0]), args[0], kind)

    def _cmd_indent(self, args: List[str]) -> None:
        self._need(args, 2, "indent <id> <new-parent-id>")
        result = self.session.reparent_task(self._track_of(args[0]), args[0], args[1])
        self.session.status_message = f"now {result.new_id}"

    def _cmd_outdent(self, args: List[str]) -> None:
        self._need(args, 1, "outdent <id>")
        result = self.session.reparent_task(self._track_of(args[0]), args[0], None)
        self.session.status_message = f"now {result.new_id}"

    def _cmd_rm(self, args: List[str]) -> None:
        self._need(args, 1, "rm <id>")
        self.session.delete_task(self._track_of(args[0]), args[0])
        self.session.status_message = f"deleted {args[0]} (u to undo)"

    def _cmd_wontdo(self, args: List[str]) -> None:
        self._need(args, 1, "wontdo <id>")
        self.session.soft_delete(self._track_of(args[0]), args[0])

    # -------------------- inbox --------------------
    def _cmd_inbox_add(self, args: List[str]) -> None:
        self._need(args, 1, "i <title...>")
        index = self.session.add_inbox_item(" ".join(args))
        self.session.status_message = f"inbox item {index} added"

    def _cmd_triage(self, args: List[str]) -> None:
        self._need(args, 2, "triage <n> <track> [top|bottom|after <id>]")
        task_id = self.session.triage(_index(args[0]), args[1], parse_position(args[2:]))
        self.session.status_message = f"triaged into {args[1]} as {task_id}"

    def _cmd_inbox_rm(self, args: List[str]) -> None:
        self._need(args, 1, "irm <n>")
        self.session.delete_inbox_item(_index(args[0]))

    def _cmd_inbox_mv(self, args: List[str]) -> None:
        self._need(args, 2, "imv <from> <to>")
        self.session.move_inbox_item(_index(args[0]), _index(args[1]))

    def _cmd_inbox_edit(self, args: List[str]) -> None:
        self._need(args, 1, "iedit <n>")
        initial = self.session.begin_edit(EditTarget("inbox", index=_index(args[0])))
        self.awaiting_edit = True
        self.session.status_message = f"current: {initial!r}  (enter new text, '.' to cancel)"

    # -------------------- undo --------------------
    def _cmd_undo(self, args: List[str]) -> None:
        self.session.undo()

    def _cmd_redo(self, args: List[str]) -> None:
        self.session.redo()


def _index(raw: str) -> int:
    if not raw.lstrip('-').isdigit():
        raise PreconditionFailedError(f"invalid index {raw!r}")
    return int(raw)


HELP_TEXT = """
Views:
  track <id>             Show a track          tracks      List tracks
  inbox | recovery       Show inbox / recovery log
  /<pattern>             Regex search over tasks and inbox
  open <id> | close <id> Expand / collapse subtasks
  show <id>              Task details with metadata
Tasks:
  add <title>            Add to bottom of Backlog (push: top)
  sub <id> <title>       Add a subtask
  x <id>                 Toggle done (moves to Done after 5s; again to cancel)
  reopen <id>            Reopen a done task (moves to Backlog after 5s)
  c <id>                 Cycle todo -> active -> done
  state <id> <t|a|b|d|p> Set state        block <id> | park <id>   Toggle
  e <id> | note <id> | tags <id>   Edit title / note / tags ('\\n' for newlines)
  tag <id> +a -b         Add/remove tags   dep <id> +ID -ID   Dependencies
  ref <id> <path>        Add reference     spec <id> <path#sec>
  mv <id> top|bottom|after <id>    Reorder within Backlog
  mvt <id> <track> [pos]           Move to another track
  section <id> backlog|parked|done Move between sections
  indent <id> <parent> | outdent <id>
  rm <id> | wontdo <id>  Delete / mark won't do
Inbox:
  i <title>              Capture        triage <n> <track> [pos]
  irm <n> | imv <a> <b> | iedit <n>
Other:
  u | redo               Undo / redo    q      Quit
"""


def run_tui(start=None) -> None:
    session = EditSession.open(start, clean_on_load=True)
    session.watcher = FileWatcher(session.storage.frame_dir).start()
    CLI(session).run()
