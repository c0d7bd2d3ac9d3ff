"""Interactive editing session: undo/redo, deferred moves, conflicts, saving.

The session owns all per-session state (undo stack, pending moves, the open
edit buffer) and is driven by ``tick()`` once per loop iteration. Deferred
moves are plain deadlines checked on tick; nothing runs in the background
except the file watcher, which the session only ever drains.
"""
from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from . import recovery
from .board import Board, Position, find_task_location
from .clean import auto_clean
from .errors import ConflictError, NotFoundError, PreconditionFailedError
from .models import Project, SectionKind, TaskState
from .serializer import serialize_tasks
from .storage import Storage
from .tracks import TrackManager
from .undo import (
    INBOX,
    InboxAdd,
    InboxDelete,
    InboxEdit,
    InboxMove,
    SectionChange,
    SectionMove,
    TaskAdd,
    TaskDelete,
    TaskEdit,
    TaskFields,
    TaskMove,
    TrackArchive,
    TrackCreate,
    TrackDelete,
    TrackSnapshot,
    TrackUnarchive,
    Triage,
    UndoContext,
    UndoStack,
)
from .watcher import FileWatcher

logger = logging.getLogger(__name__)

GRACE_PERIOD = 5.0


class PendingMoveKind(Enum):
    TO_DONE = "to_done"
    TO_BACKLOG = "to_backlog"


@dataclass
class PendingMove:
    kind: PendingMoveKind
    track_id: str
    task_id: str
    deadline: float
    record: SectionChange


@dataclass
class EditTarget:
    """What the open edit buffer will be written to.

    ``field`` is ``title``, ``tags`` or ``note`` for a task, ``inbox`` for an
    inbox item (addressed by ``index``).
    """

    field: str
    track_id: Optional[str] = None
    task_id: Optional[str] = None
    index: Optional[int] = None


class EditSession:
    def __init__(self, project: Project, storage: Storage,
                 clock: Callable[[], float] = time.monotonic,
                 grace_period: float = GRACE_PERIOD,
                 watcher: Optional[FileWatcher] = None, clean_on_load: bool = False):
        self.project = project
        self.clean_on_load = clean_on_load
        self.storage = storage
        self.clock = clock
        self.grace_period = grace_period
        self.watcher = watcher
        self.board = Board(project)
        self.tracks = TrackManager(project, storage)
        self.undo_stack = UndoStack()
        self.pending_moves: List[PendingMove] = []
        self.edit: Optional[EditTarget] = None
        self.edit_buffer = ""
        self.conflict_text: Optional[str] = None
        self.pending_reload_paths: List[Path] = []
        self.status_message: Optional[str] = None

    @classmethod
    def open(cls, start: Optional[Path] = None, clean_on_load: bool = False, **kwargs) -> "EditSession":
        """Discover and load a project; ``clean_on_load`` runs the light clean pass after loads."""
        storage = Storage.discover(start)
        project = storage.load_project()
        if clean_on_load:
            auto_clean(storage, project)
        return cls(project, storage, clean_on_load=clean_on_load, **kwargs)

    @property
    def ctx(self) -> UndoContext:
        return UndoContext(self.board, self.tracks)

    @property
    def editing(self) -> bool:
        return self.edit is not None

    # -------------------- saving --------------------
    def save(self, touched: Iterable[str]) -> None:
        """Write the named tracks (and/or the inbox) under one lock."""
        touched = set(touched)
        if not touched:
            return
        with self.storage.locked():
            for name in sorted(touched):
                if name == INBOX:
                    self.storage.save_inbox(self.project)
                elif name in self.project.tracks:
                    self.storage.save_track(self.project, name)

    def _record(self, op) -> None:
        self.undo_stack.push(op)
        self.save(op.touched())

    # -------------------- task operations --------------------
    def add_task(self, track_id: str, title: str, position: Position = Position.bottom()) -> str:
        task_id = self.board.add_task(track_id, title, position)
        track = self.board.track(track_id)
        loc = find_task_location(track, task_id)
        self._record(TaskAdd(track_id, task_id, None, loc.section, loc.index,
                             copy.deepcopy(track.find_task(task_id))))
        return task_id

    def add_subtask(self, track_id: str, parent_id: str, title: str, after_id: Optional[str] = None) -> str:
        sub_id = self.board.add_subtask(track_id, parent_id, title, after_id)
        track = self.board.track(track_id)
        loc = find_task_location(track, sub_id)
        self._record(TaskAdd(track_id, sub_id, parent_id, loc.section, loc.index,
                             copy.deepcopy(track.find_task(sub_id))))
        return sub_id

    def _edit_task(self, track_id: str, task_id: str, label: str, mutate: Callable[[], None]) -> None:
        task = self.board.task(track_id, task_id)
        before = TaskFields.capture(task)
        mutate()
        after = TaskFields.capture(task)
        if before == after:
            return
        self._record(TaskEdit(track_id, task_id, before, after, label))

    def edit_title(self, track_id: str, task_id: str, title: str) -> None:
        self._edit_task(track_id, task_id, "title",
                        lambda: self.board.edit_title(track_id, task_id, title))

    def add_tag(self, track_id: str, task_id: str, tag: str) -> None:
        self._edit_task(track_id, task_id, "tag", lambda: self.board.add_tag(track_id, task_id, tag))

    def remove_tag(self, track_id: str, task_id: str, tag: str) -> None:
        self._edit_task(track_id, task_id, "tag", lambda: self.board.remove_tag(track_id, task_id, tag))

    def set_tags(self, track_id: str, task_id: str, tags: List[str]) -> None:
        def mutate():
            task = self.board.task(track_id, task_id)
            task.tags = [t.lstrip("#") for t in tags if t.lstrip("#")]
            task.mark_dirty()
        self._edit_task(track_id, task_id, "tags", mutate)

    def add_dep(self, track_id: str, task_id: str, dep_id: str) -> None:
        self._edit_task(track_id, task_id, "dep", lambda: self.board.add_dep(track_id, task_id, dep_id))

    def remove_dep(self, track_id: str, task_id: str, dep_id: str) -> None:
        self._edit_task(track_id, task_id, "dep", lambda: self.board.remove_dep(track_id, task_id, dep_id))

    def set_note(self, track_id: str, task_id: str, text: str) -> None:
        self._edit_task(track_id, task_id, "note", lambda: self.board.set_note(track_id, task_id, text))

    def append_note(self, track_id: str, task_id: str, text: str) -> None:
        self._edit_task(track_id, task_id, "note", lambda: self.board.append_note(track_id, task_id, text))

    def add_ref(self, track_id: str, task_id: str, path: str) -> None:
        self._edit_task(track_id, task_id, "ref", lambda: self.board.add_ref(track_id, task_id, path))

    def set_spec(self, track_id: str, task_id: str, spec: str) -> None:
        self._edit_task(track_id, task_id, "spec", lambda: self.board.set_spec(track_id, task_id, spec))

    def soft_delete(self, track_id: str, task_id: str) -> None:
        self._cancel_contradicted(track_id, task_id, TaskState.DONE)
        self._edit_task(track_id, task_id, "won't do", lambda: self.board.soft_delete(track_id, task_id))

    def set_state(self, track_id: str, task_id: str, state: TaskState) -> None:
        """Direct state change; Done and reopen go through the deferred paths."""
        if self._cancel_contradicted(track_id, task_id, state):
            self._edit_task(track_id, task_id, "state",
                            lambda: self.board.set_state(track_id, task_id, state))
            return
        task = self.board.task(track_id, task_id)
        if state == TaskState.DONE and task.state != TaskState.DONE:
            self.toggle_done(track_id, task_id)
        elif task.state == TaskState.DONE and state != TaskState.DONE and self._is_top_level(
                track_id, task_id, SectionKind.DONE):
            self.reopen(track_id, task_id, state)
        else:
            self._edit_task(track_id, task_id, "state",
                            lambda: self.board.set_state(track_id, task_id, state))

    def cycle_state(self, track_id: str, task_id: str) -> None:
        task = self.board.task(track_id, task_id)
        pm = self.pending_move(track_id, task_id)
        if pm is not None:
            self._cancel(pm)
        elif task.state == TaskState.ACTIVE:
            self.toggle_done(track_id, task_id)
        elif task.state == TaskState.DONE:
            self.set_state(track_id, task_id, TaskState.TODO)
        else:
            self._edit_task(track_id, task_id, "state", lambda: self.board.cycle_state(track_id, task_id))

    def toggle_blocked(self, track_id: str, task_id: str) -> None:
        task = self.board.task(track_id, task_id)
        self.set_state(track_id, task_id,
                       TaskState.TODO if task.state == TaskState.BLOCKED else TaskState.BLOCKED)

    def toggle_parked(self, track_id: str, task_id: str) -> None:
        task = self.board.task(track_id, task_id)
        self.set_state(track_id, task_id,
                       TaskState.TODO if task.state == TaskState.PARKED else TaskState.PARKED)

    # -------------------- deferred moves --------------------
    def pending_move(self, track_id: str, task_id: str) -> Optional[PendingMove]:
        for pm in self.pending_moves:
            if pm.track_id == track_id and pm.task_id == task_id:
                return pm
        return None

    def _is_top_level(self, track_id: str, task_id: str, kind: SectionKind) -> bool:
        return any(t.id == task_id for t in self.board.track(track_id).section_tasks(kind))

    def _cancel(self, pm: PendingMove) -> None:
        """Drop a pending move and revert the state change that queued it.

        Only the state and its resolved date go back; edits made during the
        grace period stay.
        """
        self.pending_moves.remove(pm)
        pm.record.before.restore_state(self.board.task(pm.track_id, pm.task_id))
        self.undo_stack.remove(pm.record)
        self.save({pm.track_id})
        logger.debug("cancelled pending %s for %s", pm.kind.value, pm.task_id)

    def _cancel_contradicted(self, track_id: str, task_id: str, state: TaskState) -> bool:
        """Cancel a pending move that moving to ``state`` would make wrong.

        A task leaving Done must not go on to Done, and a task marked Done
        again must not go on to Backlog.
        """
        pm = self.pending_move(track_id, task_id)
        if pm is None or (pm.kind == PendingMoveKind.TO_DONE) == (state == TaskState.DONE):
            return False
        self._cancel(pm)
        return True

    def toggle_done(self, track_id: str, task_id: str) -> None:
        """Mark Done; a top-level Backlog task moves to Done after the grace period.

        Triggering again before the deadline cancels the move and restores the
        previous state, as does marking a task Done while its reopen is pending.
        """
        pm = self.pending_move(track_id, task_id)
        if pm is not None:
            self._cancel(pm)
            return
        task = self.board.task(track_id, task_id)
        if task.state == TaskState.DONE:
            return
        track = self.board.track(track_id)
        if not self._is_top_level(track_id, task_id, SectionKind.BACKLOG):
            self._edit_task(track_id, task_id, "state",
                            lambda: self.board.set_state(track_id, task_id, TaskState.DONE))
            return
        index = next(i for i, t in enumerate(track.backlog) if t.id == task_id)
        before = TaskFields.capture(task)
        self.board.set_state(track_id, task_id, TaskState.DONE)
        record = SectionChange(track_id, task_id, SectionKind.BACKLOG, index, SectionKind.DONE,
                               before, TaskFields.capture(task), "done")
        self.pending_moves.append(PendingMove(PendingMoveKind.TO_DONE, track_id, task_id,
                                              self.clock() + self.grace_period, record))
        self._record(record)

    def reopen(self, track_id: str, task_id: str, state: TaskState = TaskState.TODO) -> None:
        """Reopen a Done task in place; it moves to the top of Backlog after the grace period.

        The resolved date stays until the move runs. Reopening again before the
        deadline restores the Done state and its metadata exactly.
        """
        pm = self.pending_move(track_id, task_id)
        if pm is not None and pm.kind == PendingMoveKind.TO_BACKLOG:
            self._cancel(pm)
            return
        if self._cancel_contradicted(track_id, task_id, state):
            self._edit_task(track_id, task_id, "reopen",
                            lambda: self.board.set_state(track_id, task_id, state))
            return
        task = self.board.task(track_id, task_id)
        if task.state != TaskState.DONE:
            raise PreconditionFailedError(f"task {task_id} is not done")
        track = self.board.track(track_id)
        if not self._is_top_level(track_id, task_id, SectionKind.DONE):
            self._edit_task(track_id, task_id, "reopen",
                            lambda: self.board.set_state(track_id, task_id, state))
            return
        index = next(i for i, t in enumerate(track.done) if t.id == task_id)
        before = TaskFields.capture(task)
        task.state = state
        task.mark_dirty()
        record = SectionChange(track_id, task_id, SectionKind.DONE, index, SectionKind.BACKLOG,
                               before, TaskFields.capture(task), "reopen")
        self.pending_moves.append(PendingMove(PendingMoveKind.TO_BACKLOG, track_id, task_id,
                                              self.clock() + self.grace_period, record))
        self._record(record)

    def _execute(self, pm: PendingMove) -> Optional[str]:
        track = self.project.tracks.get(pm.track_id)
        if track is None or track.find_task(pm.task_id) is None:
            return None
        pm.record.created_section = track.section(pm.record.dest) is None
        if pm.kind == PendingMoveKind.TO_DONE:
            moved = self.board.move_task_between_sections(pm.track_id, pm.task_id,
                                                          SectionKind.BACKLOG, SectionKind.DONE)
        else:
            track.find_task(pm.task_id).remove_meta("resolved")
            moved = self.board.move_task_between_sections(pm.track_id, pm.task_id,
                                                          SectionKind.DONE, SectionKind.BACKLOG)
        return pm.track_id if moved is not None else None

    def flush_expired(self) -> Set[str]:
        now = self.clock()
        expired = [pm for pm in self.pending_moves if pm.deadline <= now]
        return self._flush(expired)

    def flush_all(self) -> Set[str]:
        return self._flush(list(self.pending_moves))

    def _flush(self, moves: List[PendingMove]) -> Set[str]:
        touched: Set[str] = set()
        for pm in moves:
            self.pending_moves.remove(pm)
            track_id = self._execute(pm)
            if track_id is not None:
                touched.add(track_id)
        self.save(touched)
        return touched

    # -------------------- structural moves --------------------
    def move_task(self, track_id: str, task_id: str, position: Position) -> None:
        backlog = self.board.track(track_id).backlog
        from_index = next((i for i, t in enumerate(backlog) if t.id == task_id), None)
        self.board.move_task(track_id, task_id, position)
        to_index = next(i for i, t in enumerate(backlog) if t.id == task_id)
        self._record(TaskMove(track_id, task_id, SectionKind.BACKLOG, from_index, to_index))

    def move_to_section(self, track_id: str, task_id: str, to_kind: SectionKind) -> None:
        loc = find_task_location(self.board.track(track_id), task_id)
        if loc is None or loc.parent_id is not None:
            raise NotFoundError(f"task {task_id} is not a top-level task in {track_id}")
        if loc.section == to_kind:
            return
        created = self.board.track(track_id).section(to_kind) is None
        self.board.move_task_between_sections(track_id, task_id, loc.section, to_kind)
        self._record(SectionMove(track_id, task_id, loc.section, to_kind, loc.index, created))

    def _snapshot_op(self, track_ids: Iterable[str], run: Callable[[], object]):
        # pending moves would be reverted by a whole-track restore, so they go first
        self.flush_all()
        before = {tid: copy.deepcopy(self.project.tracks[tid]) for tid in self.project.tracks}
        result = run()
        changed = {tid for tid in self.project.tracks if self.project.tracks[tid] != before[tid]}
        changed.update(track_ids)
        after = {tid: copy.deepcopy(self.project.tracks[tid]) for tid in changed}
        self._record(TrackSnapshot({tid: before[tid] for tid in changed}, after))
        return result

    def move_task_to_track(self, source_id: str, target_id: str, task_id: str,
                           position: Position = Position.bottom()) -> str:
        return self._snapshot_op(
            [source_id, target_id],
            lambda: self.board.move_task_to_track(source_id, target_id, task_id, position))

    def reparent_task(self, track_id: str, task_id: str, new_parent_id: Optional[str],
                      sibling_index: Optional[int] = None):
        return self._snapshot_op(
            [track_id],
            lambda: self.board.reparent_task(track_id, task_id, new_parent_id, sibling_index))

    def delete_task(self, track_id: str, task_id: str) -> None:
        pm = self.pending_move(track_id, task_id)
        if pm is not None:
            self.pending_moves.remove(pm)
        deleted = self.board.hard_delete(track_id, task_id)
        recovery.log_task_deletion(self.storage.frame_dir, task_id, track_id,
                                   "\n".join(serialize_tasks([deleted.task])))
        self._record(TaskDelete(deleted))

    # -------------------- inbox --------------------
    def add_inbox_item(self, title: str, tags: Optional[List[str]] = None, body: Optional[str] = None) -> int:
        index = self.board.add_inbox_item(title, tags, body)
        self._record(InboxAdd(index, copy.deepcopy(self.board.inbox.items[index])))
        return index

    def edit_inbox_item(self, index: int, title: Optional[str] = None,
                        tags: Optional[List[str]] = None, body: Optional[str] = None) -> None:
        self.board._inbox_index(index)
        before = copy.deepcopy(self.board.inbox.items[index])
        self.board.edit_inbox_item(index, title, tags, body)
        self._record(InboxEdit(index, before, copy.deepcopy(self.board.inbox.items[index])))

    def delete_inbox_item(self, index: int) -> None:
        item = self.board.delete_inbox_item(index)
        self._record(InboxDelete(index, item))

    def move_inbox_item(self, from_index: int, to_index: int) -> None:
        self.board.move_inbox_item(from_index, to_index)
        self._record(InboxMove(from_index, to_index))

    def triage(self, index: int, track_id: str, position: Position = Position.bottom()) -> str:
        self.board._inbox_index(index)
        item = copy.deepcopy(self.board.inbox.items[index])
        task_id = self.board.triage(index, track_id, position)
        track = self.board.track(track_id)
        loc = find_task_location(track, task_id)
        self._record(Triage(index, item, track_id, task_id, loc.index,
                            copy.deepcopy(track.find_task(task_id))))
        return task_id

    # -------------------- tracks --------------------
    def new_track(self, track_id: str, name: str) -> None:
        self.tracks.new_track(track_id, name)
        self.undo_stack.push(TrackCreate(track_id, name))

    def archive_track(self, track_id: str) -> None:
        self._drop_pending(track_id)
        self.undo_stack.push(TrackArchive(self.tracks.archive(track_id)))

    def unarchive_track(self, track_id: str) -> None:
        self.tracks.unarchive(track_id)
        self.undo_stack.push(TrackUnarchive(track_id))

    def delete_track(self, track_id: str) -> None:
        self._drop_pending(track_id)
        self.undo_stack.push(TrackDelete(self.tracks.delete(track_id)))

    def rename_track(self, track_id: str, name: Optional[str] = None, new_id: Optional[str] = None) -> None:
        """Rename is not undoable; a sync marker fences it off."""
        if name:
            self.tracks.rename_name(track_id, name)
        if new_id and new_id != track_id:
            self.flush_all()
            self.tracks.rename_id(track_id, new_id)
        self.undo_stack.push_sync_marker()

    def rename_prefix(self, track_id: str, new_prefix: str):
        self.flush_all()
        impact = self.tracks.rename_prefix(track_id, new_prefix)
        self.undo_stack.push_sync_marker()
        return impact

    def _drop_pending(self, track_id: str) -> None:
        self.pending_moves = [pm for pm in self.pending_moves if pm.track_id != track_id]

    # -------------------- undo / redo --------------------
    def undo(self) -> bool:
        top = self.undo_stack.undo_ops[-1] if self.undo_stack.can_undo else None
        if top is None:
            self.status_message = "nothing to undo"
            return False
        self.pending_moves = [pm for pm in self.pending_moves if pm.record is not top]
        op = self.undo_stack.undo(self.ctx)
        self.save(op.touched())
        self.status_message = f"undid {op.label}"
        return True

    def redo(self) -> bool:
        op = self.undo_stack.redo(self.ctx)
        if op is None:
            self.status_message = "nothing to redo"
            return False
        self.save(op.touched())
        self.status_message = f"redid {op.label}"
        return True

    # -------------------- edit buffer --------------------
    def _edit_path(self, target: EditTarget) -> Optional[Path]:
        if target.field == "inbox":
            return self.storage.inbox_path
        tc = self.project.config.track(target.track_id)
        return self.storage.track_path(tc) if tc else None

    def begin_edit(self, target: EditTarget) -> str:
        """Open an edit buffer seeded with the target's current text."""
        if target.field == "inbox":
            self.board._inbox_index(target.index)
            initial = self.board.inbox.items[target.index].title
        else:
            task = self.board.task(target.track_id, target.task_id)
            if target.field == "title":
                initial = task.title
            elif target.field == "tags":
                initial = " ".join(f"#{t}" for t in task.tags)
            elif target.field == "note":
                initial = task.meta_value("note") or ""
            else:
                raise PreconditionFailedError(f"cannot edit {target.field}")
        self.edit = target
        self.edit_buffer = initial
        self.conflict_text = None
        return initial

    def commit_edit(self, text: Optional[str] = None) -> None:
        if self.edit is None:
            if self.conflict_text is not None:
                raise ConflictError("file changed on disk while editing; the edit was abandoned")
            raise PreconditionFailedError("no edit in progress")
        target, buffer = self.edit, self.edit_buffer if text is None else text
        self.edit = None
        self.edit_buffer = ""
        try:
            if target.field == "inbox":
                self.edit_inbox_item(target.index, title=buffer)
            elif target.field == "title":
                self.edit_title(target.track_id, target.task_id, buffer)
            elif target.field == "tags":
                self.set_tags(target.track_id, target.task_id, buffer.split())
            elif target.field == "note":
                self.set_note(target.track_id, target.task_id, buffer)
        finally:
            self._process_queued_reloads()

    def cancel_edit(self) -> None:
        self.edit = None
        self.edit_buffer = ""
        self._process_queued_reloads()

    def _abandon_edit(self) -> None:
        target = self.edit
        self.conflict_text = self.edit_buffer
        recovery.log_recovery(
            self.storage.frame_dir,
            recovery.Category.CONFLICT,
            "edit abandoned: file changed on disk",
            [("track", target.track_id or INBOX), ("task", target.task_id or str(target.index)),
             ("field", target.field)],
            self.edit_buffer,
        )
        self.edit = None
        self.edit_buffer = ""
        self.status_message = "file changed on disk: edit abandoned (text kept)"
        logger.warning("edit of %s abandoned after external change", target)

    # -------------------- external changes --------------------
    def tick(self) -> bool:
        """One loop iteration: run due moves and drain file-change events.

        Returns True when the model changed and the view should be redrawn.
        """
        changed = False
        if not self.editing and self.pending_moves:
            changed = bool(self.flush_expired())
        if self.watcher is not None:
            for event in self.watcher.poll():
                changed = self.handle_file_change(event.paths) or changed
        return changed

    def handle_file_change(self, paths: Iterable[Path]) -> bool:
        external = [Path(p) for p in paths if self.storage.is_external_change(p)]
        if not external:
            return False
        if self.editing:
            edit_path = self._edit_path(self.edit)
            if edit_path is not None and any(p == edit_path for p in external):
                self._abandon_edit()
                self.reload(external)
                self._process_queued_reloads()
            else:
                self.pending_reload_paths.extend(p for p in external if p not in self.pending_reload_paths)
                return False
            return True
        self.reload(external)
        return True

    def _process_queued_reloads(self) -> None:
        if self.pending_reload_paths and not self.editing:
            paths, self.pending_reload_paths = self.pending_reload_paths, []
            self.reload(paths)

    def reload(self, paths: Iterable[Path]) -> None:
        """Replace changed files' models from disk; undo cannot cross this point."""
        reloaded: List[str] = []
        for path in paths:
            if path == self.storage.config_path:
                self._reload_config()
                reloaded.append("config")
                continue
            if path == self.storage.inbox_path:
                self.project.inbox = self.storage.load_inbox()
                reloaded.append(INBOX)
                continue
            for tc in self.project.config.tracks:
                if tc.state != "archived" and self.storage.track_path(tc) == path:
                    self._drop_pending(tc.id)
                    if path.exists():
                        self.project.tracks[tc.id] = self.storage.load_track(tc)
                    else:
                        self.project.tracks.pop(tc.id, None)
                    reloaded.append(tc.id)
        if reloaded:
            if self.clean_on_load:
                auto_clean(self.storage, self.project)
            self.undo_stack.push_sync_marker()
            logger.info("reloaded after external change: %s", ", ".join(reloaded))

    def _reload_config(self) -> None:
        fresh = self.storage.load_project()
        self.project.config = fresh.config
        self.project.tracks = fresh.tracks
        self.project.inbox = fresh.inbox
        self.pending_moves.clear()

    # -------------------- shutdown --------------------
    def close(self) -> None:
        """Commit every pending move; anything still deferred would be lost."""
        self.flush_all()
        if self.watcher is not None:
            self.watcher.stop()


