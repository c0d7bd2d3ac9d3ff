"""Undo/redo log for the interactive session.

Each record keeps enough prior state to invert itself exactly and knows which
files its inverse touches, so the session can save just those. A
``SyncMarker`` is pushed whenever files are reloaded from disk; undo never
crosses it, since the records below it describe a model that no longer
exists.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Set

from .board import (
    Board,
    DeletedTask,
    find_task_location,
    insert_task_subtree,
    remove_task_subtree,
)
from .errors import NotFoundError
from .models import InboxItem, Metadata, SectionKind, Task, TaskState

if TYPE_CHECKING:
    from .tracks import RemovedTrack, TrackManager

logger = logging.getLogger(__name__)

INBOX = "inbox"
CONFIG = "config"
MAX_UNDO = 500


@dataclass
class UndoContext:
    """What records need to apply themselves."""

    board: Board
    tracks: Optional["TrackManager"] = None


@dataclass
class TaskFields:
    """Snapshot of a task's own editable fields (not its subtasks)."""

    state: TaskState
    title: str
    tags: List[str]
    metadata: List[Metadata]

    @classmethod
    def capture(cls, task: Task) -> "TaskFields":
        return cls(task.state, task.title, list(task.tags), copy.deepcopy(task.metadata))

    def apply(self, task: Task) -> None:
        task.state = self.state
        task.title = self.title
        task.tags = list(self.tags)
        task.metadata = copy.deepcopy(self.metadata)
        task.mark_dirty()

    def apply_changes(self, task: Task, other: "TaskFields") -> None:
        """Apply only the fields that differ from ``other``."""
        if self.state != other.state:
            task.state = self.state
        if self.title != other.title:
            task.title = self.title
        if self.tags != other.tags:
            task.tags = list(self.tags)
        if self.metadata != other.metadata:
            task.metadata = copy.deepcopy(self.metadata)
        task.mark_dirty()

    def restore_state(self, task: Task) -> None:
        """Put back the state and its ``resolved`` date, leaving other fields alone."""
        task.state = self.state
        task.remove_meta("resolved")
        for i, meta in enumerate(self.metadata):
            if meta.key == "resolved":
                task.metadata.insert(min(i, len(task.metadata)), copy.deepcopy(meta))
        task.mark_dirty()


class Operation:
    """Base record. ``touched`` names the track ids (or INBOX/CONFIG) it changes."""

    label = "change"

    def undo(self, ctx: UndoContext) -> None:
        raise NotImplementedError

    def redo(self, ctx: UndoContext) -> None:
        raise NotImplementedError

    def touched(self) -> Set[str]:
        return set()


# -------------------- task records --------------------
@dataclass
class TaskEdit(Operation):
    """State, title, tag or metadata change on one task."""

    track_id: str
    task_id: str
    before: TaskFields
    after: TaskFields
    label: str = "edit"

    def undo(self, ctx):
        self.before.apply_changes(ctx.board.task(self.track_id, self.task_id), self.after)

    def redo(self, ctx):
        self.after.apply_changes(ctx.board.task(self.track_id, self.task_id), self.before)

    def touched(self):
        return {self.track_id}


@dataclass
class TaskAdd(Operation):
    track_id: str
    task_id: str
    parent_id: Optional[str]
    section: SectionKind
    index: int
    snapshot: Task
    label: str = "add"

    def undo(self, ctx):
        remove_task_subtree(ctx.board.track(self.track_id), self.task_id)

    def redo(self, ctx):
        insert_task_subtree(ctx.board.track(self.track_id), copy.deepcopy(self.snapshot),
                            self.parent_id, self.section, self.index)

    def touched(self):
        return {self.track_id}


@dataclass
class TaskMove(Operation):
    """Reorder within one list."""

    track_id: str
    task_id: str
    section: SectionKind
    from_index: int
    to_index: int
    label: str = "move"

    def _shift(self, ctx, src: int, dst: int) -> None:
        sec = ctx.board.track(self.track_id).section(self.section)
        task = sec.tasks.pop(src)
        sec.tasks.insert(dst, task)
        task.mark_dirty()

    def undo(self, ctx):
        self._shift(ctx, self.to_index, self.from_index)

    def redo(self, ctx):
        self._shift(ctx, self.from_index, self.to_index)

    def touched(self):
        return {self.track_id}


@dataclass
class TaskDelete(Operation):
    deleted: DeletedTask
    label: str = "delete"

    def undo(self, ctx):
        ctx.board.reinsert(self.deleted)

    def redo(self, ctx):
        remove_task_subtree(ctx.board.track(self.deleted.track_id), self.deleted.task.id)

    def touched(self):
        return {self.deleted.track_id}


@dataclass
class TrackSnapshot(Operation):
    """Whole-track before/after copies for moves that rekey IDs across tracks."""

    before: dict
    after: dict
    label: str = "move"

    def _restore(self, ctx, tracks: dict) -> None:
        for track_id, track in tracks.items():
            ctx.board.project.tracks[track_id] = copy.deepcopy(track)

    def undo(self, ctx):
        self._restore(ctx, self.before)

    def redo(self, ctx):
        self._restore(ctx, self.after)

    def touched(self):
        return set(self.before)


@dataclass
class SectionChange(Operation):
    """A state change that relocates a top-level task between sections.

    Covers completing a Backlog task (moves to Done) and reopening a Done task
    (moves to Backlog). The relocation may be deferred, so undo finds the task
    wherever it is now and puts it back at ``index`` in ``section``.
    """

    track_id: str
    task_id: str
    section: SectionKind
    index: int
    dest: SectionKind
    before: TaskFields
    after: TaskFields
    label: str = "state"
    # set once the move itself had to create ``dest``
    created_section: bool = False

    def undo(self, ctx):
        track = ctx.board.track(self.track_id)
        loc = find_task_location(track, self.task_id)
        if loc is None:
            raise NotFoundError(f"task {self.task_id} not found")
        if loc.section != self.section or loc.parent_id is not None or loc.index != self.index:
            task, _ = remove_task_subtree(track, self.task_id)
            insert_task_subtree(track, task, None, self.section, self.index)
        self.before.apply(track.find_task(self.task_id))
        if self.created_section:
            track.remove_section(self.dest)
            self.created_section = False

    def redo(self, ctx):
        track = ctx.board.track(self.track_id)
        self.after.apply(track.find_task(self.task_id))
        if self.dest == SectionKind.BACKLOG:
            task = track.find_task(self.task_id)
            task.remove_meta("resolved")
        self.created_section = track.section(self.dest) is None
        ctx.board.move_task_between_sections(self.track_id, self.task_id, self.section, self.dest)

    def touched(self):
        return {self.track_id}


@dataclass
class SectionMove(Operation):
    """Explicit move of a top-level task to the top of another section."""

    track_id: str
    task_id: str
    from_kind: SectionKind
    to_kind: SectionKind
    from_index: int
    created_section: bool = False
    label: str = "move"

    def undo(self, ctx):
        track = ctx.board.track(self.track_id)
        task, _ = remove_task_subtree(track, self.task_id)
        insert_task_subtree(track, task, None, self.from_kind, self.from_index)
        if self.created_section:
            track.remove_section(self.to_kind)

    def redo(self, ctx):
        ctx.board.move_task_between_sections(self.track_id, self.task_id, self.from_kind, self.to_kind)

    def touched(self):
        return {self.track_id}


# -------------------- inbox records --------------------
@dataclass
class InboxAdd(Operation):
    index: int
    item: InboxItem
    label: str = "inbox add"

    def undo(self, ctx):
        ctx.board.inbox.items.pop(self.index)

    def redo(self, ctx):
        ctx.board.inbox.items.insert(self.index, copy.deepcopy(self.item))

    def touched(self):
        return {INBOX}


@dataclass
class InboxDelete(Operation):
    index: int
    item: InboxItem
    label: str = "inbox delete"

    def undo(self, ctx):
        ctx.board.inbox.items.insert(self.index, copy.deepcopy(self.item))

    def redo(self, ctx):
        ctx.board.inbox.items.pop(self.index)

    def touched(self):
        return {INBOX}


@dataclass
class InboxEdit(Operation):
    index: int
    before: InboxItem
    after: InboxItem
    label: str = "inbox edit"

    def undo(self, ctx):
        ctx.board.inbox.items[self.index] = copy.deepcopy(self.before)

    def redo(self, ctx):
        ctx.board.inbox.items[self.index] = copy.deepcopy(self.after)

    def touched(self):
        return {INBOX}


@dataclass
class InboxMove(Operation):
    from_index: int
    to_index: int
    label: str = "inbox move"

    def _shift(self, ctx, src: int, dst: int) -> None:
        items = ctx.board.inbox.items
        item = items.pop(src)
        items.insert(dst, item)
        item.mark_dirty()

    def undo(self, ctx):
        self._shift(ctx, self.to_index, self.from_index)

    def redo(self, ctx):
        self._shift(ctx, self.from_index, self.to_index)

    def touched(self):
        return {INBOX}


@dataclass
class Triage(Operation):
    index: int
    item: InboxItem
    track_id: str
    task_id: str
    task_index: int
    task: Task
    label: str = "triage"

    def undo(self, ctx):
        remove_task_subtree(ctx.board.track(self.track_id), self.task_id)
        ctx.board.inbox.items.insert(self.index, copy.deepcopy(self.item))

    def redo(self, ctx):
        ctx.board.inbox.items.pop(self.index)
        insert_task_subtree(ctx.board.track(self.track_id), copy.deepcopy(self.task), None,
                            SectionKind.BACKLOG, self.task_index)

    def touched(self):
        return {INBOX, self.track_id}


# -------------------- track records --------------------
@dataclass
class TrackCreate(Operation):
    track_id: str
    name: str
    removed: Optional["RemovedTrack"] = None
    label: str = "new track"

    def undo(self, ctx):
        self.removed = ctx.tracks.delete(self.track_id)

    def redo(self, ctx):
        ctx.tracks.restore(self.removed)


@dataclass
class TrackArchive(Operation):
    record: "RemovedTrack"
    label: str = "archive track"

    def undo(self, ctx):
        ctx.tracks.unarchive(self.record.config.id, self.record.config.state)

    def redo(self, ctx):
        ctx.tracks.archive(self.record.config.id)


@dataclass
class TrackUnarchive(Operation):
    track_id: str
    label: str = "unarchive track"

    def undo(self, ctx):
        ctx.tracks.archive(self.track_id)

    def redo(self, ctx):
        ctx.tracks.unarchive(self.track_id)


@dataclass
class TrackDelete(Operation):
    record: "RemovedTrack"
    label: str = "delete track"

    def undo(self, ctx):
        ctx.tracks.restore(self.record)

    def redo(self, ctx):
        ctx.tracks.delete(self.record.config.id)


class SyncMarker(Operation):
    label = "sync"


# -------------------- stack --------------------
@dataclass
class UndoStack:
    undo_ops: List[Operation] = field(default_factory=list)
    redo_ops: List[Operation] = field(default_factory=list)
    limit: int = MAX_UNDO

    def push(self, op: Operation) -> None:
        self.undo_ops.append(op)
        if len(self.undo_ops) > self.limit:
            del self.undo_ops[0]
        self.redo_ops.clear()

    def push_sync_marker(self) -> None:
        if self.undo_ops and isinstance(self.undo_ops[-1], SyncMarker):
            return
        self.undo_ops.append(SyncMarker())
        self.redo_ops.clear()

    def remove(self, op: Operation) -> bool:
        for i in range(len(self.undo_ops) - 1, -1, -1):
            if self.undo_ops[i] is op:
                del self.undo_ops[i]
                return True
        return False

    @property
    def can_undo(self) -> bool:
        return bool(self.undo_ops) and not isinstance(self.undo_ops[-1], SyncMarker)

    @property
    def can_redo(self) -> bool:
        return bool(self.redo_ops)

    def undo(self, ctx: UndoContext) -> Optional[Operation]:
        if not self.can_undo:
            return None
        op = self.undo_ops.pop()
        op.undo(ctx)
        self.redo_ops.append(op)
        logger.debug("undid %s", op.label)
        return op

    def redo(self, ctx: UndoContext) -> Optional[Operation]:
        if not self.can_redo:
            return None
        op = self.redo_ops.pop()
        op.redo(ctx)
        self.undo_ops.append(op)
        logger.debug("redid %s", op.label)
        return op
