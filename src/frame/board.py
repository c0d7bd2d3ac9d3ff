"""Board logic: task and inbox mutations over a loaded project.

Every operation validates all of its preconditions before touching the
model, so a failed call leaves the project exactly as it was. On success it
marks the nodes it altered dirty (and the parent whose subtask list changed);
everything else keeps its captured source lines.
"""
from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import IndexOutOfRangeError, NotFoundError, PreconditionFailedError
from .models import (
    InboxItem,
    Metadata,
    Project,
    Section,
    SectionKind,
    Task,
    TaskState,
    Track,
)
from .parser import parse_title_and_tags

logger = logging.getLogger(__name__)

WONTDO_TAG = "wontdo"
PREFIX_RE = re.compile(r"^[A-Z][A-Z0-9]*$")


def today_str() -> str:
    return date.today().isoformat()


def format_id(prefix: str, number: int) -> str:
    return f"{prefix}-{number:03d}"


# -------------------- positions --------------------
@dataclass(frozen=True)
class Position:
    """Where a task goes in a list: ``top``, ``bottom`` or ``after`` an ID."""

    kind: str = "bottom"
    after_id: Optional[str] = None

    @classmethod
    def top(cls) -> "Position":
        return cls("top")

    @classmethod
    def bottom(cls) -> "Position":
        return cls("bottom")

    @classmethod
    def after(cls, task_id: str) -> "Position":
        return cls("after", task_id)

    def resolve(self, tasks: List[Task]) -> int:
        """Insertion index in ``tasks``; raises before anything is mutated."""
        if self.kind == "top":
            return 0
        if self.kind == "after":
            for i, task in enumerate(tasks):
                if task.id == self.after_id:
                    return i + 1
            raise NotFoundError(f"after target {self.after_id} not found")
        return len(tasks)


@dataclass
class TaskLocation:
    section: SectionKind
    parent_id: Optional[str]
    index: int


@dataclass
class DeletedTask:
    """A removed subtree plus where it lived, for undo and the recovery log."""

    track_id: str
    section: SectionKind
    parent_id: Optional[str]
    position: int
    task: Task


@dataclass
class ReparentResult:
    new_id: str
    id_mappings: List[Tuple[str, str]]
    old_location: TaskLocation


@dataclass
class PrefixRenameImpact:
    track_id: str
    old_prefix: str
    new_prefix: str
    task_ids: int = 0
    dep_references: int = 0
    affected_tracks: List[str] = field(default_factory=list)


# -------------------- state transitions --------------------
def set_state(task: Task, state: TaskState) -> None:
    """Change state with resolved-date bookkeeping (a no-op when unchanged)."""
    if task.state == state:
        return
    was_done = task.state == TaskState.DONE
    task.state = state
    task.mark_dirty()
    if state == TaskState.DONE:
        task.remove_meta("resolved")
        task.metadata.append(Metadata.resolved(today_str()))
    elif was_done:
        task.remove_meta("resolved")


_CYCLE = {
    TaskState.TODO: TaskState.ACTIVE,
    TaskState.ACTIVE: TaskState.DONE,
    TaskState.DONE: TaskState.TODO,
    TaskState.BLOCKED: TaskState.TODO,
    TaskState.PARKED: TaskState.TODO,
}


def cycle_state(task: Task) -> None:
    """todo -> active -> done -> todo; blocked and parked go back to todo."""
    set_state(task, _CYCLE[task.state])


def toggle_blocked(task: Task) -> None:
    set_state(task, TaskState.TODO if task.state == TaskState.BLOCKED else TaskState.BLOCKED)


def toggle_parked(task: Task) -> None:
    set_state(task, TaskState.TODO if task.state == TaskState.PARKED else TaskState.PARKED)


# -------------------- id helpers --------------------
def _id_number(task_id: Optional[str], prefix: str) -> Optional[int]:
    head = f"{prefix}-"
    if not task_id or not task_id.startswith(head):
        return None
    digits = task_id[len(head):].split(".", 1)[0]
    return int(digits) if digits.isdigit() else None


def max_id_number(tasks: Iterable[Task], prefix: str) -> int:
    best = 0
    for task in tasks:
        num = _id_number(task.id, prefix)
        if num is not None and num > best:
            best = num
    return best


def next_id_number(track: Track, prefix: str) -> int:
    return max_id_number(track.iter_tasks(), prefix) + 1


def next_child_number(parent: Task) -> int:
    """Max immediate child suffix + 1, so deleted numbers are never reused."""
    if not parent.id:
        return len(parent.subtasks) + 1
    head = f"{parent.id}."
    best = 0
    for sub in parent.subtasks:
        if sub.id and sub.id.startswith(head):
            suffix = sub.id[len(head):]
            if suffix.isdigit():
                best = max(best, int(suffix))
    return best + 1


def rekey_subtree(task: Task, new_id: str) -> List[Tuple[str, str]]:
    mappings: List[Tuple[str, str]] = []
    if task.id:
        mappings.append((task.id, new_id))
    task.id = new_id
    task.mark_dirty()
    for i, sub in enumerate(task.subtasks, start=1):
        mappings.extend(rekey_subtree(sub, f"{new_id}.{i}"))
    return mappings


def set_subtree_depth(task: Task, depth: int) -> None:
    task.depth = depth
    task.mark_dirty()
    for sub in task.subtasks:
        set_subtree_depth(sub, depth + 1)


def update_dep_references(tracks: Iterable[Track], old_id: str, new_id: str) -> int:
    """Rewrite every ``dep`` entry equal to ``old_id``; returns how many changed."""
    changed_total = 0
    for track in tracks:
        for task in track.iter_tasks():
            changed = 0
            for meta in task.metadata:
                if meta.key == "dep":
                    for i, dep in enumerate(meta.value):
                        if dep == old_id:
                            meta.value[i] = new_id
                            changed += 1
            if changed:
                task.mark_dirty()
                changed_total += changed
    return changed_total


# -------------------- tree helpers --------------------
def find_task_location(track: Track, task_id: str) -> Optional[TaskLocation]:
    def search(tasks: List[Task], kind: SectionKind, parent_id: Optional[str]) -> Optional[TaskLocation]:
        for i, task in enumerate(tasks):
            if task.id == task_id:
                return TaskLocation(kind, parent_id, i)
            found = search(task.subtasks, kind, task.id)
            if found is not None:
                return found
        return None

    for sec in track.sections():
        loc = search(sec.tasks, sec.kind, None)
        if loc is not None:
            return loc
    return None


def _owning_list(track: Track, loc: TaskLocation) -> Tuple[List[Task], Optional[Task]]:
    if loc.parent_id is None:
        return track.section_tasks(loc.section), None
    parent = track.find_task(loc.parent_id)
    return parent.subtasks, parent


def remove_task_subtree(track: Track, task_id: str) -> Tuple[Task, TaskLocation]:
    loc = find_task_location(track, task_id)
    if loc is None:
        raise NotFoundError(f"task {task_id} not found")
    tasks, parent = _owning_list(track, loc)
    task = tasks.pop(loc.index)
    if parent is not None:
        parent.mark_dirty()
    else:
        track.fix_section_spacing(track.section(loc.section))
    return task, loc


def insert_task_subtree(track: Track, task: Task, parent_id: Optional[str],
                        section: SectionKind, index: int) -> None:
    if parent_id is None:
        sec = track.section(section)
        if sec is None:
            raise PreconditionFailedError(f"no {section.name.lower()} section")
        task.mark_dirty()
        sec.tasks.insert(min(index, len(sec.tasks)), task)
        track.fix_section_spacing(sec)
        return
    parent = track.find_task(parent_id)
    if parent is None:
        raise NotFoundError(f"task {parent_id} not found")
    task.mark_dirty()
    parent.subtasks.insert(min(index, len(parent.subtasks)), task)
    parent.mark_dirty()


def is_descendant_of(track: Track, ancestor_id: str, candidate_id: str) -> bool:
    ancestor = track.find_task(ancestor_id)
    if ancestor is None:
        return False
    return any(t.id == candidate_id for sub in ancestor.subtasks for t in sub.walk())


def max_subtree_depth(task: Task) -> int:
    if not task.subtasks:
        return 0
    return 1 + max(max_subtree_depth(sub) for sub in task.subtasks)


def _new_task(task_id: str, title: str, depth: int = 0) -> Task:
    parsed_title, tags = parse_title_and_tags(title)
    task = Task(TaskState.TODO, task_id, parsed_title, tags, depth=depth)
    task.metadata.append(Metadata.added(today_str()))
    return task


# -------------------- board --------------------
class Board:
    """Mutation entry points over a loaded ``Project``."""

    def __init__(self, project: Project):
        self.project = project

    # -------------------- lookups --------------------
    def track(self, track_id: str) -> Track:
        track = self.project.tracks.get(track_id)
        if track is None:
            raise NotFoundError(f"track {track_id} not found")
        return track

    def prefix(self, track_id: str) -> str:
        return self.project.config.prefix_for(track_id) or track_id.upper()

    def task(self, track_id: str, task_id: str) -> Task:
        task = self.track(track_id).find_task(task_id)
        if task is None:
            raise NotFoundError(f"task {task_id} not found in track {track_id}")
        return task

    def locate(self, task_id: str) -> Tuple[str, Task]:
        """(track_id, task) for an ID anywhere in the project."""
        for track_id, track in self.project.tracks.items():
            task = track.find_task(task_id)
            if task is not None:
                return track_id, task
        raise NotFoundError(f"task {task_id} not found")

    def task_exists(self, task_id: str) -> bool:
        return any(t.find_task(task_id) is not None for t in self.project.tracks.values())

    def _backlog(self, track_id: str) -> Section:
        sec = self.track(track_id).section(SectionKind.BACKLOG)
        if sec is None:
            raise PreconditionFailedError(f"track {track_id} has no backlog section")
        return sec

    # -------------------- task crud --------------------
    def add_task(self, track_id: str, title: str, position: Position = Position.bottom()) -> str:
        """Add a task to a track's Backlog; returns the assigned ID."""
        track = self.track(track_id)
        backlog = self._backlog(track_id)
        index = position.resolve(backlog.tasks)
        prefix = self.prefix(track_id)
        task_id = format_id(prefix, next_id_number(track, prefix))
        backlog.tasks.insert(index, _new_task(task_id, title))
        track.fix_section_spacing(backlog)
        logger.debug("added %s to %s", task_id, track_id)
        return task_id

    def add_subtask(self, track_id: str, parent_id: str, title: str,
                    after_id: Optional[str] = None) -> str:
        parent = self.task(track_id, parent_id)
        if after_id is not None:
            index = Position.after(after_id).resolve(parent.subtasks)
        else:
            index = len(parent.subtasks)
        sub_id = f"{parent_id}.{next_child_number(parent)}"
        parent.subtasks.insert(index, _new_task(sub_id, title, parent.depth + 1))
        parent.mark_dirty()
        return sub_id

    def edit_title(self, track_id: str, task_id: str, new_title: str) -> None:
        """Retitle; trailing ``#tags`` in the new title replace the task's tags."""
        task = self.task(track_id, task_id)
        title, tags = parse_title_and_tags(new_title)
        task.title = title
        task.tags = tags
        task.mark_dirty()

    def set_state(self, track_id: str, task_id: str, state: TaskState) -> None:
        set_state(self.task(track_id, task_id), state)

    def cycle_state(self, track_id: str, task_id: str) -> TaskState:
        task = self.task(track_id, task_id)
        cycle_state(task)
        return task.state

    def toggle_blocked(self, track_id: str, task_id: str) -> TaskState:
        task = self.task(track_id, task_id)
        toggle_blocked(task)
        return task.state

    def toggle_parked(self, track_id: str, task_id: str) -> TaskState:
        task = self.task(track_id, task_id)
        toggle_parked(task)
        return task.state

    def add_tag(self, track_id: str, task_id: str, tag: str) -> None:
        task = self.task(track_id, task_id)
        tag = tag.lstrip("#")
        if tag not in task.tags:
            task.tags.append(tag)
            task.mark_dirty()

    def remove_tag(self, track_id: str, task_id: str, tag: str) -> None:
        task = self.task(track_id, task_id)
        tag = tag.lstrip("#")
        if tag in task.tags:
            task.tags.remove(tag)
            task.mark_dirty()

    def add_dep(self, track_id: str, task_id: str, dep_id: str) -> None:
        task = self.task(track_id, task_id)
        if not self.task_exists(dep_id):
            raise NotFoundError(f"dependency target {dep_id} not found")
        entry = task.meta("dep")
        if entry is None:
            task.metadata.append(Metadata.dep(dep_id))
        elif dep_id in entry.value:
            return
        else:
            entry.value.append(dep_id)
        task.mark_dirty()

    def remove_dep(self, track_id: str, task_id: str, dep_id: str) -> None:
        task = self.task(track_id, task_id)
        entry = task.meta("dep")
        if entry is None or dep_id not in entry.value:
            raise NotFoundError(f"{task_id} has no dependency on {dep_id}")
        entry.value.remove(dep_id)
        if not entry.value:
            task.metadata.remove(entry)
        task.mark_dirty()

    def set_note(self, track_id: str, task_id: str, text: str) -> None:
        """Replace the note; an empty text removes it."""
        task = self.task(track_id, task_id)
        entry = task.meta("note")
        if not text:
            task.remove_meta("note")
        elif entry is None:
            task.metadata.append(Metadata.note(text))
        else:
            entry.value = text
        task.mark_dirty()

    def append_note(self, track_id: str, task_id: str, text: str) -> None:
        task = self.task(track_id, task_id)
        entry = task.meta("note")
        if entry is None or not entry.value:
            self.set_note(track_id, task_id, text)
            return
        entry.value = f"{entry.value}\n\n{text}"
        task.mark_dirty()

    def add_ref(self, track_id: str, task_id: str, path: str) -> None:
        task = self.task(track_id, task_id)
        entry = task.meta("ref")
        if entry is None:
            task.metadata.append(Metadata.ref(path))
        elif path in entry.value:
            return
        else:
            entry.value.append(path)
        task.mark_dirty()

    def set_spec(self, track_id: str, task_id: str, spec: str) -> None:
        task = self.task(track_id, task_id)
        entry = task.meta("spec")
        if entry is None:
            task.metadata.append(Metadata.spec(spec))
        else:
            entry.value = spec
        task.mark_dirty()

    # -------------------- moves --------------------
    def move_task(self, track_id: str, task_id: str, position: Position) -> None:
        """Reorder a top-level Backlog task."""
        backlog = self._backlog(track_id)
        index = next((i for i, t in enumerate(backlog.tasks) if t.id == task_id), None)
        if index is None:
            raise NotFoundError(f"task {task_id} not found in backlog of {track_id}")
        if position.kind == "after" and position.after_id == task_id:
            raise PreconditionFailedError("cannot move a task after itself")
        remaining = backlog.tasks[:index] + backlog.tasks[index + 1:]
        target = position.resolve(remaining)
        task = backlog.tasks.pop(index)
        backlog.tasks.insert(target, task)
        task.mark_dirty()

    def move_task_to_track(self, source_id: str, target_id: str, task_id: str,
                           position: Position = Position.bottom()) -> str:
        """Move a top-level Backlog task to another track; returns its new ID."""
        if source_id == target_id:
            raise PreconditionFailedError("source and destination track are the same")
        source = self._backlog(source_id)
        target_track = self.track(target_id)
        target = self._backlog(target_id)
        index = next((i for i, t in enumerate(source.tasks) if t.id == task_id), None)
        if index is None:
            raise NotFoundError(f"task {task_id} not found in backlog of {source_id}")
        insert_at = position.resolve(target.tasks)

        task = source.tasks.pop(index)
        self.track(source_id).fix_section_spacing(source)
        prefix = self.prefix(target_id)
        new_id = format_id(prefix, next_id_number(target_track, prefix))
        mappings = rekey_subtree(task, new_id)
        target.tasks.insert(insert_at, task)
        target_track.fix_section_spacing(target)
        for old, new in mappings:
            update_dep_references(self.project.tracks.values(), old, new)
        logger.debug("moved %s from %s to %s as %s", task_id, source_id, target_id, new_id)
        return new_id

    def move_task_between_sections(self, track_id: str, task_id: str,
                                   from_kind: SectionKind, to_kind: SectionKind) -> Optional[int]:
        """Move a top-level task (with its subtree) to the top of another section.

        Returns the index it had in the source section, or None when it is not
        a top-level task there.
        """
        track = self.track(track_id)
        source = track.section(from_kind)
        if source is None:
            return None
        index = next((i for i, t in enumerate(source.tasks) if t.id == task_id), None)
        if index is None:
            return None
        task = source.tasks.pop(index)
        track.fix_section_spacing(source)
        dest = track.ensure_section(to_kind)
        dest.tasks.insert(0, task)
        track.fix_section_spacing(dest)
        task.mark_dirty()
        return index

    def reparent_task(self, track_id: str, task_id: str, new_parent_id: Optional[str],
                      sibling_index: Optional[int] = None) -> ReparentResult:
        """Move a task under a new parent (None promotes it to top level).

        The moved subtree is rekeyed and dependency references follow.
        """
        track = self.track(track_id)
        old_loc = find_task_location(track, task_id)
        if old_loc is None:
            raise NotFoundError(f"task {task_id} not found in track {track_id}")
        new_depth = 0
        if new_parent_id is not None:
            if new_parent_id == task_id or is_descendant_of(track, task_id, new_parent_id):
                raise PreconditionFailedError(f"cannot move {task_id} under its own subtree")
            parent = track.find_task(new_parent_id)
            if parent is None:
                raise NotFoundError(f"task {new_parent_id} not found in track {track_id}")
            new_depth = parent.depth + 1

        task, old_loc = remove_task_subtree(track, task_id)
        if new_parent_id is None:
            prefix = self.prefix(track_id)
            new_id = format_id(prefix, next_id_number(track, prefix))
        else:
            new_id = f"{new_parent_id}.{next_child_number(track.find_task(new_parent_id))}"
        mappings = rekey_subtree(task, new_id)
        set_subtree_depth(task, new_depth)
        index = sibling_index if sibling_index is not None else 1 << 30
        insert_task_subtree(track, task, new_parent_id, old_loc.section, index)
        for old, new in mappings:
            update_dep_references(self.project.tracks.values(), old, new)
        return ReparentResult(new_id, mappings, old_loc)

    # -------------------- deletion --------------------
    def hard_delete(self, track_id: str, task_id: str) -> DeletedTask:
        """Physically remove a task and its subtree."""
        track = self.track(track_id)
        task, loc = remove_task_subtree(track, task_id)
        logger.info("deleted %s from %s", task_id, track_id)
        return DeletedTask(track_id, loc.section, loc.parent_id, loc.index, task)

    def reinsert(self, deleted: DeletedTask) -> None:
        track = self.track(deleted.track_id)
        insert_task_subtree(track, copy.deepcopy(deleted.task), deleted.parent_id,
                            deleted.section, deleted.position)

    def soft_delete(self, track_id: str, task_id: str) -> None:
        """Mark a task as won't-do: Done plus the ``#wontdo`` tag."""
        task = self.task(track_id, task_id)
        set_state(task, TaskState.DONE)
        if WONTDO_TAG not in task.tags:
            task.tags.append(WONTDO_TAG)
        task.mark_dirty()

    # -------------------- inbox --------------------
    @property
    def inbox(self):
        if self.project.inbox is None:
            raise PreconditionFailedError("project has no inbox")
        return self.project.inbox

    def _inbox_index(self, index: int) -> int:
        length = len(self.inbox.items)
        if not 0 <= index < length:
            raise IndexOutOfRangeError(index, length)
        return index

    def add_inbox_item(self, title: str, tags: Optional[List[str]] = None,
                       body: Optional[str] = None) -> int:
        parsed_title, parsed_tags = parse_title_and_tags(title)
        all_tags = parsed_tags + [t.lstrip("#") for t in (tags or []) if t.lstrip("#") not in parsed_tags]
        self.inbox.items.append(InboxItem(parsed_title, all_tags, body or None))
        return len(self.inbox.items) - 1

    def edit_inbox_item(self, index: int, title: Optional[str] = None,
                        tags: Optional[List[str]] = None, body: Optional[str] = None) -> None:
        item = self.inbox.items[self._inbox_index(index)]
        if title is not None:
            item.title, parsed = parse_title_and_tags(title)
            if tags is None and parsed:
                item.tags = parsed
        if tags is not None:
            item.tags = [t.lstrip("#") for t in tags]
        if body is not None:
            item.body = body or None
        item.mark_dirty()

    def delete_inbox_item(self, index: int) -> InboxItem:
        return self.inbox.items.pop(self._inbox_index(index))

    def move_inbox_item(self, from_index: int, to_index: int) -> None:
        items = self.inbox.items
        self._inbox_index(from_index)
        if not 0 <= to_index < len(items):
            raise IndexOutOfRangeError(to_index, len(items))
        item = items.pop(from_index)
        items.insert(to_index, item)
        item.mark_dirty()

    def triage(self, index: int, track_id: str, position: Position = Position.bottom()) -> str:
        """Turn an inbox item into a Backlog task; returns the new task ID.

        The destination (Backlog section, "after" target) is validated before
        the item leaves the inbox.
        """
        self._inbox_index(index)
        track = self.track(track_id)
        backlog = self._backlog(track_id)
        insert_at = position.resolve(backlog.tasks)

        item = self.inbox.items.pop(index)
        prefix = self.prefix(track_id)
        task_id = format_id(prefix, next_id_number(track, prefix))
        task = Task(TaskState.TODO, task_id, item.title, list(item.tags))
        task.metadata.append(Metadata.added(today_str()))
        if item.body:
            task.metadata.append(Metadata.note(item.body))
        backlog.tasks.insert(insert_at, task)
        track.fix_section_spacing(backlog)
        logger.debug("triaged inbox item %d into %s as %s", index, track_id, task_id)
        return task_id

    # -------------------- prefix rename --------------------
    def _validate_prefix(self, track_id: str, new_prefix: str) -> str:
        self.track(track_id)
        old = self.prefix(track_id)
        if not PREFIX_RE.match(new_prefix):
            raise PreconditionFailedError(f"invalid prefix {new_prefix!r}: use uppercase letters and digits")
        for other, prefix in self.project.config.prefixes.items():
            if other != track_id and prefix == new_prefix:
                raise PreconditionFailedError(f"prefix {new_prefix} is already used by track {other}")
        return old

    def prefix_rename_impact(self, track_id: str, new_prefix: str) -> PrefixRenameImpact:
        """Dry run: what renaming ``track_id``'s prefix would touch."""
        old = self._validate_prefix(track_id, new_prefix)
        impact = PrefixRenameImpact(track_id, old, new_prefix)
        impact.task_ids = sum(1 for t in self.track(track_id).iter_tasks() if _id_number(t.id, old) is not None)
        dep_re = re.compile(rf"^{re.escape(old)}-\d")
        for tid, track in self.project.tracks.items():
            hits = sum(
                1 for t in track.iter_tasks() for m in t.metadata
                if m.key == "dep" for d in m.value if dep_re.match(d)
            )
            if hits:
                impact.dep_references += hits
            if hits or (tid == track_id and impact.task_ids):
                impact.affected_tracks.append(tid)
        return impact

    def rename_prefix(self, track_id: str, new_prefix: str) -> PrefixRenameImpact:
        """Rewrite every ID under the old prefix and every dep pointing at one.

        Works on copies and swaps them in only when every track succeeded.
        """
        impact = self.prefix_rename_impact(track_id, new_prefix)
        old = impact.old_prefix
        if old == new_prefix:
            return impact
        dep_re = re.compile(rf"^{re.escape(old)}-(?=\d)")
        staged: Dict[str, Track] = {}
        for tid in impact.affected_tracks:
            track = copy.deepcopy(self.project.tracks[tid])
            for task in track.iter_tasks():
                changed = False
                if tid == track_id and _id_number(task.id, old) is not None:
                    task.id = new_prefix + task.id[len(old):]
                    changed = True
                for meta in task.metadata:
                    if meta.key != "dep":
                        continue
                    for i, dep in enumerate(meta.value):
                        if dep_re.match(dep):
                            meta.value[i] = dep_re.sub(f"{new_prefix}-", dep, count=1)
                            changed = True
                if changed:
                    task.mark_dirty()
            staged[tid] = track
        self.project.tracks.update(staged)
        self.project.config.set_prefix(track_id, new_prefix)
        logger.info("renamed prefix %s -> %s (%d ids, %d deps)", old, new_prefix,
                    impact.task_ids, impact.dep_references)
        return impact
