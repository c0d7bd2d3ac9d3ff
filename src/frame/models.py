"""Data models for the frame backlog: tasks, tracks, the inbox and the project.

Every parsed node carries either a ``Clean`` capture (its exact source lines,
re-emitted untouched by the serializer) or the ``DIRTY`` marker, which makes
the serializer regenerate the node from its canonical fields. Once a node is
dirty it stays dirty until the file is parsed again.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Tuple, Union

if TYPE_CHECKING:
    from .config import ProjectConfig


class TaskState(Enum):
    """Checkbox state. The value is the character between the brackets."""

    TODO = " "
    ACTIVE = ">"
    BLOCKED = "-"
    DONE = "x"
    PARKED = "~"

    @property
    def checkbox_char(self) -> str:
        return self.value

    @classmethod
    def from_char(cls, char: str) -> Optional["TaskState"]:
        for state in cls:
            if state.value == char:
                return state
        return None

    @classmethod
    def from_name(cls, name: str) -> "TaskState":
        try:
            return cls[name.strip().upper()]
        except KeyError:
            raise ValueError(f"unknown task state: {name}") from None


class SectionKind(Enum):
    """Task sections of a track file, valued in their required file order."""

    BACKLOG = 0
    PARKED = 1
    DONE = 2

    @property
    def header(self) -> str:
        return f"## {self.name.capitalize()}"

    @classmethod
    def from_header_name(cls, name: str) -> Optional["SectionKind"]:
        return {
            "backlog": cls.BACKLOG,
            "parked": cls.PARKED,
            "done": cls.DONE,
        }.get(name.strip().lower())


LIST_KEYS = ("dep", "ref")
METADATA_KEYS = ("dep", "ref", "spec", "note", "added", "resolved")


@dataclass
class Metadata:
    """One metadata entry under a task.

    ``dep`` and ``ref`` hold a list of strings; ``spec``, ``note``, ``added``
    and ``resolved`` hold a single string (a note may span several lines).
    """

    key: str
    value: Union[List[str], str]

    @classmethod
    def dep(cls, *ids: str) -> "Metadata":
        return cls("dep", list(ids))

    @classmethod
    def ref(cls, *paths: str) -> "Metadata":
        return cls("ref", list(paths))

    @classmethod
    def spec(cls, path: str) -> "Metadata":
        return cls("spec", path)

    @classmethod
    def note(cls, text: str) -> "Metadata":
        return cls("note", text)

    @classmethod
    def added(cls, date: str) -> "Metadata":
        return cls("added", date)

    @classmethod
    def resolved(cls, date: str) -> "Metadata":
        return cls("resolved", date)


# -------------------- verbatim / canonical switch --------------------
@dataclass(frozen=True)
class Clean:
    """Exact source capture: 0-indexed line range ``[start, end)`` and its text."""

    start: int
    end: int
    lines: Tuple[str, ...]

    def extended(self, line: str) -> "Clean":
        return Clean(self.start, self.end + 1, self.lines + (line,))


class _Dirty:
    _instance: Optional["_Dirty"] = None

    def __new__(cls) -> "_Dirty":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        return "DIRTY"

    def __deepcopy__(self, memo) -> "_Dirty":
        return self


DIRTY = _Dirty()
Source = Union[Clean, _Dirty]


@dataclass
class Task:
    """A single checkbox task.

    Fields:
        state: Checkbox state.
        id: Stable identifier like ``EFF-014`` (subtasks: ``EFF-014.2``) or None.
        title: Title text without ID and trailing tags.
        tags: Tags in order, without the ``#``.
        metadata: Metadata entries in source order.
        subtasks: Owned child tasks, unbounded depth.
        depth: Nesting depth (0 = top level).
        source: ``Clean`` capture of this task's own lines, or ``DIRTY``.
        extra_lines: Lines kept with the task that are not part of its
            canonical form (unrecognised indented text, stray blank lines).
            They are inside the clean capture and are re-emitted after the
            metadata when the task is regenerated.
    """

    state: TaskState
    id: Optional[str]
    title: str
    tags: List[str] = field(default_factory=list)
    metadata: List[Metadata] = field(default_factory=list)
    subtasks: List["Task"] = field(default_factory=list)
    depth: int = 0
    source: Source = field(default=DIRTY, compare=False, repr=False)
    extra_lines: List[str] = field(default_factory=list, compare=False, repr=False)

    @property
    def is_dirty(self) -> bool:
        return self.source is DIRTY

    def mark_dirty(self) -> None:
        self.source = DIRTY

    def meta(self, key: str) -> Optional[Metadata]:
        for entry in self.metadata:
            if entry.key == key:
                return entry
        return None

    def meta_value(self, key: str):
        entry = self.meta(key)
        return entry.value if entry else None

    def remove_meta(self, key: str) -> bool:
        before = len(self.metadata)
        self.metadata = [m for m in self.metadata if m.key != key]
        return len(self.metadata) != before

    def walk(self) -> Iterator["Task"]:
        """Depth-first traversal of this task and its owned subtasks."""
        yield self
        for sub in self.subtasks:
            yield from sub.walk()

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        return f"Task(id={self.id}, title={self.title!r}, state={self.state.name})"


# -------------------- track --------------------
@dataclass
class Literal:
    """Opaque run of lines reproduced unconditionally."""

    lines: List[str]


@dataclass
class Section:
    kind: SectionKind
    header_lines: List[str]
    tasks: List[Task] = field(default_factory=list)
    trailing_lines: List[str] = field(default_factory=list)
    # set when fix_section_spacing added the trailing blank itself
    added_spacing: bool = field(default=False, compare=False, repr=False)
    # set when ensure_section added a blank line to the node before it
    added_separator: bool = field(default=False, compare=False, repr=False)


TrackNode = Union[Literal, Section]


@dataclass
class Track:
    """A parsed track file.

    ``nodes`` keeps the file in order; at most one Section exists per kind and
    sections stay ordered Backlog < Parked < Done.
    """

    title: str = ""
    description: Optional[str] = None
    nodes: List[TrackNode] = field(default_factory=list)
    trailing_newline: bool = True

    # -------------------- sections --------------------
    def sections(self) -> List[Section]:
        return [n for n in self.nodes if isinstance(n, Section)]

    def section(self, kind: SectionKind) -> Optional[Section]:
        for node in self.nodes:
            if isinstance(node, Section) and node.kind == kind:
                return node
        return None

    def section_tasks(self, kind: SectionKind) -> List[Task]:
        """Tasks of a section; an empty list (not attached) when it is missing."""
        sec = self.section(kind)
        return sec.tasks if sec is not None else []

    @property
    def backlog(self) -> List[Task]:
        return self.section_tasks(SectionKind.BACKLOG)

    @property
    def parked(self) -> List[Task]:
        return self.section_tasks(SectionKind.PARKED)

    @property
    def done(self) -> List[Task]:
        return self.section_tasks(SectionKind.DONE)

    def ensure_section(self, kind: SectionKind) -> Section:
        """Return the section of ``kind``, creating it in file order if missing."""
        existing = self.section(kind)
        if existing is not None:
            return existing
        new = Section(kind, [kind.header, ""])
        insert_at = len(self.nodes)
        for i, node in enumerate(self.nodes):
            if isinstance(node, Section) and node.kind.value > kind.value:
                insert_at = i
                break
        if insert_at == len(self.nodes) and self.nodes and not _ends_blank(self.nodes[-1]):
            prev = self.nodes[-1]
            if isinstance(prev, Section):
                prev.trailing_lines.append("")
            else:
                self.nodes.append(Literal([""]))
                insert_at += 1
            new.added_separator = True
        self.nodes.insert(insert_at, new)
        return new

    def remove_section(self, kind: SectionKind) -> bool:
        """Drop an empty section (one that ``ensure_section`` created).

        The blank line ``ensure_section`` put before it goes too.
        """
        section = self.section(kind)
        if section is None or section.tasks:
            return False
        at = self.nodes.index(section)
        del self.nodes[at]
        if at == 0:
            return True
        prev = self.nodes[at - 1]
        if section.added_separator:
            if isinstance(prev, Literal) and prev.lines == [""]:
                del self.nodes[at - 1]
            elif isinstance(prev, Section) and prev.trailing_lines and not prev.trailing_lines[-1].strip():
                prev.trailing_lines.pop()
                prev.added_spacing = False
        elif isinstance(prev, Section) and prev.added_spacing and at == len(self.nodes):
            prev.trailing_lines.clear()
            prev.added_spacing = False
        return True

    def fix_section_spacing(self, section: Section) -> None:
        """Keep a blank line between a populated section and the next node.

        An emptied section drops that blank again, so emptying and
        repopulating a section reproduces the original spacing.
        """
        is_last = bool(self.nodes) and self.nodes[-1] is section
        if section.tasks:
            if not section.trailing_lines and not is_last:
                section.trailing_lines.append("")
                section.added_spacing = True
        elif section.trailing_lines and (
            section.added_spacing or (section.header_lines and not section.header_lines[-1].strip())
        ):
            section.trailing_lines.clear()
            section.added_spacing = False

    # -------------------- traversal --------------------
    def iter_tasks(self) -> Iterator[Task]:
        for sec in self.sections():
            for task in sec.tasks:
                yield from task.walk()

    def find_task(self, task_id: str) -> Optional[Task]:
        for task in self.iter_tasks():
            if task.id == task_id:
                return task
        return None

    def has_dirty(self) -> bool:
        return any(t.is_dirty for t in self.iter_tasks())


def _ends_blank(node: TrackNode) -> bool:
    if isinstance(node, Literal):
        return bool(node.lines) and not node.lines[-1].strip()
    if node.trailing_lines:
        return True
    if node.tasks:
        return False
    return bool(node.header_lines) and not node.header_lines[-1].strip()


# -------------------- inbox --------------------
@dataclass
class InboxItem:
    """Quick-capture item. Items have no ID and are addressed by position."""

    title: str
    tags: List[str] = field(default_factory=list)
    body: Optional[str] = None
    source: Source = field(default=DIRTY, compare=False, repr=False)
    # blank lines between this item and the next one
    separator_lines: List[str] = field(default_factory=list, compare=False, repr=False)

    @property
    def is_dirty(self) -> bool:
        return self.source is DIRTY

    def mark_dirty(self) -> None:
        self.source = DIRTY


@dataclass
class Inbox:
    header_lines: List[str] = field(default_factory=lambda: ["# Inbox", ""])
    items: List[InboxItem] = field(default_factory=list)
    trailing_newline: bool = True
    # blank lines after the last item
    trailing_lines: List[str] = field(default_factory=list)


# -------------------- project --------------------
@dataclass
class Project:
    """A loaded project: config plus every parsed track file and the inbox.

    ``tracks`` maps track id to Track in config order. Archived tracks are not
    loaded.
    """

    root: Path
    frame_dir: Path
    config: "ProjectConfig"
    tracks: Dict[str, Track] = field(default_factory=dict)
    inbox: Optional[Inbox] = None

    def track_file(self, track_id: str) -> Optional[str]:
        tc = self.config.track(track_id)
        return tc.file if tc else None

