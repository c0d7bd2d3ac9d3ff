"""Text -> document model for track and inbox files.

Single line-oriented pass with explicit indentation tracking. The parser never
fails: structure it does not recognise stays verbatim (literal blocks, or the
captured lines of the nearest task), and the few lines that cannot be
attributed anywhere are returned as ``DroppedLine`` records next to the
document.
"""
from __future__ import annotations

import logging
from typing import List, NamedTuple, Optional, Tuple

from .models import (
    Clean,
    Inbox,
    InboxItem,
    Literal,
    METADATA_KEYS,
    Metadata,
    Section,
    SectionKind,
    Task,
    TaskState,
    Track,
    TrackNode,
)

logger = logging.getLogger(__name__)

INDENT_STEP = 2


class DroppedLine(NamedTuple):
    line_number: int  # 1-based
    text: str


class ParseResult(NamedTuple):
    document: object
    dropped: List[DroppedLine]


# -------------------- line helpers --------------------
def split_lines(text: str) -> Tuple[List[str], bool]:
    """Split into lines, reporting whether the text ended with a newline."""
    trailing_newline = text.endswith("\n")
    body = text[:-1] if trailing_newline else text
    if not body and not trailing_newline:
        return [], False
    return body.split("\n"), trailing_newline


def count_indent(line: str) -> int:
    return len(line) - len(line.lstrip(" "))


def is_blank(line: str) -> bool:
    return not line.strip()


def task_indent(line: str) -> Optional[int]:
    """Indentation of a checkbox line (``- [c]``), None for any other line."""
    indent = count_indent(line)
    content = line[indent:]
    if content.startswith("- [") and len(content) >= 5 and content[4] == "]":
        return indent
    return None


def has_continuation_at_indent(lines: List[str], start: int, min_indent: int) -> bool:
    """True when the next non-blank line from ``start`` is indented >= min_indent."""
    for line in lines[start:]:
        if is_blank(line):
            continue
        return count_indent(line) >= min_indent
    return False


def parse_title_and_tags(text: str) -> Tuple[str, List[str]]:
    """Split trailing ``#tag`` words off a title."""
    remaining = text.rstrip()
    tags: List[str] = []
    while remaining:
        head, _, last = remaining.rpartition(" ")
        if last.startswith("#") and len(last) > 1 and "#" not in last[1:]:
            tags.append(last[1:])
            remaining = head.rstrip()
            continue
        break
    tags.reverse()
    return remaining, tags


# -------------------- tasks --------------------
def _parse_task_line(line: str, indent: int) -> Tuple[TaskState, Optional[str], str, List[str]]:
    content = line[indent:]
    state = TaskState.from_char(content[3]) or TaskState.TODO
    rest = content[5:]
    if rest.startswith(" "):
        rest = rest[1:]
    task_id = None
    if rest.startswith("`"):
        end = rest.find("`", 1)
        if end != -1:
            task_id = rest[1:end]
            rest = rest[end + 1:]
            if rest.startswith(" "):
                rest = rest[1:]
    title, tags = parse_title_and_tags(rest)
    return state, task_id, title, tags


def _is_metadata_line(line: str, indent: int) -> bool:
    if count_indent(line) != indent:
        return False
    content = line[indent:]
    if not content.startswith("- "):
        return False
    key, sep, _ = content[2:].partition(":")
    return bool(sep) and key.strip() in METADATA_KEYS


def _split_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _parse_note_block(lines: List[str], start: int, block_indent: int) -> Tuple[str, int]:
    note_lines: List[str] = []
    idx = start
    in_fence = False
    while idx < len(lines):
        line = lines[idx]
        if is_blank(line):
            if in_fence or has_continuation_at_indent(lines, idx + 1, block_indent):
                note_lines.append("")
                idx += 1
                continue
            break
        if count_indent(line) < block_indent:
            break
        stripped = line[block_indent:]
        if stripped.lstrip().startswith("```"):
            in_fence = not in_fence
        note_lines.append(stripped)
        idx += 1
    while note_lines and note_lines[-1] == "":
        note_lines.pop()
    return "\n".join(note_lines), idx


def _parse_metadata(lines: List[str], idx: int, indent: int) -> Tuple[Metadata, int]:
    content = lines[idx][indent + 2:]
    key, _, value = content.partition(":")
    key = key.strip()
    value = value.strip()
    if key in ("dep", "ref"):
        return Metadata(key, _split_list(value)), idx + 1
    if key == "note" and not value:
        text, next_idx = _parse_note_block(lines, idx + 1, indent + INDENT_STEP)
        return Metadata.note(text), next_idx
    return Metadata(key, value), idx + 1


class _TaskParser:
    """Parses nested task lists out of a shared line buffer."""

    def __init__(self, lines: List[str], dropped: List[DroppedLine]):
        self.lines = lines
        self.dropped = dropped

    def parse_tasks(self, start: int, indent: int, depth: int) -> Tuple[List[Task], int]:
        lines = self.lines
        tasks: List[Task] = []
        idx = start
        while idx < len(lines):
            line = lines[idx]
            ti = task_indent(line)
            if ti is not None:
                if ti == indent:
                    task, idx = self._parse_single(idx, indent, depth)
                    tasks.append(task)
                    continue
                if ti < indent:
                    break
                self._keep_stray(tasks, idx)
                idx += 1
                continue
            if (is_blank(line) or count_indent(line) > indent) and self._more_tasks_at(idx + 1, indent):
                self._keep_stray(tasks, idx)
                idx += 1
                continue
            break
        return tasks, idx

    def _parse_single(self, start: int, indent: int, depth: int) -> Tuple[Task, int]:
        lines = self.lines
        state, task_id, title, tags = _parse_task_line(lines[start], indent)
        task = Task(state, task_id, title, tags, depth=depth)
        meta_indent = indent + INDENT_STEP
        idx = start + 1
        while idx < len(lines):
            line = lines[idx]
            ti = task_indent(line)
            if ti is not None and ti <= meta_indent:
                break
            if _is_metadata_line(line, meta_indent):
                meta, idx = _parse_metadata(lines, idx, meta_indent)
                task.metadata.append(meta)
                continue
            if not is_blank(line) and count_indent(line) > indent:
                # unrecognised deeper content travels with the task
                task.extra_lines.append(line)
                idx += 1
                continue
            if is_blank(line):
                peek = idx + 1
                while peek < len(lines) and is_blank(lines[peek]):
                    peek += 1
                if peek < len(lines) and (
                    _is_metadata_line(lines[peek], meta_indent) or task_indent(lines[peek]) == meta_indent
                ):
                    idx += 1
                    continue
            break
        task.source = Clean(start, idx, tuple(lines[start:idx]))
        if idx < len(lines) and task_indent(lines[idx]) == meta_indent:
            task.subtasks, idx = self.parse_tasks(idx, meta_indent, depth + 1)
        return task, idx

    def _more_tasks_at(self, start: int, indent: int) -> bool:
        for line in self.lines[start:]:
            if is_blank(line) or count_indent(line) > indent:
                continue
            return task_indent(line) == indent
        return False

    def _keep_stray(self, tasks: List[Task], idx: int) -> None:
        """Attach a stray line to the last task emitted before it, else drop it."""
        line = self.lines[idx]
        if tasks:
            leaf = tasks[-1]
            while leaf.subtasks:
                leaf = leaf.subtasks[-1]
            if not leaf.is_dirty:
                leaf.source = leaf.source.extended(line)
                leaf.extra_lines.append(line)
                return
        if not is_blank(line):
            logger.debug("dropping unattributable line %d: %r", idx + 1, line)
            self.dropped.append(DroppedLine(idx + 1, line))


def parse_tasks(lines: List[str], start: int = 0, indent: int = 0, depth: int = 0) -> Tuple[List[Task], int]:
    """Parse a task list at ``indent`` starting at ``start``; returns (tasks, next index)."""
    return _TaskParser(lines, []).parse_tasks(start, indent, depth)


# -------------------- track --------------------
def parse_track(text: str) -> ParseResult:
    """Parse a track file into ``ParseResult(Track, dropped_lines)``."""
    lines, trailing_newline = split_lines(text)
    dropped: List[DroppedLine] = []
    parser = _TaskParser(lines, dropped)
    track = Track(trailing_newline=trailing_newline)
    nodes: List[TrackNode] = []
    literal: List[str] = []
    seen_kinds = set()

    def flush() -> None:
        if literal:
            nodes.append(Literal(list(literal)))
            literal.clear()

    idx = 0
    while idx < len(lines):
        line = lines[idx]
        stripped = line.strip()
        if stripped.startswith("# ") and not track.title:
            track.title = stripped[2:].strip()
        elif stripped.startswith("> ") and track.description is None:
            track.description = stripped[2:].strip()
        elif stripped.startswith("## "):
            kind = SectionKind.from_header_name(stripped[3:])
            if kind is not None and kind not in seen_kinds:
                seen_kinds.add(kind)
                flush()
                header = [line]
                idx += 1
                while idx < len(lines) and is_blank(lines[idx]):
                    header.append(lines[idx])
                    idx += 1
                tasks, idx = parser.parse_tasks(idx, 0, 0)
                trailing: List[str] = []
                while idx < len(lines) and is_blank(lines[idx]):
                    trailing.append(lines[idx])
                    idx += 1
                nodes.append(Section(kind, header, tasks, trailing))
                continue
            if kind is not None:
                logger.debug("duplicate %s section at line %d kept as literal text", kind.name, idx + 1)
        literal.append(line)
        idx += 1
    flush()
    track.nodes = nodes
    return ParseResult(track, dropped)


# -------------------- inbox --------------------
def _is_tag_only_line(text: str) -> bool:
    words = text.split()
    return bool(words) and all(w.startswith("#") and len(w) > 1 for w in words)


def _is_item_start(line: str) -> bool:
    return not line.startswith(" ") and line.strip().startswith("- ")


def parse_inbox(text: str) -> ParseResult:
    """Parse the inbox file into ``ParseResult(Inbox, dropped_lines)``."""
    lines, trailing_newline = split_lines(text)
    dropped: List[DroppedLine] = []
    header: List[str] = []
    idx = 0
    while idx < len(lines) and not lines[idx].strip().startswith("- "):
        header.append(lines[idx])
        idx += 1

    items: List[InboxItem] = []
    trailing_lines: List[str] = []
    while idx < len(lines):
        line = lines[idx]
        stripped = line.strip()
        if not stripped.startswith("- "):
            if stripped:
                logger.debug("dropping unattributable inbox line %d: %r", idx + 1, line)
                dropped.append(DroppedLine(idx + 1, line))
            idx += 1
            continue
        start = idx
        title, tags = parse_title_and_tags(stripped[2:])
        idx += 1
        while idx < len(lines) and _is_tag_only_line(lines[idx].strip()) and not _is_item_start(lines[idx]):
            tags.extend(w[1:] for w in lines[idx].split())
            idx += 1

        body: List[str] = []
        in_fence = False
        while idx < len(lines):
            body_line = lines[idx]
            body_stripped = body_line.strip()
            if body_stripped.startswith("```"):
                in_fence = not in_fence
            if not in_fence:
                if not body_stripped:
                    if has_continuation_at_indent(lines, idx + 1, 1):
                        body.append("")
                        idx += 1
                        continue
                    break
                if _is_item_start(body_line):
                    break
            body.append(body_line[2:] if body_line.startswith("  ") else body_line.lstrip())
            idx += 1
        end = idx
        while idx < len(lines) and is_blank(lines[idx]):
            idx += 1
        while body and body[-1] == "":
            body.pop()

        item = InboxItem(title, tags, "\n".join(body) if body else None)
        item.source = Clean(start, end, tuple(lines[start:end]))
        if idx < len(lines):
            item.separator_lines = lines[end:idx]
        else:
            # blank lines after the last item belong to the file
            trailing_lines = lines[end:idx]
        items.append(item)

    return ParseResult(Inbox(header, items, trailing_newline, trailing_lines), dropped)
