"""Plain-text rendering of tracks, the inbox and search results.

Everything returns lists of lines (ANSI-colored when enabled) so the REPL and
the one-shot commands can print them and tests can inspect them.
"""
from __future__ import annotations

import re
import shutil
from typing import Iterable, List, Mapping, Optional, Set

from .clean import CleanReport
from .models import Inbox, SectionKind, Task, TaskState, Track
from .recovery import RecoveryEntry
from .search import InboxHit, SearchHit
from .theme import (
    BOLD, DIM, EMPTY_COLOR, HEADER_COLOR, ID_COLOR, REVERSE, STATE_COLOR, color, tag_color,
)
from .tracks import task_counts

ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")
MIN_WIDTH = 40
STATE_LABELS = {
    TaskState.TODO: "todo",
    TaskState.ACTIVE: "active",
    TaskState.BLOCKED: "blocked",
    TaskState.DONE: "done",
    TaskState.PARKED: "parked",
}


def visible_len(s: str) -> int:
    return len(ANSI_RE.sub('', s))


def terminal_width() -> int:
    return max(MIN_WIDTH, shutil.get_terminal_size((100, 30)).columns)


def wrap_words(text: str, first_limit: int, other_limit: int) -> List[str]:
    """Greedy word wrap; an overlong word gets a line of its own."""
    lines: List[str] = []
    current = ''
    for word in text.split():
        limit = first_limit if not lines else other_limit
        candidate = word if not current else current + ' ' + word
        if len(candidate) <= max(1, limit) or not current:
            current = candidate
        else:
            lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines or ['']


def task_lines(task: Task, width: int, tag_colors: Optional[Mapping[str, str]] = None,
               expanded: Optional[Set[str]] = None, selected: Optional[str] = None,
               show_meta: bool = False) -> List[str]:
    """The task's own row(s), then its subtasks when expanded (or always when ``expanded`` is None)."""
    indent = '  ' * task.depth
    box = f"[{task.state.checkbox_char}]"
    ident = f"{task.id} " if task.id else ''
    head = f"{indent}{box} {ident}"
    hang = ' ' * len(head)
    tags = ' '.join(f"#{t}" for t in task.tags)
    body = task.title if task.title else '<untitled>'
    folded = task.subtasks and expanded is not None and task.id not in expanded
    if folded:
        body += f" (+{sum(1 for _ in task.walk()) - 1})"
    wrapped = wrap_words(f"{body} {tags}".strip(), width - len(head), width - len(hang))
    state_col = STATE_COLOR.get(task.state, '')
    out: List[str] = []
    for i, raw in enumerate(wrapped):
        words = [color(w, tag_color(w[1:], tag_colors)) if w.startswith('#') and w[1:] in task.tags
                 else color(w, state_col) for w in raw.split(' ')]
        line = ' '.join(words)
        if i == 0:
            lead = indent + color(box, state_col) + ' ' + (color(ident.rstrip(), ID_COLOR) + ' ' if ident else '')
            row = lead + line
            out.append(color(ANSI_RE.sub('', row), REVERSE) if task.id and task.id == selected else row)
        else:
            out.append(hang + line)
    if show_meta:
        for meta in task.metadata:
            value = ', '.join(meta.value) if isinstance(meta.value, list) else meta.value
            for j, part in enumerate(value.split('\n')):
                label = f"{meta.key}: " if j == 0 else ' ' * (len(meta.key) + 2)
                out.append(color(f"{hang}{label}{part}".rstrip(), DIM))
    if not folded:
        for sub in task.subtasks:
            out.extend(task_lines(sub, width, tag_colors, expanded, selected, show_meta))
    return out


def track_lines(track_id: str, track: Track, width: Optional[int] = None,
                tag_colors: Optional[Mapping[str, str]] = None,
                expanded: Optional[Set[str]] = None, selected: Optional[str] = None,
                sections: Iterable[SectionKind] = (SectionKind.BACKLOG, SectionKind.PARKED, SectionKind.DONE),
                show_meta: bool = False) -> List[str]:
    width = width or terminal_width()
    stats = task_counts(track)
    counts = ', '.join(f"{getattr(stats, STATE_LABELS[s])} {STATE_LABELS[s]}" for s in TaskState
                       if getattr(stats, STATE_LABELS[s]))
    out = [color(f"{track.title or track_id}", HEADER_COLOR) + color(f"  [{track_id}] {counts}", DIM)]
    if track.description:
        out.append(color(track.description, DIM))
    for kind in sections:
        section = track.section(kind)
        if section is None:
            continue
        out.append('')
        out.append(color(kind.header.lstrip('# ').upper(), HEADER_COLOR, BOLD))
        out.append(color('-' * min(width, 40), HEADER_COLOR))
        if not section.tasks:
            out.append(color('(empty)', EMPTY_COLOR))
        for task in section.tasks:
            out.extend(task_lines(task, width, tag_colors, expanded, selected, show_meta))
    return out


def task_detail_lines(track_id: str, task: Task, width: Optional[int] = None,
                      tag_colors: Optional[Mapping[str, str]] = None) -> List[str]:
    width = width or terminal_width()
    out = [color(f"{task.id or '(no id)'}", ID_COLOR) + color(f"  in {track_id}", DIM)
           + '  ' + color(STATE_LABELS[task.state], STATE_COLOR.get(task.state, ''))]
    out.extend(task_lines(task, width, tag_colors, show_meta=True))
    return out


def inbox_lines(inbox: Optional[Inbox], width: Optional[int] = None,
                tag_colors: Optional[Mapping[str, str]] = None) -> List[str]:
    width = width or terminal_width()
    out = [color('INBOX', HEADER_COLOR, BOLD), color('-' * min(width, 40), HEADER_COLOR)]
    if inbox is None or not inbox.items:
        out.append(color('(empty)', EMPTY_COLOR))
        return out
    for i, item in enumerate(inbox.items):
        head = f"{i:>3}. "
        tags = ' '.join(color(f"#{t}", tag_color(t, tag_colors)) for t in item.tags)
        wrapped = wrap_words(item.title, width - len(head), width - len(head))
        out.append(color(head, ID_COLOR) + wrapped[0] + (f" {tags}" if tags else ''))
        out.extend(' ' * len(head) + line for line in wrapped[1:])
        if item.body:
            out.extend(color(' ' * len(head) + line, DIM) for line in item.body.split('\n'))
    return out


def search_lines(hits: List[SearchHit], inbox_hits: List[InboxHit]) -> List[str]:
    out: List[str] = []
    for hit in hits:
        out.append(f"{color(hit.task_id or '-', ID_COLOR)} {color(hit.field.value, DIM)} "
                   f"{_highlight(hit.text, hit.spans)}  {color('[' + hit.track_id + ']', DIM)}")
    for hit in inbox_hits:
        out.append(f"{color(f'inbox {hit.index}', ID_COLOR)} {color(hit.field.value, DIM)} "
                   f"{_highlight(hit.text, hit.spans)}")
    if not out:
        out.append(color('no matches', EMPTY_COLOR))
    return out


def _highlight(text: str, spans) -> str:
    first_line = text.split('\n', 1)[0]
    pieces, last = [], 0
    for start, end in spans:
        if start >= len(first_line):
            break
        pieces.append(first_line[last:start])
        pieces.append(color(first_line[start:min(end, len(first_line))], BOLD, REVERSE))
        last = min(end, len(first_line))
    pieces.append(first_line[last:])
    return ''.join(pieces)


def clean_report_lines(report: CleanReport) -> List[str]:
    out: List[str] = []
    for a in report.ids_assigned:
        out.append(f"assigned {a.task_id} to {a.title!r} in {a.track_id}")
    if report.dates_assigned:
        out.append(f"added dates to {len(report.dates_assigned)} task(s)")
    for d in report.duplicates_resolved:
        out.append(f"duplicate {d.original_id} in {d.track_id} renumbered to {d.new_id}")
    for track_id, tasks in report.archived.items():
        out.append(f"archived {len(tasks)} done task(s) from {track_id}")
    for d in report.dangling_deps:
        out.append(f"{d.task_id}: dependency {d.dep_id} does not exist")
    for b in report.broken_refs:
        out.append(f"{b.task_id}: {b.kind} {b.path} not found")
    for s in report.suggestions:
        out.append(f"{s.task_id}: {s.message}, consider marking it done")
    return out or ["nothing to clean"]


def recovery_lines(entries: List[RecoveryEntry]) -> List[str]:
    out: List[str] = []
    for entry in entries:
        out.append(color(f"{entry.timestamp:%Y-%m-%d %H:%M:%S} {entry.category.value}: {entry.description}",
                         HEADER_COLOR))
        out.extend(f"  {k}: {v}" for k, v in entry.fields)
        if entry.body:
            out.extend(color(f"    {line}", DIM) for line in entry.body.split('\n'))
    return out or [color('recovery log is empty', EMPTY_COLOR)]
