"""Document model -> text.

Clean nodes re-emit their captured lines; dirty nodes are regenerated from
their canonical fields. Subtasks are always visited separately, so a dirty
child never forces its clean parent or siblings to be regenerated.
"""
from __future__ import annotations

from typing import List

from .models import Inbox, InboxItem, Literal, Metadata, Task, Track

INDENT_STEP = 2


def _join(lines: List[str], trailing_newline: bool) -> str:
    text = "\n".join(lines)
    if trailing_newline:
        text += "\n"
    return text


def format_task_line(task: Task, indent: int) -> str:
    parts = [f"{' ' * indent}- [{task.state.checkbox_char}]"]
    if task.id:
        parts.append(f"`{task.id}`")
    if task.title:
        parts.append(task.title)
    parts.extend(f"#{tag}" for tag in task.tags)
    return " ".join(parts)


def format_metadata(meta: Metadata, indent: int) -> List[str]:
    pad = " " * indent
    if isinstance(meta.value, list):
        return [f"{pad}- {meta.key}: {', '.join(meta.value)}".rstrip()]
    if meta.key == "note" and "\n" in meta.value:
        block_pad = " " * (indent + INDENT_STEP)
        out = [f"{pad}- note:"]
        out.extend(f"{block_pad}{line}" if line else "" for line in meta.value.split("\n"))
        return out
    return [f"{pad}- {meta.key}: {meta.value}".rstrip()]


def serialize_task(task: Task, indent: int, out: List[str]) -> None:
    if task.is_dirty:
        out.append(format_task_line(task, indent))
        for meta in task.metadata:
            out.extend(format_metadata(meta, indent + INDENT_STEP))
        out.extend(task.extra_lines)
    else:
        out.extend(task.source.lines)
    for sub in task.subtasks:
        serialize_task(sub, indent + INDENT_STEP, out)


def serialize_tasks(tasks: List[Task], indent: int = 0) -> List[str]:
    out: List[str] = []
    for task in tasks:
        serialize_task(task, indent, out)
    return out


def serialize_track(track: Track) -> str:
    out: List[str] = []
    for node in track.nodes:
        if isinstance(node, Literal):
            out.extend(node.lines)
            continue
        out.extend(node.header_lines)
        out.extend(serialize_tasks(node.tasks))
        out.extend(node.trailing_lines)
    return _join(out, track.trailing_newline)


def format_inbox_item(item: InboxItem) -> List[str]:
    title = item.title
    if item.tags:
        title = " ".join([title] + [f"#{tag}" for tag in item.tags]) if title else " ".join(f"#{t}" for t in item.tags)
    out = [f"- {title}"]
    if item.body:
        out.extend(f"  {line}" if line else "" for line in item.body.split("\n"))
    return out


def serialize_inbox(inbox: Inbox) -> str:
    out: List[str] = list(inbox.header_lines)
    last = len(inbox.items) - 1
    for i, item in enumerate(inbox.items):
        if not item.is_dirty:
            out.extend(item.source.lines)
            if i != last:
                out.extend(item.separator_lines)
            continue
        if out and out[-1].strip():
            out.append("")
        out.extend(format_inbox_item(item))
        if i != last:
            out.append("")
    if inbox.items:
        out.extend(inbox.trailing_lines)
    return _join(out, inbox.trailing_newline)
