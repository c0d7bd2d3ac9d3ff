"""Append-only recovery log (``frame/.recovery.log``).

Holds content the tool could not save normally: dropped parse lines, failed
writes, abandoned edits and deleted tasks. Entries are markdown blocks::

    ## 2026-01-05T10:00:00Z — write: failed to write tracks/main.md

    path: tracks/main.md

    ```text
    <content>
    ```

    ---
"""
from __future__ import annotations

import fcntl
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

LOG_FILE = ".recovery.log"
MAX_LOG_SIZE = 1_048_576
PRUNE_AGE_DAYS = 30

FILE_HEADER = """\
<!-- frame recovery log - append-only error recovery data
     This file captures data that frame couldn't save normally.
     If something went missing, check here.
     View with: frame recovery
     Prune old entries: frame recovery --prune
     Safe to delete if empty or stale. -->

---
"""


class Category(Enum):
    PARSER = "parser"
    CONFLICT = "conflict"
    WRITE = "write"
    DELETE = "delete"


@dataclass
class RecoveryEntry:
    category: Category
    description: str
    fields: List[Tuple[str, str]] = field(default_factory=list)
    body: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_markdown(self) -> str:
        stamp = self.timestamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        out = [f"## {stamp} — {self.category.value}: {self.description}", ""]
        out.extend(f"{key}: {value}" for key, value in self.fields)
        if self.body:
            out.append("")
            out.append("```text")
            out.append(self.body[:-1] if self.body.endswith("\n") else self.body)
            out.append("```")
        out.append("")
        out.append("---")
        return "\n".join(out) + "\n"


def log_path(frame_dir: Path) -> Path:
    return Path(frame_dir) / LOG_FILE


def log_entry(frame_dir: Path, entry: RecoveryEntry) -> None:
    """Append ``entry``. A failure here is reported as a warning, never raised."""
    path = log_path(frame_dir)
    try:
        if path.exists() and path.stat().st_size > MAX_LOG_SIZE:
            _try_trim(path)
        needs_header = not path.exists() or path.stat().st_size == 0
        with open(path, "a", encoding="utf-8") as f:
            if needs_header:
                f.write(FILE_HEADER)
            f.write(entry.to_markdown())
    except OSError as exc:
        logger.warning("could not write to recovery log %s: %s", path, exc)


def log_recovery(
    frame_dir: Path,
    category: Category,
    description: str,
    fields: Sequence[Tuple[str, str]] = (),
    body: str = "",
) -> None:
    log_entry(frame_dir, RecoveryEntry(category, description, list(fields), body))


def log_dropped_lines(frame_dir: Path, file_label: str, dropped) -> None:
    """Record lines the parser could not attribute to any structure."""
    if not dropped:
        return
    body = "\n".join(f"{d.line_number}: {d.text}" for d in dropped)
    log_recovery(
        frame_dir,
        Category.PARSER,
        f"{len(dropped)} unattributed line(s) in {file_label}",
        [("file", file_label)],
        body,
    )


def log_task_deletion(frame_dir: Path, task_id: str, track_id: str, source: str) -> None:
    log_recovery(
        frame_dir,
        Category.DELETE,
        f"task {task_id} deleted",
        [("task", task_id), ("track", track_id)],
        source,
    )


# -------------------- reading --------------------
def _parse_header(header: str) -> Optional[Tuple[datetime, Category, str]]:
    stamp, sep, rest = header.partition(" — ")
    if not sep:
        return None
    cat, sep, description = rest.partition(": ")
    if not sep:
        return None
    try:
        timestamp = datetime.strptime(stamp, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
        category = Category(cat)
    except ValueError:
        return None
    return timestamp, category, description


def parse_entries(content: str) -> List[RecoveryEntry]:
    """Parse log text into entries, oldest first."""
    entries: List[RecoveryEntry] = []
    lines = content.split("\n")
    idx = 0
    while idx < len(lines):
        line = lines[idx]
        idx += 1
        if not line.startswith("## "):
            continue
        parsed = _parse_header(line[3:])
        if parsed is None:
            continue
        timestamp, category, description = parsed
        fields: List[Tuple[str, str]] = []
        body: List[str] = []
        in_code = False
        while idx < len(lines):
            line = lines[idx]
            if in_code:
                idx += 1
                if line == "```":
                    in_code = False
                else:
                    body.append(line)
                continue
            if line == "---" or line.startswith("## "):
                if line == "---":
                    idx += 1
                break
            idx += 1
            if line.startswith("```"):
                in_code = True
            elif ": " in line:
                key, _, value = line.partition(": ")
                fields.append((key, value))
        entries.append(RecoveryEntry(category, description, fields, "\n".join(body), timestamp))
    return entries


def read_entries(frame_dir: Path, limit: Optional[int] = None,
                 since: Optional[datetime] = None) -> List[RecoveryEntry]:
    """Entries newest first, optionally limited to the ``limit`` most recent."""
    try:
        content = log_path(frame_dir).read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    entries = parse_entries(content)
    if since is not None:
        entries = [e for e in entries if e.timestamp >= since]
    if limit is not None:
        entries = entries[-limit:] if limit else []
    entries.reverse()
    return entries


# -------------------- pruning --------------------
def prune_text(content: str, cutoff: datetime) -> str:
    """Drop entries older than ``cutoff``, keeping the header and newer entries."""
    header_end = content.find("\n## ")
    head = content if header_end == -1 else content[:header_end + 1]
    kept = [e for e in parse_entries(content) if e.timestamp >= cutoff]
    return head + "".join(e.to_markdown() for e in kept)


def prune_entries(frame_dir: Path, days: int = PRUNE_AGE_DAYS, all_entries: bool = False,
                  now: Optional[datetime] = None) -> int:
    """Remove old entries (or every entry); returns how many were removed."""
    path = log_path(frame_dir)
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return 0
    before = len(parse_entries(content))
    if all_entries:
        path.write_text(FILE_HEADER, encoding="utf-8")
        return before
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    pruned = prune_text(content, cutoff)
    path.write_text(pruned, encoding="utf-8")
    return before - len(parse_entries(pruned))


def _try_trim(path: Path) -> None:
    with open(path, "r+", encoding="utf-8") as f:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            logger.debug("recovery log busy; skipping trim")
            return
        content = f.read()
        cutoff = datetime.now(timezone.utc) - timedelta(days=PRUNE_AGE_DAYS)
        trimmed = prune_text(content, cutoff)
        if len(trimmed) < len(content):
            f.seek(0)
            f.write(trimmed)
            f.truncate()
