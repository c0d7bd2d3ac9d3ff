"""Regex search over tasks and inbox items."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Pattern, Tuple

from .errors import PreconditionFailedError
from .models import Inbox, Project, Task

Span = Tuple[int, int]


class MatchField(Enum):
    ID = "id"
    TITLE = "title"
    TAG = "tag"
    NOTE = "note"
    DEP = "dep"
    REF = "ref"
    SPEC = "spec"
    BODY = "body"


@dataclass
class SearchHit:
    track_id: str
    task_id: Optional[str]
    field: MatchField
    text: str
    spans: List[Span] = field(default_factory=list)


@dataclass
class InboxHit:
    index: int
    field: MatchField
    text: str
    spans: List[Span] = field(default_factory=list)


def compile_pattern(pattern: str, ignore_case: Optional[bool] = None) -> Pattern:
    """Compile ``pattern``; case-insensitive unless it contains an uppercase letter."""
    if ignore_case is None:
        ignore_case = pattern == pattern.lower()
    try:
        return re.compile(pattern, re.IGNORECASE if ignore_case else 0)
    except re.error as exc:
        raise PreconditionFailedError(f"invalid search pattern {pattern!r}: {exc}") from exc


def _spans(regex: Pattern, text: str) -> List[Span]:
    return [m.span() for m in regex.finditer(text) if m.end() > m.start()]


def _task_fields(task: Task) -> Iterator[Tuple[MatchField, str]]:
    if task.id:
        yield MatchField.ID, task.id
    yield MatchField.TITLE, task.title
    for tag in task.tags:
        yield MatchField.TAG, tag
    for meta in task.metadata:
        if meta.key == "note":
            yield MatchField.NOTE, meta.value
        elif meta.key == "spec":
            yield MatchField.SPEC, meta.value
        elif meta.key in ("dep", "ref"):
            kind = MatchField.DEP if meta.key == "dep" else MatchField.REF
            for value in meta.value:
                yield kind, value


def search_tasks(project: Project, regex: Pattern, track_id: Optional[str] = None) -> List[SearchHit]:
    """Hits in every active track, or only in ``track_id`` whatever its state."""
    hits: List[SearchHit] = []
    for tid, track in project.tracks.items():
        if track_id is not None:
            if tid != track_id:
                continue
        else:
            tc = project.config.track(tid)
            if tc is None or tc.state != "active":
                continue
        for task in track.iter_tasks():
            for kind, text in _task_fields(task):
                spans = _spans(regex, text)
                if spans:
                    hits.append(SearchHit(tid, task.id, kind, text, spans))
    return hits


def search_inbox(inbox: Optional[Inbox], regex: Pattern) -> List[InboxHit]:
    if inbox is None:
        return []
    hits: List[InboxHit] = []
    for index, item in enumerate(inbox.items):
        candidates = [(MatchField.TITLE, item.title)]
        candidates.extend((MatchField.TAG, tag) for tag in item.tags)
        if item.body:
            candidates.append((MatchField.BODY, item.body))
        for kind, text in candidates:
            spans = _spans(regex, text)
            if spans:
                hits.append(InboxHit(index, kind, text, spans))
    return hits


def matching_task_ids(hits: List[SearchHit]) -> List[Tuple[str, str]]:
    """Distinct (track_id, task_id) pairs in hit order."""
    seen = []
    for hit in hits:
        key = (hit.track_id, hit.task_id)
        if hit.task_id and key not in seen:
            seen.append(key)
    return seen
