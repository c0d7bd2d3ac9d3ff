"""Project clean pass: fill in missing IDs and dates, fix duplicates, report problems.

``ensure_ids_and_dates`` is the light version run automatically after loads;
``clean_project`` adds dependency/reference validation, suggestions and the
archiving of old Done tasks.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set

from .board import format_id, max_id_number, rekey_subtree, today_str
from .models import Metadata, Project, SectionKind, Task, TaskState, Track
from .serializer import serialize_tasks
from .storage import Storage

logger = logging.getLogger(__name__)

ARCHIVE_DIR = "archive"


@dataclass
class IdAssignment:
    track_id: str
    task_id: str
    title: str


@dataclass
class DateAssignment:
    track_id: str
    task_id: Optional[str]
    date: str


@dataclass
class DuplicateResolution:
    track_id: str
    original_id: str
    new_id: str
    title: str


@dataclass
class DanglingDep:
    track_id: str
    task_id: Optional[str]
    dep_id: str


@dataclass
class BrokenRef:
    track_id: str
    task_id: Optional[str]
    path: str
    kind: str  # "ref" or "spec"


@dataclass
class Suggestion:
    track_id: str
    task_id: Optional[str]
    message: str = "all subtasks done"


@dataclass
class CleanReport:
    ids_assigned: List[IdAssignment] = field(default_factory=list)
    dates_assigned: List[DateAssignment] = field(default_factory=list)
    duplicates_resolved: List[DuplicateResolution] = field(default_factory=list)
    archived: Dict[str, List[Task]] = field(default_factory=dict)
    dangling_deps: List[DanglingDep] = field(default_factory=list)
    broken_refs: List[BrokenRef] = field(default_factory=list)
    suggestions: List[Suggestion] = field(default_factory=list)

    @property
    def modified_tracks(self) -> Set[str]:
        touched = {a.track_id for a in self.ids_assigned}
        touched.update(a.track_id for a in self.dates_assigned)
        touched.update(d.track_id for d in self.duplicates_resolved)
        touched.update(tid for tid, tasks in self.archived.items() if tasks)
        return touched

    @property
    def has_issues(self) -> bool:
        return bool(self.dangling_deps or self.broken_refs)


# -------------------- ids and dates --------------------
def _assign_missing_ids(track: Track, track_id: str, prefix: str, report: CleanReport) -> None:
    counter = max_id_number(track.iter_tasks(), prefix)

    def assign_children(parent: Task) -> None:
        for i, sub in enumerate(parent.subtasks, start=1):
            if not sub.id:
                sub.id = f"{parent.id}.{i}"
                sub.mark_dirty()
                report.ids_assigned.append(IdAssignment(track_id, sub.id, sub.title))
            assign_children(sub)

    for section in track.sections():
        for task in section.tasks:
            if not task.id:
                counter += 1
                task.id = format_id(prefix, counter)
                task.mark_dirty()
                report.ids_assigned.append(IdAssignment(track_id, task.id, task.title))
            assign_children(task)


def _assign_missing_dates(track: Track, track_id: str, report: CleanReport) -> None:
    today = today_str()
    for task in track.iter_tasks():
        if task.meta("added") is None:
            task.metadata.insert(0, Metadata.added(today))
            task.mark_dirty()
            report.dates_assigned.append(DateAssignment(track_id, task.id, today))


def _ordered_tracks(project: Project) -> List[str]:
    return [tc.id for tc in project.config.tracks if tc.id in project.tracks]


def _resolve_duplicate_ids(project: Project, report: CleanReport) -> None:
    """The first occurrence (config track order, then file order) keeps its ID.

    Later occurrences get the next free ID under their own track's prefix.
    Dependencies are left alone: they still resolve to the keeper.
    """
    seen: Set[str] = set()
    for track_id in _ordered_tracks(project):
        track = project.tracks[track_id]
        prefix = project.config.prefix_for(track_id)
        for section in track.sections():
            for task in [t for top in section.tasks for t in top.walk()]:
                if not task.id:
                    continue
                if task.id not in seen:
                    seen.add(task.id)
                    continue
                if prefix is None or task.depth > 0:
                    logger.warning("duplicate id %s in %s left as is", task.id, track_id)
                    continue
                old_id = task.id
                new_id = format_id(prefix, max_id_number(track.iter_tasks(), prefix) + 1)
                rekey_subtree(task, new_id)
                seen.add(new_id)
                report.duplicates_resolved.append(DuplicateResolution(track_id, old_id, new_id, task.title))


def ensure_ids_and_dates(project: Project) -> CleanReport:
    report = CleanReport()
    for track_id in _ordered_tracks(project):
        track = project.tracks[track_id]
        prefix = project.config.prefix_for(track_id)
        if prefix:
            _assign_missing_ids(track, track_id, prefix, report)
        _assign_missing_dates(track, track_id, report)
    _resolve_duplicate_ids(project, report)
    return report


# -------------------- validation --------------------
def _all_ids(project: Project) -> Set[str]:
    return {t.id for track in project.tracks.values() for t in track.iter_tasks() if t.id}


def _validate(project: Project, report: CleanReport) -> None:
    ids = _all_ids(project)
    for track_id in _ordered_tracks(project):
        for task in project.tracks[track_id].iter_tasks():
            for meta in task.metadata:
                if meta.key == "dep":
                    report.dangling_deps.extend(
                        DanglingDep(track_id, task.id, dep) for dep in meta.value if dep not in ids)
                elif meta.key == "ref":
                    report.broken_refs.extend(
                        BrokenRef(track_id, task.id, ref, "ref") for ref in meta.value
                        if not (project.root / ref).exists())
                elif meta.key == "spec":
                    path = meta.value.split("#", 1)[0]
                    if path and not (project.root / path).exists():
                        report.broken_refs.append(BrokenRef(track_id, task.id, meta.value, "spec"))
            if (task.subtasks and task.state != TaskState.DONE
                    and all(s.state == TaskState.DONE for s in task.subtasks)):
                report.suggestions.append(Suggestion(track_id, task.id))


# -------------------- done archiving --------------------
def _archive_done(project: Project, report: CleanReport) -> None:
    """Trim Done sections whose serialized length exceeds the threshold.

    The newest ``done_retain`` tasks (top of Done) stay in the track.
    """
    settings = project.config.clean
    for track_id in _ordered_tracks(project):
        track = project.tracks[track_id]
        section = track.section(SectionKind.DONE)
        if section is None or len(serialize_tasks(section.tasks)) <= settings.done_threshold:
            continue
        keep = max(settings.done_retain, 0)
        moved = section.tasks[keep:]
        if not moved:
            continue
        del section.tasks[keep:]
        track.fix_section_spacing(section)
        report.archived[track_id] = moved


def clean_project(project: Project, archive: bool = True) -> CleanReport:
    report = ensure_ids_and_dates(project)
    _validate(project, report)
    if archive:
        _archive_done(project, report)
    return report


def archive_file(storage: Storage, track_id: str) -> Path:
    return storage.frame_dir / ARCHIVE_DIR / f"{track_id}.md"


def write_archives(storage: Storage, report: CleanReport) -> None:
    """Append archived Done tasks to ``archive/<track>.md``."""
    for track_id, tasks in report.archived.items():
        if not tasks:
            continue
        path = archive_file(storage, track_id)
        block = "\n".join(serialize_tasks(tasks))
        existing = storage.read_text(path) if path.exists() else ""
        if existing.strip():
            text = f"{existing.rstrip()}\n{block}\n"
        else:
            text = f"# Archive: {track_id}\n\n{block}\n"
        storage.write_text(path, text)


def run_clean(storage: Storage, project: Project, archive: bool = True) -> CleanReport:
    """Clean in memory, then write archives and every modified track under one lock."""
    report = clean_project(project, archive=archive)
    with storage.locked():
        write_archives(storage, report)
        for track_id in sorted(report.modified_tracks):
            storage.save_track(project, track_id)
    logger.info("clean: %d id(s), %d date(s), %d duplicate(s), %d archived",
                len(report.ids_assigned), len(report.dates_assigned),
                len(report.duplicates_resolved), sum(len(t) for t in report.archived.values()))
    return report


def auto_clean(storage: Storage, project: Project) -> Set[str]:
    """Light clean run after loads when ``clean.auto_clean`` is on; returns saved track ids."""
    if not project.config.clean.auto_clean:
        return set()
    report = ensure_ids_and_dates(project)
    touched = report.modified_tracks
    if touched:
        with storage.locked():
            for track_id in sorted(touched):
                storage.save_track(project, track_id)
    return touched
