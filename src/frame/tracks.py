"""Track lifecycle: create, shelve/activate, archive, delete and rename.

These operations touch the config and track files on disk as well as the
loaded model, so they go through ``Storage`` (and its lock) directly.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from . import recovery
from .board import Board, PrefixRenameImpact
from .config import TrackConfig
from .errors import NotFoundError, PreconditionFailedError
from .models import Literal, Project, Track
from .parser import parse_track
from .serializer import serialize_track
from .storage import TRACKS_DIR, Storage, new_track_text

logger = logging.getLogger(__name__)

TRACK_ID_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


def generate_prefix(track_id: str, existing: Iterable[str]) -> str:
    """Three-letter uppercase prefix from the last segment of ``track_id``.

    On collision, characters from earlier segments are prepended until the
    prefix is unique.
    """
    existing = set(existing)
    segments = track_id.split("-")
    last = segments[-1]
    base = last[:3].upper()
    if base not in existing:
        return base
    earlier = "".join(segments[:-1])
    for i in range(1, len(earlier) + 1):
        candidate = (earlier[:i] + last)[:3].upper()
        if candidate not in existing:
            return candidate
    return track_id.replace("-", "")[:3].upper()


@dataclass
class TrackStats:
    todo: int = 0
    active: int = 0
    blocked: int = 0
    done: int = 0
    parked: int = 0


def task_counts(track: Track) -> TrackStats:
    stats = TrackStats()
    for task in track.iter_tasks():
        name = task.state.name.lower()
        setattr(stats, name, getattr(stats, name) + 1)
    return stats


@dataclass
class RemovedTrack:
    """Everything needed to put an archived or deleted track back."""

    config: TrackConfig
    index: int
    prefix: Optional[str]
    text: str


class TrackManager:
    def __init__(self, project: Project, storage: Storage):
        self.project = project
        self.storage = storage

    @property
    def config(self):
        return self.project.config

    def _require(self, track_id: str) -> TrackConfig:
        tc = self.config.track(track_id)
        if tc is None:
            raise NotFoundError(f"track {track_id} not found")
        return tc

    def _validate_new_id(self, track_id: str) -> None:
        if not TRACK_ID_RE.match(track_id):
            raise PreconditionFailedError(
                f"invalid track id {track_id!r}: use lowercase letters, digits and hyphens")
        if self.config.track(track_id) is not None:
            raise PreconditionFailedError(f"track {track_id} already exists")

    # -------------------- create --------------------
    def new_track(self, track_id: str, name: str) -> Track:
        self._validate_new_id(track_id)
        tc = TrackConfig(track_id, name, "active", f"{TRACKS_DIR}/{track_id}.md")
        path = self.storage.track_path(tc)
        if path.exists():
            raise PreconditionFailedError(f"{path} already exists")
        text = new_track_text(name)
        prefix = generate_prefix(track_id, self.config.prefixes.values())
        with self.storage.locked():
            self.storage.write_text(path, text)
            self.config.add_track(tc)
            self.config.set_prefix(track_id, prefix)
            self.storage.save_config(self.config)
        track = parse_track(text).document
        self.project.tracks[track_id] = track
        logger.info("created track %s (prefix %s)", track_id, prefix)
        return track

    # -------------------- state --------------------
    def shelve(self, track_id: str) -> None:
        tc = self._require(track_id)
        if tc.state == "archived":
            raise PreconditionFailedError("cannot shelve an archived track")
        self.config.set_track_state(track_id, "shelved")
        self.storage.save_config(self.config)

    def activate(self, track_id: str) -> None:
        tc = self._require(track_id)
        if tc.state == "archived":
            raise PreconditionFailedError("unarchive the track before activating it")
        self.config.set_track_state(track_id, "active")
        self.storage.save_config(self.config)

    # -------------------- archive --------------------
    def archive(self, track_id: str) -> RemovedTrack:
        tc = self._require(track_id)
        if tc.state == "archived":
            raise PreconditionFailedError(f"track {track_id} is already archived")
        src = self.storage.track_path(tc)
        record = RemovedTrack(tc, self.config.track_index(track_id),
                              self.config.prefix_for(track_id), self._current_text(track_id, src))
        with self.storage.locked():
            self.storage.write_text(self.storage.archive_path(track_id), record.text)
            self.storage.remove_file(src)
            self.config.set_track_state(track_id, "archived")
            self.storage.save_config(self.config)
        self.project.tracks.pop(track_id, None)
        logger.info("archived track %s", track_id)
        return record

    def unarchive(self, track_id: str, state: str = "active") -> Track:
        tc = self._require(track_id)
        if tc.state != "archived":
            raise PreconditionFailedError(f"track {track_id} is not archived")
        src = self.storage.archive_path(track_id)
        dst = self.storage.track_path(tc)
        if not src.exists():
            raise NotFoundError(f"archived file {src} not found")
        with self.storage.locked():
            self.storage.move_file(src, dst)
            self.config.set_track_state(track_id, state)
            self.storage.save_config(self.config)
        track = self.storage.load_track(tc)
        self._insert_in_config_order(track_id, track)
        return track

    # -------------------- delete --------------------
    def delete(self, track_id: str) -> RemovedTrack:
        tc = self._require(track_id)
        path = self.storage.track_path(tc) if tc.state != "archived" else self.storage.archive_path(track_id)
        text = self._current_text(track_id, path)
        record = RemovedTrack(tc, self.config.track_index(track_id), self.config.prefix_for(track_id), text)
        with self.storage.locked():
            self.config.remove_track(track_id)
            self.config.remove_prefix(track_id)
            self.storage.save_config(self.config)
            self.storage.remove_file(path)
        recovery.log_recovery(
            self.storage.frame_dir,
            recovery.Category.DELETE,
            f"track {track_id} deleted",
            [("track", track_id), ("file", tc.file)],
            text,
        )
        self.project.tracks.pop(track_id, None)
        logger.info("deleted track %s", track_id)
        return record

    def restore(self, record: RemovedTrack) -> Track:
        """Recreate a deleted track from its record."""
        tc = record.config
        self._validate_new_id(tc.id)
        with self.storage.locked():
            self.storage.write_text(self.storage.track_path(tc), record.text)
            self.config.add_track(TrackConfig(tc.id, tc.name, "active" if tc.state == "archived" else tc.state,
                                              tc.file), record.index)
            if record.prefix:
                self.config.set_prefix(tc.id, record.prefix)
            self.storage.save_config(self.config)
        track = parse_track(record.text).document
        self._insert_in_config_order(tc.id, track)
        return track

    # -------------------- rename --------------------
    def rename_name(self, track_id: str, name: str) -> None:
        """Change the display name in config and the track's ``# Title`` line."""
        self._require(track_id)
        track = self.project.tracks.get(track_id)
        with self.storage.locked():
            self.config.set_track_name(track_id, name)
            self.storage.save_config(self.config)
            if track is not None:
                _retitle(track, name)
                self.storage.save_track(self.project, track_id)

    def rename_id(self, old_id: str, new_id: str) -> None:
        """Change a track's id: config entry, file path and prefix key."""
        tc = self._require(old_id)
        if tc.state == "archived":
            raise PreconditionFailedError("cannot rename an archived track")
        self._validate_new_id(new_id)
        src = self.storage.track_path(tc)
        dst = self.storage.frame_dir / TRACKS_DIR / f"{new_id}.md"
        if dst.exists():
            raise PreconditionFailedError(f"{dst} already exists")
        with self.storage.locked():
            if src.exists():
                self.storage.move_file(src, dst)
            self.config.set_track_id(old_id, new_id)
            self.config.rename_prefix_key(old_id, new_id)
            self.storage.save_config(self.config)
        tracks: Dict[str, Track] = {}
        for tid, track in self.project.tracks.items():
            tracks[new_id if tid == old_id else tid] = track
        self.project.tracks = tracks
        logger.info("renamed track %s -> %s", old_id, new_id)

    def prefix_impact(self, track_id: str, new_prefix: str) -> PrefixRenameImpact:
        return Board(self.project).prefix_rename_impact(track_id, new_prefix.upper())

    def rename_prefix(self, track_id: str, new_prefix: str) -> PrefixRenameImpact:
        """Rename the ID prefix everywhere and write every affected file."""
        impact = Board(self.project).rename_prefix(track_id, new_prefix.upper())
        with self.storage.locked():
            for tid in impact.affected_tracks:
                self.storage.save_track(self.project, tid)
            self.storage.save_config(self.config)
        return impact

    # -------------------- helpers --------------------
    def _current_text(self, track_id: str, path) -> str:
        track = self.project.tracks.get(track_id)
        if track is not None:
            return serialize_track(track)
        return self.storage.read_text(path) if path.exists() else ""

    def _insert_in_config_order(self, track_id: str, track: Track) -> None:
        self.project.tracks[track_id] = track
        order = [tc.id for tc in self.config.tracks]
        self.project.tracks = {tid: self.project.tracks[tid] for tid in order if tid in self.project.tracks}


def _retitle(track: Track, name: str) -> None:
    track.title = name
    for node in track.nodes:
        if isinstance(node, Literal):
            for i, line in enumerate(node.lines):
                if line.strip().startswith("# "):
                    node.lines[i] = f"# {name}"
                    return
    track.nodes.insert(0, Literal([f"# {name}", ""]))

