"""Persistence helpers: project discovery, loading and atomic saves.

Every file is read whole, mutated in memory and written back with an atomic
replace. Saves take the project lock; a failed write is recorded in the
recovery log (with the content that could not be written) before the error
propagates.
"""
from __future__ import annotations

import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from . import recovery
from .config import CONFIG_FILE, ProjectConfig, TrackConfig
from .errors import IoFailureError, NotAProjectError
from .lock import DEFAULT_TIMEOUT, FileLock
from .models import Inbox, Project, Track
from .parser import parse_inbox, parse_track
from .serializer import serialize_inbox, serialize_track

logger = logging.getLogger(__name__)

FRAME_DIR = "frame"
INBOX_FILE = "inbox.md"
TRACKS_DIR = "tracks"
ARCHIVE_DIR = Path("archive") / "_tracks"
INBOX_TEMPLATE = "# Inbox\n"

Fingerprint = Tuple[int, int]


def new_track_text(name: str) -> str:
    return f"# {name}\n\n## Backlog\n\n## Done\n"


def atomic_write(path: Path, text: str) -> None:
    """Write ``text`` to a temp file beside ``path``, fsync, then replace."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def fingerprint(path: Path) -> Optional[Fingerprint]:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    return st.st_mtime_ns, st.st_size


def discover_project(start: Optional[Path] = None) -> Path:
    """Walk upward from ``start`` to the directory holding ``frame/project.toml``."""
    start = Path(start or Path.cwd()).resolve()
    for candidate in [start, *start.parents]:
        if (candidate / FRAME_DIR / CONFIG_FILE).is_file():
            return candidate
    raise NotAProjectError(start)


def init_project(root: Path, name: str, track_names=()) -> Path:
    """Create ``frame/`` under ``root`` with config, inbox and optional tracks."""
    from .tracks import generate_prefix

    frame_dir = Path(root) / FRAME_DIR
    if (frame_dir / CONFIG_FILE).exists():
        raise FileExistsError(f"{frame_dir / CONFIG_FILE} already exists")
    (frame_dir / TRACKS_DIR).mkdir(parents=True, exist_ok=True)
    config = ProjectConfig.new(name)
    taken = set()
    for track_name in track_names:
        track_id = slugify(track_name)
        config.add_track(TrackConfig(track_id, track_name))
        prefix = generate_prefix(track_id, taken)
        taken.add(prefix)
        config.set_prefix(track_id, prefix)
        atomic_write(frame_dir / TRACKS_DIR / f"{track_id}.md", new_track_text(track_name))
    atomic_write(frame_dir / CONFIG_FILE, config.dumps())
    atomic_write(frame_dir / INBOX_FILE, INBOX_TEMPLATE)
    logger.info("initialized project %r in %s", name, frame_dir)
    return frame_dir


def slugify(name: str) -> str:
    out = []
    for ch in name.strip().lower():
        if ch.isalnum():
            out.append(ch)
        elif out and out[-1] != "-":
            out.append("-")
    return "".join(out).strip("-")


class Storage:
    """File access for one project directory.

    Remembers the ``(mtime_ns, size)`` fingerprint of every file it loaded or
    saved, which lets a session tell its own writes from external edits.
    """

    def __init__(self, frame_dir: Path, lock_timeout: float = DEFAULT_TIMEOUT):
        self.frame_dir = Path(frame_dir)
        self.lock_timeout = lock_timeout
        self.fingerprints: Dict[Path, Optional[Fingerprint]] = {}
        self._lock: Optional[FileLock] = None
        self._lock_depth = 0

    @classmethod
    def discover(cls, start: Optional[Path] = None) -> "Storage":
        return cls(discover_project(start) / FRAME_DIR)

    # -------------------- locking --------------------
    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the project lock; nested use reuses the outer acquisition."""
        if self._lock_depth == 0:
            self._lock = FileLock.acquire(self.frame_dir, self.lock_timeout)
        self._lock_depth += 1
        try:
            yield
        finally:
            self._lock_depth -= 1
            if self._lock_depth == 0 and self._lock is not None:
                self._lock.release()
                self._lock = None

    # -------------------- paths --------------------
    def track_path(self, tc: TrackConfig) -> Path:
        return self.frame_dir / tc.file

    def archive_path(self, track_id: str) -> Path:
        return self.frame_dir / ARCHIVE_DIR / f"{track_id}.md"

    @property
    def inbox_path(self) -> Path:
        return self.frame_dir / INBOX_FILE

    @property
    def config_path(self) -> Path:
        return self.frame_dir / CONFIG_FILE

    def relative(self, path: Path) -> str:
        try:
            return str(Path(path).relative_to(self.frame_dir))
        except ValueError:
            return str(path)

    # -------------------- loading --------------------
    def read_text(self, path: Path) -> str:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise IoFailureError(path, exc) from exc
        self.fingerprints[Path(path)] = fingerprint(path)
        return text

    def load_config(self) -> ProjectConfig:
        return ProjectConfig.parse(self.read_text(self.config_path))

    def load_track_file(self, path: Path) -> Track:
        track, dropped = parse_track(self.read_text(path))
        if dropped:
            logger.warning("%d unattributed line(s) in %s", len(dropped), path)
            recovery.log_dropped_lines(self.frame_dir, self.relative(path), dropped)
        return track

    def load_track(self, tc: TrackConfig) -> Track:
        return self.load_track_file(self.track_path(tc))

    def load_inbox(self) -> Optional[Inbox]:
        if not self.inbox_path.exists():
            return None
        inbox, dropped = parse_inbox(self.read_text(self.inbox_path))
        if dropped:
            logger.warning("%d unattributed line(s) in %s", len(dropped), self.inbox_path)
            recovery.log_dropped_lines(self.frame_dir, INBOX_FILE, dropped)
        return inbox

    def load_project(self) -> Project:
        """Parse config, every non-archived track whose file exists, and the inbox."""
        config = self.load_config()
        project = Project(self.frame_dir.parent, self.frame_dir, config)
        for tc in config.tracks:
            if tc.state == "archived":
                continue
            path = self.track_path(tc)
            if not path.exists():
                logger.warning("track %s: file %s is missing", tc.id, path)
                continue
            project.tracks[tc.id] = self.load_track(tc)
        project.inbox = self.load_inbox()
        return project

    # -------------------- saving --------------------
    def write_text(self, path: Path, text: str, label: Optional[str] = None) -> None:
        """Atomically write under the lock; failures go to the recovery log first."""
        path = Path(path)
        with self.locked():
            try:
                atomic_write(path, text)
            except OSError as exc:
                label = label or self.relative(path)
                logger.error("failed to write %s: %s", path, exc)
                recovery.log_recovery(
                    self.frame_dir,
                    recovery.Category.WRITE,
                    f"failed to write {label}",
                    [("path", label), ("error", str(exc))],
                    text,
                )
                raise IoFailureError(path, exc) from exc
        self.fingerprints[path] = fingerprint(path)

    def save_track(self, project: Project, track_id: str) -> None:
        tc = project.config.track(track_id)
        if tc is None:
            raise KeyError(track_id)
        self.write_text(self.track_path(tc), serialize_track(project.tracks[track_id]))

    def save_inbox(self, project: Project) -> None:
        if project.inbox is not None:
            self.write_text(self.inbox_path, serialize_inbox(project.inbox))

    def save_config(self, config: ProjectConfig) -> None:
        self.write_text(self.config_path, config.dumps())

    def remove_file(self, path: Path) -> None:
        with self.locked():
            try:
                Path(path).unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise IoFailureError(path, exc) from exc
        self.fingerprints[Path(path)] = None

    def move_file(self, src: Path, dst: Path) -> None:
        with self.locked():
            try:
                Path(dst).parent.mkdir(parents=True, exist_ok=True)
                os.replace(src, dst)
            except OSError as exc:
                raise IoFailureError(src, exc) from exc
        self.fingerprints[Path(src)] = None
        self.fingerprints[Path(dst)] = fingerprint(dst)

    def is_external_change(self, path: Path) -> bool:
        """True when ``path`` differs from what this process last read or wrote."""
        path = Path(path)
        if path not in self.fingerprints:
            return True
        return fingerprint(path) != self.fingerprints[path]
