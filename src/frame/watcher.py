"""Background file watcher feeding a non-blocking event queue.

Polls modification time and size of the project's markdown and toml files
from a daemon thread. The session only ever drains what is already queued.
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.25
WATCHED_SUFFIXES = (".md", ".toml")
IGNORED_NAMES = {".lock", ".state.json", ".recovery.log"}


@dataclass
class FileEvent:
    paths: List[Path]


def snapshot(frame_dir: Path) -> Dict[Path, Tuple[int, int]]:
    """``{path: (mtime_ns, size)}`` for every watched file under ``frame_dir``."""
    out: Dict[Path, Tuple[int, int]] = {}
    for path in Path(frame_dir).rglob("*"):
        if path.name in IGNORED_NAMES or path.suffix not in WATCHED_SUFFIXES:
            continue
        try:
            st = path.stat()
        except FileNotFoundError:
            continue
        out[path] = (st.st_mtime_ns, st.st_size)
    return out


def diff_snapshots(before: Dict[Path, Tuple[int, int]], after: Dict[Path, Tuple[int, int]]) -> List[Path]:
    changed = [p for p, sig in after.items() if before.get(p) != sig]
    changed.extend(p for p in before if p not in after)
    return sorted(changed)


class FileWatcher:
    def __init__(self, frame_dir: Path, interval: float = POLL_INTERVAL):
        self.frame_dir = Path(frame_dir)
        self.interval = interval
        self.events: "queue.Queue[FileEvent]" = queue.Queue()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last = snapshot(self.frame_dir)

    def start(self) -> "FileWatcher":
        self._thread = threading.Thread(target=self._run, name="frame-watcher", daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval * 4)
            self._thread = None

    def check(self) -> Optional[FileEvent]:
        """One polling step; queues and returns an event when files changed."""
        current = snapshot(self.frame_dir)
        changed = diff_snapshots(self._last, current)
        self._last = current
        if not changed:
            return None
        event = FileEvent(changed)
        logger.debug("file change: %s", [str(p) for p in changed])
        self.events.put(event)
        return event

    def poll(self) -> List[FileEvent]:
        """Drain whatever is queued right now without blocking."""
        out: List[FileEvent] = []
        while True:
            try:
                out.append(self.events.get_nowait())
            except queue.Empty:
                return out

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.check()
            except OSError as exc:
                logger.warning("watcher poll failed: %s", exc)
