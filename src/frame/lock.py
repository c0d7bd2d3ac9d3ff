"""Advisory project lock (``frame/.lock``) serializing every writer."""
from __future__ import annotations

import fcntl
import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional

from .errors import IoFailureError, LockTimeoutError

logger = logging.getLogger(__name__)

LOCK_FILE = ".lock"
DEFAULT_TIMEOUT = 5.0
POLL_INTERVAL = 0.01


class FileLock:
    """Exclusive ``flock`` on the project's lock file.

    Held for the duration of a single write. The kernel drops the lock when
    the owning process dies, so a crashed writer never wedges the project.
    """

    def __init__(self, frame_dir: Path, timeout: float = DEFAULT_TIMEOUT,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.path = Path(frame_dir) / LOCK_FILE
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._fd: Optional[int] = None

    @classmethod
    def acquire(cls, frame_dir: Path, timeout: float = DEFAULT_TIMEOUT) -> "FileLock":
        lock = cls(frame_dir, timeout)
        lock.lock()
        return lock

    @property
    def held(self) -> bool:
        return self._fd is not None

    def lock(self) -> None:
        deadline = self._clock() + self.timeout
        while True:
            fd = self._open()
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                if self._clock() >= deadline:
                    logger.warning("lock timeout after %.1fs on %s", self.timeout, self.path)
                    raise LockTimeoutError(self.path) from None
                self._sleep(POLL_INTERVAL)
                continue
            if self._same_file(fd):
                break
            # the previous holder removed the file between our open and flock
            os.close(fd)
        self._fd = fd
        logger.debug("acquired %s", self.path)

    def _open(self) -> int:
        try:
            return os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise IoFailureError(self.path, exc) from exc

    def _same_file(self, fd: int) -> bool:
        try:
            return os.fstat(fd).st_ino == os.stat(self.path).st_ino
        except FileNotFoundError:
            return False

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        logger.debug("released %s", self.path)

    def __enter__(self) -> "FileLock":
        if not self.held:
            self.lock()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
