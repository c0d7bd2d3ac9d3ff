"""Error taxonomy shared by the ops layer, storage and the session.

Parse-time anomalies are not errors: the parser returns them alongside the
document (see ``parser.DroppedLine``).
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional


class FrameError(Exception):
    """Base class for every failure surfaced to a command or the session."""


class NotFoundError(FrameError):
    """A task, track or "after" target does not exist."""


class PreconditionFailedError(FrameError):
    """Missing required section, invalid destination or invalid argument."""


class IndexOutOfRangeError(FrameError):
    def __init__(self, index: int, length: int):
        super().__init__(f"inbox item index out of range: {index} (have {length})")
        self.index = index
        self.length = length


class LockTimeoutError(FrameError):
    def __init__(self, path: Path):
        super().__init__(f"could not acquire lock on {path}: another process is writing")
        self.path = path


class IoFailureError(FrameError):
    def __init__(self, path: Path, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"I/O failure on {path}{detail}")
        self.path = path
        self.cause = cause


class NotAProjectError(FrameError):
    def __init__(self, start: Optional[Path] = None):
        where = f" (searched upward from {start})" if start else ""
        super().__init__(f"not a frame project: no frame/project.toml found{where}")


class ConflictError(FrameError):
    """An open edit was abandoned because its file changed on disk."""


class ConfigError(FrameError):
    """project.toml could not be parsed."""
