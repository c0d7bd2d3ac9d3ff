"""
Pytest configuration for frame tests.

Provides:
1. A fresh project (tracks ``core`` and ``web``) under ``tmp_path``
2. Access to the markdown fixtures in ``tests/fixtures``
3. A controllable clock for deferred-move tests
"""

from pathlib import Path

import pytest

from frame.models import Project
from frame.serializer import serialize_inbox, serialize_track
from frame.session import EditSession
from frame.storage import Storage, init_project

FIXTURES = Path(__file__).parent / "fixtures"


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def snapshot_text(project: Project) -> dict:
    """Serialized text of every loaded file, keyed by track id (and ``inbox``)."""
    out = {tid: serialize_track(track) for tid, track in project.tracks.items()}
    if project.inbox is not None:
        out["inbox"] = serialize_inbox(project.inbox)
    return out


# -----------------------------------------------------------------------------
# Project Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def fixture_text():
    """Read a file from tests/fixtures."""
    def read(name: str) -> str:
        return (FIXTURES / name).read_text(encoding="utf-8")
    return read


@pytest.fixture
def texts():
    return snapshot_text


@pytest.fixture
def project_root(tmp_path):
    """A project with two empty tracks: core (COR) and web (WEB)."""
    init_project(tmp_path, "demo", ["Core", "Web"])
    return tmp_path


@pytest.fixture
def frame_dir(project_root):
    return project_root / "frame"


@pytest.fixture
def storage(frame_dir):
    return Storage(frame_dir)


@pytest.fixture
def project(storage):
    return storage.load_project()


@pytest.fixture
def write_track(frame_dir):
    """Replace a track file's content on disk."""
    def write(track_id: str, text: str) -> Path:
        path = frame_dir / "tracks" / f"{track_id}.md"
        path.write_text(text, encoding="utf-8")
        return path
    return write


# -----------------------------------------------------------------------------
# Session Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session(storage, clock):
    """Session over the fresh project, driven by the fake clock."""
    return EditSession(storage.load_project(), storage, clock=clock)
