"""
Tests for the track lifecycle: create, shelve, archive, delete, rename.
"""

import pytest

from frame import recovery
from frame.board import Board
from frame.errors import NotFoundError, PreconditionFailedError
from frame.storage import Storage
from frame.tracks import TrackManager, generate_prefix, task_counts


@pytest.fixture
def manager(project, storage):
    return TrackManager(project, storage)


class TestGeneratePrefix:
    @pytest.mark.parametrize("track_id,existing,prefix", [
        ("core", [], "COR"),
        ("effects", ["COR"], "EFF"),
        ("api-core", ["COR"], "ACO"),
        ("ui", [], "UI"),
    ])
    def test_prefix(self, track_id, existing, prefix):
        assert generate_prefix(track_id, existing) == prefix


class TestCreate:
    def test_new_track(self, manager, project, frame_dir):
        manager.new_track("api-core", "API Core")
        assert (frame_dir / "tracks" / "api-core.md").read_text() == "# API Core\n\n## Backlog\n\n## Done\n"
        assert project.config.prefix_for("api-core") == "ACO"
        assert Board(project).add_task("api-core", "first") == "ACO-001"
        reloaded = Storage(frame_dir).load_project()
        assert list(reloaded.tracks) == ["core", "web", "api-core"]

    @pytest.mark.parametrize("track_id", ["core", "Bad Id", "-lead", ""])
    def test_rejected_ids(self, manager, track_id):
        with pytest.raises(PreconditionFailedError):
            manager.new_track(track_id, "x")


class TestStateChanges:
    def test_shelve_and_activate(self, manager, frame_dir):
        manager.shelve("web")
        assert Storage(frame_dir).load_config().track("web").state == "shelved"
        manager.activate("web")
        assert Storage(frame_dir).load_config().track("web").state == "active"

    def test_unknown_track(self, manager):
        with pytest.raises(NotFoundError):
            manager.shelve("nope")

    def test_archive_and_unarchive(self, manager, project, frame_dir):
        Board(project).add_task("web", "keep me")
        manager.archive("web")
        assert not (frame_dir / "tracks" / "web.md").exists()
        assert (frame_dir / "archive" / "_tracks" / "web.md").exists()
        assert "web" not in project.tracks
        with pytest.raises(PreconditionFailedError):
            manager.activate("web")

        manager.unarchive("web")
        assert list(project.tracks) == ["core", "web"]
        assert project.tracks["web"].backlog[0].title == "keep me"

    def test_unarchive_requires_archived(self, manager):
        with pytest.raises(PreconditionFailedError):
            manager.unarchive("web")


class TestDelete:
    def test_delete_logs_content(self, manager, project, frame_dir):
        Board(project).add_task("web", "gone soon")
        record = manager.delete("web")
        assert not (frame_dir / "tracks" / "web.md").exists()
        assert project.config.track("web") is None
        assert project.config.prefix_for("web") is None

        entry = recovery.read_entries(frame_dir)[0]
        assert entry.category == recovery.Category.DELETE
        assert "gone soon" in entry.body

        manager.restore(record)
        assert project.config.prefix_for("web") == "WEB"
        assert [t.id for t in project.config.tracks] == ["core", "web"]
        assert project.tracks["web"].backlog[0].title == "gone soon"


class TestRename:
    def test_rename_name(self, manager, project, frame_dir):
        manager.rename_name("core", "Kernel")
        assert project.config.track("core").name == "Kernel"
        assert (frame_dir / "tracks" / "core.md").read_text().startswith("# Kernel\n")

    def test_rename_id_moves_file(self, manager, project, frame_dir):
        manager.rename_id("core", "kernel")
        assert (frame_dir / "tracks" / "kernel.md").exists()
        assert not (frame_dir / "tracks" / "core.md").exists()
        assert list(project.tracks) == ["kernel", "web"]
        assert project.config.prefix_for("kernel") == "COR"

    def test_rename_prefix_writes_files(self, manager, project, frame_dir):
        board = Board(project)
        board.add_task("core", "a")
        board.add_task("web", "w")
        board.add_dep("web", "WEB-001", "COR-001")
        impact = manager.rename_prefix("core", "krn")
        assert impact.new_prefix == "KRN"
        assert "`KRN-001` a" in (frame_dir / "tracks" / "core.md").read_text()
        assert "dep: KRN-001" in (frame_dir / "tracks" / "web.md").read_text()
        assert Storage(frame_dir).load_config().prefix_for("core") == "KRN"


class TestCounts:
    def test_task_counts(self, project):
        board = Board(project)
        a = board.add_task("core", "a")
        board.add_subtask("core", a, "child")
        board.toggle_blocked("core", board.add_task("core", "b"))
        stats = task_counts(project.tracks["core"])
        assert (stats.todo, stats.blocked, stats.done) == (2, 1, 0)
