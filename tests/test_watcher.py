"""
Tests for the polling file watcher. The thread is not started; ``check`` is
the single polling step it runs.
"""

from frame.watcher import FileWatcher, diff_snapshots, snapshot


class TestSnapshot:
    def test_watched_files_only(self, frame_dir):
        (frame_dir / ".state.json").write_text("{}")
        (frame_dir / ".recovery.log").write_text("")
        (frame_dir / "notes.txt").write_text("x")
        names = sorted(p.relative_to(frame_dir).as_posix() for p in snapshot(frame_dir))
        assert names == ["inbox.md", "project.toml", "tracks/core.md", "tracks/web.md"]

    def test_diff(self, tmp_path):
        a, b, c = tmp_path / "a.md", tmp_path / "b.md", tmp_path / "c.md"
        before = {a: (1, 10), b: (1, 10)}
        after = {a: (1, 10), b: (2, 12), c: (1, 1)}
        assert diff_snapshots(before, after) == [b, c]
        assert diff_snapshots(after, {a: (1, 10)}) == [b, c]


class TestFileWatcher:
    def test_no_change_no_event(self, frame_dir):
        watcher = FileWatcher(frame_dir)
        assert watcher.check() is None
        assert watcher.poll() == []

    def test_change_is_queued(self, frame_dir):
        watcher = FileWatcher(frame_dir)
        track = frame_dir / "tracks" / "core.md"
        track.write_text(track.read_text() + "\n- [ ] edited elsewhere\n")
        event = watcher.check()
        assert event.paths == [track]
        assert watcher.poll() == [event]
        assert watcher.poll() == []

    def test_deleted_and_new_files(self, frame_dir):
        watcher = FileWatcher(frame_dir)
        (frame_dir / "tracks" / "web.md").unlink()
        (frame_dir / "tracks" / "ops.md").write_text("# Ops\n")
        watcher.check()
        [event] = watcher.poll()
        assert sorted(p.name for p in event.paths) == ["ops.md", "web.md"]

    def test_stop_without_start(self, frame_dir):
        FileWatcher(frame_dir).stop()
