"""
Tests for the editing session.

Covers:
- Every recorded operation is exactly inverted by undo and restored by redo
- Deferred moves to Done / Backlog with a controllable clock
- Saves write only through the session and keep untouched text verbatim
- External file changes: reload, undo barrier, abandoned edits
"""

import pytest

from frame import recovery
from frame.board import Position, today_str
from frame.errors import ConflictError, NotFoundError, PreconditionFailedError
from frame.models import SectionKind, TaskState
from frame.session import GRACE_PERIOD, EditSession, EditTarget, PendingMoveKind
from frame.storage import Storage


def ids(tasks):
    return [t.id for t in tasks]


def core_file(session):
    return (session.storage.frame_dir / "tracks" / "core.md").read_text(encoding="utf-8")


@pytest.fixture
def seeded(session):
    """core: COR-001 (with COR-001.1), COR-002, COR-003; web: WEB-001; inbox: two items."""
    session.add_task("core", "Design the API #api")
    session.add_subtask("core", "COR-001", "Sketch endpoints")
    session.add_task("core", "Write docs")
    session.add_task("core", "Ship it")
    session.add_task("web", "Landing page")
    session.add_inbox_item("Idea one #idea")
    session.add_inbox_item("Idea two", body="with a body")
    return session


# -----------------------------------------------------------------------------
# Undo / Redo
# -----------------------------------------------------------------------------
OPERATIONS = {
    "add": lambda s: s.add_task("core", "New", Position.top()),
    "add_subtask": lambda s: s.add_subtask("core", "COR-002", "Child"),
    "edit_title": lambda s: s.edit_title("core", "COR-002", "Write the docs #docs"),
    "add_tag": lambda s: s.add_tag("core", "COR-002", "later"),
    "remove_tag": lambda s: s.remove_tag("core", "COR-001", "api"),
    "add_dep": lambda s: s.add_dep("core", "COR-003", "WEB-001"),
    "set_note": lambda s: s.set_note("core", "COR-001", "line one\n\nline two"),
    "add_ref": lambda s: s.add_ref("core", "COR-001", "src/api.py"),
    "set_spec": lambda s: s.set_spec("core", "COR-001", "docs/api.md#auth"),
    "block": lambda s: s.toggle_blocked("core", "COR-002"),
    "park_state": lambda s: s.toggle_parked("core", "COR-002"),
    "wontdo": lambda s: s.soft_delete("core", "COR-002"),
    "move": lambda s: s.move_task("core", "COR-003", Position.top()),
    "section": lambda s: s.move_to_section("core", "COR-002", SectionKind.PARKED),
    "move_track": lambda s: s.move_task_to_track("core", "web", "COR-001"),
    "indent": lambda s: s.reparent_task("core", "COR-003", "COR-002"),
    "outdent": lambda s: s.reparent_task("core", "COR-001.1", None),
    "delete": lambda s: s.delete_task("core", "COR-001"),
    "inbox_add": lambda s: s.add_inbox_item("Idea three"),
    "inbox_edit": lambda s: s.edit_inbox_item(0, title="Idea uno #idea #edited"),
    "inbox_delete": lambda s: s.delete_inbox_item(1),
    "inbox_move": lambda s: s.move_inbox_item(1, 0),
    "triage": lambda s: s.triage(1, "core", Position.after("COR-002")),
}


class TestUndoInverse:
    """Undo restores the exact prior text; redo restores the exact post text."""

    @pytest.mark.parametrize("name", sorted(OPERATIONS))
    def test_undo_then_redo(self, seeded, texts, name):
        before = texts(seeded.project)
        OPERATIONS[name](seeded)
        after = texts(seeded.project)
        assert after != before

        assert seeded.undo()
        assert texts(seeded.project) == before
        assert seeded.redo()
        assert texts(seeded.project) == after

    @pytest.mark.parametrize("name", ["add", "delete", "triage", "move_track"])
    def test_undo_is_saved(self, seeded, name):
        on_disk = core_file(seeded)
        OPERATIONS[name](seeded)
        assert core_file(seeded) != on_disk
        seeded.undo()
        assert core_file(seeded) == on_disk

    def test_add_then_undo_restores_empty_track_bytes(self, session):
        original = core_file(session)
        session.add_task("core", "Only task")
        session.undo()
        assert core_file(session) == original

    def test_no_op_edit_is_not_recorded(self, seeded):
        depth = len(seeded.undo_stack.undo_ops)
        seeded.add_tag("core", "COR-001", "api")
        assert len(seeded.undo_stack.undo_ops) == depth

    def test_new_operation_clears_redo(self, seeded):
        seeded.edit_title("core", "COR-002", "x")
        seeded.undo()
        seeded.add_tag("core", "COR-002", "y")
        assert not seeded.redo()
        assert seeded.status_message == "nothing to redo"

    def test_failed_operation_is_not_recorded(self, seeded, texts):
        before = texts(seeded.project)
        depth = len(seeded.undo_stack.undo_ops)
        with pytest.raises(NotFoundError):
            seeded.add_task("core", "x", Position.after("COR-404"))
        assert texts(seeded.project) == before
        assert len(seeded.undo_stack.undo_ops) == depth

    def test_track_create_undo(self, session):
        session.new_track("ops", "Operations")
        assert "ops" in session.project.tracks
        session.undo()
        assert "ops" not in session.project.tracks
        assert session.project.config.track("ops") is None
        session.redo()
        assert session.project.config.prefix_for("ops") == "OPS"

    def test_track_archive_undo(self, seeded):
        seeded.archive_track("web")
        assert "web" not in seeded.project.tracks
        seeded.undo()
        assert seeded.project.config.track("web").state == "active"
        assert ids(seeded.project.tracks["web"].backlog) == ["WEB-001"]


# -----------------------------------------------------------------------------
# Deferred Moves
# -----------------------------------------------------------------------------
class TestDeferredDone:
    def test_done_waits_for_grace_period(self, seeded, clock):
        seeded.toggle_done("core", "COR-002")
        track = seeded.project.tracks["core"]
        task = track.find_task("COR-002")
        assert task.state == TaskState.DONE
        assert task.meta_value("resolved") == today_str()
        assert "COR-002" in ids(track.backlog)
        assert "- [x] `COR-002` Write docs" in core_file(seeded)

        clock.advance(GRACE_PERIOD - 0.1)
        assert seeded.tick() is False
        assert "COR-002" in ids(track.backlog)

        clock.advance(0.2)
        assert seeded.tick() is True
        assert ids(track.backlog) == ["COR-001", "COR-003"]
        assert ids(track.done) == ["COR-002"]
        assert seeded.pending_moves == []

    def test_newest_done_goes_to_top(self, seeded, clock):
        seeded.toggle_done("core", "COR-002")
        seeded.flush_all()
        seeded.toggle_done("core", "COR-003")
        seeded.flush_all()
        assert ids(seeded.project.tracks["core"].done) == ["COR-003", "COR-002"]

    def test_second_toggle_cancels(self, seeded, clock, texts):
        before = texts(seeded.project)
        depth = len(seeded.undo_stack.undo_ops)
        seeded.toggle_done("core", "COR-002")
        clock.advance(1)
        seeded.toggle_done("core", "COR-002")

        assert texts(seeded.project) == before
        assert seeded.pending_moves == []
        assert len(seeded.undo_stack.undo_ops) == depth
        clock.advance(GRACE_PERIOD * 2)
        seeded.tick()
        assert "COR-002" in ids(seeded.project.tracks["core"].backlog)

    def test_cycle_cancels_pending_move(self, seeded):
        seeded.set_state("core", "COR-002", TaskState.ACTIVE)
        seeded.cycle_state("core", "COR-002")
        assert seeded.pending_move("core", "COR-002").kind == PendingMoveKind.TO_DONE
        seeded.cycle_state("core", "COR-002")
        task = seeded.project.tracks["core"].find_task("COR-002")
        assert task.state == TaskState.ACTIVE
        assert seeded.pending_moves == []

    def test_subtask_done_is_immediate_and_stays(self, seeded):
        seeded.toggle_done("core", "COR-001.1")
        assert seeded.pending_moves == []
        assert seeded.project.tracks["core"].find_task("COR-001.1").state == TaskState.DONE
        assert ids(seeded.project.tracks["core"].find_task("COR-001").subtasks) == ["COR-001.1"]

    def test_open_edit_holds_moves(self, seeded, clock):
        seeded.toggle_done("core", "COR-002")
        seeded.begin_edit(EditTarget("title", "core", "COR-003"))
        clock.advance(GRACE_PERIOD + 1)
        seeded.tick()
        assert "COR-002" in ids(seeded.project.tracks["core"].backlog)
        seeded.cancel_edit()
        seeded.tick()
        assert ids(seeded.project.tracks["core"].done) == ["COR-002"]

    def test_close_commits_pending(self, seeded, storage):
        seeded.toggle_done("core", "COR-002")
        seeded.close()
        reloaded = storage.load_project()
        assert ids(reloaded.tracks["core"].done) == ["COR-002"]

    def test_undo_before_move_runs(self, seeded, clock, texts):
        before = texts(seeded.project)
        seeded.toggle_done("core", "COR-002")
        seeded.undo()
        assert texts(seeded.project) == before
        clock.advance(GRACE_PERIOD + 1)
        seeded.tick()
        assert "COR-002" in ids(seeded.project.tracks["core"].backlog)

    def test_undo_after_move_restores_position(self, seeded, clock, texts):
        before = texts(seeded.project)
        seeded.toggle_done("core", "COR-002")
        clock.advance(GRACE_PERIOD + 1)
        seeded.tick()
        seeded.undo()
        assert texts(seeded.project) == before
        seeded.redo()
        assert ids(seeded.project.tracks["core"].done) == ["COR-002"]

    def test_delete_drops_pending_move(self, seeded, clock):
        seeded.toggle_done("core", "COR-002")
        seeded.delete_task("core", "COR-002")
        clock.advance(GRACE_PERIOD + 1)
        assert seeded.tick() is False

    @pytest.mark.parametrize("change,expected", [
        (lambda s: s.set_state("core", "COR-002", TaskState.TODO), TaskState.TODO),
        (lambda s: s.set_state("core", "COR-002", TaskState.ACTIVE), TaskState.ACTIVE),
        (lambda s: s.toggle_blocked("core", "COR-002"), TaskState.BLOCKED),
        (lambda s: s.toggle_parked("core", "COR-002"), TaskState.PARKED),
        (lambda s: s.reopen("core", "COR-002"), TaskState.TODO),
    ])
    def test_leaving_done_cancels_pending_move(self, seeded, clock, change, expected):
        seeded.toggle_done("core", "COR-002")
        change(seeded)
        assert seeded.pending_moves == []

        clock.advance(GRACE_PERIOD + 1)
        seeded.tick()
        track = seeded.project.tracks["core"]
        task = track.find_task("COR-002")
        assert task.state == expected
        assert task.meta("resolved") is None
        assert "COR-002" in ids(track.backlog)
        assert track.done == []

    def test_leaving_done_again_leaves_no_trace(self, seeded, texts):
        before = texts(seeded.project)
        depth = len(seeded.undo_stack.undo_ops)
        seeded.toggle_done("core", "COR-002")
        seeded.set_state("core", "COR-002", TaskState.TODO)
        assert texts(seeded.project) == before
        assert len(seeded.undo_stack.undo_ops) == depth

    def test_blocking_during_grace_period_is_undoable(self, seeded, clock):
        seeded.toggle_done("core", "COR-002")
        seeded.toggle_blocked("core", "COR-002")
        seeded.undo()
        task = seeded.project.tracks["core"].find_task("COR-002")
        assert task.state == TaskState.TODO
        assert "COR-002" in ids(seeded.project.tracks["core"].backlog)


class TestDeferredReopen:
    @pytest.fixture
    def with_done(self, seeded):
        seeded.toggle_done("core", "COR-002")
        seeded.flush_all()
        return seeded

    def test_reopen_moves_to_backlog_top(self, with_done, clock):
        track = with_done.project.tracks["core"]
        with_done.reopen("core", "COR-002")
        task = track.find_task("COR-002")
        assert task.state == TaskState.TODO
        # resolved stays until the move runs
        assert task.meta("resolved") is not None
        assert ids(track.done) == ["COR-002"]

        clock.advance(GRACE_PERIOD)
        with_done.tick()
        assert ids(track.backlog)[0] == "COR-002"
        assert track.find_task("COR-002").meta("resolved") is None

    def test_reopen_twice_restores_done(self, with_done, texts):
        before = texts(with_done.project)
        with_done.reopen("core", "COR-002")
        with_done.reopen("core", "COR-002")
        assert texts(with_done.project) == before
        assert with_done.pending_moves == []

    def test_set_state_from_done_reopens(self, with_done):
        with_done.set_state("core", "COR-002", TaskState.ACTIVE)
        pm = with_done.pending_move("core", "COR-002")
        assert pm.kind == PendingMoveKind.TO_BACKLOG
        assert with_done.project.tracks["core"].find_task("COR-002").state == TaskState.ACTIVE

    def test_reopen_requires_done(self, seeded):
        with pytest.raises(PreconditionFailedError):
            seeded.reopen("core", "COR-002")

    @pytest.mark.parametrize("change", [
        lambda s: s.set_state("core", "COR-002", TaskState.DONE),
        lambda s: s.toggle_done("core", "COR-002"),
        lambda s: s.soft_delete("core", "COR-002"),
    ])
    def test_marking_done_cancels_pending_reopen(self, with_done, clock, change):
        track = with_done.project.tracks["core"]
        with_done.reopen("core", "COR-002")
        change(with_done)
        assert with_done.pending_moves == []

        clock.advance(GRACE_PERIOD + 1)
        with_done.tick()
        task = track.find_task("COR-002")
        assert task.state == TaskState.DONE
        assert task.meta_value("resolved") == today_str()
        assert ids(track.done) == ["COR-002"]
        assert all(t.state != TaskState.DONE for t in track.backlog)

    def test_cancel_keeps_edits_made_meanwhile(self, with_done):
        with_done.reopen("core", "COR-002")
        with_done.add_tag("core", "COR-002", "keep")
        with_done.reopen("core", "COR-002")
        task = with_done.project.tracks["core"].find_task("COR-002")
        assert task.state == TaskState.DONE
        assert task.tags == ["keep"]
        assert task.meta("resolved") is not None

        # the tag edit undoes on its own without touching the state
        with_done.undo()
        assert task.tags == []
        assert task.state == TaskState.DONE


class TestDeferredMoveSections:
    TEXT = "# Core\n\n## Backlog\n\n- [ ] `COR-001` One\n"

    @pytest.fixture
    def bare(self, storage, write_track, clock):
        write_track("core", self.TEXT)
        return EditSession(storage.load_project(), storage, clock=clock)

    def test_undo_removes_created_done_section(self, bare, clock):
        bare.toggle_done("core", "COR-001")
        clock.advance(GRACE_PERIOD + 1)
        bare.tick()
        assert "## Done" in core_file(bare)

        bare.undo()
        assert core_file(bare) == self.TEXT
        bare.redo()
        assert ids(bare.project.tracks["core"].done) == ["COR-001"]
        assert "## Done" in core_file(bare)


# -----------------------------------------------------------------------------
# Saving
# -----------------------------------------------------------------------------
class TestSaving:
    def test_untouched_formatting_survives_edits(self, storage, write_track, fixture_text, clock):
        text = fixture_text("messy.md").replace("MSY-", "COR-")
        write_track("core", text)
        session = EditSession(storage.load_project(), storage, clock=clock)
        session.edit_title("core", "COR-003", "Third task, renamed")
        session.toggle_done("core", "COR-002")
        session.close()

        out = core_file(session)
        kept = text.split("## Backlog")[0] + "## Backlog\n\n" + "\n".join([
            "- [ ] `COR-001` Hand-formatted task",
            "  - dep:COR-002,COR-003",
            "  - added: 2025-01-01",
            "    an indented line that is not metadata",
        ])
        assert out.startswith(kept)
        assert "- [ ] `COR-003` Third task, renamed\n" in out
        assert out.endswith("<!-- trailing comment kept verbatim -->\n")

    def test_inbox_saved(self, seeded, storage):
        on_disk = storage.load_inbox()
        assert [i.title for i in on_disk.items] == ["Idea one", "Idea two"]
        assert on_disk.items[1].body == "with a body"

    def test_delete_is_logged_for_recovery(self, seeded, frame_dir):
        seeded.delete_task("core", "COR-001")
        entry = recovery.read_entries(frame_dir, limit=1)[0]
        assert entry.category == recovery.Category.DELETE
        assert ("task", "COR-001") in entry.fields
        assert "`COR-001.1` Sketch endpoints" in entry.body

    def test_lock_is_released_after_save(self, seeded, frame_dir):
        seeded.add_task("core", "x")
        assert not (frame_dir / ".lock").exists()


# -----------------------------------------------------------------------------
# External Changes
# -----------------------------------------------------------------------------
class TestExternalChanges:
    def test_own_writes_are_not_external(self, seeded, frame_dir):
        assert seeded.handle_file_change([frame_dir / "tracks" / "core.md"]) is False

    def test_external_edit_reloads_and_blocks_undo(self, seeded, frame_dir):
        path = frame_dir / "tracks" / "core.md"
        path.write_text(path.read_text() + "- [ ] `COR-010` Added elsewhere\n")
        assert seeded.handle_file_change([path]) is True
        assert seeded.project.tracks["core"].find_task("COR-010") is not None
        assert seeded.undo() is False
        assert seeded.status_message == "nothing to undo"

    def test_reload_drops_pending_moves_of_that_track(self, seeded, frame_dir):
        seeded.toggle_done("core", "COR-002")
        path = frame_dir / "tracks" / "core.md"
        path.write_text(path.read_text() + "\n")
        seeded.handle_file_change([path])
        assert seeded.pending_moves == []

    def test_change_to_edited_file_abandons_edit(self, seeded, frame_dir):
        seeded.begin_edit(EditTarget("title", "core", "COR-002"))
        seeded.edit_buffer = "Half-typed title"
        path = frame_dir / "tracks" / "core.md"
        path.write_text(path.read_text().replace("Write docs", "Write the docs"))

        assert seeded.handle_file_change([path]) is True
        assert not seeded.editing
        assert seeded.conflict_text == "Half-typed title"
        assert seeded.project.tracks["core"].find_task("COR-002").title == "Write the docs"
        with pytest.raises(ConflictError):
            seeded.commit_edit("Half-typed title")

        entry = recovery.read_entries(frame_dir, limit=1)[0]
        assert entry.category == recovery.Category.CONFLICT
        assert entry.body == "Half-typed title"

    def test_other_file_change_waits_for_edit(self, seeded, frame_dir):
        seeded.begin_edit(EditTarget("title", "core", "COR-002"))
        path = frame_dir / "tracks" / "web.md"
        path.write_text(path.read_text().replace("Landing page", "Landing page v2"))

        assert seeded.handle_file_change([path]) is False
        assert seeded.pending_reload_paths == [path]
        assert seeded.project.tracks["web"].find_task("WEB-001").title == "Landing page"

        seeded.commit_edit("Write good docs")
        assert seeded.project.tracks["web"].find_task("WEB-001").title == "Landing page v2"
        assert seeded.project.tracks["core"].find_task("COR-002").title == "Write good docs"

    def test_config_change_reloads_everything(self, seeded, frame_dir):
        config = frame_dir / "project.toml"
        config.write_text(config.read_text().replace('name = "demo"', 'name = "renamed"'))
        seeded.handle_file_change([config])
        assert seeded.project.config.name == "renamed"
        assert ids(seeded.project.tracks["core"].backlog) == ["COR-001", "COR-002", "COR-003"]

    def test_auto_clean_on_reload_when_enabled(self, storage, frame_dir, clock):
        session = EditSession(storage.load_project(), storage, clock=clock, clean_on_load=True)
        path = frame_dir / "tracks" / "core.md"
        path.write_text("# Core\n\n## Backlog\n\n- [ ] Written by hand\n\n## Done\n")
        session.handle_file_change([path])
        task = session.project.tracks["core"].backlog[0]
        assert task.id == "COR-001"
        assert "`COR-001` Written by hand" in path.read_text()


# -----------------------------------------------------------------------------
# Edit Buffer
# -----------------------------------------------------------------------------
class TestEditBuffer:
    def test_begin_seeds_current_text(self, seeded):
        assert seeded.begin_edit(EditTarget("tags", "core", "COR-001")) == "#api"
        seeded.cancel_edit()
        assert seeded.begin_edit(EditTarget("inbox", index=1)) == "Idea two"

    def test_commit_note(self, seeded):
        seeded.begin_edit(EditTarget("note", "core", "COR-003"))
        seeded.commit_edit("first\nsecond")
        assert seeded.project.tracks["core"].find_task("COR-003").meta_value("note") == "first\nsecond"

    def test_commit_without_edit(self, seeded):
        with pytest.raises(PreconditionFailedError):
            seeded.commit_edit("x")

    def test_open_discovers_project(self, project_root):
        session = EditSession.open(project_root / "frame" / "tracks")
        assert isinstance(session.storage, Storage)
        assert set(session.project.tracks) == {"core", "web"}
