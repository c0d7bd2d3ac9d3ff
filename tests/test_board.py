"""
Tests for board mutations.

Covers:
- ID assignment for tasks, subtasks, moves and triage
- Insert positions and their validation
- Cross-track moves and reparenting with dependency rewrites
- Inbox operations and triage atomicity
- Prefix rename
- Failed operations leave the project untouched
"""

import pytest

from frame.board import Board, Position, today_str
from frame.errors import IndexOutOfRangeError, NotFoundError, PreconditionFailedError
from frame.models import SectionKind, TaskState


@pytest.fixture
def board(project):
    return Board(project)


def ids(tasks):
    return [t.id for t in tasks]


# -----------------------------------------------------------------------------
# IDs
# -----------------------------------------------------------------------------
class TestIdAssignment:
    def test_empty_track_starts_at_one(self, board):
        assert board.add_task("core", "First") == "COR-001"

    def test_next_after_highest(self, storage, write_track):
        lines = ["# Core", "", "## Backlog", ""]
        lines += [f"- [ ] `COR-00{n}` Task {n}" for n in range(1, 8)]
        write_track("core", "\n".join(lines + ["", "## Done", ""]))
        board = Board(storage.load_project())
        assert board.add_task("core", "Eighth") == "COR-008"

    def test_deleted_middle_id_is_not_reused(self, board):
        for title in ("a", "b", "c"):
            board.add_task("core", title)
        board.hard_delete("core", "COR-002")
        assert board.add_task("core", "d") == "COR-004"

    def test_prefixes_are_per_track(self, board):
        board.add_task("core", "a")
        assert board.add_task("web", "b") == "WEB-001"

    def test_subtask_ids(self, board):
        parent = board.add_task("core", "Parent")
        assert board.add_subtask("core", parent, "one") == "COR-001.1"
        assert board.add_subtask("core", parent, "two") == "COR-001.2"
        assert board.add_subtask("core", "COR-001.1", "deep") == "COR-001.1.1"

    def test_subtask_numbers_are_not_reused(self, board):
        parent = board.add_task("core", "Parent")
        board.add_subtask("core", parent, "one")
        board.add_subtask("core", parent, "two")
        board.hard_delete("core", "COR-001.1")
        assert board.add_subtask("core", parent, "three") == "COR-001.3"

    def test_new_task_gets_added_date(self, board):
        task_id = board.add_task("core", "Dated")
        assert board.task("core", task_id).meta_value("added") == today_str()


# -----------------------------------------------------------------------------
# Positions
# -----------------------------------------------------------------------------
class TestPositions:
    def test_top_bottom_after(self, board, project):
        board.add_task("core", "a")
        board.add_task("core", "b")
        board.add_task("core", "top", Position.top())
        board.add_task("core", "mid", Position.after("COR-001"))
        assert [t.title for t in project.tracks["core"].backlog] == ["top", "a", "mid", "b"]

    def test_missing_after_target_changes_nothing(self, board, project, texts):
        board.add_task("core", "a")
        before = texts(project)
        with pytest.raises(NotFoundError):
            board.add_task("core", "b", Position.after("COR-999"))
        assert texts(project) == before

    def test_subtask_after_sibling(self, board, project):
        parent = board.add_task("core", "P")
        board.add_subtask("core", parent, "one")
        board.add_subtask("core", parent, "two")
        board.add_subtask("core", parent, "between", after_id="COR-001.1")
        titles = [s.title for s in project.tracks["core"].find_task(parent).subtasks]
        assert titles == ["one", "between", "two"]

    def test_move_within_backlog(self, board, project):
        for title in ("a", "b", "c"):
            board.add_task("core", title)
        board.move_task("core", "COR-003", Position.top())
        assert ids(project.tracks["core"].backlog) == ["COR-003", "COR-001", "COR-002"]
        board.move_task("core", "COR-003", Position.after("COR-002"))
        assert ids(project.tracks["core"].backlog) == ["COR-001", "COR-002", "COR-003"]

    def test_move_after_itself_is_rejected(self, board):
        board.add_task("core", "a")
        with pytest.raises(PreconditionFailedError):
            board.move_task("core", "COR-001", Position.after("COR-001"))

    def test_missing_backlog(self, storage, write_track):
        write_track("core", "# Core\n\n## Done\n")
        board = Board(storage.load_project())
        with pytest.raises(PreconditionFailedError):
            board.add_task("core", "nowhere")

    def test_unknown_track(self, board):
        with pytest.raises(NotFoundError):
            board.add_task("nope", "x")


# -----------------------------------------------------------------------------
# State
# -----------------------------------------------------------------------------
class TestState:
    def test_done_adds_resolved_and_reopen_removes_it(self, board):
        task_id = board.add_task("core", "a")
        board.set_state("core", task_id, TaskState.DONE)
        assert board.task("core", task_id).meta_value("resolved") == today_str()
        board.set_state("core", task_id, TaskState.TODO)
        assert board.task("core", task_id).meta("resolved") is None

    def test_cycle(self, board):
        task_id = board.add_task("core", "a")
        assert board.cycle_state("core", task_id) == TaskState.ACTIVE
        assert board.cycle_state("core", task_id) == TaskState.DONE
        assert board.cycle_state("core", task_id) == TaskState.TODO

    def test_toggles(self, board):
        task_id = board.add_task("core", "a")
        assert board.toggle_blocked("core", task_id) == TaskState.BLOCKED
        assert board.toggle_blocked("core", task_id) == TaskState.TODO
        assert board.toggle_parked("core", task_id) == TaskState.PARKED

    def test_soft_delete(self, board):
        task_id = board.add_task("core", "a")
        board.soft_delete("core", task_id)
        task = board.task("core", task_id)
        assert task.state == TaskState.DONE
        assert task.tags == ["wontdo"]


# -----------------------------------------------------------------------------
# Metadata Edits
# -----------------------------------------------------------------------------
class TestMetadataEdits:
    def test_dep_must_exist(self, board):
        task_id = board.add_task("core", "a")
        with pytest.raises(NotFoundError):
            board.add_dep("core", task_id, "WEB-001")

    def test_dep_across_tracks(self, board):
        a = board.add_task("core", "a")
        b = board.add_task("web", "b")
        board.add_dep("core", a, b)
        board.add_dep("core", a, b)
        assert board.task("core", a).meta_value("dep") == [b]

    def test_removing_last_dep_drops_entry(self, board):
        a = board.add_task("core", "a")
        b = board.add_task("core", "b")
        board.add_dep("core", a, b)
        board.remove_dep("core", a, b)
        assert board.task("core", a).meta("dep") is None

    def test_notes(self, board):
        a = board.add_task("core", "a")
        board.set_note("core", a, "first")
        board.append_note("core", a, "second")
        assert board.task("core", a).meta_value("note") == "first\n\nsecond"
        board.set_note("core", a, "")
        assert board.task("core", a).meta("note") is None

    def test_edit_title_replaces_tags(self, board):
        a = board.add_task("core", "a #old")
        board.edit_title("core", a, "renamed #new #ui")
        task = board.task("core", a)
        assert (task.title, task.tags) == ("renamed", ["new", "ui"])
        assert task.is_dirty


# -----------------------------------------------------------------------------
# Cross-Track Moves and Reparenting
# -----------------------------------------------------------------------------
class TestStructuralMoves:
    def test_move_to_track_rekeys_subtree_and_deps(self, board, project):
        a = board.add_task("core", "a")
        board.add_subtask("core", a, "child")
        w = board.add_task("web", "w")
        board.add_dep("web", w, "COR-001.1")

        new_id = board.move_task_to_track("core", "web", a)

        assert new_id == "WEB-002"
        assert project.tracks["core"].backlog == []
        moved = project.tracks["web"].find_task("WEB-002")
        assert ids(moved.subtasks) == ["WEB-002.1"]
        assert board.task("web", w).meta_value("dep") == ["WEB-002.1"]

    def test_move_to_same_track_is_rejected(self, board):
        a = board.add_task("core", "a")
        with pytest.raises(PreconditionFailedError):
            board.move_task_to_track("core", "core", a)

    def test_move_to_track_bad_position_keeps_source(self, board, project, texts):
        a = board.add_task("core", "a")
        before = texts(project)
        with pytest.raises(NotFoundError):
            board.move_task_to_track("core", "web", a, Position.after("WEB-404"))
        assert texts(project) == before

    def test_indent_under_sibling(self, board, project):
        a = board.add_task("core", "a")
        b = board.add_task("core", "b")
        board.add_subtask("core", b, "b child")
        result = board.reparent_task("core", b, a)
        assert result.new_id == "COR-001.1"
        assert ("COR-002.1", "COR-001.1.1") in result.id_mappings
        nested = project.tracks["core"].find_task("COR-001.1.1")
        assert nested.depth == 2
        assert ids(project.tracks["core"].backlog) == ["COR-001"]

    def test_outdent_gets_fresh_top_level_id(self, board, project):
        a = board.add_task("core", "a")
        child = board.add_subtask("core", a, "child")
        result = board.reparent_task("core", child, None)
        assert result.new_id == "COR-002"
        assert project.tracks["core"].find_task("COR-002").depth == 0

    def test_cannot_reparent_under_own_subtree(self, board):
        a = board.add_task("core", "a")
        child = board.add_subtask("core", a, "child")
        with pytest.raises(PreconditionFailedError):
            board.reparent_task("core", a, child)

    def test_move_between_sections(self, board, project):
        a = board.add_task("core", "a")
        index = board.move_task_between_sections("core", a, SectionKind.BACKLOG, SectionKind.PARKED)
        assert index == 0
        track = project.tracks["core"]
        assert ids(track.parked) == [a]
        # the Parked section is created between Backlog and Done
        assert [s.kind for s in track.sections()] == [
            SectionKind.BACKLOG, SectionKind.PARKED, SectionKind.DONE]


# -----------------------------------------------------------------------------
# Inbox
# -----------------------------------------------------------------------------
class TestInbox:
    def test_add_merges_tags(self, board, project):
        index = board.add_inbox_item("Call the vendor #phone", ["#errand", "phone"], "about invoices")
        item = project.inbox.items[index]
        assert item.title == "Call the vendor"
        assert item.tags == ["phone", "errand"]
        assert item.body == "about invoices"

    def test_index_out_of_range(self, board):
        with pytest.raises(IndexOutOfRangeError):
            board.delete_inbox_item(0)

    def test_move_and_edit(self, board, project):
        for title in ("one", "two", "three"):
            board.add_inbox_item(title)
        board.move_inbox_item(2, 0)
        board.edit_inbox_item(1, title="uno #es")
        assert [(i.title, i.tags) for i in project.inbox.items] == [
            ("three", []), ("uno", ["es"]), ("two", [])]

    def test_triage_creates_task_with_note(self, board, project):
        board.add_inbox_item("Write release notes #docs", body="mention the parser fix")
        task_id = board.triage(0, "core", Position.top())
        task = project.tracks["core"].find_task(task_id)
        assert task_id == "COR-001"
        assert task.tags == ["docs"]
        assert task.meta_value("note") == "mention the parser fix"
        assert project.inbox.items == []

    @pytest.mark.parametrize("track_id,position,error", [
        ("nope", Position.bottom(), NotFoundError),
        ("core", Position.after("COR-404"), NotFoundError),
    ])
    def test_triage_failure_keeps_item(self, board, project, texts, track_id, position, error):
        board.add_inbox_item("keep me")
        before = texts(project)
        with pytest.raises(error):
            board.triage(0, track_id, position)
        assert texts(project) == before
        assert project.inbox.items[0].title == "keep me"

    def test_triage_into_track_without_backlog(self, storage, write_track):
        write_track("core", "# Core\n\n## Done\n")
        project = storage.load_project()
        board = Board(project)
        board.add_inbox_item("stays")
        with pytest.raises(PreconditionFailedError):
            board.triage(0, "core")
        assert len(project.inbox.items) == 1


# -----------------------------------------------------------------------------
# Prefix Rename
# -----------------------------------------------------------------------------
class TestPrefixRename:
    @pytest.fixture
    def populated(self, board):
        a = board.add_task("core", "a")
        board.add_subtask("core", a, "child")
        board.add_task("core", "b")
        w = board.add_task("web", "w")
        board.add_dep("web", w, "COR-001.1")
        board.add_dep("web", w, "COR-002")
        return board

    def test_impact(self, populated):
        impact = populated.prefix_rename_impact("core", "CR")
        assert (impact.old_prefix, impact.new_prefix) == ("COR", "CR")
        assert impact.task_ids == 3
        assert impact.dep_references == 2
        assert impact.affected_tracks == ["core", "web"]

    def test_rename_rewrites_ids_and_deps(self, populated, project):
        populated.rename_prefix("core", "CR")
        assert [t.id for t in project.tracks["core"].iter_tasks()] == ["CR-001", "CR-001.1", "CR-002"]
        assert project.tracks["web"].find_task("WEB-001").meta_value("dep") == ["CR-001.1", "CR-002"]
        assert project.config.prefix_for("core") == "CR"

    @pytest.mark.parametrize("prefix", ["cr", "C-R", "", "WEB"])
    def test_invalid_or_taken_prefix(self, populated, project, texts, prefix):
        before = texts(project)
        with pytest.raises(PreconditionFailedError):
            populated.rename_prefix("core", prefix)
        assert texts(project) == before
