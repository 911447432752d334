"""Tests for CLI commands."""

import json

import pytest
from click.testing import CliRunner

from track.cli import main
from track.db import TrackDatabase


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "track.db"


@pytest.fixture
def track(db_path):
    """Invoke a command against the test database.

    --db goes right after the command name, which for list/stats is the
    group that owns the option.
    """
    runner = CliRunner()

    def invoke(command, *args, input=None):
        return runner.invoke(main, [command, "--db", str(db_path), *args], input=input)

    return invoke


def load(db_path):
    with TrackDatabase.open(db_path) as database:
        return database.load()


def test_main_help():
    """Main command shows help."""
    runner = CliRunner()
    result = runner.invoke(main, ["--help"])
    assert result.exit_code == 0
    assert "Track time spent on activities" in result.output


def test_verbose_flag(db_path):
    runner = CliRunner()
    result = runner.invoke(main, ["-v", "current", "--db", str(db_path)])
    assert result.exit_code == 0
    assert "There is no activity currently active" in result.output


class TestActivityCommands:
    """Tests for new/set/rename/delete/current/all."""

    def test_new_makes_active(self, track, db_path):
        result = track("new", "gym")

        assert result.exit_code == 0
        assert 'Created new activity "gym"' in result.output
        assert '"gym" is now active' in result.output
        registry, _ = load(db_path)
        assert registry.active == "gym"

    def test_new_duplicate(self, track):
        track("new", "gym")
        result = track("new", "gym")
        assert result.exit_code == 1
        assert 'Error: An activity named "gym" already exists' in result.output

    def test_new_empty_name(self, track):
        result = track("new", "   ")
        assert result.exit_code == 2

    def test_set_and_current(self, track):
        track("new", "gym")
        track("new", "work")

        assert '"work" is active' in track("current").output
        result = track("set", "gym")
        assert result.exit_code == 0
        assert '"gym" is active' in track("current").output

    def test_set_unknown(self, track):
        result = track("set", "gym")
        assert result.exit_code == 1
        assert 'No activity named "gym" exists' in result.output

    def test_rename_follows_sessions(self, track, db_path):
        track("new", "gym")
        track("add", "-s", "2025-01-20T09:00:00Z", "-e", "2025-01-20T10:00:00Z")

        result = track("rename", "gym", "lifting")

        assert result.exit_code == 0
        assert 'Renamed activity "gym" to "lifting"' in result.output
        registry, store = load(db_path)
        assert registry.names == ["lifting"]
        assert registry.active == "lifting"
        assert [s.activity for s in store] == ["lifting"]

    def test_all(self, track):
        assert "There are currently no recorded activities" in track("all").output
        track("new", "gym")
        track("add", "-s", "2025-01-20T09:00:00Z", "-e", "2025-01-20T10:00:00Z")
        track("new", "work")

        result = track("all")

        assert "The recorded activities are:" in result.output
        assert "  gym (1 session)" in result.output
        assert "* work (0 sessions)" in result.output


class TestDeleteCommand:
    """Tests for deleting activities under each policy."""

    @pytest.fixture
    def populated(self, track):
        track("new", "gym")
        track("add", "-s", "2025-01-20T09:00:00Z", "-e", "2025-01-20T10:00:00Z")
        return track

    def test_reject_in_use(self, populated, db_path):
        result = populated("delete", "gym", "--yes")
        assert result.exit_code == 1
        assert 'Activity "gym" still has 1 session' in result.output
        registry, store = load(db_path)
        assert "gym" in registry
        assert len(store) == 1

    def test_reject_unused(self, track, db_path):
        track("new", "gym")
        result = track("delete", "gym", "--yes")
        assert result.exit_code == 0
        assert 'Deleted activity "gym"' in result.output
        assert len(load(db_path)[0]) == 0

    def test_cascade(self, populated, db_path):
        result = populated("delete", "gym", "--policy", "cascade", "--yes")
        assert result.exit_code == 0
        assert "Deleted 1 session" in result.output
        registry, store = load(db_path)
        assert len(registry) == 0
        assert len(store) == 0

    def test_configured_orphan(self, populated, db_path):
        result = populated("config", "--delete-policy", "orphan")
        assert "delete-policy: orphan" in result.output

        result = populated("delete", "gym", "--yes")

        assert result.exit_code == 0
        registry, store = load(db_path)
        assert "gym" not in registry
        assert [s.activity for s in store] == ["gym"]

    def test_confirmation_declined(self, populated, db_path):
        result = populated("delete", "gym", "--policy", "cascade", input="n\n")
        assert 'Did not delete activity "gym"' in result.output
        assert len(load(db_path)[1]) == 1


class TestTrackingCommands:
    """Tests for start/end/cancel/ongoing."""

    def test_start_without_activity(self, track):
        result = track("start")
        assert result.exit_code == 1
        assert "Error: No activity currently selected" in result.output

    def test_start_end_flow(self, track, db_path):
        track("new", "gym")

        result = track("start", "--at", "2025-01-20T09:00:00Z")
        assert result.exit_code == 0
        assert 'Started new session of "gym"' in result.output

        result = track("ongoing")
        assert 'There is an ongoing session of "gym"' in result.output
        assert "Current duration:" in result.output

        result = track("end", "--at", "2025-01-20T10:30:00Z", "-n", "legs")
        assert result.exit_code == 0
        assert 'Ended session of "gym"' in result.output
        assert "(1h 30m)" in result.output
        assert "There is no ongoing session" in track("ongoing").output

        _, store = load(db_path)
        [session] = list(store)
        assert session.notes == "legs"
        assert not session.is_ongoing

    def test_start_twice(self, track):
        track("new", "gym")
        track("start", "--at", "2025-01-20T09:00:00Z")
        result = track("start", "--at", "2025-01-20T09:30:00Z")
        assert result.exit_code == 1
        assert 'There is already an ongoing session of "gym"' in result.output

    def test_end_before_start(self, track, db_path):
        track("new", "gym")
        track("start", "--at", "2025-01-20T09:00:00Z")
        result = track("end", "--at", "2025-01-20T08:00:00Z")
        assert result.exit_code == 1
        assert load(db_path)[1].is_tracking

    def test_cancel(self, track, db_path):
        track("new", "gym")
        assert "There is no ongoing session" in track("cancel").output

        track("start", "--at", "2025-01-20T09:00:00Z")
        result = track("cancel")

        assert result.exit_code == 0
        assert 'Cancelled ongoing session of "gym"' in result.output
        assert len(load(db_path)[1]) == 0

    def test_end_in_future(self, track, db_path):
        track("new", "gym")
        track("start", "--at", "2025-01-20T09:00:00Z")
        result = track("end", "--at", "2999-01-01T10:00:00Z")
        assert result.exit_code == 1
        assert "Session cannot have ended in the future" in result.output
        assert load(db_path)[1].is_tracking

    def test_invalid_time(self, track):
        track("new", "gym")
        result = track("start", "--at", "yesterday")
        assert result.exit_code == 2
        assert "must be in the form" in result.output


class TestEditingCommands:
    """Tests for add/past/edit/remove."""

    @pytest.fixture
    def one_session(self, track):
        track("new", "gym")
        track("add", "-s", "2025-01-20T09:00:00Z", "-e", "2025-01-20T10:00:00Z", "-n", "legs")
        return track

    def test_add(self, one_session, db_path):
        _, store = load(db_path)
        [session] = list(store)
        assert session.id == 1
        assert session.notes == "legs"

    def test_add_overlap(self, one_session, db_path):
        result = one_session("add", "-s", "2025-01-20T09:30:00Z", "-e", "2025-01-20T11:00:00Z")
        assert result.exit_code == 1
        assert "Error: Session overlaps existing session #1" in result.output
        assert len(load(db_path)[1]) == 1

    def test_add_touching(self, one_session):
        result = one_session("add", "-s", "2025-01-20T10:00:00Z", "-e", "2025-01-20T11:00:00Z")
        assert result.exit_code == 0
        assert 'Added a new session of "gym":' in result.output

    def test_add_end_before_start(self, one_session):
        result = one_session("add", "-s", "2025-01-21T10:00:00Z", "-e", "2025-01-21T09:00:00Z")
        assert result.exit_code == 1
        assert "Session must end after it starts" in result.output

    def test_add_requires_times(self, one_session):
        result = one_session("add", "-s", "2025-01-21T10:00:00Z")
        assert result.exit_code == 2

    def test_past(self, track, db_path):
        track("new", "gym")
        result = track("past", "-H", "1")
        assert result.exit_code == 0
        [session] = list(load(db_path)[1])
        assert session.duration_seconds() == 3600

    def test_past_without_amount(self, track):
        track("new", "gym")
        result = track("past")
        assert result.exit_code == 2

    def test_edit_last(self, one_session, db_path):
        result = one_session("edit", "last", "-e", "2025-01-20T10:15:00Z", "-n", "arms")

        assert result.exit_code == 0
        assert "Edited session from:" in result.output
        [session] = list(load(db_path)[1])
        assert session.duration_seconds() == 75 * 60
        assert session.notes == "arms"

    def test_edit_conflict_leaves_session(self, one_session, db_path):
        one_session("add", "-s", "2025-01-20T11:00:00Z", "-e", "2025-01-20T12:00:00Z")
        before = list(load(db_path)[1])

        result = one_session("edit", "2", "-s", "2025-01-20T09:30:00Z")

        assert result.exit_code == 1
        assert list(load(db_path)[1]) == before

    def test_edit_nothing(self, one_session):
        result = one_session("edit", "last")
        assert result.exit_code == 2
        assert "No edits specified" in result.output

    def test_edit_bad_reference(self, one_session):
        assert one_session("edit", "first", "-n", "x").exit_code == 2
        assert one_session("edit", "0", "-n", "x").exit_code == 2

    def test_edit_unknown_id(self, one_session):
        result = one_session("edit", "7", "-n", "x")
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_remove(self, one_session, db_path):
        result = one_session("remove", "1", "--yes")
        assert result.exit_code == 0
        assert "Removed session" in result.output
        assert len(load(db_path)[1]) == 0

    def test_remove_declined(self, one_session, db_path):
        result = one_session("remove", "last", input="n\n")
        assert "Did not remove session" in result.output
        assert len(load(db_path)[1]) == 1

    def test_add_ending_in_future(self, one_session, db_path):
        result = one_session("add", "-s", "2025-01-21T10:00:00Z", "-e", "2999-01-01T10:00:00Z")
        assert result.exit_code == 1
        assert "Error: Session cannot have ended in the future" in result.output
        assert len(load(db_path)[1]) == 1

    def test_edit_end_into_future(self, one_session, db_path):
        result = one_session("edit", "last", "-e", "2999-01-01T10:00:00Z")
        assert result.exit_code == 1
        assert "Session cannot have ended in the future" in result.output
        [session] = list(load(db_path)[1])
        assert session.duration_seconds() == 3600


class TestListAndStats:
    """Tests for the list and stats groups."""

    @pytest.fixture
    def history(self, track):
        track("new", "gym")
        track("add", "-s", "2025-01-20T09:00:00Z", "-e", "2025-01-20T10:00:00Z")
        track("new", "work")
        track("add", "-s", "2025-01-20T11:00:00Z", "-e", "2025-01-20T13:00:00Z")
        track("add", "-s", "2025-01-22T11:00:00Z", "-e", "2025-01-22T11:30:00Z")
        return track

    def test_list_empty(self, track):
        result = track("list")
        assert result.exit_code == 0
        assert "There are no recorded sessions" in result.output

    def test_list_all(self, history):
        result = history("list")
        assert "The recorded sessions are:" in result.output
        assert "#1 gym" in result.output
        assert "#3 work" in result.output

    def test_list_json_with_activity(self, history):
        result = history("list", "--json", "-a", "work")
        records = json.loads(result.output)
        assert [r["id"] for r in records] == [2, 3]
        assert records[0]["start"] == "2025-01-20T11:00:00Z"

    def test_list_range_includes_partial_overlap(self, history):
        result = history("list", "--json", "range", "-s", "2025-01-20T09:30:00Z", "-e", "2025-01-20T11:30:00Z")
        assert [r["id"] for r in json.loads(result.output)] == [1, 2]

    def test_list_since(self, history):
        result = history("list", "--json", "since", "2025-01-21T00:00:00Z")
        assert [r["id"] for r in json.loads(result.output)] == [3]

    def test_list_unknown_activity(self, history):
        result = history("list", "-a", "nope")
        assert result.exit_code == 1
        assert 'No activity named "nope" exists' in result.output

    def test_stats_json(self, history):
        result = history("stats", "--json")
        assert result.exit_code == 0
        summary = json.loads(result.output)
        assert summary["total_seconds"] == 3.5 * 3600
        assert summary["by_activity"] == {"gym": 3600, "work": 9000}
        assert summary["longest"]["id"] == 2

    def test_stats_json_clipped(self, history):
        result = history("stats", "--json", "range", "-s", "2025-01-20T09:30:00Z", "-e", "2025-01-20T11:30:00Z")
        summary = json.loads(result.output)
        assert summary["by_activity"] == {"gym": 1800, "work": 1800}
        assert summary["span_seconds"] == 7200

    def test_stats_human(self, history):
        result = history("stats")
        assert result.exit_code == 0
        assert "Number of sessions: 3" in result.output
        assert "Total time: 3h 30m" in result.output
        assert "By activity:" in result.output
        assert "work" in result.output

    def test_stats_for_activity(self, history):
        result = history("stats", "-a", "gym")
        assert 'Session statistics for "gym"' in result.output
        assert "Total time: 1h" in result.output

    def test_stats_empty_range(self, history):
        result = history("stats", "range", "-s", "2025-02-01T00:00:00Z", "-e", "2025-02-02T00:00:00Z")
        assert result.exit_code == 0
        assert "There are no recorded sessions" in result.output

    def test_stats_inverted_range(self, history):
        result = history("stats", "range", "-s", "2025-01-20T11:00:00Z", "-e", "2025-01-20T10:00:00Z")
        assert result.exit_code == 1
        assert "Error: Start of range must be before end" in result.output

    def test_list_since_future(self, history):
        result = history("list", "since", "2999-01-01T00:00:00Z")
        assert result.exit_code == 1
        assert "Error: Start of range must be before end" in result.output


class TestImportExport:
    """Tests for the export and import commands."""

    def test_round_trip(self, track, tmp_path):
        track("new", "gym")
        track("add", "-s", "2025-01-20T09:00:00Z", "-e", "2025-01-20T10:00:00Z", "-n", "legs")
        track("start", "--at", "2025-01-20T11:00:00Z")
        exported = track("export").output

        other = tmp_path / "other.db"
        runner = CliRunner()
        result = runner.invoke(main, ["import", "--db", str(other)], input=exported)

        assert result.exit_code == 0
        assert "Imported 2 sessions" in result.output
        registry, store = load(other)
        assert "gym" in registry
        assert [(s.notes, s.is_ongoing) for s in store] == [("legs", False), ("", True)]

    def test_import_idempotent(self, track):
        line = json.dumps(
            {"activity": "gym", "start": "2025-01-20T09:00:00Z", "end": "2025-01-20T10:00:00Z"}
        )
        assert "Imported 1 sessions" in track("import", input=line + "\n").output
        assert "Imported 0 sessions" in track("import", input=line + "\n").output

    def test_import_skips_malformed_json(self, track):
        good = json.dumps(
            {"activity": "gym", "start": "2025-01-20T09:00:00Z", "end": "2025-01-20T10:00:00Z"}
        )
        result = track("import", input="not json\n" + good + "\n")
        assert result.exit_code == 0
        assert "Warning: line 1: invalid JSON" in result.output
        assert "Imported 1 sessions" in result.output

    def test_rejected_session_does_not_create_activity(self, track, db_path):
        lines = [
            {"activity": "gym", "start": "2025-01-20T09:00:00Z", "end": "2025-01-20T10:00:00Z"},
            {"activity": "yoga", "start": "2025-01-20T09:30:00Z", "end": "2025-01-20T10:30:00Z"},
        ]
        result = track("import", input="".join(json.dumps(line) + "\n" for line in lines))
        assert "Warning: line 2: Session overlaps existing session" in result.output
        registry, _ = load(db_path)
        assert registry.names == ["gym"]

    def test_activity_names_are_stripped(self, track, db_path):
        line = {"activity": " yoga ", "start": "2025-01-20T09:00:00Z", "end": "2025-01-20T10:00:00Z"}
        result = track("import", input=json.dumps(line) + "\n")
        assert "Imported 1 sessions" in result.output
        registry, store = load(db_path)
        assert registry.names == ["yoga"]
        assert [s.activity for s in store] == ["yoga"]
        assert "Imported 0 sessions" in track("import", input=json.dumps(line) + "\n").output

    def test_import_conflict_reported(self, track, db_path):
        lines = [
            {"activity": "gym", "start": "2025-01-20T09:00:00Z", "end": "2025-01-20T10:00:00Z"},
            {"activity": "gym", "start": "2025-01-20T09:30:00Z", "end": "2025-01-20T10:30:00Z"},
        ]
        result = track("import", input="".join(json.dumps(line) + "\n" for line in lines))
        assert "Warning: line 2: Session overlaps existing session" in result.output
        assert "Imported 1 sessions" in result.output
        assert len(load(db_path)[1]) == 1

    def test_import_all_invalid_exits_nonzero(self, track):
        result = track("import", input='{"activity": "gym"}\n')
        assert result.exit_code == 1
        assert "validation error" in result.output

    def test_import_empty_input(self, track):
        result = track("import", input="")
        assert result.exit_code == 0
        assert "Imported 0 sessions" in result.output
