"""
Tests for Session State Tracking
================================

Tests for forgeguard/session_state.py
"""

import pytest

from forgeguard.session_state import (
    MAX_ERRORS,
    SessionState,
    SessionStateManager,
    is_test_file,
)


@pytest.fixture
def sessions(store, clock):
    manager = SessionStateManager(store, clock=clock)
    manager.start_session("s1")
    return manager


class TestSessionState:
    """Tests for the SessionState dataclass."""

    def test_round_trip_ignores_unknown_fields(self):
        state = SessionState(session_id="s1", started_at="2026-01-05T09:00:00+00:00", files_changed=3)
        data = state.to_dict()
        data["legacy_field"] = True
        restored = SessionState.from_dict(data)
        assert restored.files_changed == 3

    def test_minutes_since_commit_falls_back_to_start(self, clock):
        state = SessionState(session_id="s1", started_at=clock().isoformat())
        clock.advance(minutes=12)
        assert state.minutes_since_commit(clock()) == pytest.approx(12)
        assert state.minutes_since_test(clock()) == pytest.approx(12)


class TestStartAndEnd:
    """Tests for session lifecycle."""

    def test_start_fresh(self, sessions):
        state = sessions.load()
        assert state.session_id == "s1"
        assert state.files_changed == 0
        assert state.tool_uses == 0

    def test_start_archives_previous(self, sessions):
        sessions.record_tool_outcome("Write", {"file_path": "src/a.py"})
        sessions.start_session("s2")

        history = sessions.history()
        assert len(history) == 1
        assert history[0]["session_id"] == "s1"
        assert history[0]["end_reason"] == "superseded"
        assert sessions.load().files_changed == 0

    def test_end_session(self, sessions):
        ended = sessions.end_session("handoff")
        assert ended.session_id == "s1"
        assert sessions.load() is None
        assert sessions.history()[-1]["end_reason"] == "handoff"

    def test_end_without_session(self, store, clock):
        assert SessionStateManager(store, clock=clock).end_session() is None

    def test_current_starts_session(self, store, clock):
        state = SessionStateManager(store, clock=clock).current()
        assert state.session_id

    def test_generated_session_id(self, store, clock):
        state = SessionStateManager(store, clock=clock).start_session()
        assert len(state.session_id) == 12


class TestRecordToolOutcome:
    """Tests for record_tool_outcome()."""

    def test_write_counts_files(self, sessions):
        sessions.record_tool_outcome("Write", {"file_path": "src/app.py"})
        sessions.record_tool_outcome("Edit", {"file_path": "src/app.py"})
        state = sessions.record_tool_outcome("Edit", {"file_path": "src/util.py"})

        assert state.files_changed == 2
        assert state.changed_files == ["src/app.py", "src/util.py"]
        assert state.recent_files == ["src/app.py", "src/util.py"]
        assert state.untested_additions == ["src/app.py", "src/util.py"]
        assert state.tool_uses == 3
        assert state.last_tool == "Edit"

    def test_test_files_not_untested(self, sessions):
        state = sessions.record_tool_outcome("Write", {"file_path": "tests/test_app.py"})
        assert state.files_changed == 1
        assert state.untested_additions == []

    def test_non_source_files_not_untested(self, sessions):
        state = sessions.record_tool_outcome("Write", {"file_path": "README.md"})
        assert state.untested_additions == []

    def test_failed_write_not_counted(self, sessions):
        state = sessions.record_tool_outcome(
            "Write", {"file_path": "src/app.py"}, {"is_error": True, "error": "Permission denied"}
        )
        assert state.files_changed == 0
        assert state.errors_detected == ["Permission denied"]

    def test_commit_resets_changes(self, sessions, clock):
        sessions.record_tool_outcome("Write", {"file_path": "src/app.py"})
        clock.advance(minutes=3)
        state = sessions.record_tool_outcome("Bash", {"command": "git add -A && git commit -m 'wip'"})

        assert state.files_changed == 0
        assert state.changed_files == []
        assert state.last_commit_at == clock().isoformat()
        assert state.minutes_since_commit(clock()) == 0

    def test_failed_commit_keeps_changes(self, sessions):
        sessions.record_tool_outcome("Write", {"file_path": "src/app.py"})
        state = sessions.record_tool_outcome(
            "Bash", {"command": "git commit -m x"}, {"stderr": "nothing to commit", "exit_code": 1}
        )
        assert state.files_changed == 1

    def test_failing_test_run(self, sessions):
        sessions.record_tool_outcome("Write", {"file_path": "src/app.py"})
        state = sessions.record_tool_outcome(
            "Bash", {"command": "pytest -q"}, {"stdout": "3 failed, 10 passed in 1.2s", "exit_code": 1}
        )

        assert state.last_test_at is not None
        assert state.untested_additions == []
        assert state.failing_tests == 3
        assert state.errors_detected == ["3 failed, 10 passed in 1.2s"]

    def test_passing_test_run_clears_errors(self, sessions):
        sessions.record_tool_outcome("Bash", {"command": "npm run build"}, {"stderr": "boom", "exit_code": 2})
        state = sessions.record_tool_outcome("Bash", {"command": "npm test"}, {"stdout": "12 passed", "exit_code": 0})

        assert state.failing_tests == 0
        assert state.errors_detected == []

    def test_errors_capped(self, sessions):
        for i in range(MAX_ERRORS + 5):
            state = sessions.record_tool_outcome("Bash", {"command": "make"}, {"stderr": f"error {i}", "exit_code": 1})
        assert len(state.errors_detected) == MAX_ERRORS
        assert state.errors_detected[-1] == f"error {MAX_ERRORS + 4}"

    def test_failure_without_output(self, sessions):
        state = sessions.record_tool_outcome("Read", {"file_path": "x"}, {"is_error": True})
        assert state.errors_detected == ["Read failed"]

    def test_string_and_missing_input(self, sessions):
        state = sessions.record_tool_outcome("Glob", None, "a.py\nb.py")
        assert state.tool_uses == 1

    def test_corrupted_state_replaced(self, sessions, store):
        store.set_raw("session-state", "{bad")
        assert sessions.load() is None
        state = sessions.record_tool_outcome("Write", {"file_path": "src/app.py"})
        assert state.files_changed == 1


class TestUpdates:
    """Tests for update helpers."""

    def test_update_fields(self, sessions):
        state = sessions.update(context_pressure=0.42, unknown_field="ignored")
        assert state.context_pressure == 0.42
        assert not hasattr(state, "unknown_field")

    def test_decisions_and_task(self, sessions):
        sessions.set_task("task-7: login form")
        state = sessions.record_decision("Use server actions for the form")
        assert state.current_task == "task-7: login form"
        assert state.decisions == ["Use server actions for the form"]

    def test_clear_errors(self, sessions):
        sessions.record_tool_outcome("Bash", {"command": "make"}, {"stderr": "boom", "exit_code": 1})
        assert sessions.clear_errors().errors_detected == []


class TestIsTestFile:
    """Tests for is_test_file()."""

    @pytest.mark.parametrize("path,expected", [
        ("tests/test_app.py", True),
        ("pkg/test_util.py", True),
        ("src/app.test.ts", True),
        ("src/app.spec.tsx", True),
        ("pkg/server_test.go", True),
        ("src/app.py", False),
        ("src/contest.py", False),
    ])
    def test_is_test_file(self, path, expected):
        assert is_test_file(path) is expected
