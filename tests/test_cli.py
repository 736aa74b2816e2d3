"""
Tests for the Guardian CLI
==========================

Tests for forgeguard/cli/guardian_cli.py
"""

import io
import json

import pytest

from forgeguard.cli.guardian_cli import build_parser, main
from forgeguard.guardian import Guardian


@pytest.fixture
def run(project_dir, monkeypatch, capsys):
    """Run the CLI against the temp project and return (exit code, stdout)."""
    monkeypatch.chdir(project_dir)

    def _run(*argv, stdin=None):
        if stdin is not None:
            monkeypatch.setattr("sys.stdin", io.StringIO(stdin))
        code = main(["--project-dir", str(project_dir), *argv])
        return code, capsys.readouterr().out

    return _run


class TestParser:
    """Tests for argument parsing."""

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "forgeguard" in capsys.readouterr().out

    def test_project_dir_default(self):
        args = build_parser().parse_args(["audit"])
        assert args.project_dir is None
        assert args.limit == 50


class TestHookCommand:
    """Tests for `forgeguard hook`."""

    def test_pre_blocks(self, run):
        payload = {"tool_name": "Bash", "tool_input": {"command": "rm -rf /"}}
        code, out = run("hook", "pre", stdin=json.dumps(payload))
        assert code == 0
        assert json.loads(out)["decision"] == "block"

    def test_pre_allows(self, run):
        payload = {"tool_name": "Read", "tool_input": {"file_path": "README.md"}}
        code, out = run("hook", "pre", stdin=json.dumps(payload))
        assert json.loads(out) == {}

    def test_pre_invalid_json_blocks(self, run):
        _, out = run("hook", "pre", stdin="{not json")
        response = json.loads(out)
        assert response["decision"] == "block"
        assert "Malformed" in response["reason"]

    def test_post_records_outcome(self, run, project_dir):
        payload = {"tool_name": "Write", "tool_input": {"file_path": "src/app.py", "content": ""}}
        code, out = run("hook", "post", stdin=json.dumps(payload))
        assert code == 0
        assert json.loads(out) == {}
        assert Guardian(project_dir).sessions.load().files_changed == 1


class TestCheckCommand:
    """Tests for `forgeguard check`."""

    def test_dangerous_command(self, run):
        code, out = run("check", "command", "rm -rf /")
        assert code == 2
        assert "catastrophic_deletion" in out

    def test_safe_command(self, run):
        code, _ = run("check", "command", "ls -la")
        assert code == 0

    def test_protected_path(self, run):
        code, out = run("check", "path", ".env")
        assert code == 2
        assert "protected_path" in out

    def test_ordinary_path(self, run):
        code, _ = run("check", "path", "src/app.py", "--op", "edit")
        assert code == 0


class TestLockCommand:
    """Tests for `forgeguard lock`."""

    def test_lock_lifecycle(self, run):
        assert run("lock", "status")[0] == 0
        assert run("lock", "acquire", "--holder", "task-1", "--operation", "migrate")[0] == 0

        code, out = run("lock", "acquire", "--holder", "task-2")
        assert code == 1
        assert "task-1" in out

        code, out = run("lock", "status")
        assert code == 0
        assert "task-1" in out

        assert run("lock", "release", "--holder", "task-2")[0] == 1
        assert run("lock", "release", "--holder", "task-1")[0] == 0
        assert run("lock", "acquire", "--holder", "task-2")[0] == 0

    def test_acquire_ttl(self, run):
        assert run("lock", "acquire", "--holder", "task-1", "--ttl=-5")[0] == 1
        assert run("lock", "acquire", "--holder", "task-1", "--ttl", "0")[0] == 0
        assert "unlocked" in run("lock", "status")[1]


class TestWorkspaceCommand:
    """Tests for `forgeguard workspace` that need no git."""

    def test_list_empty(self, run):
        code, out = run("workspace", "list")
        assert code == 0
        assert "No active workspaces" in out

    def test_release_unknown(self, run):
        assert run("workspace", "release", "task-9")[0] == 1

    def test_invalid_entity_id(self, run):
        assert run("workspace", "create", "../escape")[0] == 1


class TestLabelsCommand:
    """Tests for `forgeguard labels`."""

    def test_analyze_paths(self, run):
        code, out = run("labels", "analyze", "prisma/schema.prisma", "src/app/api/users/route.ts", "--json")
        assert code == 0
        data = json.loads(out)
        assert data["area_labels"] == ["area:db", "area:api"]
        assert data["files"] == ["prisma/schema.prisma", "src/app/api/users/route.ts"]

    def test_analyze_nothing(self, run):
        assert run("labels", "analyze")[0] == 1

    def test_parallel_conflicts(self, run, tmp_path):
        tasks_file = tmp_path / "tasks.json"
        tasks_file.write_text(json.dumps([
            {"id": 1, "labels": ["area:db"]},
            {"id": 2, "labels": ["area:db", "area:api"]},
            {"id": 3, "labels": ["area:ui"]},
        ]))

        code, out = run("labels", "parallel", str(tasks_file), "--json")

        assert code == 1
        data = json.loads(out)
        assert data["safe"] is False
        assert data["conflicts"] == [{"task_a": 1, "task_b": 2, "shared_areas": ["area:db"]}]
        assert data["parallel_tasks"] == [3]

    def test_parallel_safe(self, run, tmp_path):
        tasks_file = tmp_path / "tasks.json"
        tasks_file.write_text(json.dumps([
            {"id": 1, "labels": ["area:db"]},
            {"id": 2, "labels": ["area:ui"]},
        ]))
        code, out = run("labels", "parallel", str(tasks_file))
        assert code == 0
        assert "in parallel" in out


class TestNudgesCommand:
    """Tests for `forgeguard nudges`."""

    def test_mute_and_unmute(self, run, project_dir):
        assert run("nudges", "mute", "commit")[0] == 0
        assert Guardian(project_dir).nudges.state().muted == ["commit"]
        assert run("nudges", "unmute", "commit")[0] == 0
        assert Guardian(project_dir).nudges.state().muted == []

    def test_tick_without_nudges(self, run):
        code, out = run("nudges", "tick")
        assert code == 0
        assert "No nudges" in out


class TestPressureAndHandoff:
    """Tests for `forgeguard pressure` and `forgeguard handoff`."""

    def test_blocking_pressure_until_handoff(self, run, project_dir):
        code, out = run("pressure", "consult", "everything about auth", "--excerpts", "100")
        assert code == 2
        assert "FORCE" in out

        assert run("check", "path", "src/app.py")[0] == 2

        code, out = run("handoff", "create", "--reason", "context_forced")
        assert code == 0
        assert (project_dir / ".forgeguard" / "HANDOFF.md").exists()

        assert run("check", "path", "src/app.py")[0] == 0
        assert run("handoff", "show")[0] == 0

    def test_status(self, run):
        code, out = run("pressure", "status")
        assert code == 0
        assert "0%" in out

    def test_show_without_handoff(self, run):
        assert run("handoff", "show")[0] == 1

    def test_list_archive(self, run):
        run("handoff", "create")
        run("handoff", "create")
        code, out = run("handoff", "list")
        assert code == 0
        assert "Archived Handoffs (2)" in out


class TestSessionAndAudit:
    """Tests for `forgeguard session` and `forgeguard audit`."""

    def test_session_lifecycle(self, run):
        code, out = run("session", "start", "--session-id", "s1")
        assert code == 0
        assert "Session s1 started" in out

        code, out = run("session", "end")
        assert code == 0
        assert "Session s1 ended" in out

        _, out = run("session", "end")
        assert "No active session" in out

    def test_audit_shows_blocked_action(self, run):
        _, out = run("audit")
        assert "No audit entries" in out

        run("hook", "pre", stdin=json.dumps({"tool_name": "Write", "tool_input": {"file_path": ".env"}}))
        code, out = run("audit", "--category", "gate")
        assert code == 0
        assert "blocked" in out
