"""
Tests for the Workspace Coordinator
===================================

Tests for forgeguard/workspaces.py and the git worktree backend.
"""

import shutil
import subprocess
import threading
from datetime import timedelta

import pytest

from forgeguard.audit import AuditLog, CATEGORY_WORKSPACE
from forgeguard.config import WorkspaceConfig
from forgeguard.errors import StateCorruptionError, WorkspaceError
from forgeguard.git_ops import GitWorktrees, current_workspace_id
from forgeguard.state_store import JsonFileStore
from forgeguard.workspaces import WORKSPACES_KEY, WorkspaceCoordinator, validate_entity_id


@pytest.fixture
def coordinator(project_dir, store, fake_git, clock):
    return WorkspaceCoordinator(project_dir, store, WorkspaceConfig(), git=fake_git, audit=AuditLog(store), clock=clock)


class TestValidateEntityId:
    """Tests for validate_entity_id()."""

    @pytest.mark.parametrize("entity_id", ["task-1", "issue_42", "feat.login", "a"])
    def test_valid(self, entity_id):
        assert validate_entity_id(entity_id) == entity_id

    @pytest.mark.parametrize("entity_id", ["", "Task-1", "../escape", "a/b", "-lead", "x" * 65, "a..b", None])
    def test_invalid(self, entity_id):
        with pytest.raises(WorkspaceError):
            validate_entity_id(entity_id)


class TestGetOrCreate:
    """Tests for get_or_create()."""

    def test_creates_workspace(self, coordinator, fake_git, project_dir):
        """Test that a new entity gets a branch and checkout."""
        association = coordinator.get_or_create("task-1", labels=["area:api"])

        assert association.entity_id == "task-1"
        assert association.workspace_id == "task-1"
        assert association.branch == "forgeguard/task-1"
        assert association.path == str(project_dir / ".worktrees" / "task-1")
        assert association.labels == ["area:api"]
        assert fake_git.created == [(association.path, "forgeguard/task-1", "HEAD")]

    def test_idempotent(self, coordinator, fake_git, clock):
        """Test that a second call returns the same workspace without creating another."""
        first = coordinator.get_or_create("task-1")
        clock.advance(minutes=5)
        second = coordinator.get_or_create("task-1", labels=["area:ui"])

        assert second.path == first.path
        assert second.created_at == first.created_at
        assert second.last_activity_at != first.last_activity_at
        assert second.labels == ["area:ui"]
        assert len(fake_git.created) == 1

    def test_concurrent_callers_share_one_workspace(self, coordinator, fake_git):
        """Test that racing allocations create exactly one checkout."""
        results = []
        barrier = threading.Barrier(6)

        def allocate():
            barrier.wait()
            results.append(coordinator.get_or_create("task-1"))

        threads = [threading.Thread(target=allocate) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(fake_git.created) == 1
        assert len({r.path for r in results}) == 1

    def test_creation_failure_leaves_no_association(self, project_dir, store, clock, failing_git):
        """Test that a failed checkout is not recorded."""
        failing = WorkspaceCoordinator(project_dir, store, git=failing_git, clock=clock)
        with pytest.raises(WorkspaceError):
            failing.get_or_create("task-1")
        assert failing.resolve_for_entity("task-1") is None

    def test_invalid_entity_rejected(self, coordinator, fake_git):
        """Test that unsafe ids never reach git."""
        with pytest.raises(WorkspaceError):
            coordinator.get_or_create("../../etc")
        assert fake_git.created == []

    def test_corrupted_state_raises(self, coordinator, store):
        """Test that unreadable workspace state is not silently replaced."""
        store.set_raw("workspaces", "not json")
        with pytest.raises(StateCorruptionError):
            coordinator.get_or_create("task-1")

    def test_audited(self, coordinator, store):
        """Test that creation is audited once."""
        coordinator.get_or_create("task-1")
        coordinator.get_or_create("task-1")
        actions = [e.action for e in AuditLog(store).entries(category=CATEGORY_WORKSPACE)]
        assert actions == ["created"]


class TestResolve:
    """Tests for lookups."""

    def test_resolve_for_entity(self, coordinator):
        coordinator.get_or_create("task-1")
        assert coordinator.resolve_for_entity("task-1").branch == "forgeguard/task-1"
        assert coordinator.resolve_for_entity("task-2") is None

    def test_resolve_workspace(self, coordinator):
        coordinator.get_or_create("task-1")
        assert coordinator.resolve_workspace("task-1").entity_id == "task-1"
        assert coordinator.resolve_workspace("nope") is None

    def test_list_associations(self, coordinator):
        coordinator.get_or_create("task-1")
        coordinator.get_or_create("task-2")
        assert sorted(a.entity_id for a in coordinator.list_associations()) == ["task-1", "task-2"]

    def test_touch(self, coordinator, clock):
        """Test refreshing activity time."""
        created = coordinator.get_or_create("task-1")
        clock.advance(hours=1)
        assert coordinator.touch("task-1") is True
        assert coordinator.resolve_for_entity("task-1").last_activity_at != created.last_activity_at
        assert coordinator.touch("task-9") is False


class TestRelease:
    """Tests for release() and cleanup_stale()."""

    def test_release(self, coordinator, fake_git):
        """Test that release removes checkout and association."""
        association = coordinator.get_or_create("task-1")
        assert coordinator.release("task-1") is True
        assert fake_git.removed == [(association.path, "forgeguard/task-1")]
        assert coordinator.resolve_for_entity("task-1") is None

    def test_release_idempotent(self, coordinator, fake_git):
        """Test that releasing twice is harmless."""
        coordinator.get_or_create("task-1")
        coordinator.release("task-1")
        assert coordinator.release("task-1") is False
        assert len(fake_git.removed) == 1

    def test_release_then_recreate(self, coordinator, fake_git):
        """Test that a released entity can be allocated again."""
        coordinator.get_or_create("task-1")
        coordinator.release("task-1")
        coordinator.get_or_create("task-1")
        assert len(fake_git.created) == 2

    def test_cleanup_stale(self, coordinator, clock):
        """Test that only idle workspaces are reclaimed."""
        coordinator.get_or_create("old-task")
        clock.advance(hours=20)
        coordinator.get_or_create("new-task")
        clock.advance(hours=5)

        released = coordinator.cleanup_stale(timedelta(hours=24))

        assert released == ["old-task"]
        assert [a.entity_id for a in coordinator.list_associations()] == ["new-task"]

    def test_cleanup_uses_config_default(self, coordinator, clock):
        """Test the configured idle threshold."""
        coordinator.get_or_create("task-1")
        clock.advance(hours=25)
        assert coordinator.cleanup_stale() == ["task-1"]

    def test_git_runs_after_association_is_forgotten(self, project_dir, tmp_path, clock):
        """Test that git removal happens outside the workspaces critical section."""
        store = JsonFileStore(tmp_path / "state")
        seen = []

        class RecordingGit:
            def create(self, path, branch, base_ref="HEAD"):
                path.mkdir(parents=True, exist_ok=True)

            def remove(self, path, branch):
                # A lock-free read shows what other sessions would see now
                seen.append(sorted(store.get(WORKSPACES_KEY)["associations"]))

        coordinator = WorkspaceCoordinator(project_dir, store, WorkspaceConfig(), git=RecordingGit(), clock=clock)
        coordinator.get_or_create("task-1")
        coordinator.get_or_create("task-2")
        clock.advance(hours=30)
        coordinator.get_or_create("task-3")

        coordinator.release("task-1")
        assert seen == [["task-2", "task-3"]]

        assert coordinator.cleanup_stale(timedelta(hours=24)) == ["task-2"]
        assert seen[-1] == ["task-3"]


class TestOverlapping:
    """Tests for area label overlap between active workspaces."""

    def test_overlapping(self, coordinator):
        coordinator.get_or_create("task-1", labels=["area:api", "type:feature"])
        coordinator.get_or_create("task-2", labels=["area:ui"])

        overlaps = coordinator.overlapping(["area:api", "area:db"])
        assert [a.entity_id for a in overlaps] == ["task-1"]

    def test_non_area_labels_ignored(self, coordinator):
        coordinator.get_or_create("task-1", labels=["type:feature"])
        assert coordinator.overlapping(["type:feature"]) == []

    def test_exclude_self(self, coordinator):
        coordinator.get_or_create("task-1", labels=["area:api"])
        assert coordinator.overlapping(["area:api"], exclude="task-1") == []


class TestCurrentWorkspaceId:
    """Tests for current_workspace_id()."""

    def test_inside_worktree_dir(self, tmp_path):
        path = tmp_path / ".worktrees" / "task-3" / "src"
        path.mkdir(parents=True)
        assert current_workspace_id(path) == "task-3"

    def test_main_checkout(self, tmp_path):
        assert current_workspace_id(tmp_path) == "main"


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestGitWorktrees:
    """Tests against a real git repository."""

    @pytest.fixture
    def repo(self, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()
        for args in (
            ["init", "-q"],
            ["config", "user.email", "dev@example.com"],
            ["config", "user.name", "Dev"],
            ["commit", "-q", "--allow-empty", "-m", "init"],
        ):
            subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)
        return repo

    def test_create_and_remove(self, repo, store, clock):
        """Test a full allocate and release cycle with git worktrees."""
        coordinator = WorkspaceCoordinator(repo, store, git=GitWorktrees(repo), clock=clock)

        association = coordinator.get_or_create("task-1")
        assert (repo / ".worktrees" / "task-1").is_dir()
        assert current_workspace_id(repo / ".worktrees" / "task-1") == "task-1"

        branches = subprocess.run(["git", "branch"], cwd=repo, capture_output=True, text=True).stdout
        assert association.branch in branches

        coordinator.release("task-1")
        assert not (repo / ".worktrees" / "task-1").exists()
