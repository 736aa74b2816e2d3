"""Shared test fixtures: fake clock, in-memory store, fake git, wired guardian."""

import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from forgeguard.config import GuardianConfig
from forgeguard.guardian import Guardian
from forgeguard.state_store import MemoryStore


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGit:
    """Stands in for GitWorktrees: creates plain directories and records calls."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.created = []
        self.removed = []

    def create(self, path: Path, branch: str, base_ref: str = "HEAD") -> None:
        from forgeguard.errors import WorkspaceError

        if self.fail:
            raise WorkspaceError("git worktree add failed")
        Path(path).mkdir(parents=True, exist_ok=True)
        self.created.append((str(path), branch, base_ref))

    def remove(self, path: Path, branch: str) -> None:
        shutil.rmtree(path, ignore_errors=True)
        self.removed.append((str(path), branch))

    def exists(self, path: Path) -> bool:
        return Path(path).exists()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep host environment variables out of guardian decisions."""
    for name in ("FORGEGUARD_WORKSPACE_ID", "FORGEGUARD_PROJECT_DIR", "CLAUDE_PROJECT_DIR"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    project.mkdir()
    return project.resolve()


@pytest.fixture
def config() -> GuardianConfig:
    return GuardianConfig()


@pytest.fixture
def guardian(project_dir, config, store, clock, fake_git) -> Guardian:
    """Guardian on a temp project with in-memory state and fake worktrees."""
    g = Guardian(project_dir, config=config, store=store, clock=clock)
    g.workspaces.git = fake_git
    return g


@pytest.fixture
def failing_git() -> FakeGit:
    return FakeGit(fail=True)
