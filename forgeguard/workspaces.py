"""
Workspace Coordinator
=====================

Maps work entities (tasks, issues) to isolated checkouts so concurrent sessions
never write into each other's files.

Each entity has at most one active association: a branch plus a worktree
directory under ``<base_dir>/<entity_id>``. Allocation is a guarded re-check
inside one cross-process critical section on the ``workspaces`` document, so
two sessions racing for the same entity end up sharing one checkout instead of
creating two.

Associations also carry the entity's area labels, letting callers ask which
active workspaces overlap a new task before starting it in parallel.
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from forgeguard.audit import AuditLog, CATEGORY_WORKSPACE
from forgeguard.config import WorkspaceConfig
from forgeguard.errors import StateCorruptionError, WorkspaceError
from forgeguard.git_ops import GitWorktrees
from forgeguard.state_store import StateStore
from forgeguard.timeutil import parse_iso, to_iso, utc_now

log = logging.getLogger(__name__)

WORKSPACES_KEY = "workspaces"
ENTITY_ID_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{0,63}$")


def validate_entity_id(entity_id: str) -> str:
    """
    Check that an entity id is safe to use as a branch and directory name.

    Raises:
        WorkspaceError: The id is empty, too long or contains unsafe characters
    """
    if not isinstance(entity_id, str) or not ENTITY_ID_RE.match(entity_id) or ".." in entity_id:
        raise WorkspaceError(
            f"Invalid entity id {entity_id!r}: use 1-64 lowercase letters, digits, '.', '_' or '-'"
        )
    return entity_id


@dataclass
class WorkspaceAssociation:
    """An entity's isolated checkout."""
    entity_id: str
    workspace_id: str
    branch: str
    path: str
    created_at: str
    last_activity_at: str
    labels: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "WorkspaceAssociation":
        try:
            return cls(
                entity_id=str(data["entity_id"]),
                workspace_id=str(data.get("workspace_id", data["entity_id"])),
                branch=str(data["branch"]),
                path=str(data["path"]),
                created_at=str(data["created_at"]),
                last_activity_at=str(data.get("last_activity_at", data["created_at"])),
                labels=[str(label) for label in data.get("labels", [])],
            )
        except (KeyError, TypeError) as e:
            raise StateCorruptionError(WORKSPACES_KEY, f"malformed association: {e}") from e

    def idle_for(self, now: datetime) -> timedelta:
        last = parse_iso(self.last_activity_at) or parse_iso(self.created_at)
        if last is None:
            return timedelta.max
        return now - last


def _associations(document: Optional[dict]) -> Dict[str, dict]:
    if document is None:
        return {}
    associations = document.get("associations", {})
    if not isinstance(associations, dict):
        raise StateCorruptionError(WORKSPACES_KEY, "associations must be an object")
    return associations


class WorkspaceCoordinator:
    """
    Allocates, resolves and reclaims isolated workspaces.

    Args:
        project_dir: Root of the main checkout
        store: State store holding the ``workspaces`` document
        config: Workspace settings (base dir, branch prefix, base ref)
        git: Checkout backend (defaults to git worktrees in project_dir)
        audit: Optional audit log for lifecycle events
        clock: Returns the current time (UTC)
    """

    def __init__(
        self,
        project_dir: Path,
        store: StateStore,
        config: Optional[WorkspaceConfig] = None,
        git: Optional[GitWorktrees] = None,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.project_dir = Path(project_dir)
        self.store = store
        self.config = config or WorkspaceConfig()
        self.git = git or GitWorktrees(self.project_dir)
        self.audit = audit
        self.clock = clock

    @property
    def base_path(self) -> Path:
        base = Path(self.config.base_dir)
        return base if base.is_absolute() else self.project_dir / base

    def workspace_path(self, entity_id: str) -> Path:
        return self.base_path / entity_id

    def branch_name(self, entity_id: str) -> str:
        return f"{self.config.branch_prefix}{entity_id}"

    def get_or_create(self, entity_id: str, labels: Optional[Iterable[str]] = None) -> WorkspaceAssociation:
        """
        Return the entity's workspace, creating it if none exists.

        An existing association has its activity time refreshed (and its
        labels extended with any new ones).

        Raises:
            WorkspaceError: Invalid entity id or checkout creation failed
            StateCorruptionError: The workspaces document is unreadable
        """
        validate_entity_id(entity_id)
        labels = sorted(set(labels or []))
        result = {}

        def modifier(document: Optional[dict]) -> dict:
            associations = _associations(document)
            now = to_iso(self.clock())

            if entity_id in associations:
                association = WorkspaceAssociation.from_dict(associations[entity_id])
                association.last_activity_at = now
                association.labels = sorted(set(association.labels) | set(labels))
                result["created"] = False
            else:
                path = self.workspace_path(entity_id)
                branch = self.branch_name(entity_id)
                self.git.create(path, branch, self.config.base_ref)
                association = WorkspaceAssociation(
                    entity_id=entity_id,
                    workspace_id=entity_id,
                    branch=branch,
                    path=str(path),
                    created_at=now,
                    last_activity_at=now,
                    labels=labels,
                )
                result["created"] = True

            associations[entity_id] = association.to_dict()
            result["association"] = association
            return {"associations": associations}

        self.store.update(WORKSPACES_KEY, modifier)

        association = result["association"]
        if result["created"]:
            log.info("Created workspace '%s' at %s", entity_id, association.path)
            self._audit("created", association)
        return association

    def resolve_for_entity(self, entity_id: str) -> Optional[WorkspaceAssociation]:
        """Look up an entity's active workspace without modifying anything."""
        associations = _associations(self.store.get(WORKSPACES_KEY))
        data = associations.get(entity_id)
        return WorkspaceAssociation.from_dict(data) if data else None

    def resolve_workspace(self, workspace_id: str) -> Optional[WorkspaceAssociation]:
        """Look up an active workspace by its workspace id."""
        for association in self.list_associations():
            if association.workspace_id == workspace_id:
                return association
        return None

    def list_associations(self) -> List[WorkspaceAssociation]:
        associations = _associations(self.store.get(WORKSPACES_KEY))
        return [WorkspaceAssociation.from_dict(data) for data in associations.values()]

    def touch(self, entity_id: str) -> bool:
        """Refresh an association's activity time. Returns False if none exists."""
        touched = {}

        def modifier(document: Optional[dict]) -> Optional[dict]:
            associations = _associations(document)
            if entity_id in associations:
                associations[entity_id]["last_activity_at"] = to_iso(self.clock())
                touched["ok"] = True
            return {"associations": associations} if document is not None else None

        self.store.update(WORKSPACES_KEY, modifier)
        return bool(touched)

    def release(self, entity_id: str) -> bool:
        """
        Remove an entity's checkout and branch and forget the association.

        Idempotent: releasing an entity with no workspace returns False.
        """
        released = []

        def modifier(document: Optional[dict]) -> Optional[dict]:
            associations = _associations(document)
            data = associations.pop(entity_id, None)
            if data is not None:
                released.append(WorkspaceAssociation.from_dict(data))
            return {"associations": associations} if document is not None else None

        self.store.update(WORKSPACES_KEY, modifier)

        # git runs outside the critical section; removal is best-effort
        for association in released:
            self.git.remove(Path(association.path), association.branch)
            log.info("Released workspace '%s'", entity_id)
            self._audit("released", association)
        return bool(released)

    def cleanup_stale(self, max_idle: Optional[timedelta] = None) -> List[str]:
        """
        Release every workspace idle for longer than ``max_idle``.

        Args:
            max_idle: Idle threshold (defaults to config.max_idle_hours)

        Returns:
            Entity ids that were released
        """
        if max_idle is None:
            max_idle = timedelta(hours=self.config.max_idle_hours)
        released = []

        def modifier(document: Optional[dict]) -> Optional[dict]:
            associations = _associations(document)
            now = self.clock()
            for entity_id in list(associations):
                association = WorkspaceAssociation.from_dict(associations[entity_id])
                if association.idle_for(now) > max_idle:
                    del associations[entity_id]
                    released.append(association)
            return {"associations": associations} if document is not None else None

        self.store.update(WORKSPACES_KEY, modifier)

        for association in released:
            self.git.remove(Path(association.path), association.branch)
            log.info("Reclaimed idle workspace '%s'", association.entity_id)
            self._audit("reclaimed", association)
        return [a.entity_id for a in released]

    def overlapping(self, labels: Iterable[str], exclude: Optional[str] = None) -> List[WorkspaceAssociation]:
        """Active workspaces sharing at least one area label with ``labels``."""
        wanted = {label for label in labels if label.startswith("area:")}
        if not wanted:
            return []
        return [
            association
            for association in self.list_associations()
            if association.entity_id != exclude and wanted & set(association.labels)
        ]

    def _audit(self, action: str, association: WorkspaceAssociation) -> None:
        if self.audit is not None:
            self.audit.record(
                CATEGORY_WORKSPACE,
                action,
                target=association.path,
                actor="guardian",
                details={"entity_id": association.entity_id, "branch": association.branch},
                workspace_id=association.workspace_id,
            )
