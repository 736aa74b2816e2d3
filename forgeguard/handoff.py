"""
Session Handoff
===============

Writes a durable snapshot of where a session left off, so the next session can
pick up the work: a human-readable ``HANDOFF.md`` and a structured
``handoff-state.json``, both in the guardian state directory.

Creating a handoff first archives the previous pair into ``handoff-archive/``
under timestamped names. Archived handoffs are only ever renamed into the
archive, never overwritten or deleted.
"""

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from filelock import FileLock, Timeout

from forgeguard import git_ops
from forgeguard.errors import PersistenceError
from forgeguard.session_state import SessionState
from forgeguard.timeutil import to_iso, utc_now

log = logging.getLogger(__name__)

HANDOFF_MD = "HANDOFF.md"
HANDOFF_STATE = "handoff-state.json"
ARCHIVE_DIR = "handoff-archive"

REASON_MANUAL = "manual"
REASON_CONTEXT_CRITICAL = "context_critical"
REASON_CONTEXT_FORCED = "context_forced"
REASON_SESSION_END = "session_end"
REASON_USER_REQUEST = "user_request"

REASON_TEXT = {
    REASON_MANUAL: "Manual handoff",
    REASON_CONTEXT_CRITICAL: "Context pressure critical",
    REASON_CONTEXT_FORCED: "Context pressure forced",
    REASON_SESSION_END: "Session ended",
    REASON_USER_REQUEST: "User requested",
}


@dataclass
class HandoffDocument:
    """Structured contents of a handoff."""
    created_at: str
    reason: str
    context_pressure: float
    session_id: Optional[str] = None
    branch: str = "unknown"
    commit: str = "unknown"
    current_task: Optional[str] = None
    next_actions: List[str] = field(default_factory=list)
    decisions: List[str] = field(default_factory=list)
    critical_files: List[Dict[str, str]] = field(default_factory=list)
    session_snapshot: Dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "HandoffDocument":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_markdown(self) -> str:
        """Render the handoff as markdown."""
        lines = [
            "# Session Handoff",
            "",
            f"> Generated: {self.created_at}",
            f"> Reason: {REASON_TEXT.get(self.reason, self.reason)}",
            f"> Context Used: {round(self.context_pressure * 100)}%",
            "",
            "## Current State",
            "",
            f"**Branch:** {self.branch}",
            f"**Commit:** {self.commit}",
        ]
        if self.session_id:
            lines.append(f"**Session:** {self.session_id}")
        lines.append("")

        if self.current_task:
            lines += ["## Active Task", "", self.current_task, ""]

        if self.next_actions:
            lines += ["## Next Actions", ""]
            lines += [f"{i}. {action}" for i, action in enumerate(self.next_actions, 1)]
            lines.append("")

        if self.decisions:
            lines += ["## Key Decisions", ""]
            lines += [f"- {decision}" for decision in self.decisions]
            lines.append("")

        if self.critical_files:
            lines += ["## Critical Files", "", "| File | Reason |", "|------|--------|"]
            lines += [f"| {f['path']} | {f['reason']} |" for f in self.critical_files]
            lines.append("")

        lines += ["---", "*Read this file to continue where you left off.*", ""]
        return "\n".join(lines)


def derive_next_actions(session: Optional[SessionState], uncommitted: int) -> List[str]:
    """Turn outstanding work into an ordered to-do list."""
    actions = []
    if uncommitted > 0:
        actions.append(f"Commit {uncommitted} uncommitted file(s)")
    if session is not None:
        if session.errors_detected:
            actions.append(f"Address {len(session.errors_detected)} detected error(s)")
        if session.failing_tests > 0:
            actions.append(f"Fix {session.failing_tests} failing test(s)")
        if session.untested_additions:
            actions.append(f"Run tests covering {len(session.untested_additions)} untested change(s)")
    return actions


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class HandoffManager:
    """
    Creates, archives and loads handoffs.

    Args:
        state_dir: Guardian state directory
        project_dir: Checkout used for git metadata
        clock: Returns the current time (UTC)
        lock_timeout: Seconds to wait for another process creating a handoff
    """

    def __init__(
        self,
        state_dir: Path,
        project_dir: Path,
        clock: Callable[[], datetime] = utc_now,
        lock_timeout: float = 10.0,
    ):
        self.state_dir = Path(state_dir)
        self.project_dir = Path(project_dir)
        self.clock = clock
        self.lock_timeout = lock_timeout

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Cross-process critical section around archive and write."""
        lock_dir = self.state_dir / ".locks"
        try:
            lock_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create lock directory {lock_dir}: {e}") from e

        lock = FileLock(lock_dir / "handoff.lock", timeout=self.lock_timeout)
        try:
            lock.acquire()
        except Timeout as e:
            raise PersistenceError("Timed out waiting for the handoff lock") from e
        try:
            yield
        finally:
            lock.release()

    @property
    def markdown_path(self) -> Path:
        return self.state_dir / HANDOFF_MD

    @property
    def state_path(self) -> Path:
        return self.state_dir / HANDOFF_STATE

    @property
    def archive_dir(self) -> Path:
        return self.state_dir / ARCHIVE_DIR

    def exists(self) -> bool:
        return self.markdown_path.exists() or self.state_path.exists()

    def archive_existing(self) -> List[Path]:
        """
        Move the current handoff pair into the archive.

        Returns:
            Archive paths written (empty if there was nothing to archive)
        """
        with self._locked():
            return self._archive_current()

    def _archive_current(self) -> List[Path]:
        # Caller holds the handoff lock
        if not self.exists():
            return []

        self.archive_dir.mkdir(parents=True, exist_ok=True)
        stamp = to_iso(self.clock()).replace(":", "-").replace(".", "-").replace("+", "p")

        # Same suffix for both files; bump it until neither name is taken
        suffix = ""
        counter = 0
        while (
            (self.archive_dir / f"HANDOFF-{stamp}{suffix}.md").exists()
            or (self.archive_dir / f"handoff-state-{stamp}{suffix}.json").exists()
        ):
            counter += 1
            suffix = f"-{counter}"

        archived = []
        for source, target_name in (
            (self.markdown_path, f"HANDOFF-{stamp}{suffix}.md"),
            (self.state_path, f"handoff-state-{stamp}{suffix}.json"),
        ):
            if source.exists():
                target = self.archive_dir / target_name
                os.replace(source, target)
                archived.append(target)
        log.info("Archived previous handoff (%d files)", len(archived))
        return archived

    def create(
        self,
        reason: str = REASON_MANUAL,
        session: Optional[SessionState] = None,
        context_pressure: float = 0.0,
        current_task: Optional[str] = None,
    ) -> HandoffDocument:
        """
        Archive any existing handoff and write a new one.

        Args:
            reason: Why the handoff is being created
            session: State of the session being handed off
            context_pressure: Pressure at creation time
            current_task: Description of the work in progress

        Returns:
            The HandoffDocument written
        """
        if reason not in REASON_TEXT:
            raise ValueError(f"Unknown handoff reason '{reason}'")

        if session is not None:
            uncommitted = session.files_changed
        else:
            uncommitted = len(git_ops.uncommitted_files(self.project_dir))

        if session is not None and session.recent_files:
            critical = [{"path": p, "reason": "Modified this session"} for p in reversed(session.recent_files)]
        else:
            critical = [
                {"path": p, "reason": "Recently modified"}
                for p in git_ops.recently_changed_files(self.project_dir)
            ]

        document = HandoffDocument(
            created_at=to_iso(self.clock()),
            reason=reason,
            context_pressure=round(float(context_pressure), 4),
            session_id=session.session_id if session else None,
            branch=git_ops.current_branch(self.project_dir),
            commit=git_ops.short_commit(self.project_dir),
            current_task=current_task or (session.current_task if session else None),
            next_actions=derive_next_actions(session, uncommitted),
            decisions=list(session.decisions) if session else [],
            critical_files=critical[:15],
            session_snapshot=session.to_dict() if session else {},
        )

        with self._locked():
            self._archive_current()
            _atomic_write_text(self.state_path, json.dumps(document.to_dict(), indent=2) + "\n")
            _atomic_write_text(self.markdown_path, document.to_markdown())
        log.info("Created handoff (%s) at %s", reason, self.markdown_path)
        return document

    def load(self) -> Optional[HandoffDocument]:
        """Load the current handoff, or None if absent or unreadable."""
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Could not read handoff state: %s", e)
            return None
        if not isinstance(data, dict):
            return None
        try:
            return HandoffDocument.from_dict(data)
        except TypeError as e:
            log.warning("Malformed handoff state: %s", e)
            return None

    def detection_message(self) -> Optional[str]:
        """Notice for a new session that a handoff is waiting, if one is."""
        document = self.load()
        if document is None:
            return None
        return (
            f"A handoff from {document.created_at} ({REASON_TEXT.get(document.reason, document.reason)}) "
            f"is available at {self.markdown_path}. Read it to continue where the previous session left off."
        )

    def list_archive(self) -> List[Path]:
        """Archived handoff files, oldest first."""
        if not self.archive_dir.exists():
            return []
        return sorted(self.archive_dir.iterdir(), key=lambda p: (p.stat().st_mtime, p.name))
