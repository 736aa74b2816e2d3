"""
Guardian
========

Wires the coordination components together for one project: state store,
audit log, resource locks, workspaces, session tracking, context pressure,
handoffs, nudges and the admission gate.

Hooks and the CLI build a Guardian per invocation; all shared state lives in
the store, so independent processes see the same picture.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from forgeguard.audit import AuditLog, CATEGORY_SESSION
from forgeguard.config import GuardianConfig
from forgeguard.context_pressure import ContextLedgerManager, PressureMonitor, Severity, WatchdogEvaluation
from forgeguard.handoff import HandoffDocument, HandoffManager
from forgeguard.labeling import AreaLabel, DEFAULT_AREA_LABELS
from forgeguard.nudges import Nudge, NudgeEngine
from forgeguard.resource_lock import ResourceLockManager
from forgeguard.security import AdmissionGate, Decision
from forgeguard.session_state import SessionState, SessionStateManager
from forgeguard.state_store import StateStore, open_store
from forgeguard.timeutil import utc_now
from forgeguard.workspaces import WorkspaceCoordinator

log = logging.getLogger(__name__)


@dataclass
class SessionStart:
    """Result of starting a session."""
    session: SessionState
    handoff_notice: Optional[str] = None


@dataclass
class SessionEnd:
    """Result of ending a session."""
    session: Optional[SessionState]
    evaluation: WatchdogEvaluation
    handoff: Optional[HandoffDocument] = None


@dataclass
class ToolOutcome:
    """What the guardian has to say after a tool ran."""
    session: SessionState
    evaluation: WatchdogEvaluation
    nudges: List[Nudge] = field(default_factory=list)

    @property
    def messages(self) -> List[str]:
        messages = [nudge.message for nudge in self.nudges]
        if self.evaluation.severity >= Severity.CRITICAL:
            messages.append(self.evaluation.message)
        return messages


class Guardian:
    """
    Coordination core for one project checkout.

    Args:
        project_dir: Root of the main checkout
        config: Configuration (loaded from the project if omitted)
        store: State store (opened from the config if omitted)
        clock: Returns the current time (UTC)
    """

    def __init__(
        self,
        project_dir: Path,
        config: Optional[GuardianConfig] = None,
        store: Optional[StateStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.project_dir = Path(project_dir).resolve()
        self.config = config or GuardianConfig.load(self.project_dir)
        self.state_dir = self.config.state_path(self.project_dir)
        self.store = store or open_store(
            self.state_dir,
            backend=self.config.store_backend,
            lock_timeout=self.config.lock_timeout_seconds,
        )
        self.clock = clock

        self.audit = AuditLog(self.store)
        self.locks = ResourceLockManager(
            self.store,
            default_ttl=timedelta(minutes=self.config.lock.ttl_minutes),
            audit=self.audit,
            clock=clock,
        )
        self.workspaces = WorkspaceCoordinator(
            self.project_dir, self.store, self.config.workspaces, audit=self.audit, clock=clock
        )
        self.sessions = SessionStateManager(self.store, clock=clock)
        self.ledger = ContextLedgerManager(self.store, clock=clock)
        self.handoffs = HandoffManager(
            self.state_dir, self.project_dir, clock=clock, lock_timeout=self.config.lock_timeout_seconds
        )
        self.monitor = PressureMonitor(
            self.store,
            self.config.pressure,
            self.sessions,
            self.handoffs,
            ledger=self.ledger,
            audit=self.audit,
            clock=clock,
        )
        self.nudges = NudgeEngine(self.store, self.config.nudges, clock=clock)
        self.gate = AdmissionGate(
            self.project_dir, self.config, self.locks, self.workspaces, self.monitor, audit=self.audit
        )

    @classmethod
    def for_project(cls, project_dir: Optional[Path] = None) -> "Guardian":
        return cls(Path(project_dir) if project_dir else Path.cwd())

    # -- admission -------------------------------------------------------------

    def admit(self, payload: Any) -> Decision:
        """Evaluate a pre-tool-use hook payload."""
        return self.gate.evaluate_payload(payload)

    # -- session lifecycle -----------------------------------------------------

    def start_session(self, session_id: Optional[str] = None) -> SessionStart:
        """
        Begin a session: fresh session state, ledger and cooldowns.

        Returns:
            The new session and a notice if a handoff is waiting
        """
        session = self.sessions.start_session(session_id)
        self.monitor.reset(session.session_id)
        self.nudges.reset()
        self.audit.record(CATEGORY_SESSION, "started", target=session.session_id, session_id=session.session_id)
        return SessionStart(session=session, handoff_notice=self.handoffs.detection_message())

    def end_session(self, reason: str = "session_end") -> SessionEnd:
        """Run the end-of-session handoff check, then archive the session."""
        evaluation, handoff = self.monitor.end_session()
        session = self.sessions.end_session(reason)
        if session is not None:
            self.audit.record(
                CATEGORY_SESSION,
                "ended",
                target=session.session_id,
                details={"reason": reason, "handoff": handoff.reason if handoff else None},
                session_id=session.session_id,
            )
        return SessionEnd(session=session, evaluation=evaluation, handoff=handoff)

    # -- post tool use ---------------------------------------------------------

    def on_post_tool_use(
        self,
        tool_name: str,
        tool_input: Optional[Dict[str, Any]] = None,
        tool_response: Any = None,
    ) -> ToolOutcome:
        """
        Record a tool outcome, recompute pressure and evaluate nudges.

        Args:
            tool_name: Name of the tool that ran
            tool_input: Its input
            tool_response: Its output

        Returns:
            ToolOutcome with the updated session, pressure and fired nudges
        """
        self.sessions.record_tool_outcome(tool_name, tool_input, tool_response)
        self.ledger.log_tool_use(tool_name)
        evaluation = self.monitor.check()
        self.nudges.record_tool_use()
        session = self.sessions.current()
        fired = self.nudges.evaluate(session)
        if fired:
            self.sessions.update(pending_nudges=[nudge.message for nudge in fired])
        return ToolOutcome(session=session, evaluation=evaluation, nudges=fired)

    # -- labels ----------------------------------------------------------------

    def area_labels(self) -> List[AreaLabel]:
        """Configured area labels, or the built-in table."""
        if not self.config.area_labels:
            return list(DEFAULT_AREA_LABELS)
        labels = []
        for entry in self.config.area_labels:
            try:
                labels.append(AreaLabel.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                log.warning("Skipping invalid area label %r: %s", entry, e)
        return labels or list(DEFAULT_AREA_LABELS)
