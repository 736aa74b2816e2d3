"""
Context Pressure Monitor
========================

Estimates how much of a session's working-context budget is used and escalates
as it fills up.

Pressure is re-derived from the whole context ledger every time it is computed:
a weighted sum of knowledge consultations, excerpts returned to the agent, and
tool invocations, clamped to 1.0. It maps onto ordered severity bands:

    normal < warning < orange < critical < force

At ``critical`` (when configured) and always at ``force``, the monitor sets a
blocking flag that the admission gate reads to pause writes. Creating a
handoff clears the flag so the next session can proceed.
"""

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import IntEnum
from typing import Any, Callable, List, Optional, Tuple

from forgeguard.audit import AuditLog, CATEGORY_HANDOFF
from forgeguard.config import PressureConfig
from forgeguard.errors import StateCorruptionError
from forgeguard.handoff import (
    HandoffDocument,
    HandoffManager,
    REASON_CONTEXT_CRITICAL,
    REASON_CONTEXT_FORCED,
)
from forgeguard.session_state import SessionState, SessionStateManager
from forgeguard.state_store import StateStore
from forgeguard.timeutil import to_iso, utc_now

log = logging.getLogger(__name__)

LEDGER_KEY = "context-ledger"
WATCHDOG_KEY = "watchdog-state"

# Pressure at which session end always hands off, whatever the thresholds
FORCED_HANDOFF_PRESSURE = 0.95


class Severity(IntEnum):
    """Context pressure bands, ordered."""
    NORMAL = 0
    WARNING = 1
    ORANGE = 2
    CRITICAL = 3
    FORCE = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> "Severity":
        try:
            return cls[str(label).upper()]
        except KeyError:
            return cls.NORMAL


# =============================================================================
# Ledger
# =============================================================================

@dataclass
class Consultation:
    """One lookup that pulled material into the agent's context."""
    query: str
    sources_checked: List[str] = field(default_factory=list)
    key_findings: List[str] = field(default_factory=list)
    excerpts_returned: int = 0
    timestamp: str = ""


@dataclass
class ContextLedger:
    """Everything that has consumed context in the current session."""
    session_id: Optional[str] = None
    consultations: List[Consultation] = field(default_factory=list)
    tool_invocations: List[dict] = field(default_factory=list)
    # Set when entries had to be skipped or coerced on load; never persisted
    damaged: bool = field(default=False, compare=False, repr=False)

    @property
    def total_excerpts(self) -> int:
        return sum(c.excerpts_returned for c in self.consultations)

    @property
    def total_sources(self) -> int:
        return sum(len(c.sources_checked) for c in self.consultations)

    def to_dict(self) -> dict:
        data = asdict(self)
        del data["damaged"]
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "ContextLedger":
        """
        Parse a ledger document entry by entry.

        Entries that cannot be read are skipped and an unreadable excerpt
        count is taken as zero; either marks the ledger as damaged.
        """
        if not isinstance(data, dict):
            return cls(damaged=True)

        damaged = False
        raw_consultations = data.get("consultations", [])
        if not isinstance(raw_consultations, list):
            raw_consultations, damaged = [], True
        raw_invocations = data.get("tool_invocations", [])
        if not isinstance(raw_invocations, list):
            raw_invocations, damaged = [], True

        consultations = []
        for entry in raw_consultations:
            if not isinstance(entry, dict):
                damaged = True
                continue
            try:
                excerpts = max(0, int(entry.get("excerpts_returned", 0)))
            except (TypeError, ValueError):
                excerpts, damaged = 0, True
            sources = entry.get("sources_checked", [])
            findings = entry.get("key_findings", [])
            if not isinstance(sources, list) or not isinstance(findings, list):
                damaged = True
            consultations.append(Consultation(
                query=str(entry.get("query", "")),
                sources_checked=[str(s) for s in sources] if isinstance(sources, list) else [],
                key_findings=[str(f) for f in findings] if isinstance(findings, list) else [],
                excerpts_returned=excerpts,
                timestamp=str(entry.get("timestamp", "")),
            ))

        invocations = []
        for entry in raw_invocations:
            if isinstance(entry, dict):
                invocations.append(entry)
            else:
                damaged = True

        session_id = data.get("session_id")
        return cls(
            session_id=str(session_id) if session_id is not None else None,
            consultations=consultations,
            tool_invocations=invocations,
            damaged=damaged,
        )


def compute_pressure(ledger: ContextLedger, config: Optional[PressureConfig] = None) -> float:
    """
    Compute context pressure in [0, 1] from the full ledger.

    Args:
        ledger: The session's context ledger
        config: Weights (defaults: 0.05 per consultation, 0.01 per excerpt,
            0.002 per tool invocation)
    """
    config = config or PressureConfig()
    raw = (
        len(ledger.consultations) * config.consultation_weight
        + ledger.total_excerpts * config.excerpt_weight
        + len(ledger.tool_invocations) * config.tool_use_weight
    )
    return min(1.0, max(0.0, raw))


class ContextLedgerManager:
    """Records consultations and tool invocations in the ``context-ledger`` document."""

    def __init__(self, store: StateStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def load(self) -> ContextLedger:
        """Read the ledger; an undecodable document loads as an empty, damaged ledger."""
        try:
            data = self.store.get(LEDGER_KEY)
        except StateCorruptionError as e:
            log.warning("Context ledger unreadable: %s", e)
            return ContextLedger(damaged=True)
        ledger = ContextLedger.from_dict(data if data is not None else {})
        if ledger.damaged:
            log.warning("Context ledger has malformed entries; they were skipped")
        return ledger

    def reset(self, session_id: Optional[str] = None) -> ContextLedger:
        ledger = ContextLedger(session_id=session_id)
        self.store.put(LEDGER_KEY, ledger.to_dict())
        return ledger

    def _mutate(self, change: Callable[[ContextLedger], None]) -> ContextLedger:
        result = {}

        def modifier(document: Optional[dict]) -> dict:
            ledger = ContextLedger.from_dict(document if document is not None else {})
            if ledger.damaged:
                log.warning("Dropping malformed context ledger entries")
            change(ledger)
            result["ledger"] = ledger
            return ledger.to_dict()

        self.store.update(LEDGER_KEY, modifier, discard_corrupt=True)
        return result["ledger"]

    def log_consultation(
        self,
        query: str,
        sources_checked: Optional[List[str]] = None,
        key_findings: Optional[List[str]] = None,
        excerpts_returned: int = 0,
    ) -> ContextLedger:
        """Record a knowledge lookup and the excerpts it returned."""
        consultation = Consultation(
            query=query,
            sources_checked=list(sources_checked or []),
            key_findings=list(key_findings or []),
            excerpts_returned=max(0, int(excerpts_returned)),
            timestamp=to_iso(self.clock()),
        )
        return self._mutate(lambda ledger: ledger.consultations.append(consultation))

    def log_tool_use(self, tool_name: str) -> ContextLedger:
        entry = {"tool": tool_name, "timestamp": to_iso(self.clock())}
        return self._mutate(lambda ledger: ledger.tool_invocations.append(entry))


# =============================================================================
# Watchdog
# =============================================================================

@dataclass
class WatchdogEvaluation:
    """Severity and advice for a pressure reading."""
    pressure: float
    severity: Severity
    blocking: bool
    message: str
    suggestion: str = ""

    @property
    def percent(self) -> int:
        return round(self.pressure * 100)


@dataclass
class WatchdogState:
    """Persisted watchdog status read by the admission gate."""
    severity: str = "normal"
    context_pressure: float = 0.0
    blocking: bool = False
    blocking_reason: Optional[str] = None
    last_escalation: Optional[str] = None
    escalation_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "WatchdogState":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def evaluate_severity(pressure: float, config: Optional[PressureConfig] = None) -> WatchdogEvaluation:
    """Map a pressure value onto a severity band and its blocking behaviour."""
    config = config or PressureConfig()
    percent = round(pressure * 100)

    if pressure >= config.force_threshold:
        return WatchdogEvaluation(
            pressure, Severity.FORCE, True,
            f"Context at {percent}%! All writes blocked until a handoff is created.",
            "Run: forgeguard handoff create",
        )
    if pressure >= config.critical_threshold:
        blocking = config.block_writes_at_critical
        message = f"Context at {percent}%!"
        if blocking:
            message += " Write operations paused. Run: forgeguard handoff create"
        return WatchdogEvaluation(pressure, Severity.CRITICAL, blocking, message, "Run: forgeguard handoff create")
    if pressure >= config.orange_threshold:
        return WatchdogEvaluation(
            pressure, Severity.ORANGE, False,
            f"Context at {percent}%. Consider wrapping up.",
            "Good time to commit or create a handoff.",
        )
    if pressure >= config.warning_threshold:
        return WatchdogEvaluation(
            pressure, Severity.WARNING, False,
            f"Context at {percent}%. Doing great!",
            "Continue working, but be mindful of context usage.",
        )
    return WatchdogEvaluation(pressure, Severity.NORMAL, False, f"Context at {percent}%. Plenty of room.")


class PressureMonitor:
    """
    Recomputes pressure, maintains the blocking flag and triggers handoffs.

    Args:
        store: State store
        config: Pressure weights and thresholds
        sessions: Session state manager (pressure is mirrored onto the session)
        handoffs: Handoff manager
        ledger: Context ledger manager
        audit: Optional audit log
        clock: Returns the current time (UTC)
    """

    def __init__(
        self,
        store: StateStore,
        config: PressureConfig,
        sessions: SessionStateManager,
        handoffs: HandoffManager,
        ledger: Optional[ContextLedgerManager] = None,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.config = config
        self.sessions = sessions
        self.handoffs = handoffs
        self.ledger = ledger or ContextLedgerManager(store, clock=clock)
        self.audit = audit
        self.clock = clock

    def current_pressure(self) -> float:
        return compute_pressure(self.ledger.load(), self.config)

    def check(self) -> WatchdogEvaluation:
        """
        Recompute pressure and persist the resulting watchdog state.

        The ledger only grows within a session, so a write pause set here is
        never lifted by a later reading, even one taken from a damaged ledger.
        Only a handoff or a reset lifts it.
        """
        ledger = self.ledger.load()
        pressure = compute_pressure(ledger, self.config)
        evaluation = evaluate_severity(pressure, self.config)
        result = {"evaluation": evaluation}

        def modifier(document: Optional[dict]) -> dict:
            try:
                previous = WatchdogState.from_dict(document or {})
            except TypeError:
                previous = WatchdogState()
            escalated = evaluation.severity.label != previous.severity
            blocking = evaluation.blocking
            reason = evaluation.message if blocking else None

            if previous.blocking and not blocking:
                log.warning(
                    "Context reading fell to %d%%%s; keeping writes paused until a handoff",
                    evaluation.percent, " from a damaged ledger" if ledger.damaged else "",
                )
                blocking = True
                reason = previous.blocking_reason or "Context pressure is critical; writes are paused"
                result["evaluation"] = replace(evaluation, blocking=True)

            state = WatchdogState(
                severity=evaluation.severity.label,
                context_pressure=round(pressure, 4),
                blocking=blocking,
                blocking_reason=reason,
                last_escalation=to_iso(self.clock()) if escalated else previous.last_escalation,
                escalation_count=previous.escalation_count + (
                    1 if escalated and evaluation.severity > Severity.from_label(previous.severity) else 0
                ),
            )
            return state.to_dict()

        self.store.update(WATCHDOG_KEY, modifier, discard_corrupt=True)

        if self.sessions.load() is not None:
            self.sessions.update(context_pressure=round(pressure, 4))

        if evaluation.severity >= Severity.CRITICAL:
            log.warning(evaluation.message)
        return result["evaluation"]

    def state(self) -> WatchdogState:
        data = self.store.get_or_default(WATCHDOG_KEY, {})
        try:
            return WatchdogState.from_dict(data)
        except TypeError:
            return WatchdogState()

    def blocking_reason(self) -> Optional[str]:
        """
        Reason writes are paused, or None if they are not.

        An unreadable watchdog document pauses writes: the gate cannot tell
        whether the session is over budget.
        """
        try:
            data = self.store.get(WATCHDOG_KEY)
        except StateCorruptionError as e:
            log.warning("Watchdog state unreadable, pausing writes: %s", e)
            return "Context watchdog state is unreadable; writes are paused until a handoff is created"
        if not data:
            return None
        if data.get("blocking"):
            return data.get("blocking_reason") or "Context pressure is critical; writes are paused"
        return None

    def clear_blocking(self) -> None:
        def modifier(document: Optional[dict]) -> dict:
            try:
                state = WatchdogState.from_dict(document or {})
            except TypeError:
                state = WatchdogState()
            state.blocking = False
            state.blocking_reason = None
            return state.to_dict()

        self.store.update(WATCHDOG_KEY, modifier, discard_corrupt=True)

    def handoff_reason_at_session_end(
        self, evaluation: WatchdogEvaluation, session: Optional[SessionState]
    ) -> Optional[str]:
        """
        Decide whether ending the session requires a handoff.

        ``force`` (or pressure at or above 0.95) always does; ``critical`` only
        when the session leaves uncommitted changes.
        """
        if evaluation.severity == Severity.FORCE or evaluation.pressure >= FORCED_HANDOFF_PRESSURE:
            return REASON_CONTEXT_FORCED
        if evaluation.severity == Severity.CRITICAL and session is not None and session.has_uncommitted_changes:
            return REASON_CONTEXT_CRITICAL
        return None

    def create_handoff(self, reason: str, session: Optional[SessionState] = None,
                       current_task: Optional[str] = None) -> HandoffDocument:
        """Write a handoff and lift the write pause."""
        if session is None:
            session = self.sessions.load()
        document = self.handoffs.create(
            reason=reason,
            session=session,
            context_pressure=self.current_pressure(),
            current_task=current_task,
        )
        self.clear_blocking()
        if self.audit is not None:
            self.audit.record(
                CATEGORY_HANDOFF,
                "created",
                target=str(self.handoffs.markdown_path),
                actor="guardian",
                details={"reason": reason, "context_pressure": document.context_pressure},
                session_id=document.session_id,
            )
        return document

    def end_session(self) -> Tuple[WatchdogEvaluation, Optional[HandoffDocument]]:
        """
        Run the end-of-session check, writing a handoff if required.

        Returns:
            The final evaluation and the handoff written, if any
        """
        evaluation = self.check()
        session = self.sessions.load()
        reason = self.handoff_reason_at_session_end(evaluation, session)
        if reason is None:
            return evaluation, None
        return evaluation, self.create_handoff(reason, session)

    def reset(self, session_id: Optional[str] = None) -> None:
        """Start a fresh ledger and watchdog state for a new session."""
        self.ledger.reset(session_id)
        self.store.put(WATCHDOG_KEY, WatchdogState().to_dict())
