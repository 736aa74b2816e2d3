"""
Nudge Engine
============

Short advisory messages for the agent, derived from session state:

- commit: many files changed and a long time since the last commit
- test: source changes without a test run for a while
- error: errors have been detected
- context: context pressure is high

Each type has its own cooldown. Once a type fires it stays quiet until its
cooldown window has passed, however often it is re-evaluated. Firing updates
the cooldown record, appends to the ``nudge-history`` stream and overwrites the
``nudge-last`` pointer.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from forgeguard.config import NudgeConfig
from forgeguard.errors import PersistenceError
from forgeguard.session_state import SessionState
from forgeguard.state_store import StateStore
from forgeguard.timeutil import parse_iso, to_iso, utc_now

log = logging.getLogger(__name__)

NUDGE_STATE_KEY = "nudge-state"
NUDGE_LAST_KEY = "nudge-last"
NUDGE_HISTORY_STREAM = "nudge-history"


class NudgeType(str, Enum):
    COMMIT = "commit"
    TEST = "test"
    ERROR = "error"
    CONTEXT = "context"


# Evaluation and output order
NUDGE_ORDER = (NudgeType.COMMIT, NudgeType.TEST, NudgeType.ERROR, NudgeType.CONTEXT)


@dataclass
class CooldownRecord:
    last_triggered_at: Optional[str] = None
    uses_since_trigger: int = 0


@dataclass
class NudgeState:
    """Persisted cooldowns and mutes."""
    cooldowns: Dict[str, CooldownRecord] = field(default_factory=dict)
    total_tool_uses: int = 0
    muted: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "NudgeState":
        cooldowns = {}
        for name, record in (data.get("cooldowns") or {}).items():
            if isinstance(record, dict):
                cooldowns[name] = CooldownRecord(
                    last_triggered_at=record.get("last_triggered_at"),
                    uses_since_trigger=int(record.get("uses_since_trigger", 0)),
                )
        return cls(
            cooldowns=cooldowns,
            total_tool_uses=int(data.get("total_tool_uses", 0)),
            muted=[str(m) for m in data.get("muted", [])],
        )

    def record(self, nudge_type: NudgeType) -> CooldownRecord:
        return self.cooldowns.setdefault(nudge_type.value, CooldownRecord())


@dataclass
class Nudge:
    """A fired advisory."""
    type: str
    message: str
    timestamp: str
    cooldown_until: str
    trigger: Dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


Trigger = Optional[Tuple[str, Dict[str, object]]]


class NudgeEngine:
    """
    Evaluates nudge predicates with per-type cooldowns.

    Args:
        store: State store for cooldowns, history and the last nudge
        config: Thresholds and cooldown settings
        clock: Returns the current time (UTC)
    """

    def __init__(self, store: StateStore, config: Optional[NudgeConfig] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.config = config or NudgeConfig()
        self.clock = clock

    @property
    def cooldown(self) -> timedelta:
        return timedelta(minutes=self.config.cooldown_minutes)

    # -- predicates ------------------------------------------------------------

    def _commit(self, session: SessionState, now: datetime) -> Trigger:
        if not self.config.commit_enabled:
            return None
        minutes = session.minutes_since_commit(now)
        if (session.files_changed >= self.config.commit_files_threshold
                and minutes >= self.config.commit_minutes_threshold):
            message = (
                f"{session.files_changed} files changed, {int(minutes)} min since last commit. "
                f"Consider committing your work."
            )
            return message, {"files_changed": session.files_changed, "minutes": int(minutes)}
        return None

    def _test(self, session: SessionState, now: datetime) -> Trigger:
        if not self.config.test_enabled or not session.untested_additions:
            return None
        minutes = session.minutes_since_test(now)
        if minutes >= self.config.test_minutes_threshold:
            count = len(session.untested_additions)
            message = f"{count} untested change(s), {int(minutes)} min since tests last ran. Run the test suite."
            return message, {"untested": count, "minutes": int(minutes)}
        return None

    def _error(self, session: SessionState, now: datetime) -> Trigger:
        if not self.config.error_enabled or not session.errors_detected:
            return None
        count = len(session.errors_detected)
        message = f"{count} error(s) detected. Latest: {session.errors_detected[-1]}"
        return message, {"errors": count}

    def _context(self, session: SessionState, now: datetime) -> Trigger:
        if not self.config.context_enabled:
            return None
        if session.context_pressure >= self.config.context_threshold:
            percent = round(session.context_pressure * 100)
            message = f"Context at {percent}%. Consider committing and creating a handoff soon."
            return message, {"context_pressure": session.context_pressure}
        return None

    def _predicates(self) -> Dict[NudgeType, Callable[[SessionState, datetime], Trigger]]:
        return {
            NudgeType.COMMIT: self._commit,
            NudgeType.TEST: self._test,
            NudgeType.ERROR: self._error,
            NudgeType.CONTEXT: self._context,
        }

    # -- cooldowns -------------------------------------------------------------

    def _cooled_down(self, record: CooldownRecord, now: datetime) -> bool:
        last = parse_iso(record.last_triggered_at)
        if last is None:
            return True
        if now - last < self.cooldown:
            return False
        required = self.config.cooldown_tool_uses
        return required <= 0 or record.uses_since_trigger >= required

    def _load_state(self, document: Optional[dict]) -> NudgeState:
        try:
            return NudgeState.from_dict(document or {})
        except (TypeError, ValueError) as e:
            log.warning("Resetting malformed nudge state: %s", e)
            return NudgeState()

    # -- public API ------------------------------------------------------------

    def record_tool_use(self) -> None:
        """Count one tool use towards every cooldown."""
        def modifier(document: Optional[dict]) -> dict:
            state = self._load_state(document)
            state.total_tool_uses += 1
            for nudge_type in NUDGE_ORDER:
                state.record(nudge_type).uses_since_trigger += 1
            return state.to_dict()

        self.store.update(NUDGE_STATE_KEY, modifier, discard_corrupt=True)

    def evaluate(self, session: SessionState) -> List[Nudge]:
        """
        Fire every eligible nudge for the session.

        A nudge is eligible when its type is enabled and not muted, its
        predicate holds, and its cooldown has elapsed. The cooldown check and
        update happen in one atomic state update.

        Returns:
            Fired nudges in commit, test, error, context order
        """
        fired: List[Nudge] = []
        predicates = self._predicates()

        def modifier(document: Optional[dict]) -> dict:
            fired.clear()
            state = self._load_state(document)
            now = self.clock()
            for nudge_type in NUDGE_ORDER:
                if nudge_type.value in state.muted:
                    continue
                trigger = predicates[nudge_type](session, now)
                if trigger is None:
                    continue
                record = state.record(nudge_type)
                if not self._cooled_down(record, now):
                    continue
                record.last_triggered_at = to_iso(now)
                record.uses_since_trigger = 0
                message, details = trigger
                fired.append(Nudge(
                    type=nudge_type.value,
                    message=message,
                    timestamp=to_iso(now),
                    cooldown_until=to_iso(now + self.cooldown),
                    trigger=details,
                ))
            return state.to_dict()

        self.store.update(NUDGE_STATE_KEY, modifier, discard_corrupt=True)

        for nudge in fired:
            try:
                self.store.append(NUDGE_HISTORY_STREAM, nudge.to_dict())
            except PersistenceError as e:
                log.warning("Could not record nudge history: %s", e)
        if fired:
            try:
                self.store.put(NUDGE_LAST_KEY, fired[-1].to_dict())
            except PersistenceError as e:
                log.warning("Could not record last nudge: %s", e)
        return fired

    def messages(self, session: SessionState) -> List[str]:
        """Evaluate and return just the advisory strings."""
        return [nudge.message for nudge in self.evaluate(session)]

    def mute(self, nudge_type: NudgeType) -> None:
        def modifier(document: Optional[dict]) -> dict:
            state = self._load_state(document)
            if nudge_type.value not in state.muted:
                state.muted.append(nudge_type.value)
            return state.to_dict()

        self.store.update(NUDGE_STATE_KEY, modifier, discard_corrupt=True)

    def unmute(self, nudge_type: NudgeType) -> None:
        def modifier(document: Optional[dict]) -> dict:
            state = self._load_state(document)
            state.muted = [m for m in state.muted if m != nudge_type.value]
            return state.to_dict()

        self.store.update(NUDGE_STATE_KEY, modifier, discard_corrupt=True)

    def state(self) -> NudgeState:
        return self._load_state(self.store.get_or_default(NUDGE_STATE_KEY, {}))

    def reset(self) -> None:
        """
        Clear the per-session counters for a new session.

        Trigger times and mutes are kept: a cooldown window spans sessions.
        """
        def modifier(document: Optional[dict]) -> dict:
            state = self._load_state(document)
            state.total_tool_uses = 0
            for record in state.cooldowns.values():
                record.uses_since_trigger = 0
            return state.to_dict()

        self.store.update(NUDGE_STATE_KEY, modifier, discard_corrupt=True)

    def last(self) -> Optional[Nudge]:
        data = self.store.get_or_default(NUDGE_LAST_KEY)
        if not data:
            return None
        try:
            return Nudge(**{k: v for k, v in data.items() if k in Nudge.__dataclass_fields__})
        except TypeError:
            return None

    def history(self, limit: Optional[int] = None) -> List[dict]:
        return self.store.read_stream(NUDGE_HISTORY_STREAM, limit=limit)
