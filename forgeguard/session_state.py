"""
Session State Tracking
======================

Tracks what the current agent session has done: files changed since the last
commit, when tests last ran, errors seen, and how many tools were used.

The nudge engine and the context pressure monitor read this state; the
post-tool-use hook updates it after every tool call. State is reset when a
session starts and archived to the ``session-history`` stream when it ends.
"""

import logging
import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from forgeguard.errors import StateCorruptionError
from forgeguard.state_store import StateStore
from forgeguard.timeutil import minutes_between, parse_iso, to_iso, utc_now

log = logging.getLogger(__name__)

SESSION_STATE_KEY = "session-state"
SESSION_HISTORY_STREAM = "session-history"

MAX_RECENT_FILES = 20
MAX_ERRORS = 10

WRITE_TOOLS = {"Write", "Edit", "MultiEdit", "NotebookEdit"}

_TEST_COMMAND_RE = re.compile(
    r"\b(?:pytest|py\.test|python[23]?\s+-m\s+(?:pytest|unittest)|tox|nox|"
    r"(?:npm|pnpm|yarn|bun)\s+(?:run\s+)?test|vitest|jest|playwright\s+test|go\s+test|cargo\s+test)\b"
)
_COMMIT_COMMAND_RE = re.compile(r"\bgit\s+commit\b")
_FAILED_COUNT_RE = re.compile(r"(\d+)\s+(?:failed|failing|failures?)\b", re.IGNORECASE)
_SOURCE_SUFFIXES = (".py", ".ts", ".tsx", ".js", ".jsx", ".go", ".rs", ".java", ".rb")
_TEST_FILE_RE = re.compile(r"(?:^|/)(?:tests?/|test_[^/]*$|[^/]*_test\.\w+$|[^/]*\.(?:test|spec)\.\w+$)")


@dataclass
class SessionState:
    """
    What the current session has done.

    Persisted after every recorded tool outcome so that independent hook
    processes see the same counts.
    """
    session_id: str
    started_at: str
    files_changed: int = 0
    changed_files: List[str] = field(default_factory=list)
    last_commit_at: Optional[str] = None
    last_test_at: Optional[str] = None
    errors_detected: List[str] = field(default_factory=list)
    untested_additions: List[str] = field(default_factory=list)
    recent_files: List[str] = field(default_factory=list)
    failing_tests: int = 0
    tool_uses: int = 0
    context_pressure: float = 0.0
    pending_nudges: List[str] = field(default_factory=list)
    current_task: Optional[str] = None
    decisions: List[str] = field(default_factory=list)
    last_tool: Optional[str] = None
    timestamp: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SessionState":
        """Create SessionState from dictionary, ignoring unknown fields."""
        if "session_id" not in data or "started_at" not in data:
            raise StateCorruptionError(SESSION_STATE_KEY, "missing session_id or started_at")
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def minutes_since_commit(self, now: datetime) -> float:
        """Minutes since the last commit, or since the session started."""
        reference = parse_iso(self.last_commit_at) or parse_iso(self.started_at) or now
        return minutes_between(reference, now)

    def minutes_since_test(self, now: datetime) -> float:
        """Minutes since tests last ran, or since the session started."""
        reference = parse_iso(self.last_test_at) or parse_iso(self.started_at) or now
        return minutes_between(reference, now)

    @property
    def has_uncommitted_changes(self) -> bool:
        return self.files_changed > 0


def _response_text(tool_response: Any) -> str:
    if tool_response is None:
        return ""
    if isinstance(tool_response, str):
        return tool_response
    if isinstance(tool_response, dict):
        parts = [str(tool_response.get(k, "")) for k in ("stdout", "stderr", "output", "content", "error")]
        return "\n".join(p for p in parts if p)
    if isinstance(tool_response, list):
        return "\n".join(_response_text(item) for item in tool_response)
    return str(tool_response)


def _response_failed(tool_response: Any) -> bool:
    if isinstance(tool_response, dict):
        if tool_response.get("is_error") or tool_response.get("error"):
            return True
        exit_code = tool_response.get("exit_code", tool_response.get("returncode"))
        if isinstance(exit_code, int) and exit_code != 0:
            return True
    return False


def _first_line(text: str, limit: int = 200) -> str:
    for line in text.splitlines():
        line = line.strip()
        if line:
            return line[:limit]
    return ""


def is_test_file(path: str) -> bool:
    return bool(_TEST_FILE_RE.search(path.replace("\\", "/")))


class SessionStateManager:
    """
    Manages session state persistence.

    Args:
        store: State store holding the ``session-state`` document
        clock: Returns the current time (UTC)
    """

    def __init__(self, store: StateStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def start_session(self, session_id: Optional[str] = None) -> SessionState:
        """
        Begin a new session, archiving any state left by the previous one.

        Args:
            session_id: Session identifier (generated if omitted)

        Returns:
            The fresh SessionState
        """
        previous = self.load()
        if previous is not None:
            self._archive(previous, reason="superseded")

        now = to_iso(self.clock())
        state = SessionState(
            session_id=session_id or uuid.uuid4().hex[:12],
            started_at=now,
            timestamp=now,
        )
        self.store.put(SESSION_STATE_KEY, state.to_dict())
        log.info("Started session %s", state.session_id)
        return state

    def load(self) -> Optional[SessionState]:
        """
        Load session state.

        Returns:
            SessionState if present and valid, None otherwise
        """
        try:
            data = self.store.get(SESSION_STATE_KEY)
            return SessionState.from_dict(data) if data is not None else None
        except (StateCorruptionError, TypeError) as e:
            log.warning("Corrupted session state: %s", e)
            return None

    def current(self) -> SessionState:
        """Load the current session, starting one if none exists."""
        return self.load() or self.start_session()

    def update(self, **kwargs) -> SessionState:
        """
        Update fields of the current session atomically.

        Args:
            **kwargs: Fields to update

        Returns:
            Updated SessionState
        """
        def change(state: SessionState) -> None:
            for key, value in kwargs.items():
                if hasattr(state, key):
                    setattr(state, key, value)

        return self._mutate(change)

    def _mutate(self, change: Callable[[SessionState], Any]) -> SessionState:
        result = {}

        def modifier(document: Optional[dict]) -> dict:
            state = None
            if document is not None:
                try:
                    state = SessionState.from_dict(document)
                except (StateCorruptionError, TypeError) as e:
                    log.warning("Replacing corrupted session state: %s", e)
            if state is None:
                now = to_iso(self.clock())
                state = SessionState(session_id=uuid.uuid4().hex[:12], started_at=now)
            change(state)
            state.timestamp = to_iso(self.clock())
            result["state"] = state
            return state.to_dict()

        self.store.update(SESSION_STATE_KEY, modifier, discard_corrupt=True)
        return result["state"]

    def record_tool_outcome(
        self,
        tool_name: str,
        tool_input: Optional[Dict[str, Any]] = None,
        tool_response: Any = None,
    ) -> SessionState:
        """
        Record the result of a tool call.

        Writes count towards files changed (and untested additions for source
        files); ``git commit`` resets the change count; test commands record a
        test run and its failures; failed tools add to detected errors.

        Args:
            tool_name: Name of the tool that ran
            tool_input: Input parameters for the tool
            tool_response: Whatever the tool returned

        Returns:
            Updated SessionState
        """
        tool_input = tool_input if isinstance(tool_input, dict) else {}
        output = _response_text(tool_response)
        failed = _response_failed(tool_response)
        now = to_iso(self.clock())

        def change(state: SessionState) -> None:
            state.tool_uses += 1
            state.last_tool = tool_name

            if tool_name in WRITE_TOOLS:
                path = tool_input.get("file_path") or tool_input.get("notebook_path")
                if isinstance(path, str) and path and not failed:
                    if path not in state.changed_files:
                        state.changed_files.append(path)
                    state.files_changed = len(state.changed_files)
                    if path in state.recent_files:
                        state.recent_files.remove(path)
                    state.recent_files = (state.recent_files + [path])[-MAX_RECENT_FILES:]
                    if path.endswith(_SOURCE_SUFFIXES) and not is_test_file(path):
                        if path not in state.untested_additions:
                            state.untested_additions.append(path)

            elif tool_name == "Bash":
                command = tool_input.get("command") or ""
                if _COMMIT_COMMAND_RE.search(command) and not failed:
                    state.last_commit_at = now
                    state.files_changed = 0
                    state.changed_files = []
                if _TEST_COMMAND_RE.search(command):
                    state.last_test_at = now
                    state.untested_additions = []
                    match = _FAILED_COUNT_RE.search(output)
                    state.failing_tests = int(match.group(1)) if match else (1 if failed else 0)
                    if state.failing_tests == 0:
                        state.errors_detected = []

            if failed:
                summary = _first_line(output) or f"{tool_name} failed"
                state.errors_detected = (state.errors_detected + [summary])[-MAX_ERRORS:]

        return self._mutate(change)

    def record_decision(self, decision: str) -> SessionState:
        """Note a key decision for the next handoff."""
        return self._mutate(lambda state: state.decisions.append(decision))

    def set_task(self, task: Optional[str]) -> SessionState:
        return self.update(current_task=task)

    def clear_errors(self) -> SessionState:
        return self.update(errors_detected=[])

    def end_session(self, reason: str = "session_end") -> Optional[SessionState]:
        """
        Archive the current session and clear its state.

        Returns:
            The archived SessionState, or None if no session was active
        """
        state = self.load()
        if state is None:
            return None
        self._archive(state, reason=reason)
        self.store.delete(SESSION_STATE_KEY)
        log.info("Ended session %s", state.session_id)
        return state

    def history(self, limit: Optional[int] = None) -> List[dict]:
        return self.store.read_stream(SESSION_HISTORY_STREAM, limit=limit)

    def _archive(self, state: SessionState, reason: str) -> None:
        record = state.to_dict()
        record["ended_at"] = to_iso(self.clock())
        record["end_reason"] = reason
        self.store.append(SESSION_HISTORY_STREAM, record)
