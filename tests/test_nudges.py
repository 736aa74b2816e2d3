"""
Tests for the Nudge Engine
==========================

Tests for forgeguard/nudges.py
"""

from datetime import timedelta

import pytest

from forgeguard.config import NudgeConfig
from forgeguard.nudges import NUDGE_STATE_KEY, NudgeEngine, NudgeType
from forgeguard.session_state import SessionState
from forgeguard.timeutil import to_iso


@pytest.fixture
def engine(store, clock):
    return NudgeEngine(store, NudgeConfig(), clock=clock)


def make_session(clock, minutes_ago=20, **fields) -> SessionState:
    started = to_iso(clock() - timedelta(minutes=minutes_ago))
    return SessionState(session_id="s1", started_at=started, **fields)


class TestCommitNudge:
    """Tests for the commit reminder and its cooldown."""

    def test_fires_once_within_cooldown(self, engine, clock):
        """Test that repeated evaluation inside the window fires exactly once."""
        session = make_session(clock, minutes_ago=20, files_changed=8)

        first = engine.evaluate(session)
        assert [n.type for n in first] == ["commit"]
        assert first[0].message == "8 files changed, 20 min since last commit. Consider committing your work."

        for _ in range(5):
            clock.advance(minutes=1)
            assert engine.evaluate(session) == []

    def test_fires_again_after_cooldown(self, engine, clock):
        session = make_session(clock, files_changed=8)
        engine.evaluate(session)

        clock.advance(minutes=10)
        again = engine.evaluate(session)
        assert [n.type for n in again] == ["commit"]

    def test_below_thresholds(self, engine, clock):
        assert engine.evaluate(make_session(clock, minutes_ago=20, files_changed=4)) == []
        assert engine.evaluate(make_session(clock, minutes_ago=10, files_changed=8)) == []

    def test_uses_last_commit_time(self, engine, clock):
        session = make_session(clock, minutes_ago=60, files_changed=8,
                               last_commit_at=to_iso(clock() - timedelta(minutes=5)))
        assert engine.evaluate(session) == []

    def test_disabled(self, store, clock):
        engine = NudgeEngine(store, NudgeConfig(commit_enabled=False), clock=clock)
        assert engine.evaluate(make_session(clock, files_changed=8)) == []


class TestOtherNudges:
    """Tests for the test, error and context reminders."""

    def test_test_nudge(self, engine, clock):
        session = make_session(clock, minutes_ago=45, untested_additions=["src/a.py", "src/b.py"])
        nudges = engine.evaluate(session)
        assert [n.type for n in nudges] == ["test"]
        assert nudges[0].message.startswith("2 untested change(s), 45 min since tests last ran")

    def test_test_nudge_waits_for_threshold(self, engine, clock):
        session = make_session(clock, minutes_ago=45, untested_additions=["src/a.py"],
                               last_test_at=to_iso(clock() - timedelta(minutes=10)))
        assert engine.evaluate(session) == []

    def test_error_nudge(self, engine, clock):
        session = make_session(clock, errors_detected=["ImportError: no module x", "3 failed"])
        nudges = engine.evaluate(session)
        assert [n.type for n in nudges] == ["error"]
        assert nudges[0].message == "2 error(s) detected. Latest: 3 failed"

    def test_context_nudge(self, engine, clock):
        nudges = engine.evaluate(make_session(clock, context_pressure=0.82))
        assert [n.message for n in nudges] == ["Context at 82%. Consider committing and creating a handoff soon."]

    def test_order_and_independent_cooldowns(self, engine, clock):
        """Test output order and that one type firing does not silence another."""
        session = make_session(clock, files_changed=8, errors_detected=["boom"], context_pressure=0.9)
        assert [n.type for n in engine.evaluate(session)] == ["commit", "error", "context"]

        clock.advance(minutes=1)
        session.untested_additions = ["src/a.py"]
        session.started_at = to_iso(clock() - timedelta(minutes=40))
        assert [n.type for n in engine.evaluate(session)] == ["test"]


class TestCooldownToolUses:
    """Tests for the optional tool-use cooldown requirement."""

    def test_requires_tool_uses(self, store, clock):
        engine = NudgeEngine(store, NudgeConfig(cooldown_tool_uses=3), clock=clock)
        session = make_session(clock, errors_detected=["boom"])

        assert engine.evaluate(session)
        clock.advance(minutes=30)
        assert engine.evaluate(session) == []

        for _ in range(3):
            engine.record_tool_use()
        assert [n.type for n in engine.evaluate(session)] == ["error"]

    def test_tool_uses_counted(self, engine):
        engine.record_tool_use()
        engine.record_tool_use()
        state = engine.state()
        assert state.total_tool_uses == 2
        assert state.cooldowns["commit"].uses_since_trigger == 2


class TestMuteAndReset:
    """Tests for muting and resetting."""

    def test_mute(self, engine, clock):
        engine.mute(NudgeType.ERROR)
        session = make_session(clock, files_changed=8, errors_detected=["boom"])
        assert [n.type for n in engine.evaluate(session)] == ["commit"]

        engine.unmute(NudgeType.ERROR)
        assert [n.type for n in engine.evaluate(session)] == ["error"]

    def test_reset_keeps_cooldowns_and_mutes(self, engine, clock):
        engine.mute(NudgeType.CONTEXT)
        session = make_session(clock, files_changed=8)
        engine.evaluate(session)
        engine.record_tool_use()

        engine.reset()
        state = engine.state()
        assert state.muted == ["context"]
        assert state.total_tool_uses == 0
        assert state.cooldowns["commit"].uses_since_trigger == 0
        assert state.cooldowns["commit"].last_triggered_at == to_iso(clock())
        assert engine.evaluate(session) == []

        clock.advance(minutes=10)
        assert [n.type for n in engine.evaluate(session)] == ["commit"]

    def test_new_session_does_not_reopen_cooldown(self, guardian, clock):
        """Test that a nudge fired in one session stays cooled down in the next."""
        guardian.start_session("s1")
        clock.advance(minutes=20)
        first = make_session(clock, files_changed=8)
        assert [n.type for n in guardian.nudges.evaluate(first)] == ["commit"]

        clock.advance(minutes=1)
        guardian.start_session("s2")
        assert guardian.nudges.evaluate(first) == []
        assert [h["type"] for h in guardian.nudges.history()] == ["commit"]

    def test_corrupted_state_recovers(self, engine, store, clock):
        store.set_raw(NUDGE_STATE_KEY, "{bad")
        assert [n.type for n in engine.evaluate(make_session(clock, files_changed=8))] == ["commit"]


class TestHistory:
    """Tests for the nudge history and last pointer."""

    def test_history_and_last(self, engine, clock):
        engine.evaluate(make_session(clock, files_changed=8, errors_detected=["boom"]))

        history = engine.history()
        assert [h["type"] for h in history] == ["commit", "error"]
        assert engine.last().type == "error"
        assert engine.last().cooldown_until == to_iso(clock() + timedelta(minutes=10))
        assert len(engine.history(limit=1)) == 1

    def test_no_last_before_firing(self, engine):
        assert engine.last() is None

    def test_messages(self, engine, clock):
        messages = engine.messages(make_session(clock, errors_detected=["boom"]))
        assert messages == ["1 error(s) detected. Latest: boom"]
