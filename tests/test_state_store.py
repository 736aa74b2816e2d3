"""
Tests for the Guardian State Store
==================================

Tests for forgeguard/state_store.py. The JSON file, SQLite and in-memory
backends are run through the same contract.
"""

import json
import threading

import pytest

from forgeguard.errors import PersistenceError, StateCorruptionError
from forgeguard.state_store import JsonFileStore, MemoryStore, SqlStateStore, open_store


@pytest.fixture(params=["json", "sqlite", "memory"])
def any_store(request, tmp_path):
    """Each store backend in turn."""
    if request.param == "json":
        return JsonFileStore(tmp_path / "state")
    if request.param == "sqlite":
        return SqlStateStore(tmp_path / "state" / "guardian.db")
    return MemoryStore()


class TestStoreContract:
    """Behaviour every backend shares."""

    def test_missing_document_is_none(self, any_store):
        """Test that an unknown key reads as None."""
        assert any_store.get("nothing-here") is None

    def test_put_and_get(self, any_store):
        """Test writing and reading a document."""
        any_store.put("lock-schema", {"holder_id": "task-1", "ttl": 30})
        assert any_store.get("lock-schema") == {"holder_id": "task-1", "ttl": 30}

    def test_update_receives_current_document(self, any_store):
        """Test that update passes the current document to the modifier."""
        any_store.put("counter", {"value": 1})
        seen = []

        def modifier(current):
            seen.append(current)
            return {"value": current["value"] + 1}

        result = any_store.update("counter", modifier)
        assert seen == [{"value": 1}]
        assert result == {"value": 2}
        assert any_store.get("counter") == {"value": 2}

    def test_update_returning_none_deletes(self, any_store):
        """Test that a modifier returning None removes the document."""
        any_store.put("temp", {"a": 1})
        assert any_store.update("temp", lambda current: None) is None
        assert any_store.get("temp") is None

    def test_delete_missing_is_noop(self, any_store):
        """Test that deleting an absent key does not raise."""
        any_store.delete("never-written")
        assert any_store.get("never-written") is None

    def test_stream_append_and_read_in_order(self, any_store):
        """Test that streams return records oldest first."""
        for i in range(5):
            any_store.append("audit-log", {"n": i})
        assert [r["n"] for r in any_store.read_stream("audit-log")] == [0, 1, 2, 3, 4]
        assert [r["n"] for r in any_store.read_stream("audit-log", limit=2)] == [3, 4]
        assert any_store.read_stream("audit-log", limit=0) == []

    def test_empty_stream(self, any_store):
        """Test reading a stream that was never written."""
        assert any_store.read_stream("nudge-history") == []

    def test_invalid_key_rejected(self, any_store):
        """Test that path-like keys are refused."""
        with pytest.raises(ValueError):
            any_store.get("../etc/passwd")
        with pytest.raises(ValueError):
            any_store.put("", {})

    def test_get_or_default(self, any_store):
        """Test default substitution for missing documents."""
        assert any_store.get_or_default("missing", {"x": 1}) == {"x": 1}
        any_store.put("present", {"y": 2})
        assert any_store.get_or_default("present", {"x": 1}) == {"y": 2}

    def test_modifier_copy_does_not_leak(self, any_store):
        """Test that mutating a returned document does not change stored state."""
        any_store.put("doc", {"items": [1]})
        document = any_store.get("doc")
        document["items"].append(2)
        assert any_store.get("doc") == {"items": [1]}


class TestJsonFileStore:
    """Tests specific to the JSON file backend."""

    def test_layout(self, tmp_path):
        """Test that documents and streams land in the expected files."""
        store = JsonFileStore(tmp_path)
        store.put("workspaces", {"associations": {}})
        store.append("audit-log", {"action": "x"})

        assert json.loads((tmp_path / "workspaces.json").read_text()) == {"associations": {}}
        lines = (tmp_path / "audit-log.jsonl").read_text().splitlines()
        assert [json.loads(line) for line in lines] == [{"action": "x"}]

    def test_no_temp_files_left_behind(self, tmp_path):
        """Test that atomic writes clean up after themselves."""
        store = JsonFileStore(tmp_path)
        for i in range(3):
            store.put("session-state", {"i": i})
        assert not list(tmp_path.glob("*.tmp"))

    def test_corrupted_document_raises(self, tmp_path):
        """Test that undecodable JSON raises StateCorruptionError."""
        store = JsonFileStore(tmp_path)
        (tmp_path / "lock-schema.json").write_text("{not json")

        with pytest.raises(StateCorruptionError) as exc:
            store.get("lock-schema")
        assert exc.value.key == "lock-schema"

    def test_non_object_document_is_corrupt(self, tmp_path):
        """Test that a JSON list is not accepted as a document."""
        store = JsonFileStore(tmp_path)
        (tmp_path / "workspaces.json").write_text("[1, 2]")
        with pytest.raises(StateCorruptionError):
            store.get("workspaces")

    def test_update_on_corrupt_raises_unless_discarded(self, tmp_path):
        """Test discard_corrupt behaviour."""
        store = JsonFileStore(tmp_path)
        (tmp_path / "doc.json").write_text("garbage")

        with pytest.raises(StateCorruptionError):
            store.update("doc", lambda current: {"ok": True})

        result = store.update("doc", lambda current: {"was": current}, discard_corrupt=True)
        assert result == {"was": None}

    def test_malformed_stream_lines_skipped(self, tmp_path):
        """Test that a torn line in a stream does not hide the others."""
        store = JsonFileStore(tmp_path)
        store.append("audit-log", {"n": 1})
        with open(tmp_path / "audit-log.jsonl", "a") as f:
            f.write("{broken\n")
        store.append("audit-log", {"n": 2})
        assert [r["n"] for r in store.read_stream("audit-log")] == [1, 2]

    def test_lock_timeout_raises_persistence_error(self, tmp_path):
        """Test that a held file lock surfaces as PersistenceError."""
        from filelock import FileLock

        store = JsonFileStore(tmp_path, lock_timeout=0.1)
        (tmp_path / ".locks").mkdir()
        held = FileLock(tmp_path / ".locks" / "busy.lock")

        results = {}

        def contender():
            try:
                store.put("busy", {"a": 1})
                results["ok"] = True
            except PersistenceError:
                results["error"] = True

        with held:
            thread = threading.Thread(target=contender)
            thread.start()
            thread.join(5)
        assert results == {"error": True}

    def test_concurrent_updates_are_serialized(self, tmp_path):
        """Test that concurrent read-modify-write cycles never lose an update."""
        store = JsonFileStore(tmp_path)
        store.put("counter", {"value": 0})

        def increment():
            for _ in range(20):
                store.update("counter", lambda current: {"value": current["value"] + 1})

        threads = [threading.Thread(target=increment) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get("counter") == {"value": 80}


class TestMemoryStore:
    """Tests specific to the in-memory backend."""

    def test_set_raw_simulates_corruption(self):
        """Test injecting undecodable content."""
        store = MemoryStore()
        store.set_raw("lock-schema", "\x00\x01")
        with pytest.raises(StateCorruptionError):
            store.get("lock-schema")
        assert store.get_or_default("lock-schema") is None


class TestOpenStore:
    """Tests for open_store()."""

    def test_json_default(self, tmp_path):
        """Test that the JSON backend is the default."""
        assert isinstance(open_store(tmp_path), JsonFileStore)

    def test_sqlite_backend(self, tmp_path):
        """Test selecting the SQLite backend."""
        store = open_store(tmp_path, backend="sqlite")
        assert isinstance(store, SqlStateStore)
        assert (tmp_path / "guardian.db").exists()

    def test_unknown_backend_falls_back_to_json(self, tmp_path):
        """Test that an unknown backend name falls back to JSON files."""
        assert isinstance(open_store(tmp_path, backend="redis"), JsonFileStore)
