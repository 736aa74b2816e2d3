"""
Guardian State Store
====================

Key-value JSON document storage shared by every ForgeGuard component.

Documents are small JSON objects addressed by key (``lock-schema``,
``workspaces``, ``session-state``...). Streams are append-only JSON-lines logs
(``audit-log``, ``nudge-history``...).

All read-modify-write cycles go through ``update(key, modifier)``, which holds a
cross-process critical section for the whole cycle:

- ``JsonFileStore`` - one file per document, ``filelock`` lock files, atomic
  temp-file rename on write (the default backend)
- ``SqlStateStore`` - SQLite through SQLAlchemy with ``BEGIN IMMEDIATE``
- ``MemoryStore`` - in-process dict, used by tests
"""

import copy
import json
import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from filelock import FileLock, Timeout
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from forgeguard.db import DB_FILENAME, StateDocument, StreamRecord, create_store_engine, get_session_maker
from forgeguard.errors import PersistenceError, StateCorruptionError

log = logging.getLogger(__name__)

Document = Dict[str, Any]
Modifier = Callable[[Optional[Document]], Optional[Document]]

_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def _check_key(key: str) -> str:
    if not isinstance(key, str) or not _KEY_RE.match(key):
        raise ValueError(f"Invalid state key: {key!r}")
    return key


def _decode_document(key: str, raw: str) -> Document:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise StateCorruptionError(key, str(e)) from e
    if not isinstance(data, dict):
        raise StateCorruptionError(key, f"expected an object, got {type(data).__name__}")
    return data


class StateStore(ABC):
    """Abstract document store."""

    @abstractmethod
    def get(self, key: str) -> Optional[Document]:
        """
        Read a document.

        Returns:
            The document, or None if it does not exist

        Raises:
            StateCorruptionError: The document exists but cannot be decoded
        """

    @abstractmethod
    def update(self, key: str, modifier: Modifier, *, discard_corrupt: bool = False) -> Optional[Document]:
        """
        Atomically read, modify and write a document.

        The modifier receives a copy of the current document (None if missing)
        and returns the new document, or None to delete it. The whole cycle runs
        inside a critical section that excludes other processes.

        Args:
            key: Document key
            modifier: Function producing the new document
            discard_corrupt: Treat an undecodable document as missing instead
                of raising StateCorruptionError

        Returns:
            The document as written (None if deleted)
        """

    @abstractmethod
    def append(self, stream: str, record: Document) -> None:
        """Append one record to a stream."""

    @abstractmethod
    def read_stream(self, stream: str, limit: Optional[int] = None) -> List[Document]:
        """Read records from a stream, oldest first (the last ``limit`` if given)."""

    def put(self, key: str, document: Document) -> Document:
        """Replace a document."""
        self.update(key, lambda _current: document, discard_corrupt=True)
        return document

    def delete(self, key: str) -> None:
        """Delete a document. Missing documents are ignored."""
        self.update(key, lambda _current: None, discard_corrupt=True)

    def get_or_default(self, key: str, default: Optional[Document] = None) -> Optional[Document]:
        """Read a document, treating corruption as absence (logged)."""
        try:
            document = self.get(key)
        except StateCorruptionError as e:
            log.warning("%s; treating as empty", e)
            return default
        return default if document is None else document


# =============================================================================
# JSON files + file locks
# =============================================================================

class JsonFileStore(StateStore):
    """
    Document store backed by JSON files in a directory.

    Layout::

        <root>/<key>.json        documents
        <root>/<stream>.jsonl    streams
        <root>/.locks/<key>.lock file locks
    """

    def __init__(self, root: Path, lock_timeout: float = 10.0):
        self.root = Path(root)
        self.lock_timeout = lock_timeout

    def document_path(self, key: str) -> Path:
        return self.root / f"{_check_key(key)}.json"

    def stream_path(self, stream: str) -> Path:
        return self.root / f"{_check_key(stream)}.jsonl"

    @contextmanager
    def _locked(self, name: str) -> Iterator[None]:
        lock_dir = self.root / ".locks"
        try:
            lock_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create lock directory {lock_dir}: {e}") from e

        lock = FileLock(lock_dir / f"{name}.lock", timeout=self.lock_timeout)
        try:
            lock.acquire()
        except Timeout as e:
            raise PersistenceError(f"Timed out waiting for lock on '{name}'") from e
        try:
            yield
        finally:
            lock.release()

    def _read(self, key: str) -> Optional[Document]:
        path = self.document_path(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as e:
            raise StateCorruptionError(key, str(e)) from e
        except OSError as e:
            raise StateCorruptionError(key, f"unreadable: {e}") from e
        return _decode_document(key, raw)

    def _write(self, key: str, document: Document) -> None:
        path = self.document_path(key)
        try:
            payload = json.dumps(document, indent=2, default=str)
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Could not write state document '{key}': {e}") from e

    def get(self, key: str) -> Optional[Document]:
        # Writes are atomic renames, so an unlocked read never sees a partial file
        return self._read(key)

    def update(self, key: str, modifier: Modifier, *, discard_corrupt: bool = False) -> Optional[Document]:
        _check_key(key)
        with self._locked(key):
            try:
                current = self._read(key)
            except StateCorruptionError as e:
                if not discard_corrupt:
                    raise
                log.warning("%s; overwriting", e)
                current = None

            updated = modifier(copy.deepcopy(current))
            if updated is None:
                try:
                    self.document_path(key).unlink(missing_ok=True)
                except OSError as e:
                    raise PersistenceError(f"Could not delete state document '{key}': {e}") from e
                return None

            self._write(key, updated)
            return copy.deepcopy(updated)

    def append(self, stream: str, record: Document) -> None:
        path = self.stream_path(stream)
        with self._locked(stream):
            try:
                line = json.dumps(record, default=str)
                self.root.mkdir(parents=True, exist_ok=True)
                with open(path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except (OSError, TypeError, ValueError) as e:
                raise PersistenceError(f"Could not append to stream '{stream}': {e}") from e

    def read_stream(self, stream: str, limit: Optional[int] = None) -> List[Document]:
        path = self.stream_path(stream)
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as e:
            log.warning("Could not read stream '%s': %s", stream, e)
            return []

        records = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                log.warning("Skipping malformed line %d in stream '%s'", number, stream)
                continue
            if isinstance(record, dict):
                records.append(record)

        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records


# =============================================================================
# SQLite via SQLAlchemy
# =============================================================================

class SqlStateStore(StateStore):
    """Document store backed by a SQLite database."""

    def __init__(self, db_path: Path, busy_timeout: float = 10.0):
        self.db_path = Path(db_path)
        self.engine = create_store_engine(self.db_path, busy_timeout=busy_timeout)
        self._session_maker = get_session_maker(self.engine)

    def get(self, key: str) -> Optional[Document]:
        _check_key(key)
        try:
            with self._session_maker() as session:
                row = session.get(StateDocument, key)
                payload = None if row is None else row.payload
        except SQLAlchemyError as e:
            raise StateCorruptionError(key, str(e)) from e
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise StateCorruptionError(key, f"expected an object, got {type(payload).__name__}")
        return payload

    def update(self, key: str, modifier: Modifier, *, discard_corrupt: bool = False) -> Optional[Document]:
        _check_key(key)
        try:
            with self._session_maker() as session, session.begin():
                row = session.get(StateDocument, key)
                current = None if row is None else row.payload
                if current is not None and not isinstance(current, dict):
                    if not discard_corrupt:
                        raise StateCorruptionError(key, "stored payload is not an object")
                    log.warning("State document '%s' is corrupted; overwriting", key)
                    current = None

                updated = modifier(copy.deepcopy(current))
                if updated is None:
                    if row is not None:
                        session.delete(row)
                    return None

                # Round-trip through JSON so stored payloads match the file backend
                updated = json.loads(json.dumps(updated, default=str))
                if row is None:
                    session.add(StateDocument(key=key, payload=updated))
                else:
                    row.payload = updated
                return copy.deepcopy(updated)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not update state document '{key}': {e}") from e

    def append(self, stream: str, record: Document) -> None:
        _check_key(stream)
        try:
            payload = json.loads(json.dumps(record, default=str))
            with self._session_maker() as session, session.begin():
                session.add(StreamRecord(stream=stream, payload=payload))
        except (SQLAlchemyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Could not append to stream '{stream}': {e}") from e

    def read_stream(self, stream: str, limit: Optional[int] = None) -> List[Document]:
        _check_key(stream)
        if limit is not None and limit <= 0:
            return []
        query = select(StreamRecord).where(StreamRecord.stream == stream).order_by(StreamRecord.id.desc())
        if limit is not None:
            query = query.limit(limit)
        try:
            with self._session_maker() as session:
                rows = session.scalars(query).all()
                records = [row.payload for row in rows]
        except SQLAlchemyError as e:
            log.warning("Could not read stream '%s': %s", stream, e)
            return []
        return [r for r in reversed(records) if isinstance(r, dict)]


# =============================================================================
# In-memory
# =============================================================================

class MemoryStore(StateStore):
    """
    In-process store for tests.

    Documents are kept serialized so values behave exactly as they would after
    a round trip through the file backend.
    """

    def __init__(self):
        self._documents: Dict[str, str] = {}
        self._streams: Dict[str, List[str]] = {}
        self._lock = threading.RLock()

    def set_raw(self, key: str, raw: str) -> None:
        """Store raw text under a key, bypassing serialization."""
        with self._lock:
            self._documents[_check_key(key)] = raw

    def get(self, key: str) -> Optional[Document]:
        with self._lock:
            raw = self._documents.get(_check_key(key))
        if raw is None:
            return None
        return _decode_document(key, raw)

    def update(self, key: str, modifier: Modifier, *, discard_corrupt: bool = False) -> Optional[Document]:
        with self._lock:
            try:
                current = self.get(key)
            except StateCorruptionError as e:
                if not discard_corrupt:
                    raise
                log.warning("%s; overwriting", e)
                current = None

            updated = modifier(current)
            if updated is None:
                self._documents.pop(key, None)
                return None
            try:
                self._documents[key] = json.dumps(updated, default=str)
            except (TypeError, ValueError) as e:
                raise PersistenceError(f"Could not serialize state document '{key}': {e}") from e
            return json.loads(self._documents[key])

    def append(self, stream: str, record: Document) -> None:
        with self._lock:
            self._streams.setdefault(_check_key(stream), []).append(json.dumps(record, default=str))

    def read_stream(self, stream: str, limit: Optional[int] = None) -> List[Document]:
        with self._lock:
            lines = list(self._streams.get(_check_key(stream), []))
        records = [json.loads(line) for line in lines]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records


def open_store(state_dir: Path, backend: str = "json", lock_timeout: float = 10.0) -> StateStore:
    """
    Open the configured store for a state directory.

    Args:
        state_dir: Directory holding guardian state
        backend: "json" or "sqlite"
        lock_timeout: Seconds to wait for cross-process locks

    Returns:
        StateStore instance
    """
    state_dir = Path(state_dir)
    if backend == "sqlite":
        return SqlStateStore(state_dir / DB_FILENAME, busy_timeout=lock_timeout)
    if backend != "json":
        log.warning("Unknown store backend '%s', using json", backend)
    return JsonFileStore(state_dir, lock_timeout=lock_timeout)
