"""
Critical Resource Lock
======================

Time-bounded exclusive lock on one conflict-prone shared resource, such as the
database schema, that concurrent workspaces must not edit at the same time.

At most one non-expired lock exists per resource name. The lock holder may
re-acquire (renewing the expiry); anyone else is refused with the current
holder's identity until the lock is released or expires. Expired locks are
reclaimed lazily by the next acquire.

Reads fail open: a corrupted or unreadable lock document is treated as
"unlocked" and logged. Every successful acquire rewrites a complete, valid
record, so corruption never outlives the next acquire.
"""

import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from forgeguard.audit import AuditLog, CATEGORY_LOCK
from forgeguard.errors import StateCorruptionError
from forgeguard.state_store import StateStore
from forgeguard.timeutil import parse_iso, to_iso, utc_now

log = logging.getLogger(__name__)

DEFAULT_LOCK_TTL = timedelta(minutes=30)
LOCK_OPERATIONS = ("migrate", "push", "edit")

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{0,63}$")


@dataclass
class LockRecord:
    """A held lock."""
    name: str
    holder_id: str
    operation: str
    acquired_at: str
    expires_at: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LockRecord":
        """
        Parse a stored lock.

        Raises:
            StateCorruptionError: Required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise StateCorruptionError("lock", "expected an object")
        try:
            record = cls(
                name=str(data["name"]),
                holder_id=str(data["holder_id"]),
                operation=str(data.get("operation", "edit")),
                acquired_at=str(data["acquired_at"]),
                expires_at=str(data["expires_at"]),
            )
        except KeyError as e:
            raise StateCorruptionError(f"lock-{data.get('name', '?')}", f"missing field {e}") from e
        if parse_iso(record.expires_at) is None or parse_iso(record.acquired_at) is None:
            raise StateCorruptionError(f"lock-{record.name}", "invalid timestamp")
        return record

    def expires(self) -> datetime:
        return parse_iso(self.expires_at)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires()

    def remaining_minutes(self, now: datetime) -> float:
        return max(0.0, (self.expires() - now).total_seconds() / 60.0)


@dataclass
class LockResult:
    """Outcome of an acquire attempt."""
    acquired: bool
    lock: Optional[LockRecord] = None
    message: str = ""

    @property
    def holder_id(self) -> Optional[str]:
        return self.lock.holder_id if self.lock else None


class ResourceLockManager:
    """
    Acquires, renews and releases critical resource locks.

    Args:
        store: State store holding ``lock-<name>`` documents
        default_ttl: Lock lifetime when acquire() is not given one
        audit: Optional audit log for lock transitions
        clock: Returns the current time (UTC)
    """

    def __init__(
        self,
        store: StateStore,
        default_ttl: timedelta = DEFAULT_LOCK_TTL,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.default_ttl = default_ttl
        self.audit = audit
        self.clock = clock

    @staticmethod
    def _key(name: str) -> str:
        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise ValueError(f"Invalid resource name: {name!r}")
        return f"lock-{name}"

    def _parse(self, name: str, data: Optional[dict]) -> Optional[LockRecord]:
        if data is None:
            return None
        try:
            return LockRecord.from_dict(data)
        except StateCorruptionError as e:
            log.warning("Ignoring unreadable lock for '%s': %s", name, e)
            return None

    def status(self, name: str) -> Optional[LockRecord]:
        """
        Get the current non-expired lock for a resource.

        Returns:
            LockRecord, or None if unlocked, expired or unreadable
        """
        try:
            data = self.store.get(self._key(name))
        except StateCorruptionError as e:
            log.warning("Lock state for '%s' is corrupted, treating as unlocked: %s", name, e)
            return None
        record = self._parse(name, data)
        if record is None or record.is_expired(self.clock()):
            return None
        return record

    def is_locked_by_other(self, name: str, caller_id: str) -> Optional[LockRecord]:
        """Return the lock if a different holder has it, else None."""
        record = self.status(name)
        if record is not None and record.holder_id != caller_id:
            return record
        return None

    def acquire(
        self,
        name: str,
        holder_id: str,
        operation: str = "edit",
        ttl: Optional[timedelta] = None,
    ) -> LockResult:
        """
        Acquire or renew a lock.

        Args:
            name: Resource name
            holder_id: Identity of the caller (usually its workspace id)
            operation: What the holder intends to do (migrate, push, edit)
            ttl: Lock lifetime (defaults to the manager's default_ttl); zero
                grants a lock that is already expired

        Returns:
            LockResult; on refusal ``lock`` is the existing foreign lock
        """
        if not holder_id:
            raise ValueError("holder_id is required")
        if operation not in LOCK_OPERATIONS:
            raise ValueError(f"Unknown lock operation '{operation}'")

        if ttl is None:
            ttl = self.default_ttl
        if ttl < timedelta(0):
            raise ValueError(f"Lock ttl must not be negative: {ttl}")
        outcome = {}

        def modifier(current: Optional[dict]) -> Optional[dict]:
            now = self.clock()
            existing = self._parse(name, current)
            if existing and not existing.is_expired(now) and existing.holder_id != holder_id:
                outcome["denied"] = existing
                return existing.to_dict()

            renewing = existing is not None and not existing.is_expired(now)
            record = LockRecord(
                name=name,
                holder_id=holder_id,
                operation=operation,
                acquired_at=existing.acquired_at if renewing else to_iso(now),
                expires_at=to_iso(now + ttl),
            )
            outcome["granted"] = record
            outcome["renewed"] = renewing
            return record.to_dict()

        self.store.update(self._key(name), modifier, discard_corrupt=True)

        if "denied" in outcome:
            existing = outcome["denied"]
            minutes = existing.remaining_minutes(self.clock())
            message = (
                f"Resource '{name}' is locked by '{existing.holder_id}' for {existing.operation} "
                f"({minutes:.0f} min remaining)"
            )
            self._audit("denied", name, holder_id, severity="warn",
                        details={"held_by": existing.holder_id, "operation": existing.operation})
            return LockResult(acquired=False, lock=existing, message=message)

        record = outcome["granted"]
        action = "renewed" if outcome.get("renewed") else "acquired"
        self._audit(action, name, holder_id, details={"operation": operation, "expires_at": record.expires_at})
        log.info("Lock '%s' %s by '%s' for %s", name, action, holder_id, operation)
        return LockResult(acquired=True, lock=record, message=f"Lock '{name}' {action} by '{holder_id}'")

    def release(self, name: str, holder_id: str) -> bool:
        """
        Release a lock held by ``holder_id``.

        Returns:
            True if the caller held the lock and it was released; False if the
            lock is held by someone else or not held at all
        """
        released = {}

        def modifier(current: Optional[dict]) -> Optional[dict]:
            existing = self._parse(name, current)
            if existing is None:
                return None
            if existing.holder_id != holder_id:
                if existing.is_expired(self.clock()):
                    return None
                return existing.to_dict()
            released["lock"] = existing
            return None

        self.store.update(self._key(name), modifier, discard_corrupt=True)

        if "lock" in released:
            self._audit("released", name, holder_id)
            log.info("Lock '%s' released by '%s'", name, holder_id)
            return True
        return False

    def _audit(self, action: str, name: str, holder_id: str, severity: str = "info", details=None) -> None:
        if self.audit is not None:
            self.audit.record(
                CATEGORY_LOCK,
                action,
                target=name,
                severity=severity,
                actor=holder_id,
                details=details,
                workspace_id=holder_id,
            )
