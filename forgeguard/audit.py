"""
Guardian Audit Log
==================

Append-only record of security-relevant guardian events: blocked actions,
touches of sensitive-but-allowed paths, lock transitions, workspace lifecycle
and handoffs.

Writing an audit entry is best effort. A failure to persist is logged and
swallowed so that an audit problem never changes an admission decision.
"""

import logging
import secrets
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from forgeguard.errors import PersistenceError
from forgeguard.state_store import StateStore
from forgeguard.timeutil import to_iso, utc_now

log = logging.getLogger(__name__)

AUDIT_STREAM = "audit-log"

# Categories
CATEGORY_GATE = "gate"
CATEGORY_LOCK = "lock"
CATEGORY_WORKSPACE = "workspace"
CATEGORY_HANDOFF = "handoff"
CATEGORY_SESSION = "session"

SEVERITIES = ("info", "warn", "critical")


@dataclass
class AuditEntry:
    """One audit record."""
    id: str
    timestamp: str
    category: str
    action: str
    target: str = ""
    severity: str = "info"
    actor: str = "agent"
    details: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    workspace_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AuditEntry":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        known.setdefault("id", "")
        known.setdefault("timestamp", "")
        known.setdefault("category", "unknown")
        known.setdefault("action", "unknown")
        return cls(**known)


def _new_entry_id() -> str:
    return f"audit-{int(utc_now().timestamp() * 1000)}-{secrets.token_hex(3)}"


class AuditLog:
    """Writes and reads audit entries through the state store."""

    def __init__(self, store: StateStore):
        self.store = store

    def record(
        self,
        category: str,
        action: str,
        *,
        target: str = "",
        severity: str = "info",
        actor: str = "agent",
        details: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        """
        Append an audit entry.

        Returns:
            The entry written, or None if it could not be persisted
        """
        if severity not in SEVERITIES:
            severity = "info"

        entry = AuditEntry(
            id=_new_entry_id(),
            timestamp=to_iso(utc_now()),
            category=category,
            action=action,
            target=target,
            severity=severity,
            actor=actor,
            details=details or {},
            session_id=session_id,
            workspace_id=workspace_id,
        )
        try:
            self.store.append(AUDIT_STREAM, entry.to_dict())
        except (PersistenceError, OSError) as e:
            log.warning("Could not write audit entry %s/%s: %s", category, action, e)
            return None
        return entry

    def record_blocked(
        self,
        target: str,
        reason: str,
        rule: str,
        *,
        operation: str,
        session_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        """Record an action the admission gate refused."""
        return self.record(
            CATEGORY_GATE,
            "blocked",
            target=target,
            severity="warn",
            details={"reason": reason, "rule": rule, "operation": operation},
            session_id=session_id,
            workspace_id=workspace_id,
        )

    def record_sensitive_touch(
        self,
        path: str,
        pattern: str,
        *,
        operation: str,
        session_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        """Record an allowed action on a path worth reviewing later."""
        return self.record(
            CATEGORY_GATE,
            "sensitive_path",
            target=path,
            details={"pattern": pattern, "operation": operation},
            session_id=session_id,
            workspace_id=workspace_id,
        )

    def entries(
        self,
        limit: Optional[int] = None,
        category: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> List[AuditEntry]:
        """
        Read audit entries, oldest first.

        Args:
            limit: Return at most this many of the most recent matching entries
            category: Only entries of this category
            severity: Only entries of this severity
        """
        records = [AuditEntry.from_dict(r) for r in self.store.read_stream(AUDIT_STREAM)]
        if category:
            records = [r for r in records if r.category == category]
        if severity:
            records = [r for r in records if r.severity == severity]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records
