"""
Admission Gate
==============

Pre-tool-use checks that decide whether an agent action may proceed.

Shell commands are matched against an ordered table of dangerous-command rules
(first match wins), then scanned for references to protected paths. File
accesses pass through a fixed sequence of checks:

1. Shared-coordination prefixes are always allowed
2. Writes are paused while context pressure is blocking (except handoff and
   session-state files)
3. Never-write patterns (keys, certificates, environment files, git internals)
4. System directories outside the project
5. The critical resource, when another workspace holds its lock
6. The caller's assigned workspace boundary
7. Allow, auditing paths that are sensitive but permitted

Any malformed input or internal error blocks: when the gate cannot decide, it
refuses. A decision depends only on the invocation and persisted state.
"""

import logging
import os
import re
import shlex
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Pattern, Tuple

from forgeguard import git_ops
from forgeguard.audit import AuditLog
from forgeguard.config import GuardianConfig
from forgeguard.errors import GuardianError, InputError
from forgeguard.patterns import first_match, matches_pattern, normalize_path

log = logging.getLogger(__name__)

OP_READ = "read"
OP_WRITE = "write"
OP_EDIT = "edit"
OP_EXECUTE = "execute"
MUTATING_OPERATIONS = frozenset({OP_WRITE, OP_EDIT})

WORKSPACE_ENV_VAR = "FORGEGUARD_WORKSPACE_ID"

# Agent tool name -> (operation, input field holding the target)
TOOL_OPERATIONS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "Read": (OP_READ, ("file_path", "path")),
    "NotebookRead": (OP_READ, ("notebook_path", "file_path")),
    "Write": (OP_WRITE, ("file_path", "path")),
    "Edit": (OP_EDIT, ("file_path", "path")),
    "MultiEdit": (OP_EDIT, ("file_path", "path")),
    "NotebookEdit": (OP_EDIT, ("notebook_path", "file_path")),
    "Bash": (OP_EXECUTE, ("command",)),
}


# =============================================================================
# Decisions and invocations
# =============================================================================

@dataclass(frozen=True)
class Decision:
    """Outcome of an admission check."""
    allowed: bool
    reason: Optional[str] = None
    rule: Optional[str] = None

    @classmethod
    def allow(cls, rule: Optional[str] = None) -> "Decision":
        return cls(True, None, rule)

    @classmethod
    def block(cls, reason: str, rule: str) -> "Decision":
        return cls(False, reason, rule)

    def to_dict(self) -> dict:
        data = {"allowed": self.allowed}
        if self.reason:
            data["reason"] = self.reason
        return data

    def to_hook_response(self) -> dict:
        """Hook form: empty dict to allow, decision/reason to block."""
        if self.allowed:
            return {}
        return {"decision": "block", "reason": self.reason or "Blocked by guardian"}


@dataclass
class ToolInvocation:
    """One intercepted agent action."""
    tool_name: str
    operation: str
    target: str
    cwd: Optional[str] = None
    workspace_id: Optional[str] = None
    session_id: Optional[str] = None


def parse_invocation(payload: Any) -> Optional[ToolInvocation]:
    """
    Build a ToolInvocation from a pre-tool-use hook payload.

    Args:
        payload: Dict with tool_name, tool_input and optionally cwd,
            session_id and workspace_id

    Returns:
        ToolInvocation, or None for tools the gate does not inspect

    Raises:
        InputError: The payload is malformed for a gated tool
    """
    if not isinstance(payload, dict):
        raise InputError("Hook payload must be an object")

    tool_name = payload.get("tool_name")
    if not isinstance(tool_name, str) or not tool_name:
        raise InputError("Hook payload is missing tool_name")

    entry = TOOL_OPERATIONS.get(tool_name)
    if entry is None:
        return None
    operation, target_fields = entry

    tool_input = payload.get("tool_input")
    if not isinstance(tool_input, dict):
        raise InputError(f"{tool_name}: tool_input must be an object")

    target = None
    for name in target_fields:
        value = tool_input.get(name)
        if isinstance(value, str) and value.strip():
            target = value
            break
    if target is None:
        raise InputError(f"{tool_name}: missing {' or '.join(target_fields)}")

    cwd = payload.get("cwd")
    workspace_id = payload.get("workspace_id") or os.environ.get(WORKSPACE_ENV_VAR) or None
    session_id = payload.get("session_id")
    return ToolInvocation(
        tool_name=tool_name,
        operation=operation,
        target=target,
        cwd=cwd if isinstance(cwd, str) and cwd else None,
        workspace_id=str(workspace_id) if workspace_id else None,
        session_id=str(session_id) if session_id else None,
    )


# =============================================================================
# Dangerous command rules
# =============================================================================

@lru_cache(maxsize=None)
def _compile(pattern: str, flags: int) -> Pattern[str]:
    return re.compile(pattern, flags)


@dataclass(frozen=True)
class CommandRule:
    """A named class of dangerous commands."""
    name: str
    reason: str
    patterns: Tuple[str, ...]
    flags: int = 0

    def matches(self, command: str) -> bool:
        return any(_compile(p, self.flags).search(command) for p in self.patterns)


# Command position: start of text or after a separator / subshell opener
_CMD = r"(?:^|[;&|(`]|\$\()\s*"

# SQL handed to a database client: as an argument, in a heredoc, or piped in
_SQL_CLIENTS = r"(?:psql|mysql|mariadb|sqlite3|sqlcmd|duckdb|clickhouse-client|cockroach\s+sql)"
_SQL_CLIENT_CALL = (
    _CMD
    + r"(?:(?:docker(?:\s+compose|-compose)?|kubectl)\s+exec\b[^;&|]*?\s)?"
    + _SQL_CLIENTS
    + r"\b[^;&|]*?"
)


def _sql_patterns(statement: str) -> Tuple[str, ...]:
    return (
        _SQL_CLIENT_CALL + statement,
        _SQL_CLIENT_CALL + r"<<[\s\S]*?" + statement,
        statement + r"[^|]*\|\s*" + _SQL_CLIENTS + r"\b",
    )


DANGEROUS_COMMAND_RULES: List[CommandRule] = [
    CommandRule(
        "catastrophic_deletion",
        "Recursive deletion of the filesystem root, home directory or whole working tree is not allowed",
        (
            r"\brm\s+(?:-\S+\s+)*-[^\s]*[rR][^\s]*\s+(?:-\S+\s+)*(?:/|~|\$HOME|\$\{HOME\}|\*|\.|\.\.)/?\*?(?=\s|$|[;&|])",
            r"\brm\s+(?:-\S+\s+)*--recursive\s+(?:-\S+\s+)*(?:/|~|\$HOME|\*|\.)/?\*?(?=\s|$|[;&|])",
            r"\brm\b[^;&|]*--no-preserve-root",
            r"\bfind\s+(?:/|~|\$HOME)\s[^;&|]*-delete\b",
        ),
    ),
    CommandRule(
        "raw_device_write",
        "Writing to raw block devices or formatting filesystems is not allowed",
        (
            r"\bdd\b[^;&|]*\bof=/dev/(?!null\b|zero\b|stdout\b|stderr\b)",
            r">\s*/dev/(?:sd|hd|vd|xvd|nvme|mmcblk|disk)\w*",
            _CMD + r"(?:sudo\s+(?:-\S+\s+)*)?(?:fdisk|sfdisk|parted|wipefs|mkfs(?:\.\w+)?)\b",
            r"\bshred\b[^;&|]*/dev/",
        ),
    ),
    CommandRule(
        "fork_bomb",
        "Fork bombs are not allowed",
        (
            r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
            r"\b(\w+)\s*\(\s*\)\s*\{\s*\1\s*\|\s*\1\s*&\s*\}",
        ),
    ),
    CommandRule(
        "remote_code_execution",
        "Piping downloaded content into a shell or interpreter is not allowed",
        (
            r"\b(?:curl|wget|fetch)\b[^;&|]*\|\s*(?:sudo\s+)?(?:ba|z|k|da|fi)?sh\b",
            r"\b(?:curl|wget|fetch)\b[^;&|]*\|\s*(?:sudo\s+)?(?:python[23]?|perl|ruby|node)\b",
            r"\b(?:ba|z)?sh\s+<\(\s*(?:curl|wget)\b",
            r"\b(?:ba|z)?sh\s+-c\s+[\"']?\$\(\s*(?:curl|wget)\b",
            r"\beval\s+[\"']?\$\(\s*(?:curl|wget)\b",
        ),
    ),
    CommandRule(
        "privilege_escalation",
        "Privilege escalation (sudo, su, setuid, chown root) is not allowed",
        (
            _CMD + r"(?:sudo|doas|pkexec)\b",
            _CMD + r"su(?:\s|$)",
            r"\bchmod\s+(?:-\S+\s+)*(?:[ugoa]*\+[rwx]*s|[2467][0-7]{3})\b",
            r"\bchown\s+(?:-\S+\s+)*root\b",
        ),
    ),
    CommandRule(
        "destructive_data_store",
        "Destructive database operations (DROP, TRUNCATE, unfiltered DELETE, FLUSHALL, resets) are not allowed",
        (
            *_sql_patterns(r"\bDROP\s+(?:TABLE|DATABASE|SCHEMA)\b"),
            *_sql_patterns(r"\bTRUNCATE\s+(?:TABLE\s+)?[\w.\"`]+"),
            *_sql_patterns(r"\bDELETE\s+FROM\s+[\w.\"`]+\s*(?:;|$|[\"'])"),
            r"\bredis-cli\b[^;&|]*\bFLUSH(?:ALL|DB)\b",
            r"\bprisma\s+migrate\s+reset\b",
            r"\bprisma\s+db\s+push\b[^;&|]*--force-reset\b",
            _CMD + r"dropdb\b",
            r"\b(?:manage\.py|django-admin)\s+(?:flush|reset_db)\b",
            r"\bdropDatabase\s*\(",
        ),
        re.IGNORECASE,
    ),
    CommandRule(
        "environment_destruction",
        "Destroying repository history or environment files is not allowed",
        (
            r"\brm\s+(?:-\S+\s+)*(?:\S*/)?\.git(?:/|\s|$)",
            r"\brm\s+(?:-\S+\s+)*(?:\S*/)?\.env\b",
            r"\bgit\s+push\b[^;&|]*\s(?:--force(?!-with-lease)|-f)\b",
            r"\bgit\s+reset\s+--hard\b",
            r"\bgit\s+clean\s+-\w*f\w*[dxX]|\bgit\s+clean\s+-\w*[dxX]\w*f",
            r"\bunset\s+PATH\b",
        ),
    ),
]

# Paths a shell command may not mention at all
COMMAND_PROTECTED_PATTERNS: Tuple[str, ...] = (
    ".env",
    ".env.*",
    "*.pem",
    "*.key",
    "*.p12",
    "*.pfx",
    "id_rsa",
    "id_ed25519",
    "id_ecdsa",
    "**/.ssh/**",
)


def _command_tokens(command: str) -> List[str]:
    try:
        tokens = shlex.split(command)
    except ValueError:
        # Unbalanced quotes: fall back to whitespace so the scan still runs
        tokens = command.split()

    cleaned = []
    for token in tokens:
        # --env-file=.env, >secrets.pem
        if "=" in token:
            token = token.split("=", 1)[1]
        token = token.lstrip("<>|&;(")
        token = token.rstrip(";&|)")
        if token:
            cleaned.append(token)
    return cleaned


def evaluate_command(command: Any) -> Decision:
    """
    Decide whether a shell command may run.

    Args:
        command: Command text

    Returns:
        Decision; the first matching dangerous-command rule blocks, then any
        token naming a protected path blocks
    """
    if not isinstance(command, str) or not command.strip():
        return Decision.block("Empty or invalid command", "malformed_input")

    for rule in DANGEROUS_COMMAND_RULES:
        if rule.matches(command):
            return Decision.block(rule.reason, rule.name)

    for token in _command_tokens(command):
        pattern = first_match(token, COMMAND_PROTECTED_PATTERNS)
        if pattern:
            return Decision.block(
                f"Command references protected path '{token}' (matches {pattern})",
                "protected_path_mention",
            )

    return Decision.allow()


# =============================================================================
# Path rules
# =============================================================================

@dataclass(frozen=True)
class ProtectedPattern:
    """A path pattern that may never be touched by the listed operations."""
    pattern: str
    operations: FrozenSet[str]
    reason: str


_ALL_FILE_OPS = frozenset({OP_READ, OP_WRITE, OP_EDIT})

PROTECTED_PATH_PATTERNS: List[ProtectedPattern] = [
    ProtectedPattern("*.key", _ALL_FILE_OPS, "Key files are protected"),
    ProtectedPattern("*.pem", _ALL_FILE_OPS, "Certificate and key files are protected"),
    ProtectedPattern("*.p12", _ALL_FILE_OPS, "Certificate bundles are protected"),
    ProtectedPattern("*.pfx", _ALL_FILE_OPS, "Certificate bundles are protected"),
    ProtectedPattern("id_rsa", _ALL_FILE_OPS, "SSH private keys are protected"),
    ProtectedPattern("id_ed25519", _ALL_FILE_OPS, "SSH private keys are protected"),
    ProtectedPattern("id_ecdsa", _ALL_FILE_OPS, "SSH private keys are protected"),
    ProtectedPattern(".env", MUTATING_OPERATIONS, "Environment files are protected"),
    ProtectedPattern(".env.*", MUTATING_OPERATIONS, "Environment files are protected"),
    ProtectedPattern("**/.git/**", MUTATING_OPERATIONS, "Git internals are protected"),
    ProtectedPattern("**/node_modules/**", MUTATING_OPERATIONS, "Installed dependencies are protected"),
]

SYSTEM_PATH_PREFIXES: Tuple[str, ...] = (
    "/etc/",
    "/usr/",
    "/bin/",
    "/sbin/",
    "/lib/",
    "/boot/",
    "/dev/",
    "/proc/",
    "/sys/",
    "/var/",
    "/System/",
    "c:/windows/",
    "c:/program files/",
)

# Files under the state directory that stay writable while writes are paused
PRESSURE_EXEMPT_FILES: Tuple[str, ...] = (
    "HANDOFF.md",
    "handoff-state.json",
    "session-state.json",
    "context-ledger.json",
)


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def resolve_path(path: str, cwd: Optional[str], default_root: Path) -> Path:
    """
    Resolve a possibly relative path to an absolute one.

    ``..`` segments and symlinks are resolved so that a path cannot escape a
    boundary check by traversal.
    """
    candidate = Path(path.replace("\\", "/")).expanduser()
    if not candidate.is_absolute():
        base = Path(cwd) if cwd else default_root
        candidate = base / candidate
    return candidate.resolve()


class AdmissionGate:
    """
    Evaluates agent actions against the guardian's rules and current state.

    Args:
        project_dir: Root of the main checkout
        config: Guardian configuration
        locks: ResourceLockManager for the critical resource
        workspaces: WorkspaceCoordinator for boundary checks
        pressure: PressureMonitor exposing blocking_reason()
        audit: Optional audit log for blocked and sensitive actions
    """

    def __init__(self, project_dir: Path, config: GuardianConfig, locks, workspaces, pressure,
                 audit: Optional[AuditLog] = None):
        self.project_dir = Path(project_dir).resolve()
        self.config = config
        self.locks = locks
        self.workspaces = workspaces
        self.pressure = pressure
        self.audit = audit
        self.state_dir = normalize_path(config.state_dir)
        self.protected_patterns = list(PROTECTED_PATH_PATTERNS) + [
            ProtectedPattern(p, _ALL_FILE_OPS, "Path is protected by project configuration")
            for p in config.gate.extra_protected_patterns
        ]

    # -- public API ------------------------------------------------------------

    def evaluate(self, invocation: ToolInvocation) -> Decision:
        """Evaluate an invocation and audit it if blocked."""
        if invocation.workspace_id is None and invocation.cwd:
            workspace_id = git_ops.current_workspace_id(Path(invocation.cwd), self.config.workspaces.base_dir)
            if workspace_id != "main":
                invocation.workspace_id = workspace_id

        if invocation.operation == OP_EXECUTE:
            decision = evaluate_command(invocation.target)
        else:
            decision = self.evaluate_file_access(
                invocation.target,
                invocation.operation,
                caller_workspace_id=invocation.workspace_id,
                cwd=invocation.cwd,
                session_id=invocation.session_id,
            )

        if not decision.allowed and self.audit is not None:
            self.audit.record_blocked(
                invocation.target,
                decision.reason or "",
                decision.rule or "unknown",
                operation=invocation.operation,
                session_id=invocation.session_id,
                workspace_id=invocation.workspace_id,
            )
        return decision

    def evaluate_payload(self, payload: Any) -> Decision:
        """Evaluate a raw hook payload; malformed payloads are blocked."""
        try:
            invocation = parse_invocation(payload)
        except InputError as e:
            log.warning("Rejecting malformed tool invocation: %s", e)
            return Decision.block(f"Malformed tool invocation: {e}", "malformed_input")
        if invocation is None:
            return Decision.allow("ungated_tool")
        return self.evaluate(invocation)

    def evaluate_command(self, command: Any) -> Decision:
        return evaluate_command(command)

    def evaluate_file_access(
        self,
        path: Any,
        operation: str,
        caller_workspace_id: Optional[str] = None,
        cwd: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Decision:
        """
        Decide whether a file operation may proceed.

        Args:
            path: Target path, absolute or relative to cwd
            operation: read, write or edit
            caller_workspace_id: Workspace the caller is assigned to, if any
            cwd: Caller working directory (defaults to the project root)
            session_id: Caller session, for audit entries

        Returns:
            Decision
        """
        if not isinstance(path, str) or not path.strip():
            return Decision.block("Missing or invalid file path", "malformed_input")
        if operation not in (OP_READ, OP_WRITE, OP_EDIT):
            return Decision.block(f"Unknown file operation '{operation}'", "malformed_input")

        try:
            return self._evaluate_path(path, operation, caller_workspace_id, cwd, session_id)
        except (GuardianError, OSError, RuntimeError, ValueError) as e:
            log.warning("Admission check failed for %s: %s", path, e)
            return Decision.block(f"Guardian could not verify access to '{path}': {e}", "internal_error")

    # -- checks ----------------------------------------------------------------

    def _evaluate_path(self, path, operation, caller_workspace_id, cwd, session_id) -> Decision:
        resolved = resolve_path(path, cwd, self.project_dir)
        absolute = resolved.as_posix()
        mutating = operation in MUTATING_OPERATIONS

        association = None
        if caller_workspace_id:
            association = self.workspaces.resolve_workspace(caller_workspace_id)
        workspace_root = Path(association.path).resolve() if association else None

        project_rel = self._relative(resolved, self.project_dir)
        repo_rel = project_rel
        if workspace_root is not None and _is_within(resolved, workspace_root):
            repo_rel = self._relative(resolved, workspace_root)
        candidates = [c for c in (repo_rel, project_rel, absolute) if c]

        # 1. shared coordination area
        if project_rel is not None and self._is_shared(project_rel):
            return Decision.allow("shared_prefix")

        # 2. context pressure
        if mutating:
            reason = self.pressure.blocking_reason()
            if reason and not self._pressure_exempt(project_rel):
                return Decision.block(reason, "context_pressure")

        # 3. never-write patterns
        for protected in self.protected_patterns:
            if operation in protected.operations and any(matches_pattern(c, protected.pattern) for c in candidates):
                return Decision.block(f"{protected.reason}: {path}", "protected_path")

        # 4. system directories
        inside_project = project_rel is not None or (
            workspace_root is not None and _is_within(resolved, workspace_root)
        )
        if mutating and not inside_project:
            lowered = absolute.lower() + ("/" if not absolute.endswith("/") else "")
            for prefix in SYSTEM_PATH_PREFIXES:
                if lowered.startswith(prefix.lower()):
                    return Decision.block(f"Writing to system path {prefix} is not allowed", "system_path")

        # 5. critical resource lock
        if mutating and repo_rel is not None:
            lock_config = self.config.lock
            if first_match(repo_rel, lock_config.guarded_patterns):
                holder = caller_workspace_id or "main"
                lock = self.locks.is_locked_by_other(lock_config.resource_name, holder)
                if lock is not None:
                    return Decision.block(
                        f"Resource '{lock.name}' is locked by workspace '{lock.holder_id}' for {lock.operation}. "
                        f"Wait for it to be released or ask the holder to release it.",
                        "resource_locked",
                    )

        # 6. workspace boundary
        if mutating and workspace_root is not None:
            if not _is_within(resolved, workspace_root) and not self._shared_allowed(project_rel, absolute):
                return Decision.block(
                    f"Path '{path}' is outside workspace '{caller_workspace_id}' ({workspace_root})",
                    "workspace_boundary",
                )

        # 7. allow, auditing sensitive paths
        if repo_rel is not None and self.audit is not None:
            pattern = first_match(repo_rel, self.config.gate.sensitive_patterns)
            if pattern:
                self.audit.record_sensitive_touch(
                    repo_rel,
                    pattern,
                    operation=operation,
                    session_id=session_id,
                    workspace_id=caller_workspace_id,
                )
        return Decision.allow()

    @staticmethod
    def _relative(path: Path, root: Path) -> Optional[str]:
        try:
            rel = path.relative_to(root).as_posix()
        except ValueError:
            return None
        return rel if rel != "." else ""

    def _is_shared(self, project_rel: str) -> bool:
        for prefix in self.config.gate.shared_prefixes:
            prefix = normalize_path(prefix)
            if prefix and (project_rel == prefix or project_rel.startswith(prefix + "/")):
                return True
        return False

    def _shared_allowed(self, project_rel: Optional[str], absolute: str) -> bool:
        for pattern in self.config.gate.shared_allow_list:
            if project_rel is not None and matches_pattern(project_rel, pattern):
                return True
            # Absolute entries cover scratch space outside the main checkout only
            if project_rel is None and pattern.startswith("/") and matches_pattern(absolute, pattern):
                return True
        return False

    def _pressure_exempt(self, project_rel: Optional[str]) -> bool:
        if project_rel is None:
            return False
        return any(project_rel == f"{self.state_dir}/{name}" for name in PRESSURE_EXEMPT_FILES)
