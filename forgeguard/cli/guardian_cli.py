#!/usr/bin/env python
"""
Guardian CLI - Coordinate agents working in one repository.

Usage:
    forgeguard hook pre|post                      (payload on stdin, response on stdout)
    forgeguard check command "rm -rf /"
    forgeguard check path FILE [--op write] [--workspace ID]
    forgeguard lock acquire|release|status [NAME] [--holder ID]
    forgeguard workspace create|list|release|cleanup
    forgeguard labels analyze|parallel
    forgeguard nudges tick|history|mute|unmute
    forgeguard pressure status|check|consult
    forgeguard handoff create|show|list
    forgeguard session start|end
    forgeguard audit [--limit N]
"""

import argparse
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path

from forgeguard.context_pressure import Severity
from forgeguard.errors import GuardianError
from forgeguard.guardian import Guardian
from forgeguard.handoff import REASON_MANUAL, REASON_TEXT
from forgeguard.hooks import post_tool_response, pre_tool_response
from forgeguard.labeling import LabeledTask, analyze_task, check_parallel_safety, labels_for_files
from forgeguard.nudges import NudgeType
from forgeguard.resource_lock import LOCK_OPERATIONS
from forgeguard.security import MUTATING_OPERATIONS, OP_READ, WORKSPACE_ENV_VAR
from forgeguard.output import (
    console,
    create_table,
    icon,
    print_blocked,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_list,
    print_markdown,
    print_muted,
    print_success,
    print_table,
    print_warning,
    setup_rich_logging,
    severity_style,
)


def _guardian(args) -> Guardian:
    return Guardian(args.project_dir or Path.cwd())


# =============================================================================
# hook
# =============================================================================

def cmd_hook(args):
    """Run a hook: JSON payload on stdin, JSON response on stdout."""
    raw = sys.stdin.read()
    try:
        payload = json.loads(raw) if raw.strip() else None
    except json.JSONDecodeError as e:
        payload = None
        logging.getLogger(__name__).warning("Hook payload is not valid JSON: %s", e)

    if args.event == "pre":
        response = pre_tool_response(payload, project_dir=args.project_dir)
    else:
        response = post_tool_response(payload, project_dir=args.project_dir)

    sys.stdout.write(json.dumps(response) + "\n")
    return 0


# =============================================================================
# check
# =============================================================================

def cmd_check(args):
    """Evaluate a command or path against the admission gate."""
    guardian = _guardian(args)
    if args.kind == "command":
        decision = guardian.gate.evaluate_command(args.target)
    else:
        decision = guardian.gate.evaluate_file_access(
            args.target,
            args.op,
            caller_workspace_id=args.workspace,
            cwd=str(Path.cwd()),
        )

    if decision.allowed:
        print_success(f"Allowed: {args.target}")
        return 0
    print_blocked(f"Blocked ({decision.rule}): {decision.reason}")
    return 2


# =============================================================================
# lock
# =============================================================================

def cmd_lock(args):
    """Acquire, release or inspect the critical resource lock."""
    guardian = _guardian(args)
    name = args.name or guardian.config.lock.resource_name

    if args.action == "status":
        lock = guardian.locks.status(name)
        if lock is None:
            print_info(f"Resource '{name}' is unlocked")
            return 0
        now = guardian.clock()
        print_key_value_table({
            "Resource": lock.name,
            "Holder": lock.holder_id,
            "Operation": lock.operation,
            "Acquired": lock.acquired_at,
            "Expires": lock.expires_at,
            "Remaining": f"{lock.remaining_minutes(now):.0f} min",
        }, title=f"{icon('lock')} Lock")
        return 0

    if args.action == "acquire":
        ttl = timedelta(minutes=args.ttl) if args.ttl is not None else None
        try:
            result = guardian.locks.acquire(name, args.holder, operation=args.operation, ttl=ttl)
        except ValueError as e:
            print_error(str(e))
            return 1
        if result.acquired:
            print_success(result.message)
            return 0
        print_blocked(result.message)
        return 1

    if guardian.locks.release(name, args.holder):
        print_success(f"Released lock '{name}'")
        return 0
    print_warning(f"'{args.holder}' does not hold lock '{name}'")
    return 1


# =============================================================================
# workspace
# =============================================================================

def cmd_workspace(args):
    """Manage per-entity workspaces."""
    guardian = _guardian(args)
    coordinator = guardian.workspaces

    if args.action == "create":
        association = coordinator.get_or_create(args.entity_id, labels=args.labels)
        print_success(f"Workspace '{association.workspace_id}' ready")
        print_key_value_table({
            "Path": association.path,
            "Branch": association.branch,
            "Labels": ", ".join(association.labels) or "[none]",
        })
        overlapping = coordinator.overlapping(association.labels, exclude=association.entity_id)
        if overlapping:
            print_warning("Other active workspaces share areas with this one:")
            print_list([f"{a.entity_id} ({', '.join(a.labels)})" for a in overlapping])
        console.print(f"[fg.muted]Export {WORKSPACE_ENV_VAR}={association.workspace_id} for agents working there[/]")
        return 0

    if args.action == "list":
        associations = coordinator.list_associations()
        if not associations:
            print_info("No active workspaces")
            return 0
        print_header(f"Workspaces ({len(associations)})")
        table = create_table(columns=["Entity", "Branch", "Path", "Last Activity", "Labels"])
        for a in associations:
            table.add_row(
                f"[fg.accent]{a.entity_id}[/]",
                a.branch,
                a.path,
                f"[fg.timestamp]{a.last_activity_at[:19]}[/]",
                ", ".join(a.labels),
            )
        print_table(table)
        return 0

    if args.action == "release":
        if coordinator.release(args.entity_id):
            print_success(f"Released workspace '{args.entity_id}'")
            return 0
        print_warning(f"No workspace for '{args.entity_id}'")
        return 1

    max_idle = timedelta(hours=args.max_idle_hours) if args.max_idle_hours is not None else None
    released = coordinator.cleanup_stale(max_idle)
    if released:
        print_success(f"Reclaimed {len(released)} idle workspace(s)")
        print_list(released)
    else:
        print_info("No idle workspaces to reclaim")
    return 0


# =============================================================================
# labels
# =============================================================================

def cmd_labels(args):
    """Suggest area labels and check tasks for parallel safety."""
    guardian = _guardian(args)
    area_labels = guardian.area_labels()

    if args.action == "analyze":
        text = args.text or ""
        if args.file:
            text += "\n" + Path(args.file).read_text(encoding="utf-8")
        if not text.strip() and not args.paths:
            print_error("Nothing to analyze: pass paths, --text or --file")
            return 1
        if text.strip():
            analysis = analyze_task(args.task_id, args.title or "", text, area_labels)
            files = sorted(set(analysis.mentioned_files) | set(args.paths))
            labels = labels_for_files(files, area_labels)
            suggested = labels + [label for label in analysis.suggested_labels if not label.startswith("area:")]
        else:
            files = list(args.paths)
            labels = labels_for_files(files, area_labels)
            suggested = labels

        if args.json:
            sys.stdout.write(json.dumps({"files": files, "area_labels": labels, "suggested_labels": suggested}) + "\n")
            return 0
        print_header("Label Analysis")
        print_key_value_table({
            "Files": len(files),
            "Areas": ", ".join(labels) or "[none]",
            "Suggested": ", ".join(suggested) or "[none]",
            "Parallel safe": "yes" if len(labels) <= 1 else "no",
        })
        if files:
            console.print()
            print_list(files)
        return 0

    with open(args.tasks_file, "r", encoding="utf-8") as f:
        raw_tasks = json.load(f)
    if not isinstance(raw_tasks, list):
        print_error("Tasks file must contain a JSON list")
        return 1

    tasks = []
    for index, raw in enumerate(raw_tasks, 1):
        task_id = raw.get("id", index)
        labels = raw.get("labels")
        if labels is None:
            labels = analyze_task(task_id, raw.get("title", ""), raw.get("body", ""), area_labels).area_labels
        tasks.append(LabeledTask(task_id=task_id, labels=[str(label) for label in labels]))

    result = check_parallel_safety(tasks)
    if args.json:
        sys.stdout.write(json.dumps(result.to_dict()) + "\n")
        return 0 if result.safe else 1

    print_header("Parallel Safety")
    if result.conflicts:
        table = create_table(columns=["Task", "Task", "Shared Areas"])
        for conflict in result.conflicts:
            table.add_row(f"#{conflict.task_a}", f"#{conflict.task_b}", ", ".join(conflict.shared_areas))
        print_table(table)
        print_warning(result.recommendation)
        return 1
    print_success(result.recommendation)
    return 0


# =============================================================================
# nudges
# =============================================================================

def cmd_nudges(args):
    """Evaluate, list and mute nudges."""
    guardian = _guardian(args)
    engine = guardian.nudges

    if args.action == "tick":
        session = guardian.sessions.current()
        messages = engine.messages(session)
        if not messages:
            print_muted("No nudges")
        for message in messages:
            print_info(message)
        return 0

    if args.action == "history":
        records = engine.history(limit=args.limit)
        if not records:
            print_info("No nudges recorded")
            return 0
        table = create_table(columns=["Time", "Type", "Message"])
        for record in records:
            table.add_row(
                f"[fg.timestamp]{str(record.get('timestamp', ''))[:19]}[/]",
                str(record.get("type", "")),
                str(record.get("message", "")),
            )
        print_table(table)
        return 0

    nudge_type = NudgeType(args.type)
    if args.action == "mute":
        engine.mute(nudge_type)
        print_success(f"Muted {nudge_type.value} nudges")
    else:
        engine.unmute(nudge_type)
        print_success(f"Unmuted {nudge_type.value} nudges")
    return 0


# =============================================================================
# pressure
# =============================================================================

def cmd_pressure(args):
    """Show or recompute context pressure."""
    guardian = _guardian(args)
    monitor = guardian.monitor

    if args.action == "consult":
        guardian.ledger.log_consultation(
            args.query,
            sources_checked=args.source,
            excerpts_returned=args.excerpts,
        )
        args.action = "check"

    if args.action == "check":
        evaluation = monitor.check()
        style = severity_style(evaluation.severity.label)
        console.print(f"[{style}]{evaluation.severity.label.upper()}[/] {evaluation.message}")
        if evaluation.suggestion:
            print_muted(evaluation.suggestion)
        return 2 if evaluation.blocking else 0

    state = monitor.state()
    ledger = guardian.ledger.load()
    style = severity_style(state.severity)
    print_key_value_table({
        "Pressure": f"{round(monitor.current_pressure() * 100)}%",
        "Severity": f"[{style}]{state.severity}[/]",
        "Writes": "paused" if state.blocking else "allowed",
        "Consultations": len(ledger.consultations),
        "Excerpts": ledger.total_excerpts,
        "Tool uses": len(ledger.tool_invocations),
        "Escalations": state.escalation_count,
    }, title="Context Pressure")
    if state.blocking and state.blocking_reason:
        print_warning(state.blocking_reason)
    return 0


# =============================================================================
# handoff
# =============================================================================

def cmd_handoff(args):
    """Create, show or list handoffs."""
    guardian = _guardian(args)
    handoffs = guardian.handoffs

    if args.action == "create":
        document = guardian.monitor.create_handoff(args.reason, current_task=args.task)
        print_success(f"Handoff written to {handoffs.markdown_path}")
        if document.next_actions:
            print_list(document.next_actions, numbered=True)
        return 0

    if args.action == "show":
        document = handoffs.load()
        if document is None:
            print_info("No handoff available")
            return 1
        print_markdown(document.to_markdown(), title="Handoff")
        return 0

    archived = handoffs.list_archive()
    if not archived:
        print_info("No archived handoffs")
        return 0
    print_header(f"Archived Handoffs ({len(archived)})")
    print_list([path.name for path in archived])
    return 0


# =============================================================================
# session
# =============================================================================

def cmd_session(args):
    """Start or end a guardian session."""
    guardian = _guardian(args)

    if args.action == "start":
        start = guardian.start_session(args.session_id)
        print_success(f"Session {start.session.session_id} started")
        if start.handoff_notice:
            print_info(start.handoff_notice)
        return 0

    end = guardian.end_session()
    if end.session is None:
        print_info("No active session")
    else:
        print_success(f"Session {end.session.session_id} ended")
    if end.handoff is not None:
        print_warning(f"Handoff created ({REASON_TEXT[end.handoff.reason]}): {guardian.handoffs.markdown_path}")
    elif end.evaluation.severity >= Severity.ORANGE:
        print_muted(end.evaluation.message)
    return 0


# =============================================================================
# audit
# =============================================================================

def cmd_audit(args):
    """Show recent audit entries."""
    guardian = _guardian(args)
    entries = guardian.audit.entries(limit=args.limit, category=args.category)
    if not entries:
        print_info("No audit entries")
        return 0
    table = create_table(columns=["Time", "Category", "Action", "Target", "Actor"])
    for entry in entries:
        severity = {"warn": "fg.warn", "critical": "fg.err"}.get(entry.severity, "fg.text")
        table.add_row(
            f"[fg.timestamp]{entry.timestamp[:19]}[/]",
            entry.category,
            f"[{severity}]{entry.action}[/]",
            entry.target,
            entry.actor,
        )
    print_table(table)
    return 0


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="forgeguard",
        description="Coordinate autonomous agents working in one repository",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=None,
        help="Project root containing the .forgeguard state directory (default: current dir)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # hook
    hook_parser = subparsers.add_parser("hook", help="Run as an agent hook (JSON on stdin/stdout)")
    hook_parser.add_argument("event", choices=["pre", "post"])

    # check
    check_parser = subparsers.add_parser("check", help="Evaluate a command or path against the gate")
    check_parser.add_argument("kind", choices=["command", "path"])
    check_parser.add_argument("target", help="Command text or file path")
    check_parser.add_argument("--op", default="write", choices=[OP_READ] + sorted(MUTATING_OPERATIONS))
    check_parser.add_argument("--workspace", default=None, help="Caller workspace id")

    # lock
    lock_parser = subparsers.add_parser("lock", help="Critical resource lock")
    lock_parser.add_argument("action", choices=["acquire", "release", "status"])
    lock_parser.add_argument("name", nargs="?", help="Resource name (default: configured resource)")
    lock_parser.add_argument("--holder", default="main", help="Holder id (usually a workspace id)")
    lock_parser.add_argument("--operation", default="edit", choices=list(LOCK_OPERATIONS))
    lock_parser.add_argument("--ttl", type=float, default=None, help="Lock lifetime in minutes")

    # workspace
    ws_parser = subparsers.add_parser("workspace", help="Per-entity workspaces")
    ws_sub = ws_parser.add_subparsers(dest="action", required=True)
    ws_create = ws_sub.add_parser("create", help="Create or reuse an entity's workspace")
    ws_create.add_argument("entity_id")
    ws_create.add_argument("--label", dest="labels", action="append", default=[], help="Area label (repeatable)")
    ws_sub.add_parser("list", help="List active workspaces")
    ws_release = ws_sub.add_parser("release", help="Remove an entity's workspace")
    ws_release.add_argument("entity_id")
    ws_cleanup = ws_sub.add_parser("cleanup", help="Reclaim idle workspaces")
    ws_cleanup.add_argument("--max-idle-hours", type=float, default=None)

    # labels
    labels_parser = subparsers.add_parser("labels", help="Area labels and parallel safety")
    labels_sub = labels_parser.add_subparsers(dest="action", required=True)
    analyze = labels_sub.add_parser("analyze", help="Suggest labels for files or task text")
    analyze.add_argument("paths", nargs="*", help="File paths")
    analyze.add_argument("--text", help="Task text to scan for file mentions")
    analyze.add_argument("--file", help="Read task text from a file")
    analyze.add_argument("--title", help="Task title")
    analyze.add_argument("--task-id", default="task")
    analyze.add_argument("--json", action="store_true")
    parallel = labels_sub.add_parser("parallel", help="Check a batch of tasks for area conflicts")
    parallel.add_argument("tasks_file", help="JSON list of {id, labels} or {id, title, body}")
    parallel.add_argument("--json", action="store_true")

    # nudges
    nudges_parser = subparsers.add_parser("nudges", help="Advisory nudges")
    nudges_sub = nudges_parser.add_subparsers(dest="action", required=True)
    nudges_sub.add_parser("tick", help="Evaluate nudges for the current session")
    history = nudges_sub.add_parser("history", help="Show fired nudges")
    history.add_argument("--limit", "-n", type=int, default=20)
    for action in ("mute", "unmute"):
        sub = nudges_sub.add_parser(action, help=f"{action.capitalize()} a nudge type")
        sub.add_argument("type", choices=[t.value for t in NudgeType])

    # pressure
    pressure_parser = subparsers.add_parser("pressure", help="Context pressure")
    pressure_sub = pressure_parser.add_subparsers(dest="action", required=True)
    pressure_sub.add_parser("status", help="Show the current watchdog state")
    pressure_sub.add_parser("check", help="Recompute pressure")
    consult = pressure_sub.add_parser("consult", help="Record a knowledge consultation")
    consult.add_argument("query")
    consult.add_argument("--source", action="append", default=[], help="Source checked (repeatable)")
    consult.add_argument("--excerpts", type=int, default=0, help="Excerpts returned to the agent")

    # handoff
    handoff_parser = subparsers.add_parser("handoff", help="Session handoffs")
    handoff_sub = handoff_parser.add_subparsers(dest="action", required=True)
    create = handoff_sub.add_parser("create", help="Write a handoff (archiving the previous one)")
    create.add_argument("--reason", default=REASON_MANUAL, choices=sorted(REASON_TEXT))
    create.add_argument("--task", help="Description of the work in progress")
    handoff_sub.add_parser("show", help="Show the current handoff")
    handoff_sub.add_parser("list", help="List archived handoffs")

    # session
    session_parser = subparsers.add_parser("session", help="Session lifecycle")
    session_sub = session_parser.add_subparsers(dest="action", required=True)
    start = session_sub.add_parser("start", help="Start a session")
    start.add_argument("--session-id", default=None)
    session_sub.add_parser("end", help="End the session (writes a handoff if needed)")

    # audit
    audit_parser = subparsers.add_parser("audit", help="Show the audit log")
    audit_parser.add_argument("--limit", "-n", type=int, default=50)
    audit_parser.add_argument("--category", default=None)

    return parser


COMMANDS = {
    "hook": cmd_hook,
    "check": cmd_check,
    "lock": cmd_lock,
    "workspace": cmd_workspace,
    "labels": cmd_labels,
    "nudges": cmd_nudges,
    "pressure": cmd_pressure,
    "handoff": cmd_handoff,
    "session": cmd_session,
    "audit": cmd_audit,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_rich_logging(logging.DEBUG if args.verbose else logging.WARNING)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return COMMANDS[args.command](args)
    except GuardianError as e:
        print_error(str(e))
        return 1
    except KeyboardInterrupt:
        console.print()
        print_muted("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
