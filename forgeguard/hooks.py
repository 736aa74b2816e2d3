"""
Agent Hooks
===========

Pre- and post-tool-use hooks for the Claude agent SDK.

The pre-tool hook runs every gated action through the admission gate; the
post-tool hook records the outcome and feeds any nudges back to the agent as
additional context. Both build a Guardian for the project on each call and
keep no state of their own.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from forgeguard.config import CONFIG_FILENAME, DEFAULT_STATE_DIR, GuardianConfig, WorkspaceConfig
from forgeguard.errors import GuardianError
from forgeguard.guardian import Guardian

log = logging.getLogger(__name__)

PROJECT_ENV_VARS = ("FORGEGUARD_PROJECT_DIR", "CLAUDE_PROJECT_DIR")
DEFAULT_WORKSPACE_DIR = WorkspaceConfig().base_dir


def _workspace_owner(cwd: Path) -> Optional[Path]:
    """
    Nearest enclosing project whose configured workspace directory holds cwd.

    A directory counts as a project when it has a config file or a state
    directory; its ``workspaces.base_dir`` comes from its own configuration.
    """
    cwd = cwd.absolute()
    for parent in cwd.parents:
        if not ((parent / CONFIG_FILENAME).is_file() or (parent / DEFAULT_STATE_DIR).is_dir()):
            continue
        base = Path(GuardianConfig.load(parent).workspaces.base_dir)
        if not base.is_absolute():
            base = parent / base
        if base in cwd.parents:
            return parent
    return None


def resolve_project_dir(input_data: Optional[Dict[str, Any]] = None) -> Path:
    """
    Project root for a hook call.

    The environment wins, then the payload cwd. A cwd inside a workspace
    checkout maps to the project that owns the workspace, so both share one
    guardian state.
    """
    for name in PROJECT_ENV_VARS:
        value = os.environ.get(name)
        if value:
            return Path(value)
    cwd = Path.cwd()
    if isinstance(input_data, dict) and isinstance(input_data.get("cwd"), str) and input_data["cwd"]:
        cwd = Path(input_data["cwd"])

    owner = _workspace_owner(cwd)
    if owner is not None:
        return owner
    # No project on disk claims it: fall back to the default workspace layout
    parts = cwd.parts
    if DEFAULT_WORKSPACE_DIR in parts:
        return Path(*parts[:parts.index(DEFAULT_WORKSPACE_DIR)])
    return cwd


def pre_tool_response(
    input_data: Any,
    guardian: Optional[Guardian] = None,
    project_dir: Optional[Path] = None,
) -> Dict[str, Any]:
    """
    Admission decision for a pre-tool-use payload, in hook response form.

    Returns ``{}`` to allow or ``{"decision": "block", "reason": ...}``. Any
    failure to evaluate blocks.
    """
    try:
        guardian = guardian or Guardian.for_project(project_dir or resolve_project_dir(input_data))
        decision = guardian.admit(input_data)
    except (GuardianError, OSError, ValueError) as e:
        log.warning("Admission check failed: %s", e)
        return {"decision": "block", "reason": f"Guardian could not evaluate this action: {e}"}
    return decision.to_hook_response()


def post_tool_response(
    input_data: Any,
    guardian: Optional[Guardian] = None,
    project_dir: Optional[Path] = None,
) -> Dict[str, Any]:
    """
    Record a tool outcome and return nudges as additional context.

    Returns ``{}`` when there is nothing to say. Failures are logged and never
    block the agent.
    """
    if not isinstance(input_data, dict) or not isinstance(input_data.get("tool_name"), str):
        return {}
    try:
        guardian = guardian or Guardian.for_project(project_dir or resolve_project_dir(input_data))
        outcome = guardian.on_post_tool_use(
            input_data["tool_name"],
            input_data.get("tool_input"),
            input_data.get("tool_response"),
        )
    except (GuardianError, OSError, ValueError) as e:
        log.warning("Post-tool tracking failed: %s", e)
        return {}

    messages = outcome.messages
    if not messages:
        return {}
    return {
        "hookSpecificOutput": {
            "hookEventName": "PostToolUse",
            "additionalContext": "\n".join(f"[forgeguard] {m}" for m in messages),
        }
    }


async def guardian_pre_tool_hook(input_data, tool_use_id=None, context=None):
    """
    Pre-tool-use hook that enforces the admission gate.

    Args:
        input_data: Dict containing tool_name, tool_input, cwd and session_id
        tool_use_id: Optional tool use ID
        context: Optional context

    Returns:
        Empty dict to allow, or {"decision": "block", "reason": "..."} to block
    """
    return pre_tool_response(input_data)


async def guardian_post_tool_hook(input_data, tool_use_id=None, context=None):
    """
    Post-tool-use hook that tracks session progress and returns nudges.

    Args:
        input_data: Dict containing tool_name, tool_input and tool_response
        tool_use_id: Optional tool use ID
        context: Optional context

    Returns:
        Empty dict, or hookSpecificOutput carrying nudges as additional context
    """
    return post_tool_response(input_data)
