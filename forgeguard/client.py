"""
Claude SDK Client Configuration
===============================

Creates a Claude agent SDK client with the guardian hooks registered, so every
file access and shell command the agent attempts passes through the admission
gate and every outcome feeds session tracking and nudges.
"""

import json
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from claude_code_sdk import ClaudeCodeOptions, ClaudeSDKClient
from claude_code_sdk.types import HookMatcher

from forgeguard.guardian import Guardian
from forgeguard.hooks import guardian_post_tool_hook, guardian_pre_tool_hook
from forgeguard.output import print_info, print_muted
from forgeguard.security import TOOL_OPERATIONS, WORKSPACE_ENV_VAR

load_dotenv()

# Built-in tools
BUILTIN_TOOLS = [
    "Read",
    "Write",
    "Edit",
    "MultiEdit",
    "Glob",
    "Grep",
    "Bash",
]

# Tools the admission gate inspects
GATED_TOOLS_MATCHER = "|".join(sorted(TOOL_OPERATIONS))

DEFAULT_SYSTEM_PROMPT = (
    "You are an expert software engineer working in a shared repository alongside other agents. "
    "Stay inside your assigned workspace and commit often."
)


def build_hooks() -> dict:
    """Hook registrations for the agent runtime."""
    return {
        "PreToolUse": [
            HookMatcher(matcher=GATED_TOOLS_MATCHER, hooks=[guardian_pre_tool_hook]),
        ],
        "PostToolUse": [
            HookMatcher(matcher=None, hooks=[guardian_post_tool_hook]),
        ],
    }


def create_client(
    project_dir: Path,
    model: str,
    workspace_id: Optional[str] = None,
    system_prompt: Optional[str] = None,
    allowed_tools: Optional[List[str]] = None,
) -> ClaudeSDKClient:
    """
    Create a Claude agent SDK client guarded by ForgeGuard.

    Args:
        project_dir: Root of the main checkout
        model: Claude model to use
        workspace_id: Entity whose workspace the agent works in (None for the main checkout)
        system_prompt: Overrides the default system prompt
        allowed_tools: Overrides the default tool list

    Returns:
        Configured ClaudeSDKClient
    """
    project_dir = Path(project_dir).resolve()
    guardian = Guardian.for_project(project_dir)

    cwd = project_dir
    if workspace_id:
        association = guardian.workspaces.get_or_create(workspace_id)
        cwd = Path(association.path)
        os.environ[WORKSPACE_ENV_VAR] = association.workspace_id
        print_info(f"Agent workspace: {association.workspace_id} ({association.path})")
    os.environ["FORGEGUARD_PROJECT_DIR"] = str(project_dir)

    start = guardian.start_session()
    if start.handoff_notice:
        print_info(start.handoff_notice)
    print_muted(f"Guardian session {start.session.session_id} started")

    tools = list(allowed_tools or BUILTIN_TOOLS)
    security_settings = {
        "permissions": {
            "defaultMode": "acceptEdits",
            "allow": [
                "Read(./**)",
                "Write(./**)",
                "Edit(./**)",
                "Glob(./**)",
                "Grep(./**)",
                "Bash(*)",
            ],
        },
    }

    guardian.state_dir.mkdir(parents=True, exist_ok=True)
    settings_file = guardian.state_dir / "claude_settings.json"
    with open(settings_file, "w") as f:
        json.dump(security_settings, f, indent=2)

    return ClaudeSDKClient(
        options=ClaudeCodeOptions(
            model=model,
            system_prompt=system_prompt or DEFAULT_SYSTEM_PROMPT,
            allowed_tools=tools,
            hooks=build_hooks(),
            max_turns=1000,
            cwd=str(cwd),
            settings=str(settings_file.resolve()),
        )
    )
