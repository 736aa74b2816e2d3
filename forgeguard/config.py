"""
Configuration Management
========================

Handles loading guardian configuration from environment variables and the
project config file.

Precedence, highest first:
1. Environment variables (``FORGEGUARD_*``, a project ``.env`` is loaded first)
2. Project config file (``forgeguard.config.json``)
3. Default values
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

log = logging.getLogger(__name__)

CONFIG_FILENAME = "forgeguard.config.json"
DEFAULT_STATE_DIR = ".forgeguard"
ENV_PREFIX = "FORGEGUARD_"


@dataclass
class NudgeConfig:
    """Thresholds and cooldowns for advisory messages."""
    commit_enabled: bool = True
    commit_files_threshold: int = 5
    commit_minutes_threshold: float = 15.0
    test_enabled: bool = True
    test_minutes_threshold: float = 30.0
    error_enabled: bool = True
    context_enabled: bool = True
    context_threshold: float = 0.8
    cooldown_minutes: float = 10.0
    # 0 disables the tool-use requirement
    cooldown_tool_uses: int = 0


@dataclass
class PressureConfig:
    """Context pressure weights and severity thresholds."""
    consultation_weight: float = 0.05
    excerpt_weight: float = 0.01
    tool_use_weight: float = 0.002
    warning_threshold: float = 0.5
    orange_threshold: float = 0.7
    critical_threshold: float = 0.85
    force_threshold: float = 0.95
    block_writes_at_critical: bool = True

    def thresholds_ordered(self) -> bool:
        return (
            0.0 < self.warning_threshold
            < self.orange_threshold
            < self.critical_threshold
            < self.force_threshold
            <= 1.0
        )


@dataclass
class WorkspaceConfig:
    """Isolated checkout allocation."""
    base_dir: str = ".worktrees"
    branch_prefix: str = "forgeguard/"
    base_ref: str = "HEAD"
    max_idle_hours: float = 24.0


@dataclass
class LockConfig:
    """The single conflict-prone shared resource."""
    resource_name: str = "schema"
    guarded_patterns: List[str] = field(default_factory=lambda: [
        "**/schema.prisma",
        "**/migrations/**",
        "**/alembic/versions/**",
    ])
    ttl_minutes: float = 30.0


@dataclass
class GateConfig:
    """Path rules for the admission gate beyond the built-in protections."""
    shared_prefixes: List[str] = field(default_factory=lambda: [".forgeguard/shared/"])
    shared_allow_list: List[str] = field(default_factory=lambda: [
        ".forgeguard/**",
        "/tmp/**",
    ])
    extra_protected_patterns: List[str] = field(default_factory=list)
    sensitive_patterns: List[str] = field(default_factory=lambda: [
        ".env.example",
        ".env.sample",
        "**/migrations/**",
        "package-lock.json",
        "poetry.lock",
        "uv.lock",
        ".github/workflows/**",
        "Dockerfile",
    ])


@dataclass
class GuardianConfig:
    """ForgeGuard configuration for one project."""
    state_dir: str = DEFAULT_STATE_DIR
    store_backend: str = "json"
    lock_timeout_seconds: float = 10.0
    nudges: NudgeConfig = field(default_factory=NudgeConfig)
    pressure: PressureConfig = field(default_factory=PressureConfig)
    workspaces: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    # Replaces the built-in area label table when non-empty: [{"name", "patterns", "description"}]
    area_labels: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GuardianConfig":
        """Build a config from a (possibly partial) dictionary, ignoring unknown keys."""
        config = cls()
        _apply(config, data, path="")
        return config

    @classmethod
    def load(cls, project_dir: Optional[Path] = None) -> "GuardianConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables
        2. Project config file (forgeguard.config.json)
        3. Default values

        Args:
            project_dir: Project root (defaults to the current directory)

        Returns:
            GuardianConfig instance
        """
        project_dir = Path(project_dir) if project_dir else Path.cwd()

        env_file = project_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file, override=False)

        config = cls()

        config_path = project_dir / CONFIG_FILENAME
        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    file_config = json.load(f)
                if isinstance(file_config, dict):
                    _apply(config, file_config, path="")
                else:
                    log.warning("Ignoring %s: expected a JSON object", config_path)
            except (OSError, json.JSONDecodeError) as e:
                log.warning("Failed to load config file %s: %s", config_path, e)

        _apply_env(config)

        if not config.pressure.thresholds_ordered():
            log.warning("Pressure thresholds are not strictly increasing; using defaults")
            config.pressure = PressureConfig(
                consultation_weight=config.pressure.consultation_weight,
                excerpt_weight=config.pressure.excerpt_weight,
                tool_use_weight=config.pressure.tool_use_weight,
                block_writes_at_critical=config.pressure.block_writes_at_critical,
            )

        return config

    def state_path(self, project_dir: Path) -> Path:
        state_dir = Path(self.state_dir)
        return state_dir if state_dir.is_absolute() else Path(project_dir) / state_dir


def _coerce(value: Any, current: Any, name: str) -> Any:
    """Coerce a raw value to the type of the current default."""
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off"):
                return False
        raise ValueError(f"{name}: expected a boolean, got {value!r}")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, list):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, list):
            return [item if isinstance(item, dict) else str(item) for item in value]
        raise ValueError(f"{name}: expected a list, got {value!r}")
    return str(value)


def _apply(target: Any, data: Dict[str, Any], path: str) -> None:
    known = {f.name for f in fields(target)}
    for key, value in data.items():
        name = f"{path}{key}"
        if key not in known:
            log.warning("Unknown config key '%s' ignored", name)
            continue
        current = getattr(target, key)
        if hasattr(current, "__dataclass_fields__"):
            if isinstance(value, dict):
                _apply(current, value, path=f"{name}.")
            else:
                log.warning("Config key '%s' must be an object", name)
            continue
        try:
            setattr(target, key, _coerce(value, current, name))
        except (TypeError, ValueError) as e:
            log.warning("Invalid config value for '%s' (%s); keeping default", name, e)


def _apply_env(config: GuardianConfig) -> None:
    """
    Apply FORGEGUARD_* environment overrides.

    Top-level fields map to ``FORGEGUARD_<FIELD>``; section fields map to
    ``FORGEGUARD_<SECTION>_<FIELD>``, e.g. ``FORGEGUARD_NUDGES_COOLDOWN_MINUTES``.
    """
    for top in fields(config):
        current = getattr(config, top.name)
        if hasattr(current, "__dataclass_fields__"):
            for sub in fields(current):
                env_name = f"{ENV_PREFIX}{top.name}_{sub.name}".upper()
                if env_name in os.environ:
                    _apply(current, {sub.name: os.environ[env_name]}, path=f"{top.name}.")
        else:
            env_name = f"{ENV_PREFIX}{top.name}".upper()
            if env_name in os.environ:
                _apply(config, {top.name: os.environ[env_name]}, path="")
