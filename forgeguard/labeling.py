"""
Area Labels and Parallel Safety
===============================

Maps code paths to coarse ``area:*`` labels and uses them to decide whether
tasks can be worked on concurrently. Two tasks conflict when their area label
sets intersect; a batch is parallel-safe only when no pair conflicts.

Also infers ``type:*`` and ``priority:*`` labels from task text so a task can be
labelled from its title and description alone.
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from forgeguard.patterns import matches_pattern

log = logging.getLogger(__name__)

AREA_PREFIX = "area:"

TaskId = Union[int, str]


@dataclass(frozen=True)
class AreaLabel:
    """A label covering a region of the codebase."""
    name: str
    patterns: Tuple[str, ...]
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "AreaLabel":
        name = str(data["name"])
        if not name.startswith(AREA_PREFIX):
            name = f"{AREA_PREFIX}{name}"
        return cls(
            name=name,
            patterns=tuple(str(p) for p in data.get("patterns", [])),
            description=str(data.get("description", "")),
        )


DEFAULT_AREA_LABELS: List[AreaLabel] = [
    AreaLabel("area:db", ("prisma/**", "**/migrations/**", "**/alembic/**", "**/models.py", "**/db/**"),
              "Database schema and models"),
    AreaLabel("area:api", ("src/app/api/**", "**/api/**", "**/routes/**", "**/views.py"), "HTTP endpoints"),
    AreaLabel("area:auth", ("**/auth/**", "**/auth.py", "src/app/(auth)/**"), "Authentication"),
    AreaLabel("area:ui", ("src/components/**", "src/app/**/page.tsx", "**/templates/**", "**/static/**"),
              "User interface"),
    AreaLabel("area:cli", ("src/cli/**", "**/cli/**", "**/__main__.py"), "Command line interface"),
    AreaLabel("area:hooks", (".claude/hooks/**",), "Agent hooks"),
    AreaLabel("area:agents", (".claude/agents/**",), "Agent definitions"),
    AreaLabel("area:e2e", ("e2e/**", "playwright.config.ts"), "End-to-end tests"),
    AreaLabel("area:tests", ("tests/**", "test/**", "**/test_*.py", "**/*.test.ts"), "Unit tests"),
    AreaLabel("area:ci", (".github/**", ".gitlab-ci.yml"), "Continuous integration"),
    AreaLabel("area:docs", ("docs/**", "*.md"), "Documentation"),
    AreaLabel("area:config", ("*.config.*", ".env*", "pyproject.toml", "setup.cfg", "package.json",
                              "tsconfig.json", "forgeguard.config.json"), "Configuration files"),
]


# =============================================================================
# File mention extraction
# =============================================================================

# Relative paths with at least one directory: src/lib/db.py, ./web/app.tsx
_PATH_RE = re.compile(r"(?:^|[\s`'\"(\[])((?:\./)?(?:[\w.\-]+/)+[\w.\-]+\.\w+)", re.MULTILINE)
# file:line references: pkg/mod.py:42
_LINE_REF_RE = re.compile(r"\b([\w\-/.]+\.\w+):\d+")
# JavaScript stack frames: at handler (src/api/route.ts:10:5)
_JS_STACK_RE = re.compile(r"at\s+[\w.$<>]+\s+\(([\w\-/.]+\.\w+):\d+:\d+\)")
# Python tracebacks: File "pkg/mod.py", line 10
_PY_STACK_RE = re.compile(r"File \"([^\"]+\.\w+)\", line \d+")


def _clean(path: str) -> str:
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def extract_file_mentions(text: str) -> List[str]:
    """
    Find file paths mentioned in free text.

    Collects plain relative paths, ``file:line`` references and stack-trace
    frames (JavaScript and Python), deduplicated in first-seen order. Bare file
    names without a directory are ignored.
    """
    if not text:
        return []

    found: List[str] = []
    for match in _PATH_RE.finditer(text):
        found.append(_clean(match.group(1)))
    for match in _LINE_REF_RE.finditer(text):
        if "/" in match.group(1):
            found.append(_clean(match.group(1)))
    for regex in (_JS_STACK_RE, _PY_STACK_RE):
        for match in regex.finditer(text):
            found.append(_clean(match.group(1)))

    mentions: List[str] = []
    for path in found:
        if path and "/" in path and "://" not in path and path not in mentions:
            mentions.append(path)
    return mentions


# =============================================================================
# Labels
# =============================================================================

def labels_for_files(files: Iterable[str], area_labels: Optional[Sequence[AreaLabel]] = None) -> List[str]:
    """Area labels whose patterns match any of the files, in label-table order."""
    area_labels = DEFAULT_AREA_LABELS if area_labels is None else area_labels
    files = list(files)
    labels = []
    for area in area_labels:
        if any(matches_pattern(f, p) for f in files for p in area.patterns):
            labels.append(area.name)
    log.debug("Computed %d labels for %d files", len(labels), len(files))
    return labels


def area_patterns(label: str, area_labels: Optional[Sequence[AreaLabel]] = None) -> List[str]:
    """Glob patterns covered by an area label (empty if unknown)."""
    for area in DEFAULT_AREA_LABELS if area_labels is None else area_labels:
        if area.name == label:
            return list(area.patterns)
    return []


def pairwise_conflict(labels_a: Iterable[str], labels_b: Iterable[str]) -> Tuple[bool, List[str]]:
    """
    Check whether two label sets share an area.

    Returns:
        (conflict, shared area labels sorted by name)
    """
    areas_a = {label for label in labels_a if label.startswith(AREA_PREFIX)}
    areas_b = {label for label in labels_b if label.startswith(AREA_PREFIX)}
    shared = sorted(areas_a & areas_b)
    return bool(shared), shared


_TYPE_KEYWORDS = [
    ("type:bug", ("bug", "error", "broken", "crash", "fix", "regression")),
    ("type:security", ("security", "vulnerability", "cve", "xss", "injection")),
    ("type:performance", ("performance", "slow", "optimize", "latency")),
    ("type:refactor", ("refactor", "cleanup", "restructure")),
    ("type:feature", ("feature", "add", "implement", "new", "support")),
    ("type:docs", ("doc", "docs", "documentation", "readme", "comment")),
]

_PRIORITY_KEYWORDS = [
    ("priority:critical", ("critical", "urgent", "blocker", "production down")),
    ("priority:high", ("important", "asap", "high priority")),
    ("priority:low", ("minor", "low priority", "nice to have")),
]


def _mentions(text: str, keyword: str) -> bool:
    return re.search(rf"\b{re.escape(keyword)}\b", text) is not None


def infer_type_label(title: str, body: str = "") -> Optional[str]:
    """Guess a ``type:*`` label from keywords, first matching category wins."""
    text = f"{title} {body}".lower()
    for label, keywords in _TYPE_KEYWORDS:
        if any(_mentions(text, k) for k in keywords):
            return label
    return None


def infer_priority_label(title: str, body: str = "") -> str:
    """Guess a ``priority:*`` label, defaulting to medium."""
    text = f"{title} {body}".lower()
    for label, keywords in _PRIORITY_KEYWORDS:
        if any(_mentions(text, k) for k in keywords):
            return label
    return "priority:medium"


@dataclass
class TaskAnalysis:
    """Labels suggested for one task."""
    task_id: TaskId
    mentioned_files: List[str]
    area_labels: List[str]
    type_label: Optional[str]
    priority_label: str
    suggested_labels: List[str]
    # A task touching at most one area can run alongside others safely
    parallel_safe: bool

    def to_dict(self) -> dict:
        return asdict(self)


def analyze_task(
    task_id: TaskId,
    title: str,
    body: str = "",
    area_labels: Optional[Sequence[AreaLabel]] = None,
) -> TaskAnalysis:
    """Suggest area, type and priority labels for a task from its text."""
    mentioned = extract_file_mentions(f"{title}\n{body}")
    areas = labels_for_files(mentioned, area_labels)
    type_label = infer_type_label(title, body)
    priority = infer_priority_label(title, body)

    suggested = list(areas)
    if type_label:
        suggested.append(type_label)
    suggested.append(priority)

    log.info("Analyzed task %s: %d files, %d areas", task_id, len(mentioned), len(areas))
    return TaskAnalysis(
        task_id=task_id,
        mentioned_files=mentioned,
        area_labels=areas,
        type_label=type_label,
        priority_label=priority,
        suggested_labels=suggested,
        parallel_safe=len(areas) <= 1,
    )


# =============================================================================
# Parallel safety
# =============================================================================

@dataclass
class LabeledTask:
    task_id: TaskId
    labels: List[str] = field(default_factory=list)


@dataclass
class TaskConflict:
    task_a: TaskId
    task_b: TaskId
    shared_areas: List[str]


@dataclass
class ParallelCheckResult:
    """Outcome of a pairwise conflict check over a batch of tasks."""
    safe: bool
    tasks: List[LabeledTask]
    conflicts: List[TaskConflict]
    parallel_tasks: List[TaskId]
    recommendation: str

    def to_dict(self) -> dict:
        return asdict(self)

    def conflicts_by_task(self) -> Dict[TaskId, List[TaskId]]:
        """Each conflicting task mapped to the tasks it conflicts with."""
        mapping: Dict[TaskId, List[TaskId]] = {}
        for conflict in self.conflicts:
            mapping.setdefault(conflict.task_a, []).append(conflict.task_b)
            mapping.setdefault(conflict.task_b, []).append(conflict.task_a)
        return mapping


def _ref(task_id: TaskId) -> str:
    return f"#{task_id}"


def check_parallel_safety(tasks: Sequence[LabeledTask]) -> ParallelCheckResult:
    """
    Check every pair of tasks for shared areas.

    The batch is safe iff there are no conflicts. The recommendation lists the
    tasks that conflict with nobody as the ones to run in parallel.
    """
    tasks = list(tasks)
    conflicts = []
    for first, second in combinations(tasks, 2):
        conflict, shared = pairwise_conflict(first.labels, second.labels)
        if conflict:
            conflicts.append(TaskConflict(first.task_id, second.task_id, shared))

    conflicting = {c.task_a for c in conflicts} | {c.task_b for c in conflicts}
    parallel = [t.task_id for t in tasks if t.task_id not in conflicting]
    safe = not conflicts

    if safe:
        recommendation = f"All {len(tasks)} tasks can be worked on in parallel."
    elif parallel:
        refs = ", ".join(_ref(t) for t in parallel)
        recommendation = f"Run tasks {refs} in parallel. Tasks with conflicts should be serialized."
    else:
        recommendation = "All tasks have area conflicts. Run them sequentially."

    log.info("Parallel safety check: %d tasks, %d conflicts", len(tasks), len(conflicts))
    return ParallelCheckResult(
        safe=safe,
        tasks=tasks,
        conflicts=conflicts,
        parallel_tasks=parallel,
        recommendation=recommendation,
    )
