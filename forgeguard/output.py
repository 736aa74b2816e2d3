"""
Rich Output Utilities
=====================

Terminal output for the ForgeGuard CLI using the Rich library.

Operator-facing output goes to ``console`` (stdout). Logging and anything
printed while running as an agent hook goes to ``err_console`` (stderr), since
hooks reserve stdout for their JSON response.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.theme import Theme


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class GuardianColors:
    """ForgeGuard color palette using hex for truecolor terminal support."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    shield: str = "#38BDF8"    # brand accent
    amber: str = "#F59E0B"     # orange severity
    steel: str = "#94A3B8"     # secondary accent
    ok: str = "#22C55E"        # success green
    warn: str = "#FBBF24"      # warning yellow
    err: str = "#EF4444"       # error red


def guardian_theme(colors: GuardianColors = GuardianColors()) -> Theme:
    """
    Rich Theme for the ForgeGuard CLI.

    Style names are semantic so you can use them everywhere:
      console.print("...", style="fg.ok")
    """
    return Theme(
        {
            "fg.border": f"{colors.shield}",
            "fg.accent": f"bold {colors.shield}",
            "fg.muted": f"{colors.dim}",
            "fg.text": f"{colors.ink}",

            "fg.ok": f"bold {colors.ok}",
            "fg.warn": f"bold {colors.warn}",
            "fg.err": f"bold {colors.err}",
            "fg.info": f"{colors.shield}",

            "fg.key": f"{colors.steel}",
            "fg.value": f"{colors.ink}",
            "fg.number": f"bold {colors.amber}",
            "fg.path": f"{colors.shield}",
            "fg.timestamp": f"{colors.dim}",

            # Context pressure severities
            "fg.severity.normal": f"{colors.ok}",
            "fg.severity.warning": f"{colors.warn}",
            "fg.severity.orange": f"bold {colors.amber}",
            "fg.severity.critical": f"bold {colors.err}",
            "fg.severity.force": f"bold reverse {colors.err}",

            "fg.table.header": f"bold {colors.shield}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if the terminal can handle Unicode characters."""
    if os.name == 'nt':
        try:
            encoding = sys.stdout.encoding or 'utf-8'
            "✓✗•".encode(encoding)
            return True
        except (UnicodeEncodeError, LookupError, AttributeError):
            return False
    return True


_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "blocked": "⛔",
    "warning": "⚠️",
    "info": "ℹ",
    "bullet": "•",
    "lock": "\U0001F512",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "blocked": "[BLOCKED]",
    "warning": "[!]",
    "info": "[i]",
    "bullet": "-",
    "lock": "[L]",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# =============================================================================
# Global Console Instances
# =============================================================================

console = Console(theme=guardian_theme())
err_console = Console(theme=guardian_theme(), stderr=True)


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"[fg.ok]{icon('check')} {message}[/]")


def print_error(message: str) -> None:
    """Print an error message with X."""
    console.print(f"[fg.err]{icon('cross')} {message}[/]")


def print_blocked(message: str) -> None:
    """Print a blocked-action message."""
    console.print(f"[fg.err]{icon('blocked')} {message}[/]")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[fg.warn]{icon('warning')} {message}[/]")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[fg.info]{icon('info')} {message}[/]")


def print_muted(message: str) -> None:
    """Print muted/secondary text."""
    console.print(f"[fg.muted]{message}[/]")


# =============================================================================
# Headers & Data Display
# =============================================================================

def print_header(title: str, style: str = "fg.accent") -> None:
    """Print a prominent section header with rule lines."""
    console.print()
    console.print(Rule(f"[{style}]{title}[/]", style=style))
    console.print()


def print_key_value_table(
    data: Dict[str, Any],
    *,
    title: Optional[str] = None,
    border_style: str = "fg.border",
) -> None:
    """Print multiple key-value pairs in a clean table format."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="fg.key")
    table.add_column("Value", style="fg.value")

    for key, value in data.items():
        table.add_row(key, str(value))

    if title:
        console.print(Panel(table, title=f"[bold]{title}[/]", border_style=border_style))
    else:
        console.print(table)


def print_list(
    items: Sequence[str],
    *,
    numbered: bool = False,
    style: str = "fg.text",
    bullet_style: str = "fg.accent",
) -> None:
    """Print a bulleted or numbered list."""
    for i, item in enumerate(items, 1):
        marker = f"{i}." if numbered else icon("bullet")
        console.print(f"  [{bullet_style}]{marker}[/] [{style}]{item}[/]")


def create_table(
    *,
    title: Optional[str] = None,
    columns: Optional[List[str]] = None,
    show_header: bool = True,
    border_style: str = "fg.border",
    header_style: str = "fg.table.header",
) -> Table:
    """Create a styled Rich Table with the ForgeGuard theme."""
    table = Table(
        title=title,
        show_header=show_header,
        header_style=header_style,
        border_style=border_style,
        title_style="fg.accent",
    )

    if columns:
        for col in columns:
            table.add_column(col)

    return table


def print_table(table: Table) -> None:
    """Print a Rich Table to the console."""
    console.print(table)


def print_markdown(text: str, *, title: Optional[str] = None) -> None:
    """Render a markdown document inside a panel."""
    console.print(Panel(Markdown(text), title=f"[bold]{title}[/]" if title else None, border_style="fg.border"))


def severity_style(severity: str) -> str:
    """Theme style for a context pressure severity name."""
    return f"fg.severity.{severity}"


# =============================================================================
# Logging
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Configure Python logging to use Rich, writing to stderr.

    Usage:
        setup_rich_logging()
        logging.info("This will be pretty!")
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=err_console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )],
        force=True,
    )
