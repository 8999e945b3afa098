"""
Rich Output Utilities
=====================

Unified terminal output for Loop Warden using the Rich library.
Every operator-facing message (warnings about corrupted state, pause banners,
escalation failures, CLI tables) goes through the themed console defined here.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.theme import Theme


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class WardenColors:
    """Loop Warden color palette using hex for truecolor terminal support."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    amber: str = "#F59E0B"     # warm accent
    teal: str = "#2DD4BF"      # cool accent
    steel: str = "#94A3B8"     # secondary accent
    ok: str = "#22C55E"        # success green
    warn: str = "#FBBF24"      # warning yellow
    err: str = "#EF4444"       # error red


def warden_theme(colors: WardenColors = WardenColors()) -> Theme:
    """
    Rich Theme for Loop Warden.

    Style names are semantic so you can use them everywhere:
      console.print("...", style="lw.ok")
    """
    return Theme(
        {
            "lw.banner": f"bold {colors.teal}",
            "lw.subtitle": f"{colors.dim}",
            "lw.border": f"{colors.teal}",
            "lw.accent": f"bold {colors.amber}",
            "lw.muted": f"{colors.dim}",
            "lw.text": f"{colors.ink}",

            "lw.ok": f"bold {colors.ok}",
            "lw.warn": f"bold {colors.warn}",
            "lw.err": f"bold {colors.err}",
            "lw.info": f"{colors.teal}",

            "lw.key": f"{colors.steel}",
            "lw.value": f"{colors.ink}",
            "lw.number": f"bold {colors.amber}",
            "lw.timestamp": f"{colors.dim}",

            "lw.table.header": f"bold {colors.teal}",

            # Health statuses, keyed by status value
            "lw.status.healthy": f"bold {colors.ok}",
            "lw.status.warning": f"bold {colors.warn}",
            "lw.status.critical": f"bold {colors.err}",
            "lw.status.paused": f"bold {colors.amber}",
            "lw.status.aborted": f"bold {colors.err}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if the terminal can handle Unicode characters."""
    if os.name == "nt":
        try:
            encoding = sys.stdout.encoding or "utf-8"
            "✓✗•".encode(encoding)
            return True
        except (UnicodeEncodeError, LookupError, AttributeError):
            return False
    return True


_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "warning": "⚠️",
    "info": "ℹ",
    "bullet": "•",
    "arrow_right": "→",
    "pause": "⏸",
    "stop": "⛔",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "warning": "[!]",
    "info": "[i]",
    "bullet": "-",
    "arrow_right": "->",
    "pause": "[||]",
    "stop": "[STOP]",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# =============================================================================
# Global Console Instance
# =============================================================================

console = Console(theme=warden_theme(), force_terminal=None)


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"[lw.ok]{icon('check')} {escape(message)}[/]")


def print_error(message: str) -> None:
    """Print an error message with X."""
    console.print(f"[lw.err]{icon('cross')} {escape(message)}[/]")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[lw.warn]{icon('warning')} {escape(message)}[/]")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[lw.info]{icon('info')} {escape(message)}[/]")


def print_muted(message: str) -> None:
    """Print muted/secondary text."""
    console.print(f"[lw.muted]{escape(message)}[/]")


# =============================================================================
# Headers, Tables & Panels
# =============================================================================

def print_header(title: str, style: str = "lw.accent") -> None:
    """Print a prominent section header with rule lines."""
    console.print()
    console.print(Rule(f"[{style}]{escape(title)}[/]", style=style))
    console.print()


def print_subheader(title: str, style: str = "lw.info") -> None:
    """Print a smaller subsection header."""
    console.print(f"\n[{style}]{icon('arrow_right')} {escape(title)}[/]")


def print_key_value_table(
    data: Dict[str, Any],
    *,
    title: Optional[str] = None,
    border_style: str = "lw.border",
) -> None:
    """Print multiple key-value pairs in a clean table format."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="lw.key")
    table.add_column("Value", style="lw.value")

    for key, value in data.items():
        table.add_row(key, str(value))

    if title:
        console.print(Panel(table, title=f"[bold]{title}[/]", border_style=border_style))
    else:
        console.print(table)


def create_table(
    *,
    title: Optional[str] = None,
    columns: Optional[List[str]] = None,
    show_header: bool = True,
    border_style: str = "lw.border",
    header_style: str = "lw.table.header",
) -> Table:
    """Create a styled Rich Table with the Loop Warden theme."""
    table = Table(
        title=title,
        show_header=show_header,
        header_style=header_style,
        border_style=border_style,
        title_style="lw.accent",
    )

    if columns:
        for col in columns:
            table.add_column(col)

    return table


def print_table(table: Table) -> None:
    """Print a Rich Table to the console."""
    console.print(table)


def print_panel(
    content: Union[str, Text],
    *,
    title: Optional[str] = None,
    border_style: str = "lw.border",
    padding: tuple = (1, 2),
) -> None:
    """Print content in a styled panel."""
    console.print(Panel(
        content,
        title=f"[bold]{title}[/]" if title else None,
        border_style=border_style,
        padding=padding,
    ))


def print_warning_panel(message: str, title: str = "Warning") -> None:
    """Print a warning panel with yellow border."""
    console.print(Panel(
        f"[lw.warn]{icon('warning')} {escape(message)}[/]",
        title=f"[lw.warn]{title}[/]",
        border_style="lw.warn",
        padding=(1, 2),
    ))


def print_error_panel(message: str, title: str = "Error") -> None:
    """Print an error panel with red border."""
    console.print(Panel(
        f"[lw.err]{icon('cross')} {escape(message)}[/]",
        title=f"[lw.err]{title}[/]",
        border_style="lw.err",
        padding=(1, 2),
    ))


def print_markdown(text: str) -> None:
    """Render a Markdown document (reports, recovery prompts)."""
    console.print(Markdown(text))


def status_markup(status: str) -> str:
    """Wrap a health or loop status in its themed style."""
    style = f"lw.status.{status}"
    if style not in ("lw.status.healthy", "lw.status.warning", "lw.status.critical",
                     "lw.status.paused", "lw.status.aborted"):
        style = "lw.value"
    return f"[{style}]{status}[/]"


# =============================================================================
# Supervision Banners
# =============================================================================

def print_status_paused(reason: str) -> None:
    """Print the banner shown when the overseer pauses a loop."""
    console.print()
    print_warning_panel(
        f"LOOP PAUSED\n\n"
        f"Reason: {reason}\n\n"
        "The loop needs human approval before it continues.\n"
        "Run `loopwarden resume LOOP_ID --reason ...` once the issue is addressed.",
        title=f"{icon('pause')} Overseer",
    )


def print_status_aborted(reason: str) -> None:
    """Print the banner shown when the overseer aborts a loop."""
    console.print()
    print_error_panel(
        f"LOOP ABORTED\n\n"
        f"Reason: {reason}\n\n"
        "Review the overseer report before restarting this loop.",
        title=f"{icon('stop')} Overseer",
    )


def print_banner(*, subtitle: str = "Supervision for autonomous loops") -> None:
    """Print the compact Loop Warden banner."""
    console.print(Panel(
        Text.assemble(
            Text("LOOP WARDEN", style="lw.banner"),
            "\n",
            Text(subtitle, style="lw.subtitle"),
        ),
        border_style="lw.border",
        padding=(1, 2),
    ))


# =============================================================================
# Logging Integration
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Configure Python logging to use Rich for log output.

    Usage:
        setup_rich_logging()
        logging.getLogger("loopwarden").info("Supervising loop")
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )],
    )
