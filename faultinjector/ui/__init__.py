"""
Fault Injector Terminal UI
==========================
Rich terminal interface: banner, fault-mode menu shown for every captured
response, listener and statistics panels.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

from faultinjector import __version__

# ── Theme ────────────────────────────────────────────────────────────────────

FAULT_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "title": "bold bright_green",
    "subtitle": "dim",
    "prompt": "bold bright_cyan",
    "token": "bold magenta",
    "body.full": "bold green",
    "body.partial": "bold yellow",
    "body.none": "bold red",
    "dim": "dim white",
})

console = Console(theme=FAULT_THEME)

# ── Banner ───────────────────────────────────────────────────────────────────

BANNER = (
    f"[title]⚡ HTTP Fault Injector[/] [dim]v{__version__}[/]\n"
    "[dim]  Every response waits for you: full, truncated, or not at all;[/]\n"
    "[dim]  then hang, close (FIN) or reset (RST) the client connection.[/]"
)


def show_banner() -> None:
    """Display the banner."""
    console.print(BANNER)


# ── Messages ─────────────────────────────────────────────────────────────────

def print_info(text: str) -> None:
    console.print(f"[info]ℹ {text}[/]")


def print_success(text: str) -> None:
    console.print(f"[success]✅ {text}[/]")


def print_warning(text: str) -> None:
    console.print(f"[warning]⚠️  {text}[/]")


def print_error(text: str) -> None:
    console.print(f"[error]❌ {text}[/]")


# ── Fault modes ──────────────────────────────────────────────────────────────

def build_modes_table(modes: Sequence[Any], title: Optional[str] = None) -> Table:
    """Table of fault modes (token, body, connection action, description)."""
    table = Table(title=title, show_header=True, box=None, padding=(0, 2))
    table.add_column("Key", style="token")
    table.add_column("Body")
    table.add_column("Then", style="dim")
    table.add_column("Description")
    for mode in modes:
        body = mode.body.value
        table.add_row(mode.token, f"[body.{body}]{body}[/]", mode.action.value, mode.description)
    return table


def show_fault_menu(modes: Sequence[Any], request_id: int, summary: str) -> None:
    """Show the selection menu for one captured response."""
    console.print()
    console.print(f"[prompt]{escape(f'[#{request_id}]')}[/] {escape(summary)}")
    console.print("[prompt]Select a response then press ENTER:[/]")
    for mode in modes:
        console.print(f"  [token]{mode.token}[/]: {mode.description}")


def show_modes(modes: Sequence[Any]) -> None:
    console.print(Panel(build_modes_table(modes), title="[title]Fault Modes[/]", border_style="green"))


# ── Status ───────────────────────────────────────────────────────────────────

def show_listeners(listeners: List[str]) -> None:
    """Display listening endpoints."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Endpoint", style="bold")
    for url in listeners:
        table.add_row(url)
    console.print(Panel(table, title="[title]Listening[/]", border_style="green"))


def show_stats(stats: Dict[str, Any]) -> None:
    """Display proxy statistics."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Requests", str(stats.get("total_requests", 0)))
    table.add_row("Upstream bytes", f"{stats.get('total_upstream_bytes', 0):,}")
    table.add_row("Delivered bytes", f"{stats.get('total_delivered_bytes', 0):,}")
    modes = stats.get("modes") or {}
    if modes:
        table.add_row("Modes", ", ".join(f"{k}={v}" for k, v in sorted(modes.items())))
    outcomes = stats.get("outcomes") or {}
    if outcomes:
        table.add_row("Outcomes", ", ".join(f"{k}={v}" for k, v in sorted(outcomes.items())))

    console.print(Panel(table, title="[title]Session[/]", border_style="green"))


def show_history(records: Sequence[Any]) -> None:
    """Display the most recent exchanges, newest first."""
    if not records:
        return
    table = Table(show_header=True, box=None, padding=(0, 2))
    table.add_column("#", style="dim")
    table.add_column("Request")
    table.add_column("Status")
    table.add_column("Key", style="token")
    table.add_column("Bytes")
    table.add_column("Outcome")
    for r in records:
        table.add_row(
            str(r.id),
            escape(f"{r.method} {r.url}"),
            str(r.status_code or "—"),
            r.token or "—",
            f"{r.delivered_bytes}/{r.upstream_size}",
            escape(r.outcome + (f" ({r.error})" if r.error else "")),
        )
    console.print(Panel(table, title="[title]Recent Exchanges[/]", border_style="green"))


def show_config(config: Dict[str, Dict[str, Any]]) -> None:
    """Display the effective configuration."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value")
    for section, values in config.items():
        for key, value in values.items():
            if key == "cert_password" and value:
                value = "••••••"
            table.add_row(f"{section}.{key}", "—" if value in (None, "") else str(value))
    console.print(Panel(table, title="[title]Configuration[/]", border_style="green"))
