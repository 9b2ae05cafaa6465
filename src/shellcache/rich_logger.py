"""Rich console rendering for the shellcache CLI and server banner.

Lifecycle reports (reconcile, prefetch, worker status) are turned into tables
and trees; plain status lines go through the ``log_*`` helpers.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from .config import Settings
from .reconciler import ReconcileReport
from .worker import PrefetchReport

console = Console(stderr=True, soft_wrap=True)

_SENSITIVE_MARKERS = ("secret", "token", "password")


def _safe_json_format(data: Any, max_length: int = 2000) -> str:
    try:
        text = json.dumps(data, indent=2, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        text = str(data)
    if len(text) > max_length:
        return text[:max_length] + "\n... (truncated)"
    return text


def _details_panel(data: dict[str, Any], title: str, style: str) -> Panel:
    syntax = Syntax(_safe_json_format(data, max_length=500), "json", theme="monokai", word_wrap=True)
    return Panel(syntax, title=f"[bold {style}]{title}[/bold {style}]", border_style=style, box=box.ROUNDED, padding=(0, 1))


def log_info(message: str, **kwargs: Any) -> None:
    """Log an informational message with Rich formatting."""
    console.print(Text(message, style="bold bright_cyan"))
    if kwargs:
        console.print(_details_panel(kwargs, "Details", "bright_cyan"))


def log_error(message: str, error: Optional[Exception] = None, **kwargs: Any) -> None:
    """Log an error message, with the exception type and text when given."""
    console.print(Text(message, style="bold bright_red"))
    if error or kwargs:
        error_data = kwargs.copy()
        if error:
            error_data["error_type"] = type(error).__name__
            error_data["error_message"] = str(error)
        console.print(_details_panel(error_data, "Error Details", "bright_red"))


def log_success(message: str, **kwargs: Any) -> None:
    console.print(Text(message, style="bold bright_green"))
    if kwargs:
        console.print(_details_panel(kwargs, "Success Details", "bright_green"))


def create_startup_panel(settings: Settings, host: str, port: int) -> Panel:
    """Configuration tree shown when the HTTP front starts. Secrets are masked."""
    sections: dict[str, dict[str, Any]] = {
        "server": {"host": host, "port": port, "control_path": settings.http.control_path},
        "cache": {
            "origin": settings.cache.origin,
            "manifest": settings.cache.manifest_path,
            "backend": settings.cache.backend,
            "root": settings.cache.root,
        },
        "webhook": {"enabled": settings.webhook.enabled, "secret": settings.webhook.secret},
        "database": {"url": settings.database.url},
    }
    tree = Tree("[bold bright_white]shellcache[/bold bright_white]")
    for section, values in sections.items():
        branch = tree.add(f"[bold bright_cyan]{section}[/bold bright_cyan]")
        for key, value in values.items():
            if any(marker in key.lower() for marker in _SENSITIVE_MARKERS):
                display_value = "[dim red]********[/dim red]" if value else "[dim]not set[/dim]"
            else:
                display_value = escape(str(value))
            branch.add(f"[bright_yellow]{key}[/bright_yellow]: [white]{display_value}[/white]")
    return Panel(
        tree,
        title=f"[bold]Environment: {escape(settings.environment)}[/bold]",
        border_style="bright_blue",
        box=box.DOUBLE,
        padding=(1, 2),
    )


def create_reconcile_table(report: ReconcileReport) -> Table:
    table = Table(
        title=f"[bold bright_cyan]Reconciled {report.manifest_version}[/bold bright_cyan]",
        box=box.ROUNDED,
        border_style="bright_cyan",
        header_style="bold bright_white",
    )
    table.add_column("Outcome", style="bold")
    table.add_column("Count", justify="right")
    table.add_column("Keys", overflow="fold")
    rows = (
        ("retained", "bright_green", report.retained),
        ("evicted", "bright_red", report.evicted),
        ("restored", "bright_cyan", report.restored),
    )
    for label, style, keys in rows:
        table.add_row(f"[{style}]{label}[/{style}]", str(len(keys)), escape(", ".join(sorted(keys))))
    if report.first_install:
        table.caption = "first install: content partition rebuilt from staging"
    return table


def create_prefetch_table(report: PrefetchReport) -> Table:
    table = Table(
        title="[bold bright_cyan]Offline download[/bold bright_cyan]",
        box=box.ROUNDED,
        border_style="bright_green" if report.ok else "bright_red",
    )
    table.add_column("Resource", overflow="fold")
    table.add_column("Result")
    for key in sorted(report.fetched):
        table.add_row(escape(key), "[bright_green]fetched[/bright_green]")
    for key, reason in sorted(report.failed.items()):
        table.add_row(escape(key), f"[bright_red]{escape(reason)}[/bright_red]")
    table.caption = f"{len(report.fetched)} fetched, {len(report.failed)} failed, {len(report.requested)} requested"
    return table


def create_status_tree(status: dict[str, Any], partitions: dict[str, int]) -> Tree:
    """Render a worker status dict together with the partition entry counts."""
    tree = Tree(f"[bold bright_white]version {escape(str(status.get('version')))}[/bold bright_white]")
    tree.add(f"state: [bold]{escape(str(status.get('state')))}[/bold]")
    tree.add(f"resources: {status.get('resources')}")
    tree.add(f"shell: {escape(', '.join(status.get('shell') or []))}")
    branch = tree.add("[bold bright_cyan]partitions[/bold bright_cyan]")
    for name, count in partitions.items():
        branch.add(f"{escape(name)}: {count} entries")
    if status.get("last_error"):
        tree.add(f"[bright_red]last error: {escape(str(status['last_error']))}[/bright_red]")
    return tree
