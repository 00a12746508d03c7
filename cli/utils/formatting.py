"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def create_cleanup_table(report: dict[str, Any]) -> Table:
    """Create a formatted table for the per-job reconciler outcomes"""
    title = "Stuck Jobs (dry run)" if report.get("dry_run") else "Stuck Jobs"
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("Job ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("User", justify="left", style="magenta")
    table.add_column("Was", justify="center", style="yellow")
    table.add_column("Action", justify="center", style="bold")
    table.add_column("Reason", justify="left", style="white")

    for outcome in report.get("outcomes", []):
        action = outcome.get("action", "")
        style = {"completed": "green", "failed": "red"}.get(action, "dim")
        table.add_row(
            outcome.get("job_id", ""),
            outcome.get("user_id", ""),
            outcome.get("previous_status", ""),
            f"[{style}]{action}[/{style}]",
            outcome.get("reason") or "—",
        )

    return table


def create_cleanup_panel(report: dict[str, Any]) -> Panel:
    """Create summary panel for a reconciler run"""
    content = f"""
🧹 [bold blue]Reconciler Summary[/bold blue]

• Examined: [blue]{report.get("examined", 0)}[/blue]
• Marked completed: [green]{report.get("completed", 0)}[/green]
• Marked failed: [red]{report.get("failed", 0)}[/red]
• Skipped: [yellow]{report.get("skipped", 0)}[/yellow]
• Refunds requested: [cyan]{report.get("refunds_requested", 0)}[/cyan]
• Timeouts: processing [dim]{report.get("processing_timeout_s")}s[/dim], queued [dim]{report.get("queued_timeout_s")}s[/dim]
"""

    border = "yellow" if report.get("dry_run") else "green"
    return Panel(content, title="Cleanup", border_style=border)


def create_stats_table(stats: dict[str, Any]) -> Table:
    """Create formatted table for the job status breakdown"""
    table = Table(title="Jobs by Status", box=box.ROUNDED)

    table.add_column("Status", justify="left", style="bold")
    table.add_column("Count", justify="right", style="cyan")
    table.add_column("Oldest", justify="left", style="yellow")
    table.add_column("Newest", justify="left", style="green")

    for status, breakdown in stats.get("by_status", {}).items():
        table.add_row(
            status,
            str(breakdown.get("count", 0)),
            breakdown.get("oldest") or "—",
            breakdown.get("newest") or "—",
        )

    return table
