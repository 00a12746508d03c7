"""Job Commands - Stuck-job cleanup and status statistics"""

from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from ..client.base import OpsAPIError
from ..client.endpoints import WorkerOpsClient
from ..utils.formatting import (
    create_cleanup_panel,
    create_cleanup_table,
    create_stats_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()


def cleanup(
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Report what would change without modifying anything"
    ),
    processing_timeout: Optional[float] = typer.Option(
        None, "--processing-timeout", help="Seconds in processing before a job is stuck"
    ),
    queued_timeout: Optional[float] = typer.Option(
        None, "--queued-timeout", help="Seconds in queued before a job is stuck"
    ),
    url: Optional[str] = typer.Option(None, "--url", help="Ops API base URL"),
):
    """🧹 Reconcile jobs stuck in queued or processing"""
    if dry_run:
        print_info("Dry run: no jobs will be modified")

    try:
        with WorkerOpsClient(url) as client:
            report = client.cleanup(
                dry_run=dry_run,
                processing_timeout_s=processing_timeout,
                queued_timeout_s=queued_timeout,
            )
    except OpsAPIError as e:
        print_error(f"Cleanup failed: {e}")
        raise typer.Exit(1)

    console.print(create_cleanup_panel(report))
    if report.get("outcomes"):
        console.print(create_cleanup_table(report))

    if report.get("examined", 0) == 0:
        print_success("No stuck jobs found")
    elif dry_run:
        print_warning(f"{report['examined']} stuck job(s) would be reconciled")
    else:
        print_success(
            f"Reconciled {report.get('completed', 0) + report.get('failed', 0)} "
            f"of {report['examined']} stuck job(s)"
        )


def stats(
    processing_timeout: Optional[float] = typer.Option(
        None, "--processing-timeout", help="Seconds in processing before a job is stuck"
    ),
    url: Optional[str] = typer.Option(None, "--url", help="Ops API base URL"),
):
    """📊 Show job counts by status and stuck jobs"""
    try:
        with WorkerOpsClient(url) as client:
            data = client.job_stats(processing_timeout_s=processing_timeout)
    except OpsAPIError as e:
        print_error(f"Failed to fetch job stats: {e}")
        raise typer.Exit(1)

    console.print(create_stats_table(data))

    stuck = data.get("stuck_count", 0)
    style = "red" if stuck else "green"
    console.print(
        Panel(
            f"• Stuck in processing: [{style}]{stuck}[/{style}]\n"
            f"• Oldest stuck created: [yellow]{data.get('oldest_stuck_created_at') or '—'}[/yellow]\n"
            f"• Latest stuck update: [yellow]{data.get('latest_stuck_updated_at') or '—'}[/yellow]\n"
            f"• Stuck after: [dim]{data.get('processing_timeout_s')}s[/dim]",
            title="Stuck Jobs",
            border_style=style,
        )
    )
