"""Analysis Worker CLI - Main Entry Point"""

import asyncio

import typer
from typing import Optional
from rich.console import Console
from rich.panel import Panel

from analysis_worker.config.settings import settings

from .commands import jobs
from .utils.formatting import print_error, print_info
from .client.endpoints import WorkerOpsClient, default_base_url

console = Console()

# Create main Typer app
app = typer.Typer(
    name="analysis-worker",
    help="🧠 Analysis Worker - Assessment analysis queue worker CLI",
    rich_markup_mode="rich",
)

app.command("cleanup")(jobs.cleanup)
app.command("stats")(jobs.stats)


@app.command()
def run(
    server: bool = typer.Option(
        True, "--server/--no-server", help="Serve the ops API alongside the worker"
    ),
    host: Optional[str] = typer.Option(None, "--host", help="Ops API host"),
    port: Optional[int] = typer.Option(None, "--port", help="Ops API port"),
):
    """🚀 Start consuming analysis jobs"""
    from analysis_worker.config.logging import setup_logging
    from analysis_worker.v1.infra.jobs.worker import get_worker

    setup_logging()
    worker = get_worker(settings)

    console.print(Panel(
        f"🧠 [bold cyan]Analysis Worker[/bold cyan]\n\n"
        f"• Queue: [green]{settings.queue_name}[/green]\n"
        f"• Concurrency: [yellow]{settings.worker_concurrency}[/yellow]\n"
        f"• State store: [blue]{settings.state_store_backend.value}[/blue]\n"
        f"• Ops API: [blue]{f'http://{host or settings.host}:{port or settings.port}' if server else 'disabled'}[/blue]",
        title="Starting",
        border_style="cyan"
    ))

    if server:
        import uvicorn

        from analysis_worker.main import create_app

        uvicorn.run(
            create_app(worker),
            host=host or settings.host,
            port=port or settings.port,
        )
    else:
        asyncio.run(worker.run())


@app.command()
def status(
    url: Optional[str] = typer.Option(None, "--url", help="Ops API base URL"),
):
    """📊 Check worker health and connectivity"""
    base_url = url or default_base_url()
    print_info(f"Checking connection to: {base_url}")

    try:
        with WorkerOpsClient(base_url) as client:
            health = client.health_check()
    except Exception as e:
        print_error(f"Failed to connect: {e}")
        console.print(Panel(
            f"🚫 [red]Connection Failed[/red]\n\n"
            f"Make sure the worker is running with its ops API at:\n"
            f"[blue]{base_url}[/blue]\n\n"
            f"Start it with:\n"
            f"[cyan]analysis-worker run[/cyan]",
            title="Connection Error",
            border_style="red"
        ))
        raise typer.Exit(1)

    worker = health.get("worker") or {}
    database = health.get("database") or {}
    ok = health.get("ok", False)
    breaker = (worker.get("circuit_breaker") or {}).get("status", "unknown")

    console.print(Panel(
        f"{'🚀 [green]Healthy[/green]' if ok else '⚠️ [red]Unhealthy[/red]'}\n\n"
        f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
        f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
        f"• Database: [{'green' if database.get('connected') else 'red'}]"
        f"{'connected' if database.get('connected') else 'unavailable'}[/]\n"
        f"• Worker: [blue]{worker.get('worker_id', 'not running')}[/blue]\n"
        f"• Circuit breaker: [magenta]{breaker}[/magenta]\n"
        f"• API URL: [blue]{base_url}[/blue]",
        title="Worker Status",
        border_style="green" if ok else "red"
    ))
    if not ok:
        raise typer.Exit(1)


@app.command()
def version():
    """📎 Show CLI version information"""
    console.print(Panel(
        f"🧠 [bold cyan]{settings.app_name}[/bold cyan]\n\n"
        f"• Version: [green]{settings.version}[/green]\n"
        f"• Environment: [yellow]{settings.environment}[/yellow]",
        title="Version Info",
        border_style="cyan"
    ))


@app.callback()
def main():
    """
    🧠 [bold cyan]Analysis Worker[/bold cyan]

    Consumes assessment analysis jobs and keeps their state consistent.
    """
    pass


if __name__ == "__main__":
    app()
