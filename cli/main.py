"""Job Queue CLI - Main Entry Point"""

from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from .client.endpoints import JobQueueClient, JobQueueError
from .commands import config, dlq, jobs
from .utils.config_manager import config as config_manager
from .utils.formatting import print_error, print_info

console = Console()

app = typer.Typer(
    name="jobqueue",
    help="🧰 Job Queue - background job and dead-letter management CLI",
    rich_markup_mode="rich",
)

app.add_typer(jobs.app, name="jobs")
app.add_typer(dlq.app, name="dlq")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check API, record store and dispatch queue status"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with JobQueueClient(base_url) as client:
            health = client.health_check()

    except JobQueueError as e:
        print_error(f"Failed to connect: {e}")
        console.print(Panel(
            f"🚫 [red]Connection Failed[/red]\n\n"
            f"Make sure the Job Queue API is running at:\n"
            f"[blue]{base_url}[/blue]\n\n"
            f"You can update the API URL with:\n"
            f"[cyan]jobqueue config set api.base_url <url>[/cyan]",
            title="Connection Error",
            border_style="red",
        ))
        raise typer.Exit(1) from None

    database = health.get("database") or {}
    dispatch = health.get("dispatch") or {}
    worker = health.get("worker") or {}
    healthy = health.get("ok", False)

    console.print(Panel(
        f"{'🚀 [green]Healthy[/green]' if healthy else '⚠️ [yellow]Degraded[/yellow]'}\n\n"
        f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
        f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
        f"• Database: {'[green]up[/green]' if database.get('connected') else '[red]down[/red]'}\n"
        f"• Dispatch ({dispatch.get('backend', '?')}): "
        f"{'[green]up[/green]' if dispatch.get('connected') else '[red]down[/red]'}"
        f", backlog {dispatch.get('queue_size', '—')}\n"
        f"• Active workers: [cyan]{worker.get('active_workers', 0)}[/cyan]\n"
        f"• API URL: [blue]{base_url}[/blue]",
        title="System Status",
        border_style="green" if healthy else "yellow",
    ))


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(f"Job Queue CLI v{__version__}")


@app.callback()
def main(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None, "--version", "-v", help="Show version and exit", is_eager=True
    ),
):
    """
    🧰 Job Queue CLI

    Submit and inspect background jobs, and triage the dead-letter queue.
    """
    if version:
        from . import __version__

        console.print(f"Job Queue CLI v{__version__}")
        raise typer.Exit()


if __name__ == "__main__":
    app()
