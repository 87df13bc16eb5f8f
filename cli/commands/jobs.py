"""Job Commands - Submit, inspect and cancel jobs"""

import json

import typer
from rich.console import Console
from rich.panel import Panel

from ..client.endpoints import JobQueueClient, JobQueueError
from ..utils.config_manager import config
from ..utils.formatting import (
    STATUS_STYLES,
    create_counts_table,
    create_job_panel,
    create_jobs_table,
    print_error,
    print_info,
    print_success,
)

console = Console()
app = typer.Typer(name="jobs", help="Job submission and monitoring commands")


def _parse_payload(payload: str | None) -> dict:
    if not payload:
        return {}
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Payload is not valid JSON: {e}")
        raise typer.Exit(1) from None
    if not isinstance(parsed, dict):
        print_error("Payload must be a JSON object")
        raise typer.Exit(1)
    return parsed


@app.command("submit")
def submit_job(
    type: str = typer.Argument(..., help="Job type (e.g. 'email:send')"),
    payload: str | None = typer.Option(None, "--payload", "-p", help="JSON payload"),
    job_id: str | None = typer.Option(None, "--job-id", help="Idempotent job ID"),
    priority: int | None = typer.Option(None, "--priority", help="Priority 1-20"),
    max_attempts: int | None = typer.Option(None, "--max-attempts", help="Attempts 1-10"),
    delay_ms: int | None = typer.Option(None, "--delay-ms", help="Delay before first run"),
    backoff_type: str | None = typer.Option(None, "--backoff", help="fixed or exponential"),
):
    """📤 Submit a new job"""
    data = _parse_payload(payload)
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            result = client.submit_job(
                type,
                data,
                job_id=job_id,
                priority=priority,
                max_attempts=max_attempts,
                delay_ms=delay_ms,
                backoff_type=backoff_type,
            )
            print_success(f"Job submitted: {result.get('job_id')}")
            if result.get("scheduled_for"):
                print_info(f"Scheduled for {result['scheduled_for']}")

    except JobQueueError as e:
        print_error(f"Failed to submit job: {e}")
        raise typer.Exit(1) from None


@app.command("list")
def list_jobs(
    status: str | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    type: str | None = typer.Option(None, "--type", "-t", help="Filter by job type"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of jobs to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N jobs"),
):
    """📋 List jobs"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            jobs_data = client.list_jobs(status=status, type=type, limit=limit, offset=offset)

            jobs = jobs_data.get("jobs", [])
            total = jobs_data.get("total", len(jobs))

            if not jobs:
                console.print(Panel(
                    "📭 [yellow]No jobs found![/yellow]\n\n"
                    f"• Status: {status or 'any'}\n"
                    f"• Type: {type or 'any'}",
                    title="Empty Results",
                    border_style="yellow",
                ))
                return

            console.print(create_jobs_table(jobs))
            console.print(f"\n📊 Showing [cyan]{len(jobs)}[/cyan] of [yellow]{total}[/yellow] jobs")

            if offset + limit < total:
                console.print(f"💡 Use [cyan]--offset {offset + limit}[/cyan] to see more")

    except JobQueueError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None


@app.command("show")
def show_job(job_id: str = typer.Argument(..., help="Job ID to show")):
    """🔍 Show a job"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            job = client.get_job(job_id)
            console.print(create_job_panel(job))
            if job.get("data"):
                console.print(Panel(json.dumps(job["data"], indent=2), title="Payload"))

    except JobQueueError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None


@app.command("cancel")
def cancel_job(job_id: str = typer.Argument(..., help="Job ID to cancel")):
    """🛑 Cancel a job that has not started"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            client.cancel_job(job_id)
            print_success(f"Job cancelled: {job_id}")

    except JobQueueError as e:
        print_error(f"Failed to cancel job: {e}")
        raise typer.Exit(1) from None


@app.command("stats")
def job_stats():
    """📊 Show job counts by status and type"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            stats = client.get_job_stats()

            queue_size = stats.get("dispatch_queue_size")
            console.print(Panel(
                f"• Total jobs: [yellow]{stats.get('total_jobs', 0)}[/yellow]\n"
                f"• Ready to claim: [green]{stats.get('ready', 0)}[/green]\n"
                f"• Dispatch backlog: [cyan]{queue_size if queue_size is not None else 'unavailable'}[/cyan]",
                title="Job Statistics",
                border_style="blue",
            ))
            console.print(create_counts_table("By status", stats.get("by_status", {}), STATUS_STYLES))
            by_type = {
                job_type: entry.get("count", 0)
                for job_type, entry in stats.get("by_type", {}).items()
            }
            if by_type:
                console.print(create_counts_table("By type", by_type))

    except JobQueueError as e:
        print_error(f"Failed to get job stats: {e}")
        raise typer.Exit(1) from None


@app.command("cleanup")
def cleanup_jobs(
    retention_days: int | None = typer.Option(None, "--days", "-d", help="Retention in days"),
):
    """🧹 Delete old completed and cancelled jobs"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            result = client.cleanup_jobs(retention_days)
            print_success(
                f"Deleted {result.get('deleted', 0)} jobs older than "
                f"{result.get('retention_days')} days"
            )

    except JobQueueError as e:
        print_error(f"Failed to clean up jobs: {e}")
        raise typer.Exit(1) from None
