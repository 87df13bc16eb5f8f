"""Dead Letter Commands - Triage of jobs that exhausted their retries"""

import json

import typer
from rich.console import Console
from rich.panel import Panel

from ..client.endpoints import JobQueueClient, JobQueueError
from ..utils.config_manager import config
from ..utils.formatting import (
    SEVERITY_STYLES,
    STATUS_STYLES,
    create_counts_table,
    create_dead_letter_panel,
    create_dead_letters_table,
    print_error,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="dlq", help="Dead-letter triage commands")


@app.command("list")
def list_dead_letters(
    status: str | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    severity: str | None = typer.Option(None, "--severity", help="Filter by severity"),
    job_type: str | None = typer.Option(None, "--type", "-t", help="Filter by job type"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of entries to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N entries"),
):
    """📋 List dead letters, most severe first"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            data = client.list_dead_letters(
                status=status, severity=severity, job_type=job_type, limit=limit, offset=offset
            )
            entries = data.get("dead_letters", [])

            if not entries:
                console.print(Panel(
                    "🎉 [green]No dead letters found![/green]",
                    title="Empty Results",
                    border_style="green",
                ))
                return

            console.print(create_dead_letters_table(entries))
            console.print(
                f"\n📊 Showing [cyan]{len(entries)}[/cyan] of "
                f"[yellow]{data.get('total', len(entries))}[/yellow] dead letters"
            )

    except JobQueueError as e:
        print_error(f"Failed to list dead letters: {e}")
        raise typer.Exit(1) from None


@app.command("show")
def show_dead_letter(dead_letter_id: str = typer.Argument(..., help="Dead letter ID")):
    """🔍 Show a dead letter"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            entry = client.get_dead_letter(dead_letter_id)
            console.print(create_dead_letter_panel(entry))
            console.print(Panel(json.dumps(entry.get("job_data", {}), indent=2), title="Job Payload"))
            if entry.get("error_stack"):
                console.print(Panel(entry["error_stack"], title="Stack", border_style="dim"))

    except JobQueueError as e:
        print_error(f"Failed to get dead letter: {e}")
        raise typer.Exit(1) from None


@app.command("stats")
def dead_letter_stats():
    """📊 Show dead-letter counts"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            stats = client.get_dead_letter_stats()
            console.print(f"Total dead letters: [yellow]{stats.get('total', 0)}[/yellow]")
            console.print(create_counts_table("By status", stats.get("by_status", {}), STATUS_STYLES))
            console.print(create_counts_table("By severity", stats.get("by_severity", {}), SEVERITY_STYLES))
            console.print(create_counts_table("By reason", stats.get("by_reason", {})))

    except JobQueueError as e:
        print_error(f"Failed to get dead letter stats: {e}")
        raise typer.Exit(1) from None


@app.command("stale")
def stale_dead_letters(
    days: int | None = typer.Option(None, "--days", "-d", help="Age threshold in days"),
):
    """⏳ List open dead letters nobody has looked at"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            data = client.get_stale_dead_letters(days)
            entries = data.get("dead_letters", [])
            if not entries:
                print_success(f"No open dead letters older than {data.get('days')} days")
                return
            print_warning(f"{len(entries)} dead letters older than {data.get('days')} days")
            console.print(create_dead_letters_table(entries))

    except JobQueueError as e:
        print_error(f"Failed to list stale dead letters: {e}")
        raise typer.Exit(1) from None


@app.command("reprocess")
def reprocess_dead_letter(
    dead_letter_id: str = typer.Argument(..., help="Dead letter ID"),
    resubmit: bool = typer.Option(False, "--resubmit", help="Submit a new job from the snapshot"),
):
    """🔁 Reprocess a dead letter"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            result = client.reprocess_dead_letter(dead_letter_id, resubmit=resubmit)
            if resubmit:
                print_success(f"Dead letter reprocessed as job {result.get('job_id')}")
            else:
                print_success(
                    f"Dead letter reprocessed "
                    f"({result.get('reprocess_attempts')}/{result.get('max_reprocess_attempts')})"
                )

    except JobQueueError as e:
        print_error(f"Failed to reprocess dead letter: {e}")
        raise typer.Exit(1) from None


@app.command("reprocess-batch")
def reprocess_batch(
    job_type: str = typer.Argument(..., help="Job type to reprocess"),
    max_entries: int | None = typer.Option(None, "--max", "-m", help="Maximum entries"),
):
    """🔁 Reprocess dead letters of a job type"""
    base_url = config.get("api.base_url")
    max_entries = max_entries or int(config.get("dlq.default_batch_size", 10))

    try:
        with JobQueueClient(base_url) as client:
            result = client.reprocess_batch(job_type, max_entries)
            print_success(f"Reprocessed {result.get('processed', 0)} dead letters")
            for error in result.get("errors", []):
                print_warning(f"{error.get('id')}: {error.get('error')}")

    except JobQueueError as e:
        print_error(f"Failed to reprocess dead letters: {e}")
        raise typer.Exit(1) from None


@app.command("resolve")
def resolve_dead_letter(
    dead_letter_id: str = typer.Argument(..., help="Dead letter ID"),
    resolution: str = typer.Option(..., "--resolution", "-r", help="How it was resolved"),
):
    """✅ Resolve a dead letter"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            client.resolve_dead_letter(dead_letter_id, resolution)
            print_success(f"Dead letter resolved: {dead_letter_id}")

    except JobQueueError as e:
        print_error(f"Failed to resolve dead letter: {e}")
        raise typer.Exit(1) from None


@app.command("ignore")
def ignore_dead_letter(
    dead_letter_id: str = typer.Argument(..., help="Dead letter ID"),
    reason: str = typer.Option(..., "--reason", "-r", help="Why it is ignored"),
):
    """🙈 Ignore a dead letter"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            client.ignore_dead_letter(dead_letter_id, reason)
            print_success(f"Dead letter ignored: {dead_letter_id}")

    except JobQueueError as e:
        print_error(f"Failed to ignore dead letter: {e}")
        raise typer.Exit(1) from None


@app.command("investigate")
def investigate_dead_letter(dead_letter_id: str = typer.Argument(..., help="Dead letter ID")):
    """🔎 Mark a dead letter as under investigation"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            client.investigate_dead_letter(dead_letter_id)
            print_success(f"Dead letter under investigation: {dead_letter_id}")

    except JobQueueError as e:
        print_error(f"Failed to update dead letter: {e}")
        raise typer.Exit(1) from None


@app.command("reopen")
def reopen_dead_letter(dead_letter_id: str = typer.Argument(..., help="Dead letter ID")):
    """↩️ Return a dead letter to pending"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            client.reopen_dead_letter(dead_letter_id)
            print_success(f"Dead letter reopened: {dead_letter_id}")

    except JobQueueError as e:
        print_error(f"Failed to reopen dead letter: {e}")
        raise typer.Exit(1) from None


@app.command("cleanup")
def cleanup_dead_letters(
    retention_days: int | None = typer.Option(None, "--days", "-d", help="Retention in days"),
):
    """🧹 Delete old resolved and ignored dead letters"""
    base_url = config.get("api.base_url")

    try:
        with JobQueueClient(base_url) as client:
            result = client.cleanup_dead_letters(retention_days)
            print_success(
                f"Deleted {result.get('deleted', 0)} dead letters older than "
                f"{result.get('retention_days')} days"
            )

    except JobQueueError as e:
        print_error(f"Failed to clean up dead letters: {e}")
        raise typer.Exit(1) from None
