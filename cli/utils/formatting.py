"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "batched": "blue",
    "processing": "cyan",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
    "investigating": "magenta",
    "reprocessed": "blue",
    "resolved": "green",
    "ignored": "dim",
}

SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "green",
}


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


def styled(value: str | None, styles: dict[str, str]) -> str:
    if not value:
        return "—"
    style = styles.get(value, "white")
    return f"[{style}]{value}[/{style}]"


def create_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    """Create a formatted table for a job list"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("Job ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Priority", justify="center", style="yellow")
    table.add_column("Attempts", justify="center")
    table.add_column("Scheduled", justify="left", style="blue")

    for job in jobs:
        table.add_row(
            job.get("job_id", ""),
            job.get("type", ""),
            styled(job.get("status"), STATUS_STYLES),
            str(job.get("priority", "")),
            f"{job.get('attempts', 0)}/{job.get('max_attempts', 0)}",
            (job.get("scheduled_for") or "now")[:19],
        )

    return table


def create_dead_letters_table(dead_letters: list[dict[str, Any]]) -> Table:
    """Create a formatted table for a dead-letter list"""
    table = Table(title="Dead Letters", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Job ID", justify="left")
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Severity", justify="center")
    table.add_column("Reason", justify="left", style="yellow")
    table.add_column("Status", justify="center")
    table.add_column("Reprocessed", justify="center")

    for entry in dead_letters:
        table.add_row(
            str(entry.get("id", ""))[:8],
            entry.get("original_job_id", ""),
            entry.get("job_type", ""),
            styled(entry.get("severity"), SEVERITY_STYLES),
            entry.get("dlq_reason", ""),
            styled(entry.get("status"), STATUS_STYLES),
            f"{entry.get('reprocess_attempts', 0)}/{entry.get('max_reprocess_attempts', 0)}",
        )

    return table


def create_counts_table(title: str, counts: dict[str, int], styles: dict[str, str] | None = None) -> Table:
    """Two-column table of label to count"""
    table = Table(title=title, box=box.SIMPLE)
    table.add_column("Name", style="cyan")
    table.add_column("Count", justify="right", style="yellow")
    for name, count in counts.items():
        table.add_row(styled(name, styles) if styles else name, str(count))
    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create a detail panel for a single job"""
    content = f"""
🆔 [bold]Job ID:[/bold] [cyan]{job.get("job_id", "unknown")}[/cyan]
📝 [bold]Type:[/bold] [magenta]{job.get("type", "unknown")}[/magenta]
📌 [bold]Status:[/bold] {styled(job.get("status"), STATUS_STYLES)}
⚡ [bold]Priority:[/bold] [yellow]{job.get("priority")}[/yellow]
🔁 [bold]Attempts:[/bold] {job.get("attempts", 0)}/{job.get("max_attempts", 0)}
📅 [bold]Scheduled:[/bold] [blue]{job.get("scheduled_for") or "now"}[/blue]
👷 [bold]Worker:[/bold] {job.get("worker_id") or "—"}
"""
    if job.get("error"):
        content += f"\n❌ [bold]Last error:[/bold] [red]{job['error']}[/red]\n"

    return Panel(content.strip(), title="Job", border_style="blue")


def create_dead_letter_panel(entry: dict[str, Any]) -> Panel:
    """Create a detail panel for a single dead letter"""
    content = f"""
🆔 [bold]ID:[/bold] [cyan]{entry.get("id", "unknown")}[/cyan]
📦 [bold]Job:[/bold] {entry.get("original_job_id")} ([magenta]{entry.get("job_type")}[/magenta])
🚨 [bold]Severity:[/bold] {styled(entry.get("severity"), SEVERITY_STYLES)}
📌 [bold]Status:[/bold] {styled(entry.get("status"), STATUS_STYLES)}
🏷️ [bold]Reason:[/bold] [yellow]{entry.get("dlq_reason")}[/yellow]
🔁 [bold]Reprocessed:[/bold] {entry.get("reprocess_attempts", 0)}/{entry.get("max_reprocess_attempts", 0)}
❌ [bold]Failure:[/bold] [red]{entry.get("failure_reason")}[/red]
"""
    if entry.get("resolution"):
        content += f"\n✅ [bold]Resolution:[/bold] {entry['resolution']} ({entry.get('resolved_by')})\n"

    return Panel(content.strip(), title="Dead Letter", border_style="red")
