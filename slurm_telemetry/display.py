"""Rich renderables for the command line."""

from typing import List, Optional, Sequence, Tuple

from rich import box
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from slurm_telemetry.config import Settings


def get_status_color(status: int) -> str:
    """Color for a remote exit status."""
    return "bright_green" if status == 0 else "red"


def settings_table(settings: Settings) -> Table:
    """Table of every option of this run."""
    table = Table(title="Options", box=box.SIMPLE, show_header=True, header_style="bold cyan")
    table.add_column("Option", style="bold white")
    table.add_column("Value")
    for key, value in settings.as_dict().items():
        if isinstance(value, tuple):
            value = " ".join(value)
        table.add_row(key, "[dim]unset[/]" if value is None else str(value))
    return table


def hosts_table(hosts: Sequence[str], statuses: Optional[List[Tuple[str, int]]] = None) -> Table:
    """Table of hosts, with the sampling result of each when available."""
    table = Table(box=box.ROUNDED, header_style="bold cyan")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Host", style="bold white")
    if statuses is None:
        for i, host in enumerate(hosts):
            table.add_row(str(i), host)
        return table

    table.add_column("Status", justify="center")
    for i, (host, status) in enumerate(statuses):
        label = "✓" if status == 0 else f"✗ exit {status}"
        table.add_row(str(i), host, Text(label, style=get_status_color(status)))
    return table


def cancel_message(job_id: str) -> Panel:
    """How to cancel the job so that it can shut down cleanly."""
    text = Text()
    text.append("If you want to cancel this job, please use\n\n", style="cyan")
    text.append(f"    scancel --signal=USR1 --batch {job_id}\n\n", style="bold yellow")
    text.append("This way, the telemetry sampler can be shut down correctly.", style="cyan")
    return Panel(text, title="[bold cyan]Cancelling[/]", border_style="cyan", box=box.ROUNDED)
