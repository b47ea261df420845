import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich import print
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import Settings
from .credits import CreditLedgerClient
from .jobs import JobStoreClient
from .models import JobStatus
from .worker import open_tables, start_workers

app = typer.Typer(help="sunrunctl - run-submission queue worker with retries and backfill credits.")

# Sub-apps so CLI supports commands like:
#   sunrunctl worker start --count 3
#   sunrunctl credits grant 2023001 --amount 5
worker_app = typer.Typer()
credits_app = typer.Typer()

app.add_typer(worker_app, name="worker", help="Run queue workers.")
app.add_typer(credits_app, name="credits", help="Inspect and top up backfill credits.")


@app.callback()
def main(log_level: str = typer.Option("INFO", "--log-level", help="Logging level")):
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


def _tables(settings: Settings):
    try:
        return open_tables(settings)
    except RuntimeError as e:
        print(f"[red]{e}[/red]")
        raise typer.Exit(1)


# -----------------------------
# Workers
# -----------------------------
@worker_app.command("start")
def worker_start(count: int = typer.Option(1, "--count", "-c", min=1, help="Number of worker processes")):
    """Start worker processes. Ctrl+C stops them between jobs."""
    settings = Settings()
    missing = settings.missing_connection_settings()
    if missing:
        print(f"[red]Missing configuration:[/red] {', '.join(missing)}")
        raise typer.Exit(1)
    print(f"Starting {count} worker(s) against [bold]{settings.worker_store}[/bold]. Ctrl+C to stop.")
    start_workers(settings, count)


# -----------------------------
# Enqueue
# -----------------------------
@app.command()
def enqueue(
    payload: Optional[str] = typer.Argument(None, help="Job user_data as JSON"),
    json_file: Optional[Path] = typer.Option(None, "--json-file", help="Read the JSON payload from a file"),
):
    """Add a PENDING job to the queue."""
    if json_file:
        payload = json_file.read_text(encoding="utf-8").strip()
    if not payload:
        raise typer.BadParameter("Provide a JSON payload or --json-file.")
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"Invalid JSON: {e.msg}")
    if not isinstance(data, dict):
        raise typer.BadParameter("Payload must be a JSON object.")

    job_table, _ = _tables(Settings())
    job = JobStoreClient(job_table).enqueue(data)
    print(f"[green]Enqueued[/green] job [bold]{job.id}[/bold]")


# -----------------------------
# Status & listing
# -----------------------------
@app.command()
def status():
    """Show job counts per status."""
    job_table, _ = _tables(Settings())
    tbl = Table(title="Jobs")
    tbl.add_column("Status")
    tbl.add_column("Count")
    for state, count in job_table.counts_by_status():
        tbl.add_row(state, str(count))
    Console().print(tbl)


@app.command("list")
def list_jobs(
    state: Optional[JobStatus] = typer.Option(None, "--status", help="Filter by status"),
    limit: int = typer.Option(50, "--limit", help="Maximum rows"),
):
    """List jobs, oldest first."""
    job_table, _ = _tables(Settings())
    rows = job_table.list_jobs(state.value if state else None, limit)
    t = Table(title=f"Jobs{'' if not state else f' ({state.value})'}")
    for c in ["id", "status", "attempts", "reserved", "result_log"]:
        t.add_column(c)
    for r in rows:
        user_data = r.get("user_data")
        if not isinstance(user_data, dict):
            user_data = {}
        t.add_row(
            str(r["id"]),
            r["status"],
            str(user_data.get("retryCount", 0)),
            "yes" if user_data.get("reservedCredit") else "",
            (r.get("result_log") or "")[:80],
        )
    Console().print(t)


# -----------------------------
# Credits
# -----------------------------
@credits_app.command("show")
def credits_show(user_id: str = typer.Argument(..., help="Student number")):
    _, credit_table = _tables(Settings())
    print(f"{user_id}: {CreditLedgerClient(credit_table).balance(user_id)} credit(s)")


@credits_app.command("grant")
def credits_grant(
    user_id: str = typer.Argument(..., help="Student number"),
    amount: int = typer.Option(1, "--amount", "-n", min=1, help="Credits to add"),
):
    _, credit_table = _tables(Settings())
    balance = CreditLedgerClient(credit_table).grant(user_id, amount)
    print(f"[green]Granted[/green] {amount} credit(s) to {user_id}, balance {balance}")
