"""CLI utilities for reservation housekeeping."""

# purpose: let operators run expiry, session and reminder sweeps outside the beat schedule
# status: active
# depends_on: netlab.services.reaper, netlab.services.lifecycle, netlab.services.reminders

from __future__ import annotations

import json
from typing import Optional

import typer

from ..clock import get_clock
from ..database import session_scope
from ..runtime import context_from_env, get_lab_runtime
from ..services import lifecycle, reaper, reminders

app = typer.Typer(help="Reservation lifecycle maintenance commands")


def run_reaper(dry_run: bool = False, limit: Optional[int] = None) -> dict[str, object]:
    """Run one expiry sweep in its own session and return a JSON-ready summary."""

    with session_scope() as session:
        result = reaper.sweep(session, clock=get_clock(), dry_run=dry_run, limit=limit)
    return {
        "count": result.count,
        "reservation_ids": [str(i) for i in result.reservation_ids],
        "dry_run": result.dry_run,
    }


@app.command("reap")
def reap_command(
    dry_run: bool = typer.Option(False, "--dry-run", help="List candidates without cancelling them"),
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Maximum reservations to process"),
) -> None:
    typer.echo(json.dumps(run_reaper(dry_run=dry_run, limit=limit)))


@app.command("start-due")
def start_due_command() -> None:
    with session_scope() as session:
        started = lifecycle.start_due_reservations(
            session, runtime=get_lab_runtime(), context=context_from_env(), clock=get_clock()
        )
    typer.echo(json.dumps({"started": [str(i) for i in started]}))


@app.command("complete-ended")
def complete_ended_command() -> None:
    with session_scope() as session:
        completed = lifecycle.complete_ended_reservations(
            session, runtime=get_lab_runtime(), context=context_from_env(), clock=get_clock()
        )
    typer.echo(json.dumps({"completed": [str(i) for i in completed]}))


@app.command("remind-upcoming")
def remind_upcoming_command(
    minutes: int = typer.Option(
        reminders.REMINDER_MINUTES, "--minutes", min=1, help="Remind reservations starting within this many minutes"
    ),
) -> None:
    with session_scope() as session:
        sent = reminders.notify_upcoming_reservations(session, clock=get_clock(), lead_minutes=minutes)
    typer.echo(json.dumps({"reminded": [str(i) for i in sent]}))


@app.command("remind-ending")
def remind_ending_command(
    minutes: int = typer.Option(
        reminders.ENDING_NOTICE_MINUTES, "--minutes", min=1, help="Warn about sessions ending within this many minutes"
    ),
) -> None:
    with session_scope() as session:
        sent = reminders.notify_ending_reservations(session, clock=get_clock(), lead_minutes=minutes)
    typer.echo(json.dumps({"reminded": [str(i) for i in sent]}))


if __name__ == "__main__":  # pragma: no cover
    app()
