"""Entry points for the command-line interface.

``relaycron run`` starts every configured task group; the remaining commands
inspect groups and persisted state or trigger a single task cycle.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import typer

from ..metrics import start_metrics_server
from ..scheduler import SchedulerService, get_default_service
from ..state_store import StateStoreError
import relaycron as rc


app = typer.Typer(help="Run and inspect relaycron task groups")

_options: Dict[str, Any] = {"config": None}


def _service() -> SchedulerService:
    try:
        return get_default_service()
    except RuntimeError:
        return rc.initialize(_options["config"])


@app.callback()
def _global_options(
    config: Optional[str] = typer.Option(
        None,
        "--config",
        help="YAML configuration file (defaults to RELAYCRON_CONFIG)",
    ),
    metrics_port: Optional[int] = typer.Option(
        None,
        "--metrics-port",
        help="Expose Prometheus metrics on PORT before executing the command",
    ),
) -> None:
    """Handle global options for the CLI."""

    _options["config"] = config
    if metrics_port is not None:
        start_metrics_server(metrics_port)


@app.command("groups")
def list_groups() -> None:
    """List task groups and their task keys."""

    service = _service()
    for group in service.groups:
        typer.echo(group.name)
        for key, _task in group.keyed_tasks():
            typer.echo(f"  {key}")


@app.command("status")
def show_status() -> None:
    """Show persisted due dates and session expirations."""

    service = _service()
    for group in service.groups:
        store = service.stores[group.name]
        for identity in service.identities:
            try:
                session = store.get_session(identity)
            except StateStoreError as exc:
                typer.echo(f"{identity}\t{group.name}\tsession error: {exc}", err=True)
                session = None
            expires = session.expiration_date.isoformat() if session else "-"
            typer.echo(f"{identity}\t{group.name}\tsession expires {expires}")
            for key, _task in group.keyed_tasks():
                try:
                    record = store.get_task_record(identity, key)
                except StateStoreError as exc:
                    typer.echo(f"{identity}\t{key}\terror: {exc}", err=True)
                    continue
                due = record.next_execution_date.isoformat() if record else "due now"
                typer.echo(f"{identity}\t{key}\t{due}")


@app.command("run")
def run_service() -> None:
    """Start every configured task group and run until interrupted."""

    service = _service()
    level = rc.load_config(_options["config"]).get("log_level", "INFO")
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not service.schedulers:
        typer.echo("error: no task groups configured", err=True)
        raise typer.Exit(code=1)
    try:
        asyncio.run(service.run_forever())
    except KeyboardInterrupt:
        typer.echo("stopped")


@app.command("trigger")
def trigger_task(
    name: str,
    identity: Optional[str] = typer.Option(None, "--identity", help="Identity to run for"),
) -> None:
    """Run one cycle of ``NAME`` (``group/task``) now and reschedule it."""

    service = _service()

    async def _run():
        try:
            return await service.trigger(name, identity)
        finally:
            await service.stop()

    try:
        outcome = asyncio.run(_run())
    except ValueError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    if outcome is None:
        typer.echo(f"{name} is already running")
        return
    typer.echo(f"{name}\t{outcome.status.value}")
    if outcome.status.value == "failed":
        raise typer.Exit(code=1)


def main(args: list[str] | None = None) -> None:
    """CLI entry point used by ``console_scripts`` or directly."""

    app(args, standalone_mode=args is None)


__all__ = [
    "app",
    "main",
    "list_groups",
    "run_service",
    "show_status",
    "trigger_task",
]
