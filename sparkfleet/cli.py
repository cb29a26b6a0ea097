"""Command line front-end.

    sparkfleet [--config FILE] create-cluster 3
    sparkfleet add-workers 2
    sparkfleet remove-workers 1
    sparkfleet restart-cluster
    sparkfleet show-machines
    sparkfleet upload-job target/job.jar
    sparkfleet submit-job target/job.jar arg1 arg2
    sparkfleet destroy-cluster
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path

from loguru import logger
from rich.console import Console
from rich.table import Table

from sparkfleet.config import load_config
from sparkfleet.exceptions import FleetError
from sparkfleet.logging import LogConfig, setup_logging, teardown_logging
from sparkfleet.module import create_orchestrator
from sparkfleet.orchestrator import FleetOrchestrator, FleetView

log = logger.bind(component="cli")


def render_fleet(view: FleetView, console: Console) -> None:
    if view.coordinator is None:
        console.print("No master found.")
    else:
        console.print(f"[bold]master[/bold] {view.coordinator.name}. IP address: {view.coordinator.address}")
        console.print(f"Login command: {view.login_command}")
        console.print(f"Web UI: {view.web_ui}")

    if not view.workers:
        return

    table = Table("worker", "id", "address")
    for worker in view.workers:
        table.add_row(worker.name, worker.id, worker.address)
    console.print(table)


async def _dispatch(args: argparse.Namespace, orchestrator: FleetOrchestrator, console: Console) -> None:
    match args.command:
        case "create-cluster":
            await orchestrator.create_cluster(args.count)
            render_fleet(await orchestrator.show_machines(), console)
        case "add-workers":
            await orchestrator.add_workers(args.count)
        case "remove-workers":
            await orchestrator.remove_workers(args.count)
        case "restart-cluster":
            await orchestrator.restart_cluster()
        case "destroy-cluster":
            await orchestrator.destroy_fleet()
        case "show-machines":
            render_fleet(await orchestrator.show_machines(), console)
        case "upload-job":
            await orchestrator.upload_artifact(args.artifact)
        case "submit-job":
            await orchestrator.submit_job(args.artifact, args.args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sparkfleet",
        description="Provision EC2 machines and run a Spark standalone cluster on them",
    )
    parser.add_argument("--config", type=Path, default=None, help="Configuration file (default: ./sparkfleet.toml)")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-file", default=None, help="Also write a full debug log to this file")
    parser.add_argument(
        "--destroy-on-fail",
        action="store_true",
        default=None,
        help="Destroy the whole cluster when an operation fails",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("create-cluster", "Create the master and N workers"),
        ("add-workers", "Add N workers to the cluster"),
        ("remove-workers", "Remove the N highest-numbered workers"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("count", type=int)

    commands.add_parser("restart-cluster", help="Rewrite spark-env and restart every daemon")
    commands.add_parser("destroy-cluster", help="Terminate every machine in the cluster")
    commands.add_parser("show-machines", help="List the master and workers")

    upload = commands.add_parser("upload-job", help="Upload a job artifact to the master")
    upload.add_argument("artifact", type=Path)

    submit = commands.add_parser("submit-job", help="Upload a job artifact and spark-submit it")
    submit.add_argument("artifact", type=Path)
    submit.add_argument("args", nargs=argparse.REMAINDER)

    return parser


def main(argv: Sequence[str] | None = None, orchestrator: FleetOrchestrator | None = None) -> int:
    args = build_parser().parse_args(argv)
    # Replace loguru's default stderr handler with ours.
    logger.remove()
    handler_ids = setup_logging(LogConfig(level=args.log_level, file=args.log_file))
    console = Console()

    try:
        if orchestrator is None:
            config = load_config(path=args.config)
            if args.destroy_on_fail is not None:
                config = replace(config, destroy_on_fail=args.destroy_on_fail)
            orchestrator = create_orchestrator(config)
        asyncio.run(_dispatch(args, orchestrator, console))
    except FleetError as e:
        log.error("{err}", err=e)
        return 1
    finally:
        teardown_logging(handler_ids)
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
