"""Fleet bootstrap orchestration.

FleetOrchestrator sequences the operator-level operations: bring up the
master, bring up workers concurrently, restart everything in a strict order,
shrink, and destroy. State is always read fresh from the NodeDirectory at
the start of an operation.

When ``destroy_on_fail`` is set, a failure in create_coordinator, add_workers
or submit_job tears the whole fleet down before the error propagates.
Precondition violations never tear down: they are raised before anything is
created.
"""

from __future__ import annotations

import shlex
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from injector import inject
from loguru import logger

from sparkfleet.bootstrap import SparkBootstrap, master_url
from sparkfleet.conc import settle_all
from sparkfleet.config import FleetConfig
from sparkfleet.directory import NodeDirectory
from sparkfleet.exceptions import (
    AlreadyExists,
    BootstrapFailure,
    ConfigurationError,
    FleetError,
    JobSubmissionError,
    NoCoordinator,
)
from sparkfleet.lifecycle import NodeLifecycleManager
from sparkfleet.model import Node, Role, next_worker_names, sort_workers
from sparkfleet.remote import RemoteExecutor, RemoteOptions

log = logger.bind(component="orchestrator")

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class FleetView:
    """What show-machines prints."""

    coordinator: Node | None
    workers: tuple[Node, ...]
    login_command: str | None = None
    web_ui: str | None = None


class FleetOrchestrator:
    @inject
    def __init__(
        self,
        config: FleetConfig,
        directory: NodeDirectory,
        lifecycle: NodeLifecycleManager,
        bootstrap: SparkBootstrap,
        remote: RemoteExecutor,
    ) -> None:
        self._config = config
        self._directory = directory
        self._lifecycle = lifecycle
        self._bootstrap = bootstrap
        self._remote = remote

    async def _with_failover(self, op: Callable[[], Awaitable[T]]) -> T:
        try:
            return await op()
        except Exception as e:
            if self._config.destroy_on_fail:
                log.warning("Operation failed, destroying the cluster: {err}", err=e)
                try:
                    await self.destroy_fleet()
                except FleetError as teardown_error:
                    log.error("Failed on destroying the cluster: {err}", err=teardown_error)
                    e.add_note(f"Destroying the cluster also failed: {teardown_error}")
            raise

    async def _require_master(self, action: str) -> Node:
        master = await self._directory.coordinator()
        if master is None:
            raise NoCoordinator(action)
        return master

    # -------------------------------------------------------------------------
    # Growing the fleet
    # -------------------------------------------------------------------------

    async def create_coordinator(self) -> Node:
        name = self._config.master_name
        if await self._directory.coordinator() is not None:
            raise AlreadyExists(name)

        async def op() -> Node:
            master = await self._lifecycle.ensure_node(Role.COORDINATOR, name)
            await self._bootstrap.setup_master(master)
            return master

        return await self._with_failover(op)

    async def add_workers(self, count: int) -> tuple[Node, ...]:
        """Create ``count`` workers and start Spark on all of them concurrently.

        Every worker bootstrap runs to completion. If any failed, the first
        failure in worker-index order is raised after all of them finished.
        """
        fleet = await self._directory.fleet()
        if fleet.coordinator is None:
            raise NoCoordinator("create workers")
        if count <= 0:
            return ()

        master_address = fleet.coordinator.address
        taken = {w.name for w in fleet.workers} | await self._directory.known_names()
        names = next_worker_names(self._config.worker_prefix, taken, count)

        async def setup(worker: Node) -> None:
            try:
                await self._bootstrap.setup_worker(worker, master_address)
            except Exception as e:
                log.error("[{name}] Failed on setting up worker: {err}", name=worker.name, err=e)
                raise

        async def op() -> tuple[Node, ...]:
            workers = sort_workers(await self._lifecycle.ensure_nodes(Role.WORKER, names))
            try:
                outcomes = await settle_all(
                    setup,
                    workers,
                    concurrency=self._config.concurrency,
                    timeout=self._config.bootstrap_timeout,
                )
            except TimeoutError as e:
                raise BootstrapFailure(
                    self._config.worker_prefix,
                    "setting up workers",
                    f"timed out after {self._config.bootstrap_timeout}s",
                ) from e

            failures = [(w, o) for w, o in zip(workers, outcomes) if isinstance(o, Exception)]
            if failures:
                worker, error = failures[0]
                log.error(
                    "{n}/{total} workers failed to start.",
                    n=len(failures),
                    total=len(workers),
                )
                if isinstance(error, BootstrapFailure):
                    raise error
                raise BootstrapFailure(worker.name, "setting up worker", str(error)) from error
            return workers

        return await self._with_failover(op)

    async def create_cluster(self, workers: int) -> tuple[Node, tuple[Node, ...]]:
        master = await self.create_coordinator()
        return master, await self.add_workers(workers)

    # -------------------------------------------------------------------------
    # Operating on an existing fleet
    # -------------------------------------------------------------------------

    async def restart_cluster(self) -> None:
        """Rewrite spark-env everywhere and restart master and workers in order."""
        fleet = await self._directory.fleet()
        master = fleet.coordinator
        if master is None:
            raise NoCoordinator("restart cluster")

        for node in (*fleet.workers, master):
            await self._bootstrap.write_env(node, master.address)

        for worker in fleet.workers:
            await self._bootstrap.stop_worker(worker)

        await self._bootstrap.stop_master(master)
        await self._bootstrap.start_master(master)

        for worker in fleet.workers:
            await self._bootstrap.start_worker(worker, master.address)

        log.info("Cluster restarted with {n} workers.", n=len(fleet.workers))

    async def remove_workers(self, count: int) -> tuple[Node, ...]:
        """Terminate the ``count`` highest-indexed workers."""
        workers = await self._directory.workers()
        victims = workers[-count:] if count > 0 else ()
        if victims:
            log.info(
                "Destroying workers: {names}",
                names=", ".join(w.name for w in victims),
            )
            await self._lifecycle.remove_nodes(w.id for w in victims)
        return victims

    async def destroy_fleet(self) -> None:
        fleet = await self._directory.fleet()
        log.info("Destroying cluster ({n} machines).", n=len(fleet.ids))
        await self._lifecycle.remove_nodes(fleet.ids)

    async def show_machines(self) -> FleetView:
        fleet = await self._directory.fleet()
        master = fleet.coordinator
        if master is None:
            return FleetView(coordinator=None, workers=fleet.workers)
        return FleetView(
            coordinator=master,
            workers=fleet.workers,
            login_command=self._remote.login_command(master.address),
            web_ui=f"http://{master.address}:{self._config.spark.web_ui_port}",
        )

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def upload_artifact(self, artifact: Path) -> str:
        """Copy a job artifact to the master's home directory."""
        master = await self._require_master("upload job")
        if not artifact.is_file():
            raise ConfigurationError(f"Job artifact not found: {artifact}")

        log.info("[{name}] Uploading {path}.", name=master.name, path=artifact)
        result = await self._remote.upload(master.address, artifact, artifact.name)
        if not result.ok:
            raise JobSubmissionError(f"Failed uploading job artifact: {result.stderr.strip()}")

        log.info(
            "Job artifact uploaded, you can now login to master and submit the job. Login command: {cmd}",
            cmd=self._remote.login_command(master.address),
        )
        return artifact.name

    def submit_command(self, master_address: str, artifact: str, args: Sequence[str]) -> str:
        spark = self._config.spark
        parts = [
            f"./{spark.home}/bin/spark-submit",
            "--master", master_url(spark, master_address),
        ]
        if spark.main_class:
            parts += ["--class", spark.main_class]
        if spark.app_name:
            parts += ["--name", spark.app_name]
        if spark.driver_memory:
            parts += ["--driver-memory", spark.driver_memory]
        if spark.executor_memory:
            parts += ["--executor-memory", spark.executor_memory]
        parts += [artifact, *args]
        return " ".join(shlex.quote(p) for p in parts)

    async def submit_job(self, artifact: Path, args: Sequence[str] = ()) -> None:
        master = await self._require_master("submit job")

        async def op() -> None:
            remote_name = await self.upload_artifact(artifact)
            log.warning(
                "You're submitting job directly, please make sure you have a stable network connection."
            )
            result = await self._remote.run(
                master.address,
                self.submit_command(master.address, remote_name, args),
                RemoteOptions(inject_credentials=True, interactive=True),
            )
            if not result.ok:
                raise JobSubmissionError(f"Job submission failed (exit code {result.exit_code}).")

        await self._with_failover(op)
