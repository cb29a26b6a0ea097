from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path

import pytest

from sparkfleet.config import FleetConfig
from sparkfleet.exceptions import (
    AlreadyExists,
    BootstrapFailure,
    ConfigurationError,
    JobSubmissionError,
    NoCoordinator,
    ProvisionFailure,
)
from sparkfleet.orchestrator import FleetOrchestrator
from sparkfleet.remote import RemoteOptions, RemoteResult

from tests.conftest import FakeCloud, FakeRemote, make_orchestrator


def _step(command: str) -> str:
    if "spark-env.sh" in command:
        return "env"
    for script in ("start-master.sh", "stop-master.sh", "start-worker.sh", "stop-worker.sh"):
        if script in command:
            return script
    return "other"


def _seed_cluster(cloud: FakeCloud, workers: int) -> None:
    cloud.add("spark-master")
    for i in range(1, workers + 1):
        cloud.add(f"spark-worker-{i}")


class TestCreateCoordinator:
    @pytest.mark.asyncio
    async def test_provisions_and_starts_master(
        self, orchestrator: FleetOrchestrator, cloud: FakeCloud, remote: FakeRemote,
    ) -> None:
        master = await orchestrator.create_coordinator()

        assert master.name == "spark-master"
        assert cloud.live_names() == {"spark-master"}

        commands = remote.commands_for("spark-master")
        assert commands[0].startswith("wget -nv https://archive.apache.org/")
        assert f"SPARK_MASTER_HOST={master.address}" in commands[1]
        assert commands[2] == "./spark-3.5.1-bin-hadoop3/sbin/start-master.sh"

    @pytest.mark.asyncio
    async def test_second_create_is_rejected(
        self, orchestrator: FleetOrchestrator, cloud: FakeCloud,
    ) -> None:
        await orchestrator.create_coordinator()

        with pytest.raises(AlreadyExists, match=r"\[spark-master\] Master already exists"):
            await orchestrator.create_coordinator()

        assert len(cloud.create_calls) == 1

    @pytest.mark.asyncio
    async def test_precondition_failure_never_tears_down(
        self, config: FleetConfig, cloud: FakeCloud, remote: FakeRemote,
    ) -> None:
        orchestrator = make_orchestrator(replace(config, destroy_on_fail=True), cloud, remote)
        _seed_cluster(cloud, 2)

        with pytest.raises(AlreadyExists):
            await orchestrator.create_coordinator()

        assert cloud.terminate_calls == []

    @pytest.mark.asyncio
    async def test_provision_failure_with_teardown(
        self, config: FleetConfig, cloud: FakeCloud, remote: FakeRemote,
    ) -> None:
        orchestrator = make_orchestrator(replace(config, destroy_on_fail=True), cloud, remote)
        cloud.tag_failures = {1: 1, 2: 1, 3: 1}

        with pytest.raises(ProvisionFailure):
            await orchestrator.create_coordinator()

        assert cloud.live() == {}
        assert remote.commands == []


class TestAddWorkers:
    @pytest.mark.asyncio
    async def test_requires_coordinator(
        self, orchestrator: FleetOrchestrator, cloud: FakeCloud,
    ) -> None:
        with pytest.raises(NoCoordinator, match="can't create workers"):
            await orchestrator.add_workers(2)

        assert cloud.create_calls == []

    @pytest.mark.asyncio
    async def test_zero_is_a_no_op(self, orchestrator: FleetOrchestrator, cloud: FakeCloud) -> None:
        _seed_cluster(cloud, 0)

        assert await orchestrator.add_workers(0) == ()
        assert cloud.create_calls == []

    @pytest.mark.asyncio
    async def test_names_continue_after_existing_workers(
        self, orchestrator: FleetOrchestrator, cloud: FakeCloud, remote: FakeRemote,
    ) -> None:
        cloud.add("spark-master")
        cloud.add("spark-worker-1")
        cloud.add("spark-worker-3")

        workers = await orchestrator.add_workers(2)

        assert [w.name for w in workers] == ["spark-worker-4", "spark-worker-5"]
        master_address = next(r.public_address for r in cloud.live().values() if r.name == "spark-master")
        for worker in workers:
            assert remote.commands_for(worker.name)[-1] == (
                f"./spark-3.5.1-bin-hadoop3/sbin/start-worker.sh spark://{master_address}:7077"
            )

    @pytest.mark.asyncio
    async def test_failed_worker_does_not_stop_the_others(
        self, orchestrator: FleetOrchestrator, cloud: FakeCloud, remote: FakeRemote,
    ) -> None:
        _seed_cluster(cloud, 0)
        remote.failing_names = {"spark-worker-2", "spark-worker-3"}

        with pytest.raises(BootstrapFailure) as exc_info:
            await orchestrator.add_workers(4)

        # First failure in worker order, not in completion order.
        assert exc_info.value.node_name == "spark-worker-2"
        assert exc_info.value.step == "Downloading Spark"

        for name in ("spark-worker-1", "spark-worker-4"):
            assert _step(remote.commands_for(name)[-1]) == "start-worker.sh"

        # Without destroy_on_fail the fleet is left as is.
        assert len(cloud.live()) == 5

    @pytest.mark.asyncio
    async def test_failed_worker_with_teardown(
        self, config: FleetConfig, cloud: FakeCloud, remote: FakeRemote,
    ) -> None:
        orchestrator = make_orchestrator(replace(config, destroy_on_fail=True), cloud, remote)
        _seed_cluster(cloud, 1)
        remote.failing_names = {"spark-worker-3"}
        remote.fail_pattern = "start-worker.sh"

        with pytest.raises(BootstrapFailure, match=r"\[spark-worker-3\] Failed on start-worker.sh"):
            await orchestrator.add_workers(2)

        assert cloud.live() == {}

    @pytest.mark.asyncio
    async def test_bootstrap_timeout(
        self, config: FleetConfig, cloud: FakeCloud, remote: FakeRemote,
    ) -> None:
        class SlowRemote(FakeRemote):
            async def run(
                self, address: str, command: str, options: RemoteOptions = RemoteOptions(),
            ) -> RemoteResult:
                if "start-worker.sh" in command:
                    await asyncio.sleep(5)
                return await super().run(address, command, options)

        slow = SlowRemote(cloud)
        orchestrator = make_orchestrator(replace(config, bootstrap_timeout=0.05), cloud, slow)
        _seed_cluster(cloud, 0)

        with pytest.raises(BootstrapFailure, match="timed out"):
            await orchestrator.add_workers(2)

    @pytest.mark.asyncio
    async def test_create_cluster(
        self, orchestrator: FleetOrchestrator, cloud: FakeCloud,
    ) -> None:
        master, workers = await orchestrator.create_cluster(3)

        assert master.name == "spark-master"
        assert [w.name for w in workers] == ["spark-worker-1", "spark-worker-2", "spark-worker-3"]
        assert len(cloud.live()) == 4


class TestRestartCluster:
    @pytest.mark.asyncio
    async def test_restart_order(
        self, orchestrator: FleetOrchestrator, cloud: FakeCloud, remote: FakeRemote,
    ) -> None:
        _seed_cluster(cloud, 2)

        await orchestrator.restart_cluster()

        steps = [(remote.name_of(address), _step(cmd)) for address, cmd in remote.commands]
        assert steps == [
            ("spark-worker-1", "env"),
            ("spark-worker-2", "env"),
            ("spark-master", "env"),
            ("spark-worker-1", "stop-worker.sh"),
            ("spark-worker-2", "stop-worker.sh"),
            ("spark-master", "stop-master.sh"),
            ("spark-master", "start-master.sh"),
            ("spark-worker-1", "start-worker.sh"),
            ("spark-worker-2", "start-worker.sh"),
        ]

    @pytest.mark.asyncio
    async def test_requires_coordinator(self, orchestrator: FleetOrchestrator, cloud: FakeCloud) -> None:
        cloud.add("spark-worker-1")

        with pytest.raises(NoCoordinator, match="restart cluster"):
            await orchestrator.restart_cluster()


class TestShrinkAndDestroy:
    @pytest.mark.asyncio
    async def test_removes_highest_indexed_workers(
        self, orchestrator: FleetOrchestrator, cloud: FakeCloud,
    ) -> None:
        _seed_cluster(cloud, 5)

        removed = await orchestrator.remove_workers(2)

        assert [w.name for w in removed] == ["spark-worker-4", "spark-worker-5"]
        assert cloud.live_names() == {"spark-master", "spark-worker-1", "spark-worker-2", "spark-worker-3"}

        # Terminated instances are still listed, so their indices stay taken.
        added = await orchestrator.add_workers(1)
        assert [w.name for w in added] == ["spark-worker-6"]

    @pytest.mark.asyncio
    async def test_remove_more_than_exist(self, orchestrator: FleetOrchestrator, cloud: FakeCloud) -> None:
        _seed_cluster(cloud, 2)

        removed = await orchestrator.remove_workers(10)

        assert len(removed) == 2
        assert cloud.live_names() == {"spark-master"}

    @pytest.mark.asyncio
    async def test_remove_zero(self, orchestrator: FleetOrchestrator, cloud: FakeCloud) -> None:
        _seed_cluster(cloud, 2)

        assert await orchestrator.remove_workers(0) == ()
        assert cloud.terminate_calls == []

    @pytest.mark.asyncio
    async def test_destroy_is_idempotent(self, orchestrator: FleetOrchestrator, cloud: FakeCloud) -> None:
        _seed_cluster(cloud, 3)
        cloud.add("unrelated", owner="someone-else")

        await orchestrator.destroy_fleet()
        await orchestrator.destroy_fleet()

        assert len(cloud.terminate_calls) == 1
        assert len(cloud.terminate_calls[0]) == 4
        assert cloud.live_names() == {"unrelated"}

    @pytest.mark.asyncio
    async def test_destroy_terminates_every_master(self, orchestrator: FleetOrchestrator, cloud: FakeCloud) -> None:
        _seed_cluster(cloud, 1)
        cloud.add("spark-master")
        cloud.add("spark-worker-x-worker-1")

        await orchestrator.destroy_fleet()

        assert cloud.live_names() == {"spark-worker-x-worker-1"}


class TestShowMachines:
    @pytest.mark.asyncio
    async def test_empty(self, orchestrator: FleetOrchestrator) -> None:
        view = await orchestrator.show_machines()

        assert view.coordinator is None
        assert view.workers == ()
        assert view.web_ui is None

    @pytest.mark.asyncio
    async def test_cluster(self, orchestrator: FleetOrchestrator, cloud: FakeCloud) -> None:
        _seed_cluster(cloud, 2)

        view = await orchestrator.show_machines()

        assert view.coordinator is not None
        address = view.coordinator.address
        assert view.login_command == f"ssh ec2-user@{address}"
        assert view.web_ui == f"http://{address}:8080"
        assert [w.name for w in view.workers] == ["spark-worker-1", "spark-worker-2"]


class TestJobs:
    @pytest.mark.asyncio
    async def test_submit_uploads_then_runs_spark_submit(
        self, config: FleetConfig, cloud: FakeCloud, remote: FakeRemote, tmp_path: Path,
    ) -> None:
        spark = replace(config.spark, main_class="com.example.Main", executor_memory="4g")
        orchestrator = make_orchestrator(replace(config, spark=spark), cloud, remote)
        _seed_cluster(cloud, 1)
        artifact = tmp_path / "job.jar"
        artifact.write_bytes(b"jar")

        await orchestrator.submit_job(artifact, ["--date", "2024-01-01"])

        master = await orchestrator.show_machines()
        assert master.coordinator is not None
        address = master.coordinator.address
        assert remote.uploads == [(address, artifact, "job.jar")]
        assert remote.commands[-1] == (
            address,
            f"./spark-3.5.1-bin-hadoop3/bin/spark-submit --master spark://{address}:7077 "
            "--class com.example.Main --executor-memory 4g job.jar --date 2024-01-01",
        )
        assert remote.options[-1] == RemoteOptions(inject_credentials=True, interactive=True)

    @pytest.mark.asyncio
    async def test_submit_requires_coordinator(self, orchestrator: FleetOrchestrator, tmp_path: Path) -> None:
        with pytest.raises(NoCoordinator, match="submit job"):
            await orchestrator.submit_job(tmp_path / "job.jar")

    @pytest.mark.asyncio
    async def test_missing_artifact(self, orchestrator: FleetOrchestrator, cloud: FakeCloud, tmp_path: Path) -> None:
        _seed_cluster(cloud, 0)

        with pytest.raises(ConfigurationError, match="not found"):
            await orchestrator.upload_artifact(tmp_path / "job.jar")

    @pytest.mark.asyncio
    async def test_failed_submit_with_teardown(
        self, config: FleetConfig, cloud: FakeCloud, remote: FakeRemote, tmp_path: Path,
    ) -> None:
        orchestrator = make_orchestrator(replace(config, destroy_on_fail=True), cloud, remote)
        _seed_cluster(cloud, 1)
        remote.failing_names = {"spark-master"}
        remote.fail_pattern = "spark-submit"
        artifact = tmp_path / "job.jar"
        artifact.write_bytes(b"jar")

        with pytest.raises(JobSubmissionError):
            await orchestrator.submit_job(artifact)

        assert cloud.live() == {}
