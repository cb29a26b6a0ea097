from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType

import pytest

from sparkfleet.bootstrap import SparkBootstrap
from sparkfleet.config import FleetConfig, RetryConfig, SparkConfig
from sparkfleet.directory import NodeDirectory
from sparkfleet.exceptions import TransientProviderError
from sparkfleet.lifecycle import NodeLifecycleManager
from sparkfleet.orchestrator import FleetOrchestrator
from sparkfleet.providers.provider import InstanceRecord, LaunchSpec
from sparkfleet.remote import RemoteOptions, RemoteResult


class FakeCloud:
    """In-memory CloudProvider.

    Fault knobs are keyed by create round (1-based):
    - tag_failures[r]: how many instances of round r never accept a Name tag
    - addressless[r]: how many instances of round r never get an address
    - short_launch[r]: launch at most this many instances in round r
    - termination_delay: listings a terminated instance stays "running"; None never goes away
    """

    def __init__(self, owner: str = "spark-key") -> None:
        self.owner = owner
        self.records: dict[str, InstanceRecord] = {}
        self.create_calls: list[tuple[LaunchSpec, int]] = []
        self.tag_calls: list[tuple[str, str]] = []
        self.terminate_calls: list[tuple[str, ...]] = []
        self.list_calls = 0

        self.tag_failures: dict[int, int] = {}
        self.addressless: dict[int, int] = {}
        self.short_launch: dict[int, int] = {}
        self.create_errors: dict[int, Exception] = {}
        self.termination_delay: int | None = 0

        self._seq = 0
        self._owners: dict[str, str] = {}
        self._untaggable: set[str] = set()
        self._dying: dict[str, int | None] = {}

    def add(self, name: str, *, owner: str | None = None, state: str = "running") -> InstanceRecord:
        self._seq += 1
        record = InstanceRecord(
            id=f"i-{self._seq:04d}",
            state=state,
            tags=MappingProxyType({"Name": name} if name else {}),
            private_address=f"10.0.0.{self._seq}",
            public_address=f"ec2-{self._seq}.compute.amazonaws.com",
        )
        self.records[record.id] = record
        self._owners[record.id] = owner or self.owner
        return record

    def live(self) -> dict[str, InstanceRecord]:
        return {i: r for i, r in self.records.items() if r.state == "running"}

    def live_names(self) -> set[str]:
        return {r.name for r in self.live().values()}

    async def create_instances(self, spec: LaunchSpec, count: int) -> Sequence[str]:
        self.create_calls.append((spec, count))
        round_no = len(self.create_calls)
        if round_no in self.create_errors:
            raise self.create_errors[round_no]

        launched = min(count, self.short_launch.get(round_no, count))
        ids = [self.add("").id for _ in range(launched)]

        untaggable = self.tag_failures.get(round_no, 0)
        self._untaggable.update(ids[:untaggable])

        for instance_id in ids[untaggable : untaggable + self.addressless.get(round_no, 0)]:
            self.records[instance_id] = replace(
                self.records[instance_id], private_address=None, public_address=None,
            )
        await asyncio.sleep(0)
        return ids

    async def tag_instance(self, instance_id: str, name: str) -> None:
        self.tag_calls.append((instance_id, name))
        if instance_id in self._untaggable:
            raise TransientProviderError(f"CreateTags: InvalidInstanceID.NotFound {instance_id}")
        record = self.records[instance_id]
        self.records[instance_id] = replace(record, tags=MappingProxyType({**record.tags, "Name": name}))

    async def list_instances(self, owner: str) -> Sequence[InstanceRecord]:
        self.list_calls += 1
        for instance_id, remaining in list(self._dying.items()):
            if remaining is None:
                continue
            if remaining <= 0:
                self.records[instance_id] = replace(self.records[instance_id], state="terminated")
                del self._dying[instance_id]
            else:
                self._dying[instance_id] = remaining - 1
        return [r for i, r in self.records.items() if self._owners.get(i) == owner]

    async def terminate_instances(self, instance_ids: Sequence[str]) -> None:
        self.terminate_calls.append(tuple(instance_ids))
        for instance_id in instance_ids:
            if instance_id not in self.records:
                continue
            if self.termination_delay == 0:
                self.records[instance_id] = replace(self.records[instance_id], state="terminated")
            else:
                self._dying[instance_id] = self.termination_delay

    @property
    def terminated_ids(self) -> set[str]:
        return {i for call in self.terminate_calls for i in call}


@dataclass
class FakeRemote:
    """RemoteExecutor that records commands and fails for chosen node names."""

    cloud: FakeCloud
    failing_names: set[str] = field(default_factory=set)
    fail_pattern: str = ""
    commands: list[tuple[str, str]] = field(default_factory=list)
    uploads: list[tuple[str, Path, str]] = field(default_factory=list)
    options: list[RemoteOptions] = field(default_factory=list)

    def name_of(self, address: str) -> str:
        for record in self.cloud.records.values():
            if address in (record.private_address, record.public_address):
                return record.name
        return ""

    async def run(
        self, address: str, command: str, options: RemoteOptions = RemoteOptions(),
    ) -> RemoteResult:
        self.commands.append((address, command))
        self.options.append(options)
        await asyncio.sleep(0)
        if self.name_of(address) in self.failing_names and self.fail_pattern in command:
            return RemoteResult(exit_code=1, stderr="boom")
        return RemoteResult(exit_code=0)

    async def upload(self, address: str, local: Path, remote: str) -> RemoteResult:
        self.uploads.append((address, local, remote))
        return RemoteResult(exit_code=0)

    def login_command(self, address: str) -> str:
        return f"ssh ec2-user@{address}"

    def commands_for(self, name: str) -> list[str]:
        return [cmd for address, cmd in self.commands if self.name_of(address) == name]


@pytest.fixture
def config() -> FleetConfig:
    return FleetConfig(
        cluster_name="spark",
        keypair="spark-key",
        ami="ami-123",
        spark=SparkConfig(
            tgz_url="https://archive.apache.org/dist/spark/spark-3.5.1/spark-3.5.1-bin-hadoop3.tgz",
        ),
        retry=RetryConfig(
            provision_attempts=3,
            tag_attempts=2,
            address_attempts=3,
            termination_attempts=4,
            remote_attempts=2,
            initial_delay=0,
            max_delay=0,
        ),
        concurrency=4,
    )


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def remote(cloud: FakeCloud) -> FakeRemote:
    return FakeRemote(cloud)


@pytest.fixture
def directory(config: FleetConfig, cloud: FakeCloud) -> NodeDirectory:
    return NodeDirectory(config, cloud)


@pytest.fixture
def lifecycle(config: FleetConfig, cloud: FakeCloud, directory: NodeDirectory) -> NodeLifecycleManager:
    return NodeLifecycleManager(config, cloud, directory)


def make_orchestrator(config: FleetConfig, cloud: FakeCloud, remote: FakeRemote) -> FleetOrchestrator:
    directory = NodeDirectory(config, cloud)
    return FleetOrchestrator(
        config,
        directory,
        NodeLifecycleManager(config, cloud, directory),
        SparkBootstrap(config, remote),
        remote,
    )


@pytest.fixture
def orchestrator(config: FleetConfig, cloud: FakeCloud, remote: FakeRemote) -> FleetOrchestrator:
    return make_orchestrator(config, cloud, remote)
