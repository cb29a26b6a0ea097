"""Read-through view of the fleet.

NodeDirectory.list() is the only way the rest of sparkfleet observes the
provider. It never caches: every call is a fresh DescribeInstances.
"""

from __future__ import annotations

from injector import inject

from sparkfleet.config import FleetConfig
from sparkfleet.model import Fleet, Node, is_worker_name, sort_workers
from sparkfleet.providers.provider import CloudProvider, InstanceRecord


class NodeDirectory:
    @inject
    def __init__(self, config: FleetConfig, provider: CloudProvider) -> None:
        self._config = config
        self._provider = provider

    def _address(self, record: InstanceRecord) -> str:
        if self._config.use_private_ip:
            return record.private_address or ""
        return record.public_address or ""

    async def list(self) -> frozenset[Node]:
        """Non-terminated instances owned by this deployment's key pair."""
        records = await self._provider.list_instances(self._config.keypair)
        return frozenset(
            Node(id=r.id, name=r.name, address=self._address(r))
            for r in records
            if not r.terminal
        )

    async def known_names(self) -> frozenset[str]:
        """Every name the provider still reports for this deployment.

        Includes instances on their way out, so a worker index that was just
        removed is still seen as taken.
        """
        records = await self._provider.list_instances(self._config.keypair)
        return frozenset(r.name for r in records if r.name)

    async def ids(self) -> frozenset[str]:
        return frozenset(n.id for n in await self.list())

    async def find(self, node_id: str) -> Node | None:
        return next((n for n in await self.list() if n.id == node_id), None)

    async def coordinator(self) -> Node | None:
        return (await self.fleet()).coordinator

    async def workers(self) -> tuple[Node, ...]:
        return (await self.fleet()).workers

    async def fleet(self) -> Fleet:
        nodes = await self.list()
        master_name = self._config.master_name
        prefix = self._config.worker_prefix
        # At most one node may carry the master name; pick deterministically if the provider disagrees.
        masters = sorted((n for n in nodes if n.name == master_name), key=lambda n: n.id)
        return Fleet(
            coordinator=masters[0] if masters else None,
            stray_coordinators=tuple(masters[1:]),
            workers=sort_workers(n for n in nodes if is_worker_name(n.name, prefix)),
        )
