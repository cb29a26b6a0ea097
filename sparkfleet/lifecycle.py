"""Node lifecycle: converge a named node set into existence, and remove nodes.

Both operations read their result back through the NodeDirectory instead of
trusting the provider's write calls.

ensure_nodes is a bounded top-up loop. A batch RunInstances for N does not
always produce N usable instances (tagging fails, or the instance never
shows an address), so each round only requests the names still missing.
Instances that failed within a round are terminated before the next round
starts; instances that succeeded are kept even if the whole call fails.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from injector import inject
from loguru import logger

from sparkfleet.config import FleetConfig
from sparkfleet.directory import NodeDirectory
from sparkfleet.exceptions import ProvisionFailure, TerminationTimeout, TransientProviderError
from sparkfleet.model import Node, Role
from sparkfleet.providers.provider import CloudProvider, LaunchSpec
from sparkfleet.retry import NotReady, RetryPolicy, poll

log = logger.bind(component="lifecycle")


def _names(nodes: Iterable[Node]) -> frozenset[str]:
    return frozenset(n.name for n in nodes)


class NodeLifecycleManager:
    @inject
    def __init__(
        self,
        config: FleetConfig,
        provider: CloudProvider,
        directory: NodeDirectory,
    ) -> None:
        self._config = config
        self._provider = provider
        self._directory = directory

        budgets = config.retry
        self._tagging = RetryPolicy.from_config(budgets, budgets.tag_attempts)
        self._addressing = RetryPolicy.from_config(budgets, budgets.address_attempts)
        self._termination = RetryPolicy.from_config(budgets, budgets.termination_attempts)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def ensure_node(self, role: Role, name: str) -> Node:
        nodes = await self.ensure_nodes(role, {name})
        return next(n for n in nodes if n.name == name)

    async def ensure_nodes(self, role: Role, names: Iterable[str]) -> frozenset[Node]:
        """Make sure one addressable node exists for every name.

        Raises:
            ProvisionFailure: Names were still missing after every attempt.
            TerminationTimeout: Compensating a failed instance did not finish.
        """
        targets = frozenset(names)
        accepted = frozenset(
            n for n in await self._directory.list() if n.name in targets and n.address
        )
        attempts_left = self._config.retry.provision_attempts

        while True:
            deficit = targets - _names(accepted)
            if not deficit:
                return accepted

            realized = await self._fill(role, deficit)
            accepted |= realized

            if len(realized) == len(deficit):
                return accepted

            attempts_left -= 1
            if attempts_left <= 0:
                missing = targets - _names(accepted)
                log.error(
                    "[EC2] Failed on creating enough instances. Missing: {missing}",
                    missing=", ".join(sorted(missing)),
                )
                raise ProvisionFailure(role, missing, accepted)

            log.warning(
                "[EC2] Created {got}/{wanted} {role} instances, topping up. Attempts left: {left}.",
                got=len(realized),
                wanted=len(deficit),
                role=role.value,
                left=attempts_left,
            )

    async def _fill(self, role: Role, deficit: frozenset[str]) -> frozenset[Node]:
        """One round: batch create, name, resolve, compensate."""
        sizing = self._config.sizing(role)
        spec = LaunchSpec(instance_type=sizing.instance_type, disk_size=sizing.disk_size)

        try:
            instance_ids = list(await self._provider.create_instances(spec, len(deficit)))
        except TransientProviderError as e:
            log.warning("[EC2] Batch create failed: {err}", err=e)
            return frozenset()

        pairs = list(zip(instance_ids, sorted(deficit)))
        # Anything launched beyond what was asked for has no name to take.
        surplus = set(instance_ids[len(pairs):])

        results = await asyncio.gather(
            *(self._realize(instance_id, name) for instance_id, name in pairs)
        )

        realized = frozenset(node for node in results if node is not None)
        failed = {
            instance_id
            for (instance_id, _), node in zip(pairs, results)
            if node is None
        } | surplus

        if failed:
            # Terminate by id even if the listing never showed them: they were launched.
            await self._terminate(frozenset(failed))

        return realized

    async def _realize(self, instance_id: str, name: str) -> Node | None:
        """Name the instance and wait for its address. None means it failed."""
        try:
            async for attempt in self._tagging.retrying(
                TransientProviderError,
                description=f"[EC2] [{instance_id}] Naming instance",
            ):
                with attempt:
                    await self._provider.tag_instance(instance_id, name)

            async def resolve() -> Node:
                node = await self._directory.find(instance_id)
                if node is None:
                    raise NotReady(f"Instance {instance_id} not found when getting address")
                if not node.address:
                    raise NotReady(f"Invalid address for {instance_id}")
                return node

            node = await poll(
                resolve,
                self._addressing,
                on=(NotReady, TransientProviderError),
                description=f"[EC2] [{instance_id}] Getting instance's address",
            )
        except Exception as e:  # noqa: BLE001 - the instance is compensated by the caller
            log.warning(
                "[EC2] [{id}] API error when creating instance: {err}",
                id=instance_id,
                err=e,
            )
            return None

        log.info("[EC2] [{id}] {name} is up at {address}", id=instance_id, name=name, address=node.address)
        return Node(id=instance_id, name=name, address=node.address)

    # -------------------------------------------------------------------------
    # Removal
    # -------------------------------------------------------------------------

    async def remove_nodes(self, ids: Iterable[str]) -> None:
        """Terminate the given ids and wait until none of them is listed.

        Ids that are already gone are ignored.

        Raises:
            TerminationTimeout: Some ids were still listed after every poll.
        """
        targets = frozenset(ids) & await self._directory.ids()
        if targets:
            await self._terminate(targets)

    async def _terminate(self, targets: frozenset[str]) -> None:
        log.info("[EC2] Terminating {n} instances.", n=len(targets))

        async for attempt in self._termination.retrying(
            TransientProviderError, description="[EC2] Requesting termination"
        ):
            with attempt:
                await self._provider.terminate_instances(sorted(targets))

        remaining = targets

        async def confirm() -> None:
            nonlocal remaining
            remaining = targets & await self._directory.ids()
            if remaining:
                raise NotReady(
                    "Some instances are not terminated: " + ",".join(sorted(remaining))
                )

        try:
            await poll(
                confirm,
                self._termination,
                on=(NotReady, TransientProviderError),
                description="[EC2] Checking status",
            )
        except (NotReady, TransientProviderError) as e:
            raise TerminationTimeout(remaining) from e

        log.info("[EC2] All instances are terminated.")
