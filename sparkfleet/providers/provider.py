from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Protocol, runtime_checkable

TERMINAL_STATES = frozenset({"shutting-down", "terminated"})


@dataclass(frozen=True, slots=True)
class LaunchSpec:
    """What one batch of instances should look like."""

    instance_type: str
    disk_size: int


@dataclass(frozen=True, slots=True)
class InstanceRecord:
    """Raw provider view of one instance."""

    id: str
    state: str
    tags: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    private_address: str | None = None
    public_address: str | None = None

    @property
    def name(self) -> str:
        return self.tags.get("Name", "")

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@runtime_checkable
class CloudProvider(Protocol):
    """Stateless interface over the cloud API.

    Implementations hold only immutable config (credentials, region, etc.).
    Any call may fail transiently; implementations raise
    TransientProviderError for failures worth retrying and let everything
    else propagate.
    """

    async def create_instances(self, spec: LaunchSpec, count: int) -> Sequence[str]:
        """Launch ``count`` instances in one request.

        Parameters
        ----------
        spec
            Sizing for every instance in the batch.
        count
            Number of instances to request.

        Returns
        -------
        Sequence[str]
            Provider ids of the instances actually launched. May be fewer
            than requested.
        """
        ...

    async def tag_instance(self, instance_id: str, name: str) -> None:
        """Set the Name tag of an instance."""
        ...

    async def list_instances(self, owner: str) -> Sequence[InstanceRecord]:
        """List every instance owned by ``owner``, terminated ones included."""
        ...

    async def terminate_instances(self, instance_ids: Sequence[str]) -> None:
        """Request termination. Returns before the instances are gone."""
        ...
