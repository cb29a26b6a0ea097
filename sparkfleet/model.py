"""Core value types: nodes, roles and fleet naming."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum


class Role(Enum):
    COORDINATOR = "master"
    WORKER = "worker"


@dataclass(frozen=True, slots=True)
class Node:
    """A provider instance as observed by one directory read.

    Identity is ``id``. ``name`` comes from the Name tag and ``address`` is
    the private IP or public DNS depending on configuration.
    """

    id: str
    name: str
    address: str


@dataclass(frozen=True, slots=True)
class Fleet:
    """Derived view of one named deployment."""

    coordinator: Node | None
    workers: tuple[Node, ...]
    # Further nodes carrying the master name. Only ever non-empty if the provider disagrees.
    stray_coordinators: tuple[Node, ...] = ()

    @property
    def nodes(self) -> tuple[Node, ...]:
        head = (self.coordinator,) if self.coordinator is not None else ()
        return (*self.workers, *head)

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(n.id for n in (*self.nodes, *self.stray_coordinators))


def worker_index(name: str) -> int | None:
    """Numeric suffix of a worker name, or None if it has none."""
    suffix = name.rsplit("-", 1)[-1]
    return int(suffix) if suffix.isdigit() else None


def is_worker_name(name: str, prefix: str) -> bool:
    return name.startswith(f"{prefix}-") and name[len(prefix) + 1 :].isdigit()


def next_worker_names(prefix: str, taken: Iterable[str], count: int) -> tuple[str, ...]:
    """Names for ``count`` new workers, starting one past the highest taken index."""
    indices = [worker_index(name) or 0 for name in taken if is_worker_name(name, prefix)]
    start = max(indices, default=0) + 1
    return tuple(f"{prefix}-{i}" for i in range(start, start + count))


def sort_workers(workers: Iterable[Node]) -> tuple[Node, ...]:
    return tuple(sorted(workers, key=lambda n: worker_index(n.name) or 0))
