"""Exception hierarchy for sparkfleet.

All sparkfleet exceptions inherit from FleetError, so the command line
front-end can turn any of them into a non-zero exit with one except clause.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sparkfleet.model import Node, Role


class FleetError(Exception):
    """Base exception for all sparkfleet errors."""


class ConfigurationError(FleetError):
    """Raised for invalid configuration or missing required settings."""


class TransientProviderError(FleetError):
    """Raised when a cloud API call failed in a way worth retrying."""


class ProvisionFailure(FleetError):
    """Raised when the fleet could not be grown to the requested names."""

    def __init__(
        self,
        role: Role,
        missing: Iterable[str],
        realized: Iterable[Node] = (),
    ) -> None:
        self.role = role
        self.missing = frozenset(missing)
        self.realized = frozenset(realized)
        super().__init__(
            f"Failed on creating enough {role.value} instances: "
            f"{len(self.missing)} missing ({', '.join(sorted(self.missing))})"
        )


class TerminationTimeout(FleetError):
    """Raised when terminated instances keep showing up in the listing."""

    def __init__(self, instance_ids: Iterable[str]) -> None:
        self.instance_ids = frozenset(instance_ids)
        super().__init__(
            "Some instances are not terminated: " + ",".join(sorted(self.instance_ids))
        )


class BootstrapFailure(FleetError):
    """Raised when a setup step failed on a node."""

    def __init__(self, node_name: str, step: str, detail: str = "") -> None:
        self.node_name = node_name
        self.step = step
        self.detail = detail
        message = f"[{node_name}] Failed on {step}."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)


class JobSubmissionError(FleetError):
    """Raised when uploading or submitting a job on the master failed."""


class PreconditionViolation(FleetError):
    """Raised when an operation is called against a fleet in the wrong shape."""


class AlreadyExists(PreconditionViolation):
    """Raised when the coordinator is created twice."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"[{name}] Master already exists.")


class NoCoordinator(PreconditionViolation):
    """Raised when an operation needs a coordinator and there is none."""

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"Master does not exist, can't {action}.")
