"""sparkfleet: EC2 fleets running Spark standalone clusters.

Example:
    import asyncio
    from sparkfleet import create_orchestrator, load_config

    orchestrator = create_orchestrator(load_config())
    asyncio.run(orchestrator.create_cluster(workers=3))
"""

from sparkfleet.config import FleetConfig, RetryConfig, RoleSizing, SparkConfig, load_config
from sparkfleet.directory import NodeDirectory
from sparkfleet.exceptions import (
    AlreadyExists,
    BootstrapFailure,
    ConfigurationError,
    FleetError,
    JobSubmissionError,
    NoCoordinator,
    PreconditionViolation,
    ProvisionFailure,
    TerminationTimeout,
    TransientProviderError,
)
from sparkfleet.lifecycle import NodeLifecycleManager
from sparkfleet.logging import LogConfig
from sparkfleet.model import Fleet, Node, Role
from sparkfleet.module import FleetModule, create_orchestrator
from sparkfleet.orchestrator import FleetOrchestrator, FleetView

__all__ = [
    "AlreadyExists",
    "BootstrapFailure",
    "ConfigurationError",
    "Fleet",
    "FleetConfig",
    "FleetError",
    "FleetModule",
    "FleetOrchestrator",
    "FleetView",
    "JobSubmissionError",
    "LogConfig",
    "NoCoordinator",
    "Node",
    "NodeDirectory",
    "NodeLifecycleManager",
    "PreconditionViolation",
    "ProvisionFailure",
    "RetryConfig",
    "Role",
    "RoleSizing",
    "SparkConfig",
    "TerminationTimeout",
    "TransientProviderError",
    "create_orchestrator",
    "load_config",
]
