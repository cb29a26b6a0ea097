"""Central DI module for sparkfleet.

Binds the FleetConfig and the collaborators every component needs:
- CloudProvider (EC2 via aioboto3)
- RemoteExecutor (SSH via asyncssh)
- NodeDirectory, NodeLifecycleManager, SparkBootstrap, FleetOrchestrator
"""

from __future__ import annotations

from injector import Binder, Injector, Module, singleton

from .bootstrap import SparkBootstrap
from .config import FleetConfig
from .directory import NodeDirectory
from .lifecycle import NodeLifecycleManager
from .orchestrator import FleetOrchestrator
from .providers.aws import AWSModule, AWSProvider
from .providers.provider import CloudProvider
from .remote import RemoteExecutor, SSHRemote


class FleetModule(Module):
    """Core module providing shared dependencies.

    Usage:
        injector = Injector([FleetModule(config), AWSModule()])
        orchestrator = injector.get(FleetOrchestrator)
    """

    def __init__(self, config: FleetConfig) -> None:
        self._config = config

    def configure(self, binder: Binder) -> None:
        binder.bind(FleetConfig, to=self._config)
        binder.bind(CloudProvider, to=AWSProvider, scope=singleton)  # type: ignore[type-abstract]
        binder.bind(RemoteExecutor, to=SSHRemote, scope=singleton)  # type: ignore[type-abstract]
        binder.bind(NodeDirectory, scope=singleton)
        binder.bind(NodeLifecycleManager, scope=singleton)
        binder.bind(SparkBootstrap, scope=singleton)
        binder.bind(FleetOrchestrator, scope=singleton)


def create_orchestrator(config: FleetConfig, *overrides: Module) -> FleetOrchestrator:
    """Wire a FleetOrchestrator. Later modules override earlier bindings."""
    injector = Injector([FleetModule(config), AWSModule(), *overrides])
    return injector.get(FleetOrchestrator)


__all__ = [
    "FleetModule",
    "create_orchestrator",
]
