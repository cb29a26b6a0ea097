"""AWS client factories with dependency injection.

Provides typed client factories that can be injected into components.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

import aioboto3
from injector import Module, provider, singleton

from sparkfleet.config import FleetConfig


class EC2ClientFactory:
    """Wrapper for EC2 client factory (needs a unique type for DI)."""

    def __init__(self, factory: Callable[[], AbstractAsyncContextManager[Any]]) -> None:
        self._factory = factory

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._factory()


def ec2_client_factory(session: aioboto3.Session, region: str) -> EC2ClientFactory:
    @asynccontextmanager
    async def factory() -> AsyncIterator[Any]:
        async with session.client("ec2", region_name=region) as client:
            yield client

    return EC2ClientFactory(factory)


class AWSModule(Module):
    """DI module that provides AWS client factories.

    Usage:
        >>> from injector import Injector
        >>> injector = Injector([FleetModule(config), AWSModule()])
        >>> ec2 = injector.get(EC2ClientFactory)
        >>> async with ec2() as client:
        ...     await client.describe_instances()
    """

    @singleton
    @provider
    def provide_session(self) -> aioboto3.Session:
        return aioboto3.Session()

    @singleton
    @provider
    def provide_ec2(self, session: aioboto3.Session, config: FleetConfig) -> EC2ClientFactory:
        return ec2_client_factory(session, config.region)


__all__ = [
    "AWSModule",
    "EC2ClientFactory",
    "ec2_client_factory",
]
