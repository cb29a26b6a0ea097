"""Remote command execution over SSH.

RemoteExecutor is the capability the bootstrap steps need: run a command on
an address and report failure as a result, never as an exception. SSHRemote
implements it with asyncssh, one connection per command.
"""

from __future__ import annotations

import asyncio
import shlex
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

import asyncssh
import boto3
from injector import inject
from loguru import logger

from sparkfleet.config import FleetConfig
from sparkfleet.retry import RetryPolicy

log = logger.bind(component="ssh")

_SSH_OPTIONS = ("-o", "UserKnownHostsFile=/dev/null", "-o", "StrictHostKeyChecking=no")

# Exit status reported when no command ran because the connection failed.
CONNECTION_FAILED = 255


@dataclass(frozen=True, slots=True)
class RemoteOptions:
    """How to run one remote command.

    Args:
        retry: Retry failed commands up to the configured remote attempt budget.
        inject_credentials: Export the local AWS credentials into the command environment.
        interactive: Allocate a terminal and stream output to the local console.
    """

    retry: bool = False
    inject_credentials: bool = False
    interactive: bool = False


@dataclass(frozen=True, slots=True)
class RemoteResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class RemoteExecutor(Protocol):
    async def run(
        self, address: str, command: str, options: RemoteOptions = RemoteOptions(),
    ) -> RemoteResult: ...

    async def upload(self, address: str, local: Path, remote: str) -> RemoteResult: ...

    def login_command(self, address: str) -> str: ...


class _CommandFailed(Exception):
    def __init__(self, result: RemoteResult) -> None:
        self.result = result
        super().__init__(f"exit code {result.exit_code}: {result.stderr.strip()[:200]}")


def credentials_prefix(session: boto3.Session | None = None) -> str:
    """Shell exports for the local AWS credentials, or "" when there are none."""
    credentials = (session or boto3.Session()).get_credentials()
    if credentials is None:
        return ""
    frozen = credentials.get_frozen_credentials()
    exports = [
        f"export AWS_ACCESS_KEY_ID={shlex.quote(frozen.access_key)}",
        f"export AWS_SECRET_ACCESS_KEY={shlex.quote(frozen.secret_key)}",
    ]
    if frozen.token:
        exports.append(f"export AWS_SESSION_TOKEN={shlex.quote(frozen.token)}")
    return " && ".join(exports) + " && "


class SSHRemote:
    """RemoteExecutor over asyncssh.

    Example:
        >>> remote = SSHRemote(config)
        >>> result = await remote.run("10.0.0.1", "uptime", RemoteOptions(retry=True))
        >>> result.ok
        True
    """

    @inject
    def __init__(self, config: FleetConfig) -> None:
        self._config = config
        self._policy = RetryPolicy.from_config(config.retry, config.retry.remote_attempts)

    @asynccontextmanager
    async def _connect(self, address: str) -> AsyncIterator[asyncssh.SSHClientConnection]:
        client_keys = [str(Path(self._config.pem).expanduser())] if self._config.pem else ()
        async with asyncssh.connect(
            address,
            username=self._config.user,
            client_keys=client_keys,
            known_hosts=None,
            connect_timeout=30,
        ) as conn:
            yield conn

    async def _run_once(self, address: str, command: str, options: RemoteOptions) -> RemoteResult:
        try:
            async with self._connect(address) as conn:
                if options.interactive:
                    completed = await conn.run(
                        command,
                        term_type="xterm",
                        stdout=sys.stdout,
                        stderr=sys.stderr,
                        check=False,
                    )
                else:
                    completed = await conn.run(command, check=False)
        except (OSError, asyncssh.Error) as e:
            return RemoteResult(exit_code=CONNECTION_FAILED, stderr=str(e))

        return RemoteResult(
            exit_code=completed.exit_status if completed.exit_status is not None else CONNECTION_FAILED,
            stdout=str(completed.stdout or ""),
            stderr=str(completed.stderr or ""),
        )

    async def run(
        self, address: str, command: str, options: RemoteOptions = RemoteOptions(),
    ) -> RemoteResult:
        # boto3 may hit the instance metadata service while resolving credentials.
        prefix = await asyncio.to_thread(credentials_prefix) if options.inject_credentials else ""
        full_command = prefix + command
        log.debug("[{address}] $ {cmd}", address=address, cmd=command)

        if not options.retry:
            return await self._run_once(address, full_command, options)

        try:
            async for attempt in self._policy.retrying(
                _CommandFailed, description=f"[{address}] Remote command failed"
            ):
                with attempt:
                    result = await self._run_once(address, full_command, options)
                    if not result.ok:
                        raise _CommandFailed(result)
        except _CommandFailed as e:
            return e.result
        return result

    async def upload(self, address: str, local: Path, remote: str) -> RemoteResult:
        try:
            async with self._connect(address) as conn:
                await asyncssh.scp(str(local), (conn, remote))
        except (OSError, asyncssh.Error) as e:
            return RemoteResult(exit_code=CONNECTION_FAILED, stderr=str(e))
        return RemoteResult(exit_code=0)

    def login_command(self, address: str) -> str:
        parts = ["ssh"]
        if self._config.pem:
            parts += ["-i", self._config.pem]
        parts += [*_SSH_OPTIONS, f"{self._config.user}@{address}"]
        return " ".join(parts)


__all__ = [
    "CONNECTION_FAILED",
    "RemoteExecutor",
    "RemoteOptions",
    "RemoteResult",
    "SSHRemote",
    "credentials_prefix",
]
