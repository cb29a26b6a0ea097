"""Per-node Spark setup steps.

Each step is one retried remote command. A failed step raises
BootstrapFailure naming the node and the step; callers decide whether that
tears the fleet down.
"""

from __future__ import annotations

import shlex

from injector import inject
from loguru import logger

from sparkfleet.config import FleetConfig, SparkConfig
from sparkfleet.exceptions import BootstrapFailure
from sparkfleet.model import Node
from sparkfleet.remote import RemoteExecutor, RemoteOptions

log = logger.bind(component="bootstrap")


# =============================================================================
# Command builders
# =============================================================================


def download_command(spark: SparkConfig) -> tuple[str, bool]:
    """Command that fetches and extracts the Spark tarball.

    Returns the command and whether it needs AWS credentials (S3 sources).
    """
    extract = f"tar -zxf {shlex.quote(spark.tgz_name)}"
    url = shlex.quote(spark.tgz_url)
    if spark.tgz_url.startswith("s3://"):
        return f"aws s3 cp --only-show-errors {url} ./ && {extract}", True
    return f"wget -nv {url} && {extract}", False


def env_lines(spark: SparkConfig, master_address: str, public_address: str) -> tuple[str, ...]:
    return (
        *spark.env,
        f"SPARK_MASTER_HOST={master_address}",
        f"SPARK_MASTER_IP={master_address}",
        f"SPARK_PUBLIC_DNS={public_address}",
    )


def env_command(spark: SparkConfig, master_address: str, public_address: str) -> str:
    """Command that writes conf/spark-env.sh."""
    path = f"{spark.home}/conf/spark-env.sh"
    content = "\n".join(env_lines(spark, master_address, public_address)) + "\n"
    return f"printf '%s' {shlex.quote(content)} > {path} && chmod u+x {path}"


def sbin_command(spark: SparkConfig, script: str, args: tuple[str, ...] = ()) -> str:
    return " ".join([f"./{spark.home}/sbin/{script}", *map(shlex.quote, args)])


def master_url(spark: SparkConfig, master_address: str) -> str:
    return f"spark://{master_address}:{spark.master_port}"


# =============================================================================
# Steps
# =============================================================================


class SparkBootstrap:
    """Runs the setup steps of one node through a RemoteExecutor."""

    @inject
    def __init__(self, config: FleetConfig, remote: RemoteExecutor) -> None:
        self._spark = config.spark
        self._remote = remote

    async def _step(
        self,
        node: Node,
        step: str,
        command: str,
        *,
        inject_credentials: bool = False,
    ) -> None:
        log.info("[{name}] {step}.", name=node.name, step=step)
        result = await self._remote.run(
            node.address,
            command,
            RemoteOptions(retry=True, inject_credentials=inject_credentials),
        )
        if not result.ok:
            log.error("[{name}] Failed on {step}: {err}", name=node.name, step=step, err=result.stderr.strip())
            raise BootstrapFailure(node.name, step, result.stderr.strip())

    async def download(self, node: Node) -> None:
        command, needs_credentials = download_command(self._spark)
        await self._step(node, "Downloading Spark", command, inject_credentials=needs_credentials)

    async def write_env(self, node: Node, master_address: str | None = None) -> None:
        master = master_address or node.address
        await self._step(node, "Setting spark-env", env_command(self._spark, master, node.address))

    async def sbin(self, node: Node, script: str, *args: str) -> None:
        await self._step(node, script, sbin_command(self._spark, script, args))

    async def start_master(self, master: Node) -> None:
        await self.sbin(master, "start-master.sh")

    async def stop_master(self, master: Node) -> None:
        await self.sbin(master, "stop-master.sh")

    async def start_worker(self, worker: Node, master_address: str) -> None:
        await self.sbin(worker, "start-worker.sh", master_url(self._spark, master_address))

    async def stop_worker(self, worker: Node) -> None:
        await self.sbin(worker, "stop-worker.sh")

    async def setup_master(self, master: Node) -> None:
        await self.download(master)
        await self.write_env(master)
        await self.start_master(master)
        log.info("[{name}] Master started.", name=master.name)

    async def setup_worker(self, worker: Node, master_address: str) -> None:
        await self.download(worker)
        await self.write_env(worker, master_address)
        await self.start_worker(worker, master_address)
        log.info("[{name}] Worker started.", name=worker.name)
