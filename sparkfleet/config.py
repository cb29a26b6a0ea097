"""TOML-based fleet configuration.

Loads ~/.sparkfleet/defaults.toml (global) and sparkfleet.toml (project),
merges them, and builds an immutable FleetConfig. Every component receives
the FleetConfig at construction; nothing reads configuration globally.

Example sparkfleet.toml:

    cluster_name = "analytics"
    keypair = "analytics-key"
    pem = "~/.ssh/analytics-key.pem"
    ami = "ami-0abcdef1234567890"
    region = "us-west-2"

    [master]
    instance_type = "m5.large"
    disk_size = 50

    [worker]
    instance_type = "r5.xlarge"
    disk_size = 100

    [spark]
    tgz_url = "https://archive.apache.org/dist/spark/spark-3.5.1/spark-3.5.1-bin-hadoop3.tgz"
    env = ["SPARK_WORKER_CORES=4"]
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, TypeAlias, TypeVar

from sparkfleet.exceptions import ConfigurationError
from sparkfleet.model import Role

RawConfig: TypeAlias = dict[str, Any]

T = TypeVar("T")

GLOBAL_CONFIG_PATH = Path.home() / ".sparkfleet" / "defaults.toml"
PROJECT_CONFIG_NAME = "sparkfleet.toml"


@dataclass(frozen=True, slots=True)
class RoleSizing:
    """Instance sizing for one role."""

    instance_type: str = "m5.large"
    disk_size: int = 30


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Attempt budgets and backoff for every wait in the system.

    Args:
        provision_attempts: Convergence rounds for ensure_nodes.
        tag_attempts: Attempts to apply a name tag to a new instance.
        address_attempts: Polls until a new instance shows up with an address.
        termination_attempts: Polls until terminated instances disappear.
        remote_attempts: Attempts for retryable remote commands.
        initial_delay: First backoff delay in seconds.
        max_delay: Backoff cap in seconds.
    """

    provision_attempts: int = 3
    tag_attempts: int = 5
    address_attempts: int = 10
    termination_attempts: int = 10
    remote_attempts: int = 10
    initial_delay: float = 1.0
    max_delay: float = 30.0


@dataclass(frozen=True, slots=True)
class SparkConfig:
    """Spark distribution and job submission settings."""

    tgz_url: str = ""
    dir_name: str | None = None
    env: tuple[str, ...] = ()
    main_class: str | None = None
    app_name: str | None = None
    driver_memory: str | None = None
    executor_memory: str | None = None
    master_port: int = 7077
    web_ui_port: int = 8080

    @property
    def tgz_name(self) -> str:
        return self.tgz_url.rstrip("/").rsplit("/", 1)[-1]

    @property
    def home(self) -> str:
        """Directory the tarball extracts into."""
        if self.dir_name:
            return self.dir_name
        name = self.tgz_name
        for suffix in (".tgz", ".tar.gz"):
            if name.endswith(suffix):
                return name.removesuffix(suffix)
        return name


@dataclass(frozen=True, slots=True)
class FleetConfig:
    """Immutable deployment parameters.

    Args:
        cluster_name: Prefix for every node name in the fleet.
        keypair: EC2 key pair name. Also the ownership tag used to list the fleet.
        ami: Machine image for both roles.
        pem: Private key matching the key pair, used for SSH.
        region: AWS region.
        user: SSH login user on the image.
        master: Coordinator sizing.
        worker: Worker sizing.
        subnet_id: Subnet to launch into. Default VPC when None.
        security_group_ids: Security groups to attach. Account default when empty.
        use_private_ip: Address nodes by private IP instead of public DNS.
        spark: Spark distribution settings.
        retry: Attempt budgets and backoff.
        concurrency: Max worker bootstraps running at the same time.
        destroy_on_fail: Tear the whole fleet down when an operation fails.
        bootstrap_timeout: Seconds to wait for concurrent worker bootstraps. None waits forever.
    """

    cluster_name: str
    keypair: str
    ami: str
    pem: str | None = None
    region: str = "us-east-1"
    user: str = "ec2-user"
    master: RoleSizing = field(default_factory=RoleSizing)
    worker: RoleSizing = field(default_factory=RoleSizing)
    subnet_id: str | None = None
    security_group_ids: tuple[str, ...] = ()
    use_private_ip: bool = False
    spark: SparkConfig = field(default_factory=SparkConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    concurrency: int = 100
    destroy_on_fail: bool = False
    bootstrap_timeout: float | None = None

    def __post_init__(self) -> None:
        if not self.cluster_name:
            raise ConfigurationError("cluster_name must not be empty")
        if not self.keypair:
            raise ConfigurationError("keypair must not be empty")
        if not self.ami:
            raise ConfigurationError("ami must not be empty")
        if not self.spark.tgz_url:
            raise ConfigurationError("spark.tgz_url must not be empty")
        if self.concurrency < 1:
            raise ConfigurationError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.retry.provision_attempts < 1:
            raise ConfigurationError(
                f"retry.provision_attempts must be >= 1, got {self.retry.provision_attempts}"
            )

    def sizing(self, role: Role) -> RoleSizing:
        match role:
            case Role.COORDINATOR:
                return self.master
            case Role.WORKER:
                return self.worker

    @property
    def master_name(self) -> str:
        return f"{self.cluster_name}-master"

    @property
    def worker_prefix(self) -> str:
        return f"{self.cluster_name}-worker"


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def _build(cls: type[T], raw: RawConfig, section: str) -> T:
    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in [{section}]: {', '.join(sorted(unknown))}"
        )
    return cls(**raw)


def load_raw_config(
    *,
    path: Path | None = None,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    """Read and merge the global and project configuration files."""
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    if path is not None:
        if not path.is_file():
            raise ConfigurationError(f"Configuration file not found: {path}")
        project_cfg = _read_toml(path)
    else:
        project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME)
    return _deep_merge(global_cfg, project_cfg)


def from_dict(raw: RawConfig) -> FleetConfig:
    """Build a FleetConfig from a merged raw mapping."""
    raw = dict(raw)

    master = _build(RoleSizing, raw.pop("master", {}), "master")
    worker = _build(RoleSizing, raw.pop("worker", {}), "worker")
    retry = _build(RetryConfig, raw.pop("retry", {}), "retry")

    raw_spark = dict(raw.pop("spark", {}))
    if "env" in raw_spark:
        raw_spark["env"] = tuple(raw_spark["env"])
    spark = _build(SparkConfig, raw_spark, "spark")

    if "security_group_ids" in raw:
        raw["security_group_ids"] = tuple(raw["security_group_ids"])

    for required in ("cluster_name", "keypair", "ami"):
        if required not in raw:
            raise ConfigurationError(f"Missing required setting '{required}'")

    try:
        return _build(
            FleetConfig,
            {**raw, "master": master, "worker": worker, "retry": retry, "spark": spark},
            "root",
        )
    except TypeError as e:
        raise ConfigurationError(str(e)) from e


def load_config(
    *,
    path: Path | None = None,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> FleetConfig:
    return from_dict(
        load_raw_config(path=path, project_dir=project_dir, global_path=global_path)
    )


__all__ = [
    "FleetConfig",
    "RetryConfig",
    "RoleSizing",
    "SparkConfig",
    "from_dict",
    "load_config",
    "load_raw_config",
]
