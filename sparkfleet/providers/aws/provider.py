"""EC2 implementation of the CloudProvider protocol."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from types import MappingProxyType
from typing import Any

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from injector import inject
from loguru import logger

from sparkfleet.config import FleetConfig
from sparkfleet.exceptions import TransientProviderError
from sparkfleet.providers.provider import InstanceRecord, LaunchSpec

from .clients import EC2ClientFactory

log = logger.bind(component="ec2")

# Error codes that clear up on their own: throttling, and the window right
# after RunInstances where other APIs don't know the new id yet.
_TRANSIENT_CODES = frozenset({
    "InvalidInstanceID.NotFound",
    "InsufficientInstanceCapacity",
    "InternalError",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "Throttling",
    "Unavailable",
})

_ROOT_DEVICE = "/dev/xvda"


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "")
        if code in _TRANSIENT_CODES:
            raise TransientProviderError(f"{action}: {code}") from e
        raise
    except (ConnectionClosedError, EndpointConnectionError, ReadTimeoutError) as e:
        raise TransientProviderError(f"{action}: {e}") from e


def _to_record(raw: dict[str, Any]) -> InstanceRecord:
    tags = {t["Key"]: t["Value"] for t in raw.get("Tags", [])}
    return InstanceRecord(
        id=raw["InstanceId"],
        state=raw.get("State", {}).get("Name", ""),
        tags=MappingProxyType(tags),
        private_address=raw.get("PrivateIpAddress") or None,
        public_address=raw.get("PublicDnsName") or None,
    )


class AWSProvider:
    """CloudProvider backed by the EC2 API through aioboto3."""

    @inject
    def __init__(self, config: FleetConfig, ec2: EC2ClientFactory) -> None:
        self._config = config
        self._ec2 = ec2

    def _run_request(self, spec: LaunchSpec, count: int) -> dict[str, Any]:
        request: dict[str, Any] = {
            "ImageId": self._config.ami,
            "InstanceType": spec.instance_type,
            "KeyName": self._config.keypair,
            "MinCount": count,
            "MaxCount": count,
            "BlockDeviceMappings": [
                {
                    "DeviceName": _ROOT_DEVICE,
                    "Ebs": {
                        "VolumeSize": spec.disk_size,
                        "VolumeType": "gp2",
                        "DeleteOnTermination": True,
                    },
                }
            ],
        }
        if self._config.security_group_ids:
            request["SecurityGroupIds"] = list(self._config.security_group_ids)
        if self._config.subnet_id:
            request["SubnetId"] = self._config.subnet_id
        return request

    async def create_instances(self, spec: LaunchSpec, count: int) -> Sequence[str]:
        if count <= 0:
            return ()

        log.info("[EC2] Creating {n} instances...", n=count)
        with _translate_errors("RunInstances"):
            async with self._ec2() as ec2:
                response = await ec2.run_instances(**self._run_request(spec, count))

        return tuple(inst["InstanceId"] for inst in response.get("Instances", []))

    async def tag_instance(self, instance_id: str, name: str) -> None:
        with _translate_errors("CreateTags"):
            async with self._ec2() as ec2:
                await ec2.create_tags(
                    Resources=[instance_id],
                    Tags=[{"Key": "Name", "Value": name}],
                )

    async def list_instances(self, owner: str) -> Sequence[InstanceRecord]:
        records: list[InstanceRecord] = []
        with _translate_errors("DescribeInstances"):
            async with self._ec2() as ec2:
                paginator = ec2.get_paginator("describe_instances")
                async for page in paginator.paginate(
                    Filters=[{"Name": "key-name", "Values": [owner]}]
                ):
                    for reservation in page.get("Reservations", []):
                        records.extend(_to_record(i) for i in reservation.get("Instances", []))
        return records

    async def terminate_instances(self, instance_ids: Sequence[str]) -> None:
        if not instance_ids:
            return
        with _translate_errors("TerminateInstances"):
            async with self._ec2() as ec2:
                await ec2.terminate_instances(InstanceIds=list(instance_ids))
