"""EC2 instance discovery via boto3.

boto3 is an optional dependency (``pip install beacon-sd[aws]``) and is
imported lazily.  Its calls are blocking, so each poll runs them in an
executor thread.  A thread cannot be cancelled, so at most one
``DescribeInstances`` call runs per discoverer: a poll that starts while
the previous call is still running fails immediately, and :meth:`aclose`
waits for the running call before closing the client.  Socket timeouts
on the botocore client keep that wait bounded.  Filters are pushed down
to ``DescribeInstances``.
"""

from __future__ import annotations

import asyncio
import importlib.util
import logging
import re
import time
from typing import Any, Callable

from beacon.config import poll_timeout
from beacon.convert import DiscoveryRequest
from beacon.discovery.base import Discoverer
from beacon.errors import ConfigurationError, PollError
from beacon.targets import Target, TargetGroup

logger = logging.getLogger(__name__)

EC2_LABEL = "__meta_ec2_"
ROLE_SESSION_NAME = "beacon-ec2-sd"
#: Clients built on assumed-role credentials are rebuilt after this many
#: seconds; STS sessions last an hour by default.
ASSUMED_ROLE_CLIENT_TTL = 900.0
MIN_SOCKET_TIMEOUT = 1.0
_INVALID_LABEL_CHARS = re.compile(r"[^a-zA-Z0-9_]")

ClientFactory = Callable[[DiscoveryRequest], Any]


def _botocore_config(request: DiscoveryRequest) -> Any:
    """Socket timeouts, retries, proxy and client certificate for one client.

    A poll makes two calls, so each socket operation gets half the poll
    timeout.
    """
    from botocore.config import Config

    timeout = max(MIN_SOCKET_TIMEOUT, poll_timeout(request.refresh_interval) / 2)
    kwargs: dict[str, Any] = {
        "connect_timeout": timeout,
        "read_timeout": timeout,
        "retries": {"mode": "standard", "total_max_attempts": 1},
    }
    http = request.http_client_config
    if http.proxy_url:
        kwargs["proxies"] = {"http": http.proxy_url, "https": http.proxy_url}
    tls = http.tls_config
    if tls.cert_file:
        kwargs["client_cert"] = (tls.cert_file, tls.key_file) if tls.key_file else tls.cert_file
    return Config(**kwargs)


def _boto3_client_factory(request: DiscoveryRequest) -> Any:
    """Build an EC2 client honouring keys, profile, role, proxy and TLS settings."""
    import boto3

    session_kwargs: dict[str, Any] = {"region_name": request.region}
    if request.access_key:
        session_kwargs["aws_access_key_id"] = request.access_key
        session_kwargs["aws_secret_access_key"] = request.secret_key
    elif request.profile:
        session_kwargs["profile_name"] = request.profile
    session = boto3.Session(**session_kwargs)

    client_kwargs: dict[str, Any] = {"config": _botocore_config(request)}
    tls = request.http_client_config.tls_config
    if tls.insecure_skip_verify:
        client_kwargs["verify"] = False
    elif tls.ca_file:
        client_kwargs["verify"] = tls.ca_file

    if request.role_arn:
        sts = session.client("sts", **client_kwargs)
        creds = sts.assume_role(RoleArn=request.role_arn, RoleSessionName=ROLE_SESSION_NAME)[
            "Credentials"
        ]
        session = boto3.Session(
            aws_access_key_id=creds["AccessKeyId"],
            aws_secret_access_key=creds["SecretAccessKey"],
            aws_session_token=creds["SessionToken"],
            region_name=request.region,
        )

    if request.endpoint:
        client_kwargs["endpoint_url"] = request.endpoint
    return session.client("ec2", **client_kwargs)


def _retrieve(future: asyncio.Future) -> None:
    # The awaiting poll may have been cancelled; keep asyncio from
    # reporting the thread's exception as never retrieved.
    if not future.cancelled():
        future.exception()


class EC2Discoverer(Discoverer):
    supports_filter_pushdown = True
    requires_region = True

    def __init__(
        self,
        request: DiscoveryRequest,
        client_factory: ClientFactory = _boto3_client_factory,
    ) -> None:
        self.request = request
        self._client_factory = client_factory
        self._client: Any = None
        self._client_built = 0.0
        self._pending: asyncio.Future | None = None

    @classmethod
    def from_request(cls, request: DiscoveryRequest) -> EC2Discoverer:
        if importlib.util.find_spec("boto3") is None:
            raise ConfigurationError(
                "the ec2 backend requires boto3 (pip install 'beacon-sd[aws]')"
            )
        return cls(request)

    @property
    def busy(self) -> bool:
        """Whether a ``DescribeInstances`` call is still running in its thread."""
        return self._pending is not None and not self._pending.done()

    async def poll(self) -> list[TargetGroup]:
        if self.busy:
            raise PollError(
                f"previous DescribeInstances call in {self.request.region} is still running"
            )
        loop = asyncio.get_running_loop()
        self._pending = loop.run_in_executor(None, self._describe)
        self._pending.add_done_callback(_retrieve)
        return await asyncio.shield(self._pending)

    async def aclose(self) -> None:
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            logger.debug("Waiting for DescribeInstances in %s before closing", self.request.region)
            try:
                await pending
            except Exception as exc:
                logger.debug("DescribeInstances finished with an error during close: %s", exc)
        self._close_client()

    def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.close()

    def _get_client(self) -> Any:
        if self._client is not None and self.request.role_arn:
            if time.monotonic() - self._client_built > ASSUMED_ROLE_CLIENT_TTL:
                logger.debug(
                    "Rebuilding EC2 client for %s with fresh role credentials", self.request.region
                )
                self._close_client()
        if self._client is None:
            self._client = self._client_factory(self.request)
            self._client_built = time.monotonic()
        return self._client

    def _describe(self) -> list[TargetGroup]:
        try:
            client = self._get_client()
            az_ids = self._availability_zone_ids(client)
            filters = [{"Name": f.name, "Values": list(f.values)} for f in self.request.filters]
            paginator = client.get_paginator("describe_instances")
            targets: list[Target] = []
            for page in paginator.paginate(Filters=filters):
                for reservation in page.get("Reservations", []):
                    owner_id = reservation.get("OwnerId", "")
                    for instance in reservation.get("Instances", []):
                        target = self._instance_target(instance, owner_id, az_ids)
                        if target is not None:
                            targets.append(target)
        except PollError:
            raise
        except Exception as exc:
            raise PollError(f"could not describe instances in {self.request.region}: {exc}") from exc

        return [TargetGroup(source=self.request.region, targets=tuple(targets))]

    @staticmethod
    def _availability_zone_ids(client: Any) -> dict[str, str]:
        response = client.describe_availability_zones()
        return {
            az["ZoneName"]: az["ZoneId"]
            for az in response.get("AvailabilityZones", [])
            if "ZoneName" in az and "ZoneId" in az
        }

    def _instance_target(
        self,
        instance: dict[str, Any],
        owner_id: str,
        az_ids: dict[str, str],
    ) -> Target | None:
        private_ip = instance.get("PrivateIpAddress")
        if not private_ip:
            return None

        placement = instance.get("Placement", {})
        az = placement.get("AvailabilityZone", "")
        labels: dict[str, str] = {
            "instance_id": instance.get("InstanceId", ""),
            "region": self.request.region,
            "owner_id": owner_id,
            "private_ip": private_ip,
            "private_dns_name": instance.get("PrivateDnsName", ""),
            "availability_zone": az,
            "instance_type": instance.get("InstanceType", ""),
            "instance_state": instance.get("State", {}).get("Name", ""),
            "ami": instance.get("ImageId", ""),
        }
        if az in az_ids:
            labels["availability_zone_id"] = az_ids[az]
        optional = {
            "public_dns_name": instance.get("PublicDnsName"),
            "public_ip": instance.get("PublicIpAddress"),
            "architecture": instance.get("Architecture"),
            "platform": instance.get("Platform"),
            "instance_lifecycle": instance.get("InstanceLifecycle"),
        }
        labels.update({k: v for k, v in optional.items() if v})

        if instance.get("VpcId"):
            labels["vpc_id"] = instance["VpcId"]
            labels["primary_subnet_id"] = instance.get("SubnetId", "")

            subnets: list[str] = []
            ipv6: list[str] = []
            for eni in instance.get("NetworkInterfaces", []):
                subnet = eni.get("SubnetId")
                if subnet and subnet not in subnets:
                    subnets.append(subnet)
                ipv6.extend(a["Ipv6Address"] for a in eni.get("Ipv6Addresses", []) if "Ipv6Address" in a)
            if subnets:
                labels["subnet_id"] = "," + ",".join(subnets) + ","
            if ipv6:
                labels["ipv6_addresses"] = "," + ",".join(ipv6) + ","

        for tag in instance.get("Tags", []):
            key, value = tag.get("Key"), tag.get("Value")
            if key is None or value is None:
                continue
            labels["tag_" + _INVALID_LABEL_CHARS.sub("_", key)] = value

        return Target(
            address=f"{private_ip}:{self.request.port}",
            labels={EC2_LABEL + k: v for k, v in labels.items()},
        )
