"""AWS boto3 compute backend: instances, key pairs, security groups and elastic IPs."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config import AWSConfig
from ..exceptions import InvalidRequestError, ProvisioningError
from ..models import Infrastructure
from .nodes import (
    GROUP_TAG_KEY,
    INFRASTRUCTURE_TAG_KEY,
    ElasticAddress,
    Location,
    NodeHardware,
    NodeMetadata,
    join_node_id,
    node_status,
    split_node_id,
)
from .template import Template, TemplateBuilder

logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"

_LIVE_STATES = ["pending", "running", "stopping", "stopped"]


@contextmanager
def _backend_call(action: str) -> Iterator[None]:
    """Translate boto3/botocore failures into ProvisioningError."""
    try:
        yield
    except (ClientError, BotoCoreError) as exc:
        raise ProvisioningError(f"{action} failed: {exc}") from exc


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class EC2ComputeService:
    """One live connection to EC2 for an infrastructure, with one boto3 client per region."""

    def __init__(self, infrastructure: Infrastructure, aws_config: AWSConfig):
        self._infrastructure = infrastructure
        self._config = aws_config
        self.default_region = infrastructure.region or DEFAULT_REGION

        session_kwargs: dict[str, Any] = {"region_name": self.default_region}
        if infrastructure.credentials.username:
            session_kwargs["aws_access_key_id"] = infrastructure.credentials.username
            session_kwargs["aws_secret_access_key"] = infrastructure.credentials.password

        self._session = boto3.Session(**session_kwargs)
        self._clients: dict[str, Any] = {}
        self._clients_lock = threading.Lock()
        self._regions: set[Location] | None = None

    def _client(self, region: str):
        # boto3 sessions are not thread-safe, the clients they build are.
        with self._clients_lock:
            client = self._clients.get(region)
            if client is None:
                client_kwargs: dict[str, Any] = {"region_name": region}
                if self._infrastructure.endpoint:
                    client_kwargs["endpoint_url"] = self._infrastructure.endpoint
                client = self._clients[region] = self._session.client("ec2", **client_kwargs)
            return client

    @property
    def scanned_regions(self) -> list[str]:
        regions = list(self._config.regions) or [self.default_region]
        if self.default_region not in regions:
            regions.append(self.default_region)
        return regions

    # ── Templates and hardware ──────────────────────────────────────

    def template_builder(self) -> TemplateBuilder:
        return TemplateBuilder(self.resolve_hardware)

    def resolve_hardware(self, region: str, min_ram: int, min_cores: float) -> str:
        """Return the smallest current-generation instance type with at least min_ram MiB and min_cores vCPUs."""
        candidates: list[tuple[int, int, str]] = []
        with _backend_call(f"Listing instance types in {region}"):
            paginator = self._client(region).get_paginator("describe_instance_types")
            pages = paginator.paginate(Filters=[{"Name": "current-generation", "Values": ["true"]}])
            for page in pages:
                for info in page.get("InstanceTypes", []):
                    vcpus = info.get("VCpuInfo", {}).get("DefaultVCpus", 0)
                    memory = info.get("MemoryInfo", {}).get("SizeInMiB", 0)
                    if vcpus >= min_cores and memory >= min_ram:
                        candidates.append((vcpus, memory, info["InstanceType"]))

        if not candidates:
            raise InvalidRequestError(
                f"No instance type in {region} offers {min_ram} MB of RAM and {min_cores} cores"
            )
        vcpus, memory, instance_type = min(candidates)
        logger.debug("Best fit for %d MB / %s cores in %s is %s", min_ram, min_cores, region, instance_type)
        return instance_type

    # ── Nodes ───────────────────────────────────────────────────────

    def create_nodes_in_group(self, group: str, count: int, template: Template) -> list[NodeMetadata]:
        """Launch count instances of the template, wait until they run and describe them."""
        region = template.location_id
        client = self._client(region)
        options = template.options
        _, ami = split_node_id(template.image_id)

        launch: dict[str, Any] = {"ImageId": ami, "InstanceType": template.hardware_id}
        if options.key_pair:
            launch["KeyName"] = options.key_pair
        group_ids = [g for g in options.security_groups if g.startswith("sg-")]
        group_names = [g for g in options.security_groups if not g.startswith("sg-")]
        if options.subnet_id:
            # EC2 only accepts group ids for a launch into a subnet
            launch["SubnetId"] = options.subnet_id
            group_ids += self._group_ids_for_subnet(region, options.subnet_id, group_names)
            group_names = []
        if group_ids:
            launch["SecurityGroupIds"] = group_ids
        if group_names:
            launch["SecurityGroups"] = group_names

        tags = {**options.user_metadata, GROUP_TAG_KEY: group, INFRASTRUCTURE_TAG_KEY: self._infrastructure.id}
        aws_tags = [{"Key": k, "Value": v} for k, v in tags.items()]

        with _backend_call(f"Creating {count} node(s) in group {group}"):
            if options.spot_price is not None:
                instance_ids = self._request_spot_instances(client, count, launch, options.spot_price,
                                                            options.spot_valid_until)
                if not instance_ids:
                    return []
                client.create_tags(Resources=instance_ids, Tags=aws_tags)
            else:
                response = client.run_instances(
                    **launch,
                    MinCount=count,
                    MaxCount=count,
                    TagSpecifications=[{"ResourceType": "instance", "Tags": aws_tags}],
                )
                instance_ids = [raw["InstanceId"] for raw in response.get("Instances", [])]

            if not instance_ids:
                return []

            logger.info("Waiting for %d instance(s) to run", len(instance_ids),
                        extra={"region": region, "group": group})
            client.get_waiter("instance_running").wait(
                InstanceIds=instance_ids, WaiterConfig=self._waiter_config(),
            )
            return self._describe(region, InstanceIds=instance_ids)

    def _group_ids_for_subnet(self, region: str, subnet_id: str, names: list[str]) -> list[str]:
        if not names:
            return []
        vpc_id = self.describe_subnet_vpc_in_region(region, subnet_id)
        found = self.describe_security_groups_in_region(region, *names, vpc_id=vpc_id)
        missing = [n for n in names if n not in found]
        if missing:
            raise InvalidRequestError(
                f"Security group(s) {', '.join(missing)} do not exist in the VPC {vpc_id} of subnet {subnet_id}"
            )
        return [found[n] for n in names]

    def _request_spot_instances(self, client, count: int, launch: dict[str, Any],
                                spot_price: float, valid_until) -> list[str]:
        request: dict[str, Any] = {
            "SpotPrice": str(spot_price),
            "InstanceCount": count,
            "Type": "one-time",
            "LaunchSpecification": launch,
        }
        if valid_until is not None:
            request["ValidUntil"] = valid_until

        response = client.request_spot_instances(**request)
        request_ids = [r["SpotInstanceRequestId"] for r in response.get("SpotInstanceRequests", [])]
        logger.info("Waiting for spot request(s) %s to be fulfilled", ", ".join(request_ids))

        client.get_waiter("spot_instance_request_fulfilled").wait(
            SpotInstanceRequestIds=request_ids, WaiterConfig=self._waiter_config(),
        )
        described = client.describe_spot_instance_requests(SpotInstanceRequestIds=request_ids)
        return [r["InstanceId"] for r in described.get("SpotInstanceRequests", []) if r.get("InstanceId")]

    def _waiter_config(self) -> dict[str, int]:
        delay = self._config.waiter_delay_seconds
        timeout_seconds = self._config.node_running_timeout_ms // 1000
        return {"Delay": delay, "MaxAttempts": max(1, timeout_seconds // delay)}

    def list_nodes(self) -> list[NodeMetadata]:
        """All live nodes of this infrastructure across the scanned regions."""
        nodes: list[NodeMetadata] = []
        for region in self.scanned_regions:
            nodes.extend(self._describe(region, Filters=[
                {"Name": f"tag:{INFRASTRUCTURE_TAG_KEY}", "Values": [self._infrastructure.id]},
                {"Name": "instance-state-name", "Values": _LIVE_STATES},
            ]))
        return nodes

    def get_node_metadata(self, node_id: str) -> NodeMetadata | None:
        region, provider_id = split_node_id(node_id)
        region = region or self.default_region
        try:
            nodes = self._describe(region, InstanceIds=[provider_id])
        except ProvisioningError as exc:
            cause = exc.__cause__
            if isinstance(cause, ClientError) and _error_code(cause).startswith("InvalidInstanceID"):
                return None
            raise
        return nodes[0] if nodes else None

    def destroy_node(self, node_id: str) -> None:
        region, provider_id = split_node_id(node_id)
        region = region or self.default_region
        with _backend_call(f"Terminating {node_id}"):
            self._client(region).terminate_instances(InstanceIds=[provider_id])
        logger.info("Terminated node %s", node_id, extra={"region": region})

    def destroy_nodes_in_group(self, group: str) -> list[str]:
        destroyed: list[str] = []
        for node in self.list_nodes():
            if node.group == group:
                self.destroy_node(node.id)
                destroyed.append(node.id)
        return destroyed

    def list_assignable_locations(self) -> set[Location]:
        if self._regions is None:
            with _backend_call("Listing regions"):
                response = self._client(self.default_region).describe_regions()
            self._regions = {Location(id=r["RegionName"]) for r in response.get("Regions", [])}
        return self._regions

    def _describe(self, region: str, **kwargs: Any) -> list[NodeMetadata]:
        nodes: list[NodeMetadata] = []
        with _backend_call(f"Describing instances in {region}"):
            paginator = self._client(region).get_paginator("describe_instances")
            for page in paginator.paginate(**kwargs):
                for reservation in page.get("Reservations", []):
                    for raw in reservation.get("Instances", []):
                        nodes.append(self._parse_instance(raw, region))
        return nodes

    @staticmethod
    def _parse_instance(raw: dict[str, Any], region: str) -> NodeMetadata:
        tags = {t["Key"]: t["Value"] for t in raw.get("Tags", [])}
        zone = raw.get("Placement", {}).get("AvailabilityZone")
        region_location = Location(id=region)
        location = Location(id=zone, scope="ZONE", parent=region_location) if zone else region_location

        cpu = raw.get("CpuOptions", {})
        cores = None
        if "CoreCount" in cpu:
            cores = float(cpu["CoreCount"] * cpu.get("ThreadsPerCore", 1))

        return NodeMetadata(
            id=join_node_id(region, raw["InstanceId"]),
            provider_id=raw["InstanceId"],
            name=tags.get("Name", raw["InstanceId"]),
            group=tags.get(GROUP_TAG_KEY),
            status=node_status(raw.get("State", {}).get("Name")),
            hardware=NodeHardware(type=raw.get("InstanceType", ""), cores=cores),
            location=location,
            image_id=raw.get("ImageId"),
            public_addresses=tuple(a for a in [raw.get("PublicIpAddress")] if a),
            private_addresses=tuple(a for a in [raw.get("PrivateIpAddress")] if a),
            tags=tags,
        )

    # ── Key pairs ───────────────────────────────────────────────────

    def create_key_pair_in_region(self, region: str, name: str) -> tuple[str, str]:
        with _backend_call(f"Creating key pair {name} in {region}"):
            response = self._client(region).create_key_pair(KeyName=name)
        return response["KeyName"], response["KeyMaterial"]

    def describe_key_pairs_in_region(self, region: str, *names: str) -> list[str]:
        try:
            response = self._client(region).describe_key_pairs(KeyNames=list(names))
        except ClientError as exc:
            if _error_code(exc) == "InvalidKeyPair.NotFound":
                return []
            raise ProvisioningError(f"Describing key pairs in {region} failed: {exc}") from exc
        return [kp["KeyName"] for kp in response.get("KeyPairs", [])]

    def delete_key_pair_in_region(self, region: str, name: str) -> None:
        with _backend_call(f"Deleting key pair {name} in {region}"):
            self._client(region).delete_key_pair(KeyName=name)

    # ── Security groups ─────────────────────────────────────────────

    def describe_subnet_vpc_in_region(self, region: str, subnet_id: str) -> str:
        """Return the id of the VPC the subnet belongs to."""
        with _backend_call(f"Describing subnet {subnet_id} in {region}"):
            response = self._client(region).describe_subnets(SubnetIds=[subnet_id])
        subnets = response.get("Subnets", [])
        if not subnets:
            raise InvalidRequestError(f"Subnet {subnet_id} does not exist in {region}")
        return subnets[0]["VpcId"]

    def create_security_group_in_region(self, region: str, name: str, description: str,
                                        vpc_id: str | None = None) -> str:
        kwargs: dict[str, Any] = {"GroupName": name, "Description": description}
        if vpc_id:
            kwargs["VpcId"] = vpc_id
        with _backend_call(f"Creating security group {name} in {region}"):
            response = self._client(region).create_security_group(**kwargs)
        return response["GroupId"]

    def describe_security_groups_in_region(self, region: str, *names: str,
                                           vpc_id: str | None = None) -> dict[str, str]:
        """Map the names among ``names`` that exist to their group ids.

        Without a VPC the lookup is by name in the default VPC; with one, by
        group-name and vpc-id filters.
        """
        client = self._client(region)
        try:
            if vpc_id:
                response = client.describe_security_groups(Filters=[
                    {"Name": "group-name", "Values": list(names)},
                    {"Name": "vpc-id", "Values": [vpc_id]},
                ])
            else:
                response = client.describe_security_groups(GroupNames=list(names))
        except ClientError as exc:
            if _error_code(exc) == "InvalidGroup.NotFound":
                return {}
            raise ProvisioningError(f"Describing security groups in {region} failed: {exc}") from exc
        return {g["GroupName"]: g["GroupId"] for g in response.get("SecurityGroups", [])}

    def authorize_security_group_ingress_in_region(
        self, region: str, group_id: str, protocol: str, from_port: int, to_port: int, cidr: str,
    ) -> None:
        with _backend_call(f"Opening {protocol} {from_port}-{to_port} on {group_id}"):
            self._client(region).authorize_security_group_ingress(
                GroupId=group_id,
                IpPermissions=[{
                    "IpProtocol": protocol,
                    "FromPort": from_port,
                    "ToPort": to_port,
                    "IpRanges": [{"CidrIp": cidr}],
                }],
            )

    def delete_security_group_in_region(self, region: str, name: str) -> None:
        """Delete every group with this name in the region, whichever VPC holds it."""
        client = self._client(region)
        with _backend_call(f"Deleting security group {name} in {region}"):
            response = client.describe_security_groups(Filters=[{"Name": "group-name", "Values": [name]}])
            for group in response.get("SecurityGroups", []):
                client.delete_security_group(GroupId=group["GroupId"])

    # ── Elastic IPs ─────────────────────────────────────────────────

    def describe_addresses_in_region(self, region: str, *public_ips: str) -> list[ElasticAddress]:
        kwargs: dict[str, Any] = {"PublicIps": list(public_ips)} if public_ips else {}
        with _backend_call(f"Describing addresses in {region}"):
            response = self._client(region).describe_addresses(**kwargs)
        return [
            ElasticAddress(
                public_ip=a["PublicIp"],
                instance_id=a.get("InstanceId"),
                allocation_id=a.get("AllocationId"),
                association_id=a.get("AssociationId"),
            )
            for a in response.get("Addresses", [])
        ]

    def associate_address_in_region(self, region: str, public_ip: str, provider_id: str) -> None:
        known = self.describe_addresses_in_region(region, public_ip)
        allocation_id = known[0].allocation_id if known else None
        kwargs: dict[str, Any] = {"InstanceId": provider_id}
        if allocation_id:
            kwargs["AllocationId"] = allocation_id
        else:
            kwargs["PublicIp"] = public_ip
        with _backend_call(f"Associating {public_ip} with {provider_id}"):
            self._client(region).associate_address(**kwargs)

    def allocate_address_in_region(self, region: str) -> str:
        with _backend_call(f"Allocating an address in {region}"):
            response = self._client(region).allocate_address(Domain="vpc")
        return response["PublicIp"]

    def disassociate_address_in_region(self, region: str, public_ip: str) -> None:
        known = self.describe_addresses_in_region(region, public_ip)
        association_id = known[0].association_id if known else None
        with _backend_call(f"Disassociating {public_ip}"):
            if association_id:
                self._client(region).disassociate_address(AssociationId=association_id)
            else:
                self._client(region).disassociate_address(PublicIp=public_ip)
