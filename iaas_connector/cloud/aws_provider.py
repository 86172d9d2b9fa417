"""AWS EC2 provider: turns cloud-agnostic instance requests into EC2 launches and cleans up after them."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable

from ..concurrent_map import ConcurrentMap
from ..config import AWSConfig
from ..exceptions import (
    ConnectorError,
    InstanceNotFoundError,
    InvalidRequestError,
    ProvisioningError,
    PublicIpExhaustedError,
)
from ..models import (
    Hardware,
    Infrastructure,
    Instance,
    InstanceCredentials,
    Network,
    Options,
    PagedNodeCandidates,
    RunScriptOptions,
    Tag,
)
from ..tags import TagManager
from . import ComputeService, ElasticIpCapable, require_capability
from .cache import ComputeServiceCache
from .credentials import CredentialStore, KeyPairEntry
from .ec2_service import DEFAULT_REGION
from .nodes import NodeMetadata, region_from_image, split_node_id
from .pricing import PricingCatalogClient
from .security_groups import (
    DEFAULT_INBOUND_PORT,
    AutoGeneratedSecurityGroups,
    SecurityGroupManager,
    auto_generated_security_group_name,
)
from .template import Template

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AWSEC2Provider:
    """Instance lifecycle, public IPs, default credentials and node candidates on AWS EC2."""

    type = "aws-ec2"

    def __init__(
        self,
        aws_config: AWSConfig,
        compute_services: ComputeServiceCache,
        credential_store: CredentialStore,
        security_groups: SecurityGroupManager,
        pricing: PricingCatalogClient,
        tag_manager: TagManager,
        auto_generated_groups: AutoGeneratedSecurityGroups | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._config = aws_config
        self._compute_services = compute_services
        self._credentials = credential_store
        self._security_groups = security_groups
        self._pricing = pricing
        self._tag_manager = tag_manager
        self.auto_generated_groups = auto_generated_groups or AutoGeneratedSecurityGroups()
        self._clock = clock
        # (infrastructure id, region, vpc id) -> id of the shared auto-generated group
        self._shared_groups: ConcurrentMap[tuple[str, str, str | None], str] = ConcurrentMap()

    # ── Instances ───────────────────────────────────────────────────

    def create_instance(self, infrastructure: Infrastructure, instance: Instance) -> list[Instance]:
        """Launch instance.number instances in group instance.tag and return them as created."""
        if not instance.tag:
            raise InvalidRequestError("The instance has no tag")
        count = _parse_count(instance.number)
        service = self._service(infrastructure)
        region = region_from_image(instance.image)

        builder = service.template_builder().location_id(region).image_id(instance.image)
        hardware = instance.hardware
        if hardware is not None and hardware.type and hardware.type.strip():
            builder.hardware_id(hardware.type)
        else:
            min_ram, min_cores = _parse_floors(hardware)
            builder.min_ram(min_ram).min_cores(min_cores)
        template = builder.build()

        if instance.options is not None:
            self._add_options(template, instance.options, infrastructure, region)

        self._add_tags(template, self._tag_manager.retrieve_all_tags(infrastructure.id, instance.options))

        credentials = instance.credentials or self._credentials.ensure_credentials(infrastructure, instance)
        self._add_credentials(template, credentials)

        try:
            nodes = service.create_nodes_in_group(instance.tag, count, template)
        except ConnectorError:
            raise
        except Exception as exc:
            raise ProvisioningError(f"Creating instances in group {instance.tag} failed: {exc}") from exc

        logger.info("Created %d instance(s) in group %s", len(nodes), instance.tag,
                    extra={"infrastructure_id": infrastructure.id, "region": region, "group": instance.tag})
        return [self._instance_from_node(node) for node in nodes]

    def get_all_infrastructure_instances(self, infrastructure: Infrastructure) -> list[Instance]:
        return [self._instance_from_node(node) for node in self._service(infrastructure).list_nodes()]

    def get_instance_by_id(self, infrastructure: Infrastructure, instance_id: str) -> Instance:
        return self._instance_from_node(self._node(self._service(infrastructure), instance_id))

    def get_instances_by_tag(self, infrastructure: Infrastructure, instance_tag: str) -> list[Instance]:
        return [i for i in self.get_all_infrastructure_instances(infrastructure) if i.tag == instance_tag]

    def delete_instance(self, infrastructure: Infrastructure, instance_id: str) -> None:
        self._service(infrastructure).destroy_node(instance_id)

    def delete_instances_by_tag(self, infrastructure: Infrastructure, instance_tag: str) -> list[str]:
        return self._service(infrastructure).destroy_nodes_in_group(instance_tag)

    # ── Template options ────────────────────────────────────────────

    def _add_options(self, template: Template, options: Options, infrastructure: Infrastructure,
                     region: str) -> None:
        template_options = template.options

        if options.spot_price:
            try:
                template_options.spot_price = float(options.spot_price)
            except ValueError as exc:
                raise InvalidRequestError(f"Invalid spot price {options.spot_price!r}") from exc
            # An unfulfilled spot request must die when the node-running timeout declares the launch failed.
            template_options.spot_valid_until = self._clock() + timedelta(
                milliseconds=self._config.node_running_timeout_ms
            )

        vpc_id = None
        if options.subnet_id:
            template_options.subnet_id = options.subnet_id
            vpc_id = self._security_groups.subnet_vpc(infrastructure, region, options.subnet_id)

        if options.security_group_names:
            template_options.security_groups = list(options.security_group_names)
        else:
            logger.info("The infrastructure [%s] is using the auto-generated security group.",
                        infrastructure.id)
            name, group_id = self._provision_security_group(infrastructure, region, options.ports_to_open, vpc_id)
            # a launch into a subnet takes group ids, the default VPC takes names
            template_options.security_groups = [group_id] if vpc_id else [name]
            self.auto_generated_groups.record(infrastructure.id, name)

    def _provision_security_group(self, infrastructure: Infrastructure, region: str,
                                  ports: list[int] | None, vpc_id: str | None) -> tuple[str, str]:
        """Create (or reuse) the auto-generated group and return its (name, id)."""
        name = auto_generated_security_group_name(infrastructure.id)

        if ports is not None:
            # Each port-restricted launch gets a group of its own.
            name = f"{name}-{uuid.uuid4()}"
            group_id = self._security_groups.create_in_region(
                infrastructure, region, name, f"Auto generated security group to authorize the ports {ports}",
                vpc_id,
            )
            for port in ports:
                self._security_groups.allow_port(infrastructure, region, group_id, port)
            return name, group_id

        def _ensure_shared_group(key: tuple[str, str, str | None], current: str | None) -> str:
            if current is not None:
                return current
            group_id = self._security_groups.find_in_region(infrastructure, region, name, vpc_id)
            if group_id is not None:
                return group_id
            group_id = self._security_groups.create_in_region(
                infrastructure, region, name, f"Auto generated security group of infrastructure {infrastructure.id}",
                vpc_id,
            )
            self._security_groups.allow_port(infrastructure, region, group_id, DEFAULT_INBOUND_PORT)
            return group_id

        return name, self._shared_groups.compute((infrastructure.id, region, vpc_id), _ensure_shared_group)

    @staticmethod
    def _add_tags(template: Template, tags: list[Tag]) -> None:
        template.options.user_metadata = {tag.key: tag.value for tag in tags}

    @staticmethod
    def _add_credentials(template: Template, credentials: InstanceCredentials | None) -> None:
        if credentials is None:
            logger.warning("No credentials available, launching without a key pair")
            return

        logger.info("Username given for instance creation: %s", credentials.username)
        if credentials.username and credentials.username.strip():
            template.options.login_user = credentials.username

        logger.info("Public key name given for instance creation: %s", credentials.public_key_name)
        if credentials.public_key_name:
            template.options.key_pair = credentials.public_key_name

    # ── Public IPs ──────────────────────────────────────────────────

    def add_to_instance_public_ip(self, infrastructure: Infrastructure, instance_id: str,
                                  desired_ip: str | None = None) -> str:
        """Associate desired_ip, else a free address of the region, else a newly allocated one."""
        service = self._service(infrastructure)
        addresses = require_capability(service, ElasticIpCapable, "public IP management")
        node = self._node(service, instance_id)
        region = self._region_of(service, instance_id, node)

        if desired_ip:
            addresses.associate_address_in_region(region, desired_ip, node.provider_id)
            return desired_ip

        for address in addresses.describe_addresses_in_region(region):
            if address.instance_id is not None:
                continue
            try:
                addresses.associate_address_in_region(region, address.public_ip, node.provider_id)
            except ProvisioningError:
                logger.warning("Cannot associate address %s in region %s", address.public_ip, region,
                               exc_info=True)
                continue
            logger.info("Associated %s with %s", address.public_ip, instance_id,
                        extra={"instance_id": instance_id, "region": region})
            return address.public_ip

        try:
            ip = addresses.allocate_address_in_region(region)
        except ProvisioningError as exc:
            raise PublicIpExhaustedError(
                "Failed to allocate a new IP address. All IP addresses are in use."
            ) from exc
        addresses.associate_address_in_region(region, ip, node.provider_id)
        logger.info("Allocated and associated %s with %s", ip, instance_id,
                    extra={"instance_id": instance_id, "region": region})
        return ip

    def remove_instance_public_ip(self, infrastructure: Infrastructure, instance_id: str,
                                  desired_ip: str | None = None) -> None:
        service = self._service(infrastructure)
        addresses = require_capability(service, ElasticIpCapable, "public IP management")
        node = self._node(service, instance_id)
        region = self._region_of(service, instance_id, node)

        ip = desired_ip or next(iter(node.public_addresses), None)
        if ip:
            addresses.disassociate_address_in_region(region, ip)

    @staticmethod
    def _region_of(service: ComputeService, instance_id: str, node: NodeMetadata) -> str:
        region, _ = split_node_id(instance_id)
        if region:
            return region
        assignable = service.list_assignable_locations()
        location = node.location
        while location is not None and location not in assignable:
            location = location.parent
        if location is None:
            raise ProvisioningError(f"Cannot find the region of instance {instance_id}")
        return location.id

    # ── Infrastructure ──────────────────────────────────────────────

    def delete_infrastructure(self, infrastructure: Infrastructure) -> None:
        """Delete the auto-generated security groups, then drop the backend connection."""
        region = infrastructure.region or DEFAULT_REGION
        for name in sorted(self.auto_generated_groups.groups_for(infrastructure.id)):
            self._security_groups.delete_in_region(infrastructure, region, name)
            self.auto_generated_groups.discard(infrastructure.id, name)

        self._compute_services.remove_compute_service(infrastructure)
        self._pricing.remove_client(infrastructure)
        self.auto_generated_groups.remove(infrastructure.id)
        for key in self._shared_groups.snapshot():
            if key[0] == infrastructure.id:
                self._shared_groups.pop(key)

    # ── Key pairs and scripts ───────────────────────────────────────

    def create_key_pair(self, infrastructure: Infrastructure, instance: Instance) -> KeyPairEntry | None:
        return self._credentials.create_key_pair(infrastructure, instance)

    def delete_key_pair(self, infrastructure: Infrastructure, key_pair_name: str, region: str) -> None:
        self._credentials.delete_key_pair(infrastructure, key_pair_name, region)

    def get_run_script_options_with_credentials(self, credentials: InstanceCredentials) -> RunScriptOptions:
        # EC2 forbids root and password logins: scripts run as a user with a private key.
        username = credentials.username
        if not username or not username.strip():
            username = self._credentials.vm_user_login
        logger.info("Credentials used to execute script on instance: [username=%s]", username)
        return RunScriptOptions(login_user=username, private_key=credentials.private_key, run_as_root=False)

    def get_default_run_script_options(self, infrastructure: Infrastructure, instance_id: str | None = None,
                                       instance_tag: str | None = None) -> RunScriptOptions:
        """Login options using the generated key pair of the instance's region, or RunScriptOptions.NONE."""
        service = self._service(infrastructure)
        if instance_id:
            region = self._region_of(service, instance_id, self._node(service, instance_id))
        elif instance_tag:
            tagged = next((n for n in service.list_nodes() if n.group == instance_tag), None)
            if tagged is None:
                raise InvalidRequestError(
                    f"Unable to create script options: cannot retrieve instance id from tag {instance_tag}"
                )
            region = self._region_of(service, tagged.id, tagged)
        else:
            raise InvalidRequestError("An instance id or an instance tag is required")

        entry = self._credentials.default_key_pair(region)
        if entry is None:
            return RunScriptOptions.NONE
        logger.info("Default script options: username=%s", self._credentials.vm_user_login)
        return RunScriptOptions(login_user=self._credentials.vm_user_login, private_key=entry[1])

    # ── Node candidates ─────────────────────────────────────────────

    def get_node_candidates(self, infrastructure: Infrastructure, region: str, os_filter: str,
                            page_token: str | None = None) -> PagedNodeCandidates:
        return self._pricing.query_candidates(infrastructure, region, os_filter, page_token)

    # ── Helpers ─────────────────────────────────────────────────────

    def _service(self, infrastructure: Infrastructure) -> ComputeService:
        return self._compute_services.get_compute_service(infrastructure)

    @staticmethod
    def _node(service: ComputeService, instance_id: str) -> NodeMetadata:
        node = service.get_node_metadata(instance_id)
        if node is None:
            raise InstanceNotFoundError(instance_id)
        return node

    @staticmethod
    def _instance_from_node(node: NodeMetadata) -> Instance:
        region = split_node_id(node.id)[0]
        return Instance(
            id=node.id,
            tag=node.group or node.name,
            image=f"{region}/{node.image_id}" if region and node.image_id else node.image_id,
            number="1",
            hardware=Hardware(
                type=node.hardware.type,
                min_cores=str(node.hardware.cores) if node.hardware.cores is not None else None,
            ),
            status=node.status,
            network=Network(public_addresses=node.public_addresses, private_addresses=node.private_addresses),
        )


def _parse_count(number: str | None) -> int:
    try:
        count = int(number or "1")
    except ValueError as exc:
        raise InvalidRequestError(f"Invalid instance number {number!r}") from exc
    if count < 1:
        raise InvalidRequestError(f"Invalid instance number {number!r}")
    return count


def _parse_floors(hardware: Hardware | None) -> tuple[int, float]:
    """minRam must parse as an integer and minCores as a number; nothing is defaulted."""
    if hardware is None:
        raise InvalidRequestError("The instance needs a hardware type or both minRam and minCores")
    try:
        return int(hardware.min_ram), float(hardware.min_cores)
    except (TypeError, ValueError) as exc:
        raise InvalidRequestError(
            f"Invalid hardware floors minRam={hardware.min_ram!r} minCores={hardware.min_cores!r}"
        ) from exc
