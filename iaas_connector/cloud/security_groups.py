"""Security group commands and the registry of groups auto-generated for infrastructures."""

from __future__ import annotations

import logging

from ..concurrent_map import ConcurrentMap
from ..models import Infrastructure
from . import SecurityGroupCapable, require_capability
from .cache import ComputeServiceCache

logger = logging.getLogger(__name__)

CIDR_ALL = "0.0.0.0/0"
ICMP_PORT = -1  # sentinel: open ICMP instead of a TCP/UDP port
DEFAULT_INBOUND_PORT = 22


def auto_generated_security_group_name(infrastructure_id: str) -> str:
    """Name of the security group shared by the instances of an infrastructure."""
    return f"iaas-connector#{infrastructure_id}"


class SecurityGroupManager:
    """Direct security group calls. Nothing is batched or rolled back: a failure leaves the group as it is."""

    def __init__(self, compute_services: ComputeServiceCache):
        self._compute_services = compute_services

    def subnet_vpc(self, infrastructure: Infrastructure, region: str, subnet_id: str) -> str:
        return self._api(infrastructure).describe_subnet_vpc_in_region(region, subnet_id)

    def create_in_region(self, infrastructure: Infrastructure, region: str, name: str, description: str,
                         vpc_id: str | None = None) -> str:
        group_id = self._api(infrastructure).create_security_group_in_region(region, name, description, vpc_id)
        logger.info("Created security group %s (%s)", name, group_id,
                    extra={"infrastructure_id": infrastructure.id, "region": region, "security_group": name})
        return group_id

    def find_in_region(self, infrastructure: Infrastructure, region: str, name: str,
                       vpc_id: str | None = None) -> str | None:
        """Id of the named group, or None when it does not exist."""
        found = self._api(infrastructure).describe_security_groups_in_region(region, name, vpc_id=vpc_id)
        return found.get(name)

    def authorize_ingress(self, infrastructure: Infrastructure, region: str, group_id: str, protocol: str,
                          from_port: int, to_port: int, cidr: str = CIDR_ALL) -> None:
        self._api(infrastructure).authorize_security_group_ingress_in_region(
            region, group_id, protocol, from_port, to_port, cidr,
        )

    def allow_port(self, infrastructure: Infrastructure, region: str, group_id: str, port: int) -> None:
        """Open ICMP for port -1, otherwise TCP and UDP on the single port, to any source."""
        if port == ICMP_PORT:
            self.authorize_ingress(infrastructure, region, group_id, "icmp", port, port)
        else:
            self.authorize_ingress(infrastructure, region, group_id, "tcp", port, port)
            self.authorize_ingress(infrastructure, region, group_id, "udp", port, port)

    def delete_in_region(self, infrastructure: Infrastructure, region: str, name: str) -> None:
        self._api(infrastructure).delete_security_group_in_region(region, name)
        logger.info("Removed the auto-generated security group [%s] for the infrastructure [%s]",
                    name, infrastructure.id)

    def _api(self, infrastructure: Infrastructure) -> SecurityGroupCapable:
        service = self._compute_services.get_compute_service(infrastructure)
        return require_capability(service, SecurityGroupCapable, "security group management")


class AutoGeneratedSecurityGroups:
    """infrastructure id -> names of the security groups created on its behalf."""

    def __init__(self) -> None:
        self._groups: ConcurrentMap[str, frozenset[str]] = ConcurrentMap()

    def record(self, infrastructure_id: str, name: str) -> None:
        self._groups.compute(infrastructure_id, lambda _, current: (current or frozenset()) | {name})

    def discard(self, infrastructure_id: str, name: str) -> None:
        """Forget one deleted group. The entry disappears with its last group."""
        self._groups.compute(infrastructure_id, lambda _, current: ((current or frozenset()) - {name}) or None)

    def groups_for(self, infrastructure_id: str) -> frozenset[str]:
        return self._groups.get(infrastructure_id) or frozenset()

    def remove(self, infrastructure_id: str) -> frozenset[str]:
        return self._groups.pop(infrastructure_id) or frozenset()

    def __contains__(self, infrastructure_id: object) -> bool:
        return infrastructure_id in self._groups
