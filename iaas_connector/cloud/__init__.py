"""Compute backend package: backend Protocol, capability Protocols and capability lookup."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, TypeVar, runtime_checkable

from ..exceptions import UnsupportedCapabilityError

if TYPE_CHECKING:
    from .nodes import ElasticAddress, Location, NodeMetadata
    from .template import Template, TemplateBuilder


@runtime_checkable
class ComputeService(Protocol):
    """What the provisioning layer needs from any compute backend connection."""

    def template_builder(self) -> TemplateBuilder:
        ...

    def create_nodes_in_group(self, group: str, count: int, template: Template) -> list[NodeMetadata]:
        ...

    def list_nodes(self) -> list[NodeMetadata]:
        ...

    def get_node_metadata(self, node_id: str) -> NodeMetadata | None:
        ...

    def destroy_node(self, node_id: str) -> None:
        ...

    def destroy_nodes_in_group(self, group: str) -> list[str]:
        ...

    def list_assignable_locations(self) -> set[Location]:
        ...


@runtime_checkable
class KeyPairCapable(Protocol):
    def create_key_pair_in_region(self, region: str, name: str) -> tuple[str, str]:
        """Create a key pair and return (name, private key material)."""
        ...

    def describe_key_pairs_in_region(self, region: str, *names: str) -> list[str]:
        """Return the names among ``names`` that exist in the region."""
        ...

    def delete_key_pair_in_region(self, region: str, name: str) -> None:
        ...


@runtime_checkable
class SecurityGroupCapable(Protocol):
    def describe_subnet_vpc_in_region(self, region: str, subnet_id: str) -> str:
        ...

    def create_security_group_in_region(self, region: str, name: str, description: str,
                                        vpc_id: str | None = None) -> str:
        """Create the group (in the default VPC unless ``vpc_id`` is given) and return its id."""
        ...

    def describe_security_groups_in_region(self, region: str, *names: str,
                                           vpc_id: str | None = None) -> dict[str, str]:
        """Return name -> group id for the names among ``names`` that exist."""
        ...

    def authorize_security_group_ingress_in_region(
        self, region: str, group_id: str, protocol: str, from_port: int, to_port: int, cidr: str,
    ) -> None:
        ...

    def delete_security_group_in_region(self, region: str, name: str) -> None:
        ...


@runtime_checkable
class ElasticIpCapable(Protocol):
    def describe_addresses_in_region(self, region: str) -> list[ElasticAddress]:
        ...

    def associate_address_in_region(self, region: str, public_ip: str, provider_id: str) -> None:
        ...

    def allocate_address_in_region(self, region: str) -> str:
        ...

    def disassociate_address_in_region(self, region: str, public_ip: str) -> None:
        ...


C = TypeVar("C")


def require_capability(service: object, capability: type[C], purpose: str) -> C:
    """Return ``service`` typed as ``capability``, or fail if the backend does not offer it."""
    if not isinstance(service, capability):
        raise UnsupportedCapabilityError(
            f"The {type(service).__name__} backend does not offer {capability.__name__}, "
            f"which is required for {purpose}"
        )
    return service  # type: ignore[return-value]
