"""Backend-level descriptors of nodes, locations and elastic addresses."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..exceptions import InvalidRequestError

INSTANCE_ID_REGION_SEPARATOR = "/"

GROUP_TAG_KEY = "iaas-connector:group"
INFRASTRUCTURE_TAG_KEY = "iaas-connector:infrastructure"

# EC2 instance state name -> node status
_STATUS_BY_STATE = {
    "pending": "PENDING",
    "running": "RUNNING",
    "stopping": "SUSPENDED",
    "stopped": "SUSPENDED",
    "shutting-down": "TERMINATED",
    "terminated": "TERMINATED",
}


def node_status(state_name: str | None) -> str:
    return _STATUS_BY_STATE.get(state_name or "", "UNRECOGNIZED")


def split_node_id(node_id: str) -> tuple[str | None, str]:
    """Split '<region>/<providerId>' into (region, providerId). Region is None without a prefix."""
    if INSTANCE_ID_REGION_SEPARATOR in node_id:
        region, provider_id = node_id.split(INSTANCE_ID_REGION_SEPARATOR, 1)
        return region, provider_id
    return None, node_id


def join_node_id(region: str, provider_id: str) -> str:
    return f"{region}{INSTANCE_ID_REGION_SEPARATOR}{provider_id}"


@dataclass(frozen=True)
class Location:
    """A region or availability zone. Zones point at their region through ``parent``."""

    id: str
    scope: str = "REGION"  # "REGION" or "ZONE"
    parent: Location | None = None


@dataclass(frozen=True)
class NodeHardware:
    type: str
    cores: float | None = None


@dataclass(frozen=True)
class NodeMetadata:
    id: str  # "<region>/<instance-id>"
    provider_id: str
    name: str
    group: str | None
    status: str
    hardware: NodeHardware
    location: Location
    image_id: str | None = None
    public_addresses: tuple[str, ...] = ()
    private_addresses: tuple[str, ...] = ()
    tags: dict[str, str] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class ElasticAddress:
    public_ip: str
    instance_id: str | None = None
    allocation_id: str | None = None
    association_id: str | None = None


def region_from_image(image: str | None) -> str:
    """Images are referenced as '<region>/<ami-id>'; the region is the part before the separator."""
    if not image:
        raise InvalidRequestError("The instance has no image")
    return image.split(INSTANCE_ID_REGION_SEPARATOR)[0]
