"""Data models for infrastructures, instances and node candidates.

Responses use the camelCase keys of the REST contract through ``to_dict``;
request bodies are parsed by ``schemas``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    """Drop keys whose value is None."""
    return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class InfrastructureCredentials:
    username: str = ""  # AWS access key id
    password: str = field(default="", repr=False)  # AWS secret access key


@dataclass(frozen=True)
class Infrastructure:
    """A logical cloud account/endpoint. Value-equal infrastructures share one backend connection."""

    id: str
    type: str = "aws-ec2"
    endpoint: str = ""
    credentials: InfrastructureCredentials = field(default_factory=InfrastructureCredentials)
    region: str = ""

    def to_dict(self) -> dict[str, Any]:
        # The secret never leaves the service.
        return {
            "id": self.id,
            "type": self.type,
            "endpoint": self.endpoint,
            "region": self.region,
            "credentials": {"username": self.credentials.username},
        }


@dataclass(frozen=True)
class Hardware:
    min_ram: str | None = None
    min_cores: str | None = None
    min_freq: str | None = None
    type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "minRam": self.min_ram,
            "minCores": self.min_cores,
            "minFreq": self.min_freq,
            "type": self.type,
        })


@dataclass(frozen=True)
class Tag:
    key: str
    value: str


@dataclass
class Options:
    spot_price: str | None = None
    security_group_names: list[str] = field(default_factory=list)
    subnet_id: str | None = None
    ports_to_open: list[int] | None = None  # None = no explicit port list
    tags: list[Tag] = field(default_factory=list)


@dataclass
class InstanceCredentials:
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    public_key_name: str | None = None
    public_key: str | None = None
    private_key: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class Network:
    public_addresses: tuple[str, ...] = ()
    private_addresses: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "publicAddresses": list(self.public_addresses),
            "privateAddresses": list(self.private_addresses),
        }


@dataclass
class Instance:
    """An instance request (tag, image, number, hardware...) or a created/listed instance (id, status...)."""

    tag: str | None = None
    image: str | None = None  # "<region>/<ami-id>"
    number: str = "1"
    hardware: Hardware | None = None
    options: Options | None = None
    credentials: InstanceCredentials | None = None
    id: str | None = None
    status: str | None = None
    network: Network | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "id": self.id,
            "tag": self.tag,
            "image": self.image,
            "number": self.number,
            "hardware": self.hardware.to_dict() if self.hardware else None,
            "status": self.status,
            "network": self.network.to_dict() if self.network else None,
        })


@dataclass(frozen=True)
class OperatingSystem:
    family: str


@dataclass(frozen=True)
class Image:
    id: str | None = None
    name: str | None = None
    location: str | None = None
    operating_system: OperatingSystem | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact({
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "operatingSystem": {"family": self.operating_system.family} if self.operating_system else None,
        })


@dataclass(frozen=True)
class NodeCandidate:
    """One purchasable instance offering of a region, normalized from a pricing catalog entry."""

    cloud: str
    region: str
    hardware: Hardware
    price: float
    image: Image

    def to_dict(self) -> dict[str, Any]:
        return {
            "cloud": self.cloud,
            "region": self.region,
            "hw": self.hardware.to_dict(),
            "price": self.price,
            "img": self.image.to_dict(),
        }


@dataclass
class PagedNodeCandidates:
    """One page of a catalog scan. An empty next_token means there is nothing more to read."""

    next_token: str = ""
    node_candidates: set[NodeCandidate] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nextToken": self.next_token,
            "nodeCandidates": [c.to_dict() for c in self.node_candidates],
        }


@dataclass(frozen=True)
class RunScriptOptions:
    """Login settings used to run scripts on an instance over SSH."""

    NONE: ClassVar[RunScriptOptions]

    login_user: str | None = None
    private_key: str | None = field(default=None, repr=False)
    run_as_root: bool = False


RunScriptOptions.NONE = RunScriptOptions()
