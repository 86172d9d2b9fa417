"""
Pydantic schemas for request bodies.

Bodies use the camelCase keys of the REST contract. Each schema validates the
shape of a body and converts it to the matching domain dataclass.
"""

from __future__ import annotations

from typing import Any, Optional, List, Union

from pydantic import BaseModel, ConfigDict, Field

from .models import (
    Hardware,
    Infrastructure,
    InfrastructureCredentials,
    Instance,
    InstanceCredentials,
    Options,
    Tag,
)

# Numbers are accepted where the contract expects strings.
Numeric = Union[int, float, str]


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ============== Infrastructure Schemas ==============

class InfrastructureCredentialsIn(_Body):
    username: str = ""
    password: str = ""


class InfrastructureCreate(_Body):
    """Registration body for an infrastructure."""
    id: str = Field(..., min_length=1)
    type: str = "aws-ec2"
    endpoint: Optional[str] = None
    credentials: Optional[InfrastructureCredentialsIn] = None
    region: Optional[str] = None

    def to_domain(self) -> Infrastructure:
        credentials = self.credentials or InfrastructureCredentialsIn()
        return Infrastructure(
            id=self.id,
            type=self.type,
            endpoint=self.endpoint or "",
            credentials=InfrastructureCredentials(username=credentials.username, password=credentials.password),
            region=self.region or "",
        )


# ============== Instance Schemas ==============

class HardwareIn(_Body):
    min_ram: Optional[Numeric] = Field(None, alias="minRam")
    min_cores: Optional[Numeric] = Field(None, alias="minCores")
    min_freq: Optional[Numeric] = Field(None, alias="minFreq")
    type: Optional[str] = None

    def to_domain(self) -> Hardware:
        return Hardware(
            min_ram=_as_str(self.min_ram),
            min_cores=_as_str(self.min_cores),
            min_freq=_as_str(self.min_freq),
            type=self.type,
        )


class TagIn(_Body):
    key: str
    value: str


class OptionsIn(_Body):
    spot_price: Optional[Numeric] = Field(None, alias="spotPrice")
    security_group_names: List[str] = Field(default_factory=list, alias="securityGroupNames")
    subnet_id: Optional[str] = Field(None, alias="subnetId")
    # None means no explicit port list; [] is an explicit empty one
    ports_to_open: Optional[List[int]] = Field(None, alias="portsToOpen")
    tags: List[TagIn] = []

    def to_domain(self) -> Options:
        return Options(
            spot_price=_as_str(self.spot_price),
            security_group_names=list(self.security_group_names),
            subnet_id=self.subnet_id,
            ports_to_open=list(self.ports_to_open) if self.ports_to_open is not None else None,
            tags=[Tag(t.key, t.value) for t in self.tags],
        )


class InstanceCredentialsIn(_Body):
    username: Optional[str] = None
    password: Optional[str] = None
    public_key_name: Optional[str] = Field(None, alias="publicKeyName")
    public_key: Optional[str] = Field(None, alias="publicKey")
    private_key: Optional[str] = Field(None, alias="privateKey")

    def to_domain(self) -> InstanceCredentials:
        return InstanceCredentials(
            username=self.username,
            password=self.password,
            public_key_name=self.public_key_name,
            public_key=self.public_key,
            private_key=self.private_key,
        )


class InstanceCreate(_Body):
    """Creation body for a group of instances."""
    tag: Optional[str] = None
    image: Optional[str] = None
    number: Numeric = "1"
    hardware: Optional[HardwareIn] = None
    options: Optional[OptionsIn] = None
    credentials: Optional[InstanceCredentialsIn] = None

    def to_domain(self) -> Instance:
        return Instance(
            tag=self.tag,
            image=self.image,
            number=_as_str(self.number) or "1",
            hardware=self.hardware.to_domain() if self.hardware else None,
            options=self.options.to_domain() if self.options else None,
            credentials=self.credentials.to_domain() if self.credentials else None,
        )
