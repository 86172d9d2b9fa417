"""Launch templates: where, from which image, on which hardware, and with which options."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from ..exceptions import InvalidRequestError

# (region, min_ram_mb, min_cores) -> instance type
HardwareResolver = Callable[[str, int, float], str]


@dataclass
class TemplateOptions:
    """Provider options of a launch. Mutated in place while options, tags and credentials are applied."""

    spot_price: float | None = None
    spot_valid_until: datetime | None = None
    security_groups: list[str] = field(default_factory=list)
    subnet_id: str | None = None
    user_metadata: dict[str, str] = field(default_factory=dict)
    login_user: str | None = None
    key_pair: str | None = None


@dataclass
class Template:
    location_id: str
    image_id: str
    hardware_id: str
    options: TemplateOptions = field(default_factory=TemplateOptions)


class TemplateBuilder:
    """Fluent builder for a Template.

    A named hardware id always wins; the RAM/core floors are only used (and
    the resolver only called) when no hardware id was given.
    """

    def __init__(self, resolve_hardware: HardwareResolver):
        self._resolve_hardware = resolve_hardware
        self._location_id: str | None = None
        self._image_id: str | None = None
        self._hardware_id: str | None = None
        self._min_ram: int | None = None
        self._min_cores: float | None = None

    def location_id(self, location_id: str) -> TemplateBuilder:
        self._location_id = location_id
        return self

    def image_id(self, image_id: str) -> TemplateBuilder:
        self._image_id = image_id
        return self

    def hardware_id(self, hardware_id: str) -> TemplateBuilder:
        self._hardware_id = hardware_id
        return self

    def min_ram(self, min_ram: int) -> TemplateBuilder:
        self._min_ram = min_ram
        return self

    def min_cores(self, min_cores: float) -> TemplateBuilder:
        self._min_cores = min_cores
        return self

    def build(self) -> Template:
        if not self._location_id:
            raise InvalidRequestError("A template needs a location")
        if not self._image_id:
            raise InvalidRequestError("A template needs an image")

        if self._hardware_id:
            hardware_id = self._hardware_id
        elif self._min_ram is not None and self._min_cores is not None:
            hardware_id = self._resolve_hardware(self._location_id, self._min_ram, self._min_cores)
        else:
            raise InvalidRequestError("A template needs a hardware type or both minRam and minCores")

        return Template(location_id=self._location_id, image_id=self._image_id, hardware_id=hardware_id)
