"""Memoizes one live compute backend connection per infrastructure."""

from __future__ import annotations

import logging
from typing import Callable

from ..concurrent_map import ConcurrentMap
from ..models import Infrastructure
from . import ComputeService

logger = logging.getLogger(__name__)

ComputeServiceBuilder = Callable[[Infrastructure], ComputeService]


class ComputeServiceCache:
    """Builds a backend connection at most once per distinct infrastructure value."""

    def __init__(self, builder: ComputeServiceBuilder):
        self._builder = builder
        self._services: ConcurrentMap[Infrastructure, ComputeService] = ConcurrentMap()

    def get_compute_service(self, infrastructure: Infrastructure) -> ComputeService:
        return self._services.compute_if_absent(infrastructure, self._build)

    def remove_compute_service(self, infrastructure: Infrastructure) -> None:
        if self._services.pop(infrastructure) is not None:
            logger.info("Dropped compute service", extra={"infrastructure_id": infrastructure.id})

    def _build(self, infrastructure: Infrastructure) -> ComputeService:
        logger.info("Connecting to %s backend", infrastructure.type,
                    extra={"infrastructure_id": infrastructure.id})
        return self._builder(infrastructure)
