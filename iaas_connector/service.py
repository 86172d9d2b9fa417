"""Infrastructure registry and instance operations addressed by infrastructure id."""

from __future__ import annotations

import logging
import threading
from functools import partial

from .cloud.aws_provider import AWSEC2Provider
from .cloud.cache import ComputeServiceCache
from .cloud.credentials import CredentialStore
from .cloud.ec2_service import EC2ComputeService
from .cloud.pricing import PricingCatalogClient, default_region_labels
from .cloud.security_groups import SecurityGroupManager
from .config import SUPPORTED_INFRASTRUCTURE_TYPES, AppConfig
from .exceptions import InfrastructureNotFoundError, InvalidRequestError
from .models import Infrastructure, Instance, PagedNodeCandidates
from .tags import TagManager

logger = logging.getLogger(__name__)


def build_provider(config: AppConfig) -> AWSEC2Provider:
    """Wire the EC2 provider and its collaborators from configuration."""
    compute_services = ComputeServiceCache(partial(EC2ComputeService, aws_config=config.aws))
    return AWSEC2Provider(
        aws_config=config.aws,
        compute_services=compute_services,
        credential_store=CredentialStore(compute_services, config.aws.vm_user_login),
        security_groups=SecurityGroupManager(compute_services),
        pricing=PricingCatalogClient(config.aws, default_region_labels()),
        tag_manager=TagManager(config.tags),
    )


class InfrastructureService:
    """In-memory registry of the infrastructures the connector may provision on."""

    def __init__(self, provider: AWSEC2Provider, infrastructures: list[Infrastructure] | None = None):
        self._provider = provider
        self._infrastructures: dict[str, Infrastructure] = {}
        self._lock = threading.Lock()
        for infrastructure in infrastructures or []:
            self.register(infrastructure)

    def register(self, infrastructure: Infrastructure) -> Infrastructure:
        if infrastructure.type not in SUPPORTED_INFRASTRUCTURE_TYPES:
            raise InvalidRequestError(f"Unsupported infrastructure type {infrastructure.type!r}")
        with self._lock:
            self._infrastructures[infrastructure.id] = infrastructure
        logger.info("Registered infrastructure", extra={"infrastructure_id": infrastructure.id})
        return infrastructure

    def get_infrastructure(self, infrastructure_id: str) -> Infrastructure:
        with self._lock:
            infrastructure = self._infrastructures.get(infrastructure_id)
        if infrastructure is None:
            raise InfrastructureNotFoundError(infrastructure_id)
        return infrastructure

    def get_all_infrastructures(self) -> list[Infrastructure]:
        with self._lock:
            return list(self._infrastructures.values())

    def delete_infrastructure(self, infrastructure_id: str, delete_instances: bool = False) -> None:
        infrastructure = self.get_infrastructure(infrastructure_id)
        if delete_instances:
            for instance in self._provider.get_all_infrastructure_instances(infrastructure):
                self._provider.delete_instance(infrastructure, instance.id)
        self._provider.delete_infrastructure(infrastructure)
        with self._lock:
            self._infrastructures.pop(infrastructure_id, None)
        logger.info("Deleted infrastructure", extra={"infrastructure_id": infrastructure_id})


class InstanceService:
    def __init__(self, infrastructures: InfrastructureService, provider: AWSEC2Provider):
        self._infrastructures = infrastructures
        self._provider = provider

    def create_instance(self, infrastructure_id: str, instance: Instance) -> list[Instance]:
        infrastructure = self._infrastructures.get_infrastructure(infrastructure_id)
        return self._provider.create_instance(infrastructure, instance)

    def get_instance_by_id(self, infrastructure_id: str, instance_id: str) -> Instance:
        infrastructure = self._infrastructures.get_infrastructure(infrastructure_id)
        return self._provider.get_instance_by_id(infrastructure, instance_id)

    def get_instances_by_tag(self, infrastructure_id: str, instance_tag: str) -> list[Instance]:
        infrastructure = self._infrastructures.get_infrastructure(infrastructure_id)
        return self._provider.get_instances_by_tag(infrastructure, instance_tag)

    def get_all_instances(self, infrastructure_id: str) -> list[Instance]:
        infrastructure = self._infrastructures.get_infrastructure(infrastructure_id)
        return self._provider.get_all_infrastructure_instances(infrastructure)

    def delete_instance(self, infrastructure_id: str, instance_id: str) -> None:
        infrastructure = self._infrastructures.get_infrastructure(infrastructure_id)
        self._provider.delete_instance(infrastructure, instance_id)

    def delete_instances_by_tag(self, infrastructure_id: str, instance_tag: str) -> list[str]:
        infrastructure = self._infrastructures.get_infrastructure(infrastructure_id)
        return self._provider.delete_instances_by_tag(infrastructure, instance_tag)

    def add_to_instance_public_ip(self, infrastructure_id: str, instance_id: str,
                                  desired_ip: str | None = None) -> str:
        infrastructure = self._infrastructures.get_infrastructure(infrastructure_id)
        return self._provider.add_to_instance_public_ip(infrastructure, instance_id, desired_ip)

    def add_instance_public_ip_by_tag(self, infrastructure_id: str, instance_tag: str) -> list[str]:
        infrastructure = self._infrastructures.get_infrastructure(infrastructure_id)
        return [
            self._provider.add_to_instance_public_ip(infrastructure, instance.id)
            for instance in self._provider.get_instances_by_tag(infrastructure, instance_tag)
        ]

    def remove_instance_public_ip(self, infrastructure_id: str, instance_id: str,
                                  desired_ip: str | None = None) -> None:
        infrastructure = self._infrastructures.get_infrastructure(infrastructure_id)
        self._provider.remove_instance_public_ip(infrastructure, instance_id, desired_ip)

    def remove_instance_public_ip_by_tag(self, infrastructure_id: str, instance_tag: str) -> None:
        infrastructure = self._infrastructures.get_infrastructure(infrastructure_id)
        for instance in self._provider.get_instances_by_tag(infrastructure, instance_tag):
            self._provider.remove_instance_public_ip(infrastructure, instance.id)

    def get_node_candidates(self, infrastructure_id: str, region: str, os_filter: str,
                            page_token: str | None = None) -> PagedNodeCandidates:
        infrastructure = self._infrastructures.get_infrastructure(infrastructure_id)
        return self._provider.get_node_candidates(infrastructure, region, os_filter, page_token)
