"""Per-region default key pairs, cached in memory and checked against EC2 before use."""

from __future__ import annotations

import logging
import uuid

from ..concurrent_map import ConcurrentMap
from ..exceptions import ProvisioningError
from ..models import Infrastructure, Instance, InstanceCredentials
from . import KeyPairCapable, require_capability
from .cache import ComputeServiceCache
from .nodes import region_from_image

logger = logging.getLogger(__name__)

# (key pair name, private key material)
KeyPairEntry = tuple[str, str]


class CredentialStore:
    """Holds one generated key pair per region for instances launched without explicit credentials.

    The in-memory entry is only advisory: EC2 is asked whether the key pair
    still exists before the entry is used, and a missing key pair is
    replaced. Checking and replacing happen under the region's lock so
    concurrent launches in one region create at most one key pair.
    """

    def __init__(self, compute_services: ComputeServiceCache, vm_user_login: str):
        self._compute_services = compute_services
        self._vm_user_login = vm_user_login
        self._key_pairs: ConcurrentMap[str, KeyPairEntry] = ConcurrentMap()

    @property
    def vm_user_login(self) -> str:
        return self._vm_user_login

    def ensure_credentials(self, infrastructure: Infrastructure, instance: Instance) -> InstanceCredentials | None:
        """Return default credentials for the instance's region, or None if no key pair could be created."""
        region = region_from_image(instance.image)

        def _validate_or_create(region: str, current: KeyPairEntry | None) -> KeyPairEntry | None:
            if current is None:
                return self.create_key_pair(infrastructure, instance)

            name = current[0]
            if name in self._key_pair_api(infrastructure).describe_key_pairs_in_region(region, name):
                return current

            logger.warning("Key pair %s is gone from EC2, replacing it", name,
                           extra={"region": region, "key_pair": name})
            return self.create_key_pair(infrastructure, instance)

        entry = self._key_pairs.compute(region, _validate_or_create)
        if entry is None:
            return None
        # The private key stays here for script execution; it is not part of the launch credentials.
        return InstanceCredentials(username=self._vm_user_login, public_key_name=entry[0])

    def create_key_pair(self, infrastructure: Infrastructure, instance: Instance) -> KeyPairEntry | None:
        """Create a 'default-<region>-<uuid>' key pair. Returns None if EC2 rejects the creation."""
        api = self._key_pair_api(infrastructure)
        region = region_from_image(instance.image)
        name = f"default-{region}-{uuid.uuid4()}"
        try:
            entry = api.create_key_pair_in_region(region, name)
        except ProvisioningError:
            logger.warning("Cannot create key pair in region %s", region, exc_info=True,
                           extra={"region": region})
            return None
        logger.info("Created key pair '%s' in region '%s'", name, region,
                    extra={"region": region, "key_pair": name})
        return entry

    def delete_key_pair(self, infrastructure: Infrastructure, key_pair_name: str, region: str) -> None:
        self._key_pair_api(infrastructure).delete_key_pair_in_region(region, key_pair_name)
        self._key_pairs.compute(
            region, lambda _, current: None if current and current[0] == key_pair_name else current,
        )
        logger.info("Removed the key pair [%s] in the region [%s]", key_pair_name, region)

    def default_key_pair(self, region: str) -> KeyPairEntry | None:
        return self._key_pairs.get(region)

    def _key_pair_api(self, infrastructure: Infrastructure) -> KeyPairCapable:
        service = self._compute_services.get_compute_service(infrastructure)
        return require_capability(service, KeyPairCapable, "key pair creation")
