"""Custom exception hierarchy for the IaaS connector."""

from __future__ import annotations


class ConnectorError(Exception):
    """Base exception for all connector errors."""


class ConfigError(ConnectorError):
    """Invalid or missing configuration."""


class InvalidRequestError(ConnectorError):
    """The caller sent a request that cannot be turned into backend calls."""


class InfrastructureNotFoundError(ConnectorError):
    """No infrastructure is registered under the given id."""

    def __init__(self, infrastructure_id: str):
        super().__init__(f"Infrastructure '{infrastructure_id}' not found")
        self.infrastructure_id = infrastructure_id


class InstanceNotFoundError(ConnectorError):
    """The backend does not know the given instance id."""

    def __init__(self, instance_id: str):
        super().__init__(f"Instance '{instance_id}' not found")
        self.instance_id = instance_id


class ProvisioningError(ConnectorError):
    """The compute, key-pair or security-group backend rejected a call."""


class PublicIpExhaustedError(ProvisioningError):
    """No public IP address could be allocated in the region."""


class PricingParseError(ConnectorError):
    """A numeric field of the pricing catalog could not be parsed."""

    def __init__(self, message: str, raw_value: str | None = None):
        super().__init__(message)
        self.raw_value = raw_value


class UnsupportedCapabilityError(ConnectorError):
    """The backend connection does not offer a required API (key pairs, security groups...)."""
