"""Provisioning backend contract.

The engine talks to concrete cloud APIs only through this protocol. Calls
are fallible (raise BackendError) and idempotent-retryable by physical id.
Account, region and credentials are passed to a backend's constructor,
never read from process-wide state.
"""

from typing import Any, Optional, Protocol, runtime_checkable

# Attributes a backend cannot change in place; changing one forces Replace.
DEFAULT_IMMUTABLE_ATTRIBUTES: dict[str, frozenset[str]] = {
    'Network': frozenset({'cidr'}),
    'Subnet': frozenset({'network', 'cidr', 'availability_zone'}),
    'SecurityGroup': frozenset({'network'}),
    'IdentityRole': frozenset({'assumed_by'}),
    'ComputeInstance': frozenset({'subnet', 'image', 'key_name'}),
    'ComputeFleet': frozenset(),
    'LoadBalancer': frozenset({'scheme'}),
    'Listener': frozenset({'load_balancer'}),
    'ObjectStore': frozenset({'bucket_name', 'encryption'}),
}


@runtime_checkable
class ProvisioningBackend(Protocol):
    """Protocol for provisioning backends."""

    def create(self, resource_type: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Create a resource. Returns (physical_id, outputs)."""

    def update(self, physical_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        """Update a resource in place. Returns outputs."""

    def delete(self, physical_id: str) -> None:
        """Delete a resource. Deleting a missing resource succeeds."""

    def immutable_attributes(self, resource_type: str) -> frozenset[str]:
        """Attribute names that force replacement when changed."""

    def is_ready(self, physical_id: str) -> bool:
        """True once an asynchronously provisioned resource is usable."""

    def read(self, physical_id: str) -> Optional[dict[str, Any]]:
        """Live attributes of a resource, or None if it no longer exists."""
