"""Provisioning backends.

Backends implement the ProvisioningBackend protocol from backends.base.
"""

from backends.base import DEFAULT_IMMUTABLE_ATTRIBUTES, ProvisioningBackend
from backends.http import HttpBackend
from backends.memory import MemoryBackend
from config import BackendConfig, ConfigError


def create_backend(config: BackendConfig) -> ProvisioningBackend:
    """Instantiate the backend described by config.

    Raises:
        ConfigError: If the backend type is unknown
    """
    if config.type == 'memory':
        kwargs = {}
        if config.account:
            kwargs['account'] = config.account
        if config.region:
            kwargs['region'] = config.region
        return MemoryBackend(**kwargs)
    if config.type == 'http':
        return HttpBackend(
            endpoint=config.endpoint,
            account=config.account,
            region=config.region,
            token=config.token,
            verify_tls=config.verify_tls,
            timeout=config.timeout,
        )
    raise ConfigError(f"Unknown backend type '{config.type}'")


__all__ = [
    'DEFAULT_IMMUTABLE_ATTRIBUTES',
    'HttpBackend',
    'MemoryBackend',
    'ProvisioningBackend',
    'create_backend',
]
