"""Engine configuration management.

Configuration is loaded from a YAML file:
- stackdriver.yaml: engine settings and the backend section

Resolution order for the config file:
1. $STACKDRIVER_CONFIG environment variable
2. ./stackdriver.yaml in the working directory
3. Built-in defaults

$STACKDRIVER_STATE_DIR overrides state_dir from any source.
Deploying account, region and credentials live in the backend section and
are handed to the backend constructor explicitly.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

CONFIG_FILE_NAME = 'stackdriver.yaml'
BACKEND_TYPES = ('memory', 'http')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class BackendConfig:
    """Provisioning backend settings.

    Attributes:
        type: 'memory' or 'http'
        endpoint: Base URL of the provisioning service (http only)
        account: Deploying account identifier
        region: Target region
        token: Bearer token for the provisioning service
        verify_tls: Verify the service certificate
        timeout: Per-request timeout in seconds
    """
    type: str = 'memory'
    endpoint: str = ''
    account: str = ''
    region: str = ''
    token: str = field(default='', repr=False)
    verify_tls: bool = True
    timeout: float = 30.0

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'BackendConfig':
        if not data:
            return cls()
        backend = cls(
            type=data.get('type', 'memory'),
            endpoint=str(data.get('endpoint', '')).rstrip('/'),
            account=str(data.get('account', '')),
            region=str(data.get('region', '')),
            token=str(data.get('token', '')),
            verify_tls=bool(data.get('verify_tls', True)),
            timeout=_number(data, 'timeout', 30.0),
        )
        if backend.type not in BACKEND_TYPES:
            raise ConfigError(
                f"Unknown backend type '{backend.type}'. Supported: {', '.join(BACKEND_TYPES)}"
            )
        if backend.type == 'http' and not backend.endpoint:
            raise ConfigError("Backend type 'http' requires 'endpoint'")
        return backend


@dataclass
class EngineConfig:
    """Configuration for plan/apply runs.

    Attributes:
        state_dir: Directory holding per-stack state
        max_concurrency: Max operations in flight at once
        poll_interval: Seconds between readiness polls
        ready_timeout: Seconds to wait for a resource to become ready
        max_retries: Retries for retryable update/delete failures
        retry_interval: Seconds between retries
        lock_timeout: Seconds after which a state lock is considered abandoned
        backend: Backend settings
        source_path: File the config was loaded from (None = defaults)
    """
    state_dir: Path = field(default_factory=lambda: Path('.stackdriver') / 'state')
    max_concurrency: int = 4
    poll_interval: float = 5.0
    ready_timeout: float = 600.0
    max_retries: int = 2
    retry_interval: float = 5.0
    lock_timeout: float = 3600.0
    backend: BackendConfig = field(default_factory=BackendConfig)
    source_path: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        if self.max_concurrency < 1:
            raise ConfigError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        for name in ('poll_interval', 'ready_timeout', 'retry_interval', 'lock_timeout'):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0, got {getattr(self, name)}")

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'EngineConfig':
        """Create EngineConfig from dictionary.

        Relative state_dir values are resolved against the config file's
        directory.

        Raises:
            ConfigError: If a value is invalid
        """
        state_dir = Path(data.get('state_dir', '.stackdriver/state'))
        if not state_dir.is_absolute() and source_path is not None:
            state_dir = source_path.parent / state_dir

        return cls(
            state_dir=state_dir,
            max_concurrency=int(_number(data, 'max_concurrency', 4)),
            poll_interval=_number(data, 'poll_interval', 5.0),
            ready_timeout=_number(data, 'ready_timeout', 600.0),
            max_retries=int(_number(data, 'max_retries', 2)),
            retry_interval=_number(data, 'retry_interval', 5.0),
            lock_timeout=_number(data, 'lock_timeout', 3600.0),
            backend=BackendConfig.from_dict(data.get('backend')),
            source_path=source_path,
        )


def _number(data: dict, key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{key}' must be a number, got {value!r}")
    return value


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a YAML object (dict)")
    return data


def find_config_file() -> Optional[Path]:
    """Discover the config file.

    Resolution order:
    1. $STACKDRIVER_CONFIG environment variable
    2. ./stackdriver.yaml

    Raises:
        ConfigError: If $STACKDRIVER_CONFIG points at a missing file
    """
    if env_path := os.environ.get('STACKDRIVER_CONFIG'):
        path = Path(env_path)
        if path.is_file():
            return path
        raise ConfigError(f"STACKDRIVER_CONFIG={env_path} does not exist")

    local = Path.cwd() / CONFIG_FILE_NAME
    if local.is_file():
        return local
    return None


def load_config(path: Optional[str] = None) -> EngineConfig:
    """Load engine configuration.

    Args:
        path: Explicit config file; discovered when None

    Returns:
        EngineConfig (defaults when no file is found)

    Raises:
        ConfigError: If the file is missing or invalid
    """
    if path is not None:
        config_path: Optional[Path] = Path(path)
        if not config_path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")
    else:
        config_path = find_config_file()

    if config_path is None:
        config = EngineConfig()
    else:
        config = EngineConfig.from_dict(_parse_yaml(config_path), source_path=config_path)

    if state_dir := os.environ.get('STACKDRIVER_STATE_DIR'):
        config.state_dir = Path(state_dir)
    return config


def describe(config: EngineConfig) -> dict[str, Any]:
    """Config summary safe to print (token redacted)."""
    return {
        'source': str(config.source_path) if config.source_path else 'defaults',
        'state_dir': str(config.state_dir),
        'max_concurrency': config.max_concurrency,
        'backend': {
            'type': config.backend.type,
            'endpoint': config.backend.endpoint,
            'account': config.backend.account,
            'region': config.backend.region,
            'token': '***' if config.backend.token else '',
        },
    }
