"""Pre-flight validation checks for plan/apply runs.

Readiness checks run before apply and destroy, catching configuration
issues early with actionable error messages.
"""

import logging
import os
from pathlib import Path
from typing import Optional

import requests

from config import EngineConfig

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# State Directory Validation
# -----------------------------------------------------------------------------

def validate_state_dir(state_dir: Path) -> list[str]:
    """Check the state directory exists (or can be created) and is writable.

    Args:
        state_dir: Directory holding per-stack state

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    # Walk up to the nearest existing ancestor
    existing = state_dir
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent

    if not existing.is_dir():
        errors.append(
            f"State path {existing} is not a directory\n"
            f"  Set state_dir in stackdriver.yaml or $STACKDRIVER_STATE_DIR"
        )
    elif not os.access(existing, os.W_OK | os.X_OK):
        errors.append(
            f"State directory {existing} is not writable\n"
            f"  Check permissions or point $STACKDRIVER_STATE_DIR elsewhere"
        )
    else:
        logger.debug(f"State directory usable: {state_dir}")

    return errors


# -----------------------------------------------------------------------------
# Backend Validation
# -----------------------------------------------------------------------------

def validate_backend_endpoint(
    endpoint: str,
    token: str = '',
    verify_tls: bool = True,
    timeout: float = 10.0,
) -> list[str]:
    """Check the provisioning service answers its health endpoint.

    Args:
        endpoint: Service base URL (e.g., https://provisioner:8443)
        token: Bearer token, sent when present
        verify_tls: Verify the service certificate
        timeout: Request timeout in seconds

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if not endpoint:
        errors.append(
            "Backend endpoint not configured\n"
            "  Add 'backend.endpoint' to stackdriver.yaml"
        )
        return errors

    headers = {'Authorization': f"Bearer {token}"} if token else {}
    try:
        resp = requests.get(
            f"{endpoint.rstrip('/')}/health",
            headers=headers,
            verify=verify_tls,
            timeout=timeout,
        )

        if resp.status_code in (401, 403):
            errors.append(
                f"Backend rejected credentials ({resp.status_code})\n"
                f"  Check 'backend.token' in stackdriver.yaml"
            )
        elif resp.status_code != 200:
            errors.append(
                f"Unexpected health response from {endpoint}: {resp.status_code}\n"
                f"  Response: {resp.text[:100]}"
            )
        else:
            logger.info(f"Backend reachable at {endpoint}")

    except requests.exceptions.SSLError:
        errors.append(
            f"TLS verification failed for {endpoint}\n"
            f"  Set 'backend.verify_tls: false' for self-signed certificates"
        )
    except requests.exceptions.ConnectionError:
        errors.append(
            f"Cannot connect to {endpoint}\n"
            f"  Check: service is running, host resolves, firewall allows access"
        )
    except requests.exceptions.Timeout:
        errors.append(f"Timeout connecting to {endpoint}")

    return errors


def validate_backend_settings(config: EngineConfig) -> list[str]:
    """Check account and region are set for remote backends."""
    errors = []
    backend = config.backend
    if backend.type != 'http':
        return errors
    if not backend.account:
        errors.append(
            "Deploying account not configured\n"
            "  Add 'backend.account' to stackdriver.yaml"
        )
    if not backend.region:
        errors.append(
            "Target region not configured\n"
            "  Add 'backend.region' to stackdriver.yaml"
        )
    return errors


# -----------------------------------------------------------------------------
# Combined Readiness Validation
# -----------------------------------------------------------------------------

def validate_readiness(config: EngineConfig, timeout: float = 10.0) -> list[str]:
    """Run all pre-flight checks for an apply.

    Args:
        config: Engine configuration
        timeout: Timeout for network checks

    Returns:
        List of validation error messages (empty if all checks pass)
    """
    errors = []

    errors.extend(validate_state_dir(config.state_dir))
    errors.extend(validate_backend_settings(config))

    if config.backend.type == 'http':
        errors.extend(validate_backend_endpoint(
            endpoint=config.backend.endpoint,
            token=config.backend.token,
            verify_tls=config.backend.verify_tls,
            timeout=timeout,
        ))

    return errors


def run_preflight_checks(config: EngineConfig,
                         timeout: float = 10.0) -> tuple[bool, dict]:
    """Run standalone preflight checks.

    Returns:
        (success, results) tuple where results maps a category to
        {'passed': [...], 'failed': [...]}
    """
    results: dict[str, dict[str, list[str]]] = {
        'config': {'passed': [], 'failed': []},
        'state': {'passed': [], 'failed': []},
        'backend': {'passed': [], 'failed': []},
    }

    source = str(config.source_path) if config.source_path else 'built-in defaults'
    results['config']['passed'].append(f"Loaded from {source}")
    results['config']['passed'].append(f"Max concurrency: {config.max_concurrency}")

    state_errors = validate_state_dir(config.state_dir)
    if state_errors:
        results['state']['failed'].extend(state_errors)
    else:
        results['state']['passed'].append(f"{config.state_dir} writable")

    setting_errors = validate_backend_settings(config)
    results['backend']['failed'].extend(setting_errors)
    if config.backend.type == 'http':
        endpoint_errors = validate_backend_endpoint(
            config.backend.endpoint, config.backend.token,
            config.backend.verify_tls, timeout,
        )
        if endpoint_errors:
            results['backend']['failed'].extend(endpoint_errors)
        else:
            results['backend']['passed'].append(f"{config.backend.endpoint} healthy")
    else:
        results['backend']['passed'].append("In-memory backend (no external service)")

    success = all(not category['failed'] for category in results.values())
    return success, results


def format_preflight_results(results: dict, title: Optional[str] = None) -> str:
    """Format preflight check results for display."""
    lines = [f"\n{title or 'Preflight checks'}:\n"]

    category_names = {
        'config': 'Configuration',
        'state': 'State store',
        'backend': 'Provisioning backend',
    }

    for key, name in category_names.items():
        category = results.get(key, {'passed': [], 'failed': []})
        if category['passed'] or category['failed']:
            lines.append(f"{name}:")
            for item in category['passed']:
                lines.append(f"✓ {item}")
            for item in category['failed']:
                first_line, *rest = item.split('\n')
                lines.append(f"✗ {first_line}")
                for line in rest:
                    lines.append(f"  {line}")
            lines.append("")

    if all(not cat['failed'] for cat in results.values()):
        lines.append("All checks passed. Ready to apply.")
    else:
        lines.append("Some checks failed. Fix issues before applying.")

    return '\n'.join(lines)
