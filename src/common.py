"""Common utilities and types for the stack engine."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

# Per-operation outcomes
SUCCEEDED = 'succeeded'
FAILED = 'failed'
SKIPPED = 'skipped'
NOT_ATTEMPTED = 'not_attempted'


@dataclass
class OperationResult:
    """Outcome of one plan operation."""
    node_id: str
    action: str
    status: str = NOT_ATTEMPTED
    message: str = ''
    duration: float = 0.0
    physical_id: Optional[str] = None
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == SUCCEEDED

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'node_id': self.node_id,
            'action': self.action,
            'status': self.status,
        }
        if self.message:
            d['message'] = self.message
        if self.duration:
            d['duration'] = round(self.duration, 2)
        if self.physical_id is not None:
            d['physical_id'] = self.physical_id
        return d


def wait_until(
    predicate: Callable[[], bool],
    timeout: float = 300.0,
    interval: float = 5.0,
    description: str = 'condition',
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll predicate until it returns True or timeout expires.

    Returns:
        True if predicate became true, False on timeout
    """
    logger.debug(f"Waiting for {description}...")
    start = time.monotonic()
    while True:
        if predicate():
            logger.debug(f"{description} ready after {time.monotonic() - start:.1f}s")
            return True
        if time.monotonic() - start >= timeout:
            logger.error(f"Timeout after {timeout}s waiting for {description}")
            return False
        sleep(interval)
