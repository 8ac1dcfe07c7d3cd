"""In-process provisioning backend.

Keeps resources in a dict. Used by tests and by `--backend memory` to
rehearse a plan end to end. Supports fault injection (fail a node's
create/update/delete) and delayed readiness to exercise the executor.
"""

import copy
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from backends.base import DEFAULT_IMMUTABLE_ATTRIBUTES
from stack_opr.errors import BackendError

logger = logging.getLogger(__name__)


@dataclass
class MemoryResource:
    """A resource held by the memory backend."""
    physical_id: str
    type: str
    attributes: dict[str, Any]
    outputs: dict[str, Any] = field(default_factory=dict)
    polls_until_ready: int = 0


class MemoryBackend:
    """Dictionary-backed ProvisioningBackend.

    Attributes:
        account: Account the resources are notionally created in
        region: Region used in generated outputs
        ready_after_polls: is_ready() returns False this many times per resource
        immutable: Per-type immutable attribute sets
    """

    def __init__(
        self,
        account: str = '000000000000',
        region: str = 'local-1',
        ready_after_polls: int = 0,
        immutable: Optional[dict[str, frozenset[str]]] = None,
    ):
        self.account = account
        self.region = region
        self.ready_after_polls = ready_after_polls
        self.immutable = dict(DEFAULT_IMMUTABLE_ATTRIBUTES if immutable is None else immutable)
        self.resources: dict[str, MemoryResource] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], tuple[str, bool, int]] = {}
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def fail_on(self, verb: str, key: str, message: str = 'injected failure',
                retryable: bool = False, times: int = -1) -> None:
        """Make a call fail.

        Args:
            verb: 'create', 'update' or 'delete'
            key: Value of the 'name' attribute for create, physical id otherwise
            message: Error message
            retryable: Mark the BackendError as retryable
            times: Number of failures before succeeding (-1 = always)
        """
        self._failures[(verb, key)] = (message, retryable, times)

    def _maybe_fail(self, verb: str, key: str) -> None:
        entry = self._failures.get((verb, key))
        if entry is None:
            return
        message, retryable, times = entry
        if times == 0:
            return
        if times > 0:
            self._failures[(verb, key)] = (message, retryable, times - 1)
        raise BackendError(None, f"{verb} {key}: {message}", retryable=retryable)

    def _outputs_for(self, resource_type: str, physical_id: str,
                     attributes: dict[str, Any]) -> dict[str, Any]:
        arn = f"arn:local:{self.region}:{self.account}:{resource_type.lower()}/{physical_id}"
        outputs: dict[str, Any] = {'arn': arn}
        if resource_type == 'LoadBalancer':
            outputs['dns_name'] = f"{physical_id}.elb.{self.region}.example.internal"
        elif resource_type == 'ComputeInstance':
            outputs['private_ip'] = f"10.0.0.{int(physical_id.rsplit('-', 1)[-1]) % 250 + 4}"
        elif resource_type == 'ObjectStore':
            outputs['bucket_domain_name'] = f"{attributes.get('bucket_name')}.s3.{self.region}.example.internal"
        elif resource_type == 'Network':
            outputs['cidr'] = attributes.get('cidr')
        return outputs

    def create(self, resource_type: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        with self._lock:
            key = str(attributes.get('name', resource_type))
            self.calls.append(('create', key))
            self._maybe_fail('create', key)
            physical_id = f"{resource_type.lower()}-{next(self._counter):04d}"
            outputs = self._outputs_for(resource_type, physical_id, attributes)
            self.resources[physical_id] = MemoryResource(
                physical_id=physical_id,
                type=resource_type,
                attributes=copy.deepcopy(attributes),
                outputs=outputs,
                polls_until_ready=self.ready_after_polls,
            )
        logger.debug(f"[memory] created {resource_type} {physical_id}")
        return physical_id, dict(outputs)

    def update(self, physical_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self.calls.append(('update', physical_id))
            self._maybe_fail('update', physical_id)
            resource = self.resources.get(physical_id)
            if resource is None:
                raise BackendError(None, f"Resource {physical_id} not found")
            resource.attributes = copy.deepcopy(attributes)
            resource.outputs = self._outputs_for(resource.type, physical_id, attributes)
            outputs = dict(resource.outputs)
        logger.debug(f"[memory] updated {physical_id}")
        return outputs

    def delete(self, physical_id: str) -> None:
        with self._lock:
            self.calls.append(('delete', physical_id))
            self._maybe_fail('delete', physical_id)
            self.resources.pop(physical_id, None)
        logger.debug(f"[memory] deleted {physical_id}")

    def immutable_attributes(self, resource_type: str) -> frozenset[str]:
        return self.immutable.get(resource_type, frozenset())

    def is_ready(self, physical_id: str) -> bool:
        with self._lock:
            resource = self.resources.get(physical_id)
            if resource is None:
                raise BackendError(None, f"Resource {physical_id} not found")
            if resource.polls_until_ready > 0:
                resource.polls_until_ready -= 1
                return False
            return True

    def read(self, physical_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            resource = self.resources.get(physical_id)
            return copy.deepcopy(resource.attributes) if resource else None
