"""Provisioned state for stacks.

Tracks per-node records (type, attribute hash, physical id, outputs) and
persists them so the next plan can diff against what was applied. State is
saved after every successful operation with an atomic replace, and guarded
by a lease lock so two applies cannot run against the same stack.
"""

import json
import logging
import os
import re
import socket
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

from stack_opr.errors import StateLockError
from stack_opr.model import PHYSICAL_ID_OUTPUT

logger = logging.getLogger(__name__)

STATE_FILE = 'state.json'
LOCK_FILE = 'state.lock'
STATE_FORMAT_VERSION = 1

_STACK_ID_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')


@dataclass
class NodeRecord:
    """Provisioned record for one node.

    Attributes:
        node_id: Node identifier (matches ResourceNode.id)
        type: Type tag the node was provisioned as
        attr_hash: Content hash of the attributes last applied
        physical_id: Backend-assigned identifier
        applied_hash: Hash of the resolved attributes sent to the backend
        attribute_hashes: Per-attribute hashes, to tell which attributes changed
        outputs: Output values reported by the backend
        dependencies: Node ids this node referenced when applied
        removal_policy: 'destroy' or 'retain'
        updated_at: Timestamp of the last successful operation
        tainted: Created but never confirmed ready; replaced on the next apply
        previous_ids: Physical ids of replaced instances still awaiting deletion
    """
    node_id: str
    type: str
    attr_hash: str
    physical_id: str
    applied_hash: str = ''
    attribute_hashes: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    removal_policy: str = 'destroy'
    updated_at: Optional[float] = None
    tainted: bool = False
    previous_ids: list[str] = field(default_factory=list)

    def output_values(self) -> dict[str, Any]:
        """Outputs plus the physical id under the reserved 'id' name."""
        values = dict(self.outputs)
        values[PHYSICAL_ID_OUTPUT] = self.physical_id
        return values

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'type': self.type,
            'attr_hash': self.attr_hash,
            'physical_id': self.physical_id,
            'outputs': dict(self.outputs),
        }
        if self.applied_hash:
            d['applied_hash'] = self.applied_hash
        if self.attribute_hashes:
            d['attribute_hashes'] = dict(self.attribute_hashes)
        if self.dependencies:
            d['dependencies'] = list(self.dependencies)
        if self.removal_policy != 'destroy':
            d['removal_policy'] = self.removal_policy
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        if self.tainted:
            d['tainted'] = True
        if self.previous_ids:
            d['previous_ids'] = list(self.previous_ids)
        return d

    @classmethod
    def from_dict(cls, node_id: str, data: dict) -> 'NodeRecord':
        return cls(
            node_id=node_id,
            type=data['type'],
            attr_hash=data['attr_hash'],
            physical_id=data['physical_id'],
            applied_hash=data.get('applied_hash', ''),
            attribute_hashes=dict(data.get('attribute_hashes') or {}),
            outputs=dict(data.get('outputs') or {}),
            dependencies=list(data.get('dependencies') or []),
            removal_policy=data.get('removal_policy', 'destroy'),
            updated_at=data.get('updated_at'),
            tainted=bool(data.get('tainted', False)),
            previous_ids=list(data.get('previous_ids') or []),
        )


class ProvisionedState:
    """Stack-level provisioned state.

    Mapping of node id -> NodeRecord plus a serial that increases on every
    save, so a reader can tell two snapshots apart.
    """

    def __init__(self, stack_id: str, serial: int = 0):
        self.stack_id = stack_id
        self.serial = serial
        self._records: dict[str, NodeRecord] = {}

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    @property
    def is_empty(self) -> bool:
        return not self._records

    @property
    def records(self) -> dict[str, NodeRecord]:
        return dict(self._records)

    def get(self, node_id: str) -> Optional[NodeRecord]:
        return self._records.get(node_id)

    def get_record(self, node_id: str) -> NodeRecord:
        """Get record by node id.

        Raises:
            KeyError: If node not in state
        """
        return self._records[node_id]

    def put(self, record: NodeRecord) -> None:
        if record.updated_at is None:
            record.updated_at = time.time()
        self._records[record.node_id] = record

    def remove(self, node_id: str) -> Optional[NodeRecord]:
        return self._records.pop(node_id, None)

    def known_outputs(self) -> dict[str, dict[str, Any]]:
        """node id -> output values (including 'id') for every ready record."""
        return {node_id: rec.output_values() for node_id, rec in self._records.items()
                if not rec.tainted}

    def copy(self) -> 'ProvisionedState':
        clone = ProvisionedState(self.stack_id, serial=self.serial)
        for node_id, rec in self._records.items():
            clone._records[node_id] = NodeRecord.from_dict(node_id, rec.to_dict())
        return clone

    def to_dict(self) -> dict:
        return {
            'version': STATE_FORMAT_VERSION,
            'stack_id': self.stack_id,
            'serial': self.serial,
            'nodes': {node_id: rec.to_dict() for node_id, rec in sorted(self._records.items())},
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ProvisionedState':
        state = cls(data['stack_id'], serial=data.get('serial', 0))
        for node_id, node_data in (data.get('nodes') or {}).items():
            state._records[node_id] = NodeRecord.from_dict(node_id, node_data)
        return state


class StateStore:
    """File-backed state store.

    State is persisted to {base_dir}/{stack_id}/state.json. Writes go to a
    temp file that is then renamed over the target (atomic on POSIX).
    """

    def __init__(self, base_dir: Path, lock_timeout: float = 3600.0):
        """Initialize state store.

        Args:
            base_dir: Directory holding one subdirectory per stack
            lock_timeout: Seconds after which an abandoned lock is broken
        """
        self.base_dir = Path(base_dir)
        self.lock_timeout = lock_timeout

    def _stack_dir(self, stack_id: str) -> Path:
        if not _STACK_ID_RE.match(stack_id or ''):
            raise ValueError(f"Invalid stack id: {stack_id!r}")
        return self.base_dir / stack_id

    def path_for(self, stack_id: str) -> Path:
        return self._stack_dir(stack_id) / STATE_FILE

    def exists(self, stack_id: str) -> bool:
        return self.path_for(stack_id).exists()

    def load(self, stack_id: str) -> ProvisionedState:
        """Load state for a stack.

        Returns an empty ProvisionedState when nothing was applied yet.
        """
        path = self.path_for(stack_id)
        if not path.exists():
            logger.debug(f"No state for stack '{stack_id}' at {path}")
            return ProvisionedState(stack_id)

        with open(path, encoding='utf-8') as f:
            data = json.load(f)

        state = ProvisionedState.from_dict(data)
        if state.stack_id != stack_id:
            raise ValueError(
                f"State file {path} belongs to stack '{state.stack_id}', not '{stack_id}'"
            )
        logger.debug(f"Loaded state for '{stack_id}' (serial {state.serial}, {len(state)} nodes)")
        return state

    def save(self, stack_id: str, state: ProvisionedState) -> Path:
        """Save state atomically and bump its serial.

        Returns:
            Path where state was saved
        """
        path = self.path_for(stack_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix('.json.tmp')

        state.serial += 1
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(state.to_dict(), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError:
            state.serial -= 1
            if tmp_path.exists():
                tmp_path.unlink()
            raise

        logger.debug(f"Saved state for '{stack_id}' (serial {state.serial}) to {path}")
        return path

    def delete(self, stack_id: str) -> None:
        """Remove the state file for a stack (after a full destroy)."""
        path = self.path_for(stack_id)
        if path.exists():
            path.unlink()

    @contextmanager
    def lock(self, stack_id: str, owner: Optional[str] = None) -> Iterator[None]:
        """Hold an exclusive lease on a stack's state.

        The lock file is created with O_EXCL. A lock older than
        lock_timeout is treated as abandoned and broken.

        Raises:
            StateLockError: If another holder has a live lease
        """
        lock_path = self._stack_dir(stack_id) / LOCK_FILE
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        holder = owner or f"{socket.gethostname()}:{os.getpid()}"

        self._acquire(lock_path, stack_id, holder)
        try:
            yield
        finally:
            try:
                lock_path.unlink()
            except FileNotFoundError:
                logger.warning(f"Lock for '{stack_id}' vanished before release")

    def _acquire(self, lock_path: Path, stack_id: str, holder: str) -> None:
        payload = json.dumps({'holder': holder, 'acquired_at': time.time()})
        for attempt in range(2):
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                current = self._read_lock(lock_path)
                age = time.time() - current.get('acquired_at', 0)
                if attempt == 0 and age > self.lock_timeout:
                    logger.warning(
                        f"Breaking stale lock for '{stack_id}' held by "
                        f"{current.get('holder', 'unknown')} ({age:.0f}s old)"
                    )
                    lock_path.unlink(missing_ok=True)
                    continue
                raise StateLockError(stack_id, current.get('holder', ''))
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(payload)
            logger.debug(f"Acquired state lock for '{stack_id}' as {holder}")
            return

    @staticmethod
    def _read_lock(lock_path: Path) -> dict:
        """Read lock payload; fall back to file mtime if still being written."""
        try:
            data = json.loads(lock_path.read_text(encoding='utf-8'))
        except (OSError, ValueError):
            data = {}
        if 'acquired_at' not in data:
            try:
                data['acquired_at'] = lock_path.stat().st_mtime
            except OSError:
                data['acquired_at'] = 0
        return data
