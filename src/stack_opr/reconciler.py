"""State reconciliation: diff the desired graph against provisioned state.

Each desired node is classified as create, update, replace or noop, and
each stored node missing from the declaration as delete. Hashes are taken
over attributes with References kept symbolic (node id + output name), so
a dependency's not-yet-known output never destabilizes a dependent's hash.
A node whose references now resolve, from stored outputs, to something other
than what was last applied is updated even if its declaration is unchanged.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from backends.base import ProvisioningBackend
from stack_opr.errors import BackendError, StateConflictError
from stack_opr.graph import DependencyGraph
from stack_opr.model import Reference, ResourceNode
from stack_opr.state import NodeRecord, ProvisionedState

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
REPLACE = 'replace'
DELETE = 'delete'
NOOP = 'noop'

ACTIONS = (CREATE, UPDATE, REPLACE, DELETE, NOOP)


def _symbolic(value: Any) -> Any:
    if isinstance(value, Reference):
        return {'$ref': value.node_id, 'output': value.output}
    if isinstance(value, dict):
        return {k: _symbolic(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_symbolic(v) for v in value]
    return value


def hash_value(value: Any) -> str:
    """sha256 over canonical JSON (sorted keys, no whitespace)."""
    encoded = json.dumps(_symbolic(value), sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(encoded.encode('utf-8')).hexdigest()


def resolve_value(value: Any, outputs: dict[str, dict[str, Any]], node_id: str) -> Any:
    """Replace References with concrete output values.

    Raises:
        BackendError: If a referenced output is not known yet
    """
    if isinstance(value, Reference):
        known = outputs.get(value.node_id)
        if known is None or value.output not in known:
            raise BackendError(node_id, f"Output '{value}' is not available")
        return known[value.output]
    if isinstance(value, dict):
        return {k: resolve_value(v, outputs, node_id) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(v, outputs, node_id) for v in value]
    return value


def attribute_hashes(node: ResourceNode) -> dict[str, str]:
    """Per-attribute hashes with References kept symbolic."""
    return {name: hash_value(value) for name, value in node.attributes.items()}


def content_hash(node: ResourceNode) -> str:
    """Hash of a node's type tag and attributes."""
    return hash_value({'type': node.type, 'attributes': attribute_hashes(node)})


def fetch_immutable_attributes(
    backend: ProvisioningBackend, resource_types: Iterable[str],
) -> dict[str, frozenset[str]]:
    """Ask the backend once per type which attributes force a replace."""
    return {t: frozenset(backend.immutable_attributes(t)) for t in sorted(set(resource_types))}


@dataclass
class Change:
    """Classification of one node.

    Attributes:
        node_id: Node identifier
        action: One of ACTIONS
        node: Desired node (None for delete)
        record: Stored record (None for create)
        content_hash: Desired content hash ('' for delete)
        changed_attributes: Attribute names whose hash differs from state
        reason: Short human-readable explanation
    """
    node_id: str
    action: str
    node: Optional[ResourceNode] = None
    record: Optional[NodeRecord] = None
    content_hash: str = ''
    changed_attributes: tuple[str, ...] = ()
    reason: str = ''

    @property
    def retain(self) -> bool:
        """True for a delete that only forgets state (removal_policy=retain)."""
        return self.action == DELETE and self.record is not None \
            and self.record.removal_policy == 'retain'


@dataclass
class Reconciler:
    """Classifies desired nodes against provisioned state.

    Attributes:
        backend: Backend consulted for live reads (and immutable attributes
            when none are given)
        refresh: Read live attributes and fail on out-of-band drift
        immutable: Type tag -> attribute names that force a replace, fetched
            up front with fetch_immutable_attributes()
    """
    backend: ProvisioningBackend
    refresh: bool = False
    immutable: Optional[dict[str, frozenset[str]]] = None
    _gone: set[str] = field(default_factory=set, init=False, repr=False)
    _outputs: dict[str, dict[str, Any]] = field(default_factory=dict, init=False, repr=False)

    def reconcile(self, graph: DependencyGraph, state: ProvisionedState) -> list[Change]:
        """Diff desired graph against state.

        Returns:
            Changes for desired nodes in topological order, followed by
            deletes for stored nodes absent from the graph (sorted by id).

        Raises:
            StateConflictError: If refresh finds live attributes that differ
                from what was last applied
        """
        self._gone = set()
        self._outputs = state.known_outputs()
        known = self.immutable or {}
        missing = {node.type for node in graph.nodes} - set(known)
        self.immutable = {**known, **fetch_immutable_attributes(self.backend, missing)}
        if self.refresh:
            self._check_drift(state)

        changes: dict[str, Change] = {}
        for node in graph.topological_order():
            change = self._classify(node, state)
            self._propagate(node, change, changes)
            changes[node.id] = change

        ordered = list(changes.values())
        for node_id in sorted(state.records):
            if node_id in graph:
                continue
            record = state.get_record(node_id)
            ordered.append(Change(
                node_id=node_id,
                action=DELETE,
                record=record,
                reason='retained, forgetting state' if record.removal_policy == 'retain'
                       else 'removed from declaration',
            ))

        counts = {a: sum(1 for c in ordered if c.action == a) for a in ACTIONS}
        logger.debug(f"Reconciled {len(ordered)} nodes: {counts}")
        return ordered

    def _immutable(self, resource_type: str) -> frozenset[str]:
        return self.immutable.get(resource_type, frozenset())

    def _check_drift(self, state: ProvisionedState) -> None:
        conflicts = []
        for node_id, record in sorted(state.records.items()):
            live = self.backend.read(record.physical_id)
            if live is None:
                logger.warning(f"Node '{node_id}' ({record.physical_id}) no longer exists in backend")
                self._gone.add(node_id)
                continue
            if record.applied_hash and hash_value(live) != record.applied_hash:
                conflicts.append(node_id)
        if conflicts:
            raise StateConflictError(conflicts)

    def _classify(self, node: ResourceNode, state: ProvisionedState) -> Change:
        desired_hash = content_hash(node)
        record = None if node.id in self._gone else state.get(node.id)

        if record is None:
            reason = 'missing from backend' if node.id in self._gone else 'not yet provisioned'
            return Change(node.id, CREATE, node=node, content_hash=desired_hash, reason=reason)

        if record.type != node.type:
            return Change(
                node.id, REPLACE, node=node, record=record, content_hash=desired_hash,
                reason=f"type changed from {record.type} to {node.type}",
            )

        if record.tainted:
            return Change(
                node.id, REPLACE, node=node, record=record, content_hash=desired_hash,
                reason=f"{record.physical_id} never became ready",
            )

        if desired_hash == record.attr_hash:
            if record.previous_ids:
                return Change(
                    node.id, UPDATE, node=node, record=record, content_hash=desired_hash,
                    reason=f"previous instance pending deletion: {', '.join(record.previous_ids)}",
                )
            return Change(node.id, NOOP, node=node, record=record, content_hash=desired_hash)

        desired = attribute_hashes(node)
        names = set(desired) | set(record.attribute_hashes)
        changed = tuple(sorted(
            n for n in names if desired.get(n) != record.attribute_hashes.get(n)
        ))
        immutable = self._immutable(node.type)
        forced = [n for n in changed if n in immutable]
        if forced:
            return Change(
                node.id, REPLACE, node=node, record=record, content_hash=desired_hash,
                changed_attributes=changed,
                reason=f"immutable attribute changed: {', '.join(forced)}",
            )
        return Change(
            node.id, UPDATE, node=node, record=record, content_hash=desired_hash,
            changed_attributes=changed,
            reason=f"attributes changed: {', '.join(changed)}" if changed else 'attributes changed',
        )

    def _propagate(self, node: ResourceNode, change: Change, changes: dict[str, Change]) -> None:
        """Escalate a node whose dependency gets a new physical id."""
        if change.action not in (NOOP, UPDATE):
            return
        immutable = self._immutable(node.type)
        for attr, reference in node.references():
            dep = changes.get(reference.node_id)
            if dep is None or dep.action not in (REPLACE, CREATE):
                continue
            if attr in immutable:
                change.action = REPLACE
                change.reason = f"dependency '{dep.node_id}' replaced (immutable '{attr}')"
                return
            if change.action == NOOP:
                change.action = UPDATE
                change.reason = f"dependency '{dep.node_id}' replaced"
        if change.action == NOOP and change.record.applied_hash and self._stale(node, change.record):
            forced = sorted({attr for attr, _ in node.references() if attr in immutable})
            change.action = REPLACE if forced else UPDATE
            change.reason = 'referenced outputs changed'

    def _stale(self, node: ResourceNode, record: NodeRecord) -> bool:
        """True if references now resolve to something other than what was applied."""
        if not node.references():
            return False
        try:
            resolved = {name: resolve_value(value, self._outputs, node.id)
                        for name, value in node.attributes.items()}
        except BackendError:
            return False
        return hash_value(resolved) != record.applied_hash
