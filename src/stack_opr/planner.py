"""Plan synthesis.

Turns reconciler changes into an ordered Plan. Creates, updates, replaces
and noops follow the topological order (dependencies first); deletes come
after them in reverse dependency order (dependents first) so nothing is
torn down while still referenced. Each operation lists the node ids whose
operations must complete before it may start.

A replace creates the new instance at its forward position and leaves the
previous one in place. That instance is deleted only once every node in
the operation's retire_after has finished, which includes deleting their
own previous instances, so a dependent always moves off an old instance
before that instance goes away.

Synthesis is pure: the same graph and state always yield the same plan.
"""

import hashlib
import heapq
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from stack_opr.graph import DependencyGraph
from stack_opr.reconciler import ACTIONS, CREATE, DELETE, NOOP, REPLACE, UPDATE, Change
from stack_opr.state import ProvisionedState

logger = logging.getLogger(__name__)

# Actions that result in a backend call
MUTATING_ACTIONS = (CREATE, UPDATE, REPLACE, DELETE)


@dataclass
class Operation:
    """One step of a plan.

    Attributes:
        position: Index in the plan's sequential order
        action: create, update, replace, delete or noop
        node_id: Node identifier
        resource_type: Type tag (from the declaration, or state for deletes)
        requires: Node ids whose operations must finish first
        retire_after: Node ids that must finish before previous instances
            of this node are deleted (replace, or update with leftovers)
        change: The reconciler classification behind this operation
    """
    position: int
    action: str
    node_id: str
    resource_type: str
    requires: tuple[str, ...] = ()
    retire_after: tuple[str, ...] = ()
    change: Optional[Change] = field(default=None, repr=False, compare=False)

    @property
    def is_mutating(self) -> bool:
        return self.action in MUTATING_ACTIONS

    @property
    def reason(self) -> str:
        return self.change.reason if self.change else ''

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'position': self.position,
            'action': self.action,
            'node_id': self.node_id,
            'type': self.resource_type,
        }
        if self.requires:
            d['requires'] = list(self.requires)
        if self.retire_after:
            d['retire_after'] = list(self.retire_after)
        if self.reason:
            d['reason'] = self.reason
        if self.change and self.change.changed_attributes:
            d['changed_attributes'] = list(self.change.changed_attributes)
        return d


@dataclass
class Plan:
    """Ordered operations for one stack. Rebuilt every invocation."""
    stack_id: str
    operations: list[Operation] = field(default_factory=list)

    def __iter__(self):
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def get(self, node_id: str) -> Operation:
        """Get the operation for a node.

        Raises:
            KeyError: If the node has no operation in this plan
        """
        for op in self.operations:
            if op.node_id == node_id:
                return op
        raise KeyError(node_id)

    def actions(self) -> list[tuple[str, str]]:
        """(action, node_id) pairs in plan order."""
        return [(op.action, op.node_id) for op in self.operations]

    def summary(self) -> dict[str, int]:
        """Operation counts per action."""
        counts = {action: 0 for action in ACTIONS}
        for op in self.operations:
            counts[op.action] += 1
        return counts

    @property
    def has_changes(self) -> bool:
        return any(op.is_mutating for op in self.operations)

    @property
    def fingerprint(self) -> str:
        """Stable digest of the plan; equal plans give equal fingerprints."""
        payload = [
            [op.position, op.action, op.node_id, op.resource_type, list(op.requires),
             list(op.retire_after), op.change.content_hash if op.change else '']
            for op in self.operations
        ]
        encoded = json.dumps([self.stack_id, payload], separators=(',', ':'))
        return hashlib.sha256(encoded.encode('utf-8')).hexdigest()

    def to_dict(self) -> dict:
        return {
            'stack_id': self.stack_id,
            'fingerprint': self.fingerprint,
            'summary': self.summary(),
            'operations': [op.to_dict() for op in self.operations],
        }


def _state_dependents(
    node_id: str, graph: DependencyGraph, state: ProvisionedState, orphans: set[str],
) -> set[str]:
    """Nodes whose stored record references node_id and that this plan touches."""
    return {
        other_id for other_id, record in state.records.items()
        if node_id in record.dependencies and (other_id in orphans or other_id in graph)
    }


def _delete_order(orphans: list[str], state: ProvisionedState) -> list[str]:
    """Order orphans dependents-first using the dependencies kept in state."""
    orphan_set = set(orphans)
    deps = {
        node_id: [d for d in state.get_record(node_id).dependencies if d in orphan_set]
        for node_id in orphans
    }
    dependents: dict[str, list[str]] = {node_id: [] for node_id in orphans}
    for node_id, node_deps in deps.items():
        for d in node_deps:
            dependents[d].append(node_id)

    # Kahn from the leaves of the dependency tree: a node is ready once
    # every orphan that depended on it has been placed.
    remaining = {node_id: len(dependents[node_id]) for node_id in orphans}
    ready = [node_id for node_id, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        node_id = heapq.heappop(ready)
        ordered.append(node_id)
        for d in deps[node_id]:
            remaining[d] -= 1
            if remaining[d] == 0:
                heapq.heappush(ready, d)

    # Stored state comes from acyclic graphs; anything left is appended as-is
    leftover = sorted(orphan_set - set(ordered))
    if leftover:
        logger.warning(f"Stored dependencies form a cycle among: {', '.join(leftover)}")
    return ordered + leftover


def synthesize(
    stack_id: str,
    graph: DependencyGraph,
    changes: list[Change],
    state: ProvisionedState,
) -> Plan:
    """Build the ordered plan.

    Args:
        stack_id: Stack identifier
        graph: Desired dependency graph
        changes: Output of Reconciler.reconcile()
        state: Provisioned state the changes were computed against

    Returns:
        Plan with forward operations first, then deletes
    """
    by_id = {c.node_id: c for c in changes}
    operations: list[Operation] = []
    orphans = [c.node_id for c in changes if c.action == DELETE]
    orphan_set = set(orphans)

    for node in graph.topological_order():
        change = by_id[node.id]
        retire_after: set[str] = set()
        if change.action == REPLACE or (change.record and change.record.previous_ids):
            # Current dependents plus anything still wired to it in state
            retire_after.update(graph.descendants_of(node.id))
            retire_after.update(_state_dependents(node.id, graph, state, orphan_set))
        operations.append(Operation(
            position=len(operations),
            action=change.action,
            node_id=node.id,
            resource_type=node.type,
            requires=tuple(graph.dependencies_of(node.id)),
            retire_after=tuple(sorted(retire_after)),
            change=change,
        ))

    for node_id in _delete_order(orphans, state):
        # Dependents in state: orphans deleted first, survivors updated first
        requires = _state_dependents(node_id, graph, state, orphan_set)
        change = by_id[node_id]
        operations.append(Operation(
            position=len(operations),
            action=DELETE,
            node_id=node_id,
            resource_type=change.record.type if change.record else '',
            requires=tuple(sorted(requires)),
            change=change,
        ))

    plan = Plan(stack_id=stack_id, operations=operations)
    logger.debug(f"Synthesized plan for '{stack_id}': {plan.summary()}")
    return plan


def synthesize_destroy(stack_id: str, state: ProvisionedState) -> Plan:
    """Plan deleting every node in state, dependents first."""
    changes = [
        Change(node_id=node_id, action=DELETE, record=record, reason='stack destroy')
        for node_id, record in sorted(state.records.items())
    ]
    return synthesize(stack_id, DependencyGraph([]), changes, state)


def is_converged(plan: Plan) -> bool:
    """True when every operation is a noop."""
    return all(op.action == NOOP for op in plan.operations)
