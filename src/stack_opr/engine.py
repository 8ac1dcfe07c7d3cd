"""Stack engine: validate, plan and apply a stack declaration.

Control flow for one invocation:

    declaration -> validate -> DependencyGraph -> Reconciler -> synthesize
                -> ApplyExecutor -> stack output resolution

Apply and destroy hold the stack's state lock for the whole run, so the
plan they execute is computed against the state they mutate.
"""

import getpass
import logging
import os
import socket
from dataclasses import dataclass, field
from typing import Any, Optional

from backends.base import ProvisioningBackend
from config import EngineConfig
from stack import Stack
from stack_opr.executor import ApplyExecutor, ApplyResult
from stack_opr.graph import DependencyGraph
from stack_opr.model import StackOutput
from stack_opr.planner import Plan, synthesize, synthesize_destroy
from stack_opr.reconciler import Reconciler, fetch_immutable_attributes
from stack_opr.state import ProvisionedState, StateStore

logger = logging.getLogger(__name__)


def lock_owner() -> str:
    """user@host:pid recorded in the state lock."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = 'unknown'
    return f"{user}@{socket.gethostname()}:{os.getpid()}"


def resolve_stack_outputs(outputs: list[StackOutput], state: ProvisionedState) -> dict[str, Any]:
    """Resolve stack outputs against provisioned state.

    Outputs whose node or output name is not in state resolve to None.
    """
    known = state.known_outputs()
    resolved: dict[str, Any] = {}
    for output in outputs:
        values = known.get(output.reference.node_id, {})
        if output.reference.output not in values:
            logger.warning(f"Stack output '{output.name}' unresolved: "
                           f"'{output.reference}' not in state")
            resolved[output.name] = None
            continue
        resolved[output.name] = values[output.reference.output]
    return resolved


@dataclass
class StackEngine:
    """Plans and applies stacks against one backend and state store."""
    backend: ProvisioningBackend
    store: StateStore
    config: EngineConfig = field(default_factory=EngineConfig)
    _executor: Optional[ApplyExecutor] = field(default=None, init=False, repr=False)

    @classmethod
    def from_config(cls, config: EngineConfig, backend: ProvisioningBackend) -> 'StackEngine':
        return cls(
            backend=backend,
            store=StateStore(config.state_dir, lock_timeout=config.lock_timeout),
            config=config,
        )

    @property
    def executor(self) -> ApplyExecutor:
        if self._executor is None:
            self._executor = ApplyExecutor.from_config(self.config, self.backend, self.store)
        return self._executor

    def build_graph(self, stack: Stack) -> DependencyGraph:
        """Validate the declaration and build its graph.

        Raises:
            ValidationError: On any declaration violation
            CycleError: If references form a cycle
        """
        stack.validate()
        return DependencyGraph(stack.nodes)

    def immutable_attributes(self, graph: DependencyGraph) -> dict[str, frozenset[str]]:
        """Replace-forcing attributes for every type in the graph, asked once per type."""
        return fetch_immutable_attributes(self.backend, (node.type for node in graph.nodes))

    def plan(self, stack: Stack, refresh: bool = False,
             state: Optional[ProvisionedState] = None) -> Plan:
        """Compute the plan for a stack without side effects.

        Args:
            stack: Declaration
            refresh: Check live attributes for drift first
            state: State to plan against (loaded from the store when None)

        Raises:
            ValidationError, CycleError: Structural problems
            StateConflictError: If refresh finds drift
        """
        graph = self.build_graph(stack)
        immutable = self.immutable_attributes(graph)
        if state is None:
            state = self.store.load(stack.name)
        changes = Reconciler(self.backend, refresh=refresh,
                             immutable=immutable).reconcile(graph, state)
        return synthesize(stack.name, graph, changes, state)

    def apply(self, stack: Stack, refresh: bool = False,
              expected_fingerprint: Optional[str] = None) -> ApplyResult:
        """Plan and apply a stack under the state lock.

        Raises:
            StateLockError: If another apply holds the lock
            StalePlanError: If the plan no longer matches expected_fingerprint
        """
        graph = self.build_graph(stack)
        immutable = self.immutable_attributes(graph)
        with self.store.lock(stack.name, owner=lock_owner()):
            state = self.store.load(stack.name)
            changes = Reconciler(self.backend, refresh=refresh,
                                 immutable=immutable).reconcile(graph, state)
            plan = synthesize(stack.name, graph, changes, state)
            result = self.executor.apply(plan, state, expected_fingerprint=expected_fingerprint)
        result.outputs = resolve_stack_outputs(stack.outputs, result.state)
        return result

    def plan_destroy(self, stack_id: str) -> Plan:
        return synthesize_destroy(stack_id, self.store.load(stack_id))

    def destroy(self, stack_id: str, expected_fingerprint: Optional[str] = None) -> ApplyResult:
        """Delete every resource recorded for a stack.

        State is removed once nothing is left in it.
        """
        with self.store.lock(stack_id, owner=lock_owner()):
            state = self.store.load(stack_id)
            plan = synthesize_destroy(stack_id, state)
            result = self.executor.apply(plan, state, expected_fingerprint=expected_fingerprint)
            if result.success and result.state.is_empty:
                self.store.delete(stack_id)
                logger.info(f"[destroy] Removed state for stack '{stack_id}'")
        return result

    def outputs(self, stack: Stack) -> dict[str, Any]:
        """Resolve stack outputs from stored state."""
        return resolve_stack_outputs(stack.outputs, self.store.load(stack.name))

    def cancel(self) -> None:
        if self._executor is not None:
            self._executor.cancel()
