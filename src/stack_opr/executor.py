"""Plan executor.

Runs a Plan against a provisioning backend. Operations whose requirements
have all completed run concurrently on a bounded thread pool; an operation
never starts before every operation it requires has fully finished,
readiness polling included.

A replace runs in two stages: the new instance is created and published
to dependents, and the previous instance is deleted only after every node
in the operation's retire_after has finished. A created resource is saved
as tainted before the readiness wait, so a timeout never loses its id.

A failed operation marks every operation that transitively requires it as
skipped; independent branches keep running. State is saved after every
successful operation, with writes serialized by a lock, so a re-run only
retries what did not complete.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from backends.base import ProvisioningBackend
from common import FAILED, NOT_ATTEMPTED, SKIPPED, SUCCEEDED, OperationResult, wait_until
from config import EngineConfig
from stack_opr.errors import BackendError, StalePlanError
from stack_opr.planner import Operation, Plan
from stack_opr.reconciler import (
    CREATE,
    DELETE,
    NOOP,
    REPLACE,
    UPDATE,
    attribute_hashes,
    hash_value,
    resolve_value,
)
from stack_opr.state import NodeRecord, ProvisionedState, StateStore

logger = logging.getLogger(__name__)

# Run statuses
RUN_SUCCEEDED = 'Succeeded'
RUN_PARTIALLY_FAILED = 'PartiallyFailed'
RUN_FAILED = 'Failed'
RUN_INTERRUPTED = 'Interrupted'


@dataclass
class ApplyResult:
    """Consolidated result of an apply run.

    Attributes:
        stack_id: Stack the plan was applied to
        status: Succeeded, PartiallyFailed, Failed or Interrupted
        results: node id -> OperationResult, in plan order
        state: Provisioned state after the run
        duration: Wall-clock seconds
        outputs: Resolved stack outputs (filled in by the engine)
    """
    stack_id: str
    status: str
    results: dict[str, OperationResult]
    state: ProvisionedState
    duration: float = 0.0
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == RUN_SUCCEEDED

    def with_status(self, status: str) -> list[OperationResult]:
        return [r for r in self.results.values() if r.status == status]

    @property
    def failures(self) -> list[str]:
        """Failure report lines, one per failed or skipped node."""
        lines = []
        for r in self.results.values():
            if r.status == FAILED:
                lines.append(f"{r.action} {r.node_id}: {r.message}")
            elif r.status == SKIPPED:
                lines.append(f"{r.action} {r.node_id}: skipped ({r.message})")
        return lines

    def to_dict(self) -> dict:
        return {
            'stack_id': self.stack_id,
            'status': self.status,
            'duration_seconds': round(self.duration, 2),
            'operations': [r.to_dict() for r in self.results.values()],
            'outputs': dict(self.outputs),
        }


def run_status(plan: Plan, results: dict[str, OperationResult], cancelled: bool) -> str:
    """Derive the run status from per-operation outcomes.

    Failed means every mutating operation failed outright; any mix of
    failures with completed or skipped work is PartiallyFailed.
    """
    if cancelled and any(r.status == NOT_ATTEMPTED for r in results.values()):
        return RUN_INTERRUPTED
    failed = [r for r in results.values() if r.status == FAILED]
    if not failed:
        return RUN_SUCCEEDED
    mutating = [results[op.node_id] for op in plan.operations if op.is_mutating]
    if all(r.status == FAILED for r in mutating):
        return RUN_FAILED
    return RUN_PARTIALLY_FAILED


@dataclass
class ApplyExecutor:
    """Executes a Plan through a provisioning backend.

    Attributes:
        backend: Provisioning backend
        store: State store used for incremental saves
        max_concurrency: Max operations in flight
        poll_interval: Seconds between readiness polls
        ready_timeout: Seconds to wait for readiness after create
        max_retries: Retries for retryable update/delete failures
        retry_interval: Seconds between retries
        sleep: Sleep function (patched in tests)
    """
    backend: ProvisioningBackend
    store: StateStore
    max_concurrency: int = 4
    poll_interval: float = 5.0
    ready_timeout: float = 600.0
    max_retries: int = 2
    retry_interval: float = 5.0
    sleep: Callable[[float], None] = time.sleep
    _cancel: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _state_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @classmethod
    def from_config(cls, config: EngineConfig, backend: ProvisioningBackend,
                    store: StateStore) -> 'ApplyExecutor':
        return cls(
            backend=backend,
            store=store,
            max_concurrency=config.max_concurrency,
            poll_interval=config.poll_interval,
            ready_timeout=config.ready_timeout,
            max_retries=config.max_retries,
            retry_interval=config.retry_interval,
        )

    def cancel(self) -> None:
        """Stop scheduling new operations; in-flight ones finish."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested, finishing in-flight operations")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def apply(
        self,
        plan: Plan,
        state: ProvisionedState,
        expected_fingerprint: Optional[str] = None,
    ) -> ApplyResult:
        """Execute plan, mutating and persisting state as operations complete.

        Args:
            plan: Plan from the synthesizer
            state: State the plan was computed against
            expected_fingerprint: Refuse to run if the plan differs from this

        Raises:
            StalePlanError: If expected_fingerprint does not match
        """
        if expected_fingerprint and expected_fingerprint != plan.fingerprint:
            raise StalePlanError(expected_fingerprint, plan.fingerprint)

        self._cancel.clear()
        start = time.time()
        results = {op.node_id: OperationResult(op.node_id, op.action) for op in plan.operations}
        outputs = state.known_outputs()
        pending: list[Operation] = list(plan.operations)
        retiring: list[Operation] = []
        running: dict[Future, tuple[Operation, bool]] = {}
        available: set[str] = set()   # current instance usable by dependents
        finished: set[str] = set()    # previous instances gone as well
        blocked: set[str] = set()
        abort: Optional[BaseException] = None

        logger.info(f"[apply] Stack '{plan.stack_id}': {plan.summary()}")

        with ThreadPoolExecutor(max_workers=self.max_concurrency,
                                thread_name_prefix='apply') as pool:
            while pending or retiring or running:
                if not self.cancelled and abort is None:
                    for op in list(pending):
                        # Deletes wait for dependents to be fully finished
                        satisfied = finished if op.action == DELETE else available
                        failed_deps = [d for d in op.requires
                                       if d in blocked and d not in satisfied]
                        if failed_deps:
                            pending.remove(op)
                            blocked.add(op.node_id)
                            results[op.node_id].status = SKIPPED
                            results[op.node_id].message = f"requires failed '{failed_deps[0]}'"
                            logger.warning(f"[{op.action}] Skipping '{op.node_id}': "
                                           f"requires failed '{failed_deps[0]}'")
                            continue
                        if len(running) >= self.max_concurrency:
                            continue
                        if all(d in satisfied or d not in results for d in op.requires):
                            pending.remove(op)
                            future = pool.submit(self._run_operation, plan.stack_id, op,
                                                 state, outputs)
                            running[future] = (op, False)

                    for op in list(retiring):
                        failed_deps = [d for d in op.retire_after if d in blocked]
                        if failed_deps:
                            retiring.remove(op)
                            blocked.add(op.node_id)
                            result = results[op.node_id]
                            result.status = SKIPPED
                            result.message = (f"previous instance kept: "
                                              f"requires failed '{failed_deps[0]}'")
                            logger.warning(f"[{op.action}] Keeping previous instance of "
                                           f"'{op.node_id}': requires failed '{failed_deps[0]}'")
                            continue
                        if len(running) >= self.max_concurrency:
                            continue
                        if all(d in finished or d not in results for d in op.retire_after):
                            retiring.remove(op)
                            future = pool.submit(self._run_retire, plan.stack_id, op, state,
                                                 results[op.node_id])
                            running[future] = (op, True)

                if not running:
                    break

                try:
                    done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self.cancel()
                    continue

                for future in done:
                    op, retire = running.pop(future)
                    try:
                        result = future.result()
                    except Exception as e:
                        logger.exception(f"[{op.action}] Unexpected error for '{op.node_id}'")
                        result = OperationResult(op.node_id, op.action, status=FAILED,
                                                 message=str(e))
                        abort = abort or e
                    results[op.node_id] = result
                    if result.status != SUCCEEDED:
                        blocked.add(op.node_id)
                    elif retire or not self._has_previous(op.node_id, state):
                        available.add(op.node_id)
                        finished.add(op.node_id)
                    else:
                        available.add(op.node_id)
                        retiring.append(op)

        for op in retiring:
            result = results[op.node_id]
            result.status = NOT_ATTEMPTED
            result.message = f"{result.message}; previous instance not deleted"

        status = run_status(plan, results, self.cancelled)
        duration = time.time() - start
        log = logger.info if status == RUN_SUCCEEDED else logger.error
        log(f"[apply] Stack '{plan.stack_id}' finished: {status} ({duration:.1f}s)")

        if abort is not None:
            raise abort
        return ApplyResult(plan.stack_id, status, results, state, duration)

    def _has_previous(self, node_id: str, state: ProvisionedState) -> bool:
        with self._state_lock:
            record = state.get(node_id)
            return bool(record and record.previous_ids)

    def _run_operation(
        self,
        stack_id: str,
        op: Operation,
        state: ProvisionedState,
        outputs: dict[str, dict[str, Any]],
    ) -> OperationResult:
        """Run one operation. BackendError becomes a failed result."""
        start = time.time()
        try:
            if op.action == NOOP:
                self._noop(stack_id, op, state)
                message = 'unchanged'
            elif op.action == CREATE:
                self._create(stack_id, op, state, outputs)
                message = 'created'
            elif op.action == UPDATE:
                self._update(stack_id, op, state, outputs)
                message = 'updated'
            elif op.action == REPLACE:
                self._replace(stack_id, op, state, outputs)
                message = 'replaced'
            elif op.action == DELETE:
                message = self._delete(stack_id, op, state, outputs)
            else:
                raise BackendError(op.node_id, f"Unknown action '{op.action}'")
        except BackendError as e:
            detail = e.message if e.node_id else f"{op.node_id}: {e.message}"
            logger.error(f"[{op.action}] {detail}")
            return OperationResult(op.node_id, op.action, status=FAILED,
                                   message=e.message, duration=time.time() - start)

        record = state.get(op.node_id)
        return OperationResult(
            op.node_id, op.action,
            status=SUCCEEDED,
            message=message,
            duration=time.time() - start,
            physical_id=record.physical_id if record else None,
            outputs=record.output_values() if record else {},
        )

    def _run_retire(self, stack_id: str, op: Operation, state: ProvisionedState,
                    applied: OperationResult) -> OperationResult:
        """Delete the previous instances of a node once nothing uses them."""
        start = time.time()
        status, message = SUCCEEDED, applied.message
        try:
            self._retire(stack_id, op, state)
        except BackendError as e:
            logger.error(f"[{op.action}] {op.node_id}: {e.message}")
            status, message = FAILED, f"previous instance not deleted: {e.message}"
        return OperationResult(
            op.node_id, op.action,
            status=status,
            message=message,
            duration=applied.duration + time.time() - start,
            physical_id=applied.physical_id,
            outputs=applied.outputs,
        )

    def _resolve(self, op: Operation, outputs: dict[str, dict[str, Any]]) -> dict[str, Any]:
        node = op.change.node
        with self._state_lock:
            snapshot = {k: dict(v) for k, v in outputs.items()}
        return {name: resolve_value(value, snapshot, op.node_id)
                for name, value in node.attributes.items()}

    def _commit(self, stack_id: str, state: ProvisionedState,
                outputs: dict[str, dict[str, Any]], record: NodeRecord) -> None:
        with self._state_lock:
            state.put(record)
            self.store.save(stack_id, state)
            outputs[record.node_id] = record.output_values()

    def _forget(self, stack_id: str, state: ProvisionedState,
                outputs: dict[str, dict[str, Any]], node_id: str) -> None:
        with self._state_lock:
            state.remove(node_id)
            self.store.save(stack_id, state)
            outputs.pop(node_id, None)

    def _record(self, op: Operation, physical_id: str, resolved: dict[str, Any],
                backend_outputs: dict[str, Any]) -> NodeRecord:
        node = op.change.node
        return NodeRecord(
            node_id=node.id,
            type=node.type,
            attr_hash=op.change.content_hash,
            physical_id=physical_id,
            applied_hash=hash_value(resolved),
            attribute_hashes=attribute_hashes(node),
            outputs=dict(backend_outputs or {}),
            dependencies=node.dependency_ids(),
            removal_policy=node.removal_policy,
            updated_at=time.time(),
        )

    def _with_retries(self, op: Operation, call: Callable[[], Any]) -> Any:
        for attempt in range(self.max_retries + 1):
            try:
                return call()
            except BackendError as e:
                if not e.retryable or attempt == self.max_retries:
                    raise BackendError(op.node_id, e.message, retryable=e.retryable) from e
                logger.warning(f"[{op.action}] '{op.node_id}' attempt {attempt + 1} failed, "
                               f"retrying in {self.retry_interval}s: {e.message}")
                self.sleep(self.retry_interval)
        return None

    def _wait_ready(self, op: Operation, physical_id: str) -> None:
        ready = wait_until(
            lambda: self.backend.is_ready(physical_id),
            timeout=self.ready_timeout,
            interval=self.poll_interval,
            description=f"{op.node_id} ({physical_id})",
            sleep=self.sleep,
        )
        if not ready:
            raise BackendError(
                op.node_id,
                f"{physical_id} not ready after {self.ready_timeout}s (resource left in backend)",
            )

    def _stage(self, stack_id: str, state: ProvisionedState, record: NodeRecord) -> None:
        """Persist a record without publishing its outputs to dependents."""
        with self._state_lock:
            state.put(record)
            self.store.save(stack_id, state)

    def _provision(self, stack_id: str, op: Operation, state: ProvisionedState,
                   outputs: dict[str, dict[str, Any]], previous_ids: list[str]) -> None:
        resolved = self._resolve(op, outputs)
        logger.info(f"[{op.action}] Creating {op.resource_type} '{op.node_id}'")
        try:
            physical_id, backend_outputs = self.backend.create(op.resource_type, resolved)
        except BackendError as e:
            raise BackendError(op.node_id, e.message, retryable=e.retryable) from e
        record = self._record(op, physical_id, resolved, backend_outputs)
        record.previous_ids = list(previous_ids)
        # Tainted until ready, so a timeout still leaves the id in state
        self._stage(stack_id, state, replace(record, tainted=True))
        self._wait_ready(op, physical_id)
        self._commit(stack_id, state, outputs, record)
        logger.info(f"[{op.action}] '{op.node_id}' ready as {physical_id}")

    def _create(self, stack_id: str, op: Operation, state: ProvisionedState,
                outputs: dict[str, dict[str, Any]]) -> None:
        self._provision(stack_id, op, state, outputs, previous_ids=[])

    def _update(self, stack_id: str, op: Operation, state: ProvisionedState,
                outputs: dict[str, dict[str, Any]]) -> None:
        record = op.change.record
        resolved = self._resolve(op, outputs)
        if record.previous_ids and hash_value(resolved) == record.applied_hash:
            logger.info(f"[update] '{op.node_id}' unchanged, {op.reason}")
            self._noop(stack_id, op, state)
            return
        logger.info(f"[update] Updating '{op.node_id}' ({record.physical_id}): {op.reason}")
        backend_outputs = self._with_retries(
            op, lambda: self.backend.update(record.physical_id, resolved))
        updated = self._record(op, record.physical_id, resolved, backend_outputs)
        updated.previous_ids = list(record.previous_ids)
        self._commit(stack_id, state, outputs, updated)

    def _replace(self, stack_id: str, op: Operation, state: ProvisionedState,
                 outputs: dict[str, dict[str, Any]]) -> None:
        record = op.change.record
        logger.info(f"[replace] Replacing '{op.node_id}' ({record.physical_id}): {op.reason}")
        self._provision(stack_id, op, state, outputs,
                        previous_ids=[*record.previous_ids, record.physical_id])

    def _retire(self, stack_id: str, op: Operation, state: ProvisionedState) -> None:
        with self._state_lock:
            record = state.get_record(op.node_id)
            previous = list(record.previous_ids)
        for physical_id in previous:
            if record.removal_policy == 'retain':
                logger.info(f"[{op.action}] Retaining previous instance {physical_id} "
                            f"of '{op.node_id}'")
            else:
                logger.info(f"[{op.action}] Deleting previous instance {physical_id} "
                            f"of '{op.node_id}'")
                self._with_retries(op, lambda: self.backend.delete(physical_id))
            with self._state_lock:
                record.previous_ids.remove(physical_id)
                self.store.save(stack_id, state)

    def _delete(self, stack_id: str, op: Operation, state: ProvisionedState,
                outputs: dict[str, dict[str, Any]]) -> str:
        record = op.change.record
        if op.change.retain:
            logger.info(f"[delete] Retaining '{op.node_id}' ({record.physical_id}), "
                        f"removing from state only")
            self._forget(stack_id, state, outputs, op.node_id)
            return 'retained'
        logger.info(f"[delete] Deleting '{op.node_id}' ({record.physical_id})")
        for physical_id in [record.physical_id, *record.previous_ids]:
            self._with_retries(op, lambda: self.backend.delete(physical_id))
        self._forget(stack_id, state, outputs, op.node_id)
        return 'deleted'

    def _noop(self, stack_id: str, op: Operation, state: ProvisionedState) -> None:
        """Keep already-known outputs; sync engine-side metadata if it changed."""
        node = op.change.node
        record = op.change.record
        if record is not None and record.removal_policy != node.removal_policy:
            with self._state_lock:
                record.removal_policy = node.removal_policy
                state.put(record)
                self.store.save(stack_id, state)
