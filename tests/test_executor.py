"""Tests for stack_opr.executor module.

Runs plans against the in-memory backend with sleeps disabled, so ordering,
failure isolation and state persistence are exercised without real
infrastructure.
"""

import threading
import time

import pytest

from backends.memory import MemoryBackend
from common import FAILED, NOT_ATTEMPTED, SKIPPED, SUCCEEDED
from conftest import web_nodes
from stack_opr.errors import BackendError, StalePlanError
from stack_opr.executor import (
    RUN_FAILED,
    RUN_INTERRUPTED,
    RUN_PARTIALLY_FAILED,
    RUN_SUCCEEDED,
    ApplyExecutor,
)
from stack_opr.graph import DependencyGraph
from stack_opr.model import ResourceNode, ref
from stack_opr.planner import synthesize, synthesize_destroy
from stack_opr.reconciler import CREATE, DELETE, NOOP, REPLACE, UPDATE, Reconciler, resolve_value


def _executor(backend, store, **kwargs):
    kwargs.setdefault('poll_interval', 0)
    kwargs.setdefault('retry_interval', 0)
    kwargs.setdefault('sleep', lambda seconds: None)
    return ApplyExecutor(backend=backend, store=store, **kwargs)


def _plan(backend, store, nodes, stack_id='web'):
    state = store.load(stack_id)
    graph = DependencyGraph(nodes)
    changes = Reconciler(backend).reconcile(graph, state)
    return synthesize(stack_id, graph, changes, state), state


def _run(backend, store, nodes, stack_id='web', executor=None, **kwargs):
    plan, state = _plan(backend, store, nodes, stack_id)
    executor = executor or _executor(backend, store)
    return plan, executor.apply(plan, state, **kwargs)


def _bucket(node_id, **attrs):
    attributes = {'name': node_id, 'bucket_name': f'{node_id}-bucket'}
    attributes.update(attrs)
    return ResourceNode(node_id, 'ObjectStore', attributes)


class EventBackend(MemoryBackend):
    """Memory backend that records start/end of every create, update and delete."""

    def __init__(self, delay=0.0, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay
        self.events = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._events_lock = threading.Lock()

    def _track(self, verb, key, call):
        with self._events_lock:
            self.events.append(('start', verb, key))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            return call()
        finally:
            with self._events_lock:
                self.in_flight -= 1
                self.events.append(('end', verb, key))

    def create(self, resource_type, attributes):
        return self._track('create', attributes.get('name'),
                           lambda: super(EventBackend, self).create(resource_type, attributes))

    def update(self, physical_id, attributes):
        return self._track('update', attributes.get('name'),
                           lambda: super(EventBackend, self).update(physical_id, attributes))

    def delete(self, physical_id):
        return self._track('delete', physical_id,
                           lambda: super(EventBackend, self).delete(physical_id))

    def index(self, marker, verb, key):
        return self.events.index((marker, verb, key))


def _referenced_ids(value):
    if isinstance(value, dict):
        return {pid for v in value.values() for pid in _referenced_ids(v)}
    if isinstance(value, list):
        return {pid for v in value for pid in _referenced_ids(v)}
    return {value} if isinstance(value, str) else set()


class ReferenceCheckingBackend(EventBackend):
    """Refuses to delete a resource another resource still points at."""

    def delete(self, physical_id):
        with self._lock:
            holders = [r.physical_id for r in self.resources.values()
                       if r.physical_id != physical_id
                       and physical_id in _referenced_ids(r.attributes)]
        if holders:
            raise BackendError(None, f"{physical_id} is still referenced by {holders[0]}")
        return super().delete(physical_id)


class TestApplyCreate:
    """Tests for applying a plan against empty state."""

    def test_creates_in_dependency_order(self, backend, store):
        _, result = _run(backend, store, web_nodes())

        assert result.status == RUN_SUCCEEDED
        assert [key for verb, key in backend.calls] == ['n1', 's1', 'f1', 'lb1', 'l1']
        assert all(r.status == SUCCEEDED for r in result.results.values())

    def test_references_resolved_to_physical_ids(self, backend, store):
        _, result = _run(backend, store, web_nodes())

        state = result.state
        n1_pid = state.get_record('n1').physical_id
        s1 = backend.resources[state.get_record('s1').physical_id]
        lb1 = backend.resources[state.get_record('lb1').physical_id]
        assert s1.attributes['network'] == n1_pid
        assert lb1.attributes['subnets'] == [state.get_record('s1').physical_id]
        assert lb1.attributes['targets'] == state.get_record('f1').physical_id

    def test_named_output_reference(self, backend, store):
        nodes = [
            ResourceNode('lb', 'LoadBalancer', {'name': 'lb', 'subnets': ['subnet-1']}),
            ResourceNode('dns', 'ObjectStore', {
                'name': 'dns', 'bucket_name': 'records', 'alias': ref('lb', 'dns_name'),
            }),
        ]
        _, result = _run(backend, store, nodes)

        lb_dns = result.state.get_record('lb').outputs['dns_name']
        dns = backend.resources[result.state.get_record('dns').physical_id]
        assert dns.attributes['alias'] == lb_dns

    def test_state_persisted(self, backend, store):
        _, result = _run(backend, store, web_nodes())

        loaded = store.load('web')
        assert set(loaded.records) == {'n1', 's1', 'f1', 'lb1', 'l1'}
        assert loaded.get_record('s1').dependencies == ['n1']
        assert loaded.get_record('n1').applied_hash
        # Two saves per create: tainted before the readiness wait, then ready
        assert loaded.serial == 10
        assert not any(r.tainted for r in loaded.records.values())

    def test_converges_to_noop(self, backend, store):
        _run(backend, store, web_nodes())
        calls_after_first = len(backend.calls)

        plan, result = _run(backend, store, web_nodes())

        assert all(op.action == NOOP for op in plan)
        assert result.status == RUN_SUCCEEDED
        assert len(backend.calls) == calls_after_first

    def test_readiness_polled(self, store):
        backend = MemoryBackend(ready_after_polls=2)
        sleeps = []
        executor = _executor(backend, store, sleep=sleeps.append)

        _, result = _run(backend, store, [_bucket('b1')], executor=executor)

        assert result.status == RUN_SUCCEEDED
        assert len(sleeps) == 2

    def test_readiness_timeout_fails_node(self, store):
        backend = MemoryBackend(ready_after_polls=100)
        executor = _executor(backend, store, ready_timeout=0)

        _, result = _run(backend, store, [_bucket('b1')], executor=executor)

        assert result.status == RUN_FAILED
        assert 'not ready' in result.results['b1'].message
        record = store.load('web').get_record('b1')
        assert record.tainted
        assert record.physical_id in backend.resources
        assert 'b1' not in store.load('web').known_outputs()

    def test_timed_out_resource_replaced_not_leaked(self, store):
        backend = MemoryBackend(ready_after_polls=100)
        _run(backend, store, [_bucket('b1')], executor=_executor(backend, store, ready_timeout=0))
        stuck = store.load('web').get_record('b1').physical_id
        backend.ready_after_polls = 0
        backend.resources[stuck].polls_until_ready = 0

        plan, result = _run(backend, store, [_bucket('b1')])

        assert plan.get('b1').action == REPLACE
        assert result.status == RUN_SUCCEEDED
        assert len(backend.resources) == 1
        assert stuck not in backend.resources
        record = store.load('web').get_record('b1')
        assert not record.tainted
        assert record.previous_ids == []

    def test_stale_fingerprint_rejected(self, backend, store):
        plan, state = _plan(backend, store, web_nodes())

        with pytest.raises(StalePlanError):
            _executor(backend, store).apply(plan, state, expected_fingerprint='0' * 64)
        assert backend.calls == []

    def test_matching_fingerprint_accepted(self, backend, store):
        plan, state = _plan(backend, store, web_nodes())
        result = _executor(backend, store).apply(plan, state, expected_fingerprint=plan.fingerprint)
        assert result.success


class TestFailureIsolation:
    """Tests for per-node failure handling."""

    def test_failed_node_skips_dependents(self, backend, store):
        backend.fail_on('create', 'n1', 'quota exceeded')
        nodes = web_nodes() + [_bucket('logs')]

        _, result = _run(backend, store, nodes)

        assert result.status == RUN_PARTIALLY_FAILED
        assert result.results['n1'].status == FAILED
        assert 'quota exceeded' in result.results['n1'].message
        for node_id in ('s1', 'f1', 'lb1', 'l1'):
            assert result.results[node_id].status == SKIPPED
        assert result.results['logs'].status == SUCCEEDED
        assert list(store.load('web').records) == ['logs']
        assert ('create', 's1') not in backend.calls

    def test_failure_report(self, backend, store):
        backend.fail_on('create', 'n1', 'quota exceeded')
        _, result = _run(backend, store, web_nodes())

        failures = result.failures
        assert failures[0].startswith('create n1:')
        assert "create s1: skipped (requires failed 'n1')" in failures

    def test_every_operation_failed(self, backend, store):
        backend.fail_on('create', 'a')
        backend.fail_on('create', 'b')

        _, result = _run(backend, store, [_bucket('a'), _bucket('b')])

        assert result.status == RUN_FAILED

    def test_rerun_retries_only_incomplete(self, backend, store):
        backend.fail_on('create', 'f1', times=1)
        _, first = _run(backend, store, web_nodes())
        assert first.status == RUN_PARTIALLY_FAILED

        plan, second = _run(backend, store, web_nodes())

        assert [(a, n) for a, n in plan.actions() if a != NOOP] == [
            (CREATE, 'f1'), (CREATE, 'lb1'), (CREATE, 'l1'),
        ]
        assert second.status == RUN_SUCCEEDED

    def test_result_to_dict(self, backend, store):
        backend.fail_on('create', 'n1')
        _, result = _run(backend, store, web_nodes()[:2])
        data = result.to_dict()
        assert data['status'] == RUN_PARTIALLY_FAILED
        assert data['operations'][0]['status'] == FAILED
        assert data['operations'][1]['status'] == SKIPPED


class TestReplaceAndUpdate:
    """Tests for replace/update execution."""

    def test_replace_then_dependent_update(self, store):
        backend = EventBackend()
        _run(backend, store, web_nodes(network_cidr='10.0.0.0/16'))
        old = store.load('web')
        old_n1 = old.get_record('n1').physical_id
        old_s1 = old.get_record('s1').physical_id
        backend.events.clear()

        plan, result = _run(backend, store, web_nodes(network_cidr='10.1.0.0/16'))

        assert plan.get('n1').action == REPLACE
        assert plan.get('f1').action == UPDATE
        assert result.status == RUN_SUCCEEDED
        new = result.state
        assert new.get_record('n1').physical_id != old_n1
        assert old_n1 not in backend.resources
        assert old_s1 not in backend.resources
        subnet = backend.resources[new.get_record('s1').physical_id]
        assert subnet.attributes['network'] == new.get_record('n1').physical_id
        fleet = backend.resources[new.get_record('f1').physical_id]
        assert fleet.attributes['subnet'] == new.get_record('s1').physical_id

    def test_replace_not_concurrent_with_dependents(self, store):
        backend = EventBackend(delay=0.01)
        _run(backend, store, web_nodes(network_cidr='10.0.0.0/16'))
        backend.events.clear()

        _run(backend, store, web_nodes(network_cidr='10.1.0.0/16'),
             executor=_executor(backend, store, max_concurrency=8))

        n1_done = backend.index('end', 'create', 'n1')
        s1_start = backend.index('start', 'create', 's1')
        s1_done = backend.index('end', 'create', 's1')
        f1_start = backend.index('start', 'update', 'f1')
        assert n1_done < s1_start
        assert s1_done < f1_start

    def test_replace_deletes_previous_instances_after_dependents(self, store):
        backend = ReferenceCheckingBackend()
        _run(backend, store, web_nodes(network_cidr='10.0.0.0/16'))
        old = store.load('web')
        old_n1 = old.get_record('n1').physical_id
        old_s1 = old.get_record('s1').physical_id
        backend.events.clear()

        _, result = _run(backend, store, web_nodes(network_cidr='10.1.0.0/16'))

        assert result.status == RUN_SUCCEEDED
        assert old_n1 not in backend.resources
        assert old_s1 not in backend.resources
        assert len(backend.resources) == 5
        assert backend.index('end', 'update', 'f1') < backend.index('start', 'delete', old_s1)
        assert backend.index('end', 'update', 'lb1') < backend.index('start', 'delete', old_s1)
        assert backend.index('end', 'delete', old_s1) < backend.index('start', 'delete', old_n1)
        assert all(not r.previous_ids for r in store.load('web').records.values())

    def test_failed_dependent_keeps_previous_instance(self, store):
        backend = ReferenceCheckingBackend()
        _run(backend, store, web_nodes(network_cidr='10.0.0.0/16'))
        old = store.load('web')
        old_n1 = old.get_record('n1').physical_id
        old_s1 = old.get_record('s1').physical_id
        backend.fail_on('update', old.get_record('f1').physical_id, 'invalid subnet', times=1)

        _, result = _run(backend, store, web_nodes(network_cidr='10.1.0.0/16'))

        assert result.status == RUN_PARTIALLY_FAILED
        assert result.results['f1'].status == FAILED
        assert result.results['s1'].status == SKIPPED
        assert result.results['s1'].message == "previous instance kept: requires failed 'f1'"
        assert old_s1 in backend.resources
        assert store.load('web').get_record('s1').previous_ids == [old_s1]

        plan, rerun = _run(backend, store, web_nodes(network_cidr='10.1.0.0/16'))

        assert plan.get('n1').action == UPDATE
        assert plan.get('f1').action == UPDATE
        assert plan.get('f1').reason == 'referenced outputs changed'
        assert rerun.status == RUN_SUCCEEDED
        assert old_n1 not in backend.resources
        assert old_s1 not in backend.resources
        assert len(backend.resources) == 5
        state = store.load('web')
        fleet = backend.resources[state.get_record('f1').physical_id]
        assert fleet.attributes['subnet'] == state.get_record('s1').physical_id

        plan, _ = _run(backend, store, web_nodes(network_cidr='10.1.0.0/16'))
        assert all(op.action == NOOP for op in plan)

    def test_update_in_place(self, backend, store):
        _run(backend, store, web_nodes(fleet_max=4))
        pid = store.load('web').get_record('f1').physical_id

        plan, result = _run(backend, store, web_nodes(fleet_max=6))

        assert [op.node_id for op in plan if op.is_mutating] == ['f1']
        assert result.state.get_record('f1').physical_id == pid
        assert backend.resources[pid].attributes['max_size'] == 6

    def test_retryable_update_retried(self, backend, store):
        _run(backend, store, web_nodes(fleet_max=4))
        pid = store.load('web').get_record('f1').physical_id
        backend.fail_on('update', pid, 'throttled', retryable=True, times=1)
        sleeps = []

        _, result = _run(backend, store, web_nodes(fleet_max=6),
                         executor=_executor(backend, store, max_retries=2, sleep=sleeps.append))

        assert result.status == RUN_SUCCEEDED
        assert backend.calls.count(('update', pid)) == 2
        assert sleeps == [0]

    def test_non_retryable_update_not_retried(self, backend, store):
        _run(backend, store, web_nodes(fleet_max=4))
        before = store.load('web').get_record('f1')
        pid = before.physical_id
        backend.fail_on('update', pid, 'invalid size')

        _, result = _run(backend, store, web_nodes(fleet_max=6))

        assert result.status == RUN_FAILED
        assert backend.calls.count(('update', pid)) == 1
        # Failed update leaves the previous record in place
        assert store.load('web').get_record('f1').attr_hash == before.attr_hash


class TestDelete:
    """Tests for orphan deletion and destroy."""

    def test_orphans_deleted(self, backend, store):
        _run(backend, store, web_nodes())
        before = store.load('web')
        lb_pid = before.get_record('lb1').physical_id
        l_pid = before.get_record('l1').physical_id

        _, result = _run(backend, store, web_nodes()[:3])

        assert result.status == RUN_SUCCEEDED
        deletes = [key for verb, key in backend.calls if verb == 'delete']
        assert deletes == [l_pid, lb_pid]
        assert set(store.load('web').records) == {'n1', 's1', 'f1'}

    def test_retained_orphan_only_forgotten(self, backend, store):
        bucket = ResourceNode('b1', 'ObjectStore', {'name': 'b1', 'bucket_name': 'keep'},
                              removal_policy='retain')
        _run(backend, store, [bucket])
        pid = store.load('web').get_record('b1').physical_id

        _, result = _run(backend, store, [])

        assert result.results['b1'].message == 'retained'
        assert ('delete', pid) not in backend.calls
        assert pid in backend.resources
        assert 'b1' not in store.load('web')

    def test_policy_change_recorded_without_backend_call(self, backend, store):
        _run(backend, store, [_bucket('b1')])
        calls = len(backend.calls)
        retained = ResourceNode('b1', 'ObjectStore', dict(_bucket('b1').attributes),
                                removal_policy='retain')

        plan, _ = _run(backend, store, [retained])

        assert plan.get('b1').action == NOOP
        assert len(backend.calls) == calls
        assert store.load('web').get_record('b1').removal_policy == 'retain'

    def test_destroy_all(self, backend, store):
        _run(backend, store, web_nodes())
        state = store.load('web')
        plan = synthesize_destroy('web', state)

        result = _executor(backend, store).apply(plan, state)

        assert result.status == RUN_SUCCEEDED
        assert backend.resources == {}
        assert store.load('web').is_empty
        assert all(op.action == DELETE for op in plan)


class TestConcurrency:
    """Tests for concurrent scheduling and cancellation."""

    def test_independent_operations_run_concurrently(self, store):
        barrier = threading.Barrier(2, timeout=5)

        class BarrierBackend(MemoryBackend):
            def create(self, resource_type, attributes):
                barrier.wait()
                return super().create(resource_type, attributes)

        backend = BarrierBackend()
        _, result = _run(backend, store, [_bucket('a'), _bucket('b')],
                         executor=_executor(backend, store, max_concurrency=2))

        assert result.status == RUN_SUCCEEDED

    def test_concurrency_bounded(self, store):
        backend = EventBackend(delay=0.01)
        nodes = [_bucket(f'b{i}') for i in range(6)]

        _, result = _run(backend, store, nodes,
                         executor=_executor(backend, store, max_concurrency=2))

        assert result.status == RUN_SUCCEEDED
        assert backend.max_in_flight <= 2

    def test_cancel_interrupts_after_in_flight(self, store):
        executor_ref = {}

        class CancellingBackend(MemoryBackend):
            def create(self, resource_type, attributes):
                result = super().create(resource_type, attributes)
                if attributes.get('name') == 'n1':
                    executor_ref['executor'].cancel()
                return result

        backend = CancellingBackend()
        executor = _executor(backend, store)
        executor_ref['executor'] = executor

        _, result = _run(backend, store, web_nodes(), executor=executor)

        assert result.status == RUN_INTERRUPTED
        assert result.results['n1'].status == SUCCEEDED
        assert result.results['s1'].status == NOT_ATTEMPTED
        assert list(store.load('web').records) == ['n1']


class TestResolveValue:
    """Tests for reference resolution."""

    def test_nested(self):
        outputs = {'a': {'id': 'a-1', 'arn': 'arn:a'}}
        value = {'x': [ref('a'), {'y': ref('a', 'arn')}], 'z': 3}
        assert resolve_value(value, outputs, 'n') == {'x': ['a-1', {'y': 'arn:a'}], 'z': 3}

    def test_missing_output(self):
        with pytest.raises(BackendError, match="Output 'a.dns_name' is not available"):
            resolve_value(ref('a', 'dns_name'), {'a': {'id': 'a-1'}}, 'n')
