"""Tests for stack_opr.engine module."""

import pytest

from backends.memory import MemoryBackend
from config import EngineConfig
from stack import Stack, StackLoader
from stack_opr.engine import StackEngine, lock_owner, resolve_stack_outputs
from stack_opr.errors import CycleError, StalePlanError, StateLockError, ValidationError
from stack_opr.executor import RUN_PARTIALLY_FAILED, RUN_SUCCEEDED
from stack_opr.model import StackOutput, ref
from stack_opr.reconciler import CREATE, DELETE, NOOP, UPDATE
from stack_opr.state import NodeRecord, ProvisionedState


@pytest.fixture
def engine(tmp_path):
    config = EngineConfig(
        state_dir=tmp_path / 'state',
        poll_interval=0,
        ready_timeout=5,
        max_retries=0,
        retry_interval=0,
    )
    return StackEngine.from_config(config, MemoryBackend())


@pytest.fixture
def web_stack(stack_file):
    return StackLoader().load_file(stack_file)


class TestPlan:
    """Tests for StackEngine.plan."""

    def test_initial_plan_creates(self, engine, web_stack):
        plan = engine.plan(web_stack)
        assert plan.actions() == [(CREATE, 'vpc'), (CREATE, 'subnet'), (CREATE, 'lb')]
        assert engine.backend.calls == []
        assert not engine.store.exists('web')

    def test_validation_error(self, engine):
        stack = Stack.from_dict({'name': 'bad', 'resources': [{'id': 'x', 'type': 'Teleporter'}]})
        with pytest.raises(ValidationError):
            engine.plan(stack)

    def test_cycle_error(self, engine):
        stack = Stack.from_dict({'name': 'loop', 'resources': [
            {'id': 'a', 'type': 'SecurityGroup', 'attributes': {'network': {'ref': 'b'}}},
            {'id': 'b', 'type': 'SecurityGroup', 'attributes': {'network': {'ref': 'a'}}},
        ]})
        with pytest.raises(CycleError):
            engine.plan(stack)
        assert engine.backend.calls == []


class TestApply:
    """Tests for StackEngine.apply."""

    def test_immutable_attributes_asked_once_per_type(self, tmp_path, web_stack):
        lookups = []

        class CountingBackend(MemoryBackend):
            def immutable_attributes(self, resource_type):
                lookups.append(resource_type)
                return super().immutable_attributes(resource_type)

        config = EngineConfig(state_dir=tmp_path / 'state', poll_interval=0, retry_interval=0)
        engine = StackEngine.from_config(config, CountingBackend())
        engine.apply(web_stack)

        assert lookups == ['LoadBalancer', 'Network', 'Subnet']

    def test_apply_then_converged(self, engine, web_stack):
        result = engine.apply(web_stack)

        assert result.status == RUN_SUCCEEDED
        assert result.outputs['lb_dns'].endswith('.example.internal')
        assert len(engine.store.load('web')) == 3
        assert all(action == NOOP for action, _ in engine.plan(web_stack).actions())

    def test_lock_released_after_apply(self, engine, web_stack):
        engine.apply(web_stack)
        with engine.store.lock('web'):
            pass

    def test_locked_stack_rejected(self, engine, web_stack):
        with engine.store.lock('web', owner='someone-else'):
            with pytest.raises(StateLockError):
                engine.apply(web_stack)
        assert engine.backend.calls == []

    def test_expected_fingerprint(self, engine, web_stack):
        fingerprint = engine.plan(web_stack).fingerprint
        assert engine.apply(web_stack, expected_fingerprint=fingerprint).success

    def test_stale_fingerprint(self, engine, web_stack):
        with pytest.raises(StalePlanError):
            engine.apply(web_stack, expected_fingerprint='0' * 64)
        assert engine.backend.calls == []

    def test_change_and_remove(self, engine, web_stack):
        engine.apply(web_stack)
        data = web_stack.to_dict()
        data['resources'][2]['attributes']['idle_timeout'] = 120
        engine.apply(Stack.from_dict(data))

        data['resources'].pop()
        data.pop('outputs')
        plan = engine.plan(Stack.from_dict(data))
        assert plan.get('lb').action == DELETE

        data['resources'][1]['attributes']['tags'] = {'tier': 'public'}
        plan = engine.plan(Stack.from_dict(data))
        assert plan.get('subnet').action == UPDATE

    def test_failure_keeps_completed_state(self, engine, web_stack):
        engine.backend.fail_on('create', 'lb', 'quota exceeded')
        result = engine.apply(web_stack)

        assert result.status == RUN_PARTIALLY_FAILED
        assert result.outputs['lb_dns'] is None
        assert sorted(engine.store.load('web').records) == ['subnet', 'vpc']

        engine.backend._failures.clear()
        retry = engine.apply(web_stack)
        assert retry.success
        assert [r.action for r in retry.results.values()] == [NOOP, NOOP, CREATE]


class TestDestroy:
    """Tests for StackEngine.destroy."""

    def test_destroy_removes_state(self, engine, web_stack):
        engine.apply(web_stack)
        plan = engine.plan_destroy('web')
        assert [node_id for _, node_id in plan.actions()] == ['lb', 'subnet', 'vpc']

        result = engine.destroy('web', expected_fingerprint=plan.fingerprint)

        assert result.success
        assert engine.backend.resources == {}
        assert not engine.store.exists('web')

    def test_destroy_empty_stack(self, engine):
        assert engine.destroy('nothing').success


class TestOutputs:
    """Tests for stack output resolution."""

    def test_resolve_from_state(self):
        state = ProvisionedState('web')
        state.put(NodeRecord('lb', 'LoadBalancer', 'h', 'lb-1', outputs={'dns_name': 'lb.x'}))
        outputs = [
            StackOutput('dns', ref('lb', 'dns_name')),
            StackOutput('lb_id', ref('lb')),
            StackOutput('missing', ref('ghost')),
        ]
        assert resolve_stack_outputs(outputs, state) == {
            'dns': 'lb.x', 'lb_id': 'lb-1', 'missing': None,
        }

    def test_engine_outputs(self, engine, web_stack):
        assert engine.outputs(web_stack) == {'lb_dns': None}
        engine.apply(web_stack)
        assert engine.outputs(web_stack)['lb_dns'] is not None


def test_lock_owner_format():
    owner = lock_owner()
    assert '@' in owner
    assert owner.rsplit(':', 1)[1].isdigit()
