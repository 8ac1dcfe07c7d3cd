"""Tests for stack_opr.model module."""

import pytest

from stack_opr.errors import ValidationError
from stack_opr.model import (
    Reference,
    ResourceNode,
    StackOutput,
    is_reference_dict,
    iter_references,
    ref,
    validate_nodes,
)


class TestReference:
    """Tests for Reference parsing and formatting."""

    def test_default_output_is_physical_id(self):
        assert ref('vpc') == Reference('vpc', 'id')

    def test_from_dict(self):
        r = Reference.from_dict({'ref': 'lb', 'output': 'dns_name'})
        assert r.node_id == 'lb'
        assert r.output == 'dns_name'

    def test_str(self):
        assert str(ref('lb', 'dns_name')) == 'lb.dns_name'

    def test_is_reference_dict(self):
        assert is_reference_dict({'ref': 'a'})
        assert is_reference_dict({'ref': 'a', 'output': 'arn'})
        assert not is_reference_dict({'ref': ''})
        assert not is_reference_dict({'ref': 'a', 'extra': 1})
        assert not is_reference_dict({'name': 'a'})
        assert not is_reference_dict('a')


class TestResourceNode:
    """Tests for ResourceNode references and serialization."""

    def test_references_found_in_nested_values(self):
        node = ResourceNode('lb', 'LoadBalancer', {
            'subnets': [ref('a'), ref('b')],
            'tags': {'owner': 'web'},
            'targets': {'fleet': ref('f1')},
        })
        found = node.references()
        assert ('subnets', ref('a')) in found
        assert ('subnets', ref('b')) in found
        assert ('targets', ref('f1')) in found
        assert node.dependency_ids() == ['a', 'b', 'f1']

    def test_dependency_ids_deduplicated(self):
        node = ResourceNode('x', 'ComputeInstance', {
            'subnet': ref('s1'), 'security_groups': [ref('s1', 'arn')],
        })
        assert node.dependency_ids() == ['s1']

    def test_iter_references_sorted_dict_keys(self):
        value = {'b': ref('second'), 'a': ref('first')}
        assert [r.node_id for r in iter_references(value)] == ['first', 'second']

    def test_from_dict_decodes_references(self):
        node = ResourceNode.from_dict({
            'id': 's1',
            'type': 'Subnet',
            'attributes': {'network': {'ref': 'n1'}, 'cidr': '10.0.1.0/24'},
        })
        assert node.attributes['network'] == ref('n1')
        assert node.removal_policy == 'destroy'

    def test_to_dict_roundtrip_keeps_policy(self):
        node = ResourceNode('b', 'ObjectStore', {'bucket_name': 'b'}, removal_policy='retain')
        data = node.to_dict()
        assert data['removal_policy'] == 'retain'
        assert ResourceNode.from_dict(data) == node


class TestValidateNodes:
    """Tests for validate_nodes()."""

    def test_valid_stack(self):
        validate_nodes([
            ResourceNode('n1', 'Network', {'cidr': '10.0.0.0/16'}),
            ResourceNode('s1', 'Subnet', {'network': ref('n1'), 'cidr': '10.0.1.0/24'}),
        ])

    def test_collects_every_violation(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_nodes([
                ResourceNode('n1', 'Network', {}),
                ResourceNode('n1', 'Network', {'cidr': '10.0.0.0/16'}),
                ResourceNode('x', 'Teleporter', {}),
            ])
        violations = exc_info.value.violations
        assert any("missing required attribute 'cidr'" in v for v in violations)
        assert any("Duplicate node identifier: 'n1'" in v for v in violations)
        assert any("unknown type 'Teleporter'" in v for v in violations)
        assert exc_info.value.code == 'E100'

    def test_none_counts_as_missing(self):
        with pytest.raises(ValidationError, match="missing required attribute 'bucket_name'"):
            validate_nodes([ResourceNode('b', 'ObjectStore', {'bucket_name': None})])

    def test_unknown_reference(self):
        with pytest.raises(ValidationError, match="references unknown node 'ghost'"):
            validate_nodes([
                ResourceNode('s1', 'Subnet', {'network': ref('ghost'), 'cidr': '10.0.1.0/24'}),
            ])

    def test_self_reference(self):
        with pytest.raises(ValidationError, match='references itself'):
            validate_nodes([
                ResourceNode('sg', 'SecurityGroup', {'network': ref('sg')}),
            ])

    def test_malformed_reference(self):
        with pytest.raises(ValidationError, match='malformed reference'):
            validate_nodes([
                ResourceNode('s1', 'Subnet', {'network': {'ref': 'n1', 'bogus': 1}, 'cidr': 'x'}),
            ])

    def test_unsupported_value_type(self):
        with pytest.raises(ValidationError, match='unsupported value type'):
            validate_nodes([ResourceNode('n1', 'Network', {'cidr': object()})])

    def test_invalid_removal_policy(self):
        with pytest.raises(ValidationError, match="invalid removal_policy 'keep'"):
            validate_nodes([
                ResourceNode('b', 'ObjectStore', {'bucket_name': 'b'}, removal_policy='keep'),
            ])

    def test_fleet_size_bounds(self):
        with pytest.raises(ValidationError, match='min_size 5 greater than max_size 2'):
            validate_nodes([
                ResourceNode('n1', 'Network', {'cidr': '10.0.0.0/16'}),
                ResourceNode('s1', 'Subnet', {'network': ref('n1'), 'cidr': '10.0.1.0/24'}),
                ResourceNode('f1', 'ComputeFleet', {
                    'subnet': ref('s1'), 'image': 'img', 'instance_type': 't',
                    'min_size': 5, 'max_size': 2,
                }),
            ])

    def test_stack_output_unknown_node(self):
        with pytest.raises(ValidationError, match="Stack output 'dns' references unknown node 'lb'"):
            validate_nodes(
                [ResourceNode('n1', 'Network', {'cidr': '10.0.0.0/16'})],
                [StackOutput('dns', ref('lb', 'dns_name'))],
            )

    def test_empty_identifier(self):
        with pytest.raises(ValidationError, match='empty identifier'):
            validate_nodes([ResourceNode('', 'Network', {'cidr': '10.0.0.0/16'})])
