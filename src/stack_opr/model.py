"""Resource model for stack declarations.

A stack is a flat list of ResourceNodes. Attributes hold literals or
References to another node's output; references are the only source of
dependency edges.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from stack_opr.errors import ValidationError

logger = logging.getLogger(__name__)

# Closed set of resource type tags
RESOURCE_TYPES = (
    'Network',
    'Subnet',
    'SecurityGroup',
    'IdentityRole',
    'ComputeInstance',
    'ComputeFleet',
    'LoadBalancer',
    'Listener',
    'ObjectStore',
)

REQUIRED_ATTRIBUTES: dict[str, tuple[str, ...]] = {
    'Network': ('cidr',),
    'Subnet': ('network', 'cidr'),
    'SecurityGroup': ('network',),
    'IdentityRole': ('assumed_by',),
    'ComputeInstance': ('subnet', 'image', 'instance_type'),
    'ComputeFleet': ('subnet', 'image', 'instance_type', 'min_size', 'max_size'),
    'LoadBalancer': ('subnets',),
    'Listener': ('load_balancer', 'port'),
    'ObjectStore': ('bucket_name',),
}

REMOVAL_POLICIES = ('destroy', 'retain')

# Output name that always resolves to the backend-assigned physical id
PHYSICAL_ID_OUTPUT = 'id'


@dataclass(frozen=True)
class Reference:
    """Pointer from an attribute to another node's output.

    Attributes:
        node_id: Identifier of the referenced node
        output: Output name on the referenced node ('id' = physical id)
    """
    node_id: str
    output: str = PHYSICAL_ID_OUTPUT

    @classmethod
    def from_dict(cls, data: dict) -> 'Reference':
        """Create Reference from {'ref': node_id, 'output': name}."""
        return cls(node_id=data['ref'], output=data.get('output', PHYSICAL_ID_OUTPUT))

    def to_dict(self) -> dict:
        return {'ref': self.node_id, 'output': self.output}

    def __str__(self) -> str:
        return f"{self.node_id}.{self.output}"


def ref(node_id: str, output: str = PHYSICAL_ID_OUTPUT) -> Reference:
    """Shorthand for building a Reference in code."""
    return Reference(node_id=node_id, output=output)


def is_reference_dict(value: Any) -> bool:
    """True if value is a well-formed serialized reference."""
    if not isinstance(value, dict) or 'ref' not in value:
        return False
    if set(value) - {'ref', 'output'}:
        return False
    if not isinstance(value['ref'], str) or not value['ref']:
        return False
    return isinstance(value.get('output', PHYSICAL_ID_OUTPUT), str)


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference found in an attribute value, depth first."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, dict):
        for key in sorted(value, key=str):
            yield from iter_references(value[key])
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


@dataclass
class ResourceNode:
    """A declared resource in a stack.

    Attributes:
        id: Identifier, unique within the stack
        type: Type tag from RESOURCE_TYPES
        attributes: Attribute name -> literal or Reference
        outputs: Output name -> value (populated after apply)
        removal_policy: 'destroy' or 'retain' (retain skips backend delete)
    """
    id: str
    type: str
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    removal_policy: str = 'destroy'

    def references(self) -> list[tuple[str, Reference]]:
        """Return (attribute_name, Reference) pairs in attribute order."""
        found: list[tuple[str, Reference]] = []
        for name, value in self.attributes.items():
            for reference in iter_references(value):
                found.append((name, reference))
        return found

    def dependency_ids(self) -> list[str]:
        """Referenced node ids, deduplicated, in first-seen order."""
        seen: dict[str, None] = {}
        for _, reference in self.references():
            seen.setdefault(reference.node_id, None)
        return list(seen)

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceNode':
        """Create ResourceNode from dictionary.

        Well-formed {'ref': ..., 'output': ...} mappings anywhere inside
        attribute values become References.
        """
        return cls(
            id=data['id'],
            type=data['type'],
            attributes={k: _decode_value(v) for k, v in (data.get('attributes') or {}).items()},
            removal_policy=data.get('removal_policy', 'destroy'),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {
            'id': self.id,
            'type': self.type,
            'attributes': {k: _encode_value(v) for k, v in self.attributes.items()},
        }
        if self.removal_policy != 'destroy':
            d['removal_policy'] = self.removal_policy
        return d


@dataclass
class StackOutput:
    """A stack-scoped output, e.g. the load balancer's public address."""
    name: str
    reference: Reference
    description: str = ''


def _decode_value(value: Any) -> Any:
    if is_reference_dict(value):
        return Reference.from_dict(value)
    if isinstance(value, dict):
        return {k: _decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode_value(v) for v in value]
    return value


def _encode_value(value: Any) -> Any:
    if isinstance(value, Reference):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode_value(v) for v in value]
    return value


def _value_violations(node_id: str, path: str, value: Any) -> list[str]:
    """Check an attribute value is a literal or a well-formed Reference."""
    if isinstance(value, Reference):
        if not isinstance(value.node_id, str) or not value.node_id:
            return [f"Node '{node_id}' attribute '{path}' has a reference with no target"]
        if not isinstance(value.output, str) or not value.output:
            return [f"Node '{node_id}' attribute '{path}' has a reference with no output name"]
        return []
    if value is None or isinstance(value, (str, bool, int, float)):
        return []
    if isinstance(value, dict):
        if 'ref' in value:
            return [f"Node '{node_id}' attribute '{path}' is a malformed reference: {value!r}"]
        violations = []
        for key, item in value.items():
            if not isinstance(key, str):
                violations.append(f"Node '{node_id}' attribute '{path}' has non-string key {key!r}")
                continue
            violations.extend(_value_violations(node_id, f"{path}.{key}", item))
        return violations
    if isinstance(value, (list, tuple)):
        violations = []
        for i, item in enumerate(value):
            violations.extend(_value_violations(node_id, f"{path}[{i}]", item))
        return violations
    return [
        f"Node '{node_id}' attribute '{path}' has unsupported value type "
        f"{type(value).__name__}"
    ]


def validate_nodes(
    nodes: list[ResourceNode],
    outputs: Optional[list[StackOutput]] = None,
) -> None:
    """Validate a stack declaration.

    Checks:
    - Unique node identifiers
    - Type tag in the closed set
    - Required attributes present for the type
    - Attribute values are literals or well-formed References
    - References resolve to declared nodes (no self references)
    - Stack outputs reference declared nodes

    Args:
        nodes: Declared resource nodes
        outputs: Optional stack outputs

    Raises:
        ValidationError: Listing every violation found
    """
    violations: list[str] = []

    seen: set[str] = set()
    for i, node in enumerate(nodes):
        if not isinstance(node.id, str) or not node.id:
            violations.append(f"Resource {i} has an empty identifier")
            continue
        if node.id in seen:
            violations.append(f"Duplicate node identifier: '{node.id}'")
        seen.add(node.id)

    for node in nodes:
        if node.type not in RESOURCE_TYPES:
            violations.append(
                f"Node '{node.id}' has unknown type '{node.type}'. "
                f"Supported: {', '.join(RESOURCE_TYPES)}"
            )
        else:
            for attr in REQUIRED_ATTRIBUTES[node.type]:
                if node.attributes.get(attr) is None:
                    violations.append(
                        f"Node '{node.id}' ({node.type}) missing required attribute '{attr}'"
                    )

        if node.removal_policy not in REMOVAL_POLICIES:
            violations.append(
                f"Node '{node.id}' has invalid removal_policy '{node.removal_policy}'"
            )

        for name, value in node.attributes.items():
            violations.extend(_value_violations(node.id, name, value))

        for name, reference in node.references():
            if reference.node_id == node.id:
                violations.append(f"Node '{node.id}' attribute '{name}' references itself")
            elif isinstance(reference.node_id, str) and reference.node_id \
                    and reference.node_id not in seen:
                violations.append(
                    f"Node '{node.id}' attribute '{name}' references unknown node "
                    f"'{reference.node_id}'"
                )

        if node.type == 'ComputeFleet':
            min_size = node.attributes.get('min_size')
            max_size = node.attributes.get('max_size')
            if isinstance(min_size, int) and isinstance(max_size, int) and min_size > max_size:
                violations.append(
                    f"Node '{node.id}' has min_size {min_size} greater than max_size {max_size}"
                )

    for output in outputs or []:
        if output.reference.node_id not in seen:
            violations.append(
                f"Stack output '{output.name}' references unknown node "
                f"'{output.reference.node_id}'"
            )

    if violations:
        raise ValidationError(violations)
    logger.debug(f"Validated {len(nodes)} resource nodes")
