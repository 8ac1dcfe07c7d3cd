"""Stack declaration loading.

A stack file declares resources as a flat list; dependencies are expressed
only through explicit references:

    name: web-tier
    description: Public web tier
    resources:
      - id: vpc
        type: Network
        attributes:
          cidr: 10.0.0.0/16
      - id: subnet-a
        type: Subnet
        attributes:
          network: {ref: vpc}
          cidr: 10.0.1.0/24
    outputs:
      vpc_id: {ref: vpc}
      lb_address: {ref: lb, output: dns_name, description: Public address}

No templating happens here; attribute values are passed through as-is apart
from reference decoding.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError
from stack_opr.model import Reference, ResourceNode, StackOutput, validate_nodes

logger = logging.getLogger(__name__)

STACK_NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')
STACK_FILE_SUFFIXES = ('.yaml', '.yml', '.json')


@dataclass
class Stack:
    """A named stack declaration.

    Attributes:
        name: Stack identifier (also the state key)
        nodes: Declared resources in declaration order
        outputs: Stack-scoped outputs
        description: Human-readable description
        source_path: File the stack was loaded from
    """
    name: str
    nodes: list[ResourceNode] = field(default_factory=list)
    outputs: list[StackOutput] = field(default_factory=list)
    description: str = ''
    source_path: Optional[Path] = None

    def get_node(self, node_id: str) -> Optional[ResourceNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def validate(self) -> None:
        """Validate nodes and outputs.

        Raises:
            ValidationError: Listing every violation found
        """
        validate_nodes(self.nodes, self.outputs)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'name': self.name}
        if self.description:
            d['description'] = self.description
        d['resources'] = [node.to_dict() for node in self.nodes]
        if self.outputs:
            d['outputs'] = {}
            for output in self.outputs:
                entry = output.reference.to_dict()
                if output.description:
                    entry['description'] = output.description
                d['outputs'][output.name] = entry
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Stack':
        """Create Stack from dictionary.

        Only the document shape is checked here; resource semantics are
        checked by validate().

        Raises:
            ConfigError: If the document shape is invalid
        """
        name = data.get('name')
        if not name or not isinstance(name, str):
            raise ConfigError("Stack requires 'name'")
        if not STACK_NAME_PATTERN.match(name):
            raise ConfigError(
                f"Invalid stack name '{name}': use letters, digits, '.', '_' or '-'"
            )

        resources = data.get('resources') or []
        if not isinstance(resources, list):
            raise ConfigError(f"Stack '{name}': 'resources' must be a list")

        nodes = []
        for i, entry in enumerate(resources):
            if not isinstance(entry, dict):
                raise ConfigError(f"Stack '{name}': resource {i} must be a mapping")
            for key in ('id', 'type'):
                if key not in entry:
                    raise ConfigError(f"Stack '{name}': resource {i} requires '{key}'")
            attributes = entry.get('attributes') or {}
            if not isinstance(attributes, dict):
                raise ConfigError(
                    f"Stack '{name}': attributes of '{entry['id']}' must be a mapping"
                )
            nodes.append(ResourceNode.from_dict(entry))

        raw_outputs = data.get('outputs') or {}
        if not isinstance(raw_outputs, dict):
            raise ConfigError(f"Stack '{name}': 'outputs' must be a mapping")
        outputs = []
        for output_name, entry in raw_outputs.items():
            if not isinstance(entry, dict) or not entry.get('ref'):
                raise ConfigError(
                    f"Stack '{name}': output '{output_name}' must be {{ref: <node>, output: <name>}}"
                )
            outputs.append(StackOutput(
                name=str(output_name),
                reference=Reference.from_dict(entry),
                description=entry.get('description', ''),
            ))

        return cls(
            name=name,
            nodes=nodes,
            outputs=outputs,
            description=data.get('description', ''),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Stack':
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid stack JSON: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Stack JSON must be an object")
        return cls.from_dict(data)


class StackLoader:
    """Loads stack files from a directory."""

    def __init__(self, stacks_dir: Optional[str] = None):
        self.stacks_dir = Path(stacks_dir) if stacks_dir else Path.cwd() / 'stacks'

    def list_stacks(self) -> list[str]:
        """List stack names available in stacks_dir."""
        if not self.stacks_dir.is_dir():
            return []
        return sorted({
            f.stem for f in self.stacks_dir.iterdir()
            if f.is_file() and f.suffix in STACK_FILE_SUFFIXES
        })

    def load(self, name: str) -> Stack:
        """Load stack by name.

        Raises:
            ConfigError: If stack not found or invalid
        """
        for suffix in STACK_FILE_SUFFIXES:
            path = self.stacks_dir / f'{name}{suffix}'
            if path.exists():
                return self.load_file(path)
        available = self.list_stacks()
        raise ConfigError(
            f"Stack '{name}' not found in {self.stacks_dir}. "
            f"Available: {', '.join(available) if available else 'none'}"
        )

    def load_file(self, path: Path) -> Stack:
        """Load stack from a YAML or JSON file.

        Raises:
            ConfigError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigError(f"Stack file not found: {path}")

        try:
            with open(path, encoding='utf-8') as f:
                if path.suffix == '.json':
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigError(f"Invalid stack file {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Stack {path} must be an object (dict)")

        stack = Stack.from_dict(data, source_path=path)
        logger.debug(f"Loaded stack '{stack.name}' ({len(stack.nodes)} resources) from {path}")
        return stack


def load_stack(
    name: Optional[str] = None,
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
    stacks_dir: Optional[str] = None,
) -> Stack:
    """Load a stack from various sources.

    Priority:
    1. json_str - Inline JSON
    2. file_path - Specific file path
    3. name - Named stack from stacks_dir

    Raises:
        ConfigError: If no source is given, or the stack is missing or invalid
    """
    if json_str:
        return Stack.from_json(json_str)
    loader = StackLoader(stacks_dir)
    if file_path:
        return loader.load_file(Path(file_path))
    if name:
        return loader.load(name)
    raise ConfigError("No stack given: use --stack NAME or --stack-file PATH")
