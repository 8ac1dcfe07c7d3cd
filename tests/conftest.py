"""Shared pytest fixtures for stackdriver tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from backends.memory import MemoryBackend
from stack_opr.model import ResourceNode, ref
from stack_opr.state import StateStore


def web_nodes(fleet_max=4, network_cidr='10.0.0.0/16'):
    """Network -> Subnet -> ComputeFleet -> LoadBalancer -> Listener topology."""
    return [
        ResourceNode('n1', 'Network', {'name': 'n1', 'cidr': network_cidr}),
        ResourceNode('s1', 'Subnet', {'name': 's1', 'network': ref('n1'), 'cidr': '10.0.1.0/24'}),
        ResourceNode('f1', 'ComputeFleet', {
            'name': 'f1', 'subnet': ref('s1'), 'image': 'linux-2',
            'instance_type': 'small', 'min_size': 2, 'max_size': fleet_max,
        }),
        ResourceNode('lb1', 'LoadBalancer', {'name': 'lb1', 'subnets': [ref('s1')], 'targets': ref('f1')}),
        ResourceNode('l1', 'Listener', {'name': 'l1', 'load_balancer': ref('lb1'), 'port': 80}),
    ]


@pytest.fixture
def backend():
    """In-memory backend with default immutable attributes."""
    return MemoryBackend()


@pytest.fixture
def store(tmp_path):
    """State store rooted in a temp directory."""
    return StateStore(tmp_path / 'state')


@pytest.fixture
def stack_file(tmp_path):
    """Write a small stack YAML file and return its path."""
    path = tmp_path / 'web.yaml'
    path.write_text("""
name: web
description: test stack
resources:
  - id: vpc
    type: Network
    attributes:
      name: vpc
      cidr: 10.0.0.0/16
  - id: subnet
    type: Subnet
    attributes:
      name: subnet
      network: {ref: vpc}
      cidr: 10.0.1.0/24
  - id: lb
    type: LoadBalancer
    attributes:
      name: lb
      subnets: [{ref: subnet}]
outputs:
  lb_dns:
    ref: lb
    output: dns_name
    description: Public address
""")
    return path


@pytest.fixture
def config_file(tmp_path):
    """Write an engine config using the memory backend."""
    path = tmp_path / 'stackdriver.yaml'
    path.write_text("""
state_dir: state
max_concurrency: 2
poll_interval: 0
ready_timeout: 5
max_retries: 1
retry_interval: 0
backend:
  type: memory
""")
    return path
