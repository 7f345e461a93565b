"""Interop test harness for heterogeneous IPFS node implementations."""

from .errors import (
    AssertionMismatch,
    InteropError,
    NodeAPIError,
    NotFoundError,
    PropagationTimeout,
    SetupError,
)
from .node import NodeIdentity, NodeKind, NodeSpec
from .polling import retry, wait_until
from .scenario import Scenario, ScenarioResult, ScenarioRunner
from .topology import Topology, TopologyBuilder

__version__ = "0.1.0"
