"""Topology and policy composition for a highly available two-tier AWS stack."""

from .composer import TopologyPlan, compose_plan
from .config import StackConfig, load_config
from .errors import (
    ConfigurationError,
    DependencyCycleError,
    PolicyConflictError,
    TopologyError,
    UnsupportedEngineError,
)

__all__ = [
    "ConfigurationError",
    "DependencyCycleError",
    "PolicyConflictError",
    "StackConfig",
    "TopologyError",
    "TopologyPlan",
    "UnsupportedEngineError",
    "compose_plan",
    "load_config",
]

__version__ = "0.1.0"
