"""Exception taxonomy for topology composition.

All errors are deterministic functions of the input configuration: the engine
fails fast and never hands a partial plan to the provider.
"""

from typing import Iterable, Optional


class TopologyError(Exception):
    """Base class for every error raised while composing a plan."""


class ConfigurationError(TopologyError, ValueError):
    """Malformed, missing or out-of-range configuration input."""


class UnsupportedEngineError(TopologyError):
    """Database engine name is not one of the supported engines."""

    def __init__(self, engine: str, supported: Iterable[str]):
        self.engine = engine
        self.supported = sorted(supported)
        super().__init__(
            f"Unsupported database engine: {engine}. "
            f"Supported engines: {', '.join(self.supported)}"
        )


class PolicyConflictError(TopologyError):
    """Two ACL entries claim the same rule number in one ACL and direction."""

    def __init__(self, acl_name: str, direction: str, rule_number: int, detail: Optional[str] = None):
        self.acl_name = acl_name
        self.direction = direction
        self.rule_number = rule_number
        message = f"Rule number {rule_number} is already used for {direction} entries of {acl_name}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class DependencyCycleError(TopologyError):
    """The resource dependency graph cannot be ordered."""
