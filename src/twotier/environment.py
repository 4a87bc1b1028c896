"""Environment policy overlay.

Classifies the declared environment name once per plan and derives the
destructive-action policy (deletion protection, removal policy) from it.
"""

import logging
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

# Exact, case-sensitive names treated as production-like.
PRODUCTION_LIKE_NAMES = frozenset({"production", "prod", "staging"})


class EnvironmentClass(str, Enum):
    """Environment classes that drive destructive-action policy."""
    DEVELOPMENT = "development"
    PRODUCTION_LIKE = "production_like"


class RemovalPolicy(str, Enum):
    """Disposition applied to a stateful resource at teardown."""
    RETAIN = "RETAIN"
    SNAPSHOT = "SNAPSHOT"
    DESTROY = "DESTROY"


def classify(environment_name: str) -> EnvironmentClass:
    """Classify an environment name."""
    if environment_name in PRODUCTION_LIKE_NAMES:
        return EnvironmentClass.PRODUCTION_LIKE
    return EnvironmentClass.DEVELOPMENT


def default_deletion_protection(environment_class: EnvironmentClass) -> bool:
    return environment_class is EnvironmentClass.PRODUCTION_LIKE


def resolve_deletion_protection(configured: Optional[bool], environment_class: EnvironmentClass) -> bool:
    """Use the configured flag when given, otherwise the environment default."""
    if configured is not None:
        return configured
    return default_deletion_protection(environment_class)


def effective_removal_policy(deletion_protection: bool, configured: RemovalPolicy) -> RemovalPolicy:
    """Return the removal policy that will actually be applied.

    Unprotected resources configured to snapshot on teardown are hard-deleted
    instead. Protected resources always keep the configured policy.
    """
    if not deletion_protection and configured is RemovalPolicy.SNAPSHOT:
        logger.info("Deletion protection is off; SNAPSHOT removal policy overridden to DESTROY")
        return RemovalPolicy.DESTROY
    return configured
