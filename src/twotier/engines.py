"""Supported database engines."""

from dataclasses import dataclass
from typing import Dict, Tuple

from .errors import UnsupportedEngineError


@dataclass(frozen=True)
class EngineSpec:
    name: str
    default_port: int
    default_log_exports: Tuple[str, ...]
    supported_log_exports: Tuple[str, ...]
    # Number of leading version components that make up the major version.
    major_parts: int

    def major_version(self, version: str) -> str:
        return ".".join(version.split(".")[: self.major_parts])


MYSQL = EngineSpec(
    name="mysql",
    default_port=3306,
    default_log_exports=("error", "general", "slowquery"),
    supported_log_exports=("audit", "error", "general", "slowquery", "iam-db-auth-error"),
    major_parts=2,
)

MARIADB = EngineSpec(
    name="mariadb",
    default_port=3306,
    default_log_exports=("error", "general", "slowquery"),
    supported_log_exports=("audit", "error", "general", "slowquery"),
    major_parts=2,
)

POSTGRES = EngineSpec(
    name="postgres",
    default_port=5432,
    default_log_exports=("postgresql", "upgrade"),
    supported_log_exports=("postgresql", "upgrade", "iam-db-auth-error"),
    major_parts=1,
)

# Accepted spellings, matched case-insensitively.
ENGINES: Dict[str, EngineSpec] = {
    "mysql": MYSQL,
    "mariadb": MARIADB,
    "postgres": POSTGRES,
    "postgresql": POSTGRES,
}


def resolve_engine(name: str) -> EngineSpec:
    """Look up an engine by case-insensitive name."""
    try:
        return ENGINES[name.strip().lower()]
    except (KeyError, AttributeError):
        raise UnsupportedEngineError(str(name), ENGINES) from None
