"""Managed data store: credential secret, subnet group and database instance.

The credential secret is planned before the instance and the instance
depends on it. The instance only ever lives in the isolated tier.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .access_control import BoundaryRole, SecurityBoundary
from .config import CredentialsSettings, DatabaseSettings, ResourceNames
from .engines import EngineSpec, resolve_engine
from .environment import (
    EnvironmentClass,
    RemovalPolicy,
    effective_removal_policy,
    resolve_deletion_protection,
)
from .errors import ConfigurationError
from .network import SubnetTier, Topology
from .retention import RetentionClass, resolve

logger = logging.getLogger(__name__)

PASSWORD_KEY = "password"


@dataclass(frozen=True)
class CredentialSecret:
    """Generated master credentials. The username is fixed at creation."""
    logical_id: str
    secret_name: str
    username: str
    password_length: int
    exclude_punctuation: bool
    include_space: bool
    exclude_characters: Optional[str] = None
    generate_string_key: str = PASSWORD_KEY

    @classmethod
    def from_settings(cls, logical_id: str, secret_name: str, settings: CredentialsSettings) -> "CredentialSecret":
        return cls(
            logical_id=logical_id,
            secret_name=secret_name,
            username=settings.username,
            password_length=settings.password_length,
            exclude_punctuation=settings.exclude_punctuation,
            include_space=settings.include_space,
            exclude_characters=settings.exclude_characters,
        )


@dataclass(frozen=True)
class LogExports:
    streams: Tuple[str, ...]
    retention: RetentionClass


@dataclass(frozen=True)
class DatabasePlan:
    logical_id: str
    engine: EngineSpec
    engine_version: str
    instance_type: str
    port: int
    subnet_group_id: str
    subnet_tier: SubnetTier
    subnet_ids: Tuple[str, ...]
    security_group: str
    credentials: CredentialSecret
    database_name: str
    allocated_storage: int
    max_allocated_storage: int
    multi_az: bool
    storage_encrypted: bool
    auto_minor_version_upgrade: bool
    backup_retention_days: int
    preferred_backup_window: str
    preferred_maintenance_window: str
    deletion_protection: bool
    configured_removal_policy: RemovalPolicy
    removal_policy: RemovalPolicy
    log_exports: LogExports

    @property
    def major_version(self) -> str:
        return self.engine.major_version(self.engine_version)


def log_exports_for(engine: EngineSpec, requested: Optional[list], retention_days: int) -> LogExports:
    """Validate requested log streams against the engine, defaulting to its usual set."""
    streams = tuple(requested) if requested is not None else engine.default_log_exports
    unsupported = [stream for stream in streams if stream not in engine.supported_log_exports]
    if unsupported:
        raise ConfigurationError(
            f"{engine.name} does not export {', '.join(unsupported)} logs; "
            f"supported: {', '.join(engine.supported_log_exports)}"
        )
    return LogExports(streams=tuple(dict.fromkeys(streams)), retention=resolve(retention_days))


def build_database(
    topology: Topology,
    data: SecurityBoundary,
    environment_class: EnvironmentClass,
    settings: DatabaseSettings,
    *,
    port: int,
    secret_name: Optional[str] = None,
    names: Optional[ResourceNames] = None,
) -> DatabasePlan:
    """Plan the credential secret and the database instance.

    Raises:
        UnsupportedEngineError: if the engine name is not supported.
        ConfigurationError: for a misplaced boundary, no isolated subnets or
            unsupported log exports.
    """
    names = names or ResourceNames()
    engine = resolve_engine(settings.engine)

    if data.role is not BoundaryRole.DATA or data.tier is not SubnetTier.PRIVATE_ISOLATED:
        raise ConfigurationError(f"Database needs the isolated data boundary, got {data.logical_id}")
    if data.egress:
        raise ConfigurationError(f"{data.logical_id} must not have outbound rules")
    if not any(rule.traffic.covers(port) for rule in data.ingress):
        raise ConfigurationError(f"{data.logical_id} does not admit database port {port}")

    subnets = topology.subnets_in(SubnetTier.PRIVATE_ISOLATED)
    if len(subnets) < 2:
        raise ConfigurationError(
            f"Database subnet groups need isolated subnets in at least two zones, got {len(subnets)}"
        )

    credentials = CredentialSecret.from_settings(
        names.database_credentials,
        secret_name or f"{names.database_credentials}-db-credentials",
        settings.credentials,
    )

    deletion_protection = resolve_deletion_protection(settings.deletion_protection, environment_class)
    removal = effective_removal_policy(deletion_protection, settings.removal_policy)
    log_exports = log_exports_for(engine, settings.cloudwatch_logs.exports, settings.cloudwatch_logs.retention_days)

    logger.info(
        f"Database {names.database}: {engine.name} {settings.engine_version} on {settings.instance_type}, "
        f"port {port}, deletion protection {deletion_protection}, removal {removal.value}"
    )
    logger.debug(f"Database log exports {list(log_exports.streams)} kept {log_exports.retention.name}")
    return DatabasePlan(
        logical_id=names.database,
        engine=engine,
        engine_version=settings.engine_version,
        instance_type=settings.instance_type,
        port=port,
        subnet_group_id=names.database_subnet_group,
        subnet_tier=SubnetTier.PRIVATE_ISOLATED,
        subnet_ids=tuple(subnet.logical_id for subnet in subnets),
        security_group=data.logical_id,
        credentials=credentials,
        database_name=settings.database_name,
        allocated_storage=settings.allocated_storage,
        max_allocated_storage=settings.max_allocated_storage,
        multi_az=settings.multi_az,
        storage_encrypted=settings.storage_encrypted,
        auto_minor_version_upgrade=settings.auto_minor_version_upgrade,
        backup_retention_days=settings.backup_retention_days,
        preferred_backup_window=settings.preferred_backup_window,
        preferred_maintenance_window=settings.preferred_maintenance_window,
        deletion_protection=deletion_protection,
        configured_removal_policy=settings.removal_policy,
        removal_policy=removal,
        log_exports=log_exports,
    )
