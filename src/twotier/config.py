"""Configuration management for the two-tier topology.

This module provides a centralized configuration loader that:
1. Resolves which YAML document to read from an explicit environment name
2. Applies a small set of overrides from an explicitly passed mapping
3. Validates everything once into type-safe configuration objects

Every default lives on these models. Components downstream never re-derive
a default on their own.
"""

import ipaddress
import logging
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .engines import ENGINES
from .environment import RemovalPolicy
from .errors import ConfigurationError
from .network import FlowLogTrafficType, MAX_SUBNET_MASK, MIN_SUBNET_MASK, NetworkBlock, SubnetTier

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(__file__).resolve().parent.parent.parent / "config"

MAX_ACL_RULE_NUMBER = 32766


class _Section(BaseModel):
    """Base for all configuration sections: unknown keys are rejected."""
    model_config = ConfigDict(extra="forbid")


class ApplicationProtocol(str, Enum):
    HTTP = "HTTP"
    HTTPS = "HTTPS"


class TargetType(str, Enum):
    INSTANCE = "INSTANCE"
    IP = "IP"
    LAMBDA = "LAMBDA"


class HealthCheckType(str, Enum):
    EC2 = "EC2"
    ELB = "ELB"


class MachineImageType(str, Enum):
    AMAZON_LINUX_2023 = "AMAZON_LINUX_2023"
    AMAZON_LINUX_2 = "AMAZON_LINUX_2"


class VolumeType(str, Enum):
    STANDARD = "standard"
    GP2 = "gp2"
    GP3 = "gp3"
    IO1 = "io1"
    IO2 = "io2"
    ST1 = "st1"
    SC1 = "sc1"


IOPS_VOLUME_TYPES = {VolumeType.GP3, VolumeType.IO1, VolumeType.IO2}


def _upper(value: Any) -> Any:
    return value.upper() if isinstance(value, str) else value


def _lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


# Enum-valued settings accept any casing in YAML.
Upper = BeforeValidator(_upper)
Lower = BeforeValidator(_lower)


class EnvironmentSettings(_Section):
    """Deployment target."""
    name: str = "dev"
    region: str = "us-east-1"
    account: Optional[str] = None


class ResourceNames(_Section):
    """Logical ids for the planned resources."""
    vpc: str = "HighlyAvailableVpc"
    alb_security_group: str = "AlbSecurityGroup"
    asg_security_group: str = "AsgSecurityGroup"
    database_security_group: str = "DatabaseSecurityGroup"
    public_network_acl: str = "PublicNetworkAcl"
    private_network_acl: str = "PrivateNetworkAcl"
    load_balancer: str = "ApplicationLoadBalancer"
    target_group: str = "WebAppTargetGroup"
    listener: str = "HttpListener"
    auto_scaling_group: str = "WebAppAutoScalingGroup"
    cpu_scaling_policy: str = "CpuScaling"
    database: str = "Database"
    database_subnet_group: str = "DatabaseSubnetGroup"
    database_credentials: str = "DatabaseCredentials"
    vpc_flow_logs_group: str = "VpcFlowLogsGroup"
    vpc_flow_log: str = "VpcFlowLog"


class FlowLogSettings(_Section):
    enabled: bool = True
    retention_days: int = Field(default=7, ge=1)
    traffic_type: Annotated[FlowLogTrafficType, Upper] = FlowLogTrafficType.ALL
    removal_policy: Annotated[RemovalPolicy, Upper] = RemovalPolicy.DESTROY

    @field_validator("removal_policy")
    @classmethod
    def no_snapshot(cls, v: RemovalPolicy) -> RemovalPolicy:
        if v is RemovalPolicy.SNAPSHOT:
            raise ValueError("flow log groups cannot be snapshotted; use RETAIN or DESTROY")
        return v


class SubnetNames(_Section):
    public: str = "Public"
    private: str = "Private"
    isolated: str = "Isolated"


class VpcSettings(_Section):
    """VPC networking configuration."""
    cidr: str = "10.0.0.0/16"
    az_count: int = Field(default=2, ge=1)
    nat_gateways: int = Field(default=2, ge=0)
    subnet_cidr_mask: int = Field(default=24, ge=MIN_SUBNET_MASK, le=MAX_SUBNET_MASK)
    subnets: SubnetNames = Field(default_factory=SubnetNames)
    availability_zones: Optional[List[str]] = None
    flow_logs: FlowLogSettings = Field(default_factory=FlowLogSettings)

    @field_validator("cidr")
    @classmethod
    def valid_block(cls, v: str) -> str:
        network = ipaddress.IPv4Network(v, strict=True)
        if not MIN_SUBNET_MASK <= network.prefixlen <= MAX_SUBNET_MASK:
            raise ValueError(f"VPC prefix must be between /{MIN_SUBNET_MASK} and /{MAX_SUBNET_MASK}")
        return str(network)

    @model_validator(mode="after")
    def subnets_fit(self) -> "VpcSettings":
        try:
            self.block.validate()
        except ConfigurationError as exc:
            raise ValueError(str(exc)) from exc
        return self

    @property
    def block(self) -> NetworkBlock:
        return NetworkBlock(cidr=self.cidr, az_count=self.az_count, subnet_mask=self.subnet_cidr_mask)

    @property
    def subnet_names(self) -> Dict[SubnetTier, str]:
        return {
            SubnetTier.PUBLIC: self.subnets.public,
            SubnetTier.PRIVATE_EGRESS: self.subnets.private,
            SubnetTier.PRIVATE_ISOLATED: self.subnets.isolated,
        }


class SecuritySettings(_Section):
    """Ports and sources shared by the stateless and stateful layers."""
    allow_http_from: str = "0.0.0.0/0"
    http_port: int = Field(default=80, ge=1, le=65535)
    https_port: int = Field(default=443, ge=1, le=65535)
    # None means "the database engine's default port".
    database_port: Optional[int] = Field(default=None, ge=1, le=65535)
    allow_package_downloads: bool = False

    @field_validator("allow_http_from")
    @classmethod
    def valid_source(cls, v: str) -> str:
        return str(ipaddress.IPv4Network(v, strict=True))


class AclRuleSetting(_Section):
    enabled: bool = True
    rule_number: int = Field(ge=1, le=MAX_ACL_RULE_NUMBER)


def _rule(number: int):
    return Field(default_factory=lambda: AclRuleSetting(rule_number=number))


class AclRuleSettings(_Section):
    """Toggle and number for each default ACL entry.

    Numbers are explicit: disabling one entry never renumbers another.
    """
    http_inbound: AclRuleSetting = _rule(100)
    https_inbound: AclRuleSetting = _rule(105)
    ephemeral_inbound: AclRuleSetting = _rule(110)
    all_outbound: AclRuleSetting = _rule(100)
    private_http_inbound: AclRuleSetting = _rule(100)
    private_database_inbound: AclRuleSetting = _rule(110)
    private_ephemeral_inbound: AclRuleSetting = _rule(120)
    private_all_outbound: AclRuleSetting = _rule(100)


class EphemeralPorts(_Section):
    start: int = Field(default=1024, ge=1, le=65535)
    end: int = Field(default=65535, ge=1, le=65535)

    @model_validator(mode="after")
    def ordered(self) -> "EphemeralPorts":
        if self.start > self.end:
            raise ValueError(f"ephemeral port range {self.start}-{self.end} is reversed")
        return self


class AclEntrySetting(_Section):
    """A caller-supplied ACL entry added next to the default ones."""
    acl: Annotated[Literal["public", "private"], Lower]
    name: Optional[str] = None
    rule_number: int = Field(ge=1, le=MAX_ACL_RULE_NUMBER)
    direction: Annotated[Literal["ingress", "egress"], Lower] = "ingress"
    action: Annotated[Literal["allow", "deny"], Lower] = "deny"
    cidr: str
    from_port: Optional[int] = Field(default=None, ge=1, le=65535)
    to_port: Optional[int] = Field(default=None, ge=1, le=65535)

    @field_validator("cidr")
    @classmethod
    def valid_cidr(cls, v: str) -> str:
        return str(ipaddress.IPv4Network(v, strict=True))

    @model_validator(mode="after")
    def port_range(self) -> "AclEntrySetting":
        if self.to_port is not None and self.from_port is None:
            raise ValueError("to_port requires from_port")
        if self.from_port is not None and self.to_port is not None and self.to_port < self.from_port:
            raise ValueError(f"port range {self.from_port}-{self.to_port} is reversed")
        return self


class AclSettings(_Section):
    enabled: bool = True
    rules: AclRuleSettings = Field(default_factory=AclRuleSettings)
    ephemeral_ports: EphemeralPorts = Field(default_factory=EphemeralPorts)
    extra_entries: List[AclEntrySetting] = Field(default_factory=list)


class PolicyConfig(_Section):
    """The single source both access-control layers are derived from."""
    security: SecuritySettings
    acls: AclSettings
    database_port: int = Field(ge=1, le=65535)


class NetworkSettings(_Section):
    vpc: VpcSettings = Field(default_factory=VpcSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    acls: AclSettings = Field(default_factory=AclSettings)


class HealthCheckSettings(_Section):
    enabled: bool = True
    path: str = "/"
    protocol: Annotated[ApplicationProtocol, Upper] = ApplicationProtocol.HTTP
    interval: int = Field(default=30, ge=5, le=300)
    timeout: int = Field(default=5, ge=2, le=120)
    healthy_threshold_count: int = Field(default=2, ge=2, le=10)
    unhealthy_threshold_count: int = Field(default=2, ge=2, le=10)
    port: str = "traffic-port"

    @model_validator(mode="after")
    def timeout_below_interval(self) -> "HealthCheckSettings":
        if self.timeout >= self.interval:
            raise ValueError(f"health check timeout {self.timeout}s must be less than interval {self.interval}s")
        return self


class AlbSettings(_Section):
    internet_facing: bool = True
    # None defers to the environment policy overlay.
    deletion_protection: Optional[bool] = None
    idle_timeout: int = Field(default=60, ge=1, le=4000)
    http2_enabled: bool = True
    deregistration_delay: int = Field(default=300, ge=0, le=3600)
    # Target and listener ports default to the HTTP port the boundaries admit.
    target_group_port: Optional[int] = Field(default=None, ge=1, le=65535)
    target_group_protocol: Annotated[ApplicationProtocol, Upper] = ApplicationProtocol.HTTP
    target_type: Annotated[TargetType, Upper] = TargetType.INSTANCE
    listener_port: Optional[int] = Field(default=None, ge=1, le=65535)
    listener_protocol: Annotated[ApplicationProtocol, Upper] = ApplicationProtocol.HTTP
    certificate_arn: Optional[str] = None
    health_check: HealthCheckSettings = Field(default_factory=HealthCheckSettings)

    @model_validator(mode="after")
    def https_needs_certificate(self) -> "AlbSettings":
        if self.listener_protocol is ApplicationProtocol.HTTPS and not self.certificate_arn:
            raise ValueError("an HTTPS listener requires certificate_arn")
        return self


class AsgSettings(_Section):
    min_capacity: int = Field(default=2, ge=0)
    max_capacity: int = Field(default=6, ge=1)
    desired_capacity: int = Field(default=2, ge=0)
    instance_type: str = Field(default="t3.micro", pattern=r"^[a-z0-9-]+\.[a-z0-9]+$")
    machine_image: Annotated[MachineImageType, Upper] = MachineImageType.AMAZON_LINUX_2023
    health_check_type: Annotated[HealthCheckType, Upper] = HealthCheckType.ELB
    health_check_grace_period: int = Field(default=300, ge=0)
    cooldown: int = Field(default=300, ge=0)
    target_cpu_utilization: int = Field(default=70, ge=1, le=100)
    require_imdsv2: bool = True
    subnet_tier: Annotated[SubnetTier, Upper] = SubnetTier.PRIVATE_EGRESS
    # Opaque bootstrap payload handed to every instance verbatim.
    user_data: Optional[str] = None

    @model_validator(mode="after")
    def capacity_bounds(self) -> "AsgSettings":
        if not self.min_capacity <= self.desired_capacity <= self.max_capacity:
            raise ValueError(
                f"capacity must satisfy min <= desired <= max, got "
                f"{self.min_capacity} <= {self.desired_capacity} <= {self.max_capacity}"
            )
        return self


class StorageSettings(_Section):
    volume_size: int = Field(default=20, ge=1, le=16384)
    volume_type: Annotated[VolumeType, Lower] = VolumeType.GP3
    iops: Optional[int] = Field(default=None, ge=100)
    encrypted: bool = True
    delete_on_termination: bool = True
    device_name: str = "/dev/xvda"

    @model_validator(mode="after")
    def iops_matches_volume_type(self) -> "StorageSettings":
        if self.iops is not None and self.volume_type not in IOPS_VOLUME_TYPES:
            raise ValueError(f"iops cannot be set for {self.volume_type.value} volumes")
        if self.iops is None and self.volume_type in (VolumeType.IO1, VolumeType.IO2):
            raise ValueError(f"{self.volume_type.value} volumes require iops")
        return self


class ComputeSettings(_Section):
    alb: AlbSettings = Field(default_factory=AlbSettings)
    asg: AsgSettings = Field(default_factory=AsgSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


class CredentialsSettings(_Section):
    username: str = Field(default="admin", min_length=1, max_length=16)
    password_length: int = Field(default=32, ge=8, le=128)
    exclude_punctuation: bool = True
    include_space: bool = False
    exclude_characters: Optional[str] = None


class DatabaseLogSettings(_Section):
    # None selects the engine's default log streams.
    exports: Optional[List[str]] = None
    retention_days: int = Field(default=7, ge=1)


class DatabaseSettings(_Section):
    engine: str = "mysql"
    engine_version: str = "8.0.35"
    instance_type: str = Field(default="t3.micro", pattern=r"^[a-z0-9-]+\.[a-z0-9]+$")
    allocated_storage: int = Field(default=20, ge=20)
    max_allocated_storage: int = Field(default=100, ge=20)
    multi_az: bool = True
    database_name: str = Field(default="appdb", pattern=r"^[A-Za-z][A-Za-z0-9_]*$")
    backup_retention_days: int = Field(default=7, ge=0, le=35)
    preferred_backup_window: str = "03:00-04:00"
    preferred_maintenance_window: str = "sun:04:00-sun:05:00"
    # None defers to the environment policy overlay.
    deletion_protection: Optional[bool] = None
    removal_policy: Annotated[RemovalPolicy, Upper] = RemovalPolicy.SNAPSHOT
    storage_encrypted: bool = True
    auto_minor_version_upgrade: bool = True
    credentials: CredentialsSettings = Field(default_factory=CredentialsSettings)
    cloudwatch_logs: DatabaseLogSettings = Field(default_factory=DatabaseLogSettings)

    @model_validator(mode="after")
    def storage_growth(self) -> "DatabaseSettings":
        if self.max_allocated_storage < self.allocated_storage:
            raise ValueError(
                f"max_allocated_storage {self.max_allocated_storage} is below allocated_storage "
                f"{self.allocated_storage}"
            )
        return self


class OutputToggles(_Section):
    vpc_id: bool = True
    vpc_cidr: bool = True
    load_balancer_dns: bool = True
    load_balancer_arn: bool = True
    application_url: bool = True
    auto_scaling_group_name: bool = True
    auto_scaling_group_arn: bool = True
    database_endpoint: bool = True
    database_port: bool = True
    database_secret_arn: bool = True


class OutputSettings(_Section):
    # None derives "{environment}-HighlyAvailable2Tier".
    export_prefix: Optional[str] = None
    enabled: OutputToggles = Field(default_factory=OutputToggles)


class LoggingSettings(_Section):
    level: Annotated[str, Upper] = "INFO"


class StackConfig(_Section):
    """Main configuration object."""
    stack_name: str = "WebApp-MultiAZ-2TierInfra"
    environment: EnvironmentSettings = Field(default_factory=EnvironmentSettings)
    tags: Dict[str, str] = Field(default_factory=dict)
    resource_names: ResourceNames = Field(default_factory=ResourceNames)
    network: NetworkSettings = Field(default_factory=NetworkSettings)
    compute: ComputeSettings = Field(default_factory=ComputeSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    outputs: OutputSettings = Field(default_factory=OutputSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @model_validator(mode="after")
    def derived_defaults(self) -> "StackConfig":
        security = self.network.security
        alb = self.compute.alb

        # Leave the port unset for unknown engines; engine resolution reports those.
        engine = ENGINES.get(self.database.engine.strip().lower())
        if security.database_port is None and engine is not None:
            security.database_port = engine.default_port

        if alb.target_group_port is None:
            alb.target_group_port = security.http_port
        elif alb.target_group_port != security.http_port:
            raise ValueError(
                f"target_group_port {alb.target_group_port} must equal http_port {security.http_port}; "
                "the compute boundary only admits the HTTP port"
            )
        if alb.listener_port is None:
            alb.listener_port = security.http_port
        elif alb.listener_port != security.http_port:
            raise ValueError(
                f"listener_port {alb.listener_port} must equal http_port {security.http_port}; "
                "the edge boundary only admits the HTTP port"
            )
        if alb.target_type is not TargetType.INSTANCE:
            raise ValueError(
                f"target_type {alb.target_type.value} cannot hold the scaling group's instances; "
                "only INSTANCE target groups are supported"
            )
        if alb.health_check.port not in ("traffic-port", str(security.http_port)):
            raise ValueError(
                f"health check port {alb.health_check.port} is not admitted by the compute boundary"
            )

        if self.outputs.export_prefix is None:
            self.outputs.export_prefix = f"{self.environment.name}-HighlyAvailable2Tier"
        return self

    @property
    def policy(self) -> PolicyConfig:
        """Access-control inputs for both the stateless and the stateful layer."""
        if self.network.security.database_port is None:
            raise ConfigurationError(
                f"No database port configured and engine {self.database.engine!r} has no default"
            )
        return PolicyConfig(
            security=self.network.security,
            acls=self.network.acls,
            database_port=self.network.security.database_port,
        )


def config_file_name(environment: str) -> str:
    """Map an environment name to the document that configures it."""
    if environment in ("production", "prod"):
        return "production.yml"
    if environment in ("staging", "stag"):
        return "staging.yml"
    return "development.yml"


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _env_flag_true(val: Optional[str]) -> bool:
    return (val or "").lower() in ("1", "true", "yes")


def _section(config_data: Dict[str, Any], *path: str) -> Dict[str, Any]:
    """Return the nested mapping at ``path``, creating empty ones on the way.

    A null section counts as empty; any other non-mapping value is an error.
    """
    current = config_data
    for depth, key in enumerate(path):
        value = current.get(key)
        if value is None:
            value = current[key] = {}
        elif not isinstance(value, dict):
            dotted = ".".join(path[: depth + 1])
            raise ConfigurationError(
                f"Configuration section '{dotted}' must be a mapping, got {type(value).__name__}"
            )
        current = value
    return current


def apply_env_overrides(config_data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Apply overrides from an explicitly supplied environment mapping."""
    if environ.get("AWS_REGION"):
        _section(config_data, "environment")["region"] = environ["AWS_REGION"]
    if environ.get("CDK_DEFAULT_ACCOUNT"):
        _section(config_data, "environment")["account"] = environ["CDK_DEFAULT_ACCOUNT"]

    if environ.get("ALLOW_HTTP_FROM"):
        _section(config_data, "network", "security")["allow_http_from"] = environ["ALLOW_HTTP_FROM"]
    if environ.get("ALLOW_PACKAGE_DOWNLOADS"):
        _section(config_data, "network", "security")["allow_package_downloads"] = _env_flag_true(
            environ["ALLOW_PACKAGE_DOWNLOADS"]
        )

    return config_data


def parse_config(config_data: Dict[str, Any]) -> StackConfig:
    """Validate a raw configuration mapping."""
    try:
        return StackConfig(**config_data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def load_config(
    environment: str,
    config_dir: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> StackConfig:
    """Load configuration for the given environment.

    Args:
        environment: Environment name (dev/staging/production). Selects the document.
        config_dir: Directory holding the YAML documents. Defaults to ``config/``.
        environ: Optional mapping of override variables. Nothing is read from
            the process environment unless the caller passes it here.

    Returns:
        Validated configuration object.

    Raises:
        ConfigurationError: If the document is missing or invalid.
    """
    base = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
    config_file = base / config_file_name(environment)

    if not config_file.exists():
        raise ConfigurationError(f"Configuration file not found: {config_file}")

    logger.info(f"Loading configuration for {environment} from {config_file}")
    try:
        config_data = _load_yaml(config_file)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file {config_file} is not valid YAML: {exc}") from exc
    if not isinstance(config_data, dict):
        raise ConfigurationError(f"Configuration file {config_file} must contain a mapping")

    # An empty section ("network:" with nothing under it) keeps its defaults.
    config_data = {key: value for key, value in config_data.items() if value is not None}
    _section(config_data, "environment").setdefault("name", environment)
    if environ is not None:
        config_data = apply_env_overrides(config_data, environ)

    return parse_config(config_data)
