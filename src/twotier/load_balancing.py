"""Load-balancing layer: load balancer, target group and listener."""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .access_control import BoundaryRole, SecurityBoundary
from .config import AlbSettings, ApplicationProtocol, HealthCheckSettings, ResourceNames, TargetType
from .errors import ConfigurationError
from .network import SubnetTier, Topology

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthCheck:
    path: str
    protocol: ApplicationProtocol
    port: str
    interval: int
    timeout: int
    healthy_threshold_count: int
    unhealthy_threshold_count: int

    @classmethod
    def from_settings(cls, settings: HealthCheckSettings) -> "HealthCheck":
        return cls(
            path=settings.path,
            protocol=settings.protocol,
            port=settings.port,
            interval=settings.interval,
            timeout=settings.timeout,
            healthy_threshold_count=settings.healthy_threshold_count,
            unhealthy_threshold_count=settings.unhealthy_threshold_count,
        )


@dataclass(frozen=True)
class TargetGroupPlan:
    logical_id: str
    target_type: TargetType
    # Lambda targets carry neither port nor protocol.
    port: Optional[int]
    protocol: Optional[ApplicationProtocol]
    health_check: Optional[HealthCheck]
    deregistration_delay: int


@dataclass(frozen=True)
class ListenerPlan:
    logical_id: str
    port: int
    protocol: ApplicationProtocol
    default_target_group: str
    certificate_arn: Optional[str] = None


@dataclass(frozen=True)
class LoadBalancerPlan:
    logical_id: str
    internet_facing: bool
    subnet_tier: SubnetTier
    subnet_ids: Tuple[str, ...]
    security_group: str
    deletion_protection: bool
    idle_timeout: int
    http2_enabled: bool
    listener: ListenerPlan
    target_group: TargetGroupPlan

    @property
    def url_scheme(self) -> str:
        return self.listener.protocol.value.lower()


def build_load_balancer(
    topology: Topology,
    edge: SecurityBoundary,
    settings: AlbSettings,
    *,
    deletion_protection: bool,
    names: Optional[ResourceNames] = None,
) -> LoadBalancerPlan:
    """Bind a listener and target group to the public tier and the edge boundary.

    Raises:
        ConfigurationError: if the edge boundary does not admit the listener port.
    """
    names = names or ResourceNames()
    if edge.role is not BoundaryRole.EDGE:
        raise ConfigurationError(f"Load balancer needs the edge boundary, got {edge.logical_id} ({edge.role.value})")

    listener_port = settings.listener_port
    if not any(rule.traffic.covers(listener_port) for rule in edge.ingress):
        raise ConfigurationError(f"{edge.logical_id} does not admit listener port {listener_port}")

    if settings.target_type is TargetType.LAMBDA:
        port, protocol = None, None
    else:
        port, protocol = settings.target_group_port, settings.target_group_protocol

    health_check = HealthCheck.from_settings(settings.health_check) if settings.health_check.enabled else None
    if health_check is None:
        logger.warning(f"{names.target_group}: health checks disabled; unhealthy targets stay in rotation")

    target_group = TargetGroupPlan(
        logical_id=names.target_group,
        target_type=settings.target_type,
        port=port,
        protocol=protocol,
        health_check=health_check,
        deregistration_delay=settings.deregistration_delay,
    )
    listener = ListenerPlan(
        logical_id=names.listener,
        port=listener_port,
        protocol=settings.listener_protocol,
        default_target_group=target_group.logical_id,
        certificate_arn=settings.certificate_arn,
    )
    subnets = topology.subnets_in(SubnetTier.PUBLIC)

    logger.info(
        f"Load balancer {names.load_balancer}: {listener.protocol.value}:{listener.port} -> "
        f"{target_group.target_type.value} targets, deletion protection {deletion_protection}"
    )
    return LoadBalancerPlan(
        logical_id=names.load_balancer,
        internet_facing=settings.internet_facing,
        subnet_tier=SubnetTier.PUBLIC,
        subnet_ids=tuple(subnet.logical_id for subnet in subnets),
        security_group=edge.logical_id,
        deletion_protection=deletion_protection,
        idle_timeout=settings.idle_timeout,
        http2_enabled=settings.http2_enabled,
        listener=listener,
        target_group=target_group,
    )
