"""Elastic compute fleet: scaling group, scaling policy and root volume."""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .access_control import BoundaryRole, SecurityBoundary
from .config import (
    AsgSettings,
    HealthCheckType,
    MachineImageType,
    ResourceNames,
    StorageSettings,
    TargetType,
    VolumeType,
)
from .errors import ConfigurationError
from .load_balancing import TargetGroupPlan
from .network import SubnetTier, Topology

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScalingPolicyBinding:
    """CPU target tracking and the capacity bounds it operates within."""
    target_utilization: int
    min_capacity: int
    max_capacity: int
    desired_capacity: int
    cooldown: int

    def __post_init__(self) -> None:
        if self.min_capacity < 0:
            raise ConfigurationError(f"min_capacity must not be negative, got {self.min_capacity}")
        if not self.min_capacity <= self.desired_capacity <= self.max_capacity:
            raise ConfigurationError(
                f"Capacity must satisfy min <= desired <= max, got "
                f"{self.min_capacity} <= {self.desired_capacity} <= {self.max_capacity}"
            )
        if not 1 <= self.target_utilization <= 100:
            raise ConfigurationError(f"Target utilization {self.target_utilization}% outside 1..100")
        if self.cooldown < 0:
            raise ConfigurationError(f"cooldown must not be negative, got {self.cooldown}")

    @classmethod
    def from_settings(cls, settings: AsgSettings) -> "ScalingPolicyBinding":
        return cls(
            target_utilization=settings.target_cpu_utilization,
            min_capacity=settings.min_capacity,
            max_capacity=settings.max_capacity,
            desired_capacity=settings.desired_capacity,
            cooldown=settings.cooldown,
        )


@dataclass(frozen=True)
class RootVolume:
    device_name: str
    size: int
    volume_type: VolumeType
    iops: Optional[int]
    encrypted: bool
    delete_on_termination: bool

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> "RootVolume":
        return cls(
            device_name=settings.device_name,
            size=settings.volume_size,
            volume_type=settings.volume_type,
            iops=settings.iops,
            encrypted=settings.encrypted,
            delete_on_termination=settings.delete_on_termination,
        )


@dataclass(frozen=True)
class FleetPlan:
    logical_id: str
    instance_type: str
    machine_image: MachineImageType
    subnet_tier: SubnetTier
    subnet_ids: Tuple[str, ...]
    security_group: str
    target_group: str
    scaling: ScalingPolicyBinding
    scaling_policy_id: str
    health_check_type: HealthCheckType
    health_check_grace_period: int
    require_imdsv2: bool
    root_volume: RootVolume
    user_data: Optional[str] = None
    # Secrets the instances may read, by logical id.
    secret_read_grants: Tuple[str, ...] = ()


def build_fleet(
    topology: Topology,
    compute: SecurityBoundary,
    target_group: TargetGroupPlan,
    scaling: ScalingPolicyBinding,
    settings: AsgSettings,
    storage: StorageSettings,
    *,
    names: Optional[ResourceNames] = None,
) -> FleetPlan:
    """Place the scaling group and register it with the target group.

    Raises:
        ConfigurationError: for a target group that cannot hold instances or
            a tier without subnets.
    """
    names = names or ResourceNames()
    if compute.role is not BoundaryRole.COMPUTE:
        raise ConfigurationError(f"Fleet needs the compute boundary, got {compute.logical_id} ({compute.role.value})")
    if compute.tier is not settings.subnet_tier:
        raise ConfigurationError(
            f"{compute.logical_id} guards {compute.tier.value} but the fleet is placed in {settings.subnet_tier.value}"
        )
    if target_group.target_type is not TargetType.INSTANCE:
        raise ConfigurationError(
            f"Scaling group instances cannot register with {target_group.target_type.value} target group "
            f"{target_group.logical_id}"
        )

    subnets = topology.subnets_in(settings.subnet_tier)
    if not subnets:
        raise ConfigurationError(f"No {settings.subnet_tier.value} subnets to place the fleet in")
    if settings.subnet_tier is SubnetTier.PRIVATE_EGRESS and not topology.nat_gateways:
        logger.warning(f"{names.auto_scaling_group}: fleet subnets have no NAT gateway and no outbound path")
    if settings.health_check_type is HealthCheckType.ELB and target_group.health_check is None:
        logger.warning(
            f"{names.auto_scaling_group}: ELB health checks requested but {target_group.logical_id} has none"
        )
    if not settings.require_imdsv2:
        logger.warning(f"{names.auto_scaling_group}: IMDSv2 not enforced")

    logger.info(
        f"Fleet {names.auto_scaling_group}: {scaling.min_capacity}-{scaling.max_capacity} "
        f"(desired {scaling.desired_capacity}) x {settings.instance_type} in {settings.subnet_tier.value}, "
        f"target CPU {scaling.target_utilization}%"
    )
    return FleetPlan(
        logical_id=names.auto_scaling_group,
        instance_type=settings.instance_type,
        machine_image=settings.machine_image,
        subnet_tier=settings.subnet_tier,
        subnet_ids=tuple(subnet.logical_id for subnet in subnets),
        security_group=compute.logical_id,
        target_group=target_group.logical_id,
        scaling=scaling,
        scaling_policy_id=names.cpu_scaling_policy,
        health_check_type=settings.health_check_type,
        health_check_grace_period=settings.health_check_grace_period,
        require_imdsv2=settings.require_imdsv2,
        root_volume=RootVolume.from_settings(storage),
        user_data=settings.user_data,
    )


def grant_secret_read(fleet: FleetPlan, secret_id: str) -> FleetPlan:
    """Return a copy of ``fleet`` that may read the given secret."""
    if secret_id in fleet.secret_read_grants:
        return fleet
    return dataclasses.replace(fleet, secret_read_grants=fleet.secret_read_grants + (secret_id,))
