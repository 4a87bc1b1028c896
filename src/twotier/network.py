"""Network topology builder.

Lays out the VPC block into one subnet per (availability zone, tier), wires
the internet gateway and NAT gateways, and binds optional flow logging.
Addresses are carved from the block in tier order (public, private with
egress, isolated) and zone order within a tier, which is the order the CDK
``Vpc`` construct allocates them in.
"""

import ipaddress
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .environment import RemovalPolicy
from .errors import ConfigurationError
from .retention import RetentionClass, resolve

logger = logging.getLogger(__name__)

MIN_SUBNET_MASK = 16
MAX_SUBNET_MASK = 28


class SubnetTier(str, Enum):
    """Subnet tiers, in allocation order."""
    PUBLIC = "PUBLIC"
    PRIVATE_EGRESS = "PRIVATE_EGRESS"
    PRIVATE_ISOLATED = "PRIVATE_ISOLATED"


TIERS: Tuple[SubnetTier, ...] = (
    SubnetTier.PUBLIC,
    SubnetTier.PRIVATE_EGRESS,
    SubnetTier.PRIVATE_ISOLATED,
)


class FlowLogTrafficType(str, Enum):
    ALL = "ALL"
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


@dataclass(frozen=True)
class NetworkBlock:
    """The VPC address block and how it is split into subnets."""
    cidr: str
    az_count: int
    subnet_mask: int

    @property
    def network(self) -> ipaddress.IPv4Network:
        try:
            return ipaddress.IPv4Network(self.cidr, strict=True)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid VPC CIDR {self.cidr!r}: {exc}") from exc

    @property
    def required_subnets(self) -> int:
        return self.az_count * len(TIERS)

    def validate(self) -> None:
        """Raise ConfigurationError unless every (zone, tier) pair fits the block."""
        if self.az_count < 1:
            raise ConfigurationError(f"az_count must be at least 1, got {self.az_count}")
        network = self.network
        if not MIN_SUBNET_MASK <= self.subnet_mask <= MAX_SUBNET_MASK:
            raise ConfigurationError(
                f"Subnet mask /{self.subnet_mask} outside /{MIN_SUBNET_MASK}../{MAX_SUBNET_MASK}"
            )
        if self.subnet_mask < network.prefixlen:
            raise ConfigurationError(
                f"Subnet mask /{self.subnet_mask} is wider than the VPC block {network}"
            )
        capacity = 2 ** (self.subnet_mask - network.prefixlen)
        if capacity < self.required_subnets:
            raise ConfigurationError(
                f"VPC block {network} holds {capacity} /{self.subnet_mask} subnets, "
                f"{self.required_subnets} required ({self.az_count} zones x {len(TIERS)} tiers)"
            )


@dataclass(frozen=True)
class Subnet:
    logical_id: str
    name: str
    tier: SubnetTier
    zone_index: int
    zone: str
    cidr: ipaddress.IPv4Network
    # Logical id of the default route target, None when the subnet has no egress path.
    route_target: Optional[str]


@dataclass(frozen=True)
class NatGateway:
    logical_id: str
    zone_index: int
    subnet_id: str


@dataclass(frozen=True)
class FlowLogRequest:
    retention_days: int
    removal_policy: RemovalPolicy = RemovalPolicy.DESTROY
    traffic_type: FlowLogTrafficType = FlowLogTrafficType.ALL
    log_group_id: str = "VpcFlowLogsGroup"
    flow_log_id: str = "VpcFlowLog"


@dataclass(frozen=True)
class FlowLogConfig:
    log_group_id: str
    flow_log_id: str
    retention: RetentionClass
    removal_policy: RemovalPolicy
    traffic_type: FlowLogTrafficType


@dataclass(frozen=True)
class Topology:
    """Addressable network produced by :func:`build_topology`."""
    vpc_id: str
    block: NetworkBlock
    zones: Tuple[str, ...]
    subnet_names: Dict[SubnetTier, str]
    subnets: Tuple[Subnet, ...]
    internet_gateway: str
    nat_gateways: Tuple[NatGateway, ...]
    flow_log: Optional[FlowLogConfig] = None
    # False when zones are placeholders for the provider to pick.
    zones_named: bool = False
    subnet_index: Dict[str, Subnet] = field(default_factory=dict, compare=False, repr=False)

    def subnets_in(self, tier: SubnetTier) -> List[Subnet]:
        return [subnet for subnet in self.subnets if subnet.tier is tier]

    def tier_cidrs(self, tier: SubnetTier) -> List[ipaddress.IPv4Network]:
        return [subnet.cidr for subnet in self.subnets_in(tier)]

    def subnet(self, logical_id: str) -> Subnet:
        return self.subnet_index[logical_id]


DEFAULT_SUBNET_NAMES = {
    SubnetTier.PUBLIC: "Public",
    SubnetTier.PRIVATE_EGRESS: "Private",
    SubnetTier.PRIVATE_ISOLATED: "Isolated",
}


def _zone_labels(az_count: int, availability_zones: Optional[List[str]]) -> Tuple[str, ...]:
    if availability_zones:
        if len(availability_zones) < az_count:
            raise ConfigurationError(
                f"{az_count} availability zones requested but only {len(availability_zones)} named"
            )
        return tuple(availability_zones[:az_count])
    return tuple(f"az-{index + 1}" for index in range(az_count))


def build_topology(
    block: NetworkBlock,
    *,
    nat_gateways: int,
    vpc_id: str = "Vpc",
    subnet_names: Optional[Dict[SubnetTier, str]] = None,
    availability_zones: Optional[List[str]] = None,
    flow_log: Optional[FlowLogRequest] = None,
) -> Topology:
    """Allocate subnets, gateways and flow logging for a network block."""
    block.validate()
    if nat_gateways < 0:
        raise ConfigurationError(f"nat_gateways must not be negative, got {nat_gateways}")

    names = dict(DEFAULT_SUBNET_NAMES)
    names.update(subnet_names or {})
    zones = _zone_labels(block.az_count, availability_zones)
    igw_id = f"{vpc_id}InternetGateway"

    carve = block.network.subnets(new_prefix=block.subnet_mask)
    cidrs: Dict[Tuple[SubnetTier, int], ipaddress.IPv4Network] = {}
    for tier in TIERS:
        for index in range(block.az_count):
            cidrs[(tier, index)] = next(carve)

    public_ids = [f"{vpc_id}{names[SubnetTier.PUBLIC]}Subnet{index + 1}" for index in range(block.az_count)]
    nat_count = min(nat_gateways, block.az_count)
    nats = tuple(
        NatGateway(
            logical_id=f"{vpc_id}{names[SubnetTier.PUBLIC]}Subnet{index + 1}NatGateway",
            zone_index=index,
            subnet_id=public_ids[index],
        )
        for index in range(nat_count)
    )
    if nat_count == 0:
        logger.warning(
            "No NAT gateways configured; private subnets with egress have no outbound path"
        )
    elif nat_gateways > block.az_count:
        logger.warning(
            f"{nat_gateways} NAT gateways requested for {block.az_count} zones; using {nat_count}"
        )

    subnets: List[Subnet] = []
    for tier in TIERS:
        for index in range(block.az_count):
            if tier is SubnetTier.PUBLIC:
                route_target: Optional[str] = igw_id
            elif tier is SubnetTier.PRIVATE_EGRESS and nats:
                # Same-zone NAT when present, otherwise share one round-robin.
                route_target = nats[index % len(nats)].logical_id
            else:
                route_target = None
            subnets.append(
                Subnet(
                    logical_id=f"{vpc_id}{names[tier]}Subnet{index + 1}",
                    name=names[tier],
                    tier=tier,
                    zone_index=index,
                    zone=zones[index],
                    cidr=cidrs[(tier, index)],
                    route_target=route_target,
                )
            )

    flow_log_config = None
    if flow_log is not None:
        if flow_log.removal_policy is RemovalPolicy.SNAPSHOT:
            raise ConfigurationError("Flow log groups support RETAIN or DESTROY removal, not SNAPSHOT")
        flow_log_config = FlowLogConfig(
            log_group_id=flow_log.log_group_id,
            flow_log_id=flow_log.flow_log_id,
            retention=resolve(flow_log.retention_days),
            removal_policy=flow_log.removal_policy,
            traffic_type=flow_log.traffic_type,
        )

    logger.info(
        f"Topology for {block.cidr}: {len(subnets)} subnets across {block.az_count} zones, "
        f"{len(nats)} NAT gateways, flow logs {'on' if flow_log_config else 'off'}"
    )
    return Topology(
        vpc_id=vpc_id,
        block=block,
        zones=zones,
        subnet_names=names,
        subnets=tuple(subnets),
        internet_gateway=igw_id,
        nat_gateways=nats,
        flow_log=flow_log_config,
        zones_named=bool(availability_zones),
        subnet_index={subnet.logical_id: subnet for subnet in subnets},
    )
