"""Access control composition.

Both access-control layers are derived from one ``PolicyConfig``:

* stateless subnet ACLs, with explicit rule numbers evaluated in ascending
  order per direction (first match wins, no match is an implicit deny), and
* stateful security boundaries for the edge, compute and data tiers, whose
  inter-tier rules reference each other by logical id rather than by CIDR.

:func:`check_consistency` cross-checks the two layers against the topology.
"""

import ipaddress
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .config import AclRuleSetting, PolicyConfig, ResourceNames
from .errors import ConfigurationError, PolicyConflictError, TopologyError
from .network import SubnetTier, Topology

logger = logging.getLogger(__name__)

ANY_IPV4 = ipaddress.IPv4Network("0.0.0.0/0")
MIN_RULE_NUMBER = 1
MAX_RULE_NUMBER = 32766
DEFAULT_EPHEMERAL_PORTS = (1024, 65535)


class Direction(str, Enum):
    INGRESS = "ingress"
    EGRESS = "egress"


class Action(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class Protocol(str, Enum):
    TCP = "tcp"
    ALL = "all"


class BoundaryRole(str, Enum):
    EDGE = "edge"
    COMPUTE = "compute"
    DATA = "data"


def _network(value: Union[str, ipaddress.IPv4Network]) -> ipaddress.IPv4Network:
    if isinstance(value, ipaddress.IPv4Network):
        return value
    try:
        return ipaddress.IPv4Network(value, strict=True)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid CIDR {value!r}: {exc}") from exc


def _split(
    pieces: Iterable[ipaddress.IPv4Network], cover: ipaddress.IPv4Network
) -> Tuple[List[ipaddress.IPv4Network], List[ipaddress.IPv4Network]]:
    """Partition ``pieces`` into the parts inside and outside ``cover``."""
    inside: List[ipaddress.IPv4Network] = []
    outside: List[ipaddress.IPv4Network] = []
    for piece in pieces:
        if piece.subnet_of(cover):
            inside.append(piece)
        elif cover.subnet_of(piece):
            inside.append(cover)
            outside.extend(piece.address_exclude(cover))
        else:
            outside.append(piece)
    return inside, outside


@dataclass(frozen=True)
class Traffic:
    """Traffic selector: all traffic, a single TCP port or a TCP port range."""
    protocol: Protocol = Protocol.ALL
    from_port: Optional[int] = None
    to_port: Optional[int] = None

    def __post_init__(self) -> None:
        if self.protocol is Protocol.ALL:
            return
        if self.from_port is None or self.to_port is None:
            raise ConfigurationError(f"{self.protocol.value} traffic needs a port range")
        if not 1 <= self.from_port <= self.to_port <= 65535:
            raise ConfigurationError(f"Invalid port range {self.from_port}-{self.to_port}")

    @classmethod
    def all_traffic(cls) -> "Traffic":
        return cls()

    @classmethod
    def tcp_port(cls, port: int) -> "Traffic":
        return cls(Protocol.TCP, port, port)

    @classmethod
    def tcp_range(cls, start: int, end: int) -> "Traffic":
        return cls(Protocol.TCP, start, end)

    @property
    def is_all(self) -> bool:
        return self.protocol is Protocol.ALL

    def covers(self, port: int, protocol: Protocol = Protocol.TCP) -> bool:
        if self.is_all:
            return True
        return protocol is self.protocol and self.from_port <= port <= self.to_port

    def end_ports(self) -> Tuple[int, ...]:
        """Ports at both ends of the selector, used when evaluating ACLs."""
        if self.is_all:
            return (1, 65535)
        return tuple(dict.fromkeys((self.from_port, self.to_port)))

    def describe(self) -> str:
        if self.is_all:
            return "all traffic"
        if self.from_port == self.to_port:
            return f"tcp/{self.from_port}"
        return f"tcp/{self.from_port}-{self.to_port}"


@dataclass(frozen=True)
class AclRule:
    """One numbered entry of a stateless ACL.

    ``cidr`` is the source for ingress entries and the destination for
    egress entries. Entries that exist only to admit return traffic of
    connections opened elsewhere carry ``return_traffic=True``.
    """
    name: str
    rule_number: int
    direction: Direction
    action: Action
    cidr: ipaddress.IPv4Network
    traffic: Traffic
    return_traffic: bool = False

    def __post_init__(self) -> None:
        if not MIN_RULE_NUMBER <= self.rule_number <= MAX_RULE_NUMBER:
            raise ConfigurationError(
                f"ACL rule {self.name}: number {self.rule_number} outside "
                f"{MIN_RULE_NUMBER}..{MAX_RULE_NUMBER}"
            )

    def matches(self, peer: ipaddress.IPv4Network, port: int, protocol: Protocol = Protocol.TCP) -> bool:
        # A peer range matches only when it lies entirely inside the entry's CIDR.
        return peer.subnet_of(self.cidr) and self.traffic.covers(port, protocol)


class NetworkAcl:
    """Stateless ACL associated with the subnets of one or more tiers."""

    def __init__(self, logical_id: str, tiers: Iterable[SubnetTier], subnet_ids: Iterable[str] = ()):
        self.logical_id = logical_id
        self.tiers: Tuple[SubnetTier, ...] = tuple(tiers)
        self.subnet_ids: Tuple[str, ...] = tuple(subnet_ids)
        self._entries: Dict[Tuple[Direction, int], AclRule] = {}
        self._sealed = False

    def __repr__(self) -> str:
        return f"NetworkAcl({self.logical_id!r}, tiers={[t.value for t in self.tiers]}, entries={len(self._entries)})"

    def add_entry(self, rule: AclRule) -> AclRule:
        """Add an entry; rule numbers must be unique per direction.

        Entry names must be unique across the whole ACL since they become
        part of the rendered resource ids.

        Raises:
            PolicyConflictError: if the (direction, rule number) slot is taken.
            ConfigurationError: if another entry already uses the name.
        """
        if self._sealed:
            raise TopologyError(f"{self.logical_id} is finalized and cannot take new entries")
        key = (rule.direction, rule.rule_number)
        existing = self._entries.get(key)
        if existing is not None:
            raise PolicyConflictError(
                self.logical_id,
                rule.direction.value,
                rule.rule_number,
                f"{rule.name} collides with {existing.name}",
            )
        if any(other.name == rule.name for other in self._entries.values()):
            raise ConfigurationError(f"{self.logical_id} already has an entry named {rule.name}")
        self._entries[key] = rule
        return rule

    def seal(self) -> None:
        self._sealed = True

    @property
    def entries(self) -> Tuple[AclRule, ...]:
        return tuple(self.rules(Direction.INGRESS) + self.rules(Direction.EGRESS))

    def rules(self, direction: Direction) -> List[AclRule]:
        """Entries of one direction in evaluation order."""
        return sorted(
            (rule for (d, _), rule in self._entries.items() if d is direction),
            key=lambda rule: rule.rule_number,
        )

    def entry(self, name: str) -> AclRule:
        for rule in self._entries.values():
            if rule.name == name:
                return rule
        raise KeyError(name)

    def guards(self, tier: SubnetTier) -> bool:
        return tier in self.tiers

    def match(
        self,
        direction: Direction,
        peer: Union[str, ipaddress.IPv4Network],
        port: int,
        protocol: Protocol = Protocol.TCP,
    ) -> Optional[AclRule]:
        """First entry, by ascending rule number, that matches the traffic."""
        peer_network = _network(peer)
        for rule in self.rules(direction):
            if rule.matches(peer_network, port, protocol):
                return rule
        return None

    def evaluate(
        self,
        direction: Direction,
        peer: Union[str, ipaddress.IPv4Network],
        port: int,
        protocol: Protocol = Protocol.TCP,
    ) -> Action:
        rule = self.match(direction, peer, port, protocol)
        return rule.action if rule is not None else Action.DENY

    def drops(
        self,
        direction: Direction,
        peer: Union[str, ipaddress.IPv4Network],
        port: int,
        protocol: Protocol = Protocol.TCP,
    ) -> Tuple[bool, Optional[AclRule]]:
        """Whether any address of ``peer`` is dropped for the traffic.

        Each address is decided by the first entry that contains it, so a
        deny for part of the range drops that part even when a later entry
        allows the whole range. Returns the deciding deny entry, or ``None``
        when the drop comes from addresses no entry matches.
        """
        pending = [_network(peer)]
        for rule in self.rules(direction):
            if not pending:
                break
            if not rule.traffic.covers(port, protocol):
                continue
            hit, pending = _split(pending, rule.cidr)
            if hit and rule.action is Action.DENY:
                return True, rule
        return bool(pending), None


@dataclass(frozen=True)
class Peer:
    """Either a CIDR range or another security boundary, never both."""
    cidr: Optional[ipaddress.IPv4Network] = None
    boundary: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.cidr is None) == (self.boundary is None):
            raise ConfigurationError("A peer is either a CIDR or a boundary reference")

    @classmethod
    def from_cidr(cls, cidr: Union[str, ipaddress.IPv4Network]) -> "Peer":
        return cls(cidr=_network(cidr))

    @classmethod
    def from_boundary(cls, logical_id: str) -> "Peer":
        return cls(boundary=logical_id)

    def describe(self) -> str:
        return self.boundary if self.boundary is not None else str(self.cidr)


@dataclass(frozen=True)
class BoundaryRule:
    direction: Direction
    peer: Peer
    traffic: Traffic
    description: str


@dataclass
class SecurityBoundary:
    """Stateful rule container for one tier.

    Outbound is denied unless an egress rule is added explicitly.
    """
    logical_id: str
    role: BoundaryRole
    tier: SubnetTier
    description: str
    ingress: List[BoundaryRule] = field(default_factory=list)
    egress: List[BoundaryRule] = field(default_factory=list)

    @property
    def allow_all_outbound(self) -> bool:
        return False

    def add_ingress(self, peer: Peer, traffic: Traffic, description: str) -> BoundaryRule:
        rule = BoundaryRule(Direction.INGRESS, peer, traffic, description)
        self.ingress.append(rule)
        return rule

    def add_egress(self, peer: Peer, traffic: Traffic, description: str) -> BoundaryRule:
        rule = BoundaryRule(Direction.EGRESS, peer, traffic, description)
        self.egress.append(rule)
        return rule

    def references(self) -> List[str]:
        """Boundaries named by ingress rules, in rule order."""
        return list(dict.fromkeys(r.peer.boundary for r in self.ingress if r.peer.boundary is not None))

    def accepts_from(self, source: str, port: int) -> bool:
        """Whether an ingress rule admits ``port`` from boundary ``source``."""
        return any(r.peer.boundary == source and r.traffic.covers(port) for r in self.ingress)


@dataclass(frozen=True)
class AccessControl:
    """Result of :func:`compose`."""
    acls: Tuple[NetworkAcl, ...]
    boundaries: Dict[str, SecurityBoundary]
    ephemeral_ports: Tuple[int, int] = DEFAULT_EPHEMERAL_PORTS

    def boundary(self, role: BoundaryRole) -> SecurityBoundary:
        for boundary in self.boundaries.values():
            if boundary.role is role:
                return boundary
        raise KeyError(role)

    @property
    def edge(self) -> SecurityBoundary:
        return self.boundary(BoundaryRole.EDGE)

    @property
    def compute(self) -> SecurityBoundary:
        return self.boundary(BoundaryRole.COMPUTE)

    @property
    def data(self) -> SecurityBoundary:
        return self.boundary(BoundaryRole.DATA)

    def acl(self, logical_id: str) -> NetworkAcl:
        for acl in self.acls:
            if acl.logical_id == logical_id:
                return acl
        raise KeyError(logical_id)

    def acl_for(self, tier: SubnetTier) -> Optional[NetworkAcl]:
        for acl in self.acls:
            if acl.guards(tier):
                return acl
        return None


def _subnet_ids(topology: Topology, tiers: Sequence[SubnetTier]) -> List[str]:
    return [subnet.logical_id for tier in tiers for subnet in topology.subnets_in(tier)]


def _add_default(
    acl: NetworkAcl,
    setting: AclRuleSetting,
    name: str,
    direction: Direction,
    cidr: ipaddress.IPv4Network,
    traffic: Traffic,
    return_traffic: bool = False,
) -> None:
    if not setting.enabled:
        logger.debug(f"{acl.logical_id}: {name} disabled, rule number {setting.rule_number} left unused")
        return
    acl.add_entry(
        AclRule(
            name=name,
            rule_number=setting.rule_number,
            direction=direction,
            action=Action.ALLOW,
            cidr=cidr,
            traffic=traffic,
            return_traffic=return_traffic,
        )
    )


def _compose_acls(topology: Topology, policy: PolicyConfig, names: ResourceNames) -> Tuple[NetworkAcl, ...]:
    security = policy.security
    rules = policy.acls.rules
    ephemeral = Traffic.tcp_range(policy.acls.ephemeral_ports.start, policy.acls.ephemeral_ports.end)
    source = _network(security.allow_http_from)
    vpc = topology.block.network

    public_tiers = (SubnetTier.PUBLIC,)
    public = NetworkAcl(names.public_network_acl, public_tiers, _subnet_ids(topology, public_tiers))
    _add_default(public, rules.http_inbound, "AllowHttpInbound", Direction.INGRESS,
                 source, Traffic.tcp_port(security.http_port))
    _add_default(public, rules.https_inbound, "AllowHttpsInbound", Direction.INGRESS,
                 source, Traffic.tcp_port(security.https_port))
    _add_default(public, rules.ephemeral_inbound, "AllowEphemeralInbound", Direction.INGRESS,
                 ANY_IPV4, ephemeral, return_traffic=True)
    _add_default(public, rules.all_outbound, "AllowAllOutbound", Direction.EGRESS,
                 ANY_IPV4, Traffic.all_traffic())

    private_tiers = (SubnetTier.PRIVATE_EGRESS, SubnetTier.PRIVATE_ISOLATED)
    private = NetworkAcl(names.private_network_acl, private_tiers, _subnet_ids(topology, private_tiers))
    _add_default(private, rules.private_http_inbound, "AllowHttpFromVpc", Direction.INGRESS,
                 vpc, Traffic.tcp_port(security.http_port))
    _add_default(private, rules.private_database_inbound, "AllowDatabaseFromVpc", Direction.INGRESS,
                 vpc, Traffic.tcp_port(policy.database_port))
    _add_default(private, rules.private_ephemeral_inbound, "AllowEphemeralInboundPrivate", Direction.INGRESS,
                 ANY_IPV4, ephemeral, return_traffic=True)
    _add_default(private, rules.private_all_outbound, "AllowAllOutboundPrivate", Direction.EGRESS,
                 ANY_IPV4, Traffic.all_traffic())

    by_name = {"public": public, "private": private}
    for extra in policy.acls.extra_entries:
        acl = by_name[extra.acl]
        direction = Direction(extra.direction)
        if extra.from_port is None:
            traffic = Traffic.all_traffic()
        else:
            traffic = Traffic.tcp_range(extra.from_port, extra.to_port or extra.from_port)
        acl.add_entry(
            AclRule(
                name=extra.name or f"Custom{direction.value.capitalize()}{extra.rule_number}",
                rule_number=extra.rule_number,
                direction=direction,
                action=Action(extra.action),
                cidr=_network(extra.cidr),
                traffic=traffic,
            )
        )

    return public, private


def _compose_boundaries(
    policy: PolicyConfig, names: ResourceNames, compute_tier: SubnetTier
) -> Dict[str, SecurityBoundary]:
    security = policy.security
    http = Traffic.tcp_port(security.http_port)
    database = Traffic.tcp_port(policy.database_port)

    edge = SecurityBoundary(
        names.alb_security_group, BoundaryRole.EDGE, SubnetTier.PUBLIC,
        "Security group for Application Load Balancer",
    )
    compute = SecurityBoundary(
        names.asg_security_group, BoundaryRole.COMPUTE, compute_tier,
        "Security group for Auto Scaling Group instances",
    )
    data = SecurityBoundary(
        names.database_security_group, BoundaryRole.DATA, SubnetTier.PRIVATE_ISOLATED,
        "Security group for RDS database",
    )

    edge.add_ingress(Peer.from_cidr(security.allow_http_from), http,
                     f"Allow HTTP traffic from {security.allow_http_from}")
    edge.add_egress(Peer.from_boundary(compute.logical_id), http, "Allow traffic to ASG instances")

    compute.add_ingress(Peer.from_boundary(edge.logical_id), http, "Allow HTTP traffic from ALB")
    compute.add_egress(Peer.from_boundary(data.logical_id), database, "Allow traffic to database")
    if security.allow_package_downloads:
        logger.warning(
            f"{compute.logical_id}: outbound widened to HTTP/HTTPS on any address for package downloads"
        )
        compute.add_egress(Peer.from_cidr(ANY_IPV4), http, "Allow HTTP for package downloads")
        compute.add_egress(Peer.from_cidr(ANY_IPV4), Traffic.tcp_port(security.https_port),
                           "Allow HTTPS for package downloads")

    data.add_ingress(Peer.from_boundary(compute.logical_id), database, "Allow database traffic from ASG instances")

    return {boundary.logical_id: boundary for boundary in (edge, compute, data)}


def _validate_boundaries(boundaries: Mapping[str, SecurityBoundary], vpc: ipaddress.IPv4Network) -> None:
    """Reject dangling references, same-VPC CIDR peers and reference cycles."""
    for boundary in boundaries.values():
        for rule in boundary.ingress + boundary.egress:
            peer = rule.peer
            if peer.boundary is not None and peer.boundary not in boundaries:
                raise ConfigurationError(f"{boundary.logical_id} references unknown boundary {peer.boundary}")
            if peer.cidr is not None and peer.cidr.subnet_of(vpc):
                raise ConfigurationError(
                    f"{boundary.logical_id}: peer {peer.cidr} lies inside the VPC block {vpc}; "
                    "reference the security boundary instead"
                )

    visiting: set = set()
    done: set = set()

    def visit(logical_id: str, path: List[str]) -> None:
        if logical_id in done:
            return
        if logical_id in visiting:
            cycle = path[path.index(logical_id):] + [logical_id]
            raise ConfigurationError(f"Security boundary references form a cycle: {' -> '.join(cycle)}")
        visiting.add(logical_id)
        for ref in boundaries[logical_id].references():
            visit(ref, path + [logical_id])
        visiting.discard(logical_id)
        done.add(logical_id)

    for logical_id in boundaries:
        visit(logical_id, [])


def compose(
    topology: Topology,
    policy: PolicyConfig,
    *,
    names: Optional[ResourceNames] = None,
    compute_tier: SubnetTier = SubnetTier.PRIVATE_EGRESS,
) -> AccessControl:
    """Derive the ACLs and security boundaries from one policy.

    Args:
        topology: Network the ACLs are associated with; its block bounds
            which CIDRs count as same-VPC.
        policy: Ports, sources, rule toggles and rule numbers.
        names: Logical ids for the ACLs and boundaries.
        compute_tier: Tier the compute fleet is placed in.

    Raises:
        ConfigurationError: on a same-VPC CIDR peer or a broken reference graph.
        PolicyConflictError: when two ACL entries share a rule number.
    """
    names = names or ResourceNames()
    vpc = topology.block.network
    source = _network(policy.security.allow_http_from)
    if source.subnet_of(vpc):
        raise ConfigurationError(
            f"allow_http_from {source} lies inside the VPC block {vpc}; HTTP sources must be external"
        )

    boundaries = _compose_boundaries(policy, names, compute_tier)
    _validate_boundaries(boundaries, vpc)

    if policy.acls.enabled:
        acls = _compose_acls(topology, policy, names)
    else:
        logger.warning("Custom network ACLs disabled; subnets keep the VPC default ACL")
        acls = ()
    for acl in acls:
        acl.seal()

    logger.info(
        f"Access control composed: {len(acls)} ACLs with {sum(len(a.entries) for a in acls)} entries, "
        f"{len(boundaries)} security boundaries"
    )
    return AccessControl(
        acls=acls,
        boundaries=boundaries,
        ephemeral_ports=(policy.acls.ephemeral_ports.start, policy.acls.ephemeral_ports.end),
    )


@dataclass(frozen=True)
class Finding:
    """A disagreement between the two access-control layers."""
    acl: str
    direction: Direction
    rule: Optional[str]
    description: str

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "acl": self.acl,
            "direction": self.direction.value,
            "rule": self.rule,
            "description": self.description,
        }


@dataclass(frozen=True)
class ConsistencyReport:
    # Flows a boundary admits but an ACL drops.
    blocked: Tuple[Finding, ...] = ()
    # ACL allow entries wider than what the boundaries behind the ACL accept.
    gaps: Tuple[Finding, ...] = ()

    @property
    def consistent(self) -> bool:
        return not self.blocked

    def to_dict(self) -> Dict[str, List[Dict[str, Optional[str]]]]:
        return {
            "blocked": [finding.to_dict() for finding in self.blocked],
            "gaps": [finding.to_dict() for finding in self.gaps],
        }


class _FlowChecker:
    """Evaluates boundary-admitted flows against the ACLs of both ends."""

    def __init__(self, acls: Sequence[NetworkAcl], ephemeral_ports: Tuple[int, int]):
        self.acls = acls
        self.ephemeral = tuple(dict.fromkeys(ephemeral_ports))
        self.findings: Dict[Tuple[str, Direction, str], Finding] = {}

    def acl_for(self, tier: SubnetTier) -> Optional[NetworkAcl]:
        for acl in self.acls:
            if acl.guards(tier):
                return acl
        return None

    def check(self, acl: Optional[NetworkAcl], direction: Direction, peer: ipaddress.IPv4Network,
              port: int, flow: str, stage: str) -> None:
        if acl is None:
            return
        dropped, rule = acl.drops(direction, peer, port)
        if not dropped:
            return
        key = (acl.logical_id, direction, f"{flow} {stage}")
        if key in self.findings:
            return
        if rule is not None:
            reason = f"denied by {rule.name} (rule {rule.rule_number})"
        else:
            reason = "no matching entry"
        self.findings[key] = Finding(
            acl=acl.logical_id,
            direction=direction,
            rule=rule.name if rule else None,
            description=f"{flow}: {stage} dropped at {acl.logical_id}, {reason}",
        )

    def check_request(self, src_tier: Optional[SubnetTier], sources: Sequence[ipaddress.IPv4Network],
                      dst_tier: SubnetTier, destinations: Sequence[ipaddress.IPv4Network],
                      traffic: Traffic, flow: str) -> None:
        src_acl = self.acl_for(src_tier) if src_tier is not None else None
        dst_acl = self.acl_for(dst_tier)
        for port in traffic.end_ports():
            for src in sources:
                for dst in destinations:
                    if src == dst:
                        continue
                    self.check(src_acl, Direction.EGRESS, dst, port, flow, "request leaving source")
                    self.check(dst_acl, Direction.INGRESS, src, port, flow, "request entering destination")
                    for client_port in self.ephemeral:
                        self.check(dst_acl, Direction.EGRESS, src, client_port, flow, "reply leaving destination")
                        self.check(src_acl, Direction.INGRESS, dst, client_port, flow, "reply entering source")


def check_consistency(
    acls: Sequence[NetworkAcl],
    boundaries: Mapping[str, SecurityBoundary],
    topology: Topology,
    ephemeral_ports: Tuple[int, int] = DEFAULT_EPHEMERAL_PORTS,
) -> ConsistencyReport:
    """Cross-check the stateless and stateful layers.

    ``blocked`` lists flows some boundary admits that an ACL drops on the way
    in, on the way out, or on the reply path (probing both ends of the client
    ephemeral range). ``gaps`` lists ACL ingress allow entries, other than
    return-traffic entries, that admit addresses or ports no boundary behind
    the ACL accepts; the stateful layer is then the only thing enforcing that
    traffic.
    """
    checker = _FlowChecker(acls, ephemeral_ports)

    for boundary in boundaries.values():
        destinations = topology.tier_cidrs(boundary.tier)
        for rule in boundary.ingress:
            if rule.peer.boundary is not None:
                source = boundaries[rule.peer.boundary]
                checker.check_request(
                    source.tier, topology.tier_cidrs(source.tier),
                    boundary.tier, destinations, rule.traffic,
                    f"{source.logical_id} -> {boundary.logical_id} {rule.traffic.describe()}",
                )
            else:
                checker.check_request(
                    None, [rule.peer.cidr], boundary.tier, destinations, rule.traffic,
                    f"{rule.peer.cidr} -> {boundary.logical_id} {rule.traffic.describe()}",
                )
        for rule in boundary.egress:
            # Same-VPC egress is checked from the receiving boundary's ingress rules.
            if rule.peer.cidr is None:
                continue
            src_acl = checker.acl_for(boundary.tier)
            flow = f"{boundary.logical_id} -> {rule.peer.cidr} {rule.traffic.describe()}"
            for port in rule.traffic.end_ports():
                checker.check(src_acl, Direction.EGRESS, rule.peer.cidr, port, flow, "request leaving source")
                for client_port in checker.ephemeral:
                    checker.check(src_acl, Direction.INGRESS, rule.peer.cidr, client_port, flow,
                                  "reply entering source")

    gaps: List[Finding] = []
    for acl in acls:
        behind = [b for b in boundaries.values() if acl.guards(b.tier)]
        for rule in acl.rules(Direction.INGRESS):
            if rule.action is not Action.ALLOW or rule.return_traffic:
                continue
            uncovered = _unaccepted(rule, behind, boundaries, topology)
            if not uncovered:
                continue
            ranges = ", ".join(str(network) for network in uncovered[:3])
            if len(uncovered) > 3:
                ranges += f" and {len(uncovered) - 3} more"
            gaps.append(
                Finding(
                    acl=acl.logical_id,
                    direction=Direction.INGRESS,
                    rule=rule.name,
                    description=(
                        f"{rule.name} (rule {rule.rule_number}) allows {rule.traffic.describe()} from "
                        f"{rule.cidr} but no security boundary behind {acl.logical_id} accepts {ranges}"
                    ),
                )
            )

    report = ConsistencyReport(blocked=tuple(checker.findings.values()), gaps=tuple(gaps))
    for finding in report.blocked:
        logger.warning(f"Blocked flow: {finding.description}")
    for finding in report.gaps:
        logger.warning(f"Stateless allow without stateful counterpart: {finding.description}")
    return report


def _unaccepted(
    rule: AclRule,
    behind: Sequence[SecurityBoundary],
    boundaries: Mapping[str, SecurityBoundary],
    topology: Topology,
) -> List[ipaddress.IPv4Network]:
    """Parts of ``rule.cidr`` no boundary in ``behind`` admits, at either end of its port range."""
    uncovered: List[ipaddress.IPv4Network] = []
    for port in rule.traffic.end_ports():
        pending = [rule.cidr]
        for boundary in behind:
            for ingress in boundary.ingress:
                if not ingress.traffic.covers(port):
                    continue
                if ingress.peer.cidr is not None:
                    sources = [ingress.peer.cidr]
                else:
                    sources = topology.tier_cidrs(boundaries[ingress.peer.boundary].tier)
                for source in sources:
                    _, pending = _split(pending, source)
        uncovered.extend(pending)
    return list(ipaddress.collapse_addresses(uncovered))
