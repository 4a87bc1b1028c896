"""Topology and policy composition entry point.

``compose_plan`` runs every component in dependency order against one
validated configuration and returns an immutable :class:`TopologyPlan`.
Any error aborts composition; no partial plan is ever returned.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .access_control import (
    AccessControl,
    ConsistencyReport,
    NetworkAcl,
    Protocol,
    SecurityBoundary,
    check_consistency,
    compose,
)
from .compute import FleetPlan, ScalingPolicyBinding, build_fleet, grant_secret_read
from .config import StackConfig
from .database import DatabasePlan, build_database
from .engines import resolve_engine
from .environment import EnvironmentClass, classify, resolve_deletion_protection
from .load_balancing import LoadBalancerPlan, build_load_balancer
from .network import FlowLogRequest, SubnetTier, Topology, build_topology
from .outputs import ExportEntry, build_exports, export_table
from .plan import ResourcePlan, ResourceSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TopologyPlan:
    """Finalized plan, ready for the provider."""
    stack_name: str
    environment_name: str
    environment_class: EnvironmentClass
    region: str
    account: Optional[str]
    topology: Topology
    access: AccessControl
    load_balancer: LoadBalancerPlan
    fleet: FleetPlan
    database: DatabasePlan
    resources: Tuple[ResourceSpec, ...]
    exports: Tuple[ExportEntry, ...]
    report: ConsistencyReport
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def acls(self) -> Tuple[NetworkAcl, ...]:
        return self.access.acls

    @property
    def boundaries(self) -> Dict[str, SecurityBoundary]:
        return self.access.boundaries

    @property
    def export_table(self) -> Dict[str, str]:
        return export_table(self.exports)

    def resource(self, logical_id: str) -> ResourceSpec:
        for spec in self.resources:
            if spec.logical_id == logical_id:
                return spec
        raise KeyError(logical_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stack_name": self.stack_name,
            "environment": self.environment_name,
            "environment_class": self.environment_class.value,
            "region": self.region,
            "account": self.account,
            "resources": [spec.to_dict() for spec in self.resources],
            "exports": [entry.to_dict() for entry in self.exports],
            "consistency": self.report.to_dict(),
            "tags": dict(self.tags),
        }


def _traffic_properties(traffic) -> Dict[str, Any]:
    if traffic.protocol is Protocol.ALL:
        return {"protocol": "-1"}
    return {"protocol": "tcp", "from_port": traffic.from_port, "to_port": traffic.to_port}


def _add_network(plan: ResourcePlan, topology: Topology) -> None:
    vpc = topology.vpc_id
    plan.add(vpc, "AWS::EC2::VPC", {
        "cidr_block": topology.block.cidr,
        "enable_dns_hostnames": True,
        "enable_dns_support": True,
    })
    plan.add(topology.internet_gateway, "AWS::EC2::InternetGateway", depends_on=[vpc])

    for subnet in topology.subnets_in(SubnetTier.PUBLIC):
        plan.add(subnet.logical_id, "AWS::EC2::Subnet", {
            "cidr_block": str(subnet.cidr),
            "availability_zone": subnet.zone,
            "tier": subnet.tier.value,
            "map_public_ip_on_launch": True,
        }, depends_on=[vpc])
    for nat in topology.nat_gateways:
        plan.add(nat.logical_id, "AWS::EC2::NatGateway", {"subnet": nat.subnet_id},
                 depends_on=[nat.subnet_id, topology.internet_gateway])
    for tier in (SubnetTier.PRIVATE_EGRESS, SubnetTier.PRIVATE_ISOLATED):
        for subnet in topology.subnets_in(tier):
            plan.add(subnet.logical_id, "AWS::EC2::Subnet", {
                "cidr_block": str(subnet.cidr),
                "availability_zone": subnet.zone,
                "tier": subnet.tier.value,
                "map_public_ip_on_launch": False,
            }, depends_on=[vpc])

    for subnet in topology.subnets:
        if subnet.route_target is None:
            continue
        plan.add(f"{subnet.logical_id}DefaultRoute", "AWS::EC2::Route", {
            "subnet": subnet.logical_id,
            "destination_cidr_block": "0.0.0.0/0",
            "target": subnet.route_target,
        }, depends_on=[subnet.logical_id, subnet.route_target])

    flow_log = topology.flow_log
    if flow_log is not None:
        plan.add(flow_log.log_group_id, "AWS::Logs::LogGroup", {
            "retention_in_days": flow_log.retention.days,
            "removal_policy": flow_log.removal_policy.value,
        })
        plan.add(flow_log.flow_log_id, "AWS::EC2::FlowLog", {
            "resource": vpc,
            "traffic_type": flow_log.traffic_type.value,
            "log_group": flow_log.log_group_id,
        }, depends_on=[vpc, flow_log.log_group_id])


def _add_access_control(plan: ResourcePlan, topology: Topology, access: AccessControl) -> None:
    vpc = topology.vpc_id
    for acl in access.acls:
        plan.add(acl.logical_id, "AWS::EC2::NetworkAcl", {"tiers": [t.value for t in acl.tiers]}, depends_on=[vpc])
        for rule in acl.entries:
            plan.add(f"{acl.logical_id}{rule.name}", "AWS::EC2::NetworkAclEntry", {
                "rule_number": rule.rule_number,
                "egress": rule.direction.value == "egress",
                "rule_action": rule.action.value,
                "cidr_block": str(rule.cidr),
                **_traffic_properties(rule.traffic),
            }, depends_on=[acl.logical_id])
        for subnet_id in acl.subnet_ids:
            plan.add(f"{acl.logical_id}{subnet_id}Association", "AWS::EC2::SubnetNetworkAclAssociation", {
                "network_acl": acl.logical_id,
                "subnet": subnet_id,
            }, depends_on=[acl.logical_id, subnet_id])

    # Every group exists before any cross-reference is added.
    for boundary in access.boundaries.values():
        plan.add(boundary.logical_id, "AWS::EC2::SecurityGroup", {
            "group_description": boundary.description,
            "allow_all_outbound": boundary.allow_all_outbound,
            "ingress": [
                {"cidr_ip": str(r.peer.cidr), "description": r.description, **_traffic_properties(r.traffic)}
                for r in boundary.ingress if r.peer.cidr is not None
            ],
            "egress": [
                {"cidr_ip": str(r.peer.cidr), "description": r.description, **_traffic_properties(r.traffic)}
                for r in boundary.egress if r.peer.cidr is not None
            ],
        }, depends_on=[vpc])
    for boundary in access.boundaries.values():
        for kind, rules in (("Ingress", boundary.ingress), ("Egress", boundary.egress)):
            for rule in rules:
                if rule.peer.boundary is None:
                    continue
                link = "From" if kind == "Ingress" else "To"
                plan.add(
                    f"{boundary.logical_id}{kind}{link}{rule.peer.boundary}{rule.traffic.from_port}",
                    f"AWS::EC2::SecurityGroup{kind}",
                    {
                        "group": boundary.logical_id,
                        "peer_group": rule.peer.boundary,
                        "description": rule.description,
                        **_traffic_properties(rule.traffic),
                    },
                    depends_on=[boundary.logical_id, rule.peer.boundary],
                )


def _add_load_balancer(plan: ResourcePlan, topology: Topology, lb: LoadBalancerPlan) -> None:
    tg = lb.target_group
    plan.add(lb.logical_id, "AWS::ElasticLoadBalancingV2::LoadBalancer", {
        "scheme": "internet-facing" if lb.internet_facing else "internal",
        "subnets": list(lb.subnet_ids),
        "security_groups": [lb.security_group],
        "deletion_protection": lb.deletion_protection,
        "idle_timeout": lb.idle_timeout,
        "http2_enabled": lb.http2_enabled,
    }, depends_on=[lb.security_group, *lb.subnet_ids, topology.internet_gateway])

    health = tg.health_check
    plan.add(tg.logical_id, "AWS::ElasticLoadBalancingV2::TargetGroup", {
        "target_type": tg.target_type.value.lower(),
        "port": tg.port,
        "protocol": tg.protocol.value if tg.protocol else None,
        "deregistration_delay": tg.deregistration_delay,
        "health_check": None if health is None else {
            "path": health.path,
            "protocol": health.protocol.value,
            "port": health.port,
            "interval": health.interval,
            "timeout": health.timeout,
            "healthy_threshold_count": health.healthy_threshold_count,
            "unhealthy_threshold_count": health.unhealthy_threshold_count,
        },
    }, depends_on=[topology.vpc_id])

    listener = lb.listener
    plan.add(listener.logical_id, "AWS::ElasticLoadBalancingV2::Listener", {
        "port": listener.port,
        "protocol": listener.protocol.value,
        "certificate_arn": listener.certificate_arn,
        "default_target_group": listener.default_target_group,
    }, depends_on=[lb.logical_id, listener.default_target_group])


def _add_fleet(plan: ResourcePlan, fleet: FleetPlan, listener_id: str) -> None:
    role_id = f"{fleet.logical_id}InstanceRole"
    plan.add(role_id, "AWS::IAM::Role", {"assumed_by": "ec2.amazonaws.com"})
    volume = fleet.root_volume
    plan.add(fleet.logical_id, "AWS::AutoScaling::AutoScalingGroup", {
        "instance_type": fleet.instance_type,
        "machine_image": fleet.machine_image.value,
        "subnets": list(fleet.subnet_ids),
        "security_groups": [fleet.security_group],
        "target_groups": [fleet.target_group],
        "min_size": fleet.scaling.min_capacity,
        "max_size": fleet.scaling.max_capacity,
        "desired_capacity": fleet.scaling.desired_capacity,
        "cooldown": fleet.scaling.cooldown,
        "health_check_type": fleet.health_check_type.value,
        "health_check_grace_period": fleet.health_check_grace_period,
        "require_imdsv2": fleet.require_imdsv2,
        "block_device": {
            "device_name": volume.device_name,
            "volume_size": volume.size,
            "volume_type": volume.volume_type.value,
            "iops": volume.iops,
            "encrypted": volume.encrypted,
            "delete_on_termination": volume.delete_on_termination,
        },
        "user_data": fleet.user_data,
    }, depends_on=[role_id, fleet.security_group, *fleet.subnet_ids, fleet.target_group, listener_id])
    plan.add(fleet.scaling_policy_id, "AWS::AutoScaling::ScalingPolicy", {
        "policy_type": "TargetTrackingScaling",
        "predefined_metric": "ASGAverageCPUUtilization",
        "target_value": fleet.scaling.target_utilization,
        "cooldown": fleet.scaling.cooldown,
    }, depends_on=[fleet.logical_id])


def _add_database(plan: ResourcePlan, database: DatabasePlan) -> None:
    secret = database.credentials
    plan.add(secret.logical_id, "AWS::SecretsManager::Secret", {
        "name": secret.secret_name,
        "description": "RDS database master credentials",
        "username": secret.username,
        "generate_string_key": secret.generate_string_key,
        "password_length": secret.password_length,
        "exclude_punctuation": secret.exclude_punctuation,
        "include_space": secret.include_space,
        "exclude_characters": secret.exclude_characters,
    })
    plan.add(database.subnet_group_id, "AWS::RDS::DBSubnetGroup", {
        "description": "Subnet group for RDS database",
        "subnets": list(database.subnet_ids),
    }, depends_on=list(database.subnet_ids))
    plan.add(database.logical_id, "AWS::RDS::DBInstance", {
        "engine": database.engine.name,
        "engine_version": database.engine_version,
        "instance_class": f"db.{database.instance_type}",
        "port": database.port,
        "db_name": database.database_name,
        "allocated_storage": database.allocated_storage,
        "max_allocated_storage": database.max_allocated_storage,
        "multi_az": database.multi_az,
        "storage_encrypted": database.storage_encrypted,
        "auto_minor_version_upgrade": database.auto_minor_version_upgrade,
        "backup_retention_period": database.backup_retention_days,
        "preferred_backup_window": database.preferred_backup_window,
        "preferred_maintenance_window": database.preferred_maintenance_window,
        "deletion_protection": database.deletion_protection,
        "removal_policy": database.removal_policy.value,
        "publicly_accessible": False,
        "cloudwatch_logs_exports": list(database.log_exports.streams),
        "cloudwatch_logs_retention_days": database.log_exports.retention.days,
        "credentials_secret": secret.logical_id,
    }, depends_on=[secret.logical_id, database.subnet_group_id, database.security_group])


def _add_grants(plan: ResourcePlan, fleet: FleetPlan) -> None:
    role_id = f"{fleet.logical_id}InstanceRole"
    for secret_id in fleet.secret_read_grants:
        plan.add(f"{fleet.logical_id}{secret_id}ReadPolicy", "AWS::IAM::Policy", {
            "role": role_id,
            "actions": ["secretsmanager:GetSecretValue", "secretsmanager:DescribeSecret"],
            "resource": secret_id,
        }, depends_on=[role_id, secret_id])


def compose_plan(config: StackConfig) -> TopologyPlan:
    """Compose the full plan for one validated configuration.

    Raises:
        ConfigurationError: on invalid or inconsistent input.
        UnsupportedEngineError: before anything else is composed.
        PolicyConflictError: when ACL rule numbers collide.
    """
    names = config.resource_names
    environment_name = config.environment.name

    resolve_engine(config.database.engine)
    environment_class = classify(environment_name)
    policy = config.policy
    logger.info(
        f"Composing {config.stack_name} for {environment_name} ({environment_class.value}) "
        f"in {config.environment.region}"
    )

    vpc_settings = config.network.vpc
    flow_settings = vpc_settings.flow_logs
    flow_log = None
    if flow_settings.enabled:
        flow_log = FlowLogRequest(
            retention_days=flow_settings.retention_days,
            removal_policy=flow_settings.removal_policy,
            traffic_type=flow_settings.traffic_type,
            log_group_id=names.vpc_flow_logs_group,
            flow_log_id=names.vpc_flow_log,
        )
    topology = build_topology(
        vpc_settings.block,
        nat_gateways=vpc_settings.nat_gateways,
        vpc_id=names.vpc,
        subnet_names=vpc_settings.subnet_names,
        availability_zones=vpc_settings.availability_zones,
        flow_log=flow_log,
    )

    access = compose(topology, policy, names=names, compute_tier=config.compute.asg.subnet_tier)
    report = check_consistency(access.acls, access.boundaries, topology, access.ephemeral_ports)

    alb = config.compute.alb
    load_balancer = build_load_balancer(
        topology,
        access.edge,
        alb,
        deletion_protection=resolve_deletion_protection(alb.deletion_protection, environment_class),
        names=names,
    )

    asg = config.compute.asg
    fleet = build_fleet(
        topology,
        access.compute,
        load_balancer.target_group,
        ScalingPolicyBinding.from_settings(asg),
        asg,
        config.compute.storage,
        names=names,
    )

    database = build_database(
        topology,
        access.data,
        environment_class,
        config.database,
        port=policy.database_port,
        secret_name=f"{environment_name}-db-credentials",
        names=names,
    )
    fleet = grant_secret_read(fleet, database.credentials.logical_id)

    exports = build_exports(topology, load_balancer, fleet, database, config.outputs)

    resource_plan = ResourcePlan()
    _add_network(resource_plan, topology)
    _add_access_control(resource_plan, topology, access)
    _add_load_balancer(resource_plan, topology, load_balancer)
    _add_fleet(resource_plan, fleet, load_balancer.listener.logical_id)
    _add_database(resource_plan, database)
    _add_grants(resource_plan, fleet)
    resources = tuple(resource_plan.ordered())

    tags = dict(config.tags)
    tags["Environment"] = environment_name

    logger.info(
        f"Plan for {environment_name}: {len(resources)} resources, {len(exports)} exports, "
        f"{len(report.blocked)} blocked flows, {len(report.gaps)} stateless-only allows"
    )
    return TopologyPlan(
        stack_name=config.stack_name,
        environment_name=environment_name,
        environment_class=environment_class,
        region=config.environment.region,
        account=config.environment.account,
        topology=topology,
        access=access,
        load_balancer=load_balancer,
        fleet=fleet,
        database=database,
        resources=resources,
        exports=exports,
        report=report,
        tags=tags,
    )
