"""Two-tier CDK Stack.

Renders a finalized ``TopologyPlan`` into CloudFormation:
- VPC with public, private and isolated subnets, NAT gateways and flow logs
- Network ACLs and security groups from the composed access-control layers
- Application Load Balancer, target group and listener
- Auto Scaling Group with CPU target tracking
- RDS instance with generated Secrets Manager credentials
- Stack outputs and tags

No policy is derived here: every value comes from the plan.
"""

import json
from typing import Dict, Tuple

from aws_cdk import (
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    Tags,
)
from aws_cdk import (
    aws_autoscaling as autoscaling,
)
from aws_cdk import (
    aws_ec2 as ec2,
)
from aws_cdk import (
    aws_elasticloadbalancingv2 as elbv2,
)
from aws_cdk import (
    aws_logs as logs,
)
from aws_cdk import (
    aws_rds as rds,
)
from aws_cdk import (
    aws_secretsmanager as secretsmanager,
)
from constructs import Construct

from twotier.access_control import ANY_IPV4, Action, Direction, Peer, Traffic
from twotier.composer import TopologyPlan
from twotier.config import MachineImageType
from twotier.network import SubnetTier

SUBNET_TYPES = {
    SubnetTier.PUBLIC: ec2.SubnetType.PUBLIC,
    SubnetTier.PRIVATE_EGRESS: ec2.SubnetType.PRIVATE_WITH_EGRESS,
    SubnetTier.PRIVATE_ISOLATED: ec2.SubnetType.PRIVATE_ISOLATED,
}


def _acl_traffic(traffic: Traffic) -> ec2.AclTraffic:
    if traffic.is_all:
        return ec2.AclTraffic.all_traffic()
    if traffic.from_port == traffic.to_port:
        return ec2.AclTraffic.tcp_port(traffic.from_port)
    return ec2.AclTraffic.tcp_port_range(traffic.from_port, traffic.to_port)


def _port(traffic: Traffic) -> ec2.Port:
    if traffic.is_all:
        return ec2.Port.all_traffic()
    if traffic.from_port == traffic.to_port:
        return ec2.Port.tcp(traffic.from_port)
    return ec2.Port.tcp_range(traffic.from_port, traffic.to_port)


class TwoTierStack(Stack):
    """CDK Stack for the highly available two-tier topology."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        plan: TopologyPlan,
        **kwargs
    ) -> None:
        """Initialize the stack from a composed plan.

        Args:
            scope: CDK scope
            construct_id: Stack identifier
            plan: Output of ``twotier.compose_plan``
            **kwargs: Additional stack arguments
        """
        super().__init__(scope, construct_id, **kwargs)
        self.plan = plan

        # Networking
        self.vpc = self._create_vpc()
        self.flow_log_group = self._create_flow_logs()
        self.network_acls = self._create_network_acls()
        self.security_groups = self._create_security_groups()

        # Load balancing and compute
        self.load_balancer, self.target_group, self.listener = self._create_load_balancer()
        self.auto_scaling_group = self._create_auto_scaling_group()

        # Data
        self.database_secret, self.database = self._create_database()
        self.database_secret.grant_read(self.auto_scaling_group)

        self._create_outputs()
        self._apply_tags()

    def _create_vpc(self) -> ec2.Vpc:
        """Create the VPC with one subnet per zone and tier."""
        topology = self.plan.topology
        mask = topology.block.subnet_mask
        subnet_configuration = [
            ec2.SubnetConfiguration(
                name=topology.subnet_names[tier],
                subnet_type=SUBNET_TYPES[tier],
                cidr_mask=mask,
            )
            for tier in (SubnetTier.PUBLIC, SubnetTier.PRIVATE_EGRESS, SubnetTier.PRIVATE_ISOLATED)
        ]

        zone_props = (
            {"availability_zones": list(topology.zones)}
            if topology.zones_named
            else {"max_azs": topology.block.az_count}
        )
        return ec2.Vpc(
            self, topology.vpc_id,
            ip_addresses=ec2.IpAddresses.cidr(topology.block.cidr),
            nat_gateways=len(topology.nat_gateways),
            subnet_configuration=subnet_configuration,
            **zone_props,
        )

    def _create_flow_logs(self) -> logs.LogGroup | None:
        """Send VPC flow logs to CloudWatch when enabled."""
        flow_log = self.plan.topology.flow_log
        if flow_log is None:
            return None

        log_group = logs.LogGroup(
            self, flow_log.log_group_id,
            retention=logs.RetentionDays[flow_log.retention.name],
            removal_policy=RemovalPolicy[flow_log.removal_policy.value],
        )
        self.vpc.add_flow_log(
            flow_log.flow_log_id,
            destination=ec2.FlowLogDestination.to_cloud_watch_logs(log_group),
            traffic_type=ec2.FlowLogTrafficType[flow_log.traffic_type.value],
        )
        return log_group

    def _create_network_acls(self) -> Dict[str, ec2.NetworkAcl]:
        """Create the subnet ACLs and their numbered entries."""
        acls: Dict[str, ec2.NetworkAcl] = {}
        for acl_plan in self.plan.acls:
            first, *rest = acl_plan.tiers
            acl = ec2.NetworkAcl(
                self, acl_plan.logical_id,
                vpc=self.vpc,
                subnet_selection=ec2.SubnetSelection(subnet_type=SUBNET_TYPES[first]),
            )
            for tier in rest:
                acl.associate_with_subnet(
                    f"{tier.value.title().replace('_', '')}Association",
                    subnet_type=SUBNET_TYPES[tier],
                )

            for rule in acl_plan.entries:
                cidr = ec2.AclCidr.any_ipv4() if rule.cidr == ANY_IPV4 else ec2.AclCidr.ipv4(str(rule.cidr))
                acl.add_entry(
                    rule.name,
                    cidr=cidr,
                    rule_number=rule.rule_number,
                    traffic=_acl_traffic(rule.traffic),
                    direction=(
                        ec2.TrafficDirection.INGRESS
                        if rule.direction is Direction.INGRESS
                        else ec2.TrafficDirection.EGRESS
                    ),
                    rule_action=ec2.Action.ALLOW if rule.action is Action.ALLOW else ec2.Action.DENY,
                )
            acls[acl_plan.logical_id] = acl
        return acls

    def _create_security_groups(self) -> Dict[str, ec2.SecurityGroup]:
        """Create every security group first, then wire their rules."""
        groups: Dict[str, ec2.SecurityGroup] = {}
        for boundary in self.plan.boundaries.values():
            groups[boundary.logical_id] = ec2.SecurityGroup(
                self, boundary.logical_id,
                vpc=self.vpc,
                description=boundary.description,
                allow_all_outbound=boundary.allow_all_outbound,
            )

        def peer_of(peer: Peer) -> ec2.IPeer:
            if peer.boundary is not None:
                return groups[peer.boundary]
            if peer.cidr == ANY_IPV4:
                return ec2.Peer.any_ipv4()
            return ec2.Peer.ipv4(str(peer.cidr))

        for boundary in self.plan.boundaries.values():
            group = groups[boundary.logical_id]
            for rule in boundary.ingress:
                group.add_ingress_rule(peer_of(rule.peer), _port(rule.traffic), rule.description)
            for rule in boundary.egress:
                group.add_egress_rule(peer_of(rule.peer), _port(rule.traffic), rule.description)
        return groups

    def _create_load_balancer(
        self,
    ) -> Tuple[elbv2.ApplicationLoadBalancer, elbv2.ApplicationTargetGroup, elbv2.ApplicationListener]:
        """Create the load balancer, its target group and listener."""
        lb_plan = self.plan.load_balancer
        tg_plan = lb_plan.target_group
        listener_plan = lb_plan.listener

        load_balancer = elbv2.ApplicationLoadBalancer(
            self, lb_plan.logical_id,
            vpc=self.vpc,
            internet_facing=lb_plan.internet_facing,
            vpc_subnets=ec2.SubnetSelection(subnet_type=SUBNET_TYPES[lb_plan.subnet_tier]),
            security_group=self.security_groups[lb_plan.security_group],
            deletion_protection=lb_plan.deletion_protection,
            idle_timeout=Duration.seconds(lb_plan.idle_timeout),
            http2_enabled=lb_plan.http2_enabled,
        )

        health = tg_plan.health_check
        health_check = None
        if health is not None:
            health_check = elbv2.HealthCheck(
                enabled=True,
                path=health.path,
                protocol=elbv2.Protocol[health.protocol.value],
                port=health.port,
                interval=Duration.seconds(health.interval),
                timeout=Duration.seconds(health.timeout),
                healthy_threshold_count=health.healthy_threshold_count,
                unhealthy_threshold_count=health.unhealthy_threshold_count,
            )
        target_group = elbv2.ApplicationTargetGroup(
            self, tg_plan.logical_id,
            vpc=self.vpc,
            port=tg_plan.port,
            protocol=elbv2.ApplicationProtocol[tg_plan.protocol.value] if tg_plan.protocol else None,
            target_type=elbv2.TargetType[tg_plan.target_type.value],
            health_check=health_check,
            deregistration_delay=Duration.seconds(tg_plan.deregistration_delay),
        )

        certificates = None
        if listener_plan.certificate_arn:
            certificates = [elbv2.ListenerCertificate.from_arn(listener_plan.certificate_arn)]
        # open=False: the edge security group already carries the only admitted source.
        listener = load_balancer.add_listener(
            listener_plan.logical_id,
            port=listener_plan.port,
            protocol=elbv2.ApplicationProtocol[listener_plan.protocol.value],
            certificates=certificates,
            default_target_groups=[target_group],
            open=False,
        )
        return load_balancer, target_group, listener

    def _create_auto_scaling_group(self) -> autoscaling.AutoScalingGroup:
        """Create the fleet, register it and attach CPU target tracking."""
        fleet = self.plan.fleet
        volume = fleet.root_volume

        if fleet.machine_image is MachineImageType.AMAZON_LINUX_2:
            machine_image = ec2.MachineImage.latest_amazon_linux2()
        else:
            machine_image = ec2.MachineImage.latest_amazon_linux2023()

        asg = autoscaling.AutoScalingGroup(
            self, fleet.logical_id,
            vpc=self.vpc,
            instance_type=ec2.InstanceType(fleet.instance_type),
            machine_image=machine_image,
            security_group=self.security_groups[fleet.security_group],
            min_capacity=fleet.scaling.min_capacity,
            max_capacity=fleet.scaling.max_capacity,
            desired_capacity=fleet.scaling.desired_capacity,
            vpc_subnets=ec2.SubnetSelection(subnet_type=SUBNET_TYPES[fleet.subnet_tier]),
            cooldown=Duration.seconds(fleet.scaling.cooldown),
            require_imdsv2=fleet.require_imdsv2,
            block_devices=[
                autoscaling.BlockDevice(
                    device_name=volume.device_name,
                    volume=autoscaling.BlockDeviceVolume.ebs(
                        volume.size,
                        volume_type=autoscaling.EbsDeviceVolumeType[volume.volume_type.name],
                        encrypted=volume.encrypted,
                        delete_on_termination=volume.delete_on_termination,
                        iops=volume.iops,
                    ),
                )
            ],
        )
        if fleet.user_data:
            asg.add_user_data(fleet.user_data)

        asg.attach_to_application_target_group(self.target_group)

        cfn_asg = asg.node.default_child
        cfn_asg.health_check_type = fleet.health_check_type.value
        cfn_asg.health_check_grace_period = fleet.health_check_grace_period

        asg.scale_on_cpu_utilization(
            fleet.scaling_policy_id,
            target_utilization_percent=fleet.scaling.target_utilization,
            cooldown=Duration.seconds(fleet.scaling.cooldown),
        )
        return asg

    def _database_engine(self) -> rds.IInstanceEngine:
        db_plan = self.plan.database
        full, major = db_plan.engine_version, db_plan.major_version
        if db_plan.engine.name == "mariadb":
            return rds.DatabaseInstanceEngine.maria_db(version=rds.MariaDbEngineVersion.of(full, major))
        if db_plan.engine.name == "postgres":
            return rds.DatabaseInstanceEngine.postgres(version=rds.PostgresEngineVersion.of(full, major))
        return rds.DatabaseInstanceEngine.mysql(version=rds.MysqlEngineVersion.of(full, major))

    def _create_database(self) -> Tuple[secretsmanager.Secret, rds.DatabaseInstance]:
        """Create the credential secret, then the instance that uses it."""
        db_plan = self.plan.database
        credentials = db_plan.credentials

        secret = secretsmanager.Secret(
            self, credentials.logical_id,
            secret_name=credentials.secret_name,
            description="RDS database master credentials",
            generate_secret_string=secretsmanager.SecretStringGenerator(
                secret_string_template=json.dumps({"username": credentials.username}),
                generate_string_key=credentials.generate_string_key,
                exclude_punctuation=credentials.exclude_punctuation,
                include_space=credentials.include_space,
                password_length=credentials.password_length,
                exclude_characters=credentials.exclude_characters,
            ),
        )

        subnet_group = rds.SubnetGroup(
            self, db_plan.subnet_group_id,
            vpc=self.vpc,
            description="Subnet group for RDS database",
            vpc_subnets=ec2.SubnetSelection(subnet_type=SUBNET_TYPES[db_plan.subnet_tier]),
        )

        database = rds.DatabaseInstance(
            self, db_plan.logical_id,
            engine=self._database_engine(),
            vpc=self.vpc,
            subnet_group=subnet_group,
            instance_type=ec2.InstanceType(db_plan.instance_type),
            security_groups=[self.security_groups[db_plan.security_group]],
            port=db_plan.port,
            credentials=rds.Credentials.from_secret(secret),
            database_name=db_plan.database_name,
            allocated_storage=db_plan.allocated_storage,
            max_allocated_storage=db_plan.max_allocated_storage,
            storage_encrypted=db_plan.storage_encrypted,
            multi_az=db_plan.multi_az,
            auto_minor_version_upgrade=db_plan.auto_minor_version_upgrade,
            backup_retention=Duration.days(db_plan.backup_retention_days),
            preferred_backup_window=db_plan.preferred_backup_window,
            preferred_maintenance_window=db_plan.preferred_maintenance_window,
            deletion_protection=db_plan.deletion_protection,
            removal_policy=RemovalPolicy[db_plan.removal_policy.value],
            cloudwatch_logs_exports=list(db_plan.log_exports.streams),
            cloudwatch_logs_retention=logs.RetentionDays[db_plan.log_exports.retention.name],
        )
        return secret, database

    def _create_outputs(self) -> None:
        """Emit the export table as stack outputs."""
        tokens = {
            (self.plan.topology.vpc_id, "VpcId"): self.vpc.vpc_id,
            (self.plan.topology.vpc_id, "CidrBlock"): self.vpc.vpc_cidr_block,
            (self.plan.load_balancer.logical_id, "DNSName"): self.load_balancer.load_balancer_dns_name,
            (self.plan.load_balancer.logical_id, "LoadBalancerArn"): self.load_balancer.load_balancer_arn,
            (self.plan.fleet.logical_id, "AutoScalingGroupName"): self.auto_scaling_group.auto_scaling_group_name,
            (self.plan.fleet.logical_id, "AutoScalingGroupArn"): self.auto_scaling_group.auto_scaling_group_arn,
            (self.plan.database.logical_id, "Endpoint.Address"): self.database.db_instance_endpoint_address,
            (self.plan.database.logical_id, "Endpoint.Port"): self.database.db_instance_endpoint_port,
            (self.plan.database.credentials.logical_id, "SecretArn"): self.database_secret.secret_arn,
        }
        for entry in self.plan.exports:
            CfnOutput(
                self, entry.key,
                value=entry.render(tokens[(entry.resource, entry.attribute)]),
                description=entry.description,
                export_name=entry.export_name,
            )

    def _apply_tags(self) -> None:
        """Apply consistent tags to all resources."""
        for key, value in self.plan.tags.items():
            Tags.of(self).add(key, value)
