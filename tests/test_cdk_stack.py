import pytest

from aws_cdk import App
from aws_cdk.assertions import Match, Template

from infra.two_tier_stack import TwoTierStack
from twotier.composer import compose_plan

LAUNCH_TEMPLATE_FLAG = "@aws-cdk/aws-autoscaling:generateLaunchTemplateInsteadOfLaunchConfig"


@pytest.fixture
def synth(make_config):
    def _synth(**sections) -> Template:
        app = App(context={LAUNCH_TEMPLATE_FLAG: True})
        plan = compose_plan(make_config(**sections))
        stack = TwoTierStack(app, "TestTwoTierStack", plan=plan)
        return Template.from_stack(stack)

    return _synth


@pytest.fixture
def template(synth) -> Template:
    return synth()


def test_network_shape(template):
    """Two zones and three tiers: six subnets, a NAT gateway per zone, one internet gateway."""
    template.resource_count_is("AWS::EC2::VPC", 1)
    template.resource_count_is("AWS::EC2::Subnet", 6)
    template.resource_count_is("AWS::EC2::NatGateway", 2)
    template.resource_count_is("AWS::EC2::InternetGateway", 1)
    template.has_resource_properties("AWS::EC2::VPC", {"CidrBlock": "10.0.0.0/16"})


def test_flow_logs(template):
    template.has_resource_properties("AWS::EC2::FlowLog", {"TrafficType": "ALL"})
    template.has_resource_properties("AWS::Logs::LogGroup", {"RetentionInDays": 7})


def test_network_acl_entries(template):
    template.resource_count_is("AWS::EC2::NetworkAcl", 2)
    template.resource_count_is("AWS::EC2::NetworkAclEntry", 8)
    template.resource_count_is("AWS::EC2::SubnetNetworkAclAssociation", 6)

    template.has_resource_properties("AWS::EC2::NetworkAclEntry", {
        "RuleNumber": 105,
        "RuleAction": "allow",
        "CidrBlock": "0.0.0.0/0",
        "Protocol": 6,
        "PortRange": {"From": 443, "To": 443},
    })
    template.has_resource_properties("AWS::EC2::NetworkAclEntry", {
        "RuleNumber": 110,
        "CidrBlock": "10.0.0.0/16",
        "PortRange": {"From": 3306, "To": 3306},
    })
    template.has_resource_properties("AWS::EC2::NetworkAclEntry", {
        "RuleNumber": 120,
        "PortRange": {"From": 1024, "To": 65535},
    })


def test_no_custom_acls_when_disabled(synth):
    template = synth(network={"acls": {"enabled": False}})
    template.resource_count_is("AWS::EC2::NetworkAcl", 0)


def test_security_group_chain(template):
    template.resource_count_is("AWS::EC2::SecurityGroup", 3)
    template.has_resource_properties("AWS::EC2::SecurityGroup", {
        "GroupDescription": "Security group for Application Load Balancer",
        "SecurityGroupIngress": [Match.object_like({"CidrIp": "0.0.0.0/0", "FromPort": 80, "ToPort": 80})],
    })
    template.has_resource_properties("AWS::EC2::SecurityGroupIngress", {
        "IpProtocol": "tcp",
        "FromPort": 3306,
        "ToPort": 3306,
        "Description": "Allow database traffic from ASG instances",
    })
    template.has_resource_properties("AWS::EC2::SecurityGroupIngress", {
        "IpProtocol": "tcp",
        "FromPort": 80,
        "ToPort": 80,
        "Description": "Allow HTTP traffic from ALB",
    })


def test_no_group_allows_all_outbound(template):
    for group in template.find_resources("AWS::EC2::SecurityGroup").values():
        for rule in group["Properties"].get("SecurityGroupEgress", []):
            assert not (rule.get("CidrIp") == "0.0.0.0/0" and rule.get("IpProtocol") == "-1")


def test_package_downloads_widen_compute_egress(synth):
    template = synth(network={"security": {"allow_package_downloads": True}})
    template.has_resource_properties("AWS::EC2::SecurityGroup", {
        "GroupDescription": "Security group for Auto Scaling Group instances",
        "SecurityGroupEgress": Match.array_with([
            Match.object_like({"CidrIp": "0.0.0.0/0", "FromPort": 443, "ToPort": 443}),
        ]),
    })


def test_load_balancer(template):
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::LoadBalancer", {
        "Scheme": "internet-facing",
        "Type": "application",
    })
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::Listener", {
        "Port": 80,
        "Protocol": "HTTP",
    })
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::TargetGroup", {
        "Port": 80,
        "Protocol": "HTTP",
        "TargetType": "instance",
        "HealthCheckPath": "/",
    })


def test_auto_scaling_group(template):
    template.has_resource_properties("AWS::AutoScaling::AutoScalingGroup", {
        "MinSize": "2",
        "MaxSize": "6",
        "HealthCheckType": "ELB",
        "HealthCheckGracePeriod": 300,
    })
    template.has_resource_properties("AWS::AutoScaling::ScalingPolicy", {
        "PolicyType": "TargetTrackingScaling",
        "TargetTrackingConfiguration": Match.object_like({"TargetValue": 70}),
    })


def test_database(template):
    template.has_resource_properties("AWS::RDS::DBInstance", {
        "Engine": "mysql",
        "MultiAZ": True,
        "StorageEncrypted": True,
        "DeletionProtection": False,
        "EnableCloudwatchLogsExports": ["error", "general", "slowquery"],
    })
    # Development environments drop the instance instead of snapshotting it.
    template.has_resource("AWS::RDS::DBInstance", {"DeletionPolicy": "Delete"})
    template.resource_count_is("AWS::RDS::DBSubnetGroup", 1)


def test_production_database_is_protected(synth):
    template = synth(environment_name="production")
    template.has_resource_properties("AWS::RDS::DBInstance", {"DeletionProtection": True})
    template.has_resource("AWS::RDS::DBInstance", {"DeletionPolicy": "Snapshot"})
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::LoadBalancer", {
        "LoadBalancerAttributes": Match.array_with([{"Key": "deletion_protection.enabled", "Value": "true"}]),
    })


def test_postgres_engine(synth):
    template = synth(database={"engine": "postgres", "engine_version": "15.4"})
    template.has_resource_properties("AWS::RDS::DBInstance", {"Engine": "postgres"})
    template.has_resource_properties("AWS::EC2::SecurityGroupIngress", {"FromPort": 5432, "ToPort": 5432})


def test_credentials_secret(template):
    template.has_resource_properties("AWS::SecretsManager::Secret", {
        "Name": "dev-db-credentials",
        "GenerateSecretString": {
            "SecretStringTemplate": '{"username": "admin"}',
            "GenerateStringKey": "password",
            "PasswordLength": 32,
            "ExcludePunctuation": True,
            "IncludeSpace": False,
        },
    })


def test_outputs(template):
    outputs = template.find_outputs("*")
    assert set(outputs) == {
        "VpcId", "VpcCidr", "LoadBalancerDNS", "LoadBalancerARN", "ApplicationURL",
        "AutoScalingGroupName", "AutoScalingGroupARN", "DatabaseEndpoint", "DatabasePort",
        "DatabaseSecretArn",
    }
    template.has_output("VpcId", {"Export": {"Name": "dev-HighlyAvailable2Tier-VpcId"}})
    assert "Export" not in outputs["ApplicationURL"]
    assert "Export" not in outputs["DatabaseSecretArn"]


def test_tags(template):
    template.has_resource_properties("AWS::EC2::VPC", {
        "Tags": Match.array_with([{"Key": "Environment", "Value": "dev"}]),
    })
