from pathlib import Path

import pytest
import yaml

from twotier.config import (
    ApplicationProtocol,
    StackConfig,
    TargetType,
    VolumeType,
    apply_env_overrides,
    config_file_name,
    load_config,
    parse_config,
)
from twotier.environment import RemovalPolicy
from twotier.errors import ConfigurationError
from twotier.network import FlowLogTrafficType, SubnetTier


def _write(tmp_path: Path, name: str, data) -> Path:
    p = tmp_path / name
    with p.open("w") as f:
        yaml.safe_dump(data, f)
    return p


@pytest.mark.parametrize(
    "environment,expected",
    [
        ("production", "production.yml"),
        ("prod", "production.yml"),
        ("staging", "staging.yml"),
        ("stag", "staging.yml"),
        ("dev", "development.yml"),
        ("feature-123", "development.yml"),
    ],
)
def test_config_file_name(environment, expected):
    assert config_file_name(environment) == expected


def test_load_shipped_documents(config_dir):
    dev = load_config("dev", config_dir=str(config_dir))
    prod = load_config("production", config_dir=str(config_dir))
    staging = load_config("staging", config_dir=str(config_dir))

    assert dev.environment.name == "dev"
    assert prod.environment.name == "production"
    assert staging.environment.name == "staging"
    assert prod.network.vpc.flow_logs.removal_policy is RemovalPolicy.RETAIN
    assert prod.network.security.allow_package_downloads is False


def test_environment_name_defaults_to_requested(tmp_path):
    _write(tmp_path, "development.yml", {"database": {"engine": "postgres"}})
    cfg = load_config("feature-x", config_dir=str(tmp_path))
    assert cfg.environment.name == "feature-x"
    assert cfg.outputs.export_prefix == "feature-x-HighlyAvailable2Tier"


def test_missing_document_is_fatal(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_config("dev", config_dir=str(tmp_path))


def test_non_mapping_document_is_fatal(tmp_path):
    (tmp_path / "development.yml").write_text("- just\n- a list\n")
    with pytest.raises(ConfigurationError, match="mapping"):
        load_config("dev", config_dir=str(tmp_path))


def test_scalar_environment_section_is_fatal(tmp_path):
    _write(tmp_path, "development.yml", {"environment": "dev"})
    with pytest.raises(ConfigurationError, match="'environment' must be a mapping, got str"):
        load_config("dev", config_dir=str(tmp_path))


def test_scalar_network_section_rejected_by_overrides():
    with pytest.raises(ConfigurationError, match="'network' must be a mapping, got list"):
        apply_env_overrides({"network": ["10.0.0.0/16"]}, {"ALLOW_HTTP_FROM": "203.0.113.0/24"})


def test_empty_sections_keep_defaults(tmp_path):
    (tmp_path / "development.yml").write_text("environment:\nnetwork:\ncompute:\n")
    cfg = load_config("dev", config_dir=str(tmp_path), environ={"ALLOW_HTTP_FROM": "203.0.113.0/24"})
    assert cfg.environment.name == "dev"
    assert cfg.network.security.allow_http_from == "203.0.113.0/24"
    assert cfg.compute.asg.min_capacity == 2


def test_overrides_leave_absent_sections_alone():
    assert apply_env_overrides({}, {"AWS_REGION": "us-west-2"}) == {"environment": {"region": "us-west-2"}}


def test_invalid_yaml_is_fatal(tmp_path):
    (tmp_path / "development.yml").write_text("network: [unclosed\n")
    with pytest.raises(ConfigurationError):
        load_config("dev", config_dir=str(tmp_path))


def test_process_environment_ignored_unless_passed(tmp_path, monkeypatch):
    _write(tmp_path, "development.yml", {"environment": {"region": "eu-west-1"}})
    monkeypatch.setenv("AWS_REGION", "ap-southeast-2")

    assert load_config("dev", config_dir=str(tmp_path)).environment.region == "eu-west-1"
    cfg = load_config("dev", config_dir=str(tmp_path), environ={"AWS_REGION": "ap-southeast-2"})
    assert cfg.environment.region == "ap-southeast-2"


def test_apply_env_overrides():
    data = apply_env_overrides(
        {},
        {
            "AWS_REGION": "us-west-2",
            "CDK_DEFAULT_ACCOUNT": "123456789012",
            "ALLOW_HTTP_FROM": "203.0.113.0/24",
            "ALLOW_PACKAGE_DOWNLOADS": "0",
        },
    )
    assert data["environment"] == {"region": "us-west-2", "account": "123456789012"}
    assert data["network"]["security"] == {
        "allow_http_from": "203.0.113.0/24",
        "allow_package_downloads": False,
    }


class TestDefaults:
    """Every default is visible on the validated model."""

    def test_defaults(self):
        cfg = StackConfig()
        security = cfg.network.security
        assert security.http_port == 80
        assert security.https_port == 443
        assert security.allow_package_downloads is False
        assert security.database_port == 3306
        assert cfg.compute.alb.listener_port == 80
        assert cfg.compute.alb.target_group_port == 80
        assert cfg.compute.asg.subnet_tier is SubnetTier.PRIVATE_EGRESS
        assert cfg.compute.asg.require_imdsv2 is True
        assert cfg.database.deletion_protection is None
        assert cfg.database.removal_policy is RemovalPolicy.SNAPSHOT
        assert cfg.outputs.export_prefix == "dev-HighlyAvailable2Tier"

    def test_default_rule_numbers(self):
        rules = StackConfig().network.acls.rules
        assert (rules.http_inbound.rule_number, rules.https_inbound.rule_number,
                rules.ephemeral_inbound.rule_number, rules.all_outbound.rule_number) == (100, 105, 110, 100)
        assert (rules.private_http_inbound.rule_number, rules.private_database_inbound.rule_number,
                rules.private_ephemeral_inbound.rule_number, rules.private_all_outbound.rule_number) == (
            100, 110, 120, 100)

    def test_database_port_follows_engine(self, make_config):
        assert make_config(database={"engine": "PostgreSQL"}).network.security.database_port == 5432
        assert make_config(database={"engine": "mariadb"}).network.security.database_port == 3306

    def test_explicit_database_port_kept(self, make_config):
        cfg = make_config(database={"engine": "postgres"}, network={"security": {"database_port": 6432}})
        assert cfg.policy.database_port == 6432

    def test_unknown_engine_has_no_policy(self, make_config):
        cfg = make_config(database={"engine": "oracle"})
        assert cfg.network.security.database_port is None
        with pytest.raises(ConfigurationError):
            cfg.policy

    def test_case_insensitive_enums(self, make_config):
        cfg = make_config(
            compute={
                "alb": {"target_type": "instance", "target_group_protocol": "http"},
                "storage": {"volume_type": "GP2"},
                "asg": {"subnet_tier": "private_egress"},
            },
            network={"vpc": {"flow_logs": {"traffic_type": "reject"}}},
        )
        assert cfg.compute.alb.target_type is TargetType.INSTANCE
        assert cfg.compute.alb.target_group_protocol is ApplicationProtocol.HTTP
        assert cfg.compute.storage.volume_type is VolumeType.GP2
        assert cfg.network.vpc.flow_logs.traffic_type is FlowLogTrafficType.REJECT


@pytest.mark.parametrize(
    "sections",
    [
        {"compute": {"asg": {"min_capacity": 3, "desired_capacity": 2, "max_capacity": 4}}},
        {"compute": {"asg": {"min_capacity": 1, "desired_capacity": 5, "max_capacity": 4}}},
        {"network": {"vpc": {"cidr": "10.0.0.0/24", "az_count": 3, "subnet_cidr_mask": 26}}},
        {"network": {"vpc": {"subnet_cidr_mask": 29}}},
        {"network": {"vpc": {"cidr": "10.0.0.1/16"}}},
        {"network": {"vpc": {"az_count": 0}}},
        {"network": {"security": {"http_port": 70000}}},
        {"network": {"security": {"allow_http_from": "not-a-cidr"}}},
        {"network": {"acls": {"rules": {"http_inbound": {"rule_number": 0}}}}},
        {"network": {"acls": {"rules": {"http_inbound": {"rule_number": 32767}}}}},
        {"network": {"acls": {"ephemeral_ports": {"start": 2000, "end": 1024}}}},
        {"network": {"vpc": {"flow_logs": {"removal_policy": "SNAPSHOT"}}}},
        {"compute": {"alb": {"listener_protocol": "HTTPS"}}},
        {"compute": {"alb": {"listener_port": 8080}}},
        {"compute": {"alb": {"target_group_port": 8080}}},
        {"compute": {"alb": {"target_type": "IP"}}},
        {"compute": {"alb": {"target_type": "LAMBDA"}}},
        {"compute": {"alb": {"health_check": {"timeout": 30, "interval": 30}}}},
        {"compute": {"storage": {"volume_type": "io1"}}},
        {"compute": {"storage": {"volume_type": "gp2", "iops": 3000}}},
        {"database": {"allocated_storage": 100, "max_allocated_storage": 50}},
        {"database": {"backup_retention_days": 36}},
    ],
)
def test_invalid_values_rejected(make_config, sections):
    with pytest.raises(ConfigurationError):
        make_config(**sections)


def test_undeclared_widening_rejected(make_config):
    """There is no knob to open the data tier's outbound; unknown keys fail."""
    with pytest.raises(ConfigurationError, match="db_allow_all_outbound"):
        make_config(network={"security": {"db_allow_all_outbound": True}})


def test_listener_and_target_ports_follow_http_port(make_config):
    cfg = make_config(network={"security": {"http_port": 8080}})
    assert cfg.compute.alb.listener_port == 8080
    assert cfg.compute.alb.target_group_port == 8080


def test_parse_config_wraps_validation_errors():
    with pytest.raises(ConfigurationError, match="Invalid configuration"):
        parse_config({"compute": {"asg": {"max_capacity": 0}}})
