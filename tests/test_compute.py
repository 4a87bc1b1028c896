"""Tests for the compute fleet plan."""

import logging

import pytest

from twotier.compute import RootVolume, ScalingPolicyBinding, build_fleet, grant_secret_read
from twotier.config import HealthCheckType, MachineImageType, TargetType, VolumeType
from twotier.errors import ConfigurationError
from twotier.load_balancing import build_load_balancer
from twotier.network import SubnetTier


def _fleet(cfg, topology, access, asg=None):
    asg = asg or cfg.compute.asg
    lb = build_load_balancer(topology, access.edge, cfg.compute.alb, deletion_protection=False,
                             names=cfg.resource_names)
    return build_fleet(
        topology, access.compute, lb.target_group, ScalingPolicyBinding.from_settings(asg),
        asg, cfg.compute.storage, names=cfg.resource_names,
    )


def test_default_fleet(layers):
    cfg, topology, access = layers()
    fleet = _fleet(cfg, topology, access)

    assert fleet.logical_id == "WebAppAutoScalingGroup"
    assert fleet.subnet_tier is SubnetTier.PRIVATE_EGRESS
    assert list(fleet.subnet_ids) == [s.logical_id for s in topology.subnets_in(SubnetTier.PRIVATE_EGRESS)]
    assert fleet.security_group == access.compute.logical_id
    assert fleet.target_group == "WebAppTargetGroup"
    assert fleet.machine_image is MachineImageType.AMAZON_LINUX_2023
    assert fleet.health_check_type is HealthCheckType.ELB
    assert fleet.require_imdsv2 is True
    assert fleet.secret_read_grants == ()


def test_scaling_binding(layers):
    cfg, topology, access = layers(compute={"asg": {
        "min_capacity": 1, "desired_capacity": 3, "max_capacity": 5,
        "target_cpu_utilization": 55, "cooldown": 120,
    }})
    scaling = _fleet(cfg, topology, access).scaling
    assert (scaling.min_capacity, scaling.desired_capacity, scaling.max_capacity) == (1, 3, 5)
    assert scaling.target_utilization == 55
    assert scaling.cooldown == 120


@pytest.mark.parametrize(
    "kwargs",
    [
        {"min_capacity": 3, "desired_capacity": 2, "max_capacity": 4},
        {"min_capacity": 1, "desired_capacity": 5, "max_capacity": 4},
        {"min_capacity": -1, "desired_capacity": 0, "max_capacity": 1},
        {"target_utilization": 0},
        {"target_utilization": 101},
        {"cooldown": -1},
    ],
)
def test_scaling_binding_rejects_bad_bounds(kwargs):
    values = {"target_utilization": 70, "min_capacity": 1, "max_capacity": 2, "desired_capacity": 1, "cooldown": 0}
    values.update(kwargs)
    with pytest.raises(ConfigurationError):
        ScalingPolicyBinding(**values)


def test_root_volume(layers):
    cfg, topology, access = layers(compute={"storage": {"volume_size": 50, "volume_type": "io2", "iops": 4000}})
    volume = _fleet(cfg, topology, access).root_volume
    assert volume == RootVolume(
        device_name="/dev/xvda", size=50, volume_type=VolumeType.IO2, iops=4000,
        encrypted=True, delete_on_termination=True,
    )


def test_fleet_in_public_tier(layers):
    cfg, topology, access = layers(compute={"asg": {"subnet_tier": "PUBLIC"}})
    fleet = _fleet(cfg, topology, access)
    assert fleet.subnet_tier is SubnetTier.PUBLIC
    assert access.compute.tier is SubnetTier.PUBLIC


def test_boundary_and_placement_must_agree(layers):
    cfg, topology, access = layers()
    misplaced = cfg.compute.asg.model_copy(update={"subnet_tier": SubnetTier.PUBLIC})
    with pytest.raises(ConfigurationError, match="placed in PUBLIC"):
        _fleet(cfg, topology, access, asg=misplaced)


def test_requires_compute_boundary(layers):
    cfg, topology, access = layers()
    lb = build_load_balancer(topology, access.edge, cfg.compute.alb, deletion_protection=False)
    with pytest.raises(ConfigurationError, match="compute boundary"):
        build_fleet(topology, access.data, lb.target_group,
                    ScalingPolicyBinding.from_settings(cfg.compute.asg), cfg.compute.asg, cfg.compute.storage)


@pytest.mark.parametrize("target_type", [TargetType.IP, TargetType.LAMBDA])
def test_instances_need_instance_target_group(layers, target_type):
    """Documents reject these target types; the fleet refuses them when built directly."""
    cfg, topology, access = layers()
    alb = cfg.compute.alb.model_copy(update={"target_type": target_type})
    lb = build_load_balancer(topology, access.edge, alb, deletion_protection=False, names=cfg.resource_names)
    with pytest.raises(ConfigurationError, match="cannot register"):
        build_fleet(topology, access.compute, lb.target_group, ScalingPolicyBinding.from_settings(cfg.compute.asg),
                    cfg.compute.asg, cfg.compute.storage, names=cfg.resource_names)


def test_warnings(layers, caplog):
    cfg, topology, access = layers(
        network={"vpc": {"nat_gateways": 0}},
        compute={"asg": {"require_imdsv2": False}, "alb": {"health_check": {"enabled": False}}},
    )
    with caplog.at_level(logging.WARNING, logger="twotier.compute"):
        _fleet(cfg, topology, access)
    assert "no NAT gateway" in caplog.text
    assert "IMDSv2 not enforced" in caplog.text
    assert "ELB health checks requested" in caplog.text


def test_grant_secret_read(layers):
    cfg, topology, access = layers()
    fleet = _fleet(cfg, topology, access)

    granted = grant_secret_read(fleet, "DatabaseCredentials")
    assert granted.secret_read_grants == ("DatabaseCredentials",)
    assert fleet.secret_read_grants == ()
    assert grant_secret_read(granted, "DatabaseCredentials") is granted
