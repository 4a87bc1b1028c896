"""Tests for the CLI module."""

import json

import pytest
import yaml

from twotier.cli import main


def _write_config(directory, data, name="development.yml"):
    with (directory / name).open("w") as f:
        yaml.safe_dump(data, f)
    return str(directory)


def test_cli_help():
    """Test CLI help display."""
    with pytest.raises(SystemExit) as exc_info:
        main(["--help"], environ={})
    assert exc_info.value.code == 0


def test_cli_plan(config_dir, capsys):
    """Shipped development document yields an ordered plan."""
    result = main(["plan", "--config-dir", str(config_dir)], environ={})
    assert result == 0
    out = capsys.readouterr().out
    assert out.startswith("# WebApp-MultiAZ-2TierInfra (dev, development)")
    assert "HighlyAvailableVpc [AWS::EC2::VPC]" in out


def test_cli_environment_from_env(config_dir, capsys):
    """ENVIRONMENT selects the document when --environment is absent."""
    result = main(["plan", "--config-dir", str(config_dir)], environ={"ENVIRONMENT": "production"})
    assert result == 0
    assert "(production, production_like)" in capsys.readouterr().out


def test_cli_exports_json(config_dir, capsys):
    result = main(["exports", "--config-dir", str(config_dir), "--format", "json"], environ={})
    assert result == 0
    exports = json.loads(capsys.readouterr().out)
    assert exports[0] == {
        "key": "VpcId",
        "value": "${HighlyAvailableVpc.VpcId}",
        "description": "VPC ID",
        "export_name": "dev-HighlyAvailable2Tier-VpcId",
    }


def test_cli_check_consistent(tmp_path, capsys):
    """Default policy has no blocked flows; allows wider than the boundaries are listed as gaps."""
    config_dir = _write_config(tmp_path, {"environment": {"name": "dev"}})
    result = main(["check", "--config-dir", config_dir, "--format", "json"], environ={})
    assert result == 0
    report = json.loads(capsys.readouterr().out)
    assert report["blocked"] == []
    assert [gap["rule"] for gap in report["gaps"]] == ["AllowHttpsInbound", "AllowHttpFromVpc", "AllowDatabaseFromVpc"]


def test_cli_check_blocked(tmp_path, capsys):
    """A missing return-traffic entry is reported and fails the check."""
    config_dir = _write_config(tmp_path, {"network": {"acls": {"rules": {
        "private_ephemeral_inbound": {"enabled": False, "rule_number": 120},
    }}}})
    result = main(["check", "--config-dir", config_dir], environ={})
    assert result == 1
    assert "blocked: 0" not in capsys.readouterr().out


def test_cli_missing_document(tmp_path, capsys):
    """Test CLI with no configuration document."""
    result = main(["plan", "--config-dir", str(tmp_path)], environ={})
    assert result == 2
    assert "Configuration error" in capsys.readouterr().err


def test_cli_unsupported_engine(tmp_path, capsys):
    config_dir = _write_config(tmp_path, {"database": {"engine": "oracle"}})
    result = main(["plan", "--config-dir", config_dir], environ={})
    assert result == 2
    assert "Unsupported database engine: oracle" in capsys.readouterr().err


def test_cli_policy_conflict(tmp_path, capsys):
    config_dir = _write_config(tmp_path, {"network": {"acls": {"extra_entries": [
        {"acl": "private", "rule_number": 100, "cidr": "192.0.2.0/24"},
    ]}}})
    result = main(["plan", "--config-dir", config_dir], environ={})
    assert result == 3
    assert "Policy conflict" in capsys.readouterr().err


def test_cli_env_override(tmp_path, capsys):
    """ALLOW_HTTP_FROM from the process environment narrows the edge."""
    config_dir = _write_config(tmp_path, {})
    result = main(["plan", "--config-dir", config_dir, "--format", "json"],
                  environ={"ALLOW_HTTP_FROM": "203.0.113.0/24"})
    assert result == 0
    plan = json.loads(capsys.readouterr().out)
    alb = next(r for r in plan["resources"] if r["logical_id"] == "AlbSecurityGroup")
    assert alb["properties"]["ingress"][0]["cidr_ip"] == "203.0.113.0/24"


def test_cli_duplicate_entry_names(tmp_path, capsys):
    config_dir = _write_config(tmp_path, {"network": {"acls": {"extra_entries": [
        {"acl": "public", "rule_number": 50, "cidr": "192.0.2.0/24", "name": "Block"},
        {"acl": "public", "rule_number": 60, "cidr": "198.51.100.0/24", "name": "Block"},
    ]}}})
    result = main(["plan", "--config-dir", config_dir], environ={})
    assert result == 2
    assert "already has an entry named Block" in capsys.readouterr().err


def test_cli_scalar_section(tmp_path, capsys):
    config_dir = _write_config(tmp_path, {"environment": "dev"})
    result = main(["plan", "--config-dir", config_dir], environ={})
    assert result == 2
    assert "must be a mapping" in capsys.readouterr().err


def test_cli_rejects_ip_targets(tmp_path, capsys):
    config_dir = _write_config(tmp_path, {"compute": {"alb": {"target_type": "IP"}}})
    result = main(["plan", "--config-dir", config_dir], environ={})
    assert result == 2
    assert "only INSTANCE target groups" in capsys.readouterr().err
