import sys
from pathlib import Path

import pytest

# Add the repository root to sys.path so tests can import the `infra` package directly.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
# Also add src/ so `twotier` imports without an editable install.
SRC = str(ROOT / "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from twotier.config import StackConfig, parse_config  # noqa: E402

CONFIG_DIR = ROOT / "config"


@pytest.fixture
def config_dir() -> Path:
    return CONFIG_DIR


@pytest.fixture
def make_config():
    """Build a validated StackConfig from a few nested overrides."""

    def _make(**sections) -> StackConfig:
        data = {"environment": {"name": sections.pop("environment_name", "dev")}}
        data.update(sections)
        return parse_config(data)

    return _make


@pytest.fixture
def layers(make_config):
    """Config, topology and access control built from a few overrides."""
    from twotier.access_control import compose
    from twotier.network import build_topology

    def _layers(**sections):
        cfg = make_config(**sections)
        vpc = cfg.network.vpc
        topology = build_topology(vpc.block, nat_gateways=vpc.nat_gateways, vpc_id=cfg.resource_names.vpc)
        access = compose(topology, cfg.policy, names=cfg.resource_names, compute_tier=cfg.compute.asg.subnet_tier)
        return cfg, topology, access

    return _layers
