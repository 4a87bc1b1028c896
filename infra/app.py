"""CDK App entry point for the two-tier infrastructure."""

import os
import sys
from pathlib import Path

# Add the repository root and src to path so `infra` and the planning package import
ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))
sys.path.insert(0, str(ROOT / "src"))

from aws_cdk import App, Environment
from twotier import compose_plan, load_config

from infra.two_tier_stack import TwoTierStack


def main():
    """Main CDK app entry point."""
    app = App()

    # Context wins over the process environment: cdk synth -c environment=production
    env_name = app.node.try_get_context("environment") or os.getenv("ENVIRONMENT", "dev")
    config = load_config(env_name, environ=os.environ)
    plan = compose_plan(config)

    for finding in plan.report.blocked:
        print(f"WARNING: {finding.description}")

    env = Environment(
        account=config.environment.account or os.getenv("CDK_DEFAULT_ACCOUNT"),
        region=config.environment.region,
    )

    TwoTierStack(
        app,
        f"{plan.stack_name}-{plan.environment_name}",
        plan=plan,
        env=env,
        description=f"Highly available two-tier infrastructure for {plan.environment_name} environment",
    )

    app.synth()


if __name__ == "__main__":
    main()
