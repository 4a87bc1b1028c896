"""Command-line entry point: print the plan, the export table or the consistency report."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Mapping

from .composer import TopologyPlan, compose_plan
from .config import load_config
from .errors import ConfigurationError, PolicyConflictError, TopologyError, UnsupportedEngineError

logger = logging.getLogger(__name__)


def _render_plan(plan: TopologyPlan, fmt: str) -> str:
    if fmt == "json":
        return json.dumps(plan.to_dict(), indent=2, default=str)
    lines = [f"# {plan.stack_name} ({plan.environment_name}, {plan.environment_class.value})"]
    for index, spec in enumerate(plan.resources, start=1):
        deps = f" <- {', '.join(spec.depends_on)}" if spec.depends_on else ""
        lines.append(f"{index:3d}. {spec.logical_id} [{spec.type}]{deps}")
    return "\n".join(lines)


def _render_exports(plan: TopologyPlan, fmt: str) -> str:
    if fmt == "json":
        return json.dumps([entry.to_dict() for entry in plan.exports], indent=2)
    lines = []
    for entry in plan.exports:
        export = f" (export {entry.export_name})" if entry.export_name else ""
        lines.append(f"{entry.key} = {entry.value}{export}")
    return "\n".join(lines)


def _render_report(plan: TopologyPlan, fmt: str) -> str:
    report = plan.report
    if fmt == "json":
        return json.dumps(report.to_dict(), indent=2)
    lines = [f"blocked: {len(report.blocked)}"]
    lines.extend(f"  - {finding.description}" for finding in report.blocked)
    lines.append(f"gaps: {len(report.gaps)}")
    lines.extend(f"  - {finding.description}" for finding in report.gaps)
    return "\n".join(lines)


RENDERERS = {
    "plan": _render_plan,
    "exports": _render_exports,
    "check": _render_report,
}


def build_parser(environ: Mapping[str, str]) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="twotier", description="Plan a highly available two-tier topology")
    parser.add_argument("command", choices=sorted(RENDERERS), help="What to print")
    parser.add_argument(
        "--environment",
        default=environ.get("ENVIRONMENT", "dev"),
        help="Environment name (default: $ENVIRONMENT or dev)",
    )
    parser.add_argument("--config-dir", default=None, help="Directory holding the YAML documents")
    parser.add_argument("--format", choices=("text", "json"), default="text")
    parser.add_argument("--log-level", default=None, help="Overrides the document's logging.level")
    return parser


def main(argv: list[str] | None = None, environ: Mapping[str, str] | None = None) -> int:
    environ = os.environ if environ is None else environ
    args = build_parser(environ).parse_args(argv)

    # Provisional level until the document has been read.
    logging.basicConfig(level=(args.log_level or "WARNING").upper(), stream=sys.stderr)

    try:
        config = load_config(args.environment, config_dir=args.config_dir, environ=environ)
        logging.getLogger().setLevel((args.log_level or config.logging.level).upper())
        plan = compose_plan(config)
    except PolicyConflictError as exc:
        print(f"Policy conflict: {exc}", file=sys.stderr)
        return 3
    except (ConfigurationError, UnsupportedEngineError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    except TopologyError as exc:
        print(f"Plan error: {exc}", file=sys.stderr)
        return 2

    print(RENDERERS[args.command](plan, args.format))
    if args.command == "check" and not plan.report.consistent:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
