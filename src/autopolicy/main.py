from __future__ import annotations

import argparse
import sys
from typing import Sequence

from autopolicy import __version__


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autopolicy",
        description="Derive per-workload autoscaling objects from AutoPolicy templates",
    )
    parser.add_argument("--version", action="version", version=f"autopolicy {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Run the reconciliation controller")
    subparsers.add_parser("webhook", help="Serve the AutoPolicy admission webhook")

    plan_parser = subparsers.add_parser(
        "plan",
        help="Preview derived objects for a policy against workload manifests (offline)",
    )
    plan_parser.add_argument("policy_file", help="Path to AutoPolicy YAML file")
    plan_parser.add_argument("--workloads", dest="workloads_file",
                             help="YAML file with workload manifests (multi-document or List)")
    plan_parser.add_argument("--selector", help="Label query to use instead of the policy objectSelector")
    plan_parser.add_argument("--output", choices=["text", "yaml"], default="text",
                             help="Output format")

    query_parser = subparsers.add_parser("query", help="Print the label query compiled from a policy")
    query_parser.add_argument("policy_file", help="Path to AutoPolicy YAML file")

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "run":
        from autopolicy.cli.run import run_command
        sys.exit(run_command())

    if args.command == "webhook":
        from autopolicy.cli.run import webhook_command
        sys.exit(webhook_command())

    if args.command == "plan":
        from autopolicy.cli.plan import plan_command
        sys.exit(plan_command(
            policy_file=args.policy_file,
            workloads_file=args.workloads_file,
            output_format=args.output,
            selector=args.selector,
        ))

    if args.command == "query":
        from autopolicy.cli.plan import query_command
        sys.exit(query_command(args.policy_file))

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
