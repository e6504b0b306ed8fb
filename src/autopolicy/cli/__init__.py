"""
CLI commands for AutoPolicy.
"""

from autopolicy.cli.plan import plan_command, query_command
from autopolicy.cli.run import run_command, webhook_command

__all__ = [
    "plan_command",
    "query_command",
    "run_command",
    "webhook_command",
]
