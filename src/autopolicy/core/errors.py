"""
Unified error handling for AutoPolicy.

Every failure the reconciliation engine can surface is an AutoPolicyError
subclass. The controller turns them into a fixed-delay requeue; the CLI turns
them into exit codes.

Exit Codes:
- 0: Success
- 10: Configuration error (e.g. AutoPolicy CRD not installed)
- 11: Upstream error (Kubernetes API failure)
- 12: Validation error (malformed selector, missing field)
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    CONFIG_ERROR = 10
    UPSTREAM_ERROR = 11
    VALIDATION_ERROR = 12
    UNKNOWN_ERROR = 127


class AutoPolicyError(Exception):
    """Base exception for AutoPolicy errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(AutoPolicyError):
    """Raised for configuration errors and unmet startup preconditions."""

    exit_code = ExitCode.CONFIG_ERROR


class ValidationError(AutoPolicyError):
    """Raised for validation failures."""

    exit_code = ExitCode.VALIDATION_ERROR


class InvalidSelectorError(ValidationError):
    """Raised when a label selector cannot be compiled or parsed."""


class MissingRequiredFieldError(ValidationError):
    """Raised when a discovered object lacks a required metadata field."""

    def __init__(self, field: str, details: dict[str, Any] | None = None):
        super().__init__(f"Missing required field: {field}", details)
        self.field = field


class OwnerResolutionError(AutoPolicyError):
    """Raised when an owner reference cannot be built for a policy."""

    exit_code = ExitCode.VALIDATION_ERROR


class UpstreamUnavailableError(AutoPolicyError):
    """Raised when the Kubernetes API fails (list, apply, patch, watch)."""

    exit_code = ExitCode.UPSTREAM_ERROR


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI entry points that converts exceptions to exit codes.

    Args:
        show_traceback: If True, show full traceback for unexpected errors
        log_errors: If True, log errors to structlog

    Exit codes:
        - AutoPolicyError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except AutoPolicyError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=e.exit_code,
                        **e.details,
                    )
                print_error(format_error_message(e))
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130  # Standard exit code for SIGINT
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=ExitCode.UNKNOWN_ERROR,
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: AutoPolicyError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg


def print_error(message: str) -> None:
    """Print a user-facing error line on the CLI console."""
    from rich.markup import escape

    from autopolicy.cli.ux import error

    error(escape(message))
