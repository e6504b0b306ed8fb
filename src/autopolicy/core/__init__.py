"""Core modules for AutoPolicy - centralized error definitions."""

from autopolicy.core.errors import (
    AutoPolicyError,
    ConfigurationError,
    ExitCode,
    InvalidSelectorError,
    MissingRequiredFieldError,
    OwnerResolutionError,
    UpstreamUnavailableError,
    ValidationError,
    format_error_message,
    main_with_error_handling,
)

__all__ = [
    "ExitCode",
    "AutoPolicyError",
    "ConfigurationError",
    "ValidationError",
    "InvalidSelectorError",
    "MissingRequiredFieldError",
    "OwnerResolutionError",
    "UpstreamUnavailableError",
    "main_with_error_handling",
    "format_error_message",
]
