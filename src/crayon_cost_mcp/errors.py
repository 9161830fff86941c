"""
Error taxonomy for the Crayon cost MCP server.

Every error raised inside the request pipeline derives from CrayonMCPError and
carries a category. The dispatcher maps categories to caller-safe messages;
raw upstream text never leaves the process.
"""

from enum import StrEnum


class ErrorCategory(StrEnum):
    """Coarse classification used when sanitizing errors for callers"""

    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    MISSING_ORGANIZATION = "missing_organization"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UPSTREAM = "upstream"


class CrayonMCPError(Exception):
    """Base class for all pipeline errors."""

    category: ErrorCategory = ErrorCategory.UPSTREAM

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(CrayonMCPError):
    category = ErrorCategory.CONFIGURATION


class ValidationError(CrayonMCPError):
    """
    Tool arguments failed validation.

    Holds one message per violated field, formatted as "<field path>: <reason>".
    """

    category = ErrorCategory.VALIDATION

    def __init__(
        self, errors: list[str], tool_name: str | None = None, unsafe_pattern: bool = False
    ):
        self.errors = list(errors)
        self.tool_name = tool_name
        self.unsafe_pattern = unsafe_pattern
        super().__init__("Validation error: " + ", ".join(self.errors))


class AuthenticationError(CrayonMCPError):
    """Caller credentials are missing/invalid, or no upstream token could be obtained"""

    category = ErrorCategory.AUTHENTICATION


class AuthorizationError(CrayonMCPError):
    category = ErrorCategory.AUTHORIZATION


ForbiddenError = AuthorizationError


class MissingOrganizationError(CrayonMCPError):
    """The call needs an organization id in scope and none was given."""

    category = ErrorCategory.MISSING_ORGANIZATION


class ServiceUnavailableError(CrayonMCPError):
    """Circuit is open, or the upstream timed out / refused the connection."""

    category = ErrorCategory.SERVICE_UNAVAILABLE

    def __init__(self, message: str, reason: str = "unavailable"):
        super().__init__(message)
        self.reason = reason


class UpstreamError(CrayonMCPError):
    """Upstream API answered with an error status."""

    category = ErrorCategory.UPSTREAM

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500


__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "ConfigurationError",
    "CrayonMCPError",
    "ErrorCategory",
    "ForbiddenError",
    "MissingOrganizationError",
    "ServiceUnavailableError",
    "UpstreamError",
    "ValidationError",
]
