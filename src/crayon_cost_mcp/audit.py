"""
Structured logging and audit events.

Everything goes to stderr as JSON lines; stdout is reserved for the stdio
MCP transport.
"""

import logging
import sys
from typing import Any, Literal

import structlog

log = structlog.get_logger("crayon_cost_mcp")

SecurityEventKind = Literal[
    "auth_failure", "unauthorized_access", "injection_attempt", "rate_limited"
]


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for JSON output on stderr."""
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def log_tool_execution(
    tool: str,
    principal_id: str | None,
    organization_id: int | None,
    duration_ms: float,
    status: Literal["success", "failure"],
    error: str | None = None,
) -> None:
    event: dict[str, Any] = {
        "tool": tool,
        "principal_id": principal_id,
        "organization_id": organization_id,
        "duration_ms": round(duration_ms, 1),
        "status": status,
    }
    if error is not None:
        event["error"] = error
    log.info("tool_execution", **event)


def log_security_event(
    kind: SecurityEventKind, principal_id: str | None, details: dict[str, Any]
) -> None:
    log.warning("security_event", kind=kind, principal_id=principal_id, **details)


def log_audit(
    action: str,
    principal_id: str | None,
    organization_id: int | None,
    resource: str,
    status: Literal["success", "failure"],
    details: dict[str, Any] | None = None,
) -> None:
    """Audit trail for data modifications."""
    log.info(
        "audit_event",
        action=action,
        principal_id=principal_id,
        organization_id=organization_id,
        resource=resource,
        status=status,
        details=details or {},
    )
