"""
Crayon Cost MCP Server - Model Context Protocol server for the Crayon cost API.
Exposes billing, subscription, usage and cost analytics tools to AI assistants.
"""

# Load environment variables from .env file if present
from dotenv import load_dotenv

load_dotenv()

# ruff: noqa: E402
import asyncio
import json
import sys
import uuid
from typing import Any

from mcp import types
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool

from .access_control import AccessControl, Principal
from .audit import configure_logging, log
from .config import Settings
from .crayon_client import CrayonClient
from .dispatcher import ToolDispatcher, ToolKind
from .errors import AuthenticationError, CrayonMCPError
from .validation import TOOL_ARGUMENT_MODELS

# Initialize MCP server
server = Server("crayon-cost-mcp")

# Runtime instances (initialized on startup)
dispatcher: ToolDispatcher | None = None
access_control: AccessControl | None = None


TOOL_DESCRIPTIONS: dict[ToolKind, str] = {
    ToolKind.GET_ORGANIZATIONS: "List the organizations the caller can access.",
    ToolKind.GET_INVOICE_PROFILES: "List invoice profiles of an organization.",
    ToolKind.GET_BILLING_STATEMENTS: (
        "Get billing statements for an organization, optionally filtered by invoice "
        "profile, provision type and date range (paged)."
    ),
    ToolKind.GET_GROUPED_BILLING_STATEMENTS: (
        "Get billing statements grouped by billing cycle for an organization."
    ),
    ToolKind.GET_INVOICES: "List invoices of an organization (paged).",
    ToolKind.GET_SUBSCRIPTIONS: (
        "List subscriptions, optionally for one organization (paged). Omitting the "
        "organization lists all organizations and requires the admin role."
    ),
    ToolKind.GET_COST_BY_SUBSCRIPTION: (
        "Break down costs per subscription over the last N months (default 3)."
    ),
    ToolKind.GET_SUBSCRIPTION_DETAILS: "Get details of a single subscription.",
    ToolKind.GET_SUBSCRIPTION_TAGS: "Get the tags of a subscription.",
    ToolKind.UPDATE_SUBSCRIPTION_TAGS: (
        "Replace the full tag set of a subscription. Requires the editor role."
    ),
    ToolKind.GET_CUSTOMER_TENANTS: "List customer tenants, optionally for one organization.",
    ToolKind.GET_AZURE_SUBSCRIPTIONS: (
        "List Azure subscriptions of a customer tenant. A tenant without an Azure plan "
        "returns an empty list."
    ),
    ToolKind.GET_AZURE_PLAN_DETAILS: "Get details of an Azure plan.",
    ToolKind.GET_AZURE_PLAN_SUBSCRIPTIONS: "List the subscriptions of an Azure plan.",
    ToolKind.GET_AZURE_USAGE: (
        "Get the monthly Azure usage export (download link) for a subscription."
    ),
    ToolKind.GET_HISTORICAL_COSTS: (
        "Get grouped billing data for the last N months (default 6). The period starts "
        "on the first day of the starting month."
    ),
    ToolKind.GET_AZURE_COSTS_BY_DATE_RANGE: (
        "Get total Azure costs for an organization within a date range."
    ),
    ToolKind.GET_AZURE_COSTS_BY_SUBSCRIPTION: (
        "Get Azure costs for a specific subscription within a date range."
    ),
    ToolKind.TRACK_COSTS_BY_TAGS: (
        "List subscriptions with their tags next to the billing data of the last N months."
    ),
    ToolKind.ANALYZE_COSTS_BY_TAGS: (
        "Allocate costs of the last N months to subscription tags (CostCenter, "
        "Department, Project, ...). A subscription's cost counts toward every tag it carries."
    ),
    ToolKind.GET_COST_TRENDS: (
        "Analyze month-over-month cost trends: changes, highest/lowest month and average."
    ),
    ToolKind.DETECT_COST_ANOMALIES: (
        "Find subscriptions whose cost changed by more than a threshold percentage "
        "(default 25) between consecutive billing periods."
    ),
    ToolKind.FIND_SIMILAR_SUBSCRIPTIONS_AND_INVOICES: (
        "Find subscriptions whose name matches a case-insensitive pattern (max 100 "
        "characters) and show their latest invoices and tags."
    ),
    ToolKind.LIST_ALL_SUBSCRIPTIONS_WITH_TAGS: (
        "List subscriptions with their complete tag information, for tagging audits."
    ),
    ToolKind.GET_LAST_MONTH_COSTS_BY_ORGANIZATION: "Get total costs of last calendar month.",
    ToolKind.GET_LAST_MONTH_COSTS_BY_INVOICE_PROFILE: (
        "Get last calendar month's costs broken down by invoice profile."
    ),
    ToolKind.GET_LAST_MONTH_COSTS_BY_TAGS: (
        "Get last calendar month's costs broken down by subscription tags."
    ),
}


def tool_input_schema(kind: ToolKind) -> dict[str, Any]:
    """JSON schema of a tool's arguments, using wire field names."""
    return TOOL_ARGUMENT_MODELS[kind].model_json_schema(by_alias=True)


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List all available Crayon cost tools"""
    return [
        Tool(
            name=kind.value,
            description=TOOL_DESCRIPTIONS[kind],
            inputSchema=tool_input_schema(kind),
        )
        for kind in ToolKind
    ]


def _resolve_principal(controls: AccessControl) -> Principal:
    """
    Principal for the current request.

    Hosted requests carry a Starlette request with the caller's Authorization
    header; stdio sessions (and direct calls) have none and use the local principal.
    """
    try:
        request = server.request_context.request
    except LookupError:
        request = None

    headers = getattr(request, "headers", None)
    if headers is None:
        return controls.local_principal()
    return controls.authenticate(headers.get("authorization"))


def _error_result(message: str, tool: str) -> types.CallToolResult:
    payload = {"error": message, "tool": tool, "requestId": str(uuid.uuid4())}
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=json.dumps(payload, indent=2))],
        isError=True,
    )


@server.call_tool(validate_input=False)
async def call_tool(name: str, arguments: dict[str, Any] | None) -> types.CallToolResult:
    """Handle tool execution"""
    if dispatcher is None or access_control is None:
        log.error("tool_call_before_init", tool=name)
        return _error_result("Service temporarily unavailable", name)

    try:
        principal = _resolve_principal(access_control)
    except AuthenticationError:
        return _error_result("Authentication failed", name)

    return await dispatcher.call(name, arguments, principal)


def init_runtime(settings: Settings, transport=None) -> ToolDispatcher:
    """Create the shared client, breaker and access control for this process."""
    global dispatcher, access_control

    configure_logging(settings.log_level)
    client = CrayonClient.from_settings(settings, transport=transport)
    access_control = AccessControl(settings)
    dispatcher = ToolDispatcher(client, access_control, locale=settings.locale)
    log.info(
        "runtime_initialized",
        base_url=settings.base_url,
        auth_enabled=settings.auth_enabled,
        tools=len(ToolKind),
    )
    return dispatcher


async def shutdown_runtime() -> None:
    global dispatcher, access_control

    if dispatcher is not None:
        await dispatcher.client.close()
    dispatcher = None
    access_control = None


def main() -> None:
    """stdio MCP entry point."""
    if any(arg in ("-h", "--help") for arg in sys.argv[1:]):
        print(
            "crayon-cost-mcp - Crayon cost MCP server (stdio)\n\n"
            "Required env vars at runtime:\n"
            "  CRAYON_CLIENT_ID\n"
            "  CRAYON_CLIENT_SECRET\n"
            "  CRAYON_USERNAME\n"
            "  CRAYON_PASSWORD\n"
        )
        return

    try:
        settings = Settings.from_env()
        init_runtime(settings)
    except CrayonMCPError as e:
        configure_logging()
        log.error("startup_failed", error=str(e))
        raise SystemExit(1) from e

    async def run_server():
        """Run the MCP server using stdio transport"""
        try:
            async with stdio_server() as (read_stream, write_stream):
                await server.run(read_stream, write_stream, server.create_initialization_options())
        finally:
            await shutdown_runtime()

    asyncio.run(run_server())


if __name__ == "__main__":
    main()
