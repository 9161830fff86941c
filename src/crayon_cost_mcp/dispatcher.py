"""
Tool call pipeline: validate -> authorize -> execute -> shape the result.

`ToolDispatcher.call` is the error boundary. Every failure is logged in full
internally and returned to the caller as a sanitized `isError` result with a
correlation id; nothing raises past it.
"""

import json
import time
import uuid
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, assert_never

from mcp import types

from . import reports
from .access_control import AccessControl, Principal, Role
from .analytics import items_of
from .audit import log, log_audit, log_security_event, log_tool_execution
from .crayon_client import CrayonClient
from .errors import (
    AuthenticationError,
    AuthorizationError,
    MissingOrganizationError,
    ServiceUnavailableError,
    UpstreamError,
    ValidationError,
)
from .formatting import render_cost_trends
from .validation import validate


class ToolKind(StrEnum):
    """Every tool the server exposes."""

    GET_ORGANIZATIONS = "get_organizations"
    GET_INVOICE_PROFILES = "get_invoice_profiles"
    GET_BILLING_STATEMENTS = "get_billing_statements"
    GET_GROUPED_BILLING_STATEMENTS = "get_grouped_billing_statements"
    GET_INVOICES = "get_invoices"
    GET_SUBSCRIPTIONS = "get_subscriptions"
    GET_COST_BY_SUBSCRIPTION = "get_cost_by_subscription"
    GET_SUBSCRIPTION_DETAILS = "get_subscription_details"
    GET_SUBSCRIPTION_TAGS = "get_subscription_tags"
    UPDATE_SUBSCRIPTION_TAGS = "update_subscription_tags"
    GET_CUSTOMER_TENANTS = "get_customer_tenants"
    GET_AZURE_SUBSCRIPTIONS = "get_azure_subscriptions"
    GET_AZURE_PLAN_DETAILS = "get_azure_plan_details"
    GET_AZURE_PLAN_SUBSCRIPTIONS = "get_azure_plan_subscriptions"
    GET_AZURE_USAGE = "get_azure_usage"
    GET_HISTORICAL_COSTS = "get_historical_costs"
    GET_AZURE_COSTS_BY_DATE_RANGE = "get_azure_costs_by_date_range"
    GET_AZURE_COSTS_BY_SUBSCRIPTION = "get_azure_costs_by_subscription"
    TRACK_COSTS_BY_TAGS = "track_costs_by_tags"
    ANALYZE_COSTS_BY_TAGS = "analyze_costs_by_tags"
    GET_COST_TRENDS = "get_cost_trends"
    DETECT_COST_ANOMALIES = "detect_cost_anomalies"
    FIND_SIMILAR_SUBSCRIPTIONS_AND_INVOICES = "find_similar_subscriptions_and_invoices"
    LIST_ALL_SUBSCRIPTIONS_WITH_TAGS = "list_all_subscriptions_with_tags"
    GET_LAST_MONTH_COSTS_BY_ORGANIZATION = "get_last_month_costs_by_organization"
    GET_LAST_MONTH_COSTS_BY_INVOICE_PROFILE = "get_last_month_costs_by_invoice_profile"
    GET_LAST_MONTH_COSTS_BY_TAGS = "get_last_month_costs_by_tags"


class OrgScope(StrEnum):
    REQUIRED = "required"
    # Omitted organization means "all organizations" (admin only)
    OPTIONAL = "optional"
    # Scoped to a subscription, tenant or plan: role check only
    NONE = "none"


@dataclass(frozen=True)
class ToolPolicy:
    role: Role
    org_scope: OrgScope


_READ = ToolPolicy(Role.VIEWER, OrgScope.REQUIRED)
_READ_ANY_ORG = ToolPolicy(Role.VIEWER, OrgScope.OPTIONAL)
_READ_UNSCOPED = ToolPolicy(Role.VIEWER, OrgScope.NONE)

TOOL_POLICIES: dict[ToolKind, ToolPolicy] = {
    ToolKind.GET_ORGANIZATIONS: _READ_UNSCOPED,
    ToolKind.GET_INVOICE_PROFILES: _READ,
    ToolKind.GET_BILLING_STATEMENTS: _READ,
    ToolKind.GET_GROUPED_BILLING_STATEMENTS: _READ,
    ToolKind.GET_INVOICES: _READ,
    ToolKind.GET_SUBSCRIPTIONS: _READ_ANY_ORG,
    ToolKind.GET_COST_BY_SUBSCRIPTION: _READ,
    ToolKind.GET_SUBSCRIPTION_DETAILS: _READ_UNSCOPED,
    ToolKind.GET_SUBSCRIPTION_TAGS: _READ_UNSCOPED,
    ToolKind.UPDATE_SUBSCRIPTION_TAGS: ToolPolicy(Role.EDITOR, OrgScope.NONE),
    ToolKind.GET_CUSTOMER_TENANTS: _READ_ANY_ORG,
    ToolKind.GET_AZURE_SUBSCRIPTIONS: _READ_UNSCOPED,
    ToolKind.GET_AZURE_PLAN_DETAILS: _READ_UNSCOPED,
    ToolKind.GET_AZURE_PLAN_SUBSCRIPTIONS: _READ_UNSCOPED,
    ToolKind.GET_AZURE_USAGE: _READ_UNSCOPED,
    ToolKind.GET_HISTORICAL_COSTS: _READ,
    ToolKind.GET_AZURE_COSTS_BY_DATE_RANGE: _READ,
    ToolKind.GET_AZURE_COSTS_BY_SUBSCRIPTION: _READ_UNSCOPED,
    ToolKind.TRACK_COSTS_BY_TAGS: _READ,
    ToolKind.ANALYZE_COSTS_BY_TAGS: _READ,
    ToolKind.GET_COST_TRENDS: _READ,
    ToolKind.DETECT_COST_ANOMALIES: _READ,
    ToolKind.FIND_SIMILAR_SUBSCRIPTIONS_AND_INVOICES: _READ,
    ToolKind.LIST_ALL_SUBSCRIPTIONS_WITH_TAGS: _READ_ANY_ORG,
    ToolKind.GET_LAST_MONTH_COSTS_BY_ORGANIZATION: _READ,
    ToolKind.GET_LAST_MONTH_COSTS_BY_INVOICE_PROFILE: _READ,
    ToolKind.GET_LAST_MONTH_COSTS_BY_TAGS: _READ,
}

GENERIC_ERROR = "An error occurred processing your request"
TIMEOUT_ERROR = "Request timeout - service took too long to respond"


def sanitize_error(error: BaseException) -> str:
    """
    Caller-safe message for an error.

    Known error types map to fixed messages; anything else is classified by
    keywords in its text. Raw upstream text is never returned.
    """
    match error:
        case ValidationError():
            return error.message
        case MissingOrganizationError():
            return "organizationId is required"
        case AuthorizationError():
            return "Access denied"
        case AuthenticationError():
            return "Authentication failed"
        case ServiceUnavailableError(reason="circuit_open"):
            return "Service temporarily unavailable"
        case ServiceUnavailableError(reason="timeout"):
            return TIMEOUT_ERROR
        case ServiceUnavailableError(reason="connection"):
            return "Service connection failed"
        case UpstreamError(status_code=401):
            return "Authentication failed"
        case UpstreamError(status_code=403):
            return "Access denied"
        case UpstreamError(status_code=404):
            return "Resource not found"

    text = str(error).lower()
    if "token" in text or "credential" in text or "401" in text:
        return "Authentication failed"
    if "403" in text or "forbidden" in text:
        return "Access denied"
    if "404" in text or "not found" in text:
        return "Resource not found"
    if "timeout" in text or "timed out" in text:
        return TIMEOUT_ERROR
    if "econnrefused" in text or "connection" in text:
        return "Service connection failed"
    return GENERIC_ERROR


def _json_content(payload: Any) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(payload, indent=2, default=str))]


class ToolDispatcher:
    """Routes validated, authorized tool calls to the client and report layer."""

    def __init__(self, client: CrayonClient, access_control: AccessControl, locale: str = "en"):
        self.client = client
        self.access_control = access_control
        self.locale = locale

    async def call(
        self, name: str, arguments: dict[str, Any] | None, principal: Principal
    ) -> types.CallToolResult:
        started = time.perf_counter()
        organization_id = arguments.get("organizationId") if isinstance(arguments, dict) else None

        try:
            try:
                tool = ToolKind(name)
            except ValueError:
                raise ValidationError([f"Unknown tool: {name}"], name) from None

            args = validate(tool, arguments)
            organization_id = args.get("organizationId")
            self._authorize(tool, args, principal)

            content = await self._execute(tool, args, principal)
        except Exception as e:
            return self._failure(name, arguments, principal, organization_id, started, e)

        duration_ms = (time.perf_counter() - started) * 1000
        log_tool_execution(name, principal.id, organization_id, duration_ms, "success")
        if tool is ToolKind.UPDATE_SUBSCRIPTION_TAGS:
            log_audit(
                "update_subscription_tags",
                principal.id,
                organization_id,
                f"subscription/{args['subscriptionId']}",
                "success",
                {"tag_keys": sorted(args["tags"])},
            )
        return types.CallToolResult(content=content, isError=False)

    def _failure(
        self,
        name: str,
        arguments: Any,
        principal: Principal,
        organization_id: int | None,
        started: float,
        error: Exception,
    ) -> types.CallToolResult:
        request_id = str(uuid.uuid4())
        duration_ms = (time.perf_counter() - started) * 1000
        expected = isinstance(
            error, (ValidationError, AuthorizationError, MissingOrganizationError)
        )

        details = {
            "tool": name,
            "request_id": request_id,
            "principal_id": principal.id,
            "organization_id": organization_id,
            "error": str(error),
            "error_type": type(error).__name__,
            "status_code": getattr(error, "status_code", None),
        }
        if expected:
            log.warning("tool_rejected", **details)
        else:
            log.error("tool_failed", exc_info=error, **details)

        if isinstance(error, ValidationError) and error.unsafe_pattern:
            log_security_event(
                "injection_attempt",
                principal.id,
                {"tool": name, "reason": "; ".join(error.errors), "request_id": request_id},
            )

        log_tool_execution(
            name, principal.id, organization_id, duration_ms, "failure", type(error).__name__
        )
        if name == ToolKind.UPDATE_SUBSCRIPTION_TAGS:
            subscription_id = (
                arguments.get("subscriptionId") if isinstance(arguments, dict) else None
            )
            log_audit(
                "update_subscription_tags",
                principal.id,
                organization_id,
                f"subscription/{subscription_id}",
                "failure",
                {"request_id": request_id, "error_type": type(error).__name__},
            )

        payload = {"error": sanitize_error(error), "tool": name, "requestId": request_id}
        return types.CallToolResult(content=_json_content(payload), isError=True)

    def _authorize(self, tool: ToolKind, args: dict[str, Any], principal: Principal) -> None:
        policy = TOOL_POLICIES[tool]
        match policy.org_scope:
            case OrgScope.REQUIRED:
                self.access_control.authorize(principal, args.get("organizationId"), policy.role)
            case OrgScope.OPTIONAL:
                self.access_control.authorize(
                    principal,
                    args.get("organizationId"),
                    policy.role,
                    organization_required=False,
                )
            case OrgScope.NONE:
                self.access_control.check_role(principal, policy.role)
            case _:
                assert_never(policy.org_scope)

    async def _execute(
        self, tool: ToolKind, args: dict[str, Any], principal: Principal
    ) -> list[types.TextContent]:
        client = self.client
        org = args.get("organizationId")

        match tool:
            case ToolKind.GET_ORGANIZATIONS:
                organizations = await client.get_organizations()
                return _json_content(_visible_organizations(organizations, principal))

            case ToolKind.GET_INVOICE_PROFILES:
                return _json_content(await client.get_invoice_profiles(org))

            case ToolKind.GET_BILLING_STATEMENTS:
                result = await client.get_billing_statements(
                    org,
                    invoice_profile_id=args.get("invoiceProfileId"),
                    provision_type=args.get("provisionType"),
                    from_date=args.get("from"),
                    to_date=args.get("to"),
                    page=args["page"],
                    page_size=args["pageSize"],
                )
                return _json_content(result)

            case ToolKind.GET_GROUPED_BILLING_STATEMENTS:
                result = await client.get_grouped_billing_statements(
                    org,
                    invoice_profile_id=args.get("invoiceProfileId"),
                    provision_type=args.get("provisionType"),
                    from_date=args.get("from"),
                    to_date=args.get("to"),
                )
                return _json_content(result)

            case ToolKind.GET_INVOICES:
                return _json_content(
                    await client.get_invoices(org, args["page"], args["pageSize"])
                )

            case ToolKind.GET_SUBSCRIPTIONS:
                return _json_content(
                    await client.get_subscriptions(org, args["page"], args["pageSize"])
                )

            case ToolKind.GET_COST_BY_SUBSCRIPTION:
                result = await reports.cost_by_subscription(
                    client, org, args["monthsBack"], args.get("invoiceProfileId")
                )
                return _json_content(
                    {
                        "message": "Cost breakdown with subscription correlation",
                        "organizationId": org,
                        "monthsBack": args["monthsBack"],
                        **result,
                    }
                )

            case ToolKind.GET_SUBSCRIPTION_DETAILS:
                return _json_content(await client.get_subscription(args["subscriptionId"]))

            case ToolKind.GET_SUBSCRIPTION_TAGS:
                return _json_content(await client.get_subscription_tags(args["subscriptionId"]))

            case ToolKind.UPDATE_SUBSCRIPTION_TAGS:
                result = await client.update_subscription_tags(
                    args["subscriptionId"], args["tags"]
                )
                return _json_content(
                    {
                        "message": "Tags updated successfully",
                        "subscriptionId": args["subscriptionId"],
                        "tags": result,
                    }
                )

            case ToolKind.GET_CUSTOMER_TENANTS:
                return _json_content(await client.get_customer_tenants(org))

            case ToolKind.GET_AZURE_SUBSCRIPTIONS:
                return _json_content(
                    await client.get_azure_subscriptions(args["customerTenantId"])
                )

            case ToolKind.GET_AZURE_PLAN_DETAILS:
                return _json_content(await client.get_azure_plan(args["azurePlanId"]))

            case ToolKind.GET_AZURE_PLAN_SUBSCRIPTIONS:
                return _json_content(
                    await client.get_azure_plan_subscriptions(args["azurePlanId"])
                )

            case ToolKind.GET_AZURE_USAGE:
                result = await client.get_azure_usage(
                    args["azurePlanId"],
                    args["subscriptionId"],
                    args["year"],
                    args["month"],
                    include_bom=args["includeBom"],
                )
                return _json_content(result)

            case ToolKind.GET_HISTORICAL_COSTS:
                result = await reports.historical_costs(
                    client, org, args["monthsBack"], args.get("invoiceProfileId")
                )
                return _json_content(
                    {
                        "organizationId": org,
                        "monthsBack": args["monthsBack"],
                        "invoiceProfileId": args.get("invoiceProfileId"),
                        **result,
                    }
                )

            case ToolKind.GET_AZURE_COSTS_BY_DATE_RANGE:
                result = await reports.azure_costs_by_date_range(
                    client, org, args["from"], args["to"]
                )
                return _json_content(
                    {
                        "message": "Azure costs by date range",
                        "organizationId": org,
                        "from": args["from"],
                        "to": args["to"],
                        "data": result,
                    }
                )

            case ToolKind.GET_AZURE_COSTS_BY_SUBSCRIPTION:
                result = await reports.azure_costs_by_subscription(
                    client, args["azurePlanId"], args["subscriptionId"], args["from"], args["to"]
                )
                return _json_content(
                    {
                        "message": "Azure costs by subscription",
                        "azurePlanId": args["azurePlanId"],
                        "subscriptionId": args["subscriptionId"],
                        "from": args["from"],
                        "to": args["to"],
                        "data": result,
                    }
                )

            case ToolKind.TRACK_COSTS_BY_TAGS:
                result = await reports.track_costs_by_tags(client, org, args["monthsBack"])
                return _json_content(
                    {
                        "message": "Cost tracking by subscription tags",
                        "organizationId": org,
                        "monthsBack": args["monthsBack"],
                        "data": result,
                    }
                )

            case ToolKind.ANALYZE_COSTS_BY_TAGS:
                result = await reports.analyze_costs_by_tags(client, org, args["monthsBack"])
                return _json_content(
                    {
                        "message": "Cost analysis by tags (CostCenter, Department and similar)",
                        "organizationId": org,
                        "monthsBack": args["monthsBack"],
                        "data": result,
                    }
                )

            case ToolKind.GET_COST_TRENDS:
                result = await reports.cost_trends(client, org, args["monthsBack"])
                summary = render_cost_trends(
                    result, args["monthsBack"], result["currencyCode"], self.locale
                )
                return [
                    types.TextContent(type="text", text=summary),
                    *_json_content(
                        {
                            "message": "Cost trends analysis - month over month comparison",
                            "organizationId": org,
                            "monthsBack": args["monthsBack"],
                            "data": result,
                        }
                    ),
                ]

            case ToolKind.DETECT_COST_ANOMALIES:
                result = await reports.cost_anomalies(
                    client, org, args["monthsBack"], args["changeThresholdPercent"]
                )
                return _json_content(
                    {
                        "message": "Subscriptions with significant cost changes",
                        "organizationId": org,
                        "monthsBack": args["monthsBack"],
                        "changeThresholdPercent": args["changeThresholdPercent"],
                        "data": result,
                    }
                )

            case ToolKind.FIND_SIMILAR_SUBSCRIPTIONS_AND_INVOICES:
                result = await reports.find_similar_subscriptions_and_invoices(
                    client, org, args["namePattern"]
                )
                return _json_content(
                    {
                        "message": "Similar subscriptions and their latest invoices",
                        "organizationId": org,
                        "data": result,
                    }
                )

            case ToolKind.LIST_ALL_SUBSCRIPTIONS_WITH_TAGS:
                result = await reports.list_subscriptions_with_tags(client, org)
                return _json_content(
                    {
                        "message": "All subscriptions with their tags",
                        "organizationId": org if org is not None else "all",
                        "data": result,
                    }
                )

            case ToolKind.GET_LAST_MONTH_COSTS_BY_ORGANIZATION:
                result = await reports.last_month_costs_by_organization(client, org)
                return _json_content(
                    {"message": "Last month costs summary", "organizationId": org, "data": result}
                )

            case ToolKind.GET_LAST_MONTH_COSTS_BY_INVOICE_PROFILE:
                result = await reports.last_month_costs_by_invoice_profile(client, org)
                return _json_content(
                    {
                        "message": "Last month costs by invoice profile",
                        "organizationId": org,
                        "data": result,
                    }
                )

            case ToolKind.GET_LAST_MONTH_COSTS_BY_TAGS:
                result = await reports.last_month_costs_by_tags(client, org)
                return _json_content(
                    {
                        "message": "Last month costs broken down by tags",
                        "organizationId": org,
                        "data": result,
                    }
                )

            case _:
                assert_never(tool)


def _visible_organizations(organizations: Any, principal: Principal) -> Any:
    """Restrict an organizations listing to the principal's allow-list."""
    if principal.unrestricted or not isinstance(organizations, dict):
        return organizations
    visible = [o for o in items_of(organizations) if principal.may_access(o.get("Id"))]
    return {**organizations, "Items": visible, "TotalHits": len(visible)}
