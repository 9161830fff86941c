"""
Tool argument validation.

Each tool has a pydantic model describing its arguments. `validate()` applies
defaults, strips unknown fields and returns a plain dict keyed by the wire
names (camelCase, `from`/`to`), so validating its own output is a no-op.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Literal

import regex
from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PositiveInt,
    field_validator,
)
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

MAX_PATTERN_LENGTH = 100

# Shapes known to cause catastrophic backtracking. This is a heuristic filter,
# not a proof of safety; matching also runs under a time budget.
_DANGEROUS_PATTERNS = [
    re.compile(r"\((?:[^()\\]|\\.)*[+*}]\)[+*{]"),  # quantified group holding a quantifier: (a+)+
    re.compile(r"\(\.\*\)\+"),  # (.*)+
    re.compile(r"\[[^\]]*\][+*]\)[+*{]"),  # repeated character class: ([\w-]+)+
    re.compile(r"(?:\.\*){2,}"),  # chained wildcards: .*.*
    re.compile(r"\(.*\)\*"),  # grouped wildcard: (...)*
]

_ANY = "<any>"
_CLASS_ESCAPES = frozenset("wWdDsS")
_BOUNDED_REPEAT = re.compile(r"\{\d+(?:,\d*)?\}|\{,\d+\}")


class UnsafePatternError(ValueError):
    """A user-supplied regex was rejected by the safety check."""


@dataclass
class _Group:
    quantified: bool = False
    # First atom of each alternative; None while the alternative is still empty
    heads: list[str | None] = field(default_factory=lambda: [None])

    def record(self, head: str | None) -> None:
        if self.heads[-1] is None:
            self.heads[-1] = head

    def overlapping(self) -> bool:
        if len(self.heads) < 2:
            return False
        if any(head is None or head == _ANY for head in self.heads):
            return True
        return len(set(self.heads)) < len(self.heads)


def _quantifier_length(pattern: str, i: int) -> int:
    """Length of the quantifier starting at `i` (0 if none), lazy/possessive suffix included."""
    if i >= len(pattern):
        return 0
    if pattern[i] in "*+?":
        size = 1
    else:
        bounded = _BOUNDED_REPEAT.match(pattern, i)
        if bounded is None:
            return 0
        size = bounded.end() - i
    if pattern[i + size : i + size + 1] in ("?", "+"):
        size += 1
    return size


def _class_end(pattern: str, i: int) -> int:
    """Index just past the character class opened at `i`."""
    j = i + 1
    if pattern.startswith("^", j):
        j += 1
    if pattern.startswith("]", j):
        j += 1
    while j < len(pattern):
        if pattern[j] == "\\":
            j += 2
            continue
        if pattern[j] == "]":
            return j + 1
        j += 1
    return len(pattern)


def _skip_group_prefix(pattern: str, i: int) -> int:
    """Skip `?:`, `?P<name>`, lookarounds and inline flags after an opening paren."""
    if not pattern.startswith("?", i):
        return i
    i += 1
    if pattern.startswith(("<=", "<!"), i):
        return i + 2
    if pattern.startswith(("P<", "<"), i):
        close = pattern.find(">", i)
        return len(pattern) if close == -1 else close + 1
    while i < len(pattern) and (pattern[i].isalpha() or pattern[i] == "-"):
        i += 1
    if pattern.startswith((":", "=", "!"), i):
        i += 1
    return i


def has_nested_repetition(pattern: str) -> bool:
    """
    True if a repeated group holds a quantifier or alternatives that can match the same text.

    Walks the pattern once, tracking groups at any nesting depth, so `((a+))+`,
    `(\\w+\\s?)+` and `(a|aa)+` are all caught.
    """
    stack = [_Group()]
    i = 0
    while i < len(pattern):
        char = pattern[i]
        group = stack[-1]

        if char == "(":
            stack.append(_Group())
            i = _skip_group_prefix(pattern, i + 1)
            continue
        if char == "|":
            group.heads.append(None)
            i += 1
            continue
        if char == ")":
            i += 1
            if len(stack) == 1:
                continue
            inner = stack.pop()
            size = _quantifier_length(pattern, i)
            repeated = size > 0 and pattern[i] != "?"
            if repeated and (inner.quantified or inner.overlapping()):
                return True
            parent = stack[-1]
            parent.quantified = parent.quantified or inner.quantified or size > 0
            parent.record(inner.heads[0] if len(inner.heads) == 1 else _ANY)
            i += size
            continue
        if char in "^$":
            i += 1
            continue

        if char == "\\":
            escaped = pattern[i + 1 : i + 2]
            head = _ANY if escaped in _CLASS_ESCAPES else escaped.lower()
            i += 2
        elif char == "[":
            head = _ANY
            i = _class_end(pattern, i)
        elif char == ".":
            head = _ANY
            i += 1
        else:
            head = char.lower()
            i += 1
        group.record(head)

        size = _quantifier_length(pattern, i)
        if size:
            group.quantified = True
            i += size

    return False


def validate_regex_pattern(pattern: str) -> str:
    """
    Check a user-supplied, case-insensitive name pattern before it is used.

    Returns:
        The pattern unchanged

    Raises:
        UnsafePatternError: Pattern too long, matches a dangerous shape, or does not compile
    """
    if len(pattern) > MAX_PATTERN_LENGTH:
        raise UnsafePatternError(f"Pattern too long (max {MAX_PATTERN_LENGTH} characters)")

    if has_nested_repetition(pattern) or any(d.search(pattern) for d in _DANGEROUS_PATTERNS):
        raise UnsafePatternError(
            "Pattern contains potentially dangerous regex constructs (possible ReDoS)"
        )

    try:
        regex.compile(pattern, regex.IGNORECASE)
    except regex.error as e:
        raise UnsafePatternError("Invalid regex pattern") from e

    return pattern


def _check_iso_date(value: str) -> str:
    try:
        datetime.fromisoformat(value)
    except ValueError as e:
        raise ValueError("must be an ISO-8601 date (YYYY-MM-DD)") from e
    return value


def _reject_bool(value: Any) -> Any:
    # bool is an int subclass; lax mode would turn true into 1
    if isinstance(value, bool):
        raise ValueError("must be a number, not a boolean")
    return value


NoBool = BeforeValidator(_reject_bool)
Id = Annotated[PositiveInt, NoBool]
IsoDate = Annotated[str, AfterValidator(_check_iso_date)]
MonthsBack = Annotated[int, Field(ge=1, le=24), NoBool]
Page = Annotated[int, Field(ge=1), NoBool]
PageSize = Annotated[int, Field(ge=1, le=500), NoBool]
ProvisionType = Literal["None", "Seat", "Usage", "OneTime", "Crayon", "AzureMarketplace"]


class ToolArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")


class NoArgs(ToolArgs):
    pass


class OrganizationArgs(ToolArgs):
    organizationId: Id


class OptionalOrganizationArgs(ToolArgs):
    organizationId: Id | None = None


class SubscriptionArgs(ToolArgs):
    subscriptionId: Id


class AzurePlanArgs(ToolArgs):
    azurePlanId: Id


class CustomerTenantArgs(ToolArgs):
    customerTenantId: Id


class BillingStatementArgs(ToolArgs):
    organizationId: Id
    invoiceProfileId: Id | None = None
    provisionType: ProvisionType | None = None
    from_date: IsoDate | None = Field(default=None, alias="from")
    to_date: IsoDate | None = Field(default=None, alias="to")
    page: Page = 1
    pageSize: PageSize = 100


class GroupedBillingStatementArgs(ToolArgs):
    organizationId: Id
    invoiceProfileId: Id | None = None
    provisionType: ProvisionType | None = None
    from_date: IsoDate | None = Field(default=None, alias="from")
    to_date: IsoDate | None = Field(default=None, alias="to")


class PagedOrganizationArgs(ToolArgs):
    organizationId: Id
    page: Page = 1
    pageSize: PageSize = 100


class PagedOptionalOrganizationArgs(ToolArgs):
    organizationId: Id | None = None
    page: Page = 1
    pageSize: PageSize = 100


class HistoricalCostArgs(ToolArgs):
    organizationId: Id
    monthsBack: MonthsBack = 6
    invoiceProfileId: Id | None = None


class CostBySubscriptionArgs(ToolArgs):
    organizationId: Id
    invoiceProfileId: Id | None = None
    monthsBack: MonthsBack = 3


class CostTrendArgs(ToolArgs):
    organizationId: Id
    monthsBack: MonthsBack = 6


class TagCostArgs(ToolArgs):
    organizationId: Id
    monthsBack: MonthsBack = 3


class AnomalyArgs(ToolArgs):
    organizationId: Id
    monthsBack: MonthsBack = 3
    changeThresholdPercent: Annotated[float, Field(ge=1, le=100), NoBool] = 25.0


class UpdateTagsArgs(ToolArgs):
    subscriptionId: Id
    tags: dict[str, str]


class AzureUsageArgs(ToolArgs):
    azurePlanId: Id
    subscriptionId: Id
    year: Annotated[int, Field(ge=2020, le=2100), NoBool]
    month: Annotated[int, Field(ge=1, le=12), NoBool]
    includeBom: bool = False


class DateRangeArgs(ToolArgs):
    organizationId: Id
    from_date: IsoDate = Field(alias="from")
    to_date: IsoDate = Field(alias="to")


class SubscriptionDateRangeArgs(ToolArgs):
    azurePlanId: Id
    subscriptionId: Id
    from_date: IsoDate = Field(alias="from")
    to_date: IsoDate = Field(alias="to")


class PatternSearchArgs(ToolArgs):
    organizationId: Id
    # validate_regex_pattern owns the length limit so overlong patterns count as unsafe
    namePattern: Annotated[
        str, Field(min_length=1, json_schema_extra={"maxLength": MAX_PATTERN_LENGTH})
    ]

    @field_validator("namePattern")
    @classmethod
    def _safe_pattern(cls, value: str) -> str:
        return validate_regex_pattern(value)


TOOL_ARGUMENT_MODELS: dict[str, type[ToolArgs]] = {
    "get_organizations": NoArgs,
    "get_invoice_profiles": OrganizationArgs,
    "get_billing_statements": BillingStatementArgs,
    "get_grouped_billing_statements": GroupedBillingStatementArgs,
    "get_invoices": PagedOrganizationArgs,
    "get_subscriptions": PagedOptionalOrganizationArgs,
    "get_cost_by_subscription": CostBySubscriptionArgs,
    "get_subscription_details": SubscriptionArgs,
    "get_subscription_tags": SubscriptionArgs,
    "update_subscription_tags": UpdateTagsArgs,
    "get_customer_tenants": OptionalOrganizationArgs,
    "get_azure_subscriptions": CustomerTenantArgs,
    "get_azure_plan_details": AzurePlanArgs,
    "get_azure_plan_subscriptions": AzurePlanArgs,
    "get_azure_usage": AzureUsageArgs,
    "get_historical_costs": HistoricalCostArgs,
    "get_azure_costs_by_date_range": DateRangeArgs,
    "get_azure_costs_by_subscription": SubscriptionDateRangeArgs,
    "track_costs_by_tags": TagCostArgs,
    "analyze_costs_by_tags": TagCostArgs,
    "get_cost_trends": CostTrendArgs,
    "detect_cost_anomalies": AnomalyArgs,
    "find_similar_subscriptions_and_invoices": PatternSearchArgs,
    "list_all_subscriptions_with_tags": OptionalOrganizationArgs,
    "get_last_month_costs_by_organization": OrganizationArgs,
    "get_last_month_costs_by_invoice_profile": OrganizationArgs,
    "get_last_month_costs_by_tags": OrganizationArgs,
}


def _format_error(error: dict[str, Any]) -> str:
    path = ".".join(str(part) for part in error.get("loc", ())) or "arguments"
    return f"{path}: {error['msg']}"


def validate(tool_name: str, raw_args: Any) -> dict[str, Any]:
    """
    Validate and normalize the arguments of a tool call.

    Args:
        tool_name: Tool being called
        raw_args: Arguments as received from the caller (None means no arguments)

    Returns:
        Normalized arguments: defaults applied, unknown fields removed,
        unset optional fields omitted

    Raises:
        ValidationError: One message per violated field
    """
    model = TOOL_ARGUMENT_MODELS.get(tool_name)
    if model is None:
        raise ValidationError([f"No validation schema for tool: {tool_name}"], tool_name)

    if raw_args is None:
        raw_args = {}
    if not isinstance(raw_args, dict):
        raise ValidationError(["arguments: must be an object"], tool_name)

    try:
        parsed = model.model_validate(raw_args)
    except PydanticValidationError as e:
        details = e.errors()
        unsafe = any(
            isinstance(d.get("ctx", {}).get("error"), UnsafePatternError) for d in details
        )
        raise ValidationError(
            [_format_error(d) for d in details], tool_name, unsafe_pattern=unsafe
        ) from None

    return parsed.model_dump(mode="json", by_alias=True, exclude_none=True)


__all__ = [
    "TOOL_ARGUMENT_MODELS",
    "UnsafePatternError",
    "has_nested_repetition",
    "validate",
    "validate_regex_pattern",
]
