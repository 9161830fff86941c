"""
Multi-call cost reports.

Each report gathers its independent upstream fetches concurrently, then hands
the raw data to the pure functions in `analytics`. Per-subscription tag
fetches are best effort: a failure degrades that subscription to an empty tag
set and never fails the report.
"""

import asyncio
from datetime import date, datetime
from typing import Any

import regex

from .analytics import (
    PATTERN_MATCH_TIMEOUT_SECONDS,
    TagFetchResult,
    TagsDegraded,
    TagsOk,
    allocate_costs_by_tags,
    compute_cost_trends,
    currency_code,
    detect_cost_anomalies,
    invoices_for_subscription,
    items_of,
    line_item_cost,
    match_subscriptions,
    months_ago_start,
    normalize_tags,
    previous_month_range,
    summarize_costs_by_subscription,
)
from .audit import log
from .crayon_client import CrayonClient
from .errors import ServiceUnavailableError, UpstreamError, ValidationError


async def fetch_subscription_tags(client: CrayonClient, subscription_id: Any) -> TagFetchResult:
    try:
        raw = await client.get_subscription_tags(subscription_id)
    except Exception as e:
        log.warning(
            "subscription_tags_degraded",
            subscription_id=subscription_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        return TagsDegraded(reason=_tag_failure_reason(e))
    return TagsOk(normalize_tags(raw))


def _tag_failure_reason(error: Exception) -> str:
    """Caller-safe reason; the exception text stays in the log."""
    match error:
        case ServiceUnavailableError(reason=reason):
            return f"Failed to fetch tags: service {reason}"
        case UpstreamError(status_code=int() as status):
            return f"Failed to fetch tags: upstream status {status}"
    return "Failed to fetch tags"


async def fetch_tags_for(
    client: CrayonClient, subscriptions: list[dict[str, Any]]
) -> dict[str, TagFetchResult]:
    """Tag sets for all subscriptions, fetched concurrently, keyed by str(subscription Id)."""
    results = await asyncio.gather(
        *(fetch_subscription_tags(client, sub.get("Id")) for sub in subscriptions)
    )
    return {str(sub.get("Id")): result for sub, result in zip(subscriptions, results)}


def _tag_lookup(tag_results: dict[str, TagFetchResult]) -> dict[str, dict[str, str]]:
    return {sub_id: result.tags for sub_id, result in tag_results.items()}


def _degraded(tag_results: dict[str, TagFetchResult]) -> list[str]:
    return [sub_id for sub_id, r in tag_results.items() if isinstance(r, TagsDegraded)]


def _period(months_back: int, now: datetime | None = None) -> dict[str, str]:
    start, end = months_ago_start(months_back, now)
    return {"from": start.isoformat(), "to": end.isoformat()}


def _last_month_period(today: date | None = None) -> tuple[str, str, dict[str, str]]:
    from_date, to_date = previous_month_range(today)
    return from_date, to_date, {"from": from_date, "to": to_date, "description": "Last Month"}


# Historical and trend reports


async def historical_costs(
    client: CrayonClient,
    organization_id: int,
    months_back: int = 6,
    invoice_profile_id: int | None = None,
) -> dict[str, Any]:
    billing = await client.get_historical_billing(organization_id, months_back, invoice_profile_id)
    return {"period": _period(months_back), "historicalData": billing}


async def cost_by_subscription(
    client: CrayonClient,
    organization_id: int,
    months_back: int = 3,
    invoice_profile_id: int | None = None,
) -> dict[str, Any]:
    billing, subscriptions = await asyncio.gather(
        client.get_historical_billing(organization_id, months_back, invoice_profile_id),
        client.get_all_subscriptions(organization_id),
    )
    items = items_of(billing)
    return {
        "period": _period(months_back),
        "currencyCode": currency_code(items),
        "costBySubscription": summarize_costs_by_subscription(items, items_of(subscriptions)),
        "billingData": billing,
        "subscriptions": subscriptions,
    }


async def cost_trends(
    client: CrayonClient, organization_id: int, months_back: int = 6
) -> dict[str, Any]:
    billing = await client.get_historical_billing(organization_id, months_back)
    items = items_of(billing)
    return {"currencyCode": currency_code(items), **compute_cost_trends(items)}


async def cost_anomalies(
    client: CrayonClient,
    organization_id: int,
    months_back: int = 3,
    change_threshold_percent: float = 25,
) -> dict[str, Any]:
    subscriptions, billing = await asyncio.gather(
        client.get_all_subscriptions(organization_id),
        client.get_historical_billing(organization_id, months_back),
    )
    return detect_cost_anomalies(
        items_of(billing), items_of(subscriptions), change_threshold_percent
    )


# Tag reports


async def analyze_costs_by_tags(
    client: CrayonClient, organization_id: int, months_back: int = 3
) -> dict[str, Any]:
    """Tag-based cost allocation over the last `months_back` months."""
    subscriptions, billing = await asyncio.gather(
        client.get_all_subscriptions(organization_id),
        client.get_historical_billing(organization_id, months_back),
    )
    subs = items_of(subscriptions)
    tag_results = await fetch_tags_for(client, subs)
    names = {str(s.get("Id")): s.get("Name") for s in subs}

    allocation = allocate_costs_by_tags(items_of(billing), _tag_lookup(tag_results), names)
    return {
        "period": _period(months_back),
        "currencyCode": currency_code(items_of(billing)),
        **allocation,
        "degradedSubscriptions": _degraded(tag_results),
    }


def _subscription_with_tags(sub: dict[str, Any], result: TagFetchResult) -> dict[str, Any]:
    row = {
        "id": sub.get("Id"),
        "name": sub.get("Name"),
        "status": sub.get("Status"),
        "type": sub.get("Type"),
        "createdDate": sub.get("CreatedDate"),
        "tags": result.tags,
    }
    if isinstance(result, TagsDegraded):
        row["tagsError"] = result.reason
    return row


async def track_costs_by_tags(
    client: CrayonClient, organization_id: int, months_back: int = 3
) -> dict[str, Any]:
    """Subscriptions with their tags next to the raw billing data of the period."""
    subscriptions, billing = await asyncio.gather(
        client.get_all_subscriptions(organization_id),
        client.get_historical_billing(organization_id, months_back),
    )
    subs = items_of(subscriptions)
    tag_results = await fetch_tags_for(client, subs)
    return {
        "period": _period(months_back),
        "subscriptions": [_subscription_with_tags(s, tag_results[str(s.get("Id"))]) for s in subs],
        "billingData": billing,
    }


async def list_subscriptions_with_tags(
    client: CrayonClient, organization_id: int | None = None
) -> dict[str, Any]:
    subs = items_of(await client.get_all_subscriptions(organization_id))
    tag_results = await fetch_tags_for(client, subs)
    rows = [_subscription_with_tags(s, tag_results[str(s.get("Id"))]) for s in subs]
    return {"totalSubscriptions": len(rows), "subscriptions": rows}


async def last_month_costs_by_tags(
    client: CrayonClient, organization_id: int, today: date | None = None
) -> dict[str, Any]:
    from_date, to_date, period = _last_month_period(today)
    subscriptions, billing = await asyncio.gather(
        client.get_all_subscriptions(organization_id),
        client.get_grouped_billing_statements(
            organization_id, from_date=from_date, to_date=to_date
        ),
    )
    subs = items_of(subscriptions)
    tag_results = await fetch_tags_for(client, subs)
    names = {str(s.get("Id")): s.get("Name") for s in subs}
    items = items_of(billing)

    return {
        "period": period,
        "currencyCode": currency_code(items),
        **allocate_costs_by_tags(items, _tag_lookup(tag_results), names),
        "degradedSubscriptions": _degraded(tag_results),
    }


# Pattern search


async def find_similar_subscriptions_and_invoices(
    client: CrayonClient, organization_id: int, name_pattern: str
) -> dict[str, Any]:
    """
    Subscriptions whose name matches `name_pattern` (case-insensitive) with their invoices.

    `name_pattern` must already have passed the regex safety check. Matching
    runs in a worker thread under a time budget and fails closed when the
    budget runs out.

    Raises:
        ValidationError: Matching exceeded the time budget (flagged as an unsafe pattern)
    """
    pattern = regex.compile(name_pattern, regex.IGNORECASE)
    subscriptions, invoices = await asyncio.gather(
        client.get_all_subscriptions(organization_id),
        client.get_all_invoices(organization_id),
    )
    try:
        matches = await asyncio.to_thread(
            match_subscriptions,
            pattern,
            items_of(subscriptions),
            PATTERN_MATCH_TIMEOUT_SECONDS,
        )
    except TimeoutError as e:
        log.warning(
            "pattern_match_timeout",
            organization_id=organization_id,
            timeout_seconds=PATTERN_MATCH_TIMEOUT_SECONDS,
        )
        raise ValidationError(
            ["namePattern: Pattern took too long to evaluate"],
            "find_similar_subscriptions_and_invoices",
            unsafe_pattern=True,
        ) from e
    tag_results = await fetch_tags_for(client, matches)
    invoice_items = items_of(invoices)

    results = [
        {
            "subscription": sub,
            "tags": tag_results[str(sub.get("Id"))].tags,
            **invoices_for_subscription(sub, invoice_items),
        }
        for sub in matches
    ]
    return {"searchPattern": name_pattern, "matchesFound": len(matches), "results": results}


# Last-month summaries


async def last_month_costs_by_organization(
    client: CrayonClient, organization_id: int, today: date | None = None
) -> dict[str, Any]:
    from_date, to_date, period = _last_month_period(today)
    billing = await client.get_grouped_billing_statements(
        organization_id, from_date=from_date, to_date=to_date
    )
    items = items_of(billing)
    return {
        "period": period,
        "totalCost": sum(line_item_cost(i) for i in items),
        "currencyCode": currency_code(items),
        "itemsCount": len(items),
        "items": items,
    }


async def _profile_cost(
    client: CrayonClient,
    organization_id: int,
    profile: dict[str, Any],
    from_date: str,
    to_date: str,
) -> dict[str, Any]:
    try:
        billing = await client.get_grouped_billing_statements(
            organization_id,
            invoice_profile_id=profile.get("Id"),
            from_date=from_date,
            to_date=to_date,
        )
    except Exception as e:
        log.warning(
            "invoice_profile_costs_degraded",
            organization_id=organization_id,
            invoice_profile_id=profile.get("Id"),
            error=str(e),
        )
        return {
            "profileId": profile.get("Id"),
            "profileName": profile.get("Name"),
            "totalCost": 0,
            "error": "Failed to fetch costs",
        }

    items = items_of(billing)
    return {
        "profileId": profile.get("Id"),
        "profileName": profile.get("Name"),
        "totalCost": sum(line_item_cost(i) for i in items),
        "currencyCode": currency_code(items),
        "itemsCount": len(items),
    }


async def last_month_costs_by_invoice_profile(
    client: CrayonClient, organization_id: int, today: date | None = None
) -> dict[str, Any]:
    from_date, to_date, period = _last_month_period(today)
    profiles = items_of(await client.get_invoice_profiles(organization_id))
    costs = await asyncio.gather(
        *(_profile_cost(client, organization_id, p, from_date, to_date) for p in profiles)
    )
    costs = sorted(costs, key=lambda p: p["totalCost"], reverse=True)
    return {
        "period": period,
        "totalOrganizationCost": sum(p["totalCost"] for p in costs),
        "profilesCount": len(costs),
        "costsByProfile": costs,
    }


# Azure usage cost


async def azure_costs_by_date_range(
    client: CrayonClient, organization_id: int, from_date: str, to_date: str
) -> Any:
    """Organization usage cost, falling back to grouped billing statements."""
    try:
        return await client.get_usage_cost_by_organization(organization_id, from_date, to_date)
    except (UpstreamError, ServiceUnavailableError) as e:
        log.warning(
            "usage_cost_fallback",
            endpoint="organization",
            organization_id=organization_id,
            error=str(e),
        )

    billing = await client.get_grouped_billing_statements(
        organization_id, from_date=from_date, to_date=to_date
    )
    return {"billingStatements": billing, "source": "billing_statements_fallback"}


async def azure_costs_by_subscription(
    client: CrayonClient, azure_plan_id: int, subscription_id: int, from_date: str, to_date: str
) -> Any:
    """Subscription usage cost, falling back to the monthly usage export of the start month."""
    try:
        return await client.get_usage_cost_by_subscription(
            azure_plan_id, subscription_id, from_date, to_date
        )
    except (UpstreamError, ServiceUnavailableError) as e:
        log.warning(
            "usage_cost_fallback",
            endpoint="subscription",
            azure_plan_id=azure_plan_id,
            subscription_id=subscription_id,
            error=str(e),
        )

    start = datetime.fromisoformat(from_date)
    usage = await client.get_azure_usage(azure_plan_id, subscription_id, start.year, start.month)
    return {"usageData": usage, "source": "usage_csv_fallback"}
