"""
Cost analytics over billing data already fetched from the Crayon API.

Everything here is a pure function of its inputs: no I/O, no retained state.
Line items are the raw upstream dicts (PascalCase keys such as SubscriptionId,
TotalSalesPrice, StartDate).
"""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

import regex

DEFAULT_ANOMALY_THRESHOLD_PERCENT = 25
MAX_ANOMALIES = 50
RECENT_INVOICE_COUNT = 5
PATTERN_MATCH_TIMEOUT_SECONDS = 0.5


# Periods


def months_ago_start(months_back: int, now: datetime | None = None) -> tuple[datetime, datetime]:
    """
    Start/end of a lookback window ending now.

    The start is the first day of the month `months_back` months ago at
    00:00:00 UTC, so billing periods straddling a month boundary are included.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    index = now.year * 12 + (now.month - 1) - months_back
    start = datetime(index // 12, index % 12 + 1, 1, tzinfo=timezone.utc)
    return start, now


def previous_month_range(today: date | None = None) -> tuple[str, str]:
    """First and last day of the previous calendar month as YYYY-MM-DD."""
    today = today or datetime.now(timezone.utc).date()
    last_day = today.replace(day=1) - timedelta(days=1)
    first_day = last_day.replace(day=1)
    return first_day.isoformat(), last_day.isoformat()


# Line item accessors


def parse_datetime(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def month_key(item: dict[str, Any]) -> str | None:
    """YYYY-MM of the item's StartDate, taken as written (no timezone shift)."""
    raw = item.get("StartDate")
    if not raw or not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return f"{parsed.year:04d}-{parsed.month:02d}"


def line_item_cost(item: dict[str, Any]) -> float:
    """
    Numeric cost of a line item.

    TotalSalesPrice is either a number or a money object {"Value": ..., "CurrencyCode": ...}.
    """
    price = item.get("TotalSalesPrice")
    if isinstance(price, dict):
        price = price.get("Value")
    if price is None or isinstance(price, bool):
        return 0.0
    try:
        return float(price)
    except (TypeError, ValueError):
        return 0.0


def currency_code(items: list[dict[str, Any]], default: str = "USD") -> str:
    for item in items:
        price = item.get("TotalSalesPrice")
        if isinstance(price, dict) and price.get("CurrencyCode"):
            return price["CurrencyCode"]
        if item.get("CurrencyCode"):
            return item["CurrencyCode"]
    return default


def items_of(response: Any) -> list[dict[str, Any]]:
    """Items list of a Crayon collection response (tolerates bare lists)."""
    if isinstance(response, list):
        return [i for i in response if isinstance(i, dict)]
    if isinstance(response, dict):
        return [i for i in response.get("Items") or [] if isinstance(i, dict)]
    return []


def _sort_instant(item: dict[str, Any]) -> float:
    parsed = parse_datetime(item.get("Date")) or parse_datetime(item.get("StartDate"))
    return parsed.timestamp() if parsed else float("-inf")


def _change_percent(current: float, previous: float) -> float:
    if previous == 0:
        return 0.0
    return round((current - previous) / previous * 100, 2)


# Tags


def normalize_tags(raw: Any) -> dict[str, str]:
    """
    Tag set as a plain str -> str mapping.

    Accepts a mapping, or a list of {"Key": ..., "Value": ...} entries.
    """
    if isinstance(raw, dict):
        if "Items" in raw and isinstance(raw["Items"], list):
            return normalize_tags(raw["Items"])
        return {str(k): "" if v is None else str(v) for k, v in raw.items()}
    if isinstance(raw, list):
        tags: dict[str, str] = {}
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            key = entry.get("Key", entry.get("key"))
            if key is None:
                continue
            value = entry.get("Value", entry.get("value"))
            tags[str(key)] = "" if value is None else str(value)
        return tags
    return {}


@dataclass(frozen=True)
class TagsOk:
    tags: dict[str, str]


@dataclass(frozen=True)
class TagsDegraded:
    """Tag fetch failed; the subscription is treated as untagged."""

    reason: str
    tags: dict[str, str] = field(default_factory=dict)


TagFetchResult = TagsOk | TagsDegraded


# Trends


def compute_cost_trends(items: list[dict[str, Any]]) -> dict[str, Any]:
    """
    Month-over-month cost trend.

    Items are bucketed by the YYYY-MM of their StartDate and summed. Buckets are
    walked in ascending month order; the first has no previous cost. Items
    without a usable StartDate are counted in `unattributedItems` and left out.
    """
    costs_by_month: dict[str, float] = defaultdict(float)
    unattributed = 0
    for item in items:
        month = month_key(item)
        if month is None:
            unattributed += 1
            continue
        costs_by_month[month] += line_item_cost(item)

    trends: list[dict[str, Any]] = []
    previous: float | None = None
    for month in sorted(costs_by_month):
        cost = costs_by_month[month]
        if previous is None:
            trends.append(
                {
                    "month": month,
                    "cost": cost,
                    "previousCost": None,
                    "change": None,
                    "changePercent": None,
                }
            )
        else:
            trends.append(
                {
                    "month": month,
                    "cost": cost,
                    "previousCost": previous,
                    "change": cost - previous,
                    "changePercent": _change_percent(cost, previous),
                }
            )
        previous = cost

    # max()/min() return the first extreme element, so earlier months win ties
    summary = {
        "totalMonths": len(trends),
        "averageMonthlyCost": sum(t["cost"] for t in trends) / len(trends) if trends else 0,
        "highestMonth": max(trends, key=lambda t: t["cost"]) if trends else None,
        "lowestMonth": min(trends, key=lambda t: t["cost"]) if trends else None,
    }

    return {"trends": trends, "summary": summary, "unattributedItems": unattributed}


# Anomalies


def detect_cost_anomalies(
    items: list[dict[str, Any]],
    subscriptions: list[dict[str, Any]] | None = None,
    change_threshold_percent: float = DEFAULT_ANOMALY_THRESHOLD_PERCENT,
    limit: int = MAX_ANOMALIES,
) -> dict[str, Any]:
    """
    Flag subscription-level cost changes between consecutive billing periods.

    Items are grouped by SubscriptionId and ordered chronologically (Date, else
    StartDate). Each adjacent pair with a positive previous cost is compared;
    pairs whose absolute change exceeds the threshold are anomalies. The result
    is ordered by descending absolute change and cut to `limit` entries.
    """
    names = {str(s.get("Id")): s.get("Name") for s in subscriptions or []}

    by_subscription: dict[str, list[dict[str, Any]]] = defaultdict(list)
    subscription_ids: dict[str, Any] = {}
    unattributed = 0
    for item in items:
        sub_id = item.get("SubscriptionId")
        if sub_id is None:
            unattributed += 1
            continue
        by_subscription[str(sub_id)].append(item)
        subscription_ids.setdefault(str(sub_id), sub_id)

    anomalies: list[dict[str, Any]] = []
    for key, sub_items in by_subscription.items():
        ordered = sorted(sub_items, key=_sort_instant)
        for prev_item, curr_item in zip(ordered, ordered[1:]):
            previous = line_item_cost(prev_item)
            current = line_item_cost(curr_item)
            if previous <= 0:
                continue
            change_percent = _change_percent(current, previous)
            if abs(change_percent) > change_threshold_percent:
                anomalies.append(
                    {
                        "subscriptionId": subscription_ids[key],
                        "subscriptionName": names.get(key) or "Unknown",
                        "previousCost": previous,
                        "currentCost": current,
                        "change": current - previous,
                        "changePercent": change_percent,
                        "date": curr_item.get("Date") or curr_item.get("StartDate"),
                    }
                )

    anomalies.sort(key=lambda a: abs(a["changePercent"]), reverse=True)

    return {
        "anomaliesFound": len(anomalies),
        "anomalies": anomalies[:limit],
        "summary": {
            "totalSubscriptionsAnalyzed": len(by_subscription),
            "unattributedItems": unattributed,
            "highestIncrease": next((a for a in anomalies if a["changePercent"] > 0), None),
            "highestDecrease": next((a for a in anomalies if a["changePercent"] < 0), None),
        },
    }


# Tag-based allocation


def allocate_costs_by_tags(
    items: list[dict[str, Any]],
    tags_by_subscription: dict[str, dict[str, str]],
    names_by_subscription: dict[str, str] | None = None,
) -> dict[str, Any]:
    """
    Attribute line item costs to tag key/value pairs.

    Each item's full cost is added to every (key, value) pair on its
    subscription: a subscription with N tags feeds N buckets, cost is not split.
    Values within a key and the keys themselves are ordered by descending cost.
    Items whose subscription carries no tags are summed into `untaggedCost`.
    """
    names_by_subscription = names_by_subscription or {}
    buckets: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
    untagged_cost = 0.0

    for item in items:
        sub_id = item.get("SubscriptionId")
        key = str(sub_id) if sub_id is not None else None
        cost = line_item_cost(item)
        tags = tags_by_subscription.get(key, {}) if key is not None else {}
        if not tags:
            untagged_cost += cost
            continue

        sub_name = names_by_subscription.get(key) or f"Unknown ({sub_id})"
        for tag_key, tag_value in tags.items():
            bucket = buckets[tag_key].setdefault(tag_value, {"cost": 0.0, "subscriptions": []})
            bucket["cost"] += cost
            if sub_name not in bucket["subscriptions"]:
                bucket["subscriptions"].append(sub_name)

    cost_breakdown = []
    for tag_key, values in buckets.items():
        breakdown = sorted(
            (
                {
                    "value": value,
                    "cost": data["cost"],
                    "subscriptionCount": len(data["subscriptions"]),
                    "subscriptions": data["subscriptions"],
                }
                for value, data in values.items()
            ),
            key=lambda b: b["cost"],
            reverse=True,
        )
        cost_breakdown.append(
            {"tag": tag_key, "total": sum(b["cost"] for b in breakdown), "breakdown": breakdown}
        )

    cost_breakdown.sort(key=lambda t: t["total"], reverse=True)

    return {
        "totalCost": sum(t["total"] for t in cost_breakdown),
        "untaggedCost": untagged_cost,
        "tagsCount": len(cost_breakdown),
        "costBreakdown": cost_breakdown,
    }


# Subscription breakdown


def summarize_costs_by_subscription(
    items: list[dict[str, Any]], subscriptions: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    """Total cost per subscription id, highest first."""
    names = {str(s.get("Id")): s.get("Name") for s in subscriptions}
    totals: dict[str, float] = defaultdict(float)
    ids: dict[str, Any] = {}
    for item in items:
        sub_id = item.get("SubscriptionId")
        key = "unknown" if sub_id is None else str(sub_id)
        ids.setdefault(key, sub_id)
        totals[key] += line_item_cost(item)

    rows = [
        {
            "subscriptionId": ids[key],
            "subscriptionName": names.get(key) or "Unknown",
            "cost": cost,
        }
        for key, cost in totals.items()
    ]
    rows.sort(key=lambda r: r["cost"], reverse=True)
    return rows


# Pattern matching


def match_subscriptions(
    pattern: regex.Pattern,
    subscriptions: list[dict[str, Any]],
    timeout: float = PATTERN_MATCH_TIMEOUT_SECONDS,
) -> list[dict[str, Any]]:
    """
    Subscriptions whose Name matches `pattern`.

    All searches share one time budget of `timeout` seconds.

    Raises:
        TimeoutError: The budget ran out before every name was checked
    """
    deadline = time.monotonic() + timeout
    matched = []
    for subscription in subscriptions:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("Pattern matching time budget exhausted")
        name = subscription.get("Name") or ""
        if pattern.search(name, concurrent=True, timeout=remaining):
            matched.append(subscription)
    return matched


def invoices_for_subscription(
    subscription: dict[str, Any], invoices: list[dict[str, Any]]
) -> dict[str, Any]:
    """Latest invoice and the few most recent ones for a subscription."""
    sub_id = str(subscription.get("Id"))
    own = [inv for inv in invoices if str(inv.get("SubscriptionId")) == sub_id]
    own.sort(key=_sort_instant, reverse=True)
    return {
        "lastInvoice": own[0] if own else None,
        "totalInvoices": len(own),
        "recentInvoices": own[:RECENT_INVOICE_COUNT],
    }
