"""
Human-readable rendering of analytics results (month names, currency, Markdown).
"""

from typing import Any

MONTH_NAMES: dict[str, list[str]] = {
    "en": [
        "January", "February", "March", "April", "May", "June",
        "July", "August", "September", "October", "November", "December",
    ],
    "no": [
        "januar", "februar", "mars", "april", "mai", "juni",
        "juli", "august", "september", "oktober", "november", "desember",
    ],
}  # fmt: skip


def normalize_locale(locale: str | None) -> str:
    """Map a LOCALE setting to a supported locale (`no` for Norwegian variants, else `en`)."""
    if locale and locale.strip().lower() in ("no", "nb", "nn"):
        return "no"
    return "en"


def format_month_year(month: str | None, locale: str = "en") -> str:
    """'2025-10' -> 'October 2025' (or 'oktober 2025')."""
    if not month or month == "unknown":
        return "Unknown"
    year, _, month_part = month.partition("-")
    try:
        index = int(month_part) - 1
    except ValueError:
        return month
    if not 0 <= index <= 11:
        return month
    return f"{MONTH_NAMES[normalize_locale(locale)][index]} {year}"


def format_currency(amount: float, currency: str = "USD") -> str:
    """Format currency with thousands separator"""
    return f"{amount:,.2f} {currency}"


def _signed(value: float) -> str:
    return f"+{value:,.2f}" if value >= 0 else f"{value:,.2f}"


def render_cost_trends(
    result: dict[str, Any], months_back: int, currency: str = "USD", locale: str = "en"
) -> str:
    """Markdown summary of a cost trend analysis."""
    summary = result["summary"]
    trends = result["trends"]

    def month_line(point: dict[str, Any] | None) -> str:
        if point is None:
            return "N/A"
        return (
            f"{format_month_year(point['month'], locale)} "
            f"({format_currency(point['cost'], currency)})"
        )

    lines = [
        f"# Cost Trends Analysis (Last {months_back} Months)",
        "",
        f"**Average Monthly Cost:** {format_currency(summary['averageMonthlyCost'], currency)}",
        f"**Highest Month:** {month_line(summary['highestMonth'])}",
        f"**Lowest Month:** {month_line(summary['lowestMonth'])}",
        "",
        "**Month-over-Month Changes:**",
    ]

    for point in trends:
        if point["change"] is None:
            change = "N/A"
        else:
            change = f"{_signed(point['change'])} {currency} ({_signed(point['changePercent'])}%)"
        lines.append(
            f"- {format_month_year(point['month'], locale)}: "
            f"{format_currency(point['cost'], currency)} ({change})"
        )

    if not trends:
        lines.append("- No billing data in this period")

    return "\n".join(lines) + "\n"
