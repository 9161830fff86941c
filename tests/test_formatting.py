"""
Tests for month, currency and Markdown rendering.
"""

import pytest

from crayon_cost_mcp.formatting import (
    format_currency,
    format_month_year,
    normalize_locale,
    render_cost_trends,
)


@pytest.mark.parametrize(
    "locale,expected",
    [("en", "en"), ("no", "no"), ("nb", "no"), ("NN", "no"), ("de", "en"), (None, "en")],
)
def test_normalize_locale(locale, expected):
    assert normalize_locale(locale) == expected


def test_month_names():
    assert format_month_year("2025-10") == "October 2025"
    assert format_month_year("2025-10", "nb") == "oktober 2025"
    assert format_month_year(None) == "Unknown"
    assert format_month_year("2025-13") == "2025-13"


def test_format_currency():
    assert format_currency(1234) == "1,234.00 USD"
    assert format_currency(-5.5, "NOK") == "-5.50 NOK"


def test_render_cost_trends():
    result = {
        "trends": [
            {"month": "2025-01", "cost": 100.0, "previousCost": None, "change": None,
             "changePercent": None},
            {"month": "2025-02", "cost": 80.0, "previousCost": 100.0, "change": -20.0,
             "changePercent": -20.0},
        ],
        "summary": {
            "totalMonths": 2,
            "averageMonthlyCost": 90.0,
            "highestMonth": {"month": "2025-01", "cost": 100.0},
            "lowestMonth": {"month": "2025-02", "cost": 80.0},
        },
    }

    text = render_cost_trends(result, 2, "EUR")

    assert text.startswith("# Cost Trends Analysis (Last 2 Months)")
    assert "**Highest Month:** January 2025 (100.00 EUR)" in text
    assert "- January 2025: 100.00 EUR (N/A)" in text
    assert "- February 2025: 80.00 EUR (-20.00 EUR (-20.00%))" in text


def test_render_empty_trends():
    result = {
        "trends": [],
        "summary": {
            "totalMonths": 0,
            "averageMonthlyCost": 0,
            "highestMonth": None,
            "lowestMonth": None,
        },
    }

    text = render_cost_trends(result, 6)

    assert "**Lowest Month:** N/A" in text
    assert "No billing data" in text
