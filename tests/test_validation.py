"""
Tests for tool argument validation and the regex safety check.
"""

import pytest

from crayon_cost_mcp.errors import ValidationError
from crayon_cost_mcp.validation import (
    TOOL_ARGUMENT_MODELS,
    UnsafePatternError,
    has_nested_repetition,
    validate,
    validate_regex_pattern,
)


class TestNormalization:
    """Tests for defaults, stripping and idempotence"""

    def test_defaults_applied_and_unknown_fields_stripped(self):
        result = validate("get_cost_trends", {"organizationId": 10, "extra": "dropped"})
        assert result == {"organizationId": 10, "monthsBack": 6}

    def test_billing_statement_defaults(self):
        result = validate(
            "get_billing_statements",
            {"organizationId": 10, "from": "2025-01-01", "provisionType": "Usage"},
        )
        assert result == {
            "organizationId": 10,
            "provisionType": "Usage",
            "from": "2025-01-01",
            "page": 1,
            "pageSize": 100,
        }

    def test_numeric_strings_coerced(self):
        assert validate("get_invoice_profiles", {"organizationId": "42"}) == {"organizationId": 42}

    def test_no_arguments(self):
        assert validate("get_organizations", None) == {}

    @pytest.mark.parametrize(
        "tool,args",
        [
            ("get_cost_trends", {"organizationId": 1}),
            ("detect_cost_anomalies", {"organizationId": 1, "changeThresholdPercent": 40}),
            (
                "get_billing_statements",
                {"organizationId": 1, "from": "2025-01-01", "to": "2025-02-01"},
            ),
            ("get_azure_usage", {"azurePlanId": 1, "subscriptionId": 2, "year": 2025, "month": 3}),
            ("update_subscription_tags", {"subscriptionId": 3, "tags": {"env": "prod"}}),
            (
                "find_similar_subscriptions_and_invoices",
                {"organizationId": 1, "namePattern": "sub-prod.*"},
            ),
            ("list_all_subscriptions_with_tags", {}),
        ],
    )
    def test_validate_is_idempotent(self, tool, args):
        normalized = validate(tool, args)
        assert validate(tool, normalized) == normalized

    def test_include_bom_defaults_false(self):
        result = validate(
            "get_azure_usage", {"azurePlanId": 1, "subscriptionId": 2, "year": 2025, "month": 3}
        )
        assert result["includeBom"] is False


class TestConstraints:
    """Tests for field constraints and error messages"""

    def test_missing_required_field(self):
        with pytest.raises(ValidationError) as exc_info:
            validate("get_cost_trends", {})

        assert len(exc_info.value.errors) == 1
        assert exc_info.value.errors[0].startswith("organizationId:")

    def test_one_message_per_field(self):
        with pytest.raises(ValidationError) as exc_info:
            validate("detect_cost_anomalies", {"organizationId": -1, "monthsBack": 30})

        fields = sorted(e.split(":")[0] for e in exc_info.value.errors)
        assert fields == ["monthsBack", "organizationId"]
        assert exc_info.value.message.startswith("Validation error: ")

    @pytest.mark.parametrize("org", [0, -5, 1.5, "abc", True, False])
    def test_ids_must_be_positive_integers(self, org):
        with pytest.raises(ValidationError):
            validate("get_invoice_profiles", {"organizationId": org})

    def test_booleans_are_not_numbers(self):
        with pytest.raises(ValidationError) as exc_info:
            validate("get_invoices", {"organizationId": True, "page": True})

        assert len(exc_info.value.errors) == 2
        assert "boolean" in exc_info.value.errors[0]

    @pytest.mark.parametrize("page_size", [0, 501])
    def test_page_size_bounds(self, page_size):
        with pytest.raises(ValidationError):
            validate("get_invoices", {"organizationId": 1, "pageSize": page_size})

    @pytest.mark.parametrize("months", [0, 25])
    def test_months_back_bounds(self, months):
        with pytest.raises(ValidationError):
            validate("get_historical_costs", {"organizationId": 1, "monthsBack": months})

    @pytest.mark.parametrize("threshold", [0, 101])
    def test_threshold_bounds(self, threshold):
        with pytest.raises(ValidationError):
            validate(
                "detect_cost_anomalies", {"organizationId": 1, "changeThresholdPercent": threshold}
            )

    def test_invalid_date_reports_wire_name(self):
        with pytest.raises(ValidationError) as exc_info:
            validate(
                "get_azure_costs_by_date_range",
                {"organizationId": 1, "from": "2025-01-01", "to": "soon"},
            )
        assert exc_info.value.errors[0].startswith("to:")

    def test_provision_type_enum(self):
        with pytest.raises(ValidationError):
            validate(
                "get_grouped_billing_statements", {"organizationId": 1, "provisionType": "Bogus"}
            )

    def test_tags_must_be_strings(self):
        with pytest.raises(ValidationError):
            validate("update_subscription_tags", {"subscriptionId": 1, "tags": {"env": ["a"]}})

    def test_year_and_month_bounds(self):
        with pytest.raises(ValidationError) as exc_info:
            validate(
                "get_azure_usage",
                {"azurePlanId": 1, "subscriptionId": 1, "year": 2019, "month": 13},
            )
        assert len(exc_info.value.errors) == 2

    def test_arguments_must_be_object(self):
        with pytest.raises(ValidationError):
            validate("get_cost_trends", ["organizationId", 1])

    def test_unknown_tool(self):
        with pytest.raises(ValidationError, match="No validation schema"):
            validate("drop_tables", {})

    def test_every_model_ignores_unknown_fields(self):
        for model in TOOL_ARGUMENT_MODELS.values():
            assert model.model_config.get("extra") == "ignore"


class TestRegexSafety:
    """Tests for the ReDoS guard on user-supplied patterns"""

    def test_accepts_simple_pattern(self):
        assert validate_regex_pattern("sub-prod.*") == "sub-prod.*"

    @pytest.mark.parametrize(
        "pattern",
        [
            "(.*)+",
            "(a+)+",
            "([\\w-]+)+",
            "(\\d*)*",
            ".*.*",
            "(ab|a)*",
            "x(.*){2,}",
            "((a+))+$",
            "(\\w+\\s?)+$",
            "(a|aa)+$",
            "(?:x(?:a+)){2,}",
            "(.|a)+",
        ],
    )
    def test_rejects_dangerous_shapes(self, pattern):
        with pytest.raises(UnsafePatternError, match="dangerous"):
            validate_regex_pattern(pattern)

    @pytest.mark.parametrize(
        "pattern",
        ["(prod|dev)-\\d+", "^sub-(eu|us)-[a-z]+$", "(?i)billing", "(ab)+", "(?:prod|dev)+"],
    )
    def test_accepts_bounded_groups(self, pattern):
        assert validate_regex_pattern(pattern) == pattern

    def test_nested_repetition_scan(self):
        assert has_nested_repetition("((a+))+")
        assert has_nested_repetition("(x|(a+)b)*")
        assert not has_nested_repetition("(a+)?b")
        assert not has_nested_repetition("[(a+)]+")
        assert not has_nested_repetition("\\(a+\\)+")

    def test_rejects_long_pattern(self):
        with pytest.raises(UnsafePatternError, match="too long"):
            validate_regex_pattern("a" * 150)

    def test_rejects_invalid_pattern(self):
        with pytest.raises(UnsafePatternError, match="Invalid regex"):
            validate_regex_pattern("sub-[prod")

    def test_tool_validation_flags_unsafe_pattern(self):
        with pytest.raises(ValidationError) as exc_info:
            validate(
                "find_similar_subscriptions_and_invoices",
                {"organizationId": 1, "namePattern": "(.*)+"},
            )

        assert exc_info.value.unsafe_pattern is True
        assert exc_info.value.errors[0].startswith("namePattern:")

    def test_long_pattern_rejected_by_tool(self):
        with pytest.raises(ValidationError):
            validate(
                "find_similar_subscriptions_and_invoices",
                {"organizationId": 1, "namePattern": "a" * 150},
            )

    def test_ordinary_errors_not_flagged_unsafe(self):
        with pytest.raises(ValidationError) as exc_info:
            validate("get_cost_trends", {})
        assert exc_info.value.unsafe_pattern is False

    def test_overlong_pattern_flagged_unsafe(self):
        with pytest.raises(ValidationError) as exc_info:
            validate(
                "find_similar_subscriptions_and_invoices",
                {"organizationId": 1, "namePattern": "a" * 150},
            )

        assert exc_info.value.unsafe_pattern is True
        assert "too long" in exc_info.value.errors[0]
