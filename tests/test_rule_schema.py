"""
Tests — due-date rule payload validation and period keys.

Covers:
    1. parse_rule_payload: tagged variants, normalization, field errors
    2. load_rule: rebuilding variants from stored JSON
    3. periods: key parsing, shape inference, month clamping
"""

from datetime import date

import pytest

from compliance_engine.core.exceptions import ValidationError
from compliance_engine.services.periods import (
    clamp_day,
    infer_periodicity,
    parse_period_key,
    period_for_date,
)
from compliance_engine.services.rule_schema import (
    AnnualRule,
    MonthlyRule,
    OneTimeRule,
    Periodicity,
    QuarterlyRule,
    load_rule,
    parse_rule_payload,
)

GST_RULE = {
    "periodicity": "MONTHLY",
    "dueDayOfMonth": 20,
    "nudges": {"tMinus": [7, 3, 1], "fixedDays": [1, 2]},
}


# ═══════════════════════════════════════════════════════════════════════════
#  parse_rule_payload
# ═══════════════════════════════════════════════════════════════════════════

class TestParseRulePayload:

    def test_monthly_rule(self):
        rule = parse_rule_payload(GST_RULE)
        assert isinstance(rule, MonthlyRule)
        assert rule.due_day == 20
        assert rule.nudges.t_minus == (7, 3, 1)
        assert rule.nudges.fixed_days == (1, 2)
        assert rule.to_payload() == GST_RULE

    def test_periodicity_is_case_insensitive(self):
        rule = parse_rule_payload({"periodicity": "quarterly", "dueDayOfMonth": 28})
        assert isinstance(rule, QuarterlyRule)
        assert rule.periodicity is Periodicity.QUARTERLY

    def test_default_periodicity_used_when_missing(self):
        rule = parse_rule_payload({"dueDayOfMonth": 28}, default_periodicity="ANNUAL")
        assert isinstance(rule, AnnualRule)

    def test_nudges_are_optional(self):
        rule = parse_rule_payload({"periodicity": "MONTHLY", "dueDayOfMonth": 10})
        assert rule.nudges.t_minus == ()
        assert rule.nudges.fixed_days == ()

    def test_duplicate_offsets_collapse(self):
        rule = parse_rule_payload({"periodicity": "MONTHLY", "dueDayOfMonth": 10,
                                   "nudges": {"tMinus": [3, 3, 1]}})
        assert rule.nudges.t_minus == (3, 1)

    @pytest.mark.parametrize("due_day", [0, 29, 31, -1])
    def test_due_day_out_of_range(self, due_day):
        with pytest.raises(ValidationError) as exc:
            parse_rule_payload({"periodicity": "MONTHLY", "dueDayOfMonth": due_day})
        assert "dueDayOfMonth" in exc.value.details

    @pytest.mark.parametrize("due_day", [None, "20", 20.0, True])
    def test_due_day_must_be_integer(self, due_day):
        with pytest.raises(ValidationError) as exc:
            parse_rule_payload({"periodicity": "MONTHLY", "dueDayOfMonth": due_day})
        assert "dueDayOfMonth" in exc.value.details

    def test_negative_t_minus_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_rule_payload({"periodicity": "MONTHLY", "dueDayOfMonth": 20,
                                "nudges": {"tMinus": [3, -1]}})
        assert exc.value.details["tMinus"] == "nudge offsets must not be negative"

    def test_fixed_day_out_of_range(self):
        with pytest.raises(ValidationError) as exc:
            parse_rule_payload({"periodicity": "MONTHLY", "dueDayOfMonth": 20,
                                "nudges": {"fixedDays": [32]}})
        assert "fixedDays" in exc.value.details

    def test_nudges_must_be_object(self):
        with pytest.raises(ValidationError) as exc:
            parse_rule_payload({"periodicity": "MONTHLY", "dueDayOfMonth": 20,
                                "nudges": [7, 3, 1]})
        assert "nudges" in exc.value.details

    def test_unknown_periodicity(self):
        with pytest.raises(ValidationError) as exc:
            parse_rule_payload({"periodicity": "WEEKLY", "dueDayOfMonth": 5})
        assert "periodicity" in exc.value.details

    def test_missing_periodicity(self):
        with pytest.raises(ValidationError) as exc:
            parse_rule_payload({"dueDayOfMonth": 5})
        assert exc.value.details["periodicity"] == "periodicity is required"

    def test_payload_must_be_object(self):
        with pytest.raises(ValidationError):
            parse_rule_payload(["MONTHLY", 20])

    def test_all_errors_reported_together(self):
        with pytest.raises(ValidationError) as exc:
            parse_rule_payload({"periodicity": "MONTHLY", "dueDayOfMonth": 40,
                                "nudges": {"tMinus": [-2], "fixedDays": [0]}})
        assert set(exc.value.details) == {"dueDayOfMonth", "tMinus", "fixedDays"}


class TestOneTimeRule:

    def test_defaults_to_due_in_days(self):
        rule = parse_rule_payload({"periodicity": "ONE_TIME"})
        assert isinstance(rule, OneTimeRule)
        assert rule.due_in_days == 14
        assert rule.due_day is None

    def test_due_day_variant(self):
        rule = parse_rule_payload({"periodicity": "ONE_TIME", "dueDayOfMonth": 25})
        assert rule.due_day == 25
        assert rule.to_payload()["dueDayOfMonth"] == 25
        assert "dueInDays" not in rule.to_payload()

    def test_both_forms_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_rule_payload({"periodicity": "ONE_TIME", "dueDayOfMonth": 25,
                                "dueInDays": 10})
        assert "dueInDays" in exc.value.details

    def test_negative_due_in_days_rejected(self):
        with pytest.raises(ValidationError):
            parse_rule_payload({"periodicity": "ONE_TIME", "dueInDays": -3})


class TestLoadRule:

    def test_rebuilds_stored_payload(self):
        stored = parse_rule_payload(GST_RULE).to_payload()
        rule = load_rule(stored)
        assert rule == parse_rule_payload(GST_RULE)

    def test_rebuilds_one_time(self):
        stored = parse_rule_payload({"periodicity": "ONE_TIME", "dueInDays": 7}).to_payload()
        rule = load_rule(stored)
        assert isinstance(rule, OneTimeRule)
        assert rule.due_in_days == 7


# ═══════════════════════════════════════════════════════════════════════════
#  Period keys
# ═══════════════════════════════════════════════════════════════════════════

class TestPeriods:

    def test_monthly_key(self):
        period = parse_period_key("2025-02", "MONTHLY")
        assert period.start == date(2025, 2, 1)
        assert period.end == date(2025, 2, 28)

    def test_leap_february(self):
        assert parse_period_key("2024-02", "MONTHLY").end == date(2024, 2, 29)

    def test_quarterly_key(self):
        period = parse_period_key("2025-Q3", "QUARTERLY")
        assert period.start == date(2025, 7, 1)
        assert period.end == date(2025, 9, 30)
        assert period.last_month == (2025, 9)

    def test_annual_key(self):
        period = parse_period_key("2025", Periodicity.ANNUAL)
        assert (period.start, period.end) == (date(2025, 1, 1), date(2025, 12, 31))

    def test_one_time_key(self):
        period = parse_period_key("2025-03-14", "ONE_TIME")
        assert period.start == period.end == date(2025, 3, 14)

    def test_one_time_key_must_be_real_date(self):
        with pytest.raises(ValidationError):
            parse_period_key("2025-02-30", "ONE_TIME")

    @pytest.mark.parametrize("key, periodicity", [
        ("2025-Q1", "MONTHLY"),
        ("2025-02", "QUARTERLY"),
        ("2025-13", "MONTHLY"),
        ("2025-Q5", "QUARTERLY"),
        ("25", "ANNUAL"),
    ])
    def test_shape_mismatch(self, key, periodicity):
        with pytest.raises(ValidationError):
            parse_period_key(key, periodicity)

    @pytest.mark.parametrize("key, expected", [
        ("2025-02", Periodicity.MONTHLY),
        ("2025-Q2", Periodicity.QUARTERLY),
        ("2025", Periodicity.ANNUAL),
        ("2025-02-14", Periodicity.ONE_TIME),
    ])
    def test_infer_periodicity(self, key, expected):
        assert infer_periodicity(key) is expected

    def test_infer_periodicity_rejects_garbage(self):
        with pytest.raises(ValidationError):
            infer_periodicity("February 2025")

    def test_period_for_date(self):
        assert period_for_date("MONTHLY", date(2025, 2, 17)).key == "2025-02"
        assert period_for_date("QUARTERLY", date(2025, 11, 3)).key == "2025-Q4"
        assert period_for_date("ANNUAL", date(2025, 6, 1)).key == "2025"

    def test_clamp_day(self):
        assert clamp_day(2025, 2, 31) == date(2025, 2, 28)
        assert clamp_day(2024, 2, 31) == date(2024, 2, 29)
        assert clamp_day(2025, 4, 15) == date(2025, 4, 15)
