"""
Due-date rule payloads as tagged variants.

Payloads arrive as loosely-typed JSON:

    {"periodicity": "MONTHLY", "dueDayOfMonth": 20,
     "nudges": {"tMinus": [7, 3, 1], "fixedDays": [1, 2]}}

``parse_rule_payload`` validates them once, at ingestion, and returns one of
``MonthlyRule``, ``QuarterlyRule``, ``AnnualRule`` or ``OneTimeRule``.
Evaluation code only ever sees these variants (``load_rule`` rebuilds them
from the normalized JSON stored on ``DueDateRule.rule_json``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Union

from compliance_engine.core.exceptions import ValidationError

MIN_DUE_DAY = 1
MAX_DUE_DAY = 28
MAX_FIXED_DAY = 31
DEFAULT_ONE_TIME_DUE_IN_DAYS = 14


class Periodicity(str, Enum):
    ONE_TIME = "ONE_TIME"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUAL = "ANNUAL"


@dataclass(frozen=True)
class Nudges:
    """Reminder offsets: days before the due date, and fixed calendar days."""

    t_minus: tuple[int, ...] = ()
    fixed_days: tuple[int, ...] = ()

    def to_payload(self) -> dict:
        return {"tMinus": list(self.t_minus), "fixedDays": list(self.fixed_days)}


@dataclass(frozen=True)
class MonthlyRule:
    periodicity: ClassVar[Periodicity] = Periodicity.MONTHLY
    due_day: int
    nudges: Nudges = field(default_factory=Nudges)

    def to_payload(self) -> dict:
        return {"periodicity": self.periodicity.value, "dueDayOfMonth": self.due_day,
                "nudges": self.nudges.to_payload()}


@dataclass(frozen=True)
class QuarterlyRule:
    """Due on ``due_day`` of the last month of the quarter."""

    periodicity: ClassVar[Periodicity] = Periodicity.QUARTERLY
    due_day: int
    nudges: Nudges = field(default_factory=Nudges)

    def to_payload(self) -> dict:
        return {"periodicity": self.periodicity.value, "dueDayOfMonth": self.due_day,
                "nudges": self.nudges.to_payload()}


@dataclass(frozen=True)
class AnnualRule:
    """Due on ``due_day`` of the last month of the year."""

    periodicity: ClassVar[Periodicity] = Periodicity.ANNUAL
    due_day: int
    nudges: Nudges = field(default_factory=Nudges)

    def to_payload(self) -> dict:
        return {"periodicity": self.periodicity.value, "dueDayOfMonth": self.due_day,
                "nudges": self.nudges.to_payload()}


@dataclass(frozen=True)
class OneTimeRule:
    """Due ``due_in_days`` after the engagement start, or on ``due_day`` of the start month."""

    periodicity: ClassVar[Periodicity] = Periodicity.ONE_TIME
    due_day: int | None = None
    due_in_days: int | None = None
    nudges: Nudges = field(default_factory=Nudges)

    def to_payload(self) -> dict:
        payload = {"periodicity": self.periodicity.value, "nudges": self.nudges.to_payload()}
        if self.due_day is not None:
            payload["dueDayOfMonth"] = self.due_day
        else:
            payload["dueInDays"] = self.due_in_days
        return payload


RuleVariant = Union[MonthlyRule, QuarterlyRule, AnnualRule, OneTimeRule]

_VARIANTS = {
    Periodicity.MONTHLY: MonthlyRule,
    Periodicity.QUARTERLY: QuarterlyRule,
    Periodicity.ANNUAL: AnnualRule,
}


# ── Validation helpers ───────────────────────────────────────────────────────

def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _parse_periodicity(raw, errors: dict) -> Periodicity | None:
    if raw is None:
        errors["periodicity"] = "periodicity is required"
        return None
    try:
        return Periodicity(str(raw).upper())
    except ValueError:
        errors["periodicity"] = (
            f"periodicity must be one of {', '.join(p.value for p in Periodicity)}"
        )
        return None


def _parse_due_day(raw, errors: dict) -> int | None:
    if not _is_int(raw):
        errors["dueDayOfMonth"] = "dueDayOfMonth must be an integer"
        return None
    if not MIN_DUE_DAY <= raw <= MAX_DUE_DAY:
        errors["dueDayOfMonth"] = (
            f"dueDayOfMonth must be between {MIN_DUE_DAY} and {MAX_DUE_DAY}"
        )
        return None
    return raw


def _parse_offsets(raw, key: str, errors: dict, *, lower: int, upper: int | None = None):
    if raw is None:
        return ()
    if not isinstance(raw, (list, tuple)):
        errors[key] = f"{key} must be a list of integers"
        return ()
    values = []
    for value in raw:
        if not _is_int(value):
            errors[key] = f"{key} must contain integers only"
            return ()
        if value < lower:
            errors[key] = (
                "nudge offsets must not be negative" if lower == 0
                else f"{key} values must be between {lower} and {upper}"
            )
            return ()
        if upper is not None and value > upper:
            errors[key] = f"{key} values must be between {lower} and {upper}"
            return ()
        if value not in values:
            values.append(value)
    return tuple(values)


def _parse_nudges(raw, errors: dict) -> Nudges:
    if raw is None:
        return Nudges()
    if not isinstance(raw, dict):
        errors["nudges"] = "nudges must be an object with tMinus and fixedDays"
        return Nudges()
    return Nudges(
        t_minus=_parse_offsets(raw.get("tMinus"), "tMinus", errors, lower=0),
        fixed_days=_parse_offsets(raw.get("fixedDays"), "fixedDays", errors,
                                  lower=1, upper=MAX_FIXED_DAY),
    )


# ── Public API ───────────────────────────────────────────────────────────────

def parse_rule_payload(payload, default_periodicity: str | None = None) -> RuleVariant:
    """Validate a raw rule payload and return its tagged variant.

    Args:
        payload: JSON object as received from the API or seed data.
        default_periodicity: Used when the payload omits ``periodicity``
            (typically the service's declared periodicity).

    Returns:
        One of MonthlyRule, QuarterlyRule, AnnualRule, OneTimeRule.

    Raises:
        ValidationError: with a field → message map in ``details``.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Rule payload must be a JSON object")

    errors: dict[str, str] = {}
    periodicity = _parse_periodicity(payload.get("periodicity") or default_periodicity, errors)
    nudges = _parse_nudges(payload.get("nudges"), errors)

    rule = None
    if periodicity is Periodicity.ONE_TIME:
        due_day = payload.get("dueDayOfMonth")
        due_in_days = payload.get("dueInDays")
        if due_day is not None and due_in_days is not None:
            errors["dueInDays"] = "give either dueDayOfMonth or dueInDays, not both"
        elif due_day is not None:
            due_day = _parse_due_day(due_day, errors)
            rule = OneTimeRule(due_day=due_day, nudges=nudges)
        else:
            if due_in_days is None:
                due_in_days = DEFAULT_ONE_TIME_DUE_IN_DAYS
            if not _is_int(due_in_days) or due_in_days < 0:
                errors["dueInDays"] = "dueInDays must be a non-negative integer"
            else:
                rule = OneTimeRule(due_in_days=due_in_days, nudges=nudges)
    elif periodicity is not None:
        due_day = _parse_due_day(payload.get("dueDayOfMonth"), errors)
        rule = _VARIANTS[periodicity](due_day=due_day, nudges=nudges)

    if errors:
        raise ValidationError("Invalid due-date rule", details=errors)
    return rule


def load_rule(rule_json: dict) -> RuleVariant:
    """Rebuild a variant from normalized, already-validated stored JSON."""
    periodicity = Periodicity(rule_json["periodicity"])
    raw_nudges = rule_json.get("nudges") or {}
    nudges = Nudges(
        t_minus=tuple(raw_nudges.get("tMinus") or ()),
        fixed_days=tuple(raw_nudges.get("fixedDays") or ()),
    )
    if periodicity is Periodicity.ONE_TIME:
        return OneTimeRule(
            due_day=rule_json.get("dueDayOfMonth"),
            due_in_days=rule_json.get("dueInDays"),
            nudges=nudges,
        )
    return _VARIANTS[periodicity](due_day=rule_json["dueDayOfMonth"], nudges=nudges)
