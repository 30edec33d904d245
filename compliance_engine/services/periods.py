"""
Period keys and calendar arithmetic for obligation scheduling.

Period keys are self-describing:

    MONTHLY    "2025-03"      March 2025
    QUARTERLY  "2025-Q1"      January–March 2025 (calendar quarters)
    ANNUAL     "2025"         calendar year 2025
    ONE_TIME   "2025-03-14"   engagement starting on that date

All functions here are pure.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date

from compliance_engine.core.exceptions import ValidationError
from compliance_engine.services.rule_schema import Periodicity

_KEY_PATTERNS = {
    Periodicity.MONTHLY: re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$"),
    Periodicity.QUARTERLY: re.compile(r"^(\d{4})-Q([1-4])$"),
    Periodicity.ANNUAL: re.compile(r"^(\d{4})$"),
    Periodicity.ONE_TIME: re.compile(r"^(\d{4})-(\d{2})-(\d{2})$"),
}


@dataclass(frozen=True)
class Period:
    key: str
    periodicity: Periodicity
    start: date
    end: date

    @property
    def last_month(self) -> tuple[int, int]:
        return self.end.year, self.end.month


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def clamp_day(year: int, month: int, day: int) -> date:
    """``day`` of the given month, clamped to the month's last day."""
    return date(year, month, min(day, last_day_of_month(year, month)))


def parse_period_key(key: str, periodicity) -> Period:
    """Parse ``key`` for the given periodicity.

    Raises:
        ValidationError: when the key's shape does not match the periodicity.
    """
    periodicity = Periodicity(periodicity)
    match = _KEY_PATTERNS[periodicity].match(str(key or "").strip())
    if not match:
        raise ValidationError(
            f"Period key {key!r} does not match periodicity {periodicity.value}",
            details={"period_key": key, "periodicity": periodicity.value},
        )

    year = int(match.group(1))
    if periodicity is Periodicity.MONTHLY:
        month = int(match.group(2))
        start = date(year, month, 1)
        end = date(year, month, last_day_of_month(year, month))
    elif periodicity is Periodicity.QUARTERLY:
        quarter = int(match.group(2))
        first_month = 3 * (quarter - 1) + 1
        start = date(year, first_month, 1)
        end = date(year, first_month + 2, last_day_of_month(year, first_month + 2))
    elif periodicity is Periodicity.ANNUAL:
        start = date(year, 1, 1)
        end = date(year, 12, 31)
    else:
        try:
            start = date.fromisoformat(match.group(0))
        except ValueError:
            raise ValidationError(
                f"Period key {key!r} is not a valid calendar date",
                details={"period_key": key},
            ) from None
        end = start

    return Period(key=match.group(0), periodicity=periodicity, start=start, end=end)


def infer_periodicity(key: str) -> Periodicity:
    """Periodicity implied by the shape of a period key."""
    key = str(key or "").strip()
    for periodicity, pattern in _KEY_PATTERNS.items():
        if pattern.match(key):
            return periodicity
    raise ValidationError(
        f"Unrecognised period key {key!r}; expected YYYY-MM, YYYY-Qn, YYYY or YYYY-MM-DD",
        details={"period_key": key},
    )


def period_for_date(periodicity, day: date) -> Period:
    """The period of ``periodicity`` that contains ``day``."""
    periodicity = Periodicity(periodicity)
    if periodicity is Periodicity.MONTHLY:
        key = f"{day.year:04d}-{day.month:02d}"
    elif periodicity is Periodicity.QUARTERLY:
        key = f"{day.year:04d}-Q{(day.month - 1) // 3 + 1}"
    elif periodicity is Periodicity.ANNUAL:
        key = f"{day.year:04d}"
    else:
        key = day.isoformat()
    return parse_period_key(key, periodicity)
