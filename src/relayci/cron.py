# cron.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, List, Tuple

from .errors import CronError

MONTH_NAMES = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
DAY_NAMES = {"sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6}

# (name, low, high, aliases)
FIELDS: List[Tuple[str, int, int, dict]] = [
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day-of-month", 1, 31, {}),
    ("month", 1, 12, MONTH_NAMES),
    ("day-of-week", 0, 7, DAY_NAMES),
]


def _value(token: str, low: int, high: int, aliases: dict, field_name: str) -> int:
    token = token.strip().lower()
    if token in aliases:
        return aliases[token]
    if not token.isdigit():
        raise CronError(f"Invalid {field_name} value: {token!r}")
    v = int(token)
    if v < low or v > high:
        raise CronError(f"{field_name} value {v} out of range {low}-{high}")
    return v


def _parse_field(text: str, low: int, high: int, aliases: dict, field_name: str) -> Tuple[FrozenSet[int], bool]:
    """Return (allowed values, is_wildcard)."""
    values = set()
    wildcard = text.strip().startswith("*")
    for part in text.split(","):
        part = part.strip()
        if not part:
            raise CronError(f"Empty entry in {field_name} field: {text!r}")

        step = 1
        if "/" in part:
            part, step_s = part.split("/", 1)
            if not step_s.isdigit() or int(step_s) == 0:
                raise CronError(f"Invalid step in {field_name} field: {text!r}")
            step = int(step_s)

        if part == "*":
            start, end = low, high
        elif "-" in part:
            a, b = part.split("-", 1)
            start = _value(a, low, high, aliases, field_name)
            end = _value(b, low, high, aliases, field_name)
            if start > end:
                raise CronError(f"Inverted range in {field_name} field: {text!r}")
        else:
            start = _value(part, low, high, aliases, field_name)
            end = high if step > 1 else start

        values.update(range(start, end + 1, step))
    return frozenset(values), wildcard


@dataclass(frozen=True)
class CronExpression:
    """A parsed 5-field cron expression (minute hour dom month dow)."""
    expression: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    days_wildcard: bool
    weekdays_wildcard: bool

    @classmethod
    def parse(cls, expression: str) -> "CronExpression":
        parts = str(expression).split()
        if len(parts) != 5:
            raise CronError(f"Cron expression must have 5 fields, got {len(parts)}: {expression!r}")
        parsed = [
            _parse_field(text, low, high, aliases, name)
            for text, (name, low, high, aliases) in zip(parts, FIELDS)
        ]
        # 7 is an alias for Sunday
        weekdays = frozenset(0 if d == 7 else d for d in parsed[4][0])
        return cls(
            expression=" ".join(parts),
            minutes=parsed[0][0],
            hours=parsed[1][0],
            days=parsed[2][0],
            months=parsed[3][0],
            weekdays=weekdays,
            days_wildcard=parsed[2][1],
            weekdays_wildcard=parsed[4][1],
        )

    def matches(self, when: datetime) -> bool:
        if when.minute not in self.minutes or when.hour not in self.hours:
            return False
        if when.month not in self.months:
            return False
        dom_ok = when.day in self.days
        dow_ok = (when.isoweekday() % 7) in self.weekdays
        # classic cron: if both day fields are restricted, either may match
        if not self.days_wildcard and not self.weekdays_wildcard:
            return dom_ok or dow_ok
        return dom_ok and dow_ok
