"""
Cron evaluation for release triggers.

Everything here is pure: the scheduler supplies the current time and the
last time each trigger fired.  Evaluation happens in UTC at minute
resolution, and a trigger fires at most once per matching minute.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from escrow_kernel.exceptions import InvalidCronExpressionError

# (name, lowest, highest) in cron field order
_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day of month", 1, 31),
    ("month", 1, 12),
    ("day of week", 0, 6),
)

_LOOKAHEAD = timedelta(days=366)


def _all(low: int, high: int):
    return field(default_factory=lambda: frozenset(range(low, high + 1)))


@dataclass(frozen=True)
class CronSpec:
    """Expanded ``minute hour day_of_month month day_of_week`` expression.

    Day of week follows cron numbering, 0 is Sunday.
    """

    minutes: frozenset[int] = _all(0, 59)
    hours: frozenset[int] = _all(0, 23)
    days_of_month: frozenset[int] = _all(1, 31)
    months: frozenset[int] = _all(1, 12)
    days_of_week: frozenset[int] = _all(0, 6)

    def matches_day(self, dt: datetime) -> bool:
        return (
            dt.month in self.months
            and dt.day in self.days_of_month
            and (dt.weekday() + 1) % 7 in self.days_of_week
        )


def _bounded(text: str, name: str, low: int, high: int) -> int:
    value = int(text)
    if not low <= value <= high:
        raise ValueError(f"{name} {value} not in {low}-{high}")
    return value


def _expand_term(term: str, name: str, low: int, high: int) -> range:
    """Expand one comma-separated term: ``*``, ``n``, ``a-b``, each with optional ``/step``."""
    base, _, step_text = term.partition("/")
    step = int(step_text) if step_text else 1
    if step < 1:
        raise ValueError(f"{name} step must be positive, got {step_text}")

    if base == "*":
        first, last = low, high
    elif "-" in base:
        start_text, end_text = base.split("-", 1)
        first = _bounded(start_text, name, low, high)
        last = _bounded(end_text, name, low, high)
        if first > last:
            raise ValueError(f"{name} range {base} is reversed")
    else:
        first = _bounded(base, name, low, high)
        # "5/15" means every 15 from 5 to the end of the field
        last = high if step_text else first

    return range(first, last + 1, step)


def _expand_field(text: str, name: str, low: int, high: int) -> frozenset[int]:
    values: set[int] = set()
    for term in text.split(","):
        term = term.strip()
        if not term:
            raise ValueError(f"empty term in {name} field")
        values.update(_expand_term(term, name, low, high))
    return frozenset(values)


def parse_cron(expression: str) -> CronSpec:
    """Parse a five-field cron expression.

    Raises:
        InvalidCronExpressionError: wrong field count, bad syntax or a value
            outside its field's range.
    """
    parts = expression.split()
    if len(parts) != len(_FIELDS):
        raise InvalidCronExpressionError(
            expression, f"expected {len(_FIELDS)} fields, got {len(parts)}",
        )
    try:
        expanded = [
            _expand_field(text, name, low, high)
            for text, (name, low, high) in zip(parts, _FIELDS)
        ]
    except ValueError as exc:
        raise InvalidCronExpressionError(expression, str(exc)) from exc
    return CronSpec(*expanded)


def matches_cron(spec: CronSpec, dt: datetime) -> bool:
    return dt.minute in spec.minutes and dt.hour in spec.hours and spec.matches_day(dt)


def _to_minute(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc).replace(second=0, microsecond=0)


def should_fire(spec: CronSpec, as_of: datetime, last_fired_at: datetime | None) -> bool:
    """True when ``as_of``'s minute matches and the trigger has not fired in it."""
    minute = _to_minute(as_of)
    if not matches_cron(spec, minute):
        return False
    return last_fired_at is None or _to_minute(last_fired_at) < minute


def next_fire_time(spec: CronSpec, after: datetime) -> datetime:
    """First matching minute strictly after ``after``.

    Raises:
        ValueError: nothing matches within a year (e.g. ``0 0 31 2 *``).
    """
    candidate = _to_minute(after) + timedelta(minutes=1)
    limit = candidate + _LOOKAHEAD

    while candidate < limit:
        if not spec.matches_day(candidate):
            candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
        elif candidate.hour not in spec.hours:
            candidate = candidate.replace(minute=0) + timedelta(hours=1)
        elif candidate.minute not in spec.minutes:
            candidate += timedelta(minutes=1)
        else:
            return candidate

    raise ValueError(f"No cron match found within 366 days after {after}")
