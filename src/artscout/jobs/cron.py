"""Cron expressions for recurring jobs.

Five-field (``minute hour day month weekday``) and six-field
(``second minute hour day month weekday``) expressions and the ``@hourly``
style macros are accepted. Day-of-month and day-of-week restrictions must
both match. Firing times are computed in UTC with croniter.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from croniter import croniter

from artscout.main.exceptions import InvalidCronExpressionError


@dataclass(frozen=True, slots=True)
class CronSchedule:
    expression: str
    # croniter layout: seconds, when present, come last
    normalized: str

    def next_after(self, after: datetime) -> datetime:
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)
        iterator = croniter(self.normalized, after.astimezone(timezone.utc), day_or=False)
        return iterator.get_next(datetime)


def _normalize(expression: str) -> str:
    if expression.startswith("@"):
        return expression.lower()
    fields = expression.split()
    if len(fields) == 6:
        fields = [*fields[1:], fields[0]]
    elif len(fields) != 5:
        raise InvalidCronExpressionError(
            expression, f"expected 5 or 6 fields, got {len(fields)}"
        )
    return " ".join(fields)


def parse_cron(expression: str, now: datetime | None = None) -> CronSchedule:
    """Validate ``expression`` and make sure it fires at least once."""
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidCronExpressionError(str(expression), "expression is empty")

    normalized = _normalize(expression.strip())
    if not croniter.is_valid(normalized):
        raise InvalidCronExpressionError(expression, "not a valid cron expression")

    schedule = CronSchedule(expression=expression, normalized=normalized)
    try:
        schedule.next_after(now or datetime.now(timezone.utc))
    except ValueError as exc:
        # e.g. "0 0 31 2 *" passes the syntax check but never fires
        raise InvalidCronExpressionError(expression, str(exc)) from exc
    return schedule
