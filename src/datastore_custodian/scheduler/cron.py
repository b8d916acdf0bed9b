"""Five-field cron expressions.

CronSchedule parses ``minute hour day-of-month month day-of-week`` with
wildcards, lists, ranges and steps, plus the usual @-macros, and answers
whether a given minute matches. Field matching is delegated to APScheduler's
CronTrigger.

Day-of-week uses standard cron numbering (0 and 7 are Sunday). APScheduler
numbers weekdays from Monday, so the field is rewritten to day names before it
reaches the trigger.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from apscheduler.triggers.cron import CronTrigger

from datastore_custodian.errors import InvalidScheduleError

_MACROS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

# Index is the cron weekday number.
_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def floor_to_minute(moment: datetime) -> datetime:
    """Truncate to the minute, treating naive datetimes as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.replace(second=0, microsecond=0)


def _parse_weekday(token: str, expression: str) -> int:
    token = token.strip().lower()
    if token in _DAY_NAMES:
        return _DAY_NAMES.index(token)
    if token.isdigit() and 0 <= int(token) <= 7:
        return int(token)
    raise InvalidScheduleError(expression, f"bad day-of-week value '{token}'")


def _translate_day_of_week(field: str, expression: str) -> str:
    if field == "*":
        return field

    days: set[int] = set()
    for part in field.split(","):
        body, _, step_text = part.partition("/")
        if step_text and not (step_text.isdigit() and int(step_text) > 0):
            raise InvalidScheduleError(expression, f"bad day-of-week step '{step_text}'")
        step = int(step_text) if step_text else 1

        if body == "*":
            first, last = 0, 6
        elif "-" in body:
            low, high = body.split("-", 1)
            first, last = _parse_weekday(low, expression), _parse_weekday(high, expression)
            if first > last:
                raise InvalidScheduleError(expression, f"descending day-of-week range '{body}'")
        else:
            first = _parse_weekday(body, expression)
            last = 6 if step_text else first

        days.update(day % 7 for day in range(first, last + 1, step))

    return ",".join(_DAY_NAMES[day] for day in sorted(days))


class CronSchedule:
    """A parsed five-field cron expression.

    Args:
        expression: The cron expression or @-macro.
        timezone: IANA timezone name in which fields are matched.

    Raises:
        InvalidScheduleError: If the expression or timezone is invalid.
    """

    def __init__(self, expression: str, timezone: str = "UTC") -> None:
        self.expression = expression.strip()
        self.timezone = timezone

        fields = _MACROS.get(self.expression.lower(), self.expression).split()
        if len(fields) != 5:
            raise InvalidScheduleError(expression, f"expected 5 fields, got {len(fields)}")
        minute, hour, day, month, day_of_week = fields

        try:
            self._trigger = CronTrigger(
                minute=minute,
                hour=hour,
                day=day,
                month=month,
                day_of_week=_translate_day_of_week(day_of_week, expression),
                timezone=timezone,
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise InvalidScheduleError(expression, str(exc)) from exc

    def matches(self, moment: datetime) -> bool:
        """Return True if the minute containing ``moment`` is a firing time."""
        tick = floor_to_minute(moment)
        fire_time = self._trigger.get_next_fire_time(None, tick)
        return fire_time is not None and fire_time == tick

    def next_fire_time(self, after: datetime) -> datetime | None:
        """Return the first firing minute strictly after ``after``."""
        start = floor_to_minute(after) + timedelta(minutes=1)
        return self._trigger.get_next_fire_time(None, start)

    def __repr__(self) -> str:
        return f"CronSchedule({self.expression!r}, timezone={self.timezone!r})"
