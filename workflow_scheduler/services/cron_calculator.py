"""Next-run computation for every schedule type.

Cron expressions are parsed with APScheduler's CronTrigger. Both the 5-field
(minute hour day month weekday) and the 6-field (second minute hour day month
weekday) forms are accepted. Wall-clock fields are interpreted in the
schedule's timezone and the result is returned as an aware UTC instant.

Day-of-week follows crontab numbering (0 or 7 = Sunday, 1 = Monday). CronTrigger
numbers weekdays from Monday, so numeric weekday fields are translated to
names before they reach it.
"""

from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Dict, List, Mapping, Optional, Union

import pytz
from apscheduler.triggers.cron import CronTrigger

from workflow_scheduler.core.exceptions import InvalidScheduleExpression
from workflow_scheduler.core.logging import get_logger
from workflow_scheduler.models.schedule import ScheduleType, as_utc

logger = get_logger(__name__)

WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")

CRON_DESCRIPTIONS: Dict[str, str] = {
    "0 0 * * *": "Daily at midnight",
    "0 9 * * *": "Daily at 9:00 AM",
    "0 0 * * 0": "Weekly on Sunday at midnight",
    "0 0 1 * *": "Monthly on the 1st at midnight",
    "*/5 * * * *": "Every 5 minutes",
    "*/10 * * * *": "Every 10 minutes",
    "*/15 * * * *": "Every 15 minutes",
    "*/30 * * * *": "Every 30 minutes",
    "0 * * * *": "Every hour",
    "0 */2 * * *": "Every 2 hours",
    "0 */6 * * *": "Every 6 hours",
    "0 */12 * * *": "Every 12 hours",
    "0 9-17 * * 1-5": "Hourly during business hours (9 AM - 5 PM, Mon-Fri)",
    "0 9 * * 1-5": "Daily at 9 AM on weekdays",
    "0 0 * * 1-5": "Daily at midnight on weekdays",
    "0 0 * * 6,0": "Daily at midnight on weekends",
}


def resolve_timezone(name: Optional[str]):
    """Look up a pytz timezone, raising InvalidScheduleExpression for unknown names."""
    try:
        return pytz.timezone(name or "UTC")
    except pytz.UnknownTimeZoneError:
        raise InvalidScheduleExpression(f"Unknown timezone: {name}", timezone=name)


def _weekday_number(token: str, expression: str) -> int:
    if token in WEEKDAY_NAMES:
        return WEEKDAY_NAMES.index(token)
    if token.isdigit() and 0 <= int(token) <= 7:
        return int(token)
    raise InvalidScheduleExpression(
        f"Invalid day-of-week value '{token}' in cron expression: {expression}",
        expression=expression,
    )


def _translate_day_of_week(field: str, expression: str) -> str:
    """Translate a crontab weekday field into CronTrigger weekday names."""
    if field in ("*", "?"):
        return "*"

    days: List[str] = []
    for token in field.lower().split(","):
        span, _, step_str = token.partition("/")
        try:
            step = int(step_str) if step_str else 1
        except ValueError:
            step = 0
        if step < 1:
            raise InvalidScheduleExpression(
                f"Invalid day-of-week step in cron expression: {expression}",
                expression=expression,
            )

        if span == "*":
            start, end = 0, 6
        elif "-" in span:
            first, last = span.split("-", 1)
            start, end = _weekday_number(first, expression), _weekday_number(last, expression)
        else:
            start = _weekday_number(span, expression)
            end = 6 if step_str else start

        if start > end:
            raise InvalidScheduleExpression(
                f"Invalid day-of-week range '{span}' in cron expression: {expression}",
                expression=expression,
            )
        days.extend(WEEKDAY_NAMES[n % 7] for n in range(start, end + 1, step))

    return ",".join(dict.fromkeys(days))


def build_cron_trigger(expression: str, timezone: str = "UTC") -> CronTrigger:
    """Parse a 5- or 6-field cron expression into a CronTrigger.

    Raises:
        InvalidScheduleExpression: on a wrong field count, bad field values or unknown timezone
    """
    if not expression or not isinstance(expression, str):
        raise InvalidScheduleExpression("Cron expression is required", expression=expression)

    tz = resolve_timezone(timezone)
    parts = expression.split()

    if len(parts) == 6:
        second, minute, hour, day, month, weekday = parts
    elif len(parts) == 5:
        second = "0"
        minute, hour, day, month, weekday = parts
    else:
        raise InvalidScheduleExpression(
            f"Cron expression must have 5 or 6 fields, got {len(parts)}: {expression}",
            expression=expression,
        )

    try:
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_translate_day_of_week(weekday, expression),
            timezone=tz,
        )
    except ValueError as e:
        raise InvalidScheduleExpression(
            f"Invalid cron expression '{expression}': {e}",
            expression=expression,
        )


def validate_cron_expression(expression: str, timezone: str = "UTC") -> None:
    """Raise InvalidScheduleExpression if the expression cannot be scheduled."""
    build_cron_trigger(expression, timezone)


def localize(value: Union[datetime, str, None], timezone: str) -> Optional[datetime]:
    """Interpret a naive datetime in ``timezone``; aware values pass through."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = resolve_timezone(timezone).localize(value)
    return value.astimezone(dt_timezone.utc)


def _positive_ms(params: Mapping[str, Any], key: str) -> int:
    value = params.get(key)
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise InvalidScheduleExpression(f"{key} must be a positive integer", **{key: value})
    return value


def compute_next_run(schedule_type: Union[ScheduleType, str], params: Mapping[str, Any],
                     timezone: str, from_time: datetime) -> Optional[datetime]:
    """Compute the next execution instant for a schedule definition.

    Args:
        schedule_type: cron, interval, delay, once or event
        params: Type-specific parameters (cron_expression, interval_ms, delay_ms,
            execute_at, event_name)
        timezone: IANA timezone the schedule's wall-clock fields are expressed in
        from_time: Reference instant

    Returns:
        Aware UTC datetime, or None for event schedules (they have no computed
        next run)

    Raises:
        InvalidScheduleExpression: when the parameters cannot produce a next run
    """
    schedule_type = ScheduleType(schedule_type)
    from_time = as_utc(from_time)

    if schedule_type == ScheduleType.CRON:
        trigger = build_cron_trigger(params.get("cron_expression"), timezone)
        # CronTrigger returns the first fire time >= now; nudge past from_time
        # so the result is strictly after it.
        just_after = from_time + timedelta(microseconds=1)
        next_fire = trigger.get_next_fire_time(None, just_after)
        if next_fire is None:
            raise InvalidScheduleExpression(
                f"Cron expression never fires: {params.get('cron_expression')}",
                expression=params.get("cron_expression"),
            )
        return next_fire.astimezone(dt_timezone.utc)

    if schedule_type == ScheduleType.INTERVAL:
        return from_time + timedelta(milliseconds=_positive_ms(params, "interval_ms"))

    if schedule_type == ScheduleType.DELAY:
        return from_time + timedelta(milliseconds=_positive_ms(params, "delay_ms"))

    if schedule_type == ScheduleType.ONCE:
        execute_at = localize(params.get("execute_at"), timezone)
        if execute_at is None:
            raise InvalidScheduleExpression("execute_at is required for once schedules")
        return execute_at

    # EVENT: fires only on explicit external trigger
    if not params.get("event_name"):
        raise InvalidScheduleExpression("event_name is required for event schedules")
    return None


def upcoming_runs(schedule_type: Union[ScheduleType, str], params: Mapping[str, Any],
                  timezone: str, from_time: datetime, count: int = 5) -> List[datetime]:
    """Next ``count`` instants the schedule would fire at, in order.

    One-shot schedules (once, non-repeating delay) yield at most one instant;
    event schedules yield none.
    """
    schedule_type = ScheduleType(schedule_type)
    runs: List[datetime] = []
    cursor = as_utc(from_time)

    for _ in range(count):
        next_run = compute_next_run(schedule_type, params, timezone, cursor)
        if next_run is None:
            break
        if schedule_type == ScheduleType.ONCE:
            if next_run > as_utc(from_time):
                runs.append(next_run)
            break
        runs.append(next_run)
        if schedule_type == ScheduleType.DELAY and not params.get("repeat"):
            break
        cursor = next_run

    return runs


def describe_cron(expression: str) -> str:
    """Human-readable description for common cron patterns."""
    return CRON_DESCRIPTIONS.get(" ".join(expression.split()), f"Custom schedule: {expression}")


def _check_range(name: str, value: int, low: int, high: int) -> None:
    if not low <= value <= high:
        raise InvalidScheduleExpression(f"{name} must be between {low}-{high}", **{name: value})


class ScheduleBuilder:
    """Helpers that build 5-field cron expressions from friendly parameters."""

    @staticmethod
    def daily_at(hour: int, minute: int = 0) -> str:
        _check_range("hour", hour, 0, 23)
        _check_range("minute", minute, 0, 59)
        return f"{minute} {hour} * * *"

    @staticmethod
    def every_minutes(minutes: int) -> str:
        _check_range("minutes", minutes, 1, 59)
        return f"*/{minutes} * * * *"

    @staticmethod
    def every_hours(hours: int) -> str:
        _check_range("hours", hours, 1, 23)
        return f"0 */{hours} * * *"

    @staticmethod
    def weekly_on(day_of_week: int, hour: int = 0, minute: int = 0) -> str:
        _check_range("day_of_week", day_of_week, 0, 6)
        _check_range("hour", hour, 0, 23)
        _check_range("minute", minute, 0, 59)
        return f"{minute} {hour} * * {day_of_week}"

    @staticmethod
    def monthly_on(day_of_month: int, hour: int = 0, minute: int = 0) -> str:
        _check_range("day_of_month", day_of_month, 1, 31)
        _check_range("hour", hour, 0, 23)
        _check_range("minute", minute, 0, 59)
        return f"{minute} {hour} {day_of_month} * *"

    @staticmethod
    def on_weekdays(hour: int = 9, minute: int = 0) -> str:
        _check_range("hour", hour, 0, 23)
        _check_range("minute", minute, 0, 59)
        return f"{minute} {hour} * * 1-5"

    @staticmethod
    def on_weekends(hour: int = 10, minute: int = 0) -> str:
        _check_range("hour", hour, 0, 23)
        _check_range("minute", minute, 0, 59)
        return f"{minute} {hour} * * 0,6"

    @staticmethod
    def business_hours() -> str:
        return "0 9-17 * * 1-5"
