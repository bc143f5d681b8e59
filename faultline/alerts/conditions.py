"""Rule condition evaluation and schedule-window matching."""

from __future__ import annotations

import operator
import re
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from faultline.core.types import Alert, AlertCondition, AlertRule, ConditionOperator, RuleSchedule

logger = structlog.get_logger(__name__)

_ORDERING: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.GT: operator.gt,
    ConditionOperator.GTE: operator.ge,
    ConditionOperator.LT: operator.lt,
    ConditionOperator.LTE: operator.le,
}


def resolve_field(obj: Any, path: str) -> Any:
    """Follow a dotted *path* through attributes and mapping keys.

    Returns None as soon as a segment is missing.
    """
    current = obj
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
    return current


def evaluate_condition(alert: Alert, condition: AlertCondition) -> bool:
    """Apply one condition. Incomparable or missing values evaluate False."""
    value = resolve_field(alert, condition.field)
    expected = condition.value
    op = condition.operator

    if op == ConditionOperator.EQ:
        return value == expected
    if op == ConditionOperator.NE:
        return value != expected

    if value is None:
        return False

    if op in _ORDERING:
        try:
            return bool(_ORDERING[op](value, expected))
        except TypeError:
            return False

    if op == ConditionOperator.CONTAINS:
        if isinstance(value, (list, tuple, set, frozenset)):
            return expected in value
        return str(expected) in str(value)

    if op == ConditionOperator.MATCHES:
        try:
            return re.search(str(expected), str(value)) is not None
        except re.error:
            logger.warning("invalid_condition_pattern", field=condition.field, pattern=expected)
            return False

    return False


def matches_conditions(alert: Alert, rule: AlertRule) -> bool:
    """All of the rule's conditions must hold (logical AND)."""
    return all(evaluate_condition(alert, c) for c in rule.conditions)


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":", 1)
    return int(hours) * 60 + int(minutes)


def within_schedule(schedule: RuleSchedule | None, now: float) -> bool:
    """True when *now* falls inside the schedule window.

    Days are 0=Sunday .. 6=Saturday. Times are inclusive ``HH:MM`` in the
    schedule's timezone; a start later than the end wraps past midnight.
    """
    if schedule is None:
        return True
    try:
        tz = ZoneInfo(schedule.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_schedule_timezone", timezone=schedule.timezone)
        tz = ZoneInfo("UTC")

    local = datetime.fromtimestamp(now, tz=tz)
    if (local.weekday() + 1) % 7 not in schedule.days:
        return False

    current = local.hour * 60 + local.minute
    start = _minutes(schedule.start_time)
    end = _minutes(schedule.end_time)
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def rule_applies(rule: AlertRule, alert: Alert, now: float) -> bool:
    """Enabled, in schedule, and every condition matches."""
    return rule.enabled and within_schedule(rule.schedule, now) and matches_conditions(alert, rule)
