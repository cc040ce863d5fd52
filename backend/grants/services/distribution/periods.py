"""Week period keys.

A period key is the ISO date of the UTC Monday that opens the week. Every call
site derives and validates keys through this module.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Iterator, Optional

from grants.errors import InvalidPeriod


def week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def period_key_for(moment: Optional[datetime] = None) -> str:
    """Key of the week containing ``moment`` (now when omitted), in UTC."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return week_start(moment.date()).isoformat()


def previous_period_key(moment: Optional[datetime] = None) -> str:
    current = parse_period_key(period_key_for(moment))
    return (current - timedelta(days=7)).isoformat()


def parse_period_key(value) -> date:
    if not value or not isinstance(value, str):
        raise InvalidPeriod(value)
    try:
        day = date.fromisoformat(value)
    except ValueError:
        raise InvalidPeriod(value)
    if len(value) != 10:
        raise InvalidPeriod(value)
    if day.weekday() != 0:
        raise InvalidPeriod(value, 'period keys start on a Monday')
    return day


def period_end(key: str) -> str:
    return (parse_period_key(key) + timedelta(days=7)).isoformat()


def mondays_between(start: str, end: str) -> Iterator[str]:
    """Period keys of every Monday on or after ``start`` and on or before ``end``."""
    try:
        first = date.fromisoformat(start)
        last = date.fromisoformat(end)
    except (TypeError, ValueError):
        raise InvalidPeriod(f'{start}..{end}', 'startDate and endDate must be YYYY-MM-DD')
    current = first + timedelta(days=(7 - first.weekday()) % 7)
    while current <= last:
        yield current.isoformat()
        current += timedelta(days=7)
