"""Wall-clock arithmetic for checklist periods.

Everything here works on *local* calendar time, because staff perceive "today"
in the store's zone and not in UTC. Callers pass a local ``now`` (see
``local_now``); aware datetimes are interpreted in their own zone.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo

from app.models import ChecklistType
from app.services.checklist_records import ChecklistTemplate, Submission

WEEKDAY_NAMES = ('Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday')
_WEEKDAY_PATTERN = re.compile(r'\b(' + '|'.join(WEEKDAY_NAMES) + r')\b', re.IGNORECASE)

CLOSING_UNLOCK_HOUR = 12


def store_zone(name: str | None) -> tzinfo | None:
    return ZoneInfo(name) if name else None


def local_now(tz: tzinfo | None = None) -> datetime:
    if tz is None:
        return datetime.now().astimezone()
    return datetime.now(tz=tz)


def _local_zone(tz: tzinfo | None) -> tzinfo:
    if tz is not None:
        return tz
    return datetime.now().astimezone().tzinfo


def encoded_weekday(template: ChecklistTemplate) -> int | None:
    """Weekday (Monday=0) named in the template title, e.g. "Monday Deep Clean"."""
    match = _WEEKDAY_PATTERN.search(template.name)
    if not match:
        return None
    return WEEKDAY_NAMES.index(match.group(1).capitalize())


def target_date(now: datetime, template: ChecklistTemplate) -> date:
    today = now.date()
    if now.hour < template.unlock_hour:
        return today - timedelta(days=1)

    weekday = encoded_weekday(template) if template.type == ChecklistType.WEEKLY else None
    if weekday is not None:
        return today - timedelta(days=(today.weekday() - weekday) % 7)
    return today


def unlock_instant(submission: Submission, template: ChecklistTemplate, tz: tzinfo | None = None) -> datetime:
    zone = _local_zone(tz)
    if submission.submitted_at is not None:
        base = submission.submitted_at.astimezone(zone)
    else:
        base = datetime.combine(submission.logical_date, time.max, tzinfo=zone)

    if template.type == ChecklistType.WEEKLY and encoded_weekday(template) is not None:
        return datetime.combine(base.date() + timedelta(days=7), time.min, tzinfo=base.tzinfo)
    if template.type == ChecklistType.CLOSING:
        return datetime.combine(base.date() + timedelta(days=1), time(CLOSING_UNLOCK_HOUR), tzinfo=base.tzinfo)
    return datetime.combine(base.date() + timedelta(days=1), time.min, tzinfo=base.tzinfo)


def as_aware(now: datetime) -> datetime:
    return now if now.tzinfo is not None else now.astimezone()


def is_locked(submission: Submission, template: ChecklistTemplate, now: datetime) -> bool:
    if not submission.is_final:
        return False
    now = as_aware(now)
    return now < unlock_instant(submission, template, now.tzinfo)


def is_past_deadline(now: datetime, template: ChecklistTemplate) -> bool:
    target = target_date(now, template)
    today = now.date()
    if target < today:
        return True
    return target == today and now.hour >= template.deadline_hour
