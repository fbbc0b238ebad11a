from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta, timezone

from app.models import ChecklistType, SubmissionStatus
from app.services.checklist_records import ChecklistTemplate, Submission
from app.services.clock_math import (
    encoded_weekday,
    is_locked,
    is_past_deadline,
    target_date,
    unlock_instant,
)

STORE_TZ = timezone(timedelta(hours=-5))


def _at(year: int, month: int, day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=STORE_TZ)


def _template(name: str, checklist_type: ChecklistType, *, unlock_hour: int = 0, deadline_hour: int = 23):
    return ChecklistTemplate(
        id=f'tpl-{checklist_type.value.lower()}',
        name=name,
        store_id='store-1',
        type=checklist_type,
        unlock_hour=unlock_hour,
        deadline_hour=deadline_hour,
    )


class TargetDateTests(unittest.TestCase):
    def test_before_unlock_hour_belongs_to_previous_day(self) -> None:
        opening = _template('Opening Checklist', ChecklistType.OPENING, unlock_hour=4)
        self.assertEqual(target_date(_at(2025, 3, 5, 2), opening), date(2025, 3, 4))

    def test_at_unlock_hour_belongs_to_today(self) -> None:
        opening = _template('Opening Checklist', ChecklistType.OPENING, unlock_hour=4)
        self.assertEqual(target_date(_at(2025, 3, 5, 4), opening), date(2025, 3, 5))

    def test_weekly_template_anchors_to_named_weekday(self) -> None:
        monday_clean = _template('Monday Deep Clean', ChecklistType.WEEKLY)
        # 2025-03-05 is a Wednesday.
        self.assertEqual(target_date(_at(2025, 3, 5, 9), monday_clean), date(2025, 3, 3))
        self.assertEqual(target_date(_at(2025, 3, 3, 9), monday_clean), date(2025, 3, 3))
        self.assertEqual(target_date(_at(2025, 3, 9, 22), monday_clean), date(2025, 3, 3))

    def test_weekly_template_without_weekday_uses_today(self) -> None:
        weekly = _template('Weekly Restock', ChecklistType.WEEKLY)
        self.assertIsNone(encoded_weekday(weekly))
        self.assertEqual(target_date(_at(2025, 3, 5, 9), weekly), date(2025, 3, 5))

    def test_weekday_is_only_read_for_weekly_templates(self) -> None:
        opening = _template('Monday Opening', ChecklistType.OPENING)
        self.assertEqual(target_date(_at(2025, 3, 5, 9), opening), date(2025, 3, 5))

    def test_is_pure(self) -> None:
        template = _template('Closing Checklist', ChecklistType.CLOSING, unlock_hour=10)
        now = _at(2025, 3, 5, 1, 30)
        self.assertEqual(target_date(now, template), target_date(now, template))


class UnlockInstantTests(unittest.TestCase):
    def _final(self, template: ChecklistTemplate, submitted_at: datetime | None, day: str) -> Submission:
        return Submission(
            id='sub-1',
            template_id=template.id,
            store_id='store-1',
            date=day,
            status=SubmissionStatus.PENDING,
            submitted_at=submitted_at,
        )

    def test_closing_unlocks_at_noon_next_day(self) -> None:
        closing = _template('Closing Checklist', ChecklistType.CLOSING, unlock_hour=10)
        submission = self._final(closing, _at(2025, 3, 5, 23, 10), '2025-03-05')

        self.assertEqual(unlock_instant(submission, closing, STORE_TZ), _at(2025, 3, 6, 12))
        self.assertTrue(is_locked(submission, closing, _at(2025, 3, 6, 8)))
        self.assertFalse(is_locked(submission, closing, _at(2025, 3, 6, 12, 30)))

    def test_daily_unlocks_at_next_midnight(self) -> None:
        opening = _template('Opening Checklist', ChecklistType.OPENING)
        submission = self._final(opening, _at(2025, 3, 5, 6, 45), '2025-03-05')
        self.assertEqual(unlock_instant(submission, opening, STORE_TZ), _at(2025, 3, 6, 0))

    def test_weekly_unlocks_a_week_later(self) -> None:
        monday_clean = _template('Monday Deep Clean', ChecklistType.WEEKLY)
        submission = self._final(monday_clean, _at(2025, 3, 3, 15), '2025-03-03')
        self.assertEqual(unlock_instant(submission, monday_clean, STORE_TZ), _at(2025, 3, 10, 0))
        self.assertTrue(is_locked(submission, monday_clean, _at(2025, 3, 9, 23, 59)))

    def test_missing_submit_time_falls_back_to_logical_date(self) -> None:
        opening = _template('Opening Checklist', ChecklistType.OPENING)
        submission = self._final(opening, None, '2025-03-05')
        self.assertEqual(unlock_instant(submission, opening, STORE_TZ), _at(2025, 3, 6, 0))

    def test_submit_time_is_read_in_store_zone(self) -> None:
        closing = _template('Closing Checklist', ChecklistType.CLOSING)
        # 04:10 UTC on the 6th is 23:10 on the 5th in the store.
        submitted = datetime(2025, 3, 6, 4, 10, tzinfo=timezone.utc)
        submission = self._final(closing, submitted, '2025-03-05')
        self.assertEqual(unlock_instant(submission, closing, STORE_TZ), _at(2025, 3, 6, 12))

    def test_drafts_are_never_locked(self) -> None:
        opening = _template('Opening Checklist', ChecklistType.OPENING)
        draft = Submission(id='sub-2', template_id=opening.id, store_id='store-1', date='2025-03-05')
        self.assertFalse(is_locked(draft, opening, _at(2025, 3, 5, 8)))


class DeadlineTests(unittest.TestCase):
    def test_past_deadline_hour(self) -> None:
        opening = _template('Opening Checklist', ChecklistType.OPENING, deadline_hour=7)
        self.assertFalse(is_past_deadline(_at(2025, 3, 5, 6, 59), opening))
        self.assertTrue(is_past_deadline(_at(2025, 3, 5, 7), opening))

    def test_earlier_logical_day_is_late(self) -> None:
        monday_clean = _template('Monday Deep Clean', ChecklistType.WEEKLY)
        self.assertTrue(is_past_deadline(_at(2025, 3, 5, 9), monday_clean))


if __name__ == '__main__':
    unittest.main()
