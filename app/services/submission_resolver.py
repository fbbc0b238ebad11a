from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime

from app.models import SubmissionStatus
from app.services.checklist_records import ChecklistTemplate, Submission
from app.services.clock_math import as_aware, target_date, unlock_instant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedSubmission:
    submission: Submission | None
    is_locked: bool
    is_read_only: bool
    target_date: date

    @property
    def submission_id(self) -> str | None:
        return self.submission.id if self.submission else None


def find_locked_submission(
    submissions: Iterable[Submission],
    template: ChecklistTemplate,
    now: datetime,
) -> Submission | None:
    now = as_aware(now)
    for submission in submissions:
        if submission.template_id != template.id or not submission.is_final:
            continue
        if now < unlock_instant(submission, template, now.tzinfo):
            return submission
    return None


def find_draft(
    submissions: Iterable[Submission],
    template: ChecklistTemplate,
    logical_date: date,
) -> Submission | None:
    wanted = logical_date.isoformat()
    for submission in submissions:
        if (
            submission.template_id == template.id
            and submission.status == SubmissionStatus.DRAFT
            and submission.date == wanted
            and (not template.store_id or not submission.store_id or submission.store_id == template.store_id)
        ):
            return submission
    return None


def resolve(submissions: Iterable[Submission], template: ChecklistTemplate, now: datetime) -> ResolvedSubmission:
    """Pick the submission a device should show for ``template`` right now.

    A finalized submission still inside its lock window wins over any draft,
    even when its logical date is not today's target date (a closing list
    finalized at 23:00 is still the current record at 01:00). Ties go to the
    first locked submission in the order received.
    """
    candidates = list(submissions)
    logical_date = target_date(now, template)

    locked = find_locked_submission(candidates, template, now)
    if locked is not None:
        return ResolvedSubmission(submission=locked, is_locked=True, is_read_only=True, target_date=logical_date)

    draft = find_draft(candidates, template, logical_date)
    if draft is None:
        logger.debug('No active submission for template=%s date=%s', template.id, logical_date)
    return ResolvedSubmission(submission=draft, is_locked=False, is_read_only=False, target_date=logical_date)
