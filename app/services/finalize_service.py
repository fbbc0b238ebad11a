from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from app.auth import Role, require_manager
from app.models import AuditState, SubmissionStatus
from app.services.checklist_records import ChecklistTemplate, Submission, TaskDefinition, TaskResult
from app.services.content_audit import AuditVerdict, ContentAuditor
from app.services.document_store import RemoteStore
from app.services.errors import (
    ContentAuditError,
    FinalizeBlockedError,
    FinalizeConfirmationRequired,
    InvalidTransitionError,
)

logger = logging.getLogger(__name__)

AUDIT_UNAVAILABLE_REASON = 'Content audit unavailable'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class FinalizeCheck:
    missing_photos: tuple[TaskDefinition, ...]
    incomplete: tuple[TaskDefinition, ...]

    @property
    def blocked(self) -> bool:
        return bool(self.missing_photos)

    @property
    def needs_confirmation(self) -> bool:
        return bool(self.incomplete)


class FinalizeCoordinator:
    def __init__(
        self,
        store: RemoteStore,
        auditor: ContentAuditor,
        *,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.store = store
        self.auditor = auditor
        self.clock = clock

    def check(self, template: ChecklistTemplate, results: Mapping[str, TaskResult]) -> FinalizeCheck:
        missing: list[TaskDefinition] = []
        incomplete: list[TaskDefinition] = []
        for task in template.tasks:
            result = results.get(task.id)
            photo_count = result.photo_count if result else 0
            if task.required_photos and photo_count < task.required_photos:
                missing.append(task)
            elif result is None or not result.completed or (task.requires_value and not (result.value or '').strip()):
                incomplete.append(task)
        return FinalizeCheck(missing_photos=tuple(missing), incomplete=tuple(incomplete))

    async def _verdict(self, image: str, task_label: str) -> AuditVerdict:
        try:
            return await asyncio.to_thread(self.auditor.audit, image, task_label)
        except ContentAuditError as exc:
            logger.warning('Content audit failed for task "%s", treating as clear: %s', task_label, exc)
            return AuditVerdict(flagged=False, reason=f'{AUDIT_UNAVAILABLE_REASON}: {exc}')
        except Exception as exc:
            logger.exception('Content auditor raised for task "%s", treating as clear', task_label)
            return AuditVerdict(flagged=False, reason=f'{AUDIT_UNAVAILABLE_REASON}: {exc}')

    async def _audit_result(self, task_label: str, result: TaskResult) -> TaskResult:
        pending = result
        if result.audit_state != AuditState.AUDIT_PENDING:
            pending = result.with_audit_state(AuditState.AUDIT_PENDING)
        new_photos = pending.photo_urls[pending.audited_photos :]
        verdicts = await asyncio.gather(*(self._verdict(photo, task_label) for photo in new_photos))

        flagged = next((verdict for verdict in verdicts if verdict.flagged), None)
        if flagged is not None:
            return pending.with_audit_state(
                AuditState.FLAGGED,
                ai_flagged=True,
                ai_reason=flagged.reason or 'Photo flagged by content audit',
                audited_photos=pending.photo_count,
            )
        notes = [verdict.reason for verdict in verdicts if verdict.reason]
        return pending.with_audit_state(
            AuditState.CLEAR,
            ai_flagged=False,
            ai_reason=notes[0] if notes else None,
            audited_photos=pending.photo_count,
        )

    def _needs_audit(self, result: TaskResult) -> bool:
        return result.has_unaudited_photos and result.audit_state != AuditState.FLAGGED

    async def audit_results(self, template: ChecklistTemplate, results: list[TaskResult]) -> list[TaskResult]:
        """Audit every result holding photos that were added since its last audit, concurrently."""
        jobs: dict[int, asyncio.Future] = {}
        for index, result in enumerate(results):
            if not self._needs_audit(result):
                continue
            task = template.task(result.task_id)
            label = task.title if task else result.task_id
            jobs[index] = asyncio.ensure_future(self._audit_result(label, result))

        if jobs:
            await asyncio.gather(*jobs.values())
        audited = list(results)
        for index, job in jobs.items():
            audited[index] = job.result()
        return audited

    async def prepare(
        self,
        submission: Submission,
        template: ChecklistTemplate,
        *,
        confirm_incomplete: bool = False,
    ) -> Submission:
        """Validate, audit and mark PENDING without writing anything."""
        if submission.status != SubmissionStatus.DRAFT:
            raise InvalidTransitionError(f'Submission {submission.id} is already {submission.status.value}')

        check = self.check(template, submission.results_by_task())
        if check.blocked:
            raise FinalizeBlockedError(
                f'Verification missing! {len(check.missing_photos)} task(s) still need photo proof.',
                task_ids=[task.id for task in check.missing_photos],
            )
        if check.needs_confirmation and not confirm_incomplete:
            raise FinalizeConfirmationRequired(
                f'{len(check.incomplete)} task(s) are incomplete. Submit anyway?',
                task_ids=[task.id for task in check.incomplete],
            )

        audited = await self.audit_results(template, list(submission.task_results))
        finalized = submission.with_status(
            SubmissionStatus.PENDING,
            submitted_at=self.clock(),
            task_results=tuple(audited),
        )
        flagged = sum(1 for result in audited if result.audit_state == AuditState.FLAGGED)
        logger.info(
            'Finalized submission=%s template=%s flagged=%s',
            finalized.id,
            template.id,
            flagged,
            extra={'store_id': finalized.store_id, 'template_id': template.id, 'submission_id': finalized.id},
        )
        return finalized

    async def finalize(
        self,
        submission: Submission,
        template: ChecklistTemplate,
        *,
        confirm_incomplete: bool = False,
    ) -> Submission:
        finalized = await self.prepare(submission, template, confirm_incomplete=confirm_incomplete)
        await self.store.put_submission(finalized)
        return finalized

    def override_flag(self, submission: Submission, task_id: str, *, manager_id: str, role: Role) -> Submission:
        require_manager(role)
        result = submission.result(task_id)
        if result is None:
            raise ValueError(f'Task {task_id} has no result on submission {submission.id}')
        overridden = result.with_audit_state(
            AuditState.OVERRIDDEN,
            manager_override=True,
            override_by=manager_id,
            override_at=self.clock(),
        )
        logger.info(
            'Manager %s overrode audit flag on submission=%s task=%s',
            manager_id,
            submission.id,
            task_id,
            extra={'store_id': submission.store_id, 'submission_id': submission.id, 'task_id': task_id},
        )
        return self._replace_result(submission, overridden)

    def comment_on_photo(
        self,
        submission: Submission,
        task_id: str,
        comment: str,
        *,
        manager_id: str,
        role: Role,
    ) -> Submission:
        require_manager(role)
        result = submission.result(task_id)
        if result is None:
            raise ValueError(f'Task {task_id} has no result on submission {submission.id}')
        clean = comment.strip()
        updated = replace(
            result,
            manager_photo_comment=clean or None,
            manager_photo_comment_by=manager_id if clean else None,
            manager_photo_comment_at=self.clock() if clean else None,
        )
        return self._replace_result(submission, updated)

    def review(
        self,
        submission: Submission,
        *,
        approved: bool,
        role: Role,
        notes: str | None = None,
    ) -> Submission:
        require_manager(role)
        target = SubmissionStatus.APPROVED if approved else SubmissionStatus.REJECTED
        clean_notes = notes.strip() if notes and notes.strip() else submission.manager_notes
        if submission.status == target:
            return replace(submission, manager_notes=clean_notes)
        return submission.with_status(target, manager_notes=clean_notes)

    def _replace_result(self, submission: Submission, updated: TaskResult) -> Submission:
        return replace(
            submission,
            task_results=tuple(updated if item.task_id == updated.task_id else item for item in submission.task_results),
        )
