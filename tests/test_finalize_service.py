from __future__ import annotations

import unittest
from datetime import datetime, timezone
from http.client import IncompleteRead
from unittest.mock import AsyncMock, MagicMock, patch

from app.auth import Role
from app.models import AuditState, ChecklistType, SubmissionStatus
from app.services.checklist_records import ChecklistTemplate, Submission, TaskDefinition, TaskResult
from app.services.content_audit import AuditVerdict, HttpContentAuditor
from app.services.errors import (
    ContentAuditError,
    FinalizeBlockedError,
    FinalizeConfirmationRequired,
    InvalidTransitionError,
)
from app.services.finalize_service import AUDIT_UNAVAILABLE_REASON, FinalizeCoordinator

FIXED_NOW = datetime(2025, 3, 5, 12, 0, tzinfo=timezone.utc)

TEMPLATE = ChecklistTemplate(
    id='tpl-opening',
    name='Opening Checklist',
    store_id='store-1',
    type=ChecklistType.OPENING,
    tasks=(
        TaskDefinition(id='o-1', title='Unlock doors'),
        TaskDefinition(id='o-2', title='Dial in espresso', value_prompt='Grind Setting'),
        TaskDefinition(id='o-5', title='Pastry case', required_photos=2),
    ),
)


def _draft(*results: TaskResult) -> Submission:
    return Submission(
        id='sub-1',
        template_id=TEMPLATE.id,
        store_id='store-1',
        date='2025-03-05',
        user_id='u-1',
        task_results=tuple(results),
    )


def _complete_results(photos: tuple[str, ...] = ('p1', 'p2')) -> tuple[TaskResult, ...]:
    return (
        TaskResult(task_id='o-1', completed=True),
        TaskResult(task_id='o-2', completed=True, value='14'),
        TaskResult(task_id='o-5', completed=True, photo_urls=photos),
    )


class FinalizeCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = MagicMock()
        self.store.put_submission = AsyncMock()
        self.auditor = MagicMock()
        self.auditor.audit.return_value = AuditVerdict(flagged=False)
        self.coordinator = FinalizeCoordinator(self.store, self.auditor, clock=lambda: FIXED_NOW)

    async def test_missing_photos_block_without_writing(self) -> None:
        draft = _draft(
            TaskResult(task_id='o-1', completed=True),
            TaskResult(task_id='o-2', completed=True, value='14'),
            TaskResult(task_id='o-5', photo_urls=('p1',)),
        )

        with self.assertRaises(FinalizeBlockedError) as ctx:
            await self.coordinator.finalize(draft, TEMPLATE, confirm_incomplete=True)

        self.assertEqual(ctx.exception.task_ids, ['o-5'])
        self.assertIn('Verification missing', str(ctx.exception))
        self.store.put_submission.assert_not_awaited()
        self.auditor.audit.assert_not_called()

    async def test_incomplete_tasks_need_confirmation(self) -> None:
        draft = _draft(
            TaskResult(task_id='o-2', completed=True),
            TaskResult(task_id='o-5', completed=True, photo_urls=('p1', 'p2')),
        )

        with self.assertRaises(FinalizeConfirmationRequired) as ctx:
            await self.coordinator.finalize(draft, TEMPLATE)
        self.assertEqual(ctx.exception.task_ids, ['o-1', 'o-2'])
        self.store.put_submission.assert_not_awaited()

        finalized = await self.coordinator.finalize(draft, TEMPLATE, confirm_incomplete=True)
        self.assertEqual(finalized.status, SubmissionStatus.PENDING)

    async def test_finalize_audits_and_writes_pending(self) -> None:
        finalized = await self.coordinator.finalize(_draft(*_complete_results()), TEMPLATE)

        self.assertEqual(finalized.status, SubmissionStatus.PENDING)
        self.assertEqual(finalized.submitted_at, FIXED_NOW)
        self.store.put_submission.assert_awaited_once_with(finalized)
        self.assertEqual(self.auditor.audit.call_count, 2)

        photo_result = finalized.result('o-5')
        self.assertIs(photo_result.ai_flagged, False)
        self.assertEqual(photo_result.audit_state, AuditState.CLEAR)
        self.assertEqual(photo_result.audited_photos, 2)
        # Results without photos stay unaudited.
        self.assertIsNone(finalized.result('o-1').ai_flagged)

    async def test_flagged_photo_marks_result(self) -> None:
        self.auditor.audit.side_effect = [
            AuditVerdict(flagged=False),
            AuditVerdict(flagged=True, reason='Photo shows an empty counter'),
        ]

        finalized = await self.coordinator.finalize(_draft(*_complete_results()), TEMPLATE)

        photo_result = finalized.result('o-5')
        self.assertTrue(photo_result.ai_flagged)
        self.assertEqual(photo_result.audit_state, AuditState.FLAGGED)
        self.assertEqual(photo_result.ai_reason, 'Photo shows an empty counter')

    async def test_auditor_failure_counts_as_not_flagged(self) -> None:
        self.auditor.audit.side_effect = ContentAuditError('timeout')

        with self.assertLogs('app.services.finalize_service', level='WARNING'):
            finalized = await self.coordinator.finalize(_draft(*_complete_results()), TEMPLATE)

        photo_result = finalized.result('o-5')
        self.assertIs(photo_result.ai_flagged, False)
        self.assertEqual(photo_result.audit_state, AuditState.CLEAR)
        self.assertTrue(photo_result.ai_reason.startswith(AUDIT_UNAVAILABLE_REASON))

    async def test_unexpected_auditor_error_does_not_block_finalize(self) -> None:
        self.auditor.audit.side_effect = RuntimeError('model crashed')

        with self.assertLogs('app.services.finalize_service', level='ERROR'):
            finalized = await self.coordinator.finalize(_draft(*_complete_results()), TEMPLATE)

        self.assertEqual(finalized.status, SubmissionStatus.PENDING)
        photo_result = finalized.result('o-5')
        self.assertIs(photo_result.ai_flagged, False)
        self.assertEqual(photo_result.ai_reason, f'{AUDIT_UNAVAILABLE_REASON}: model crashed')
        self.store.put_submission.assert_awaited_once_with(finalized)

    @patch('app.services.content_audit.urlopen')
    async def test_truncated_auditor_response_does_not_block_finalize(self, urlopen_mock) -> None:
        response = MagicMock()
        response.read.side_effect = IncompleteRead(b'{"flagged"')
        response.__enter__.return_value = response
        urlopen_mock.return_value = response
        coordinator = FinalizeCoordinator(
            self.store,
            HttpContentAuditor('https://audit.example.com/check', timeout_seconds=5),
            clock=lambda: FIXED_NOW,
        )

        with self.assertLogs('app.services.finalize_service', level='WARNING'):
            finalized = await coordinator.finalize(_draft(*_complete_results()), TEMPLATE)

        photo_result = finalized.result('o-5')
        self.assertEqual(photo_result.audit_state, AuditState.CLEAR)
        self.assertTrue(photo_result.ai_reason.startswith(AUDIT_UNAVAILABLE_REASON))

    async def test_finalized_submission_cannot_be_finalized_again(self) -> None:
        finalized = await self.coordinator.finalize(_draft(*_complete_results()), TEMPLATE)
        with self.assertRaises(InvalidTransitionError):
            await self.coordinator.prepare(finalized, TEMPLATE)

    async def test_manager_override_keeps_reason(self) -> None:
        self.auditor.audit.return_value = AuditVerdict(flagged=True, reason='Blurry')
        finalized = await self.coordinator.finalize(_draft(*_complete_results()), TEMPLATE)

        with self.assertRaises(PermissionError):
            self.coordinator.override_flag(finalized, 'o-5', manager_id='u-1', role=Role.TRAINEE)

        overridden = self.coordinator.override_flag(finalized, 'o-5', manager_id='m-1', role=Role.MANAGER)
        result = overridden.result('o-5')
        self.assertEqual(result.audit_state, AuditState.OVERRIDDEN)
        self.assertTrue(result.manager_override)
        self.assertEqual(result.override_by, 'm-1')
        self.assertEqual(result.override_at, FIXED_NOW)
        self.assertEqual(result.ai_reason, 'Blurry')

    async def test_override_requires_flag(self) -> None:
        finalized = await self.coordinator.finalize(_draft(*_complete_results()), TEMPLATE)
        with self.assertRaises(InvalidTransitionError):
            self.coordinator.override_flag(finalized, 'o-5', manager_id='m-1', role=Role.MANAGER)

    async def test_manager_photo_comment(self) -> None:
        finalized = await self.coordinator.finalize(_draft(*_complete_results()), TEMPLATE)

        commented = self.coordinator.comment_on_photo(finalized, 'o-5', ' Too dark ', manager_id='m-1', role=Role.MANAGER)
        result = commented.result('o-5')
        self.assertEqual(result.manager_photo_comment, 'Too dark')
        self.assertEqual(result.manager_photo_comment_by, 'm-1')

        cleared = self.coordinator.comment_on_photo(commented, 'o-5', '   ', manager_id='m-1', role=Role.MANAGER)
        self.assertIsNone(cleared.result('o-5').manager_photo_comment)

    async def test_review_moves_between_final_states(self) -> None:
        finalized = await self.coordinator.finalize(_draft(*_complete_results()), TEMPLATE)

        approved = self.coordinator.review(finalized, approved=True, role=Role.MANAGER, notes=' Looks great ')
        self.assertEqual(approved.status, SubmissionStatus.APPROVED)
        self.assertEqual(approved.manager_notes, 'Looks great')

        rejected = self.coordinator.review(approved, approved=False, role=Role.ADMIN)
        self.assertEqual(rejected.status, SubmissionStatus.REJECTED)
        self.assertEqual(rejected.manager_notes, 'Looks great')

        with self.assertRaises(InvalidTransitionError):
            self.coordinator.review(_draft(), approved=True, role=Role.MANAGER)


if __name__ == '__main__':
    unittest.main()
