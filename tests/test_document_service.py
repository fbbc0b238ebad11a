from __future__ import annotations

import unittest
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models import AuditState, Base, ChecklistType, DocumentKey, SubmissionStatus
from app.services.checklist_records import ChecklistTemplate, Submission, TaskResult
from app.services.document_service import (
    document_version,
    load_submissions,
    load_templates,
    merge_submission,
    replace_submissions,
    replace_templates,
    save_submission,
)


def _submission(sub_id: str, *results: TaskResult, status: SubmissionStatus = SubmissionStatus.DRAFT, **kw):
    values = {
        'id': sub_id,
        'template_id': 'tpl-opening',
        'store_id': 'store-1',
        'date': '2025-03-05',
        'status': status,
        'task_results': tuple(results),
    }
    values.update(kw)
    return Submission(**values)


class MergeSubmissionTests(unittest.TestCase):
    def test_new_submission_is_prepended(self) -> None:
        existing = [_submission('sub-old', date='2025-03-04')]
        merged, stored = merge_submission(existing, _submission('sub-new'))

        self.assertEqual([item.id for item in merged], ['sub-new', 'sub-old'])
        self.assertEqual(stored.id, 'sub-new')

    def test_results_missing_from_write_are_kept(self) -> None:
        existing = [
            _submission(
                'sub-1',
                TaskResult(task_id='o-1', completed=True),
                TaskResult(task_id='o-2', value='9'),
            )
        ]
        merged, stored = merge_submission(existing, _submission('sub-1', TaskResult(task_id='o-1', completed=False)))

        self.assertEqual(len(merged), 1)
        results = stored.results_by_task()
        self.assertFalse(results['o-1'].completed)
        self.assertEqual(results['o-2'].value, '9')

    def test_late_draft_write_leaves_finalized_submission_untouched(self) -> None:
        submitted_at = datetime(2025, 3, 5, 12, tzinfo=timezone.utc)
        flagged = TaskResult(
            task_id='o-5',
            completed=True,
            photo_urls=('p1', 'p2'),
            ai_flagged=True,
            ai_reason='Blurry',
            audit_state=AuditState.FLAGGED,
            audited_photos=2,
        )
        finalized = _submission('sub-1', flagged, status=SubmissionStatus.PENDING, submitted_at=submitted_at)
        existing = [finalized]

        merged, stored = merge_submission(existing, _submission('sub-1', TaskResult(task_id='o-5', completed=False)))

        self.assertIs(merged, existing)
        self.assertEqual(stored, finalized)
        self.assertEqual(stored.result('o-5').audit_state, AuditState.FLAGGED)

    def test_review_write_changes_finalized_submission(self) -> None:
        existing = [_submission('sub-1', TaskResult(task_id='o-1', completed=True), status=SubmissionStatus.PENDING)]

        _merged, stored = merge_submission(
            existing, _submission('sub-1', status=SubmissionStatus.APPROVED, manager_notes='Good')
        )

        self.assertEqual(stored.status, SubmissionStatus.APPROVED)
        self.assertTrue(stored.result('o-1').completed)

    def test_second_draft_for_same_day_folds_into_first(self) -> None:
        existing = [_submission('sub-first', TaskResult(task_id='o-1', completed=True), user_id='u-1')]

        merged, stored = merge_submission(existing, _submission('sub-second', TaskResult(task_id='o-2', completed=True)))

        self.assertEqual([item.id for item in merged], ['sub-first'])
        self.assertEqual(stored.id, 'sub-first')
        self.assertEqual({result.task_id for result in stored.task_results}, {'o-1', 'o-2'})


class DocumentPersistenceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            'sqlite://',
            connect_args={'check_same_thread': False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.db = sessionmaker(bind=self.engine, expire_on_commit=False)()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def test_save_and_load_round_trip_bumps_version(self) -> None:
        save_submission(self.db, store_id='store-1', submission=_submission('sub-1', TaskResult(task_id='o-1')))
        self.db.commit()
        save_submission(
            self.db,
            store_id='store-1',
            submission=_submission('sub-1', TaskResult(task_id='o-1', completed=True)),
        )
        self.db.commit()

        loaded = load_submissions(self.db, store_id='store-1')
        self.assertEqual(len(loaded), 1)
        self.assertTrue(loaded[0].result('o-1').completed)
        self.assertEqual(document_version(self.db, store_id='store-1', doc_key=DocumentKey.SUBMISSIONS), 2)

    def test_dropped_draft_write_does_not_bump_version(self) -> None:
        finalized = _submission(
            'sub-1',
            TaskResult(task_id='o-5', completed=True, photo_urls=('p1', 'p2'), audit_state=AuditState.CLEAR),
            status=SubmissionStatus.PENDING,
        )
        save_submission(self.db, store_id='store-1', submission=finalized)
        self.db.commit()

        stored = save_submission(
            self.db,
            store_id='store-1',
            submission=_submission('sub-1', TaskResult(task_id='o-5', completed=False)),
        )
        self.db.commit()

        self.assertEqual(stored.status, SubmissionStatus.PENDING)
        [loaded] = load_submissions(self.db, store_id='store-1')
        self.assertEqual(loaded.result('o-5').photo_urls, ('p1', 'p2'))
        self.assertEqual(document_version(self.db, store_id='store-1', doc_key=DocumentKey.SUBMISSIONS), 1)

    def test_stores_are_isolated(self) -> None:
        save_submission(self.db, store_id='store-1', submission=_submission('sub-1'))
        self.db.commit()
        self.assertEqual(load_submissions(self.db, store_id='store-2'), [])

    def test_save_rejects_other_store(self) -> None:
        with self.assertRaises(ValueError):
            save_submission(self.db, store_id='store-2', submission=_submission('sub-1'))

    def test_replace_registry_removes_records(self) -> None:
        save_submission(self.db, store_id='store-1', submission=_submission('sub-1'))
        save_submission(self.db, store_id='store-1', submission=_submission('sub-2', date='2025-03-06'))
        self.db.commit()

        replace_submissions(
            self.db,
            store_id='store-1',
            submissions=[_submission('sub-2', date='2025-03-06')],
        )
        self.db.commit()

        self.assertEqual([item.id for item in load_submissions(self.db, store_id='store-1')], ['sub-2'])

    def test_replace_registry_rejects_duplicates(self) -> None:
        with self.assertRaises(ValueError):
            replace_submissions(self.db, store_id='store-1', submissions=[_submission('sub-1'), _submission('sub-1')])

    def test_templates_round_trip(self) -> None:
        template = ChecklistTemplate(
            id='tpl-closing',
            name='Closing Checklist',
            store_id='store-1',
            type=ChecklistType.CLOSING,
            unlock_hour=10,
            deadline_hour=21,
        )
        version = replace_templates(self.db, store_id='store-1', templates=[template])
        self.db.commit()

        self.assertEqual(version, 1)
        self.assertEqual(load_templates(self.db, store_id='store-1'), [template])


if __name__ == '__main__':
    unittest.main()
