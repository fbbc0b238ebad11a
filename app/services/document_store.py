from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.models import DocumentKey
from app.services import document_service
from app.services.checklist_records import ChecklistTemplate, Submission
from app.services.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, DocumentKey], None]


class RemoteStore(Protocol):
    async def fetch_submissions(self, store_id: str) -> list[Submission]: ...

    async def put_submission(self, submission: Submission) -> None: ...

    async def put_full_submissions_registry(self, store_id: str, submissions: list[Submission]) -> None: ...

    async def fetch_templates(self, store_id: str) -> list[ChecklistTemplate]: ...

    async def put_templates(self, store_id: str, templates: list[ChecklistTemplate]) -> None: ...


class ChangeFeed:
    """Same-process change notifications, the stand-in for cross-tab storage events."""

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, store_id: str, doc_key: DocumentKey) -> None:
        for listener in list(self._listeners):
            try:
                listener(store_id, doc_key)
            except Exception:
                logger.exception('Change listener failed for store=%s key=%s', store_id, doc_key.value)


class MemoryRemoteStore:
    def __init__(self, changes: ChangeFeed | None = None) -> None:
        self.changes = changes or ChangeFeed()
        self._submissions: dict[str, list[dict]] = {}
        self._templates: dict[str, list[dict]] = {}

    async def fetch_submissions(self, store_id: str) -> list[Submission]:
        return [Submission.from_dict(raw) for raw in self._submissions.get(store_id, [])]

    async def put_submission(self, submission: Submission) -> None:
        existing = await self.fetch_submissions(submission.store_id)
        merged, _stored = document_service.merge_submission(existing, submission)
        self._submissions[submission.store_id] = [item.to_dict() for item in merged]
        self.changes.publish(submission.store_id, DocumentKey.SUBMISSIONS)

    async def put_full_submissions_registry(self, store_id: str, submissions: list[Submission]) -> None:
        self._submissions[store_id] = [item.to_dict() for item in submissions]
        self.changes.publish(store_id, DocumentKey.SUBMISSIONS)

    async def fetch_templates(self, store_id: str) -> list[ChecklistTemplate]:
        return [ChecklistTemplate.from_dict(raw) for raw in self._templates.get(store_id, [])]

    async def put_templates(self, store_id: str, templates: list[ChecklistTemplate]) -> None:
        self._templates[store_id] = [template.to_dict() for template in templates]
        self.changes.publish(store_id, DocumentKey.TEMPLATES)


class SqlRemoteStore:
    """Talks to the document tables directly; blocking calls run off the event loop."""

    def __init__(self, session_factory: sessionmaker[Session], changes: ChangeFeed | None = None) -> None:
        self.session_factory = session_factory
        self.changes = changes or ChangeFeed()

    def _run(self, operation: Callable[[Session], object], *, write: bool) -> object:
        try:
            with self.session_factory() as db:
                result = operation(db)
                if write:
                    db.commit()
                return result
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f'Document store error: {exc}') from exc

    async def fetch_submissions(self, store_id: str) -> list[Submission]:
        return await asyncio.to_thread(
            self._run, lambda db: document_service.load_submissions(db, store_id=store_id), write=False
        )

    async def put_submission(self, submission: Submission) -> None:
        await asyncio.to_thread(
            self._run,
            lambda db: document_service.save_submission(db, store_id=submission.store_id, submission=submission),
            write=True,
        )
        self.changes.publish(submission.store_id, DocumentKey.SUBMISSIONS)

    async def put_full_submissions_registry(self, store_id: str, submissions: list[Submission]) -> None:
        await asyncio.to_thread(
            self._run,
            lambda db: document_service.replace_submissions(db, store_id=store_id, submissions=submissions),
            write=True,
        )
        self.changes.publish(store_id, DocumentKey.SUBMISSIONS)

    async def fetch_templates(self, store_id: str) -> list[ChecklistTemplate]:
        return await asyncio.to_thread(
            self._run, lambda db: document_service.load_templates(db, store_id=store_id), write=False
        )

    async def put_templates(self, store_id: str, templates: list[ChecklistTemplate]) -> None:
        await asyncio.to_thread(
            self._run,
            lambda db: document_service.replace_templates(db, store_id=store_id, templates=templates),
            write=True,
        )
        self.changes.publish(store_id, DocumentKey.TEMPLATES)


class PendingWriteStatus(str, Enum):
    PENDING = 'PENDING'
    SYNCED = 'SYNCED'
    FAILED = 'FAILED'


@dataclass
class PendingWrite:
    submission: Submission
    queued_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    status: PendingWriteStatus = PendingWriteStatus.PENDING
    attempts: int = 0
    error_message: str | None = None


class SubmissionOutbox:
    """Submission writes that failed and wait for the next heartbeat.

    Only the newest write per submission id is kept, so a retry never sends
    older state over newer state from the same device.
    """

    def __init__(self) -> None:
        self._queue: dict[str, PendingWrite] = {}

    def __len__(self) -> int:
        return len(self._queue)

    def queue(self, submission: Submission, error: str | None = None) -> PendingWrite:
        previous = self._queue.get(submission.id)
        record = PendingWrite(submission=submission, attempts=previous.attempts if previous else 0)
        record.error_message = error
        self._queue[submission.id] = record
        return record

    def discard(self, submission_id: str) -> None:
        self._queue.pop(submission_id, None)

    def pending(self) -> list[PendingWrite]:
        return [record for record in self._queue.values() if record.status != PendingWriteStatus.SYNCED]

    async def flush(self, store: RemoteStore) -> dict[str, int]:
        results = {'synced': 0, 'failed': 0, 'total': 0}
        for record in self.pending():
            results['total'] += 1
            record.attempts += 1
            try:
                await store.put_submission(record.submission)
            except Exception as exc:
                record.status = PendingWriteStatus.FAILED
                record.error_message = str(exc)
                results['failed'] += 1
                logger.warning(
                    'Retry of submission=%s failed (attempt %s): %s',
                    record.submission.id,
                    record.attempts,
                    exc,
                    extra={'store_id': record.submission.store_id, 'submission_id': record.submission.id},
                )
                continue
            if self._queue.get(record.submission.id) is record:
                del self._queue[record.submission.id]
            results['synced'] += 1
        return results
