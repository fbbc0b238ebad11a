"""One device's live view of one checklist.

The session owns everything that is process-local for a checklist being
viewed: the lease table, the task-result map shown to the user, the
optimistic copy of the store's submissions and the outbox of writes that did
not reach the store. Remote snapshots come in through ``apply_snapshot``;
local edits go out through ``on_update`` and are pushed without waiting.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, replace
from datetime import date, datetime
from uuid import uuid4

from app.auth import Role, require_manager
from app.models import AuditState, SubmissionStatus
from app.services.checklist_records import ChecklistTemplate, Submission, TaskResult, UpdateRequest
from app.services.clock_math import is_past_deadline, local_now, target_date, unlock_instant
from app.services.document_store import RemoteStore, SubmissionOutbox
from app.services.errors import PhotoRequiredError, ReadOnlySubmissionError, StoreUnavailableError
from app.services.finalize_service import FinalizeCoordinator
from app.services.interaction_guard import (
    DEFAULT_INTERACTION_GRACE_MS,
    DEFAULT_SUBMISSION_GUARD_MS,
    LeaseStore,
)
from app.services.photo_capture_service import PhotoCaptureUploader, PhotoCommit, PhotoTarget
from app.services.response_merger import ResponseMerger
from app.services.submission_resolver import resolve

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionView:
    template_id: str
    submission_id: str | None
    target_date: date
    is_locked: bool
    is_read_only: bool
    is_late: bool
    unlock_at: datetime | None
    responses: dict[str, TaskResult]


def new_submission_id() -> str:
    return f'sub-{uuid4().hex[:12]}'


class ChecklistSession:
    def __init__(
        self,
        template: ChecklistTemplate,
        store: RemoteStore,
        *,
        user_id: str,
        finalizer: FinalizeCoordinator,
        uploader: PhotoCaptureUploader | None = None,
        role: Role = Role.TRAINEE,
        leases: LeaseStore | None = None,
        outbox: SubmissionOutbox | None = None,
        clock: Callable[[], datetime] = local_now,
        interaction_grace_ms: float = DEFAULT_INTERACTION_GRACE_MS,
        submission_guard_ms: float = DEFAULT_SUBMISSION_GUARD_MS,
    ) -> None:
        self.template = template
        self.store = store
        self.user_id = user_id
        self.role = role
        self.finalizer = finalizer
        self.uploader = uploader
        self.leases = leases or LeaseStore()
        self.outbox = outbox or SubmissionOutbox()
        self.clock = clock
        self.interaction_grace_ms = interaction_grace_ms
        self.submission_guard_ms = submission_guard_ms
        self.merger = ResponseMerger(self.leases, grace_ms=interaction_grace_ms)

        self.submissions: list[Submission] = []
        self.active_submission_id: str | None = None
        self.is_locked = False
        self.is_read_only = False
        self.responses: dict[str, TaskResult] = {}
        self.listeners: list[Callable[[SessionView], None]] = []
        self._pushes: set[asyncio.Task] = set()
        self._closed = False

    @property
    def store_id(self) -> str:
        return self.template.store_id

    @property
    def active_submission(self) -> Submission | None:
        if self.active_submission_id is None:
            return None
        return next((item for item in self.submissions if item.id == self.active_submission_id), None)

    def target_date(self) -> date:
        return target_date(self.clock(), self.template)

    def view(self) -> SessionView:
        active = self.active_submission
        unlock_at = None
        if active is not None and active.is_final:
            unlock_at = unlock_instant(active, self.template, self.clock().tzinfo)
        return SessionView(
            template_id=self.template.id,
            submission_id=self.active_submission_id,
            target_date=self.target_date(),
            is_locked=self.is_locked,
            is_read_only=self.is_read_only,
            is_late=not self.is_read_only and is_past_deadline(self.clock(), self.template),
            unlock_at=unlock_at,
            responses=dict(self.responses),
        )

    def _notify(self) -> None:
        if not self.listeners:
            return
        snapshot = self.view()
        for listener in list(self.listeners):
            listener(snapshot)

    def _upsert(self, submission: Submission) -> None:
        self.submissions = [submission, *(item for item in self.submissions if item.id != submission.id)]

    def _clear_active(self) -> None:
        self.active_submission_id = None
        self.is_locked = False
        self.is_read_only = False
        self.responses = {}
        self.merger.reset()

    # Incoming: remote snapshot -> resolver -> merger -> session state.

    def apply_snapshot(self, remote: list[Submission]) -> bool:
        """Feed a freshly fetched submission list. Returns whether visible state changed."""
        submissions = list(remote)
        for pending in self.outbox.pending():
            submissions = [pending.submission, *(item for item in submissions if item.id != pending.submission.id)]

        if self.leases.is_submission_guarded(self.template.id, self.submission_guard_ms):
            logger.debug('Ignoring refresh for template=%s inside the finalize/reset window', self.template.id)
            return False
        self.submissions = submissions

        resolved = resolve(submissions, self.template, self.clock())
        if resolved.submission is None:
            if self.active_submission_id is None and not self.responses:
                return False
            if self.leases.any_recent(self.template.task_ids, self.interaction_grace_ms):
                logger.debug(
                    'Submission %s missing from refresh but tasks were just edited; holding', self.active_submission_id
                )
                return False
            self._clear_active()
            self._notify()
            return True

        incoming = resolved.submission
        switched = incoming.id != self.active_submission_id or resolved.is_read_only != self.is_read_only
        if switched:
            self.merger.reset()
        self.active_submission_id = incoming.id
        self.is_locked = resolved.is_locked
        self.is_read_only = resolved.is_read_only

        if resolved.is_read_only:
            results = incoming.results_by_task()
            changed = switched or results != self.responses
            self.responses = results
        else:
            outcome = self.merger.merge(self.responses, incoming)
            changed = switched or outcome.changed
            self.responses = outcome.results

        if changed:
            self._notify()
        return changed

    # Outgoing: local edit -> lease + optimistic state + push.

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pushes.add(task)
        task.add_done_callback(self._pushes.discard)

    async def _push(self, submission: Submission) -> None:
        try:
            await self.store.put_submission(submission)
        except StoreUnavailableError as exc:
            logger.warning(
                'Push of submission=%s failed, queued for next heartbeat: %s',
                submission.id,
                exc,
                extra={'store_id': submission.store_id, 'submission_id': submission.id},
            )
            self.outbox.queue(submission, str(exc))
            return
        except Exception as exc:
            logger.exception(
                'Push of submission=%s raised unexpectedly, queued for next heartbeat',
                submission.id,
                extra={'store_id': submission.store_id, 'submission_id': submission.id},
            )
            self.outbox.queue(submission, str(exc))
            return
        self.outbox.discard(submission.id)

    async def flush_outbox(self) -> dict[str, int]:
        if not len(self.outbox):
            return {'synced': 0, 'failed': 0, 'total': 0}
        return await self.outbox.flush(self.store)

    def _find_existing(self, request: UpdateRequest) -> Submission | None:
        if request.submission_id:
            for item in self.submissions:
                if item.id == request.submission_id:
                    return item
        for item in self.submissions:
            if (
                item.template_id == request.template_id
                and item.store_id == self.store_id
                and item.date == request.target_date
                and item.status == SubmissionStatus.DRAFT
            ):
                return item
        return None

    def _build_draft(self, request: UpdateRequest) -> Submission:
        ordered = [request.task_responses[task_id] for task_id in self.template.task_ids if task_id in request.task_responses]
        extras = [result for task_id, result in request.task_responses.items() if self.template.task(task_id) is None]
        task_results = tuple(ordered + extras)

        existing = self._find_existing(request)
        if existing is not None:
            return replace(existing, task_results=task_results)
        return Submission(
            id=request.submission_id or new_submission_id(),
            template_id=request.template_id,
            store_id=self.store_id,
            date=request.target_date,
            status=SubmissionStatus.DRAFT,
            user_id=self.user_id,
            task_results=task_results,
        )

    def _require_editable(self) -> None:
        if self.is_read_only:
            raise ReadOnlySubmissionError(f'Checklist {self.template.name} is locked until it rolls over')

    async def on_update(self, request: UpdateRequest, *, confirm_incomplete: bool = False) -> Submission:
        self._require_editable()
        draft = self._build_draft(request)
        if request.is_final:
            return await self._finalize(draft, confirm_incomplete=confirm_incomplete)

        for task_id, result in request.task_responses.items():
            if self.responses.get(task_id) != result:
                self.leases.mark_interaction(task_id)
        self._upsert(draft)
        self.active_submission_id = draft.id
        self.responses = dict(request.task_responses)
        self.merger.reset()
        self._spawn(self._push(draft))
        self._notify()
        return draft

    def _request(self, *, is_final: bool = False) -> UpdateRequest:
        return UpdateRequest(
            submission_id=self.active_submission_id,
            template_id=self.template.id,
            task_responses=dict(self.responses),
            is_final=is_final,
            target_date=self.target_date().isoformat(),
        )

    def _current(self, task_id: str) -> TaskResult:
        if self.template.task(task_id) is None:
            raise ValueError(f'Task {task_id} is not part of {self.template.name}')
        return self.responses.get(task_id) or TaskResult(task_id=task_id)

    async def _write_task(self, updated: TaskResult) -> Submission:
        self.leases.mark_interaction(updated.task_id)
        self.responses = {**self.responses, updated.task_id: updated}
        return await self.on_update(self._request())

    async def toggle_task(self, task_id: str) -> Submission:
        self._require_editable()
        current = self._current(task_id)
        task = self.template.task(task_id)
        self.leases.mark_interaction(task_id)
        completing = not current.completed
        if completing and current.photo_count < task.required_photos:
            missing = task.required_photos - current.photo_count
            raise PhotoRequiredError(f'Verification required: "{task.title}"', task_id=task_id, missing=missing)

        if completing:
            updated = replace(current, completed=True, completed_by=self.user_id, completed_at=self.clock())
        else:
            # Unchecking drops the photos so they can be retaken.
            updated = replace(
                current,
                completed=False,
                photo_urls=(),
                ai_flagged=None,
                ai_reason=None,
                audit_state=AuditState.UNAUDITED,
                audited_photos=0,
            )
        return await self._write_task(updated)

    async def set_value(self, task_id: str, value: str) -> Submission:
        self._require_editable()
        current = self._current(task_id)
        updated = replace(current, value=value)
        if not current.completed:
            updated = replace(updated, completed_by=self.user_id, completed_at=self.clock())
        return await self._write_task(updated)

    async def set_comment(self, task_id: str, comment: str) -> Submission:
        self._require_editable()
        return await self._write_task(replace(self._current(task_id), comment=comment))

    async def add_photo(self, task_id: str, photo_data_url: str) -> PhotoCommit:
        if self.uploader is None:
            raise RuntimeError('This session has no photo uploader')
        self._require_editable()
        task = self.template.task(task_id)
        before = self._current(task_id)
        self.leases.mark_interaction(task_id)
        submission_id = self.active_submission_id or new_submission_id()

        commit = await self.uploader.commit(
            task_id,
            photo_data_url,
            target=PhotoTarget(
                store_id=self.store_id,
                logical_date=self.target_date().isoformat(),
                submission_id=submission_id,
            ),
            existing_count=before.photo_count,
            required_count=task.required_photos,
        )
        if self.active_submission_id is None:
            self.active_submission_id = submission_id

        # Re-read after the upload; other edits may have landed meanwhile.
        current = self._current(task_id)
        updated = replace(current, photo_urls=(*current.photo_urls, commit.reference))
        if not current.completed and updated.photo_count >= task.required_photos:
            updated = replace(updated, completed=True, completed_by=self.user_id, completed_at=self.clock())
        await self._write_task(updated)
        return replace(commit, photo_count=updated.photo_count)

    async def capture_photo(self, task_id: str) -> PhotoCommit:
        if self.uploader is None:
            raise RuntimeError('This session has no photo uploader')
        self._require_editable()
        self.leases.mark_interaction(task_id)
        photo = await self.uploader.capture(task_id)
        return await self.add_photo(task_id, photo)

    async def finalize(self, *, confirm_incomplete: bool = False) -> Submission:
        self._require_editable()
        return await self.on_update(self._request(is_final=True), confirm_incomplete=confirm_incomplete)

    async def _finalize(self, draft: Submission, *, confirm_incomplete: bool) -> Submission:
        finalized = await self.finalizer.prepare(draft, self.template, confirm_incomplete=confirm_incomplete)
        self.leases.mark_submission(self.template.id)
        self._upsert(finalized)
        self.active_submission_id = finalized.id
        self.is_locked = True
        self.is_read_only = True
        self.responses = finalized.results_by_task()
        self.merger.reset()
        self._spawn(self._push(finalized))
        self._notify()
        return finalized

    async def on_reset_submission(self, submission_id: str) -> bool:
        """Reopen: delete the record everywhere and start a fresh editable instance."""
        require_manager(self.role)
        self.leases.clear()
        self.leases.mark_submission(self.template.id)
        self.outbox.discard(submission_id)
        self.submissions = [item for item in self.submissions if item.id != submission_id]
        if self.active_submission_id == submission_id:
            self._clear_active()
        self._notify()

        try:
            current = await self.store.fetch_submissions(self.store_id)
            remaining = [item for item in current if item.id != submission_id]
            await self.store.put_full_submissions_registry(self.store_id, remaining)
        except StoreUnavailableError as exc:
            logger.warning(
                'Reopen of submission=%s did not reach the store: %s',
                submission_id,
                exc,
                extra={'store_id': self.store_id, 'submission_id': submission_id},
            )
            return False
        logger.info(
            'Submission %s reopened by %s',
            submission_id,
            self.user_id,
            extra={'store_id': self.store_id, 'template_id': self.template.id, 'submission_id': submission_id},
        )
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pushes:
            await asyncio.gather(*list(self._pushes), return_exceptions=True)
        self.listeners.clear()
        self.leases.dispose()
