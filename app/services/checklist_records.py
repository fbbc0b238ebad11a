from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone

from app.models import (
    AUDIT_TRANSITIONS,
    SUBMISSION_TRANSITIONS,
    AuditState,
    ChecklistType,
    SubmissionStatus,
)
from app.services.errors import InvalidTransitionError


def parse_instant(raw: str | None) -> datetime | None:
    if not raw:
        return None
    value = raw.strip()
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_instant(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def parse_logical_date(raw: str) -> date:
    return date.fromisoformat(raw.strip()[:10])


@dataclass(frozen=True)
class TaskDefinition:
    id: str
    title: str
    required_photos: int = 0
    value_prompt: str | None = None
    is_critical: bool = False

    @property
    def requires_value(self) -> bool:
        return bool(self.value_prompt)

    @classmethod
    def from_dict(cls, raw: dict) -> TaskDefinition:
        required = raw.get('requiredPhotos')
        if required is None:
            required = 1 if raw.get('requiresPhoto') else 0
        return cls(
            id=str(raw['id']),
            title=str(raw.get('title') or ''),
            required_photos=max(int(required), 0),
            value_prompt=raw.get('requiresValue') or None,
            is_critical=bool(raw.get('isCritical', False)),
        )

    def to_dict(self) -> dict:
        payload: dict = {
            'id': self.id,
            'title': self.title,
            'requiresPhoto': self.required_photos > 0,
            'requiredPhotos': self.required_photos,
            'isCritical': self.is_critical,
        }
        if self.value_prompt:
            payload['requiresValue'] = self.value_prompt
        return payload


@dataclass(frozen=True)
class ChecklistTemplate:
    id: str
    name: str
    store_id: str
    type: ChecklistType
    unlock_hour: int = 0
    deadline_hour: int = 23
    tasks: tuple[TaskDefinition, ...] = ()

    def task(self, task_id: str) -> TaskDefinition | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    @property
    def task_ids(self) -> list[str]:
        return [task.id for task in self.tasks]

    @classmethod
    def from_dict(cls, raw: dict) -> ChecklistTemplate:
        unlock_hour = int(raw.get('unlockHour', 0) or 0)
        deadline_hour = int(raw.get('deadlineHour', 23) or 0)
        if not 0 <= unlock_hour <= 23 or not 0 <= deadline_hour <= 23:
            raise ValueError(f'Template {raw.get("id")} has an hour outside 0-23')
        return cls(
            id=str(raw['id']),
            name=str(raw.get('name') or ''),
            store_id=str(raw.get('storeId') or ''),
            type=ChecklistType(str(raw.get('type', 'OPENING')).upper()),
            unlock_hour=unlock_hour,
            deadline_hour=deadline_hour,
            tasks=tuple(TaskDefinition.from_dict(task) for task in raw.get('tasks') or []),
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'storeId': self.store_id,
            'type': self.type.value,
            'unlockHour': self.unlock_hour,
            'deadlineHour': self.deadline_hour,
            'tasks': [task.to_dict() for task in self.tasks],
        }


@dataclass(frozen=True)
class TaskResult:
    task_id: str
    completed: bool = False
    photo_urls: tuple[str, ...] = ()
    value: str | None = None
    comment: str | None = None
    completed_by: str = ''
    completed_at: datetime | None = None
    ai_flagged: bool | None = None
    ai_reason: str | None = None
    audit_state: AuditState = AuditState.UNAUDITED
    audited_photos: int = 0
    manager_override: bool = False
    override_by: str | None = None
    override_at: datetime | None = None
    manager_photo_comment: str | None = None
    manager_photo_comment_by: str | None = None
    manager_photo_comment_at: datetime | None = None

    @property
    def photo_count(self) -> int:
        return len(self.photo_urls)

    @property
    def has_unaudited_photos(self) -> bool:
        return self.photo_count > self.audited_photos

    def with_audit_state(self, target: AuditState, **changes) -> TaskResult:
        if target not in AUDIT_TRANSITIONS[self.audit_state]:
            raise InvalidTransitionError(
                f'Task {self.task_id} cannot move from {self.audit_state.value} to {target.value}'
            )
        return replace(self, audit_state=target, **changes)

    @classmethod
    def from_dict(cls, raw: dict) -> TaskResult:
        photos = list(raw.get('photoUrls') or [])
        legacy_photo = raw.get('photoUrl')
        if legacy_photo and legacy_photo not in photos:
            photos.insert(0, legacy_photo)
        flagged = raw.get('aiFlagged')
        audit_state = raw.get('auditState')
        if audit_state is None:
            if raw.get('managerOverride'):
                audit_state = AuditState.OVERRIDDEN.value
            elif flagged is True:
                audit_state = AuditState.FLAGGED.value
            elif flagged is False:
                audit_state = AuditState.CLEAR.value
            else:
                audit_state = AuditState.UNAUDITED.value
        audited = raw.get('auditedPhotos')
        if audited is None:
            audited = len(photos) if flagged is not None else 0
        return cls(
            task_id=str(raw['taskId']),
            completed=bool(raw.get('completed', False)),
            photo_urls=tuple(str(photo) for photo in photos),
            value=raw.get('value'),
            comment=raw.get('comment'),
            completed_by=str(raw.get('completedByUserId') or ''),
            completed_at=parse_instant(raw.get('completedAt')),
            ai_flagged=None if flagged is None else bool(flagged),
            ai_reason=raw.get('aiReason'),
            audit_state=AuditState(audit_state),
            audited_photos=int(audited),
            manager_override=bool(raw.get('managerOverride', False)),
            override_by=raw.get('overrideBy'),
            override_at=parse_instant(raw.get('overrideAt')),
            manager_photo_comment=raw.get('managerPhotoComment'),
            manager_photo_comment_by=raw.get('managerPhotoCommentBy'),
            manager_photo_comment_at=parse_instant(raw.get('managerPhotoCommentAt')),
        )

    def to_dict(self) -> dict:
        payload = {
            'taskId': self.task_id,
            'completed': self.completed,
            'photoUrls': list(self.photo_urls),
            'photoUrl': self.photo_urls[0] if self.photo_urls else None,
            'value': self.value,
            'comment': self.comment,
            'completedByUserId': self.completed_by,
            'completedAt': format_instant(self.completed_at),
            'aiFlagged': self.ai_flagged,
            'aiReason': self.ai_reason,
            'auditState': self.audit_state.value,
            'auditedPhotos': self.audited_photos,
            'managerOverride': self.manager_override,
            'overrideBy': self.override_by,
            'overrideAt': format_instant(self.override_at),
            'managerPhotoComment': self.manager_photo_comment,
            'managerPhotoCommentBy': self.manager_photo_comment_by,
            'managerPhotoCommentAt': format_instant(self.manager_photo_comment_at),
        }
        # The document store drops undefined fields; keep payloads compact the same way.
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(frozen=True)
class Submission:
    id: str
    template_id: str
    store_id: str
    date: str
    status: SubmissionStatus = SubmissionStatus.DRAFT
    user_id: str = ''
    submitted_at: datetime | None = None
    task_results: tuple[TaskResult, ...] = ()
    manager_notes: str | None = None

    @property
    def is_final(self) -> bool:
        return self.status.is_final

    @property
    def logical_date(self) -> date:
        return parse_logical_date(self.date)

    def result(self, task_id: str) -> TaskResult | None:
        for result in self.task_results:
            if result.task_id == task_id:
                return result
        return None

    def results_by_task(self) -> dict[str, TaskResult]:
        return {result.task_id: result for result in self.task_results}

    def with_status(self, target: SubmissionStatus, **changes) -> Submission:
        if target not in SUBMISSION_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f'Submission {self.id} cannot move from {self.status.value} to {target.value}'
            )
        return replace(self, status=target, **changes)

    @classmethod
    def from_dict(cls, raw: dict) -> Submission:
        return cls(
            id=str(raw['id']),
            template_id=str(raw['templateId']),
            store_id=str(raw.get('storeId') or ''),
            date=str(raw['date'])[:10],
            status=SubmissionStatus(str(raw.get('status', 'DRAFT')).upper()),
            user_id=str(raw.get('userId') or ''),
            submitted_at=parse_instant(raw.get('submittedAt')),
            task_results=tuple(TaskResult.from_dict(item) for item in raw.get('taskResults') or []),
            manager_notes=raw.get('managerNotes'),
        )

    def to_dict(self) -> dict:
        payload = {
            'id': self.id,
            'userId': self.user_id,
            'storeId': self.store_id,
            'templateId': self.template_id,
            'date': self.date,
            'status': self.status.value,
            'submittedAt': format_instant(self.submitted_at),
            'taskResults': [result.to_dict() for result in self.task_results],
            'managerNotes': self.manager_notes,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(frozen=True)
class UpdateRequest:
    """Payload of the upward ``onUpdate`` call made after every local mutation."""

    template_id: str
    task_responses: dict[str, TaskResult]
    is_final: bool
    target_date: str
    submission_id: str | None = None

