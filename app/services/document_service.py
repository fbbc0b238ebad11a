from __future__ import annotations

from dataclasses import replace

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import DocumentKey, StoreDocument, SubmissionStatus
from app.services.checklist_records import ChecklistTemplate, Submission


def merge_submission(existing: list[Submission], incoming: Submission) -> tuple[list[Submission], Submission]:
    """Store-side write rule for a single submission.

    Results carried by the write replace the stored ones and results it does
    not carry are kept. A DRAFT write for a submission that is already
    finalized is dropped, so a late push from another device cannot rewrite
    it; only review writes change a finalized record. New
    submissions go to the front so readers see the newest first. A second
    DRAFT for the same template, store and date folds into the first one.
    """
    if not any(current.id == incoming.id for current in existing) and incoming.status == SubmissionStatus.DRAFT:
        twin = next(
            (
                current
                for current in existing
                if current.status == SubmissionStatus.DRAFT
                and current.template_id == incoming.template_id
                and current.store_id == incoming.store_id
                and current.date == incoming.date
            ),
            None,
        )
        if twin is not None:
            incoming = replace(incoming, id=twin.id, user_id=twin.user_id or incoming.user_id)

    for index, current in enumerate(existing):
        if current.id != incoming.id:
            continue
        if current.is_final and incoming.status == SubmissionStatus.DRAFT:
            return existing, current
        incoming_ids = {result.task_id for result in incoming.task_results}
        merged_results = list(incoming.task_results) + [
            result for result in current.task_results if result.task_id not in incoming_ids
        ]
        merged = replace(incoming, task_results=tuple(merged_results))
        return existing[:index] + [merged] + existing[index + 1 :], merged
    return [incoming, *existing], incoming


def _get_document(db: Session, *, store_id: str, doc_key: DocumentKey) -> StoreDocument | None:
    return db.execute(
        select(StoreDocument).where(StoreDocument.store_id == store_id, StoreDocument.doc_key == doc_key.value)
    ).scalar_one_or_none()


def _write_document(db: Session, *, store_id: str, doc_key: DocumentKey, data: list[dict]) -> StoreDocument:
    document = _get_document(db, store_id=store_id, doc_key=doc_key)
    if document is None:
        document = StoreDocument(store_id=store_id, doc_key=doc_key.value, data=data, version=1)
        db.add(document)
    else:
        document.data = data
        document.version = (document.version or 0) + 1
    db.flush()
    return document


def document_version(db: Session, *, store_id: str, doc_key: DocumentKey) -> int:
    document = _get_document(db, store_id=store_id, doc_key=doc_key)
    return document.version if document else 0


def load_submissions(db: Session, *, store_id: str) -> list[Submission]:
    document = _get_document(db, store_id=store_id, doc_key=DocumentKey.SUBMISSIONS)
    if document is None:
        return []
    return [Submission.from_dict(raw) for raw in document.data or []]


def save_submission(db: Session, *, store_id: str, submission: Submission) -> Submission:
    if submission.store_id and submission.store_id != store_id:
        raise ValueError('Submission belongs to a different store')
    existing = load_submissions(db, store_id=store_id)
    merged, stored = merge_submission(existing, submission)
    if merged is existing:
        return stored
    _write_document(
        db,
        store_id=store_id,
        doc_key=DocumentKey.SUBMISSIONS,
        data=[item.to_dict() for item in merged],
    )
    return stored


def replace_submissions(db: Session, *, store_id: str, submissions: list[Submission]) -> int:
    if any(item.store_id and item.store_id != store_id for item in submissions):
        raise ValueError('Submission registry contains records for another store')
    seen: set[str] = set()
    for item in submissions:
        if item.id in seen:
            raise ValueError(f'Duplicate submission id {item.id}')
        seen.add(item.id)
    document = _write_document(
        db,
        store_id=store_id,
        doc_key=DocumentKey.SUBMISSIONS,
        data=[item.to_dict() for item in submissions],
    )
    return document.version


def load_templates(db: Session, *, store_id: str) -> list[ChecklistTemplate]:
    document = _get_document(db, store_id=store_id, doc_key=DocumentKey.TEMPLATES)
    if document is None:
        return []
    return [ChecklistTemplate.from_dict(raw) for raw in document.data or []]


def replace_templates(db: Session, *, store_id: str, templates: list[ChecklistTemplate]) -> int:
    document = _write_document(
        db,
        store_id=store_id,
        doc_key=DocumentKey.TEMPLATES,
        data=[template.to_dict() for template in templates],
    )
    return document.version
