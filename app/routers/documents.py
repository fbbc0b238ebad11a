from __future__ import annotations

from dataclasses import replace

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from app.auth import Principal, Role, assert_store_scope, is_manager_role, require_role
from app.db import get_db
from app.dependencies import get_client_ip
from app.models import DocumentKey, SubmissionStatus
from app.services.audit_service import log_audit
from app.services.checklist_records import ChecklistTemplate, Submission
from app.services.document_service import (
    document_version,
    load_submissions,
    load_templates,
    replace_submissions,
    replace_templates,
    save_submission,
)
from app.services.provider_factory import get_change_feed

router = APIRouter(prefix='/api/stores/{store_id}', tags=['documents'])
store_access = require_role(Role.TRAINEE, Role.TRAINER, Role.MANAGER, Role.ADMIN)
manager_access = require_role(Role.MANAGER, Role.ADMIN)

VERSION_HEADER = 'X-Document-Version'
REVIEW_STATUSES = {SubmissionStatus.APPROVED, SubmissionStatus.REJECTED}


def _parse_list(payload: dict, key: str, parser):
    raw_items = payload.get(key)
    if not isinstance(raw_items, list):
        raise HTTPException(status_code=400, detail=f'Body must be an object with a "{key}" list')
    try:
        return [parser(raw) for raw in raw_items]
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f'Invalid {key} entry: {exc}') from exc


@router.get('/submissions')
def get_submissions(
    store_id: str,
    response: Response,
    principal: Principal = Depends(store_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    submissions = load_submissions(db, store_id=store_id)
    response.headers[VERSION_HEADER] = str(document_version(db, store_id=store_id, doc_key=DocumentKey.SUBMISSIONS))
    return {'submissions': [item.to_dict() for item in submissions]}


@router.put('/submissions/{submission_id}')
def put_submission(
    store_id: str,
    submission_id: str,
    request: Request,
    response: Response,
    payload: dict = Body(...),
    principal: Principal = Depends(store_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    try:
        submission = Submission.from_dict(payload)
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f'Invalid submission: {exc}') from exc
    if not submission.store_id:
        submission = replace(submission, store_id=store_id)
    if submission.id != submission_id:
        raise HTTPException(status_code=400, detail='Submission id does not match the URL')
    if submission.status in REVIEW_STATUSES and not is_manager_role(principal.role):
        raise HTTPException(status_code=403, detail='Only managers can review submissions')

    try:
        stored = save_submission(db, store_id=store_id, submission=submission)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if submission.is_final and stored.is_final:
        log_audit(
            db,
            actor_principal_id=principal.id,
            store_id=store_id,
            action=f'SUBMISSION_{stored.status.value}',
            ip=get_client_ip(request),
            metadata={'submission_id': stored.id, 'template_id': stored.template_id, 'date': stored.date},
        )
    db.commit()
    get_change_feed().publish(store_id, DocumentKey.SUBMISSIONS)
    response.headers[VERSION_HEADER] = str(document_version(db, store_id=store_id, doc_key=DocumentKey.SUBMISSIONS))
    return stored.to_dict()


@router.put('/submissions')
def put_submissions_registry(
    store_id: str,
    request: Request,
    response: Response,
    payload: dict = Body(...),
    principal: Principal = Depends(manager_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    submissions = _parse_list(payload, 'submissions', Submission.from_dict)
    submissions = [item if item.store_id else replace(item, store_id=store_id) for item in submissions]
    removed = sorted({item.id for item in load_submissions(db, store_id=store_id)} - {item.id for item in submissions})
    try:
        version = replace_submissions(db, store_id=store_id, submissions=submissions)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        actor_principal_id=principal.id,
        store_id=store_id,
        action='SUBMISSION_REGISTRY_REPLACED',
        ip=get_client_ip(request),
        metadata={'count': len(submissions), 'removed': removed},
    )
    db.commit()
    get_change_feed().publish(store_id, DocumentKey.SUBMISSIONS)
    response.headers[VERSION_HEADER] = str(version)
    return {'submissions': [item.to_dict() for item in submissions]}


@router.get('/templates')
def get_templates(
    store_id: str,
    response: Response,
    principal: Principal = Depends(store_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    templates = load_templates(db, store_id=store_id)
    response.headers[VERSION_HEADER] = str(document_version(db, store_id=store_id, doc_key=DocumentKey.TEMPLATES))
    return {'templates': [template.to_dict() for template in templates]}


@router.put('/templates')
def put_templates(
    store_id: str,
    request: Request,
    response: Response,
    payload: dict = Body(...),
    principal: Principal = Depends(manager_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    templates = _parse_list(payload, 'templates', ChecklistTemplate.from_dict)
    templates = [template if template.store_id else replace(template, store_id=store_id) for template in templates]
    if any(template.store_id and template.store_id != store_id for template in templates):
        raise HTTPException(status_code=400, detail='Template belongs to a different store')

    version = replace_templates(db, store_id=store_id, templates=templates)
    log_audit(
        db,
        actor_principal_id=principal.id,
        store_id=store_id,
        action='TEMPLATES_REPLACED',
        ip=get_client_ip(request),
        metadata={'template_ids': [template.id for template in templates]},
    )
    db.commit()
    get_change_feed().publish(store_id, DocumentKey.TEMPLATES)
    response.headers[VERSION_HEADER] = str(version)
    return {'templates': [template.to_dict() for template in templates]}
