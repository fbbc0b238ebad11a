from __future__ import annotations

from functools import lru_cache

from app.auth import Role
from app.config import settings
from app.services.checklist_records import ChecklistTemplate
from app.services.checklist_session import ChecklistSession
from app.services.clock_math import local_now, store_zone
from app.services.content_audit import HttpContentAuditor, MockContentAuditor
from app.services.document_store import ChangeFeed, MemoryRemoteStore, SqlRemoteStore
from app.services.finalize_service import FinalizeCoordinator
from app.services.http_document_store import HttpRemoteStore
from app.services.photo_capture_service import Camera, PhotoCaptureUploader
from app.services.photo_storage import DisabledPhotoStorage, HttpPhotoStorage


@lru_cache(maxsize=1)
def get_change_feed() -> ChangeFeed:
    return ChangeFeed()


@lru_cache(maxsize=1)
def get_document_store():
    backend = settings.document_store.strip().lower()
    if backend == 'http':
        return HttpRemoteStore(
            settings.document_api_base_url,
            token=settings.document_api_token,
            timeout_seconds=settings.http_timeout_seconds,
        )
    if backend == 'sql':
        from app.db import SessionLocal

        return SqlRemoteStore(SessionLocal, changes=get_change_feed())
    return MemoryRemoteStore(changes=get_change_feed())


@lru_cache(maxsize=1)
def get_photo_storage():
    backend = settings.photo_storage.strip().lower()
    if backend == 'http':
        return HttpPhotoStorage(
            settings.photo_storage_base_url,
            token=settings.photo_storage_token,
            timeout_seconds=settings.http_timeout_seconds,
        )
    return DisabledPhotoStorage()


@lru_cache(maxsize=1)
def get_content_auditor():
    backend = settings.content_auditor.strip().lower()
    if backend == 'http':
        return HttpContentAuditor(
            settings.content_auditor_url,
            api_key=settings.content_auditor_api_key,
            timeout_seconds=settings.http_timeout_seconds,
        )
    return MockContentAuditor()


def build_photo_uploader(camera: Camera) -> PhotoCaptureUploader:
    return PhotoCaptureUploader(
        camera,
        get_photo_storage(),
        max_edge=settings.photo_max_edge,
        quality=settings.photo_jpeg_quality,
    )


def build_session(
    template: ChecklistTemplate,
    *,
    user_id: str,
    role: Role = Role.TRAINEE,
    camera: Camera | None = None,
) -> ChecklistSession:
    store = get_document_store()
    zone = store_zone(settings.store_timezone)
    return ChecklistSession(
        template,
        store,
        user_id=user_id,
        role=role,
        finalizer=FinalizeCoordinator(store, get_content_auditor()),
        uploader=build_photo_uploader(camera) if camera is not None else None,
        clock=lambda: local_now(zone),
        interaction_grace_ms=settings.interaction_grace_ms,
        submission_guard_ms=settings.submission_guard_ms,
    )
