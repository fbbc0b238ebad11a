from __future__ import annotations

import asyncio
import logging

from app.models import DocumentKey
from app.services.checklist_session import ChecklistSession
from app.services.document_store import ChangeFeed
from app.services.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_SECONDS = 4.0


class SyncScheduler:
    """Keeps a session fresh: one fetch on start, a heartbeat while the user is
    active, and an immediate fetch whenever the change feed reports a write to
    this store's submissions.

    Refreshes never overlap. A trigger that arrives mid-refresh schedules one
    follow-up refresh rather than a second concurrent fetch.
    """

    def __init__(
        self,
        session: ChecklistSession,
        *,
        changes: ChangeFeed | None = None,
        heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
    ) -> None:
        self.session = session
        self.changes = changes
        self.heartbeat_seconds = heartbeat_seconds
        self.user_active = True
        self.refresh_count = 0
        self.last_error: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._heartbeat: asyncio.Task | None = None
        self._refresh_task: asyncio.Task | None = None
        self._refresh_again = False
        self._unsubscribe = None

    @property
    def running(self) -> bool:
        return self._loop is not None

    async def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        if self.changes is not None:
            self._unsubscribe = self.changes.subscribe(self._on_change)
        self.request_refresh()
        await self._refresh_task
        self._heartbeat = self._loop.create_task(self._run_heartbeat())
        logger.info(
            'Sync started for template=%s store=%s heartbeat=%ss',
            self.session.template.id,
            self.session.store_id,
            self.heartbeat_seconds,
        )

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = [task for task in (self._heartbeat, self._refresh_task) if task is not None and not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._heartbeat = None
        self._refresh_task = None
        self._loop = None

    def set_user_active(self, active: bool) -> None:
        self.user_active = active

    def _on_change(self, store_id: str, doc_key: DocumentKey) -> None:
        if doc_key != DocumentKey.SUBMISSIONS or store_id != self.session.store_id:
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.request_refresh)

    def request_refresh(self) -> None:
        if not self.running:
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_again = True
            return
        self._refresh_task = self._loop.create_task(self._refresh_loop())

    async def _refresh_loop(self) -> None:
        while True:
            self._refresh_again = False
            await self.refresh()
            if not self._refresh_again:
                return

    async def _run_heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            if not self.user_active:
                continue
            self.request_refresh()

    async def refresh(self) -> bool:
        """Retry queued writes, then fetch and apply the store's submissions."""
        session = self.session
        try:
            await session.flush_outbox()
            submissions = await session.store.fetch_submissions(session.store_id)
        except StoreUnavailableError as exc:
            self.last_error = str(exc)
            logger.warning(
                'Refresh failed for store=%s: %s',
                session.store_id,
                exc,
                extra={'store_id': session.store_id, 'template_id': session.template.id},
            )
            return False
        except Exception as exc:
            self.last_error = repr(exc)
            logger.exception(
                'Refresh raised for store=%s',
                session.store_id,
                extra={'store_id': session.store_id, 'template_id': session.template.id},
            )
            return False
        self.last_error = None
        self.refresh_count += 1
        return session.apply_snapshot(submissions)
