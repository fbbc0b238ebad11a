from __future__ import annotations

import argparse
import asyncio
import logging

from app.config import settings
from app.logging_config import configure_logging
from app.services.checklist_session import SessionView
from app.services.provider_factory import build_session, get_change_feed, get_document_store
from app.services.sync_scheduler import SyncScheduler

logger = logging.getLogger(__name__)


def _describe(view: SessionView) -> str:
    done = sum(1 for result in view.responses.values() if result.completed)
    state = 'locked' if view.is_locked else 'editable'
    line = (
        f'{view.template_id} [{view.target_date.isoformat()}] submission={view.submission_id or "-"} '
        f'{state} completed={done}/{len(view.responses)}'
    )
    if view.unlock_at is not None:
        line += f' unlocks={view.unlock_at.isoformat(timespec="minutes")}'
    if view.is_late:
        line += ' LATE'
    return line


async def watch(store_id: str, template_id: str, *, user_id: str, duration: float | None) -> int:
    store = get_document_store()
    templates = await store.fetch_templates(store_id)
    template = next((item for item in templates if item.id == template_id), None)
    if template is None:
        raise SystemExit(f'Template {template_id} not found for store {store_id}')

    session = build_session(template, user_id=user_id)
    session.listeners.append(lambda view: print(_describe(view), flush=True))
    scheduler = SyncScheduler(session, changes=get_change_feed(), heartbeat_seconds=settings.sync_heartbeat_seconds)

    await scheduler.start()
    print(_describe(session.view()), flush=True)
    try:
        if duration:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await session.close()
    logger.info('Watched %s for %s refreshes', template_id, scheduler.refresh_count)
    return scheduler.refresh_count


def main() -> None:
    parser = argparse.ArgumentParser(description='Follow one checklist as the document store changes.')
    parser.add_argument('store_id')
    parser.add_argument('template_id')
    parser.add_argument('--user', default='watcher', help='User id recorded on any local writes.')
    parser.add_argument(
        '--duration',
        type=float,
        default=None,
        help='Stop after this many seconds. Runs until interrupted when omitted.',
    )
    args = parser.parse_args()

    configure_logging()
    try:
        refreshes = asyncio.run(watch(args.store_id, args.template_id, user_id=args.user, duration=args.duration))
    except KeyboardInterrupt:
        return
    print(f'Watch complete: refreshes={refreshes}')


if __name__ == '__main__':
    main()
