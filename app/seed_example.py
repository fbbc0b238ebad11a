import argparse

from app.db import SessionLocal, init_db
from app.services.checklist_records import ChecklistTemplate
from app.services.document_service import load_templates, replace_templates

DEFAULT_TEMPLATES = [
    {
        'id': 'ct-opening',
        'name': 'Opening Checklist',
        'type': 'OPENING',
        'unlockHour': 0,
        'deadlineHour': 7,
        'tasks': [
            {'id': 'o-1', 'title': 'Unlock doors, turn on lights, and start music', 'isCritical': True},
            {'id': 'o-2', 'title': 'Dial in house espresso (check yield & time)', 'requiresValue': 'Grind Setting'},
            {'id': 'o-3', 'title': 'Brew first batch of coffee'},
            {'id': 'o-4', 'title': 'Stock milk fridges and rotate FIFO'},
            {'id': 'o-5', 'title': 'Set up pastry case and record inventory', 'requiredPhotos': 1},
            {'id': 'o-6', 'title': 'Final shop walk-through & wipe down', 'requiredPhotos': 2},
            {'id': 'o-7', 'title': 'Turn on OPEN sign', 'isCritical': True},
        ],
    },
    {
        'id': 'ct-closing',
        'name': 'Closing Checklist',
        'type': 'CLOSING',
        'unlockHour': 10,
        'deadlineHour': 21,
        'tasks': [
            {'id': 'c-1', 'title': 'Backflush espresso machine'},
            {'id': 'c-2', 'title': 'Clean & purge steam wands (no residue)', 'isCritical': True},
            {'id': 'c-3', 'title': 'Empty and clean pastry case', 'requiredPhotos': 1},
            {'id': 'c-4', 'title': 'Sweep and mop FOH and BOH floors', 'requiredPhotos': 1},
            {'id': 'c-5', 'title': 'Ensure all doors and windows are locked', 'isCritical': True},
            {'id': 'c-6', 'title': 'Photo of the clean bar', 'requiredPhotos': 1},
        ],
    },
    {
        'id': 'ct-mon',
        'name': 'Monday Deep Clean',
        'type': 'WEEKLY',
        'tasks': [
            {'id': 'mon-1', 'title': 'Wipe out all fridges & rotate milk', 'requiredPhotos': 1},
            {'id': 'mon-2', 'title': 'Clean out trash cans & knock box'},
        ],
    },
    {
        'id': 'ct-thu',
        'name': 'Thursday Deep Clean',
        'type': 'WEEKLY',
        'tasks': [
            {'id': 'thu-1', 'title': 'Wipe out all fridges & rotate milk', 'requiredPhotos': 1},
            {'id': 'thu-2', 'title': 'Deep clean sinks', 'requiredPhotos': 1},
        ],
    },
    {
        'id': 'ct-monthly',
        'name': 'Monthly Equipment Check',
        'type': 'MONTHLY',
        'tasks': [
            {'id': 'm-1', 'title': 'Replace water filter cartridge', 'requiredPhotos': 1, 'isCritical': True},
            {'id': 'm-2', 'title': 'Record refrigerator temperatures', 'requiresValue': 'Temperature (F)'},
        ],
    },
]


def default_templates(store_id: str) -> list[ChecklistTemplate]:
    return [
        ChecklistTemplate.from_dict({**raw, 'id': f"{raw['id']}-{store_id}", 'storeId': store_id})
        for raw in DEFAULT_TEMPLATES
    ]


def seed(store_id: str) -> None:
    init_db()
    with SessionLocal() as db:
        existing = {template.id for template in load_templates(db, store_id=store_id)}
        templates = default_templates(store_id)
        if existing >= {template.id for template in templates}:
            print(f'Templates already seeded for store {store_id}.')
            return
        replace_templates(db, store_id=store_id, templates=templates)
        db.commit()
    print(f'Seeded {len(templates)} checklist templates for store {store_id}.')


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Seed default checklist templates for a store.')
    parser.add_argument('store_id')
    args = parser.parse_args()
    seed(args.store_id)
