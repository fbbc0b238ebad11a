from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from app.services.checklist_records import Submission, TaskResult
from app.services.interaction_guard import DEFAULT_INTERACTION_GRACE_MS, LeaseStore

logger = logging.getLogger(__name__)

Fingerprint = tuple


def fingerprint(submission: Submission | None) -> Fingerprint:
    if submission is None:
        return ()
    return (
        submission.id,
        submission.status.value,
        tuple(
            (
                result.task_id,
                result.completed,
                result.completed_by,
                result.photo_count,
                result.value,
                result.comment,
            )
            for result in submission.task_results
        ),
    )


@dataclass(frozen=True)
class MergeOutcome:
    results: dict[str, TaskResult]
    changed: bool
    skipped: bool
    held: frozenset[str]


class ResponseMerger:
    """Reconciles remote task results with the in-memory map, field by field."""

    def __init__(self, leases: LeaseStore, *, grace_ms: float = DEFAULT_INTERACTION_GRACE_MS) -> None:
        self.leases = leases
        self.grace_ms = grace_ms
        self._last_fingerprint: Fingerprint | None = None
        self._last_held: frozenset[str] = frozenset()

    def reset(self) -> None:
        self._last_fingerprint = None
        self._last_held = frozenset()

    def merge(self, previous: Mapping[str, TaskResult], incoming: Submission) -> MergeOutcome:
        current = fingerprint(incoming)
        # A merge that held local values back must run again once those leases lapse.
        if current == self._last_fingerprint and not self._last_held:
            logger.debug('Skipping merge for submission=%s: fingerprint unchanged', incoming.id)
            return MergeOutcome(results=dict(previous), changed=False, skipped=True, held=frozenset())

        merged, held = self._merge_results(previous, incoming.task_results)
        self._last_fingerprint = current
        self._last_held = frozenset(held)
        changed = merged != dict(previous)
        return MergeOutcome(results=merged, changed=changed, skipped=False, held=frozenset(held))

    def _merge_results(
        self,
        previous: Mapping[str, TaskResult],
        incoming: Iterable[TaskResult],
    ) -> tuple[dict[str, TaskResult], set[str]]:
        merged: dict[str, TaskResult] = {}
        held: set[str] = set()
        for remote in incoming:
            if self.leases.is_recently_interacted(remote.task_id, self.grace_ms) and remote.task_id in previous:
                merged[remote.task_id] = previous[remote.task_id]
                if previous[remote.task_id] != remote:
                    held.add(remote.task_id)
            else:
                merged[remote.task_id] = remote

        for task_id, local in previous.items():
            if task_id in merged:
                continue
            if self.leases.is_recently_interacted(task_id, self.grace_ms):
                merged[task_id] = local
                held.add(task_id)
        return merged, held
