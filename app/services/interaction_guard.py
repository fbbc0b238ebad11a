from __future__ import annotations

import time
from collections.abc import Callable, Iterable

DEFAULT_INTERACTION_GRACE_MS = 6000
DEFAULT_SUBMISSION_GUARD_MS = 7000


class LeaseStore:
    """Write leases for one checklist-viewing session.

    A lease records when a task was last edited locally. While it is live, an
    incoming remote value for that task is treated as possibly stale and kept
    out of the in-memory state. The submission-level table guards the decision
    of *which* submission is shown right after a finalize or reset.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._task_leases: dict[str, float] = {}
        self._submission_leases: dict[str, float] = {}
        self._disposed = False

    def _elapsed_ms(self, marked_at: float | None) -> float | None:
        if marked_at is None:
            return None
        return (self._clock() - marked_at) * 1000

    def mark_interaction(self, task_id: str) -> None:
        if self._disposed:
            return
        self._task_leases[task_id] = self._clock()

    def is_recently_interacted(self, task_id: str, grace_ms: float = DEFAULT_INTERACTION_GRACE_MS) -> bool:
        elapsed = self._elapsed_ms(self._task_leases.get(task_id))
        return elapsed is not None and elapsed < grace_ms

    def any_recent(self, task_ids: Iterable[str], grace_ms: float = DEFAULT_INTERACTION_GRACE_MS) -> bool:
        return any(self.is_recently_interacted(task_id, grace_ms) for task_id in task_ids)

    def live_task_ids(self, grace_ms: float = DEFAULT_INTERACTION_GRACE_MS) -> set[str]:
        return {task_id for task_id in self._task_leases if self.is_recently_interacted(task_id, grace_ms)}

    def mark_submission(self, template_id: str) -> None:
        if self._disposed:
            return
        self._submission_leases[template_id] = self._clock()

    def is_submission_guarded(self, template_id: str, grace_ms: float = DEFAULT_SUBMISSION_GUARD_MS) -> bool:
        elapsed = self._elapsed_ms(self._submission_leases.get(template_id))
        return elapsed is not None and elapsed < grace_ms

    def clear(self) -> None:
        self._task_leases.clear()

    def dispose(self) -> None:
        self._task_leases.clear()
        self._submission_leases.clear()
        self._disposed = True
