from __future__ import annotations

from typing import Any, Optional

from src.voicedoc.domain.models.jobs import PendingJob


class LatestSubmissionGuard:
    """Generation counter implementing "latest submission wins".

    Every ``issue`` supersedes whatever job is in flight. A runner checks
    ``is_current`` when its remote call returns and drops the result if a
    newer job has been issued since, so results are ordered by issuance and
    not by completion.
    """

    def __init__(self) -> None:
        self._generation = 0
        self._current: Optional[PendingJob] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def in_flight(self) -> bool:
        return self._current is not None and not self._current.cancelled

    def issue(self, payload: Any) -> PendingJob:
        if self._current is not None:
            self._current.cancelled = True
        self._generation += 1
        self._current = PendingJob(generation=self._generation, payload=payload)
        return self._current

    def is_current(self, job: PendingJob) -> bool:
        return not job.cancelled and job.generation == self._generation

    def complete(self, job: PendingJob) -> None:
        if self._current is job:
            self._current = None

    def cancel(self) -> None:
        if self._current is not None:
            self._current.cancelled = True
            self._current = None
