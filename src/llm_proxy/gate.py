from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

import structlog

from .errors import SubmissionNotActiveError, SubmissionNotFoundError

log = structlog.get_logger()

ACTIVE_STATUS = "in-progress"


class SubmissionGate(Protocol):
    """Decides whether a submission may use the proxy right now."""

    async def check(self, submission_id: str) -> None: ...


class StaticSubmissionGate:
    """
    Gate backed by a fixed `submission_id -> status` mapping.

    Unknown ids raise SubmissionNotFoundError; any status other than
    `active_status` raises SubmissionNotActiveError.
    """

    def __init__(self, statuses: Mapping[str, str], *, active_status: str = ACTIVE_STATUS):
        self._statuses = dict(statuses)
        self.active_status = active_status

    def set_status(self, submission_id: str, status: str) -> None:
        self._statuses[submission_id] = status

    async def check(self, submission_id: str) -> None:
        status = self._statuses.get(submission_id)
        if status is None:
            log.warning("submission_not_found", submission_id=submission_id)
            raise SubmissionNotFoundError(submission_id)
        if status != self.active_status:
            log.warning("submission_not_active", submission_id=submission_id, status=status)
            raise SubmissionNotActiveError(submission_id, status)
