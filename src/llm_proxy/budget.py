from __future__ import annotations

from decimal import Decimal

import structlog

from .errors import BudgetExceededError
from .metering import UsageSink

log = structlog.get_logger()


class SubmissionBudget:
    """Caps accumulated cost and LLM time for one candidate submission."""

    def __init__(self, sink: UsageSink, *, max_cost: float = 10.0, max_time_ms: int = 3_600_000):
        self._sink = sink
        self.max_cost = Decimal(str(max_cost))
        self.max_time_ms = max_time_ms

    async def check(self, submission_id: str) -> None:
        try:
            totals = await self._sink.totals(submission_id)
        except Exception:
            # Fail open when the sink cannot be read.
            log.exception("submission_budget_unavailable", submission_id=submission_id)
            return
        if totals.cost >= self.max_cost or totals.latency_ms >= self.max_time_ms:
            log.warning(
                "submission_budget_exceeded",
                submission_id=submission_id,
                cost=str(totals.cost),
                latency_ms=totals.latency_ms,
            )
            raise BudgetExceededError(
                limit=float(self.max_cost),
                used=float(totals.cost),
                time_limit_ms=self.max_time_ms,
                time_used_ms=totals.latency_ms,
            )
