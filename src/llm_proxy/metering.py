from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Protocol

import structlog

from .contracts import ChatRequest, ProviderReply, SessionContext, UsageRecord
from .errors import ProviderError
from .metrics import (
    metering_persist_failures_total,
    usage_cost_total,
    usage_records_total,
    usage_tokens_total,
)
from .pricing import DEFAULT_PRICING, PricingTable
from .tokens import TokenUsage, usage_from_reply

log = structlog.get_logger()


@dataclass(frozen=True)
class SubmissionTotals:
    calls: int = 0
    tokens: int = 0
    cost: Decimal = Decimal(0)
    latency_ms: int = 0

    def plus(self, *, tokens: int, cost: Decimal, latency_ms: int) -> SubmissionTotals:
        return SubmissionTotals(
            calls=self.calls + 1,
            tokens=self.tokens + tokens,
            cost=self.cost + cost,
            latency_ms=self.latency_ms + latency_ms,
        )


def summarize(records: Iterable[UsageRecord]) -> SubmissionTotals:
    calls = tokens = latency_ms = 0
    cost = Decimal(0)
    for r in records:
        calls += 1
        tokens += r.tokens
        cost += r.cost
        latency_ms += r.latency_ms
    return SubmissionTotals(calls=calls, tokens=tokens, cost=cost, latency_ms=latency_ms)


class UsageSink(Protocol):
    """Append-only store for usage records. Must tolerate concurrent appends."""

    async def append(self, record: UsageRecord) -> None: ...

    async def totals(self, submission_id: str) -> SubmissionTotals: ...


class InMemoryUsageSink:
    def __init__(self) -> None:
        self._records: list[UsageRecord] = []
        self._lock = asyncio.Lock()

    async def append(self, record: UsageRecord) -> None:
        async with self._lock:
            self._records.append(record)

    async def totals(self, submission_id: str) -> SubmissionTotals:
        return summarize(r for r in self._records if r.submission_id == submission_id)

    def records(self, submission_id: str | None = None) -> list[UsageRecord]:
        return [r for r in self._records if submission_id is None or r.submission_id == submission_id]


class JsonlUsageSink:
    """
    One JSON object per line, appended to `path`.

    Writes are serialized with an asyncio lock and run off the event loop.
    Per-submission totals are read from the file once and then kept in
    memory, updated on every append.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._totals: dict[str, SubmissionTotals] | None = None

    def _write_line(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a+b") as fh:
            if fh.tell() > 0:
                fh.seek(-1, 2)
                if fh.read(1) != b"\n":
                    # Torn tail from an interrupted write; start a fresh line.
                    line = "\n" + line
            fh.write((line + "\n").encode("utf-8"))

    def _load_totals(self) -> dict[str, SubmissionTotals]:
        totals: dict[str, SubmissionTotals] = {}
        if not self.path.exists():
            return totals
        with self.path.open(encoding="utf-8") as fh:
            for line_number, line in enumerate(fh, start=1):
                if not line.strip():
                    continue
                try:
                    row = json.loads(line)
                    submission_id = row["submissionId"]
                    tokens = int(row.get("tokens", 0))
                    cost = Decimal(str(row.get("cost", "0")))
                    latency_ms = int(row.get("latencyMs", 0))
                except (ValueError, TypeError, KeyError, AttributeError, ArithmeticError) as e:
                    log.warning("usage_log_line_skipped", path=str(self.path), line_number=line_number, error=str(e))
                    continue
                current = totals.get(submission_id, SubmissionTotals())
                totals[submission_id] = current.plus(tokens=tokens, cost=cost, latency_ms=latency_ms)
        return totals

    async def _ensure_loaded(self) -> dict[str, SubmissionTotals]:
        if self._totals is None:
            self._totals = await asyncio.to_thread(self._load_totals)
        return self._totals

    async def append(self, record: UsageRecord) -> None:
        line = json.dumps(record.to_json_dict(), separators=(",", ":"))
        async with self._lock:
            totals = await self._ensure_loaded()
            await asyncio.to_thread(self._write_line, line)
            current = totals.get(record.submission_id, SubmissionTotals())
            totals[record.submission_id] = current.plus(
                tokens=record.tokens, cost=record.cost, latency_ms=record.latency_ms
            )

    async def totals(self, submission_id: str) -> SubmissionTotals:
        async with self._lock:
            totals = await self._ensure_loaded()
        return totals.get(submission_id, SubmissionTotals())


PersistFailureHandler = Callable[[UsageRecord, Exception], None]


class UsageMeter:
    """
    Turns one concluded provider call into a UsageRecord and persists it.

    `record()` never raises: if the sink fails, the failure is logged,
    counted and handed to `on_persist_failure`, and the computed record is
    still returned to the caller.
    """

    def __init__(
        self,
        sink: UsageSink,
        pricing: PricingTable = DEFAULT_PRICING,
        *,
        chars_per_token: int = 4,
        on_persist_failure: PersistFailureHandler | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.sink = sink
        self.pricing = pricing
        self._chars_per_token = chars_per_token
        self._on_persist_failure = on_persist_failure
        self._now: Callable[[], datetime] = now or (lambda: datetime.now(timezone.utc))

    async def record(
        self,
        ctx: SessionContext,
        request: ChatRequest,
        outcome: ProviderReply | ProviderError,
        latency_ms: int,
        *,
        attempts: int = 1,
        fallback_used: bool = False,
    ) -> UsageRecord:
        provider = request.provider or ""
        model = request.model or ""
        metadata: dict[str, object] = {"temperature": request.temperature, "maxTokens": request.max_tokens}

        if isinstance(outcome, ProviderReply):
            usage = usage_from_reply(outcome, request.messages, chars_per_token=self._chars_per_token)
            quote = self.pricing.quote(provider, model, usage)
            cost, pricing_unknown = quote.cost, quote.pricing_unknown
            success, error_kind = True, None
            if outcome.model != model:
                metadata["upstreamModel"] = outcome.model
        else:
            usage = TokenUsage(input_tokens=0, output_tokens=0)
            cost, pricing_unknown = Decimal(0), False
            success, error_kind = False, outcome.kind.value
            metadata["error"] = str(outcome)

        record = UsageRecord(
            session_id=ctx.session_id,
            submission_id=ctx.submission_id,
            provider=provider,
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            tokens=usage.total_tokens,
            cost=cost,
            latency_ms=max(0, int(latency_ms)),
            timestamp=self._now(),
            success=success,
            error_kind=error_kind,
            attempts=attempts,
            approximate_tokens=usage.approximate,
            pricing_unknown=pricing_unknown,
            fallback_used=fallback_used,
            metadata=metadata,
        )

        usage_records_total.labels(provider=provider, success=str(success).lower()).inc()
        if success:
            # Unpriced models share one label value to keep series bounded.
            metric_model = "other" if pricing_unknown else model
            usage_tokens_total.labels(provider=provider, model=metric_model, direction="input").inc(usage.input_tokens)
            usage_tokens_total.labels(provider=provider, model=metric_model, direction="output").inc(usage.output_tokens)
            usage_cost_total.labels(provider=provider, model=metric_model).inc(float(cost))

        try:
            await self.sink.append(record)
        except Exception as e:
            metering_persist_failures_total.inc()
            log.exception(
                "usage_persist_failed",
                session_id=ctx.session_id,
                submission_id=ctx.submission_id,
                provider=provider,
                model=model,
            )
            if self._on_persist_failure is not None:
                try:
                    self._on_persist_failure(record, e)
                except Exception:
                    log.exception("usage_persist_failure_handler_failed")
        else:
            log.info(
                "usage_recorded",
                session_id=ctx.session_id,
                submission_id=ctx.submission_id,
                provider=provider,
                model=model,
                tokens=record.tokens,
                cost=str(record.cost),
                latency_ms=record.latency_ms,
                success=success,
                error_kind=error_kind,
                attempts=attempts,
            )
        return record
