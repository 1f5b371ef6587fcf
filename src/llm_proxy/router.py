from __future__ import annotations

import asyncio
import math
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from decimal import Decimal

import structlog

from .adapters import AdapterRegistry, ProviderAdapter
from .budget import SubmissionBudget
from .contracts import ChatRequest, ChatResult, Message, ProviderReply, Role, SessionContext, Usage
from .errors import (
    ConfigurationError,
    InternalRouterError,
    ProviderError,
    ProviderExhaustedError,
    RateLimitError,
    UpstreamTimeoutError,
    ValidationFailedError,
)
from .gate import SubmissionGate
from .metering import UsageMeter
from .metrics import provider_attempts_total, provider_latency_seconds, router_fallbacks_total, router_retries_total

log = structlog.get_logger()


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 2
    backoff_initial_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    # Bounds every attempt plus backoff for one route() call.
    deadline_seconds: float = 90.0


@dataclass
class _CallState:
    """Per-call bookkeeping; never shared between calls."""

    request: ChatRequest
    attempts: int = 0
    fallback_used: bool = False


class Router:
    """
    Validates a request, picks an adapter, applies retry/fallback policy and
    meters the concluded call exactly once.

    Temperature and max_tokens are bound-checked here, against the ranges
    each adapter declares, so clamping behaves the same for every provider.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        meter: UsageMeter,
        *,
        default_provider: str = "openai",
        default_temperature: float = 0.7,
        default_max_tokens: int = 1000,
        policy: RetryPolicy | None = None,
        fallback_provider: str | None = None,
        budget: SubmissionBudget | None = None,
        gate: SubmissionGate | None = None,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        if default_provider not in registry:
            raise ConfigurationError(f"Default provider {default_provider!r} is not registered.")
        if fallback_provider is not None and fallback_provider not in registry:
            raise ConfigurationError(f"Fallback provider {fallback_provider!r} is not registered.")

        self._registry = registry
        self._meter = meter
        self.default_provider = default_provider
        self.default_temperature = default_temperature
        self.default_max_tokens = max(1, default_max_tokens)
        self.policy = policy or RetryPolicy()
        self.fallback_provider = fallback_provider
        self._budget = budget
        self._gate = gate
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep
        self._clock: Callable[[], float] = clock or time.monotonic

    def validate(self, ctx: SessionContext, request: ChatRequest) -> None:
        if not isinstance(ctx.session_id, str) or not ctx.session_id.strip():
            raise ValidationFailedError("sessionId is required.")
        if not isinstance(ctx.submission_id, str) or not ctx.submission_id.strip():
            raise ValidationFailedError("submissionId is required.")

        if not request.messages:
            raise ValidationFailedError("messages must be a non-empty array.")
        for msg in request.messages:
            if not isinstance(msg, Message) or not isinstance(msg.role, Role):
                raise ValidationFailedError("Each message needs a role of system, user or assistant.")
            if not isinstance(msg.content, str):
                raise ValidationFailedError("Message content must be a string.")
        if not any(m.role is Role.USER and m.content.strip() for m in request.messages):
            raise ValidationFailedError("No user message provided.")

        if request.provider is not None and request.provider not in self._registry:
            raise ValidationFailedError(
                f"Unknown provider {request.provider!r}; expected one of {self._registry.names()}."
            )
        if request.model is not None and (not isinstance(request.model, str) or not request.model.strip()):
            raise ValidationFailedError("model must be a non-empty string when given.")

        t = request.temperature
        if t is not None and (isinstance(t, bool) or not isinstance(t, (int, float)) or not math.isfinite(t)):
            raise ValidationFailedError("temperature must be a number.")
        n = request.max_tokens
        if n is not None and (isinstance(n, bool) or not isinstance(n, int) or n <= 0):
            raise ValidationFailedError("maxTokens must be a positive integer.")

    def resolve(self, request: ChatRequest) -> ChatRequest:
        adapter = self._registry.get(request.provider or self.default_provider)
        return self._fit(adapter, request, model=request.model or adapter.default_model)

    def _fit(self, adapter: ProviderAdapter, request: ChatRequest, *, model: str) -> ChatRequest:
        temperature = float(request.temperature if request.temperature is not None else self.default_temperature)
        low, high = adapter.temperature_range
        clamped = min(max(temperature, low), high)
        max_tokens = min(request.max_tokens or self.default_max_tokens, adapter.max_output_tokens)
        if clamped != temperature or (request.max_tokens or 0) > max_tokens:
            log.info(
                "router_params_clamped",
                provider=adapter.name,
                temperature=temperature,
                clamped_temperature=clamped,
                max_tokens=request.max_tokens,
                clamped_max_tokens=max_tokens,
            )
        return replace(request, provider=adapter.name, model=model, temperature=clamped, max_tokens=max_tokens)

    async def route(self, ctx: SessionContext, request: ChatRequest) -> ChatResult:
        self.validate(ctx, request)
        if self._gate is not None:
            await self._gate.check(ctx.submission_id)
        if self._budget is not None:
            await self._budget.check(ctx.submission_id)

        state = _CallState(request=self.resolve(request))
        started = self._clock()
        deadline = started + max(0.0, self.policy.deadline_seconds)

        try:
            outcome = await self._run_policy(state, request, deadline)
        except asyncio.CancelledError:
            log.warning(
                "route_cancelled",
                session_id=ctx.session_id,
                submission_id=ctx.submission_id,
                provider=state.request.provider,
                attempts=state.attempts,
            )
            cancelled = UpstreamTimeoutError("Request cancelled.", provider=state.request.provider)
            # The upstream may already have billed the call.
            await asyncio.shield(self._meter_safely(ctx, state, cancelled, started))
            raise
        except Exception as e:
            log.exception(
                "router_internal_error",
                session_id=ctx.session_id,
                submission_id=ctx.submission_id,
                provider=state.request.provider,
            )
            failure = ProviderError(f"Internal error: {e}", provider=state.request.provider)
            await self._meter_safely(ctx, state, failure, started)
            raise InternalRouterError("Unexpected error while routing the request.") from e

        usage = await self._meter_safely(ctx, state, outcome, started)

        if isinstance(outcome, ProviderError):
            log.warning(
                "route_failed",
                session_id=ctx.session_id,
                submission_id=ctx.submission_id,
                provider=state.request.provider,
                model=state.request.model,
                kind=outcome.kind.value,
                attempts=state.attempts,
                error=str(outcome),
            )
            if outcome.retryable:
                raise ProviderExhaustedError(outcome)
            raise outcome

        return ChatResult(
            content=outcome.content,
            model=state.request.model or "",
            provider=state.request.provider or "",
            usage=usage,
        )

    async def _meter_safely(
        self,
        ctx: SessionContext,
        state: _CallState,
        outcome: ProviderReply | ProviderError,
        started: float,
    ) -> Usage:
        latency_ms = int(max(0.0, self._clock() - started) * 1000)
        try:
            record = await self._meter.record(
                ctx,
                state.request,
                outcome,
                latency_ms,
                attempts=state.attempts,
                fallback_used=state.fallback_used,
            )
        except Exception:
            log.exception("metering_failed", session_id=ctx.session_id, submission_id=ctx.submission_id)
            return Usage(tokens=0, cost=Decimal(0), latency_ms=latency_ms)
        return Usage(tokens=record.tokens, cost=record.cost, latency_ms=record.latency_ms)

    async def _run_policy(
        self, state: _CallState, original: ChatRequest, deadline: float
    ) -> ProviderReply | ProviderError:
        outcome = await self._try_provider(state, deadline)
        if isinstance(outcome, ProviderReply) or not outcome.retryable:
            return outcome

        fallback = self.fallback_provider
        if fallback is None or fallback == state.request.provider or self._clock() >= deadline:
            return outcome

        adapter = self._registry.get(fallback)
        router_fallbacks_total.labels(from_provider=state.request.provider, to_provider=fallback).inc()
        log.warning(
            "router_fallback",
            from_provider=state.request.provider,
            to_provider=fallback,
            kind=outcome.kind.value,
        )
        # Same logical request; the fallback adapter picks its own model and bounds.
        state.request = self._fit(adapter, original, model=adapter.default_model)
        state.fallback_used = True
        return await self._try_provider(state, deadline)

    async def _try_provider(self, state: _CallState, deadline: float) -> ProviderReply | ProviderError:
        adapter = self._registry.get(state.request.provider or self.default_provider)

        for attempt in range(max(0, self.policy.max_retries) + 1):
            remaining = deadline - self._clock()
            if remaining <= 0:
                return UpstreamTimeoutError("Routing deadline exceeded.", provider=adapter.name)

            state.attempts += 1
            attempt_started = self._clock()
            try:
                reply = await asyncio.wait_for(adapter.send(state.request), timeout=remaining)
            except asyncio.TimeoutError:
                self._observe(adapter.name, "timeout", attempt_started)
                return UpstreamTimeoutError("Routing deadline exceeded.", provider=adapter.name)
            except ProviderError as e:
                self._observe(adapter.name, e.kind.value, attempt_started)
                if not e.retryable or attempt >= self.policy.max_retries:
                    return e
                delay = self._compute_backoff(attempt, e)
                if self._clock() + delay >= deadline:
                    return e
                router_retries_total.labels(provider=adapter.name, kind=e.kind.value).inc()
                log.info(
                    "router_retry",
                    provider=adapter.name,
                    kind=e.kind.value,
                    attempt=state.attempts,
                    delay_seconds=round(delay, 3),
                )
                await self._sleep(delay)
                continue

            self._observe(adapter.name, "success", attempt_started)
            return reply

        raise AssertionError("retry loop exited without an outcome")  # pragma: no cover

    def _observe(self, provider: str, outcome: str, attempt_started: float) -> None:
        provider_attempts_total.labels(provider=provider, outcome=outcome).inc()
        provider_latency_seconds.labels(provider=provider).observe(max(0.0, self._clock() - attempt_started))

    def _compute_backoff(self, retry_index: int, error: ProviderError) -> float:
        if isinstance(error, RateLimitError) and error.retry_after_seconds is not None:
            return float(min(error.retry_after_seconds, self.policy.backoff_max_seconds))
        initial = max(0.0, self.policy.backoff_initial_seconds)
        base = float(min(max(initial, self.policy.backoff_max_seconds), initial * (2**retry_index)))
        # Small jitter keeps concurrent sessions from retrying in lockstep.
        jitter = float(random.uniform(0.0, min(0.25, base * 0.1))) if base > 0 else 0.0
        return base + jitter
