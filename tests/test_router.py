import asyncio
from decimal import Decimal

import pytest

from llm_proxy.adapters import AdapterRegistry
from llm_proxy.budget import SubmissionBudget
from llm_proxy.contracts import ChatRequest, Message, ProviderReply, Role, SessionContext
from llm_proxy.errors import (
    AuthenticationError,
    BudgetExceededError,
    ConfigurationError,
    ErrorKind,
    InternalRouterError,
    InvalidRequestError,
    ProviderExhaustedError,
    RateLimitError,
    SubmissionNotActiveError,
    SubmissionNotFoundError,
    UpstreamUnavailableError,
    ValidationFailedError,
)
from llm_proxy.gate import StaticSubmissionGate
from llm_proxy.metering import InMemoryUsageSink, UsageMeter
from llm_proxy.pricing import PricingEntry, PricingTable
from llm_proxy.router import RetryPolicy, Router

CTX = SessionContext(session_id="session_1", submission_id="sub_1")


class FakeAdapter:
    """Scripted adapter: pops one outcome per send(); succeeds once the script runs out."""

    def __init__(
        self,
        name: str = "openai",
        default_model: str = "gpt-4o-mini",
        outcomes=(),
        temperature_range=(0.0, 2.0),
        max_output_tokens: int = 4096,
    ):
        self.name = name
        self.default_model = default_model
        self.api_key = "k"
        self.temperature_range = temperature_range
        self.max_output_tokens = max_output_tokens
        self.outcomes = list(outcomes)
        self.calls: list[ChatRequest] = []

    async def send(self, request: ChatRequest) -> ProviderReply:
        self.calls.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return outcome
        return ProviderReply(content=f"reply from {self.name}", model=request.model or "", input_tokens=10, output_tokens=5)


class HangingAdapter(FakeAdapter):
    async def send(self, request: ChatRequest) -> ProviderReply:
        self.calls.append(request)
        await asyncio.sleep(5)
        raise AssertionError("should have been cancelled")


class BrokenSink:
    async def append(self, record):
        raise OSError("disk full")

    async def totals(self, submission_id):
        raise OSError("disk full")


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


async def no_sleep(_: float) -> None:
    return None


def _user(text: str = "hi", **kwargs) -> ChatRequest:
    return ChatRequest(messages=(Message(Role.USER, text),), **kwargs)


def _router(*adapters, sink=None, pricing=None, **kwargs):
    sink = sink if sink is not None else InMemoryUsageSink()
    meter = UsageMeter(sink, pricing) if pricing is not None else UsageMeter(sink)
    kwargs.setdefault("sleeper", no_sleep)
    return Router(AdapterRegistry(adapters), meter, **kwargs), sink


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "ctx",
    [
        SessionContext(session_id="", submission_id="sub_1"),
        SessionContext(session_id="session_1", submission_id=""),
        SessionContext(session_id="   ", submission_id="sub_1"),
    ],
)
async def test_missing_ids_fail_before_any_adapter_call(ctx):
    adapter = FakeAdapter()
    router, sink = _router(adapter)

    with pytest.raises(ValidationFailedError):
        await router.route(ctx, _user())

    assert adapter.calls == []
    assert sink.records() == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_",
    [
        ChatRequest(messages=()),
        ChatRequest(messages=(Message(Role.SYSTEM, "rules only"),)),
        ChatRequest(messages=(Message(Role.USER, "   "),)),
        _user(provider="mistral"),
        _user(model="  "),
        _user(temperature=float("nan")),
        _user(max_tokens=0),
        _user(max_tokens=-5),
    ],
)
async def test_invalid_requests_are_rejected_without_a_record(request_):
    adapter = FakeAdapter()
    router, sink = _router(adapter)

    with pytest.raises(ValidationFailedError):
        await router.route(CTX, request_)

    assert adapter.calls == []
    assert sink.records() == []


@pytest.mark.asyncio
async def test_omitted_provider_and_model_resolve_to_defaults():
    adapter = FakeAdapter(default_model="gpt-4o-mini")
    router, sink = _router(adapter, FakeAdapter(name="gemini", default_model="gemini-1.5-pro"))

    result = await router.route(CTX, _user())

    assert result.provider == "openai"
    assert result.model == "gpt-4o-mini"
    assert adapter.calls[0].model == "gpt-4o-mini"
    assert adapter.calls[0].temperature == 0.7
    assert adapter.calls[0].max_tokens == 1000
    assert sink.records()[0].model == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_explicit_provider_and_model_are_used():
    openai = FakeAdapter()
    gemini = FakeAdapter(name="gemini", default_model="gemini-1.5-pro")
    router, _ = _router(openai, gemini)

    result = await router.route(CTX, _user(provider="gemini", model="gemini-1.5-flash"))

    assert openai.calls == []
    assert gemini.calls[0].model == "gemini-1.5-flash"
    assert result.provider == "gemini"
    assert result.model == "gemini-1.5-flash"
    assert result.content == "reply from gemini"


@pytest.mark.asyncio
async def test_parameters_are_clamped_to_adapter_bounds():
    anthropic = FakeAdapter(
        name="anthropic", default_model="claude", temperature_range=(0.0, 1.0), max_output_tokens=8192
    )
    router, _ = _router(anthropic, default_provider="anthropic")

    await router.route(CTX, _user(temperature=1.7, max_tokens=50_000))
    await router.route(CTX, _user(temperature=-3))

    assert anthropic.calls[0].temperature == 1.0
    assert anthropic.calls[0].max_tokens == 8192
    assert anthropic.calls[1].temperature == 0.0


@pytest.mark.asyncio
async def test_rate_limited_twice_then_success():
    adapter = FakeAdapter(outcomes=[RateLimitError(), RateLimitError()])
    router, sink = _router(adapter)

    result = await router.route(CTX, _user())

    assert result.content == "reply from openai"
    assert len(adapter.calls) == 3
    records = sink.records()
    assert len(records) == 1
    assert records[0].success is True
    assert records[0].attempts == 3


@pytest.mark.asyncio
async def test_auth_failure_is_terminal_and_recorded():
    adapter = FakeAdapter(outcomes=[AuthenticationError("bad key", provider="openai")])
    router, sink = _router(adapter)

    with pytest.raises(AuthenticationError):
        await router.route(CTX, _user())

    assert len(adapter.calls) == 1
    (record,) = sink.records()
    assert record.success is False
    assert record.error_kind == "auth_failure"
    assert record.tokens == 0
    assert record.cost == Decimal(0)


@pytest.mark.asyncio
async def test_invalid_request_is_not_retried():
    adapter = FakeAdapter(outcomes=[InvalidRequestError("bad model")])
    router, sink = _router(adapter)

    with pytest.raises(InvalidRequestError):
        await router.route(CTX, _user())

    assert len(adapter.calls) == 1
    assert sink.records()[0].error_kind == "invalid_request"


@pytest.mark.asyncio
async def test_retryable_failures_exhaust_after_bound():
    adapter = FakeAdapter(outcomes=[UpstreamUnavailableError()] * 5)
    router, sink = _router(adapter, policy=RetryPolicy(max_retries=2))

    with pytest.raises(ProviderExhaustedError) as exc:
        await router.route(CTX, _user())

    assert exc.value.kind is ErrorKind.UNAVAILABLE
    assert len(adapter.calls) == 3
    (record,) = sink.records()
    assert record.success is False
    assert record.error_kind == "unavailable"
    assert record.attempts == 3


@pytest.mark.asyncio
async def test_backoff_grows_and_honours_retry_after():
    clock = FakeClock()
    adapter = FakeAdapter(outcomes=[RateLimitError(retry_after_seconds=30), UpstreamUnavailableError()])
    router, _ = _router(
        adapter,
        policy=RetryPolicy(max_retries=2, backoff_initial_seconds=0.5, backoff_max_seconds=8.0, deadline_seconds=60),
        sleeper=clock.sleep,
        clock=clock,
    )

    await router.route(CTX, _user())

    assert clock.sleeps[0] == 8.0
    assert 1.0 <= clock.sleeps[1] <= 1.1


@pytest.mark.asyncio
async def test_deadline_stops_retrying():
    clock = FakeClock()
    adapter = FakeAdapter(outcomes=[UpstreamUnavailableError()] * 5)
    router, sink = _router(
        adapter,
        policy=RetryPolicy(max_retries=5, backoff_initial_seconds=0.5, backoff_max_seconds=8.0, deadline_seconds=1.0),
        sleeper=clock.sleep,
        clock=clock,
    )

    with pytest.raises(ProviderExhaustedError):
        await router.route(CTX, _user())

    assert len(adapter.calls) == 2
    assert sink.records()[0].attempts == 2


@pytest.mark.asyncio
async def test_hanging_provider_is_cut_at_deadline():
    adapter = HangingAdapter()
    router, sink = _router(adapter, policy=RetryPolicy(deadline_seconds=0.05))

    with pytest.raises(ProviderExhaustedError) as exc:
        await router.route(CTX, _user())

    assert exc.value.kind is ErrorKind.TIMEOUT
    assert sink.records()[0].error_kind == "timeout"


@pytest.mark.asyncio
async def test_fallback_provider_used_after_exhaustion():
    primary = FakeAdapter(outcomes=[UpstreamUnavailableError()] * 3)
    secondary = FakeAdapter(name="anthropic", default_model="claude-3-5-sonnet-20241022", temperature_range=(0.0, 1.0))
    router, sink = _router(primary, secondary, fallback_provider="anthropic")

    result = await router.route(CTX, _user(model="gpt-4o", temperature=1.5))

    assert len(primary.calls) == 3
    assert len(secondary.calls) == 1
    assert secondary.calls[0].model == "claude-3-5-sonnet-20241022"
    assert secondary.calls[0].temperature == 1.0
    assert result.provider == "anthropic"
    (record,) = sink.records()
    assert record.fallback_used is True
    assert record.attempts == 4
    assert record.provider == "anthropic"


@pytest.mark.asyncio
async def test_no_fallback_for_terminal_errors():
    primary = FakeAdapter(outcomes=[AuthenticationError()])
    secondary = FakeAdapter(name="anthropic", default_model="claude")
    router, _ = _router(primary, secondary, fallback_provider="anthropic")

    with pytest.raises(AuthenticationError):
        await router.route(CTX, _user())
    assert secondary.calls == []


def test_unregistered_default_or_fallback_is_configuration_error():
    meter = UsageMeter(InMemoryUsageSink())
    with pytest.raises(ConfigurationError):
        Router(AdapterRegistry([FakeAdapter(name="gemini")]), meter)
    with pytest.raises(ConfigurationError):
        Router(AdapterRegistry([FakeAdapter()]), meter, fallback_provider="anthropic")


@pytest.mark.asyncio
async def test_cost_comes_from_pricing_table():
    pricing = PricingTable(
        {("openai", "gpt-x"): PricingEntry(Decimal("0.001"), Decimal("0.002"))},
        fallback=PricingEntry(Decimal(0), Decimal(0)),
    )
    adapter = FakeAdapter(outcomes=[ProviderReply(content="ok", model="gpt-x", input_tokens=100, output_tokens=50)])
    router, sink = _router(adapter, pricing=pricing)

    result = await router.route(CTX, _user(model="gpt-x"))

    assert result.usage.tokens == 150
    assert result.usage.cost == Decimal("0.2")
    assert sink.records()[0].cost == result.usage.cost


@pytest.mark.asyncio
async def test_metering_failure_does_not_fail_the_call():
    adapter = FakeAdapter()
    router, _ = _router(adapter, sink=BrokenSink())

    result = await router.route(CTX, _user())

    assert result.content == "reply from openai"
    assert result.usage.tokens == 15


@pytest.mark.asyncio
async def test_unexpected_adapter_defect_is_recorded_as_internal_error():
    adapter = FakeAdapter(outcomes=[RuntimeError("boom")])
    router, sink = _router(adapter)

    with pytest.raises(InternalRouterError):
        await router.route(CTX, _user())

    (record,) = sink.records()
    assert record.success is False
    assert record.error_kind == "unknown"


@pytest.mark.asyncio
async def test_budget_exceeded_blocks_dispatch():
    sink = InMemoryUsageSink()
    adapter = FakeAdapter(outcomes=[ProviderReply(content="ok", model="m", input_tokens=1_000_000, output_tokens=0)])
    router, _ = _router(adapter, sink=sink, budget=SubmissionBudget(sink, max_cost=0.1))

    await router.route(CTX, _user())
    with pytest.raises(BudgetExceededError):
        await router.route(CTX, _user())

    assert len(adapter.calls) == 1
    assert len(sink.records()) == 1

    # Other submissions keep their own budget.
    await router.route(SessionContext(session_id="session_2", submission_id="sub_2"), _user())


@pytest.mark.asyncio
async def test_unknown_submission_is_rejected_before_dispatch():
    adapter = FakeAdapter()
    router, sink = _router(adapter, gate=StaticSubmissionGate({"sub_2": "in-progress"}))

    with pytest.raises(SubmissionNotFoundError):
        await router.route(CTX, _user())

    assert adapter.calls == []
    assert sink.records() == []


@pytest.mark.asyncio
async def test_inactive_submission_is_rejected_before_dispatch():
    adapter = FakeAdapter()
    gate = StaticSubmissionGate({"sub_1": "submitted"})
    router, sink = _router(adapter, gate=gate)

    with pytest.raises(SubmissionNotActiveError, match="active assessment"):
        await router.route(CTX, _user())
    assert adapter.calls == []
    assert sink.records() == []

    gate.set_status("sub_1", "in-progress")
    await router.route(CTX, _user())
    assert len(adapter.calls) == 1


@pytest.mark.asyncio
async def test_concurrent_routes_each_record_once():
    adapter = FakeAdapter()
    router, sink = _router(adapter)

    contexts = [SessionContext(session_id=f"session_{i}", submission_id=f"sub_{i % 3}") for i in range(30)]
    results = await asyncio.gather(*(router.route(ctx, _user(f"q{i}")) for i, ctx in enumerate(contexts)))

    assert len(results) == 30
    records = sink.records()
    assert len(records) == 30
    assert sorted(r.session_id for r in records) == sorted(c.session_id for c in contexts)


@pytest.mark.asyncio
async def test_cancelled_route_is_still_recorded():
    adapter = HangingAdapter()
    router, sink = _router(adapter)

    task = asyncio.create_task(router.route(CTX, _user()))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    (record,) = sink.records()
    assert record.success is False
    assert record.error_kind == "timeout"
    assert record.attempts == 1
