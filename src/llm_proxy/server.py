from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager

import httpx
import structlog

from .adapters import AdapterRegistry, build_registry
from .api_models import ProxyChatRequest, ProxyChatResponse, make_chat_response, make_error_response
from .budget import SubmissionBudget
from .config import ProxyConfig
from .credential_store import with_stored_credentials
from .errors import (
    AuthenticationError,
    BudgetExceededError,
    ConfigurationError,
    ErrorKind,
    InternalRouterError,
    InvalidRequestError,
    ProviderError,
    ProviderExhaustedError,
    RateLimitError,
    SubmissionNotActiveError,
    SubmissionNotFoundError,
    ValidationFailedError,
)
from .gate import SubmissionGate
from .http_security import install_middlewares
from .logging import configure_logging
from .metering import InMemoryUsageSink, JsonlUsageSink, UsageMeter, UsageSink
from .metrics import maybe_start_metrics, server_errors_total, server_request_latency_seconds, server_requests_total
from .pricing import load_pricing
from .router import RetryPolicy, Router

CHAT_PATH = "/llm-proxy/chat"


def build_router(
    cfg: ProxyConfig,
    *,
    client: httpx.AsyncClient | None = None,
    sink: UsageSink | None = None,
    gate: SubmissionGate | None = None,
) -> tuple[Router, AdapterRegistry]:
    """Wire adapters, metering, gate and budget from config. Caller owns `registry.aclose()`."""
    cfg = with_stored_credentials(cfg)
    registry = build_registry(cfg, client=client)
    if sink is None:
        sink = JsonlUsageSink(cfg.usage_log_path) if cfg.usage_log_path else InMemoryUsageSink()
    meter = UsageMeter(sink, load_pricing(cfg.pricing_file), chars_per_token=cfg.chars_per_token)
    budget = (
        SubmissionBudget(sink, max_cost=cfg.max_cost_per_submission, max_time_ms=cfg.max_time_ms_per_submission)
        if cfg.enable_budget
        else None
    )
    router = Router(
        registry,
        meter,
        default_provider=cfg.default_provider,
        default_temperature=cfg.default_temperature,
        default_max_tokens=cfg.default_max_tokens,
        policy=RetryPolicy(
            max_retries=cfg.upstream_max_retries,
            backoff_initial_seconds=cfg.upstream_backoff_initial_seconds,
            backoff_max_seconds=cfg.upstream_backoff_max_seconds,
            deadline_seconds=cfg.route_deadline_seconds,
        ),
        fallback_provider=cfg.fallback_provider if cfg.enable_fallback else None,
        budget=budget,
        gate=gate,
    )
    return router, registry


def create_app(cfg: ProxyConfig | None = None, router: Router | None = None):
    try:
        from fastapi import FastAPI
        from fastapi.exceptions import RequestValidationError
        from fastapi.responses import JSONResponse
    except ImportError as e:  # pragma: no cover
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    cfg = cfg or ProxyConfig()
    configure_logging(level=cfg.log_level, fmt=cfg.log_format, secrets=cfg.secrets())

    registry: AdapterRegistry | None = None
    if router is None:
        router, registry = build_router(cfg)

    def _request_id(request) -> str | None:
        return getattr(getattr(request, "state", None), "request_id", None)

    def _observe(path: str, status_code: int, started_at: float) -> None:
        server_requests_total.labels(path=path, status=str(status_code)).inc()
        server_request_latency_seconds.labels(path=path).observe(max(0.0, time.monotonic() - started_at))

    def _error(request, status_code: int, message: str, kind: str, headers: dict[str, str] | None = None):
        server_errors_total.labels(type=kind).inc()
        server_requests_total.labels(path=request.url.path, status=str(status_code)).inc()
        return JSONResponse(
            status_code=status_code,
            headers=headers,
            content=make_error_response(message=message, kind=kind, request_id=_request_id(request)).model_dump(),
        )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
        try:
            yield
        finally:
            if registry is not None:
                await registry.aclose()

    app = FastAPI(
        title="assessment-llm-proxy",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if cfg.enable_api_docs else None,
        redoc_url="/redoc" if cfg.enable_api_docs else None,
        openapi_url="/openapi.json" if cfg.enable_api_docs else None,
    )
    install_middlewares(app, cfg=cfg)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{where}: {first.get('msg', 'invalid value')}" if where else first.get("msg", "Invalid request body.")
        return _error(request, 400, message, "validation_failed")

    @app.exception_handler(SubmissionNotFoundError)
    async def _submission_not_found_handler(request, exc: SubmissionNotFoundError):
        return _error(request, 404, str(exc), "submission_not_found")

    @app.exception_handler(SubmissionNotActiveError)
    async def _submission_not_active_handler(request, exc: SubmissionNotActiveError):
        return _error(request, 400, str(exc), "submission_not_active")

    @app.exception_handler(BudgetExceededError)
    async def _budget_handler(request, exc: BudgetExceededError):
        return _error(request, 429, str(exc), "budget_exceeded")

    @app.exception_handler(ValidationFailedError)
    async def _validation_handler(request, exc: ValidationFailedError):
        return _error(request, 400, str(exc), "validation_failed")

    @app.exception_handler(ProviderExhaustedError)
    async def _exhausted_handler(request, exc: ProviderExhaustedError):
        headers = {}
        last = exc.last_error
        if isinstance(last, RateLimitError) and last.retry_after_seconds is not None:
            headers["Retry-After"] = str(last.retry_after_seconds)
        status_code = 504 if exc.kind is ErrorKind.TIMEOUT else 503
        return _error(request, status_code, str(exc), "provider_exhausted", headers=headers)

    @app.exception_handler(AuthenticationError)
    async def _auth_error_handler(request, exc: AuthenticationError):
        return _error(request, 502, str(exc), exc.kind.value)

    @app.exception_handler(InvalidRequestError)
    async def _invalid_request_handler(request, exc: InvalidRequestError):
        return _error(request, 400, str(exc), exc.kind.value)

    @app.exception_handler(ProviderError)
    async def _provider_error_handler(request, exc: ProviderError):
        return _error(request, 502, str(exc), exc.kind.value)

    @app.exception_handler(InternalRouterError)
    async def _internal_handler(request, exc: InternalRouterError):
        return _error(request, 500, str(exc), "internal")

    @app.exception_handler(ConfigurationError)
    async def _config_error_handler(request, exc: ConfigurationError):
        return _error(request, 500, str(exc), "internal")

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post(CHAT_PATH, response_model=ProxyChatResponse)
    async def llm_proxy_chat(req: ProxyChatRequest):
        started_at = time.monotonic()
        if len(req.messages) > cfg.max_messages:
            raise ValidationFailedError("Too many messages.")
        if sum(len(m.content) for m in req.messages) > cfg.max_total_message_chars:
            raise ValidationFailedError("Message content too large.")

        structlog.contextvars.bind_contextvars(session_id=req.session_id, submission_id=req.submission_id)
        result = await router.route(req.session(), req.to_chat_request())
        _observe(CHAT_PATH, 200, started_at)
        return make_chat_response(result)

    return app


def main() -> None:  # pragma: no cover
    try:
        import uvicorn
    except ImportError as e:
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("llm_proxy.server:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    main()
