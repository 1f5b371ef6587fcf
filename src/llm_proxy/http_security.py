from __future__ import annotations

import asyncio
import re
import secrets as secrets_module
import uuid

import structlog

from .config import ProxyConfig

PROTECTED_PREFIX = "/llm-proxy/"

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")


def coerce_request_id(value: str | None) -> str:
    if value and _REQUEST_ID_RE.fullmatch(value):
        return value
    return uuid.uuid4().hex


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        return None
    return token


def constant_time_equals(a: str, b: str) -> bool:
    return secrets_module.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _is_protected_path(path: str) -> bool:
    return path.startswith(PROTECTED_PREFIX)


def install_middlewares(app, *, cfg: ProxyConfig) -> None:
    """
    Guard the proxy routes: request ids, response headers, body size,
    in-flight cap and bearer auth, plus optional trusted-host and CORS.

    The bearer token is opaque here. It is compared only when
    `server_auth_token` is configured, otherwise merely required to be
    present when `require_bearer_token` is set.
    """
    from fastapi.responses import JSONResponse
    from starlette.middleware.base import BaseHTTPMiddleware
    from starlette.requests import Request

    from .api_models import make_error_response

    def reject(request: Request, status_code: int, message: str, kind: str, headers=None) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            headers=headers,
            content=make_error_response(
                message=message,
                kind=kind,
                request_id=getattr(request.state, "request_id", None),
            ).model_dump(),
        )

    class RequestIdMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            request_id = coerce_request_id(request.headers.get("x-request-id"))
            request.state.request_id = request_id
            structlog.contextvars.bind_contextvars(request_id=request_id)
            try:
                response = await call_next(request)
            finally:
                structlog.contextvars.clear_contextvars()
            response.headers.setdefault("X-Request-Id", request_id)
            return response

    class ResponseHeadersMiddleware(BaseHTTPMiddleware):
        def __init__(self, app_, *, hide_from_robots: bool):
            super().__init__(app_)
            self._hide_from_robots = hide_from_robots

        async def dispatch(self, request: Request, call_next):
            response = await call_next(request)
            headers = response.headers
            headers.setdefault("X-Content-Type-Options", "nosniff")
            headers.setdefault("X-Frame-Options", "DENY")
            headers.setdefault("Referrer-Policy", "no-referrer")
            if self._hide_from_robots:
                headers.setdefault("X-Robots-Tag", "noindex, nofollow")
            if _is_protected_path(request.url.path):
                headers.setdefault("Cache-Control", "no-store")
                headers.setdefault("Pragma", "no-cache")
            return response

    class ChatBodyLimitMiddleware(BaseHTTPMiddleware):
        def __init__(self, app_, *, limit: int):
            super().__init__(app_)
            self._limit = limit

        def _too_large(self, size: int) -> bool:
            return self._limit > 0 and size > self._limit

        async def dispatch(self, request: Request, call_next):
            if request.method != "POST" or not _is_protected_path(request.url.path) or self._limit <= 0:
                return await call_next(request)
            declared = request.headers.get("content-length", "")
            if (declared.isdigit() and self._too_large(int(declared))) or self._too_large(len(await request.body())):
                return reject(request, 413, "Request body too large.", "validation_failed")
            return await call_next(request)

    class InflightLimitMiddleware(BaseHTTPMiddleware):
        def __init__(self, app_, *, max_inflight: int):
            super().__init__(app_)
            self._slots = asyncio.Semaphore(max(1, max_inflight))

        async def dispatch(self, request: Request, call_next):
            if not _is_protected_path(request.url.path):
                return await call_next(request)
            if self._slots.locked():
                return reject(request, 429, "Too many LLM calls in flight. Try again later.", "rate_limited")
            async with self._slots:
                return await call_next(request)

    class BearerAuthMiddleware(BaseHTTPMiddleware):
        def __init__(self, app_, *, expected: str | None, required: bool):
            super().__init__(app_)
            self._expected = expected
            self._required = required or bool(expected)

        async def dispatch(self, request: Request, call_next):
            if not self._required or request.method == "OPTIONS" or not _is_protected_path(request.url.path):
                return await call_next(request)
            token = parse_bearer_token(request.headers.get("authorization"))
            if token and (not self._expected or constant_time_equals(token, self._expected)):
                return await call_next(request)
            return reject(
                request,
                401,
                "Missing or invalid authentication token.",
                "unauthorized",
                headers={"WWW-Authenticate": 'Bearer realm="llm-proxy"'},
            )

    app.add_middleware(ChatBodyLimitMiddleware, limit=int(cfg.max_request_body_bytes or 0))
    app.add_middleware(InflightLimitMiddleware, max_inflight=int(cfg.max_inflight_requests or 1))
    app.add_middleware(BearerAuthMiddleware, expected=cfg.server_auth_token, required=cfg.require_bearer_token)
    app.add_middleware(ResponseHeadersMiddleware, hide_from_robots=not cfg.enable_api_docs)
    # Outermost, so short-circuited responses still carry X-Request-Id.
    app.add_middleware(RequestIdMiddleware)

    if cfg.allowed_hosts:
        from starlette.middleware.trustedhost import TrustedHostMiddleware

        app.add_middleware(TrustedHostMiddleware, allowed_hosts=list(cfg.allowed_hosts))

    if cfg.cors_allow_origins:
        from fastapi.middleware.cors import CORSMiddleware

        if cfg.cors_allow_credentials and "*" in cfg.cors_allow_origins:
            raise ValueError("CORS_ALLOW_ORIGINS cannot include '*' when CORS_ALLOW_CREDENTIALS=true.")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cfg.cors_allow_origins),
            allow_credentials=cfg.cors_allow_credentials,
            allow_methods=["POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-Request-Id"],
            max_age=600,
        )
