from __future__ import annotations

import os
import random
import string
import time
from decimal import Decimal
from typing import Any, Iterable

import httpx
import structlog

from .contracts import ChatResult, Message, Usage
from .errors import LLMCallFailedError

log = structlog.get_logger()

DEFAULT_BASE_URL = "http://localhost:8000"

_BASE36 = string.digits + string.ascii_lowercase


def generate_session_id() -> str:
    """Opaque per-attempt accounting key: epoch millis plus a random base36 suffix.

    Not a security token; uniqueness is probabilistic.
    """
    suffix = "".join(random.choices(_BASE36, k=13))
    return f"session_{int(time.time() * 1000)}_{suffix}"


def _message_payload(msg: Message | dict[str, Any]) -> dict[str, Any]:
    if isinstance(msg, Message):
        return msg.to_dict()
    return {"role": msg.get("role"), "content": msg.get("content")}


def _error_reason(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), str) and body["error"]:
        return body["error"]
    return f"HTTP {resp.status_code}"


class LLMClient:
    """
    Caller-facing facade over the proxy endpoint.

    Bound to one session/submission pair for its lifetime; every `chat()`
    is exactly one POST to the proxy with no client-side retries.
    """

    generate_session_id = staticmethod(generate_session_id)

    def __init__(
        self,
        session_id: str,
        submission_id: str,
        *,
        base_url: str | None = None,
        auth_token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 120.0,
    ):
        self.session_id = session_id
        self.submission_id = submission_id
        self._base_url = (base_url or os.getenv("LLM_PROXY_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self._auth_token = auth_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def __aenter__(self) -> "LLMClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def chat(
        self,
        messages: Iterable[Message | dict[str, Any]],
        *,
        provider: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatResult:
        body: dict[str, Any] = {
            "sessionId": self.session_id,
            "submissionId": self.submission_id,
            "messages": [_message_payload(m) for m in messages],
        }
        optional = {"provider": provider, "model": model, "temperature": temperature, "maxTokens": max_tokens}
        body.update({k: v for k, v in optional.items() if v is not None})

        headers = {"Authorization": f"Bearer {self._auth_token}"} if self._auth_token else {}
        try:
            resp = await self._client.post(f"{self._base_url}/llm-proxy/chat", json=body, headers=headers)
        except httpx.HTTPError as e:
            log.warning("llm_client_transport_error", session_id=self.session_id, error=str(e))
            raise LLMCallFailedError(str(e) or type(e).__name__) from e

        if resp.status_code >= 400:
            raise LLMCallFailedError(_error_reason(resp), status_code=resp.status_code)

        try:
            data = resp.json()
            usage = data["usage"]
            return ChatResult(
                content=data["content"],
                model=data["model"],
                provider=data["provider"],
                usage=Usage(
                    tokens=int(usage["tokens"]),
                    cost=Decimal(str(usage["cost"])),
                    latency_ms=int(usage["latency"]),
                ),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise LLMCallFailedError("Malformed proxy response.", status_code=resp.status_code) from e
