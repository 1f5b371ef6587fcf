from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from ..contracts import ChatRequest, Message, ProviderReply, Role
from ..errors import (
    AuthenticationError,
    InvalidRequestError,
    RateLimitError,
    UpstreamProtocolError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)

log = structlog.get_logger()


@dataclass(frozen=True)
class PreparedCall:
    url: str
    payload: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)


def split_system(messages: tuple[Message, ...]) -> tuple[str | None, list[Message]]:
    """Pull system messages out into one instruction string."""
    system_parts: list[str] = []
    chat: list[Message] = []
    for msg in messages:
        if msg.role is Role.SYSTEM:
            if msg.content:
                system_parts.append(msg.content)
            continue
        chat.append(msg)
    return "\n\n".join(system_parts).strip() or None, chat


def optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value >= 0 else None


def _upstream_message(resp: httpx.Response) -> str | None:
    try:
        data = resp.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    err = data.get("error")
    if isinstance(err, dict) and isinstance(err.get("message"), str):
        return err["message"]
    if isinstance(err, str):
        return err
    return None


def _retry_after_seconds(resp: httpx.Response) -> int | None:
    retry_after = resp.headers.get("retry-after")
    return int(retry_after) if retry_after and retry_after.isdigit() else None


class ProviderAdapter(ABC):
    """
    Translates a normalized ChatRequest into one provider's wire format.

    One `send()` is exactly one outbound HTTP call; retry policy belongs to
    the router. Subclasses declare their default model and parameter bounds,
    which the router uses for clamping.
    """

    name: str = ""
    temperature_range: tuple[float, float] = (0.0, 2.0)
    max_output_tokens: int = 4096

    def __init__(
        self,
        *,
        api_key: str | None,
        client: httpx.AsyncClient,
        base_url: str,
        default_model: str,
        timeout_seconds: float = 60.0,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._base_url = base_url.rstrip("/")

    @abstractmethod
    def prepare_call(self, request: ChatRequest, model: str) -> PreparedCall:
        """Build url, headers and JSON payload for the provider."""

    @abstractmethod
    def parse_reply(self, data: dict[str, Any], model: str) -> ProviderReply:
        """Extract content and token counts from the provider response."""

    async def send(self, request: ChatRequest) -> ProviderReply:
        if not self.api_key:
            raise AuthenticationError(f"Missing API key for provider {self.name!r}.", provider=self.name)

        model = request.model or self.default_model
        call = self.prepare_call(request, model)

        try:
            resp = await self._client.post(
                call.url,
                params=call.params or None,
                headers=call.headers,
                json=call.payload,
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError("Upstream request timed out.", provider=self.name) from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError("Upstream request failed.", provider=self.name) from e

        self._raise_for_status(resp)

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamProtocolError("Upstream returned invalid JSON.", provider=self.name) from e
        if not isinstance(data, dict):
            raise UpstreamProtocolError("Upstream returned a non-object body.", provider=self.name)

        reply = self.parse_reply(data, model)
        log.debug(
            "provider_call_ok",
            provider=self.name,
            model=model,
            input_tokens=reply.input_tokens,
            output_tokens=reply.output_tokens,
        )
        return reply

    def _raise_for_status(self, resp: httpx.Response) -> None:
        status = resp.status_code
        if status < 400:
            return
        detail = _upstream_message(resp)
        suffix = f": {detail}" if detail else "."
        if status in (401, 403):
            raise AuthenticationError(f"Upstream rejected credentials{suffix}", provider=self.name)
        if status == 429:
            raise RateLimitError(
                retry_after_seconds=_retry_after_seconds(resp),
                message=f"Upstream rate limited the request{suffix}",
                provider=self.name,
            )
        if status == 408:
            raise UpstreamTimeoutError(f"Upstream request timed out{suffix}", provider=self.name)
        if status >= 500:
            log.warning("provider_upstream_5xx", provider=self.name, status_code=status, body=resp.text[:500])
            raise UpstreamUnavailableError(f"Upstream error {status}.", provider=self.name)
        raise InvalidRequestError(f"Upstream rejected the request ({status}){suffix}", provider=self.name)
