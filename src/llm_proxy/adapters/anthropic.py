from __future__ import annotations

from typing import Any

from ..contracts import ChatRequest, ProviderName, ProviderReply, Role
from ..errors import InvalidRequestError, UpstreamProtocolError
from .base import PreparedCall, ProviderAdapter, optional_int, split_system

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicAdapter(ProviderAdapter):
    name = ProviderName.ANTHROPIC.value
    temperature_range = (0.0, 1.0)
    max_output_tokens = 8192

    def prepare_call(self, request: ChatRequest, model: str) -> PreparedCall:
        system, chat = split_system(request.messages)
        # The Messages API takes system text top-level and must open on a user turn.
        if not chat or chat[0].role is not Role.USER:
            raise InvalidRequestError("Anthropic requires at least one user message.", provider=self.name)

        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in chat],
            # max_tokens is mandatory for this API.
            "max_tokens": request.max_tokens or self.max_output_tokens,
        }
        if system:
            payload["system"] = system
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return PreparedCall(
            url=f"{self._base_url}/messages",
            payload=payload,
            headers={"x-api-key": self.api_key or "", "anthropic-version": ANTHROPIC_VERSION},
        )

    def parse_reply(self, data: dict[str, Any], model: str) -> ProviderReply:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise UpstreamProtocolError("Missing content in upstream response.", provider=self.name)

        text = "".join(
            b["text"]
            for b in blocks
            if isinstance(b, dict) and b.get("type") == "text" and isinstance(b.get("text"), str)
        ).strip()
        if not text:
            raise UpstreamProtocolError("No text content in Anthropic response.", provider=self.name)

        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        return ProviderReply(
            content=text,
            model=data.get("model") if isinstance(data.get("model"), str) else model,
            input_tokens=optional_int(usage.get("input_tokens")),
            output_tokens=optional_int(usage.get("output_tokens")),
        )
