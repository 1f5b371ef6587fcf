from __future__ import annotations

from typing import Any

from ..contracts import ChatRequest, ProviderName, ProviderReply
from ..errors import UpstreamProtocolError
from .base import PreparedCall, ProviderAdapter, optional_int


class OpenAIAdapter(ProviderAdapter):
    name = ProviderName.OPENAI.value
    temperature_range = (0.0, 2.0)
    max_output_tokens = 16384

    def prepare_call(self, request: ChatRequest, model: str) -> PreparedCall:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in request.messages],
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        return PreparedCall(
            url=f"{self._base_url}/chat/completions",
            payload=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

    def parse_reply(self, data: dict[str, Any], model: str) -> ProviderReply:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise UpstreamProtocolError("Missing choices in upstream response.", provider=self.name)

        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise UpstreamProtocolError("No content in OpenAI response.", provider=self.name)

        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        return ProviderReply(
            content=content.strip(),
            model=data.get("model") if isinstance(data.get("model"), str) else model,
            input_tokens=optional_int(usage.get("prompt_tokens")),
            output_tokens=optional_int(usage.get("completion_tokens")),
        )
