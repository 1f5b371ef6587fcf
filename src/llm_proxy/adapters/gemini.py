from __future__ import annotations

from typing import Any
from urllib.parse import quote

from ..contracts import ChatRequest, ProviderName, ProviderReply, Role
from ..errors import InvalidRequestError, UpstreamProtocolError
from .base import PreparedCall, ProviderAdapter, optional_int, split_system


class GeminiAdapter(ProviderAdapter):
    """Gemini Developer API (`generateContent`, api key as query param)."""

    name = ProviderName.GEMINI.value
    temperature_range = (0.0, 2.0)
    max_output_tokens = 8192

    def prepare_call(self, request: ChatRequest, model: str) -> PreparedCall:
        system_instruction, chat = split_system(request.messages)
        if not chat:
            raise InvalidRequestError("Gemini requires at least one non-system message.", provider=self.name)

        contents: list[dict[str, Any]] = []
        for msg in chat:
            gemini_role = "model" if msg.role is Role.ASSISTANT else "user"
            contents.append({"role": gemini_role, "parts": [{"text": msg.content}]})

        payload: dict[str, Any] = {"contents": contents}
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        generation_config: dict[str, Any] = {}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.max_tokens is not None:
            generation_config["maxOutputTokens"] = request.max_tokens
        if generation_config:
            payload["generationConfig"] = generation_config

        model_path = quote(model, safe="")
        return PreparedCall(
            url=f"{self._base_url}/models/{model_path}:generateContent",
            payload=payload,
            params={"key": self.api_key or ""},
        )

    def parse_reply(self, data: dict[str, Any], model: str) -> ProviderReply:
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            raise UpstreamProtocolError("Missing candidates in upstream response.", provider=self.name)

        content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
        if not isinstance(content, dict):
            raise UpstreamProtocolError("Missing content in upstream response.", provider=self.name)

        parts = content.get("parts")
        if not isinstance(parts, list) or not parts:
            raise UpstreamProtocolError("Missing parts in upstream response.", provider=self.name)

        text = "".join(p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str))
        if not text.strip():
            raise UpstreamProtocolError("Missing text in upstream response.", provider=self.name)

        usage = data.get("usageMetadata") if isinstance(data.get("usageMetadata"), dict) else {}
        return ProviderReply(
            content=text.strip(),
            model=data.get("modelVersion") if isinstance(data.get("modelVersion"), str) else model,
            input_tokens=optional_int(usage.get("promptTokenCount")),
            output_tokens=optional_int(usage.get("candidatesTokenCount")),
        )
