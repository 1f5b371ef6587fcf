from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .contracts import ChatRequest, ChatResult, Message, Role, SessionContext


class ProxyMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ProxyChatRequest(BaseModel):
    """Body of `POST /llm-proxy/chat` (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # Empty ids are rejected by the router.
    session_id: str = Field(default="", alias="sessionId")
    submission_id: str = Field(default="", alias="submissionId")
    provider: str | None = None
    model: str | None = None
    messages: list[ProxyMessage]
    temperature: float | None = None
    max_tokens: int | None = Field(default=None, alias="maxTokens")

    @field_validator("provider", "model")
    @classmethod
    def _blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    def session(self) -> SessionContext:
        return SessionContext(session_id=self.session_id, submission_id=self.submission_id)

    def to_chat_request(self) -> ChatRequest:
        return ChatRequest(
            messages=tuple(Message(role=Role(m.role), content=m.content) for m in self.messages),
            provider=self.provider,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )


class ProxyUsage(BaseModel):
    tokens: int
    cost: float
    latency: int


class ProxyChatResponse(BaseModel):
    content: str
    model: str
    provider: str
    usage: ProxyUsage


def make_chat_response(result: ChatResult) -> ProxyChatResponse:
    return ProxyChatResponse(
        content=result.content,
        model=result.model,
        provider=result.provider,
        usage=ProxyUsage(
            tokens=result.usage.tokens,
            cost=float(result.usage.cost),
            latency=result.usage.latency_ms,
        ),
    )


class ProxyErrorResponse(BaseModel):
    error: str
    kind: str = "internal"
    requestId: str | None = None


def make_error_response(*, message: str, kind: str = "internal", request_id: str | None = None) -> ProxyErrorResponse:
    return ProxyErrorResponse(error=message, kind=kind, requestId=request_id)
