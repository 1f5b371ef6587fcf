from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ProviderName(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Message":
        return cls(role=Role(raw.get("role")), content=raw.get("content", ""))

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class ChatRequest:
    messages: tuple[Message, ...]
    provider: str | None = None
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None

    def __post_init__(self) -> None:
        # Callers may hand in a list; keep the request immutable.
        if not isinstance(self.messages, tuple):
            object.__setattr__(self, "messages", tuple(self.messages))


@dataclass(frozen=True)
class SessionContext:
    session_id: str
    submission_id: str


@dataclass(frozen=True)
class ProviderReply:
    content: str
    model: str
    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass(frozen=True)
class Usage:
    tokens: int
    cost: Decimal
    latency_ms: int


@dataclass(frozen=True)
class ChatResult:
    content: str
    model: str
    provider: str
    usage: Usage


@dataclass(frozen=True)
class UsageRecord:
    session_id: str
    submission_id: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    tokens: int
    cost: Decimal
    latency_ms: int
    timestamp: datetime
    success: bool
    error_kind: str | None = None
    attempts: int = 1
    approximate_tokens: bool = False
    pricing_unknown: bool = False
    fallback_used: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Detached read-only copy of the caller's dict.
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "submissionId": self.submission_id,
            "provider": self.provider,
            "model": self.model,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "tokens": self.tokens,
            "cost": str(self.cost),
            "latencyMs": self.latency_ms,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "errorKind": self.error_kind,
            "attempts": self.attempts,
            "approximateTokens": self.approximate_tokens,
            "pricingUnknown": self.pricing_unknown,
            "fallbackUsed": self.fallback_used,
            "metadata": dict(self.metadata),
        }
