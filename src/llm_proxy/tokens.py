from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Sequence

from .contracts import Message, ProviderReply


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int
    output_tokens: int
    approximate: bool = False

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def estimate_text_tokens(text: str, *, chars_per_token: int = 4) -> int:
    """Length heuristic: roughly `chars_per_token` characters per token, rounded up."""
    return math.ceil(len(text) / max(1, chars_per_token))


def estimate_input_tokens(messages: Sequence[Message], *, chars_per_token: int = 4) -> int:
    # Counts the serialized envelope, so role names and punctuation are included.
    text = json.dumps([m.to_dict() for m in messages])
    return estimate_text_tokens(text, chars_per_token=chars_per_token)


def usage_from_reply(reply: ProviderReply, messages: Sequence[Message], *, chars_per_token: int = 4) -> TokenUsage:
    """Prefer provider-reported counts; estimate whichever side is missing."""
    approximate = False
    input_tokens = reply.input_tokens
    if input_tokens is None:
        input_tokens = estimate_input_tokens(messages, chars_per_token=chars_per_token)
        approximate = True
    output_tokens = reply.output_tokens
    if output_tokens is None:
        output_tokens = estimate_text_tokens(reply.content, chars_per_token=chars_per_token)
        approximate = True
    return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens, approximate=approximate)
