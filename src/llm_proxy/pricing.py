"""
Per-token pricing for (provider, model) pairs.

The table is static configuration: built once at startup (defaults plus an
optional operator-supplied JSON file) and only read while serving requests.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Mapping

from pydantic import BaseModel, ValidationError

from .errors import ConfigurationError
from .tokens import TokenUsage

_PER_MILLION = Decimal(1_000_000)


@dataclass(frozen=True)
class PricingEntry:
    """Cost per single token, in dollars."""

    input_cost_per_token: Decimal
    output_cost_per_token: Decimal

    @classmethod
    def per_million(cls, input_cost: str | Decimal, output_cost: str | Decimal) -> "PricingEntry":
        return cls(
            input_cost_per_token=Decimal(input_cost) / _PER_MILLION,
            output_cost_per_token=Decimal(output_cost) / _PER_MILLION,
        )


@dataclass(frozen=True)
class CostQuote:
    cost: Decimal
    pricing_unknown: bool


class PricingTable:
    """Read-only (provider, model) -> PricingEntry table with a fallback rate."""

    def __init__(self, prices: Mapping[tuple[str, str], PricingEntry], *, fallback: PricingEntry):
        self._prices = dict(prices)
        self.fallback = fallback

    def lookup(self, provider: str, model: str) -> PricingEntry | None:
        return self._prices.get((provider, model))

    def quote(self, provider: str, model: str, usage: TokenUsage) -> CostQuote:
        """Cost of one call.

        Unknown pairs are charged at the fallback rate and flagged so
        reporting can tell real prices from guesses.
        """
        entry = self.lookup(provider, model)
        pricing_unknown = entry is None
        entry = entry or self.fallback
        cost = (
            Decimal(usage.input_tokens) * entry.input_cost_per_token
            + Decimal(usage.output_tokens) * entry.output_cost_per_token
        )
        return CostQuote(cost=cost, pricing_unknown=pricing_unknown)

    def merged(self, overrides: Mapping[tuple[str, str], PricingEntry]) -> "PricingTable":
        return PricingTable({**self._prices, **overrides}, fallback=self.fallback)

    def __len__(self) -> int:
        return len(self._prices)


# Dollars per 1M tokens (input, output).
_DEFAULT_PER_MILLION: dict[tuple[str, str], tuple[str, str]] = {
    ("openai", "gpt-4o"): ("2.5", "10.0"),
    ("openai", "gpt-4o-mini"): ("0.15", "0.6"),
    ("openai", "gpt-4"): ("30.0", "60.0"),
    ("openai", "gpt-3.5-turbo"): ("0.5", "1.5"),
    ("anthropic", "claude-3-5-sonnet-20241022"): ("3.0", "15.0"),
    ("anthropic", "claude-3-5-haiku-20241022"): ("0.8", "4.0"),
    ("gemini", "gemini-1.5-pro"): ("1.25", "5.0"),
    ("gemini", "gemini-1.5-flash"): ("0.075", "0.3"),
}

DEFAULT_PRICING = PricingTable(
    {pair: PricingEntry.per_million(i, o) for pair, (i, o) in _DEFAULT_PER_MILLION.items()},
    fallback=PricingEntry.per_million("0.15", "0.6"),
)


class _PricingRate(BaseModel):
    input_per_million: Decimal
    output_per_million: Decimal


class _PricingFileEntry(_PricingRate):
    provider: str
    model: str


class _PricingFile(BaseModel):
    models: list[_PricingFileEntry]
    fallback: _PricingRate | None = None


def load_pricing(path: str | None, *, base: PricingTable = DEFAULT_PRICING) -> PricingTable:
    """Overlay an operator pricing file onto `base`.

    File shape::

        {"models": [{"provider": "openai", "model": "gpt-4o",
                     "input_per_million": 2.5, "output_per_million": 10}],
         "fallback": {"input_per_million": 0.15, "output_per_million": 0.6}}
    """
    if not path:
        return base
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        parsed = _PricingFile.model_validate(raw)
    except (OSError, ValueError, ValidationError) as e:
        raise ConfigurationError(f"Invalid pricing file {path!r}: {e}") from e

    overrides = {
        (m.provider, m.model): PricingEntry.per_million(m.input_per_million, m.output_per_million)
        for m in parsed.models
    }
    table = base.merged(overrides)
    if parsed.fallback is not None:
        table.fallback = PricingEntry.per_million(
            parsed.fallback.input_per_million, parsed.fallback.output_per_million
        )
    return table
