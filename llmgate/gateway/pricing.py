"""Cost estimation tables.

Prices are USD per 1M tokens as ``(input, output)``. Unknown models fall
back to the provider default; providers without a table (local Ollama)
cost nothing.
"""

from __future__ import annotations

import math

from llmgate.gateway.types import ProviderId, TokenUsage

PRICING: dict[ProviderId, dict[str, tuple[float, float]]] = {
    ProviderId.OPENAI: {
        "gpt-4o-mini": (0.15, 0.60),
        "gpt-4o": (2.50, 10.00),
        "gpt-4.1": (2.00, 8.00),
        "gpt-4.1-mini": (0.40, 1.60),
        "gpt-3.5-turbo": (0.50, 1.50),
        "text-embedding-3-small": (0.02, 0.0),
        "text-embedding-3-large": (0.13, 0.0),
    },
    ProviderId.ANTHROPIC: {
        "claude-3-5-haiku-20241022": (0.80, 4.00),
        "claude-3-5-sonnet-20241022": (3.00, 15.00),
        "claude-sonnet-4-20250514": (3.00, 15.00),
        "claude-3-opus-20240229": (15.00, 75.00),
    },
    ProviderId.GEMINI: {
        "gemini-2.0-flash": (0.10, 0.40),
        "gemini-1.5-flash": (0.075, 0.30),
        "gemini-1.5-pro": (1.25, 5.00),
        "text-embedding-004": (0.0, 0.0),
    },
    ProviderId.MISTRAL: {
        "mistral-small-latest": (0.20, 0.60),
        "mistral-large-latest": (2.00, 6.00),
        "mistral-embed": (0.10, 0.0),
    },
    ProviderId.GROQ: {
        "llama-3.1-8b-instant": (0.05, 0.08),
        "llama-3.3-70b-versatile": (0.59, 0.79),
    },
    ProviderId.OPENROUTER: {
        "openai/gpt-4o-mini": (0.15, 0.60),
    },
    ProviderId.DEEPSEEK: {
        "deepseek-chat": (0.28, 0.42),
        "deepseek-reasoner": (0.55, 2.19),
    },
}

# Used when the model is missing from the provider table
DEFAULT_PRICING: dict[ProviderId, tuple[float, float]] = {
    ProviderId.OPENAI: (0.15, 0.60),
    ProviderId.ANTHROPIC: (3.00, 15.00),
    ProviderId.GEMINI: (0.10, 0.40),
    ProviderId.MISTRAL: (0.20, 0.60),
    ProviderId.GROQ: (0.05, 0.08),
    ProviderId.OPENROUTER: (0.50, 1.50),
    ProviderId.DEEPSEEK: (0.28, 0.42),
}


def price_for(provider: ProviderId, model: str) -> tuple[float, float]:
    table = PRICING.get(provider, {})
    if model in table:
        return table[model]
    # Dated snapshots ("gpt-4o-mini-2024-07-18") match their base name
    for name in sorted(table, key=len, reverse=True):
        if model.startswith(name):
            return table[name]
    return DEFAULT_PRICING.get(provider, (0.0, 0.0))


def estimate_cost(provider: ProviderId, model: str, usage: TokenUsage) -> float:
    """Cost in USD for the given usage."""
    input_price, output_price = price_for(provider, model)
    cost = (usage.prompt_tokens * input_price + usage.completion_tokens * output_price) / 1_000_000
    return round(cost, 8)


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    if not text:
        return 0
    return max(1, math.ceil(len(text) / 4))
