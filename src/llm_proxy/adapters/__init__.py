from .anthropic import AnthropicAdapter
from .base import PreparedCall, ProviderAdapter
from .gemini import GeminiAdapter
from .openai import OpenAIAdapter
from .registry import AdapterRegistry, build_registry

__all__ = [
    "AdapterRegistry",
    "AnthropicAdapter",
    "GeminiAdapter",
    "OpenAIAdapter",
    "PreparedCall",
    "ProviderAdapter",
    "build_registry",
]
