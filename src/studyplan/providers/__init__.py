"""Model provider adapters.

Importing this package registers every built-in adapter.
"""

from studyplan.providers.base import (
    ParsedTurn,
    ProviderAdapter,
    ProviderKind,
    get_adapter,
    register_adapter,
)
from studyplan.providers.claude import ClaudeAdapter
from studyplan.providers.gemini import GeminiAdapter
from studyplan.providers.openai import OpenAIAdapter

__all__ = [
    "ClaudeAdapter",
    "GeminiAdapter",
    "OpenAIAdapter",
    "ParsedTurn",
    "ProviderAdapter",
    "ProviderKind",
    "get_adapter",
    "register_adapter",
]
