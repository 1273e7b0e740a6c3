"""
Gemini probe through Google's OpenAI-compatible endpoint.

Same request and stream shape as Chat Completions; no reasoning effort.
"""

from ..models import ProviderType
from .openai import OpenAIStrategy


class GeminiStrategy(OpenAIStrategy):
    provider = ProviderType.GEMINI
    supports_reasoning_effort = False
