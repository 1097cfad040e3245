from __future__ import annotations

from scrapedeck.core.config import settings
from scrapedeck.services.llm.base import Generation, TextGenerator
from scrapedeck.services.llm.ollama_client import OllamaGenerator
from scrapedeck.services.llm.openai_client import OpenAIGenerator


def get_generator(provider: str | None = None) -> TextGenerator:
    provider = (provider or settings.ai_provider or "openai").lower()
    if provider == "ollama":
        return OllamaGenerator()
    if provider == "openai":
        return OpenAIGenerator()
    raise ValueError(f"Unknown AI provider: {provider}")


__all__ = ["Generation", "TextGenerator", "OpenAIGenerator", "OllamaGenerator", "get_generator"]
