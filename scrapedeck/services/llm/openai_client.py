from __future__ import annotations

import logging

from openai import OpenAI

from scrapedeck.core.config import settings
from scrapedeck.services.llm.base import Generation

logger = logging.getLogger(__name__)


def _build_openai_client(api_key: str, timeout_sec: float, max_retries: int) -> OpenAI:
    return OpenAI(api_key=api_key, timeout=timeout_sec, max_retries=max_retries)


class OpenAIGenerator:
    """Chat-completions text generator (default provider)."""

    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        default_model: str | None = None,
        timeout_sec: float | None = None,
        max_retries: int | None = None,
        client: OpenAI | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.ai_api_key
        self.default_model = default_model or settings.ai_default_model
        self.timeout_sec = timeout_sec or settings.ai_timeout_sec
        self.max_retries = settings.ai_max_retries if max_retries is None else max_retries
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self.api_key)

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not self.api_key:
                raise ValueError("OPENAI_API_KEY is missing")
            self._client = _build_openai_client(self.api_key, self.timeout_sec, self.max_retries)
        return self._client

    def generate(self, prompt: str, model: str | None = None, system: str | None = None) -> Generation:
        model = model or self.default_model
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        chat = self.client.chat.completions.create(model=model, messages=messages)
        text = (chat.choices[0].message.content or "").strip()

        usage = getattr(chat, "usage", None)
        tokens = int(getattr(usage, "total_tokens", 0) or 0) if usage is not None else 0
        logger.debug("openai generation model=%s tokens=%s", model, tokens)
        return Generation(text=text, tokens_used=tokens, model=model)
