from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from scrapedeck.core.config import settings
from scrapedeck.services.llm.base import Generation


class OllamaGenerator:
    """
    Local generation through Ollama.

    Uses /api/generate (non-streaming). Token count is
    prompt_eval_count + eval_count when Ollama reports them.
    """

    name = "ollama"

    def __init__(
        self,
        base_url: Optional[str] = None,
        default_model: Optional[str] = None,
        timeout_s: Optional[float] = None,
        temperature: float = 0.2,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self.default_model = default_model or settings.ollama_model
        self.timeout_s = timeout_s or settings.ai_timeout_sec
        self.temperature = temperature
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def generate(self, prompt: str, model: Optional[str] = None, system: Optional[str] = None) -> Generation:
        model = model or self.default_model
        payload: Dict[str, Any] = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self.temperature,
            },
        }
        if system:
            payload["system"] = system

        with httpx.Client(timeout=self.timeout_s, transport=self._transport) as client:
            r = client.post(f"{self.base_url}/api/generate", json=payload)
            r.raise_for_status()
            data = r.json()

        # Ollama returns {"response": "...", "prompt_eval_count": n, "eval_count": m, ...}
        text = (data.get("response") or "").strip()
        tokens = int(data.get("prompt_eval_count") or 0) + int(data.get("eval_count") or 0)
        return Generation(text=text, tokens_used=tokens, model=model)
