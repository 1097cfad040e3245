"""
AI scraping adapter.

scrape_with_ai never raises: every failure comes back as
ScrapeOutcome(success=False, error=...). Text that is not JSON is kept as a
degraded success wrapped in a `text_content` envelope.
"""
from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import asdict, dataclass
from typing import Any

from scrapedeck.core.clock import utcnow
from scrapedeck.services.llm import TextGenerator, get_generator
from scrapedeck.services.llm.prompts import (
    CONNECTION_TEST_PROMPT,
    PROMPT_TEMPLATES,
    SCRAPE_PROMPT_TEMPLATE,
    VISION_NOTE,
)

logger = logging.getLogger(__name__)

TEXT_CONTENT = "text_content"
_WRAPPER_KEYS = {"extracted_content", "url", "extraction_type", "timestamp"}
_URL_RE = re.compile(r"https?://[^\s\"'<>)\]]+")


@dataclass
class ScrapeOutcome:
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    tokens_used: int = 0
    execution_time_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ----------------------------
# JSON helpers
# ----------------------------

def _strip_fences(text: str) -> str:
    s = (text or "").strip()
    if s.startswith("```"):
        s = re.sub(r"^```[a-zA-Z]*\s*", "", s)
        s = re.sub(r"\s*```$", "", s)
    return s.strip()


def extract_json_array(text: str) -> list[Any] | None:
    """
    Best-effort JSON array extraction if the model wraps it in prose.
    Returns None when no array can be parsed.
    """
    s = _strip_fences(text)
    if not s:
        return None
    try:
        parsed = json.loads(s)
        return parsed if isinstance(parsed, list) else None
    except Exception:
        pass

    start = s.find("[")
    end = s.rfind("]")
    if start >= 0 and end > start:
        try:
            parsed = json.loads(s[start : end + 1])
            return parsed if isinstance(parsed, list) else None
        except Exception:
            return None
    return None


def extract_urls(text: str) -> list[str]:
    seen: list[str] = []
    for m in _URL_RE.findall(text or ""):
        url = m.rstrip(".,;:")
        if url not in seen:
            seen.append(url)
    return seen


def is_text_wrapper(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and value.get("extraction_type") == TEXT_CONTENT
        and _WRAPPER_KEYS.issubset(value.keys())
    )


def wrap_text(text: str, url: str) -> dict[str, Any]:
    return {
        "extracted_content": text,
        "url": url,
        "extraction_type": TEXT_CONTENT,
        "timestamp": utcnow().isoformat(),
    }


def parse_model_output(text: str, url: str) -> dict[str, Any]:
    """
    Strict JSON parse of the model reply.

    - a JSON object is returned as-is (an existing text wrapper stays one level deep)
    - anything else (prose, arrays, scalars) is wrapped as text content
    """
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return wrap_text(text, url)
    if isinstance(parsed, dict):
        return parsed
    return wrap_text(text, url)


# ----------------------------
# Prompting
# ----------------------------

def get_prompt_template(scraping_type: str | None) -> str:
    return PROMPT_TEMPLATES.get((scraping_type or "").lower(), PROMPT_TEMPLATES["general"])


def build_scrape_prompt(url: str, task: str, use_vision: bool = False) -> str:
    return SCRAPE_PROMPT_TEMPLATE.format(
        url=url,
        task=task,
        vision_note=VISION_NOTE if use_vision else "",
    )


def scrape_with_ai(
    url: str,
    prompt: str,
    use_vision: bool = False,
    model: str | None = None,
    generator: TextGenerator | None = None,
) -> ScrapeOutcome:
    started = time.monotonic()

    def elapsed_ms() -> int:
        return int((time.monotonic() - started) * 1000)

    try:
        gen = generator or get_generator()
    except Exception as e:
        logger.error("AI generator unavailable: %s", e)
        return ScrapeOutcome(success=False, error=str(e), execution_time_ms=elapsed_ms())

    if not gen.configured:
        return ScrapeOutcome(success=False, error="AI API key not configured")

    try:
        generation = gen.generate(build_scrape_prompt(url, prompt, use_vision), model=model)
    except Exception as e:
        logger.warning("AI scraping failed for %s: %s", url, e)
        return ScrapeOutcome(
            success=False,
            error=str(e) or e.__class__.__name__,
            execution_time_ms=elapsed_ms(),
        )

    data = parse_model_output(generation.text, url)
    return ScrapeOutcome(
        success=True,
        data=data,
        tokens_used=generation.tokens_used,
        execution_time_ms=elapsed_ms(),
    )


def test_connection(generator: TextGenerator | None = None) -> bool:
    try:
        gen = generator or get_generator()
        if not gen.configured:
            return False
        reply = gen.generate(CONNECTION_TEST_PROMPT)
    except Exception as e:
        logger.info("AI connection test failed: %s", e)
        return False
    return "ok" in (reply.text or "").strip().lower()
