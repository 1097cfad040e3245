from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass
class Generation:
    text: str
    tokens_used: int = 0
    model: str | None = None


class TextGenerator(Protocol):
    name: str

    @property
    def configured(self) -> bool: ...

    def generate(self, prompt: str, model: str | None = None, system: str | None = None) -> Generation: ...
