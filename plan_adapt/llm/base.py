"""Abstract LLM backend interface."""

from __future__ import annotations

from abc import ABC, abstractmethod


class LLMBackend(ABC):
    """Blocking text-completion backend.

    Implementations are synchronous; async callers drive them through
    ``asyncio.to_thread``.
    """

    # Identifies the model in logs; empty for test doubles.
    model_id: str = ""

    @abstractmethod
    def generate(self, prompt: str, temperature: float = 0.0) -> str:
        """Return the completion for a prompt."""
        ...
