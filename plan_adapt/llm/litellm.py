"""LiteLLM proxy backend (Anthropic Messages endpoint)."""

from __future__ import annotations

import os

import requests

from .base import LLMBackend


class LiteLLMLLM(LLMBackend):
    """LiteLLM backend posting to the proxy's ``/v1/messages`` endpoint.

    Reads credentials from environment variables:
        LITELLM_API_KEY    required
        LITELLM_BASE_URL   required (e.g. https://your-litellm-host.example.com)

    Args:
        model_id: Model string routed by the proxy.
        max_tokens: Generation limit per call.
        timeout: HTTP timeout in seconds.
    """

    def __init__(
        self,
        model_id: str = "GCP/claude-4-sonnet",
        max_tokens: int = 2048,
        timeout: float = 120,
    ) -> None:
        self._api_key = os.environ["LITELLM_API_KEY"]
        self._messages_url = os.environ["LITELLM_BASE_URL"].rstrip("/") + "/v1/messages"
        self.model_id = model_id
        self._max_tokens = max_tokens
        self._timeout = timeout

    def generate(self, prompt: str, temperature: float = 0.0) -> str:
        resp = requests.post(
            self._messages_url,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": self.model_id,
                "max_tokens": self._max_tokens,
                "temperature": temperature,
                "messages": [{"role": "user", "content": prompt}],
            },
            timeout=self._timeout,
        )
        resp.raise_for_status()
        blocks = resp.json()["content"]
        return "".join(b.get("text", "") for b in blocks if b.get("type", "text") == "text")
