"""WatsonX text-generation backend."""

from __future__ import annotations

import logging
import os
import time

import requests

from .base import LLMBackend

_log = logging.getLogger(__name__)


class WatsonXLLM(LLMBackend):
    """WatsonX backend calling the text-generation REST API with `requests`.

    Reads credentials from environment variables:
        WATSONX_APIKEY       required
        WATSONX_PROJECT_ID   required
        WATSONX_URL          optional (defaults to us-south)

    Args:
        model_id: WatsonX model ID string.
        max_new_tokens: Generation limit per call.
        timeout: HTTP timeout in seconds.
    """

    _IAM_URL = "https://iam.cloud.ibm.com/identity/token"
    _GENERATION_PATH = "/ml/v1/text/generation?version=2023-05-29"

    def __init__(
        self,
        model_id: str = "meta-llama/llama-4-maverick-17b-128e-instruct-fp8",
        max_new_tokens: int = 2048,
        timeout: float = 120,
    ) -> None:
        self._api_key = os.environ["WATSONX_APIKEY"]
        self._project_id = os.environ["WATSONX_PROJECT_ID"]
        base_url = os.environ.get("WATSONX_URL", "https://us-south.ml.cloud.ibm.com")
        self._generation_url = base_url.rstrip("/") + self._GENERATION_PATH
        self.model_id = model_id
        self._max_new_tokens = max_new_tokens
        self._timeout = timeout
        self._token: str | None = None
        self._token_expiry: float = 0.0

    def _get_token(self) -> str:
        """Return an IAM bearer token, refreshing it within 60 s of expiry."""
        if self._token and time.time() < self._token_expiry - 60:
            return self._token
        _log.debug("Refreshing WatsonX IAM token")
        resp = requests.post(
            self._IAM_URL,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data=(
                "grant_type=urn:ibm:params:oauth:grant-type:apikey"
                f"&apikey={self._api_key}"
            ),
            timeout=30,
        )
        resp.raise_for_status()
        data = resp.json()
        self._token = data["access_token"]
        self._token_expiry = time.time() + data.get("expires_in", 3600)
        return self._token

    def generate(self, prompt: str, temperature: float = 0.0) -> str:
        resp = requests.post(
            self._generation_url,
            headers={
                "Authorization": f"Bearer {self._get_token()}",
                "Content-Type": "application/json",
            },
            json={
                "model_id": self.model_id,
                "input": prompt,
                "parameters": {
                    "max_new_tokens": self._max_new_tokens,
                    "temperature": temperature,
                },
                "project_id": self._project_id,
            },
            timeout=self._timeout,
        )
        resp.raise_for_status()
        return resp.json()["results"][0]["generated_text"]
