"""Client Lifecycle Manager.

Owns the single live handle to the Gemini API for an application root:
  UNINITIALIZED --initialize()--> INITIALIZED --reset()--> UNINITIALIZED

In mock mode the manager becomes INITIALIZED without building a handle and
``get_client()`` refuses to hand one out; services are expected to check
``is_mock_mode()`` first and produce canned data.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlparse

import httpx

from genai_gateway.core.config import Settings
from genai_gateway.core.exceptions import ConfigurationError, StateError

logger = logging.getLogger(__name__)

MIN_API_KEY_LENGTH = 10


class GeminiClient:
    """Thin async client for the Gemini REST API (v1beta).

    Non-2xx responses raise ``httpx.HTTPStatusError`` so that the retry
    engine can classify them by status.
    """

    api_version = "v1beta"

    def __init__(self, api_key: str, base_url: str, timeout: float = 30.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _url(self, model: str, action: str) -> str:
        return f"{self.base_url}/{self.api_version}/models/{model}:{action}"

    async def _post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            # Key goes in a header so it never appears in request URLs or error messages
            resp = await client.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json", "x-goog-api-key": self.api_key},
            )
            resp.raise_for_status()
            return resp.json()

    async def generate_content(
        self,
        model: str,
        prompt: str,
        system_prompt: str | None = None,
        generation_config: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Call ``models/{model}:generateContent`` and return the raw JSON body."""
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        }
        if generation_config:
            payload["generationConfig"] = generation_config
        # System instruction is separate from contents in the Gemini API
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        return await self._post(self._url(model, "generateContent"), payload)

    async def count_tokens(self, model: str, prompt: str) -> int:
        data = await self._post(
            self._url(model, "countTokens"),
            {"contents": [{"role": "user", "parts": [{"text": prompt}]}]},
        )
        return int(data.get("totalTokens", 0))


def extract_text(data: dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate. Empty string when absent."""
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


class ClientManager:
    """Creates, holds and resets the live Gemini handle."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._client: GeminiClient | None = None
        self._initialized = False

    def is_mock_mode(self) -> bool:
        # Read on every call so a settings change takes effect without a restart
        return bool(self._settings.mock_mode)

    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self, api_key: str | None = None) -> None:
        """Build the live handle. A second call is a no-op."""
        if self._initialized:
            return

        if self.is_mock_mode():
            logger.info("Mock mode enabled — Gemini client not created")
            self._initialized = True
            return

        secret = (api_key if api_key is not None else self._settings.gemini_api_key) or ""
        secret = secret.strip()
        if not secret:
            raise ConfigurationError("GEMINI_API_KEY is not configured")
        if len(secret) < MIN_API_KEY_LENGTH:
            raise ConfigurationError(f"Gemini API key is too short (minimum {MIN_API_KEY_LENGTH} characters)")

        base_url = self._settings.gemini_base_url
        parsed = urlparse(base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"Invalid Gemini base URL: {base_url!r}")

        self._client = GeminiClient(secret, base_url, timeout=self._settings.request_timeout)
        self._initialized = True
        logger.info("Gemini client initialized (%s)", parsed.netloc)

    def get_client(self) -> GeminiClient:
        if self.is_mock_mode():
            raise StateError("Gemini client is not available in mock mode")
        if not self._initialized or self._client is None:
            raise StateError("Gemini client is not initialized — call initialize() first")
        return self._client

    def build_client(self, api_key: str) -> GeminiClient:
        """One-off handle for a pool credential, sharing this manager's base URL and timeout."""
        return GeminiClient(api_key, self._settings.gemini_base_url, timeout=self._settings.request_timeout)

    def reset(self) -> None:
        self._client = None
        self._initialized = False
