"""Text generation on top of the gateway components.

Per call: mock short-circuit → cache lookup → retried request through the
live client (or a pool credential, rotated per attempt) → cache store.
"""

import dataclasses
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from genai_gateway.core.config import Settings
from genai_gateway.core.exceptions import NoAvailableKeyError, PermanentError, StandardizedError, ValidationError
from genai_gateway.gateway.cache import TTLCache, make_cache_key, text_cache_key
from genai_gateway.gateway.client_manager import ClientManager, GeminiClient, extract_text
from genai_gateway.gateway.interceptor import note_api_key
from genai_gateway.gateway.key_pool import KeyRotationPool
from genai_gateway.gateway.retry import with_retry
from genai_gateway.gateway.types import GenerationResult, RetryContext, RetryOptions, RotationStrategy, TokenUsage
from genai_gateway.gateway.usage import extract_token_usage

logger = logging.getLogger(__name__)

MOCK_PREVIEW_LENGTH = 50

T = TypeVar("T")


class TextService:
    service_name = "text"

    def __init__(
        self,
        client_manager: ClientManager,
        cache: TTLCache | None,
        settings: Settings,
        key_pool: KeyRotationPool | None = None,
        rotation_strategy: RotationStrategy = RotationStrategy.PRIORITY,
        token_cache: TTLCache | None = None,
    ):
        self._client_manager = client_manager
        self._cache = cache
        self._token_cache = token_cache
        self._settings = settings
        self._key_pool = key_pool
        self._rotation_strategy = rotation_strategy

    def _cache_enabled(self, cache: TTLCache | None) -> bool:
        return cache is not None and self._settings.cache_enabled

    async def _acquire_client(self) -> tuple[GeminiClient, int | None]:
        """Client for one attempt, plus the pool key id it uses (None for the configured key)."""
        if self._key_pool is not None:
            try:
                credential = await self._key_pool.get_next_key(self._rotation_strategy)
                return self._client_manager.build_client(credential.secret), credential.id
            except NoAvailableKeyError:
                logger.warning("Key pool has no active keys, falling back to the configured API key")

        self._client_manager.initialize()
        return self._client_manager.get_client(), None

    async def _attempt(self, action: Callable[[GeminiClient], Awaitable[T]]) -> T:
        """One attempt on a freshly acquired client; the outcome is recorded against its pool key."""
        client, key_id = await self._acquire_client()
        note_api_key(key_id)
        try:
            result = await action(client)
        except Exception:
            if key_id is not None:
                await self._key_pool.record_key_usage(key_id, success=False)
            raise
        if key_id is not None:
            await self._key_pool.record_key_usage(key_id, success=True)
        return result

    async def _generate_once(
        self, model: str, prompt: str, system_prompt: str | None, generation_config: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._attempt(
            lambda client: client.generate_content(
                model, prompt, system_prompt=system_prompt, generation_config=generation_config or None
            )
        )

    def _mock_result(self, prompt: str, model: str, cache_key: str) -> GenerationResult:
        digest = cache_key.split(":", 1)[1][:8]
        text = f"[mock:{digest}] {prompt[:MOCK_PREVIEW_LENGTH]}"
        prompt_tokens = len(prompt.split())
        completion_tokens = len(text.split())
        return GenerationResult(
            text=text,
            model=model,
            usage=TokenUsage(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens),
            mock=True,
        )

    async def generate_text(
        self,
        prompt: str,
        model: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        top_p: float | None = None,
        top_k: int | None = None,
        system_prompt: str | None = None,
        use_cache: bool = True,
    ) -> GenerationResult:
        """Generate text for ``prompt``.

        Raises StandardizedError (TransientError/PermanentError) when the
        call fails, PermanentError with code NO_TEXT_CONTENT when the
        response has no text.
        """
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt must not be empty")

        model = model or self._settings.default_text_model
        generation_config: dict[str, Any] = {}
        if temperature is not None:
            generation_config["temperature"] = temperature
        if max_output_tokens:
            generation_config["maxOutputTokens"] = max_output_tokens
        if top_p is not None:
            generation_config["topP"] = top_p
        if top_k is not None:
            generation_config["topK"] = top_k

        options = {"model": model, "system_prompt": system_prompt, **generation_config}
        cache_key = text_cache_key(prompt, options)

        if self._client_manager.is_mock_mode():
            return self._mock_result(prompt, model, cache_key)

        if use_cache and self._cache_enabled(self._cache):
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.debug("Text cache hit for %s", cache_key)
                return dataclasses.replace(cached, cached=True)

        data = await with_retry(
            lambda: self._generate_once(model, prompt, system_prompt, generation_config),
            RetryOptions.from_settings(self._settings),
            RetryContext(
                service=self.service_name,
                method="generate_text",
                params={"model": model, "prompt_length": len(prompt), **generation_config},
            ),
        )

        text = extract_text(data)
        if not text:
            raise PermanentError("Gemini response contained no text", code="NO_TEXT_CONTENT")

        result = GenerationResult(
            text=text,
            model=data.get("modelVersion") or model,
            usage=extract_token_usage(data) or TokenUsage(),
        )
        if use_cache and self._cache_enabled(self._cache):
            self._cache.set(cache_key, result)
        return result

    async def generate_text_or_default(self, prompt: str, default: str = "", **kwargs) -> str:
        """Like generate_text, but returns ``default`` instead of raising a StandardizedError."""
        try:
            result = await self.generate_text(prompt, **kwargs)
        except StandardizedError as e:
            logger.warning("Text generation failed (%s), using default: %s", e.code, e.message)
            return default
        return result.text

    async def count_tokens(self, prompt: str, model: str | None = None, use_cache: bool = True) -> int:
        model = model or self._settings.default_text_model
        if self._client_manager.is_mock_mode():
            return len(prompt.split())

        cache_key = make_cache_key("tokens", prompt, {"model": model})
        if use_cache and self._cache_enabled(self._token_cache):
            cached = self._token_cache.get(cache_key)
            if cached is not None:
                return cached

        total = await with_retry(
            lambda: self._attempt(lambda client: client.count_tokens(model, prompt)),
            RetryOptions.from_settings(self._settings),
            RetryContext(service=self.service_name, method="count_tokens", params={"model": model}),
        )
        if use_cache and self._cache_enabled(self._token_cache):
            self._token_cache.set(cache_key, total)
        return total
