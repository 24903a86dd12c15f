"""Call Interceptor.

Instruments service coroutines so that every call leaves a trace:
  1. a pending CallRecord is persisted before the call runs
  2. the call is timed
  3. the record is completed with status, duration, token usage and a
     sanitized (or summarized) copy of the result or error
  4. an ApiCallRecord goes to the MetricsLogger, Prometheus is updated

Errors are re-raised as the same object after logging. API keys are masked
in everything that is persisted.
"""

from __future__ import annotations

import dataclasses
import functools
import inspect
import json
import logging
import re
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from contextvars import ContextVar
from typing import Any

from genai_gateway.core.encryption import mask_secret, redact_secrets
from genai_gateway.core.metrics import API_CALL_DURATION, API_CALLS, API_TOKENS
from genai_gateway.gateway.call_log_store import CallLogStore
from genai_gateway.gateway.metrics_logger import MetricsLogger
from genai_gateway.gateway.retry import error_status
from genai_gateway.gateway.types import ApiCallRecord, CallRecord, CallStatus, TokenUsage
from genai_gateway.gateway.usage import extract_token_usage

logger = logging.getLogger(__name__)

_SECRET_KEY_PATTERN = re.compile(r"api[-_]?key", re.IGNORECASE)

DEFAULT_SUMMARY_THRESHOLD = 1000
DEFAULT_PREVIEW_LENGTH = 200

# Record of the intercepted call in progress. Retry attempts run in child tasks
# with a copied context, so they see the same record object and can annotate it.
_current_call: ContextVar[CallRecord | None] = ContextVar("genai_current_call", default=None)


def note_api_key(key_id: int | None) -> None:
    """Attribute the intercepted call in progress to a pool credential. No-op outside a call."""
    record = _current_call.get()
    if record is not None:
        record.api_key_id = key_id


def _json_type(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, str):
        return "string"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    return type(value).__name__


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        redacted = {}
        for key, item in value.items():
            if _SECRET_KEY_PATTERN.search(str(key)):
                redacted[key] = mask_secret(item) if isinstance(item, str) else item
            else:
                redacted[key] = _redact(item)
        return redacted
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


def _summarize(value: Any, serialized: str, threshold: int, preview_length: int) -> str:
    if len(serialized) <= threshold:
        return serialized
    return json.dumps(
        {
            "_summary": True,
            "type": _json_type(value),
            "length": len(serialized),
            "preview": serialized[:preview_length] + "...",
        },
        ensure_ascii=False,
    )


def sanitize_params(
    data: Any,
    summary_threshold: int = DEFAULT_SUMMARY_THRESHOLD,
    preview_length: int = DEFAULT_PREVIEW_LENGTH,
) -> str:
    """Mask API keys in ``data`` and serialize it, summarizing when too long.

    ``data`` may be a JSON string or any structure. A string that is not JSON
    is returned unchanged. Never raises.
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            return data

    try:
        redacted = _redact(data)
        serialized = json.dumps(redacted, ensure_ascii=False, default=str)
    except (TypeError, ValueError, RecursionError) as e:
        logger.warning("Could not serialize call parameters: %s", e)
        return json.dumps({"_unserializable": True, "type": type(data).__name__})

    return _summarize(redacted, serialized, summary_threshold, preview_length)


def summarize_response(
    result: Any,
    summary_threshold: int = DEFAULT_SUMMARY_THRESHOLD,
    preview_length: int = DEFAULT_PREVIEW_LENGTH,
) -> str | None:
    """Serialized result, or a summary document when it is large. None for empty results."""
    if result is None:
        return None
    if dataclasses.is_dataclass(result) and not isinstance(result, type):
        result = dataclasses.asdict(result)
    if isinstance(result, str):
        return _summarize(result, json.dumps(result, ensure_ascii=False), summary_threshold, preview_length)
    return sanitize_params(result, summary_threshold, preview_length)


def extract_model_name(args: tuple, kwargs: Mapping[str, Any]) -> str | None:
    """Model from a ``model`` keyword, or a ``model``/``model_name`` key of the first mapping argument."""
    if kwargs.get("model"):
        return str(kwargs["model"])
    if args and isinstance(args[0], Mapping):
        for key in ("model", "model_name", "modelName"):
            if args[0].get(key):
                return str(args[0][key])
    return None


class InstrumentedService:
    """A service whose public coroutine methods are instrumented.

    Anything else (attributes, sync methods, private members) is read from
    the wrapped service as-is.
    """

    def __init__(self, service: Any, service_name: str, methods: dict[str, Callable[..., Awaitable[Any]]]):
        self.__wrapped__ = service
        self.service_name = service_name
        for name, method in methods.items():
            setattr(self, name, method)

    def __getattr__(self, name: str) -> Any:
        return getattr(self.__wrapped__, name)

    def __repr__(self) -> str:
        return f"<InstrumentedService {self.service_name}: {self.__wrapped__!r}>"


class CallInterceptor:
    def __init__(self, store: CallLogStore, metrics_logger: MetricsLogger | None = None, settings=None):
        self._store = store
        self._metrics_logger = metrics_logger
        self.summary_threshold = settings.sanitize_summary_threshold if settings else DEFAULT_SUMMARY_THRESHOLD
        self.preview_length = settings.sanitize_preview_length if settings else DEFAULT_PREVIEW_LENGTH

    def sanitize_params(self, data: Any) -> str:
        return sanitize_params(data, self.summary_threshold, self.preview_length)

    def summarize_response(self, result: Any) -> str | None:
        return summarize_response(result, self.summary_threshold, self.preview_length)

    def instrument(self, fn: Callable[..., Awaitable[Any]], service: str, method: str) -> Callable[..., Awaitable[Any]]:
        """Wrap one coroutine function."""

        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            return await self._call(fn, service, method, args, kwargs)

        return wrapper

    def wrap_service(self, service: Any, service_name: str) -> InstrumentedService:
        """Instrument every public coroutine method of ``service`` now."""
        methods = {}
        for name in dir(service):
            if name.startswith("_"):
                continue
            attr = getattr(service, name, None)
            if callable(attr) and inspect.iscoroutinefunction(attr):
                methods[name] = self.instrument(attr, service_name, name)
        logger.debug("Instrumented %s: %s", service_name, ", ".join(sorted(methods)) or "no methods")
        return InstrumentedService(service, service_name, methods)

    async def _call(self, fn, service: str, method: str, args: tuple, kwargs: dict) -> Any:
        record = CallRecord(
            request_id=str(uuid.uuid4()),
            service=service,
            method=method,
            model=extract_model_name(args, kwargs) or "unknown",
            sanitized_params=self.sanitize_params({"args": list(args), "kwargs": kwargs}),
        )
        logged = await self._persist(self._store.create_pending, record)

        start = time.monotonic()
        token = _current_call.set(record)
        try:
            result = await fn(*args, **kwargs)
        except Exception as e:
            record.response_time_ms = int((time.monotonic() - start) * 1000)
            record.status = CallStatus.ERROR
            record.error_type = type(e).__name__
            record.error_message = redact_secrets(str(e))
            if logged:
                await self._persist(self._store.complete, record)
            self._observe(record, status_code=error_status(e) or 500)
            raise
        finally:
            _current_call.reset(token)

        record.response_time_ms = int((time.monotonic() - start) * 1000)
        record.status = CallStatus.SUCCESS
        record.token_usage = extract_token_usage(result)
        record.response_data = self.summarize_response(result)
        if logged:
            await self._persist(self._store.complete, record)
        self._observe(record, status_code=200)
        return result

    async def _persist(self, write: Callable[[CallRecord], Awaitable[None]], record: CallRecord) -> bool:
        # A call-log write failure must not fail the call it describes
        try:
            await write(record)
        except Exception:
            logger.exception("Failed to persist call log %s (%s.%s)", record.request_id, record.service, record.method)
            return False
        return True

    def _observe(self, record: CallRecord, status_code: int) -> None:
        elapsed = (record.response_time_ms or 0) / 1000
        API_CALLS.labels(service=record.service, method=record.method, status=record.status.value).inc()
        API_CALL_DURATION.labels(service=record.service, method=record.method).observe(elapsed)
        usage: TokenUsage | None = record.token_usage
        if usage and usage.total_tokens:
            API_TOKENS.labels(service=record.service, method=record.method).inc(usage.total_tokens)

        if self._metrics_logger is None:
            return
        self._metrics_logger.log_api_call(
            ApiCallRecord(
                service=record.service,
                method=record.method,
                response_time_ms=record.response_time_ms or 0,
                success=record.status == CallStatus.SUCCESS,
                model=record.model,
                request_params=record.sanitized_params,
                token_usage=usage,
                status_code=status_code,
                error_message=record.error_message,
                request_id=record.request_id,
                timestamp=record.timestamp,
            )
        )
