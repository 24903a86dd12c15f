"""Core types and DTOs for the gateway layer."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class CallStatus(str, Enum):
    """Lifecycle of a CallRecord."""

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class RotationStrategy(str, Enum):
    """How the key pool picks the next credential."""

    PRIORITY = "priority"  # Lowest priority value, ties → newest
    ROUND_ROBIN = "round-robin"  # Least recently used (never used first), ties → priority
    LEAST_USED = "least-used"  # Lowest usage_count, ties → priority
    RANDOM = "random"  # Uniform among active keys


class LogLevel(str, Enum):
    """Log levels, most severe first."""

    ERROR = "ERROR"
    WARN = "WARN"
    INFO = "INFO"
    DEBUG = "DEBUG"

    @property
    def severity(self) -> int:
        return _LEVEL_ORDER.index(self)


_LEVEL_ORDER = [LogLevel.ERROR, LogLevel.WARN, LogLevel.INFO, LogLevel.DEBUG]


class AlertType(str, Enum):
    HIGH_ERROR_RATE = "HIGH_ERROR_RATE"
    HIGH_RESPONSE_TIME = "HIGH_RESPONSE_TIME"
    HIGH_TOKEN_USAGE = "HIGH_TOKEN_USAGE"


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


@dataclass
class RetryOptions:
    """Retry/timeout configuration. Durations in seconds."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 32.0
    backoff_multiplier: float = 2.0
    timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> RetryOptions:
        return cls(
            max_retries=settings.max_retries,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            timeout=settings.request_timeout,
        )


@dataclass
class RetryContext:
    """Where a retried call comes from. Used only for logging."""

    service: str = "unknown"
    method: str = "unknown"
    params: Any = None


# ---------------------------------------------------------------------------
# Usage & call records
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    """Canonical token usage, whatever shape the upstream response had."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class CallRecord:
    """Persisted log entry for one intercepted call."""

    request_id: str
    service: str
    method: str
    model: str = "unknown"
    api_key_id: int | None = None  # pool credential that served the last attempt
    sanitized_params: str | None = None
    status: CallStatus = CallStatus.PENDING
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    response_time_ms: int | None = None
    token_usage: TokenUsage | None = None
    response_data: str | None = None
    error_type: str | None = None
    error_message: str | None = None


@dataclass
class ApiCallRecord:
    """Structured record forwarded to the MetricsLogger after every call."""

    service: str
    method: str
    response_time_ms: float
    success: bool
    model: str | None = None
    request_params: Any = None
    token_usage: TokenUsage | None = None
    status_code: int = 200
    error_message: str | None = None
    request_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "request_id": self.request_id,
            "service": self.service,
            "method": self.method,
            "model": self.model,
            "request_params": self.request_params,
            "response_time_ms": self.response_time_ms,
            "token_usage": self.token_usage.to_dict() if self.token_usage else None,
            "status_code": self.status_code,
            "success": self.success,
            "error_message": self.error_message,
        }


@dataclass
class MetricDataPoint:
    """One completed call inside the rolling metrics window."""

    timestamp: float  # epoch seconds
    service: str
    method: str
    response_time: float  # milliseconds
    success: bool
    tokens: int = 0
    error_type: str = ""


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


@dataclass
class Alert:
    type: AlertType
    message: str
    current_value: float
    threshold: float
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "current_value": self.current_value,
            "threshold": self.threshold,
            "details": self.details,
        }


@dataclass
class AlertConfig:
    """Alert thresholds. A threshold of None disables that check."""

    error_rate_threshold: float | None = 0.05  # fraction of failed calls
    avg_response_time_threshold: float | None = 10_000  # milliseconds
    token_usage_threshold: float | None = 0.8  # fraction of token_quota
    token_quota: int | None = None
    min_sample_size: int = 10  # calls required before the error rate is judged
    on_alert: Callable[[Alert], Any] | None = None

    @classmethod
    def from_settings(cls, settings, on_alert: Callable[[Alert], Any] | None = None) -> AlertConfig:
        return cls(
            error_rate_threshold=settings.alert_error_rate_threshold,
            avg_response_time_threshold=settings.alert_avg_response_time_ms,
            token_usage_threshold=settings.alert_token_usage_threshold,
            token_quota=settings.token_quota,
            on_alert=on_alert,
        )


# ---------------------------------------------------------------------------
# Credentials & generation results
# ---------------------------------------------------------------------------


@dataclass
class CredentialView:
    """A credential as handed out by the key pool.

    ``secret`` is masked everywhere except in ``get_next_key``, which
    returns the decrypted plaintext for the outgoing call.
    """

    id: int
    name: str
    secret: str
    is_active: bool = True
    priority: int = 100
    usage_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_used_at: datetime | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "secret": self.secret,
            "is_active": self.is_active,
            "priority": self.priority,
            "usage_count": self.usage_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class GenerationResult:
    """Output of TextService.generate_text."""

    text: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    cached: bool = False
    mock: bool = False


@dataclass
class LogQuery:
    """Filters shared by call-log queries, exports and statistics. ``None`` means no filter."""

    start: datetime | None = None  # inclusive
    end: datetime | None = None  # inclusive
    model: str | None = None
    service: str | None = None
    method: str | None = None
    status: CallStatus | None = None
    api_key_id: int | None = None
    keyword: str | None = None  # substring of request params or response data


@dataclass
class LogPage:
    records: list[CallRecord]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size else 0


class TimeGranularity(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
