"""Metrics & Alerting Logger.

Keeps a rolling window of completed calls (default: last hour) and derives
usage statistics from it on demand:
  - totals, success rate, average response time, token total
  - extended: p50/p95/p99 response time, per-service and per-method
    breakdowns, error counts by type
  - Prometheus text exposition of the above

Alert thresholds are evaluated at most once per ``alert_check_interval``,
piggybacking on ``log_api_call``. A breach is logged at WARN and handed to
the ``on_alert`` callback, whose failures are logged and never propagate.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from genai_gateway.gateway.types import Alert, AlertConfig, AlertType, ApiCallRecord, LogLevel, MetricDataPoint

logger = logging.getLogger(__name__)

_STDLIB_LEVELS = {
    LogLevel.ERROR: logging.ERROR,
    LogLevel.WARN: logging.WARNING,
    LogLevel.INFO: logging.INFO,
    LogLevel.DEBUG: logging.DEBUG,
}

# Checked in order; the first matching group wins
_ERROR_PATTERNS: list[tuple[str, tuple[str, ...]]] = [
    ("RATE_LIMIT", ("429", "rate limit")),
    ("TIMEOUT", ("timeout",)),
    ("AUTH_ERROR", ("401", "unauthorized")),
    ("SERVER_ERROR", ("500", "502", "503", "504", "server error")),
    ("CLIENT_ERROR", ("400", "404", "client error")),
]


def classify_error(message: str | None) -> str:
    lower = (message or "").lower()
    for error_type, needles in _ERROR_PATTERNS:
        if any(needle in lower for needle in needles):
            return error_type
    return "UNKNOWN_ERROR"


def calculate_percentile(sorted_values: list[float], percentile: float) -> float:
    """Nearest-rank percentile of an ascending list. 0 for an empty list."""
    if not sorted_values:
        return 0.0
    index = math.ceil(percentile * len(sorted_values) / 100) - 1
    return sorted_values[max(0, index)]


def _level_from_name(name: str) -> LogLevel:
    name = name.upper()
    if name == "WARNING":
        return LogLevel.WARN
    return LogLevel(name) if name in LogLevel.__members__ else LogLevel.INFO


def _iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


def _breakdown(points: list[MetricDataPoint], key: Callable[[MetricDataPoint], str]) -> dict[str, dict]:
    groups: dict[str, list[MetricDataPoint]] = {}
    for point in points:
        groups.setdefault(key(point), []).append(point)

    result = {}
    for name, group in groups.items():
        successful = sum(1 for p in group if p.success)
        result[name] = {
            "total_calls": len(group),
            "successful_calls": successful,
            "failed_calls": len(group) - successful,
            "average_response_time": sum(p.response_time for p in group) / len(group),
        }
    return result


class _FamilyCollector:
    """Exposes one prebuilt metric family to a throwaway registry."""

    def __init__(self, family: Metric):
        self._family = family

    def collect(self):
        yield self._family


class MetricsLogger:
    """Level-filtered structured logger plus rolling-window call metrics."""

    def __init__(
        self,
        level: LogLevel | str = LogLevel.INFO,
        enable_metrics: bool = True,
        metrics_window: float = 3600.0,
        extended_metrics: bool = True,
        alert_config: AlertConfig | None = None,
        alert_check_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self._level = LogLevel(level)
        self.enable_metrics = enable_metrics
        self.metrics_window = metrics_window
        self.extended_metrics = extended_metrics
        self.alert_config = alert_config or AlertConfig()
        self.alert_check_interval = alert_check_interval
        self._clock = clock
        self._points: list[MetricDataPoint] = []
        self._last_alert_check: float | None = None
        self._pending_callbacks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings, on_alert: Callable[[Alert], Any] | None = None) -> MetricsLogger:
        return cls(
            level=_level_from_name(settings.log_level),
            metrics_window=settings.metrics_window,
            extended_metrics=settings.extended_metrics,
            alert_config=AlertConfig.from_settings(settings, on_alert=on_alert),
            alert_check_interval=settings.alert_check_interval,
        )

    # --- Level-filtered logging ---

    def set_level(self, level: LogLevel | str) -> None:
        self._level = LogLevel(level)

    def get_level(self) -> LogLevel:
        return self._level

    def _should_log(self, level: LogLevel) -> bool:
        return level.severity <= self._level.severity

    def _log(self, level: LogLevel, message: str, data: Any = None) -> None:
        if not self._should_log(level):
            return
        extra = {"data": data} if data is not None else None
        if data is not None:
            logger.log(_STDLIB_LEVELS[level], "%s | %s", message, data, extra=extra)
        else:
            logger.log(_STDLIB_LEVELS[level], "%s", message)

    def error(self, message: str, data: Any = None) -> None:
        self._log(LogLevel.ERROR, message, data)

    def warn(self, message: str, data: Any = None) -> None:
        self._log(LogLevel.WARN, message, data)

    def info(self, message: str, data: Any = None) -> None:
        self._log(LogLevel.INFO, message, data)

    def debug(self, message: str, data: Any = None) -> None:
        self._log(LogLevel.DEBUG, message, data)

    # --- Call metrics ---

    def log_api_call(self, record: ApiCallRecord) -> None:
        self.info("API call", record.to_dict())

        if not self.enable_metrics:
            return

        self._points.append(
            MetricDataPoint(
                timestamp=self._clock(),
                service=record.service,
                method=record.method,
                response_time=record.response_time_ms,
                success=record.success,
                tokens=record.token_usage.total_tokens if record.token_usage else 0,
                error_type=classify_error(record.error_message) if record.error_message else "",
            )
        )
        self._prune()
        self._check_alerts()

    def _prune(self) -> None:
        cutoff = self._clock() - self.metrics_window
        self._points = [p for p in self._points if p.timestamp >= cutoff]

    def get_usage_stats(self) -> dict[str, Any]:
        self._prune()
        points = self._points
        total = len(points)

        if total == 0:
            now = _iso(self._clock())
            return {
                "total_calls": 0,
                "successful_calls": 0,
                "failed_calls": 0,
                "success_rate": 0.0,
                "average_response_time": 0.0,
                "total_tokens": 0,
                "time_range": {"start": now, "end": now},
            }

        successful = sum(1 for p in points if p.success)
        timestamps = [p.timestamp for p in points]
        return {
            "total_calls": total,
            "successful_calls": successful,
            "failed_calls": total - successful,
            "success_rate": successful / total,
            "average_response_time": sum(p.response_time for p in points) / total,
            "total_tokens": sum(p.tokens for p in points),
            "time_range": {"start": _iso(min(timestamps)), "end": _iso(max(timestamps))},
        }

    def get_extended_usage_stats(self) -> dict[str, Any]:
        stats = self.get_usage_stats()
        points = self._points
        error_rate = 1 - stats["success_rate"] if stats["total_calls"] else 0.0

        if not self.extended_metrics or not points:
            return {
                **stats,
                "response_time_percentiles": {"p50": 0.0, "p95": 0.0, "p99": 0.0},
                "calls_by_service": {},
                "calls_by_method": {},
                "error_stats": {
                    "total_errors": stats["failed_calls"],
                    "error_rate": error_rate,
                    "errors_by_type": {},
                },
            }

        response_times = sorted(p.response_time for p in points)
        errors_by_type: dict[str, int] = {}
        for p in points:
            if not p.success and p.error_type:
                errors_by_type[p.error_type] = errors_by_type.get(p.error_type, 0) + 1

        return {
            **stats,
            "response_time_percentiles": {
                "p50": calculate_percentile(response_times, 50),
                "p95": calculate_percentile(response_times, 95),
                "p99": calculate_percentile(response_times, 99),
            },
            "calls_by_service": _breakdown(points, lambda p: p.service),
            "calls_by_method": _breakdown(points, lambda p: p.method),
            "error_stats": {
                "total_errors": stats["failed_calls"],
                "error_rate": error_rate,
                "errors_by_type": errors_by_type,
            },
        }

    def clear_metrics(self) -> None:
        self._points = []
        self._last_alert_check = None

    # --- Prometheus export ---

    def _metric_families(self) -> list[Metric]:
        stats = self.get_extended_usage_stats() if self.extended_metrics else self.get_usage_stats()

        families: list[Metric] = [
            CounterMetricFamily("gemini_api_calls", "Total number of API calls", value=stats["total_calls"]),
            CounterMetricFamily(
                "gemini_api_calls_success", "Total number of successful API calls", value=stats["successful_calls"]
            ),
            CounterMetricFamily(
                "gemini_api_calls_failed", "Total number of failed API calls", value=stats["failed_calls"]
            ),
            GaugeMetricFamily("gemini_api_success_rate", "Success rate of API calls", value=stats["success_rate"]),
            GaugeMetricFamily(
                "gemini_api_response_time_avg_ms",
                "Average response time in milliseconds",
                value=stats["average_response_time"],
            ),
            CounterMetricFamily("gemini_api_tokens", "Total number of tokens used", value=stats["total_tokens"]),
        ]

        if not self.extended_metrics:
            return families

        for name, value in stats["response_time_percentiles"].items():
            families.append(
                GaugeMetricFamily(
                    f"gemini_api_response_time_{name}_ms",
                    f"{name[1:]}th percentile response time in milliseconds",
                    value=value,
                )
            )
        families.append(
            GaugeMetricFamily("gemini_api_error_rate", "Error rate of API calls", value=stats["error_stats"]["error_rate"])
        )

        by_service = CounterMetricFamily("gemini_api_calls_by_service", "Total API calls by service", labels=["service"])
        for service, service_stats in stats["calls_by_service"].items():
            by_service.add_metric([service], service_stats["total_calls"])
        families.append(by_service)

        by_method = CounterMetricFamily("gemini_api_calls_by_method", "Total API calls by method", labels=["method"])
        for method, method_stats in stats["calls_by_method"].items():
            by_method.add_metric([method], method_stats["total_calls"])
        families.append(by_method)

        by_type = CounterMetricFamily("gemini_api_errors_by_type", "Total errors by type", labels=["error_type"])
        for error_type, count in stats["error_stats"]["errors_by_type"].items():
            by_type.add_metric([error_type], count)
        families.append(by_type)

        return families

    def export_metrics(self) -> str:
        """Prometheus text exposition of the window stats, one family per block."""
        blocks = []
        for family in self._metric_families():
            registry = CollectorRegistry(auto_describe=False)
            registry.register(_FamilyCollector(family))
            blocks.append(generate_latest(registry).decode("utf-8"))
        return "\n".join(blocks)

    # --- Alerts ---

    def force_check_alerts(self) -> list[Alert]:
        return self._check_alerts(force=True)

    def _check_alerts(self, force: bool = False) -> list[Alert]:
        now = self._clock()
        if (
            not force
            and self._last_alert_check is not None
            and now - self._last_alert_check < self.alert_check_interval
        ):
            return []
        self._last_alert_check = now

        config = self.alert_config
        stats = self.get_usage_stats()
        total = stats["total_calls"]
        alerts: list[Alert] = []

        error_rate = 1 - stats["success_rate"] if total else 0.0
        if (
            config.error_rate_threshold is not None
            and total >= config.min_sample_size
            and error_rate > config.error_rate_threshold
        ):
            alerts.append(
                Alert(
                    type=AlertType.HIGH_ERROR_RATE,
                    message=f"Error rate above threshold: {error_rate * 100:.2f}%",
                    current_value=error_rate,
                    threshold=config.error_rate_threshold,
                    details={"total_calls": total, "failed_calls": stats["failed_calls"]},
                )
            )

        avg = stats["average_response_time"]
        if config.avg_response_time_threshold is not None and total > 0 and avg > config.avg_response_time_threshold:
            alerts.append(
                Alert(
                    type=AlertType.HIGH_RESPONSE_TIME,
                    message=f"Average response time above threshold: {avg:.2f}ms",
                    current_value=avg,
                    threshold=config.avg_response_time_threshold,
                    details={"total_calls": total},
                )
            )

        if config.token_usage_threshold is not None and config.token_quota:
            limit = config.token_quota * config.token_usage_threshold
            tokens = stats["total_tokens"]
            if tokens > limit:
                alerts.append(
                    Alert(
                        type=AlertType.HIGH_TOKEN_USAGE,
                        message=f"Token usage above {config.token_usage_threshold * 100:.0f}% of quota",
                        current_value=tokens,
                        threshold=limit,
                        details={
                            "total_tokens": tokens,
                            "quota": config.token_quota,
                            "usage_percentage": tokens / config.token_quota * 100,
                        },
                    )
                )

        for alert in alerts:
            self._trigger_alert(alert)
        return alerts

    def _trigger_alert(self, alert: Alert) -> None:
        self.warn(f"Alert: {alert.message}", alert.to_dict())

        callback = self.alert_config.on_alert
        if callback is None:
            return
        try:
            result = callback(alert)
        except Exception:
            logger.exception("Alert callback failed for %s", alert.type.value)
            return

        if inspect.isawaitable(result):
            self._schedule_callback(result, alert)

    def _schedule_callback(self, awaitable, alert: Alert) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; async alert callback for %s dropped", alert.type.value)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        async def _run() -> None:
            try:
                await awaitable
            except Exception:
                logger.exception("Alert callback failed for %s", alert.type.value)

        task = loop.create_task(_run())
        self._pending_callbacks.add(task)
        task.add_done_callback(self._pending_callbacks.discard)
