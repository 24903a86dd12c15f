"""Aggregate statistics over persisted call logs.

Unlike MetricsLogger, which only sees the in-memory rolling window of this
process, these figures come from ``genai_call_logs`` and cover any period.
Every method takes the same LogQuery filters as the log store.
"""

from __future__ import annotations

import math
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genai_gateway.core.exceptions import StorageError
from genai_gateway.gateway.call_log_store import apply_log_filters
from genai_gateway.gateway.types import CallStatus, LogQuery, TimeGranularity
from genai_gateway.models.call_log import CallLog

# USD per 1M tokens (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gemini-2.0-flash": (0.075, 0.30),
    "gemini-1.5-flash": (0.075, 0.30),
    "gemini-1.5-pro": (1.25, 5.00),
    "gemini-pro": (0.50, 1.50),
}
DEFAULT_PRICING = (0.50, 1.50)

# strftime bucket format and how many most recent buckets to return
_BUCKETS: dict[TimeGranularity, tuple[str, int]] = {
    TimeGranularity.HOUR: ("%Y-%m-%d %H:00", 24),
    TimeGranularity.DAY: ("%Y-%m-%d", 30),
    TimeGranularity.WEEK: ("%G-W%V", 12),
}

_SUCCESS = case((CallLog.response_status == CallStatus.SUCCESS.value, 1), else_=0)
_ERROR = case((CallLog.response_status == CallStatus.ERROR.value, 1), else_=0)


def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    input_price, output_price = MODEL_PRICING.get(model, DEFAULT_PRICING)
    return prompt_tokens / 1_000_000 * input_price + completion_tokens / 1_000_000 * output_price


class CallLogStatistics:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _all(self, stmt) -> list:
        try:
            async with self._session_factory() as session:
                return list((await session.execute(stmt)).all())
        except SQLAlchemyError as e:
            raise StorageError("Failed to aggregate call logs") from e

    async def _percentile(self, percentile: float, query: LogQuery | None) -> float:
        # Nearest rank over completed calls, same index rule as the in-memory window
        timed = apply_log_filters(select(func.count(CallLog.id)), query).where(CallLog.response_time_ms.is_not(None))
        count = (await self._all(timed))[0][0]
        if not count:
            return 0.0
        position = max(0, math.ceil(percentile * count / 100) - 1)
        stmt = (
            apply_log_filters(select(CallLog.response_time_ms), query)
            .where(CallLog.response_time_ms.is_not(None))
            .order_by(CallLog.response_time_ms.asc())
            .limit(1)
            .offset(position)
        )
        rows = await self._all(stmt)
        return float(rows[0][0]) if rows else 0.0

    async def _count_by(self, column, query: LogQuery | None) -> dict[str, int]:
        stmt = (
            apply_log_filters(select(column, func.count(CallLog.id).label("n")), query)
            .group_by(column)
            .order_by(func.count(CallLog.id).desc(), column)
        )
        return {name: n for name, n in await self._all(stmt)}

    async def get_statistics(self, query: LogQuery | None = None) -> dict[str, Any]:
        """Totals, rates (fractions), latency percentiles, tokens, cost and per-model/service counts."""
        stmt = apply_log_filters(
            select(
                func.count(CallLog.id),
                func.coalesce(func.sum(_SUCCESS), 0),
                func.coalesce(func.sum(_ERROR), 0),
                func.avg(CallLog.response_time_ms),
                func.coalesce(func.sum(CallLog.total_tokens), 0),
            ),
            query,
        )
        total, successes, errors, avg_time, tokens = (await self._all(stmt))[0]
        cost = await self.get_cost_analysis(query)

        return {
            "total_calls": total,
            "success_rate": successes / total if total else 0.0,
            "failure_rate": errors / total if total else 0.0,
            "average_response_time": float(avg_time or 0.0),
            "p95_response_time": await self._percentile(95, query),
            "p99_response_time": await self._percentile(99, query),
            "total_tokens": int(tokens),
            "estimated_cost": cost["estimated_cost"],
            "calls_by_model": await self._count_by(CallLog.model_name, query),
            "calls_by_service": await self._count_by(CallLog.service, query),
        }

    async def get_time_series(
        self, query: LogQuery | None = None, granularity: TimeGranularity = TimeGranularity.HOUR
    ) -> list[dict[str, Any]]:
        """Per-bucket counts and mean latency for the most recent buckets, oldest first.

        Buckets are built from the matching rows in Python, not with SQL date functions.
        """
        fmt, limit = _BUCKETS[TimeGranularity(granularity)]
        stmt = apply_log_filters(
            select(CallLog.timestamp, CallLog.response_status, CallLog.response_time_ms), query
        ).order_by(CallLog.timestamp.asc())

        buckets: dict[str, dict[str, Any]] = {}
        for timestamp, status, response_time in await self._all(stmt):
            label = timestamp.strftime(fmt)
            bucket = buckets.setdefault(
                label, {"bucket": label, "count": 0, "success_count": 0, "error_count": 0, "_times": []}
            )
            bucket["count"] += 1
            if status == CallStatus.SUCCESS.value:
                bucket["success_count"] += 1
            elif status == CallStatus.ERROR.value:
                bucket["error_count"] += 1
            if response_time is not None:
                bucket["_times"].append(response_time)

        points = list(buckets.values())[-limit:]
        for point in points:
            times = point.pop("_times")
            point["avg_response_time"] = sum(times) / len(times) if times else 0.0
        return points

    async def get_model_distribution(self, query: LogQuery | None = None) -> list[dict[str, Any]]:
        """Share of calls and success rate per model, busiest model first."""
        stmt = (
            apply_log_filters(
                select(CallLog.model_name, func.count(CallLog.id), func.coalesce(func.sum(_SUCCESS), 0)), query
            )
            .group_by(CallLog.model_name)
            .order_by(func.count(CallLog.id).desc(), CallLog.model_name)
        )
        rows = await self._all(stmt)
        total = sum(n for _, n, _ in rows)
        return [
            {
                "model": model,
                "call_count": n,
                "percentage": n / total * 100 if total else 0.0,
                "success_rate": successes / n if n else 0.0,
            }
            for model, n, successes in rows
        ]

    async def get_cost_analysis(self, query: LogQuery | None = None) -> dict[str, Any]:
        stmt = apply_log_filters(
            select(
                CallLog.model_name,
                func.coalesce(func.sum(CallLog.prompt_tokens), 0),
                func.coalesce(func.sum(CallLog.completion_tokens), 0),
                func.coalesce(func.sum(CallLog.total_tokens), 0),
            ),
            query,
        ).group_by(CallLog.model_name)

        by_model = []
        totals = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
        for model, prompt_tokens, completion_tokens, total_tokens in await self._all(stmt):
            totals["prompt_tokens"] += int(prompt_tokens)
            totals["completion_tokens"] += int(completion_tokens)
            totals["total_tokens"] += int(total_tokens)
            by_model.append(
                {
                    "model": model,
                    "prompt_tokens": int(prompt_tokens),
                    "completion_tokens": int(completion_tokens),
                    "cost": estimate_cost(model, int(prompt_tokens), int(completion_tokens)),
                }
            )

        return {
            **totals,
            "estimated_cost": sum(item["cost"] for item in by_model),
            "cost_by_model": by_model,
        }
