"""Persistence for intercepted call records (table ``genai_call_logs``).

Besides the pending/complete lifecycle used by the interceptor, the store
answers admin queries: filtered pagination, JSON/CSV export and retention.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime

from sqlalchemy import Select, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genai_gateway.core.exceptions import NotFoundError, StorageError, ValidationError
from genai_gateway.gateway.types import CallRecord, CallStatus, LogPage, LogQuery, TokenUsage
from genai_gateway.models.call_log import CallLog

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500

EXPORT_COLUMNS = [
    "request_id",
    "timestamp",
    "service",
    "method",
    "model",
    "api_key_id",
    "status",
    "response_time_ms",
    "prompt_tokens",
    "completion_tokens",
    "total_tokens",
    "error_type",
    "error_message",
]


def _to_record(row: CallLog) -> CallRecord:
    usage = None
    if row.total_tokens is not None:
        usage = TokenUsage(
            prompt_tokens=row.prompt_tokens or 0,
            completion_tokens=row.completion_tokens or 0,
            total_tokens=row.total_tokens,
        )
    return CallRecord(
        request_id=row.request_id,
        service=row.service,
        method=row.method,
        model=row.model_name,
        api_key_id=row.api_key_id,
        sanitized_params=row.request_params,
        status=CallStatus(row.response_status),
        timestamp=row.timestamp,
        response_time_ms=row.response_time_ms,
        token_usage=usage,
        response_data=row.response_data,
        error_type=row.error_type,
        error_message=row.error_message,
    )


def _export_row(record: CallRecord) -> dict:
    usage = record.token_usage
    return {
        "request_id": record.request_id,
        "timestamp": record.timestamp.isoformat() if record.timestamp else None,
        "service": record.service,
        "method": record.method,
        "model": record.model,
        "api_key_id": record.api_key_id,
        "status": record.status.value,
        "response_time_ms": record.response_time_ms,
        "prompt_tokens": usage.prompt_tokens if usage else None,
        "completion_tokens": usage.completion_tokens if usage else None,
        "total_tokens": usage.total_tokens if usage else None,
        "error_type": record.error_type,
        "error_message": record.error_message,
    }


def apply_log_filters(stmt: Select, query: LogQuery | None) -> Select:
    """Add the WHERE clauses described by ``query`` to a statement over CallLog."""
    if query is None:
        return stmt
    if query.start is not None:
        stmt = stmt.where(CallLog.timestamp >= query.start)
    if query.end is not None:
        stmt = stmt.where(CallLog.timestamp <= query.end)
    if query.model:
        stmt = stmt.where(CallLog.model_name == query.model)
    if query.service:
        stmt = stmt.where(CallLog.service == query.service)
    if query.method:
        stmt = stmt.where(CallLog.method == query.method)
    if query.status is not None:
        stmt = stmt.where(CallLog.response_status == CallStatus(query.status).value)
    if query.api_key_id is not None:
        stmt = stmt.where(CallLog.api_key_id == query.api_key_id)
    if query.keyword:
        pattern = f"%{query.keyword}%"
        stmt = stmt.where(or_(CallLog.request_params.like(pattern), CallLog.response_data.like(pattern)))
    return stmt


class CallLogStore:
    """Inserts a record as pending, then completes it exactly once."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_pending(self, record: CallRecord) -> None:
        row = CallLog(
            request_id=record.request_id,
            timestamp=record.timestamp,
            service=record.service,
            method=record.method,
            model_name=record.model,
            api_key_id=record.api_key_id,
            request_params=record.sanitized_params,
            response_status=CallStatus.PENDING.value,
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to insert call log {record.request_id}") from e

    async def complete(self, record: CallRecord) -> None:
        """Write the outcome of a pending record. Only a pending row is updated."""
        usage = record.token_usage
        stmt = (
            update(CallLog)
            .where(CallLog.request_id == record.request_id, CallLog.response_status == CallStatus.PENDING.value)
            .values(
                response_status=record.status.value,
                api_key_id=record.api_key_id,
                response_time_ms=record.response_time_ms,
                prompt_tokens=usage.prompt_tokens if usage else None,
                completion_tokens=usage.completion_tokens if usage else None,
                total_tokens=usage.total_tokens if usage else None,
                response_data=record.response_data,
                error_type=record.error_type,
                error_message=record.error_message,
            )
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update call log {record.request_id}") from e

        if result.rowcount == 0:
            logger.warning("Call log %s was not pending; outcome not written", record.request_id)

    async def get(self, request_id: str) -> CallRecord:
        async with self._session_factory() as session:
            row = (await session.execute(select(CallLog).where(CallLog.request_id == request_id))).scalar_one_or_none()
        if row is None:
            raise NotFoundError("Call log", request_id)
        return _to_record(row)

    async def list_recent(self, limit: int = 50, service: str | None = None) -> list[CallRecord]:
        page = await self.query_logs(LogQuery(service=service), page=1, page_size=limit)
        return page.records

    async def query_logs(self, query: LogQuery | None = None, page: int = 1, page_size: int = 20) -> LogPage:
        """Newest-first page of records matching ``query``."""
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")
        page_size = min(page_size, MAX_PAGE_SIZE)

        count_stmt = apply_log_filters(select(func.count(CallLog.id)), query)
        rows_stmt = (
            apply_log_filters(select(CallLog), query)
            .order_by(CallLog.timestamp.desc(), CallLog.id.desc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        )
        try:
            async with self._session_factory() as session:
                total = (await session.execute(count_stmt)).scalar_one()
                rows = (await session.execute(rows_stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise StorageError("Failed to query call logs") from e

        return LogPage(records=[_to_record(row) for row in rows], total=total, page=page, page_size=page_size)

    async def export_logs(self, query: LogQuery | None = None, fmt: str = "json") -> str:
        """Every record matching ``query`` (newest first) as a JSON array or CSV text."""
        if fmt not in ("json", "csv"):
            raise ValidationError(f"Unsupported export format: {fmt}")

        stmt = apply_log_filters(select(CallLog), query).order_by(CallLog.timestamp.desc(), CallLog.id.desc())
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise StorageError("Failed to export call logs") from e

        items = [_export_row(_to_record(row)) for row in rows]
        if fmt == "json":
            return json.dumps(items, ensure_ascii=False, indent=2)

        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        writer.writerows(items)
        return output.getvalue()

    async def delete_old_logs(self, before: datetime) -> int:
        """Delete records older than ``before``. Returns the number removed."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(delete(CallLog).where(CallLog.timestamp < before))
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError("Failed to delete old call logs") from e

        logger.info("Deleted %d call logs older than %s", result.rowcount, before.isoformat())
        return result.rowcount
