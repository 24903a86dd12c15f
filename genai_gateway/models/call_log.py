from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from genai_gateway.db.base import Base


class CallLog(Base):
    """One intercepted service call. Inserted as pending, completed exactly once."""

    __tablename__ = "genai_call_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True, index=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True
    )
    service: Mapped[str] = mapped_column(String(50), nullable=False)
    method: Mapped[str] = mapped_column(String(100), nullable=False)
    model_name: Mapped[str] = mapped_column(String(100), nullable=False, default="unknown", index=True)
    api_key_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    request_params: Mapped[str | None] = mapped_column(Text, nullable=True)  # sanitized JSON or summary
    response_status: Mapped[str] = mapped_column(String(10), nullable=False, index=True)  # pending | success | error
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    prompt_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completion_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_data: Mapped[str | None] = mapped_column(Text, nullable=True)  # sanitized JSON or summary
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
