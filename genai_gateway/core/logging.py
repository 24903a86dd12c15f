"""Logging setup for the gateway.

Gateway modules log through ``logging.getLogger(__name__)`` and attach
structured payloads as ``extra={"data": {...}}``. The handler installed here
masks API keys in every rendered message, so a key that leaks into an
exception text never reaches the log output.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from genai_gateway.core.config import Settings
from genai_gateway.core.config import settings as default_settings
from genai_gateway.core.encryption import redact_secrets

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncpg")


class SecretRedactingFilter(logging.Filter):
    """Renders the message once with its args and masks API keys in it."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg, record.args = redacted, None
        if record.exc_info and record.exc_info[1] and not record.exc_text:
            record.exc_text = redact_secrets(logging.Formatter().formatException(record.exc_info))
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line: level, logger, message and the gateway extras."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = record.exc_text or self.formatException(record.exc_info)
        for extra in ("request_id", "data"):
            if hasattr(record, extra):
                log_data[extra] = getattr(record, extra)
        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(settings: Settings | None = None) -> None:
    """Install a single stdout handler on the root logger (text, or JSON with LOG_JSON)."""
    settings = settings or default_settings
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(SecretRedactingFilter())
    handler.setFormatter(JSONFormatter() if settings.log_json else logging.Formatter(TEXT_FORMAT, "%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(level if settings.database_echo else logging.WARNING)
