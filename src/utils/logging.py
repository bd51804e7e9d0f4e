"""
Structured JSON logging with correlation IDs.

Every log line is JSON with: timestamp, level, service, correlation_id, module,
message, plus engine ids passed through `extra` (campaign, trigger, delivery).
Correlation IDs come from the request middleware or from the scheduler cycle
and are stored in contextvars so concurrent gateway sends keep their cycle's ID.
"""
import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

SERVICE_NAME = "pushops"

# Context variable holding the current request's or cycle's correlation ID
correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Engine ids lifted from `logger.x(..., extra={...})` into the JSON line
EXTRA_LOG_FIELDS = ("campaign_id", "trigger_key", "delivery_id", "user_id", "error_code")

# Device tokens are credentials for the gateway; only a prefix is ever logged
MASKED_LOG_FIELDS = ("device_token",)
MASKED_PREFIX_LENGTH = 8


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    """Set the correlation ID in the current context."""
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """Generate a new correlation ID (UUID4 hex, 32 chars)."""
    return uuid.uuid4().hex


def mask_secret(value: str) -> str:
    """Keep the first characters of a token or secret, hide the rest."""
    if not value:
        return ""
    return f"{value[:MASKED_PREFIX_LENGTH]}***"


class StructuredJsonFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Output format:
    {"timestamp": "...", "level": "INFO", "service": "pushops", "correlation_id": "...",
     "module": "...", "message": "...", "campaign_id": "...", ...}
    """

    def __init__(self, service: str = SERVICE_NAME):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "service": self.service,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }

        # Include exception info if present
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Engine ids passed via logging calls
        for key in EXTRA_LOG_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        # Raw device tokens never reach the log sink
        for key in MASKED_LOG_FIELDS:
            val = getattr(record, key, None)
            if val:
                log_entry[key] = mask_secret(str(val))

        return json.dumps(log_entry, default=str)


def configure_structured_logging(log_level: str = "INFO", service: str = SERVICE_NAME) -> None:
    """
    Replace default logging with structured JSON logging.
    Call once at application startup before any log calls.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    formatter = StructuredJsonFormatter(service)

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicate output
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Single stdout handler; the scheduler and API share one stream
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    # Gateway fan-out and the async drivers log per request at INFO/DEBUG
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "aiosqlite", "asyncpg"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
