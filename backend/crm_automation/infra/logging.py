import contextvars
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict

# Applied in order; e-mails go first so their "@domain" part is not read as a handle.
_REDACTIONS: tuple[tuple[re.Pattern[str], Any], ...] = (
    (re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"), "[REDACTED_EMAIL]"),
    (re.compile(r"(?<![\w-])\+?\d[\d\s().-]{8,}\d\b"), "[REDACTED_PHONE]"),
    (re.compile(r"(?<![\w@])@[A-Za-z0-9_.]{2,30}\b"), "[REDACTED_HANDLE]"),
    (
        re.compile(r"(?P<key>token|access_token|api_key|apikey|signature|sig)=[^&\s]+", re.IGNORECASE),
        lambda match: f"{match.group('key')}=[REDACTED_TOKEN]",
    ),
    (re.compile(r"(?i)\bauthorization\s*[:=]\s*\S+"), "authorization=[REDACTED_TOKEN]"),
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"), "Bearer [REDACTED_TOKEN]"),
)

# Lead contact fields and credentials are dropped wholesale whatever their shape.
MASKED_KEYS = frozenset(
    {
        "phone",
        "email",
        "instagram_handle",
        "recipient",
        "authorization",
        "token",
        "api_token",
        "api_key",
        "signature",
    }
)

_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("crm_log_context", default={})
_RESERVED_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


def redact_pii(value: str) -> str:
    for pattern, replacement in _REDACTIONS:
        value = pattern.sub(replacement, value)
    return value


def _scrub(value: Any, key: str | None = None) -> Any:
    if key is not None and key.lower() in MASKED_KEYS:
        return "[REDACTED]"
    if isinstance(value, str):
        return redact_pii(value)
    if isinstance(value, dict):
        return {inner_key: _scrub(inner, inner_key) for inner_key, inner in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(item) for item in value]
    return value


def update_log_context(**fields: Any) -> dict[str, Any]:
    """Merge non-null fields into the context attached to every log line."""
    merged = dict(_context.get())
    merged.update({key: value for key, value in fields.items() if value is not None})
    _context.set(merged)
    return merged


def clear_log_context() -> None:
    _context.set({})


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }
    nested = fields.pop("extra", None)
    if isinstance(nested, dict):
        fields.update(nested)
    return fields


class RedactingJsonFormatter(logging.Formatter):
    """One JSON object per line with contact details and secrets scrubbed."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_pii(record.getMessage()),
        }
        payload.update(_scrub(_context.get()))
        payload.update(_scrub(_record_fields(record)))
        if record.exc_info:
            payload["exc_info"] = redact_pii(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(RedactingJsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
