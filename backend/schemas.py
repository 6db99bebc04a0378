"""
Shared Pydantic config and helpers for strict input validation.
Reject unexpected fields; strip whitespace on every string the dashboard or provider sends.
"""

from typing import Any, Iterable, Optional

from pydantic import ConfigDict

# Base config: forbid extra fields so clients cannot inject unexpected data.
STRICT_REQUEST_CONFIG = ConfigDict(extra="forbid", str_strip_whitespace=True)

# Provider payloads carry many fields we ignore, so only alias resolution applies to them.
WEBHOOK_FIELDS = {
    "message": ("message", "Body"),
    "from": ("from", "From"),
    "id": ("id", "MessageSid", "SmsMessageSid"),
}


def first_value(payload: dict, keys: Iterable[str]) -> Optional[str]:
    """First non-empty value among alternative field names, stripped."""
    for key in keys:
        value: Any = payload.get(key)
        if value is None:
            continue
        value = str(value).strip()
        if value:
            return value
    return None


def parse_webhook_payload(payload: dict) -> dict:
    """Normalize JSON or form-encoded webhook bodies to {message, from, id}."""
    return {name: first_value(payload, keys) for name, keys in WEBHOOK_FIELDS.items()}
