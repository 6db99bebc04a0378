"""
Shared utilities: timestamp coercion, id and attribution formatting.
"""

import random
import string
import threading
import time
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_datetime(value) -> Optional[datetime]:
    """
    Coerce a stored timestamp to an aware UTC datetime.
    Accepts Firestore timestamps (datetime subclasses), naive datetimes (assumed UTC),
    ISO-8601 strings and epoch milliseconds. Returns None for anything else.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    return None


def minutes_since(value, now: Optional[datetime] = None) -> Optional[float]:
    """Minutes elapsed since a stored timestamp, or None when it cannot be read."""
    moment = to_datetime(value)
    if moment is None:
        return None
    return ((now or utcnow()) - moment).total_seconds() / 60.0


def generate_ticket_id() -> str:
    """ticket-<epoch ms>-<9 base36 chars>"""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"ticket-{int(time.time() * 1000)}-{suffix}"


_last_id_ms = 0
_id_lock = threading.Lock()


def timestamped_id(prefix: str) -> str:
    """
    Message document id such as system-ai-takeover-1712345678901.
    Milliseconds never repeat within a process, so two writes in the same tick get distinct ids.
    """
    global _last_id_ms
    with _id_lock:
        ms = max(int(time.time() * 1000), _last_id_ms + 1)
        _last_id_ms = ms
    return f"{prefix}-{ms}"


def get_user_initials(name: Optional[str]) -> str:
    if not name or not name.strip():
        return "U"
    return "".join(word[0].upper() for word in name.split() if word)[:2]


def attribute_body(body: str, sender_name: str, company: dict) -> str:
    """Append the sender's initials (e.g. "<AA>") unless the company turned attribution off."""
    if company.get("showUserInitials") is False:
        return body
    return f"{body}\n\n<{get_user_initials(sender_name)}>"
