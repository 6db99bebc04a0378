"""
Routing audit log: Firestore companies/{tenantId}/routingEvents collection.
Schema: event_type, event_label, ticket_id, metadata (assigned_to, tier, reason, error_code, ...),
created_at (serverTimestamp).
One document per routing decision worth auditing. No message bodies, no credentials.
"""

import logging
from typing import Any, Dict, Optional

from firebase_admin.firestore import SERVER_TIMESTAMP

logger = logging.getLogger(__name__)

EVENT_TICKET_CREATED = "ticket_created"
EVENT_TICKET_ASSIGNED = "ticket_assigned"
EVENT_PRESENCE_CORRECTED = "presence_corrected"
EVENT_AI_SUPPRESSED = "ai_suppressed"
EVENT_AI_TAKEOVER = "ai_takeover"
EVENT_AI_REPLIED = "ai_replied"
EVENT_AGENT_JOINED = "agent_joined"
EVENT_AI_DISABLED = "ai_disabled"
EVENT_AI_TOGGLED = "ai_toggled"
EVENT_DELIVERY_FAILED = "delivery_failed"

ALLOWED_EVENT_TYPES = frozenset({
    EVENT_TICKET_CREATED,
    EVENT_TICKET_ASSIGNED,
    EVENT_PRESENCE_CORRECTED,
    EVENT_AI_SUPPRESSED,
    EVENT_AI_TAKEOVER,
    EVENT_AI_REPLIED,
    EVENT_AGENT_JOINED,
    EVENT_AI_DISABLED,
    EVENT_AI_TOGGLED,
    EVENT_DELIVERY_FAILED,
})

# Metadata keys we allow (no sensitive data)
ALLOWED_METADATA_KEYS = frozenset({
    "assigned_to", "assigned_email", "tier", "state", "reason", "respondent_email",
    "minutes_since_seen", "error_code", "error_status", "failure_kind", "context", "enabled",
})


def _sanitize_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Only allow safe, non-sensitive keys for storage."""
    if not metadata or not isinstance(metadata, dict):
        return {}
    return {
        k: str(v)[:500]
        for k, v in metadata.items()
        if k in ALLOWED_METADATA_KEYS and v is not None
    }


def log_routing_event(
    db,
    tenant_id: str,
    event_type: str,
    event_label: str = "",
    ticket_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Append one routing event under the company. Uses server timestamp for created_at.
    Fails silently so message routing is never broken by the audit trail.
    """
    if not tenant_id or not event_type:
        return
    if event_type not in ALLOWED_EVENT_TYPES:
        logger.warning("activity_logging: unknown event_type=%s", event_type)
        return
    try:
        payload = {
            "event_type": event_type,
            "event_label": (event_label or "").strip()[:500] or event_type,
            "ticket_id": ticket_id or "",
            "metadata": _sanitize_metadata(metadata),
            "created_at": SERVER_TIMESTAMP,
        }
        db.collection("companies").document(tenant_id).collection("routingEvents").add(payload)
    except Exception as e:
        logger.exception("activity_logging: failed to write routing event: %s", e)
