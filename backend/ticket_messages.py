"""
Ticket message subcollection: append-only conversation record, ordered by createdAt.
Also the audit trail the handoff logic reads to avoid duplicate notices.
"""

from typing import List, Optional

from firebase_admin import firestore

from utils import timestamped_id

ROLE_CUSTOMER = "customer"
ROLE_AGENT = "agent"
ROLE_AI = "ai"
ROLE_SYSTEM = "system"

SYSTEM_SENDER = "System"


def message_role(message: dict) -> str:
    """Customer messages were historically stored without a role."""
    return message.get("role") or ROLE_CUSTOMER


def tickets_ref(db, tenant_id: str):
    return db.collection("companies").document(tenant_id).collection("tickets")


def record_inbound_message(ticket_ref, message_id: str, sender: str, body: str) -> None:
    """Keyed by the provider message id: a re-delivered webhook overwrites instead of duplicating."""
    ticket_ref.collection("messages").document(message_id).set({
        "from": sender,
        "role": ROLE_CUSTOMER,
        "body": body,
        "createdAt": firestore.SERVER_TIMESTAMP,
    })


def add_message(ticket_ref, doc_prefix: str, sender: str, role: str, body: str, **extra) -> str:
    """Append a message under a synthesized id; returns the id."""
    message_id = timestamped_id(doc_prefix)
    ticket_ref.collection("messages").document(message_id).set({
        "from": sender,
        "role": role,
        "body": body,
        "createdAt": firestore.SERVER_TIMESTAMP,
        **{k: v for k, v in extra.items() if v is not None},
    })
    return message_id


def add_system_message(
    ticket_ref,
    doc_prefix: str,
    body: str,
    notice: Optional[str] = None,
    error: Optional[dict] = None,
) -> str:
    return add_message(ticket_ref, doc_prefix, SYSTEM_SENDER, ROLE_SYSTEM, body, notice=notice, error=error)


def load_recent_messages(ticket_ref, limit: int, include_system: bool = True) -> List[dict]:
    """Last `limit` messages, oldest first."""
    query = (
        ticket_ref.collection("messages")
        .order_by("createdAt", direction=firestore.Query.DESCENDING)
        .limit(limit)
    )
    messages = [doc.to_dict() or {} for doc in query.stream()]
    messages.reverse()
    if not include_system:
        messages = [m for m in messages if message_role(m) != ROLE_SYSTEM]
    return messages


def load_conversation(ticket_ref, limit: int) -> List[dict]:
    """Last `limit` customer/agent/AI messages, oldest first. System rows never count toward the limit."""
    query = ticket_ref.collection("messages").order_by("createdAt", direction=firestore.Query.DESCENDING)
    messages = []
    for doc in query.stream():
        data = doc.to_dict() or {}
        if message_role(data) == ROLE_SYSTEM:
            continue
        messages.append(data)
        if len(messages) >= limit:
            break
    messages.reverse()
    return messages
