"""
Ticket resolution for inbound customer messages.

Finds the customer's non-closed ticket or creates one. Creation is two-phase: the ticket is
written first, then assignment updates it. A per-customer claim document, created with a
conditional create, keeps two concurrent first messages from opening two tickets.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from firebase_admin import firestore
from google.api_core.exceptions import AlreadyExists, FailedPrecondition, NotFound

from activity_logging import EVENT_TICKET_ASSIGNED, EVENT_TICKET_CREATED, log_routing_event
from assignment import AssignmentDecision, assign_ticket
from ticket_messages import add_system_message, tickets_ref
from utils import generate_ticket_id, to_datetime, utcnow

logger = logging.getLogger(__name__)

CLOSED_STATUS = "closed"
HISTORY_STATUSES = ["closed", "pending"]
HISTORY_LOOKBACK = 3
CLAIM_ATTEMPTS = 3


@dataclass
class ResolvedTicket:
    ref: object
    id: str
    created: bool
    assignment: Optional[AssignmentDecision] = None


def is_open_status(status: Optional[str]) -> bool:
    """Anything but closed counts as open, including legacy tickets stored without a status."""
    return status != CLOSED_STATUS


def find_open_ticket(db, tenant_id: str, customer_id: str):
    """
    First non-closed ticket for the customer, or None. Several open tickets is a data anomaly;
    first match wins. Filtered here because a `!=` query skips documents missing the field.
    """
    for doc in tickets_ref(db, tenant_id).where("customerId", "==", customer_id).stream():
        if is_open_status((doc.to_dict() or {}).get("status")):
            return doc
    return None


def build_history_summary(previous_tickets: List[dict], now: Optional[datetime] = None) -> Optional[str]:
    """
    "Returning customer with N previous interaction(s). Last interaction was ..."
    previous_tickets must be newest first.
    """
    if not previous_tickets:
        return None
    count = len(previous_tickets)
    summary = f"Returning customer with {count} previous interaction{'s' if count != 1 else ''}. "
    last_updated = to_datetime(previous_tickets[0].get("updatedAt"))
    if last_updated is None:
        return summary.strip()
    days_since = int(((now or utcnow()) - last_updated).total_seconds() // 86400)
    if days_since <= 0:
        summary += "Last interaction was today."
    elif days_since == 1:
        summary += "Last interaction was yesterday."
    else:
        summary += f"Last interaction was {days_since} days ago."
    return summary


def summarize_customer_history(db, tenant_id: str, customer_id: str, now: Optional[datetime] = None) -> Optional[str]:
    """Soft-fail: any lookup error yields None."""
    try:
        query = (
            tickets_ref(db, tenant_id)
            .where("customerId", "==", customer_id)
            .where("status", "in", HISTORY_STATUSES)
            .order_by("updatedAt", direction=firestore.Query.DESCENDING)
            .limit(HISTORY_LOOKBACK)
        )
        previous = [doc.to_dict() or {} for doc in query.stream()]
    except Exception as e:
        logger.warning("Customer history lookup failed for %s in company %s: %s", customer_id, tenant_id, e)
        return None
    return build_history_summary(previous, now=now)


def _claim_ref(db, tenant_id: str, customer_id: str):
    key = hashlib.sha1(customer_id.encode("utf-8")).hexdigest()
    return db.collection("companies").document(tenant_id).collection("customerClaims").document(key)


def _ticket_is_open(db, tenant_id: str, ticket_id: str) -> bool:
    if not ticket_id:
        return False
    doc = tickets_ref(db, tenant_id).document(ticket_id).get()
    return doc.exists and is_open_status((doc.to_dict() or {}).get("status"))


def claim_customer(db, tenant_id: str, customer_id: str, ticket_id: str) -> str:
    """
    Claim the customer's open-ticket slot for ticket_id. Returns the ticket id that owns the
    slot: ticket_id when the claim was won, or the id of an open ticket claimed concurrently.

    A claim pointing at a closed or missing ticket is stale. It is replaced only if it is
    unchanged since it was read; when another request replaced it first, the claim is read
    again and that request's ticket is adopted.
    """
    claim_ref = _claim_ref(db, tenant_id, customer_id)
    claim = {"ticketId": ticket_id, "customerId": customer_id, "createdAt": firestore.SERVER_TIMESTAMP}
    for _ in range(CLAIM_ATTEMPTS):
        try:
            claim_ref.create(claim)
            return ticket_id
        except AlreadyExists:
            pass
        existing = claim_ref.get()
        if not existing.exists:
            continue
        current = (existing.to_dict() or {}).get("ticketId")
        if current and _ticket_is_open(db, tenant_id, current):
            return current
        try:
            claim_ref.update(claim, option=db.write_option(last_update_time=existing.update_time))
            return ticket_id
        except (FailedPrecondition, NotFound):
            logger.info("Claim for customer %s in company %s changed concurrently; re-reading", customer_id, tenant_id)
    raise RuntimeError(f"Could not claim customer {customer_id} in company {tenant_id}")


def resolve_ticket(db, tenant_id: str, customer_id: str, now: Optional[datetime] = None) -> ResolvedTicket:
    """
    Find or create the ticket an inbound message belongs to.
    Store write failures propagate so the webhook answers 500 and the provider retries.
    """
    existing = find_open_ticket(db, tenant_id, customer_id)
    if existing is not None:
        logger.info("Using existing ticket %s for customer %s", existing.id, customer_id)
        return ResolvedTicket(ref=existing.reference, id=existing.id, created=False)

    ticket_id = generate_ticket_id()
    # Before the claim: the claim-to-ticket window holds only the ticket write
    summary = summarize_customer_history(db, tenant_id, customer_id, now=now)
    owner = claim_customer(db, tenant_id, customer_id, ticket_id)
    if owner != ticket_id:
        logger.info("Ticket %s was opened concurrently for customer %s; joining it", owner, customer_id)
        return ResolvedTicket(ref=tickets_ref(db, tenant_id).document(owner), id=owner, created=False)

    ticket_ref = tickets_ref(db, tenant_id).document(ticket_id)
    ticket_ref.set({
        "customerId": customer_id,
        "status": "open",
        "lastMessage": "",
        "channel": "whatsapp",
        "aiEnabled": True,
        "assignedTo": None,
        "assignedEmail": None,
        "customerHistorySummary": summary,
        "createdAt": firestore.SERVER_TIMESTAMP,
        "updatedAt": firestore.SERVER_TIMESTAMP,
    })
    logger.info("Created ticket %s for customer %s", ticket_id, customer_id)
    log_routing_event(db, tenant_id, EVENT_TICKET_CREATED, f"Ticket opened for {customer_id}", ticket_id)

    # The ticket must exist before assignment updates it
    decision = assign_ticket(db, tenant_id, ticket_ref, now=now)
    log_routing_event(
        db, tenant_id, EVENT_TICKET_ASSIGNED, f"Assigned to {decision.assignee.label}", ticket_id,
        {"assigned_to": decision.assignee.label, "assigned_email": decision.assignee.email, "tier": decision.tier},
    )

    if summary:
        add_system_message(
            ticket_ref,
            "system-history",
            f"👋 {summary}\n\n💡 Check the customer history section above for previous conversations and context.",
            notice="customer_history",
        )

    return ResolvedTicket(ref=ticket_ref, id=ticket_id, created=True, assignment=decision)
