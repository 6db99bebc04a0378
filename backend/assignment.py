"""
Round-robin assignment of new tickets to respondents, with the admin as fallback actor.

Tiers, first non-empty wins:
1. online respondents            (lastAssignedOnlineIndex)
2. recently online respondents   (lastAssignedRecentIndex)
3. admin, when adminOnline is set
4. any respondent                (lastAssignedAnyIndex)
5. admin, when there are no respondents at all

Counters live on the company document and are bumped with Firestore Increment so that
every process instance shares them. A lost increment only skews fairness.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Union

from firebase_admin import firestore

from presence import is_admin_online, is_recently_online, load_active_respondents

logger = logging.getLogger(__name__)

# Storage label for the fallback actor. Only read/written at the storage boundary.
ADMIN_LABEL = "Admin"

TIER_ONLINE = "online"
TIER_RECENT = "recently_online"
TIER_ADMIN_ONLINE = "admin_online"
TIER_ANY = "any"
TIER_DEFAULT = "default"

COUNTER_FIELDS = {
    TIER_ONLINE: "lastAssignedOnlineIndex",
    TIER_RECENT: "lastAssignedRecentIndex",
    TIER_ANY: "lastAssignedAnyIndex",
}


@dataclass(frozen=True)
class RespondentAssignee:
    email: str
    name: str

    @property
    def label(self) -> str:
        return self.name

    def to_fields(self) -> dict:
        return {"assignedTo": self.name, "assignedEmail": self.email}


@dataclass(frozen=True)
class AdminFallback:
    label = ADMIN_LABEL
    email = None

    def to_fields(self) -> dict:
        return {"assignedTo": ADMIN_LABEL, "assignedEmail": None}


Assignee = Union[RespondentAssignee, AdminFallback]


@dataclass(frozen=True)
class AssignmentDecision:
    assignee: Assignee
    tier: str
    counter_field: Optional[str] = None
    index: Optional[int] = None


def display_name(respondent: dict) -> str:
    return respondent.get("name") or (respondent.get("email") or "").split("@")[0]


def assignee_from_ticket(ticket: dict) -> Assignee:
    """Parse the stored assignment fields. No email, or the Admin label, means the fallback actor."""
    email = ticket.get("assignedEmail")
    if email and ticket.get("assignedTo") != ADMIN_LABEL:
        return RespondentAssignee(email=email, name=ticket.get("assignedTo") or email.split("@")[0])
    return AdminFallback()


def _round_robin(company: dict, tier: str, pool: List[dict]) -> AssignmentDecision:
    field = COUNTER_FIELDS[tier]
    try:
        counter = int(company.get(field) or 0)
    except (TypeError, ValueError):
        counter = 0
    index = counter % len(pool)
    chosen = pool[index]
    assignee = RespondentAssignee(email=chosen.get("email"), name=display_name(chosen))
    return AssignmentDecision(assignee=assignee, tier=tier, counter_field=field, index=index)


def choose_assignee(company: dict, respondents: List[dict], now: Optional[datetime] = None) -> AssignmentDecision:
    """Pure tier selection. respondents must be in store order; they are never re-sorted."""
    respondents = [r for r in respondents if r.get("email")]

    online = [r for r in respondents if r.get("isOnline") is True]
    if online:
        return _round_robin(company, TIER_ONLINE, online)

    recent = [r for r in respondents if is_recently_online(r, now=now)]
    if recent:
        return _round_robin(company, TIER_RECENT, recent)

    # Admin presence outranks any offline respondent
    if is_admin_online(company):
        return AssignmentDecision(assignee=AdminFallback(), tier=TIER_ADMIN_ONLINE)

    if respondents:
        return _round_robin(company, TIER_ANY, respondents)

    return AssignmentDecision(assignee=AdminFallback(), tier=TIER_DEFAULT)


def select_assignee(db, tenant_id: str, respondents: Optional[List[dict]] = None, now: Optional[datetime] = None) -> AssignmentDecision:
    """
    Re-read company state, pick an assignee and bump the tier's counter.
    Counter write failures are logged; the assignment still stands.
    """
    company_ref = db.collection("companies").document(tenant_id)
    company_doc = company_ref.get()
    company = (company_doc.to_dict() or {}) if company_doc.exists else {}
    if respondents is None:
        respondents = load_active_respondents(db, tenant_id)

    decision = choose_assignee(company, respondents, now=now)
    logger.info(
        "Assignment for company %s: tier=%s -> %s (%d active respondents)",
        tenant_id, decision.tier, decision.assignee.label, len(respondents),
    )
    if decision.counter_field:
        try:
            company_ref.update({decision.counter_field: firestore.Increment(1)})
        except Exception as e:
            logger.error("Failed to update %s for company %s: %s", decision.counter_field, tenant_id, e)
    return decision


def assign_ticket(db, tenant_id: str, ticket_ref, now: Optional[datetime] = None) -> AssignmentDecision:
    """Second phase of ticket creation: write the chosen assignee onto the existing ticket."""
    decision = select_assignee(db, tenant_id, now=now)
    ticket_ref.update({
        **decision.assignee.to_fields(),
        "assignedAt": firestore.SERVER_TIMESTAMP,
        "updatedAt": firestore.SERVER_TIMESTAMP,
    })
    return decision
