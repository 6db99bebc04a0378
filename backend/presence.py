"""
Respondent presence: effective online/offline evaluation and stale-flag correction.

Two thresholds are in play and are deliberately kept apart:
- PRESENCE_HARD_TIMEOUT_MINUTES: a respondent flagged online whose lastSeen is older than
  this is corrected to offline in the store (clients that crash never send "offline").
- company.aiWaitMinutes: a faster threshold used only to decide whether the AI should answer.
  Crossing it does not write anything; the stored flag may still read true.

The admin fallback actor has no heartbeat: company.adminOnline is an explicit switch.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from firebase_admin import firestore

from config import (
    DEFAULT_AI_WAIT_MINUTES,
    PRESENCE_HARD_TIMEOUT_MINUTES,
    RECENTLY_ONLINE_MINUTES,
)
from utils import minutes_since, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PresenceStatus:
    online: bool
    # True when the stored isOnline flag must be corrected to false
    needs_correction: bool
    minutes_since_seen: Optional[float]
    reason: str


def ai_wait_minutes(company: dict) -> int:
    """Company routing threshold; missing or non-positive values fall back to the default."""
    try:
        value = int(company.get("aiWaitMinutes") or 0)
    except (TypeError, ValueError):
        value = 0
    return value if value > 0 else DEFAULT_AI_WAIT_MINUTES


def evaluate_presence(
    respondent: dict,
    wait_minutes: int,
    now: Optional[datetime] = None,
    hard_timeout_minutes: int = PRESENCE_HARD_TIMEOUT_MINUTES,
) -> PresenceStatus:
    """Pure evaluation of the presence gates, first match wins."""
    if respondent.get("isOnline") is not True:
        return PresenceStatus(False, False, minutes_since(respondent.get("lastSeen"), now), "flagged offline")

    elapsed = minutes_since(respondent.get("lastSeen"), now)
    if elapsed is None:
        # No timestamp to correct against; trust the flag.
        return PresenceStatus(True, False, None, "online, no lastSeen")
    if elapsed > hard_timeout_minutes:
        return PresenceStatus(False, True, elapsed, f"stale for {int(elapsed)}min (> {hard_timeout_minutes}min hard timeout)")
    if elapsed > wait_minutes:
        return PresenceStatus(False, False, elapsed, f"inactive for {int(elapsed)}min (> {wait_minutes}min wait)")
    return PresenceStatus(True, False, elapsed, "online")


def reconcile(respondent_ref, respondent: dict, now: Optional[datetime] = None) -> bool:
    """
    Persist isOnline=false for a respondent past the hard timeout.
    lastSeen is left untouched. Returns True when a correction was written.
    """
    status = evaluate_presence(respondent, wait_minutes=PRESENCE_HARD_TIMEOUT_MINUTES, now=now)
    if not status.needs_correction:
        return False
    respondent_ref.update({"isOnline": False})
    respondent["isOnline"] = False
    logger.info(
        "Auto-marked %s offline (last seen %d minutes ago)",
        respondent.get("email"), int(status.minutes_since_seen or 0),
    )
    return True


def check_presence(
    respondent_ref,
    respondent: dict,
    wait_minutes: int,
    now: Optional[datetime] = None,
) -> PresenceStatus:
    """Evaluate presence for AI routing and write the stale-flag correction when due."""
    now = now or utcnow()
    status = evaluate_presence(respondent, wait_minutes, now=now)
    if status.needs_correction:
        reconcile(respondent_ref, respondent, now=now)
    logger.info(
        "Presence %s: online=%s (%s)", respondent.get("email"), status.online, status.reason,
    )
    return status


def is_effectively_online(
    respondent_ref,
    respondent: dict,
    wait_minutes: int,
    now: Optional[datetime] = None,
) -> bool:
    return check_presence(respondent_ref, respondent, wait_minutes, now=now).online


def is_recently_online(respondent: dict, now: Optional[datetime] = None, window_minutes: int = RECENTLY_ONLINE_MINUTES) -> bool:
    """lastSeen within the window, regardless of the isOnline flag. Used only by assignment."""
    elapsed = minutes_since(respondent.get("lastSeen"), now)
    return elapsed is not None and elapsed <= window_minutes


def is_admin_online(company: dict) -> bool:
    return company.get("adminOnline") is True


def respondents_ref(db, tenant_id: str):
    return db.collection("companies").document(tenant_id).collection("respondents")


def find_respondent(db, tenant_id: str, email: str) -> Tuple[Optional[object], Optional[dict]]:
    """
    Look up a respondent by email. Documents are keyed by email; older rows may carry an
    auto id, so fall back to a field query. Returns (reference, data) or (None, None).
    """
    if not email:
        return None, None
    ref = respondents_ref(db, tenant_id)
    doc = ref.document(email).get()
    if doc.exists:
        return doc.reference, doc.to_dict() or {}
    for match in ref.where("email", "==", email).limit(1).stream():
        return match.reference, match.to_dict() or {}
    return None, None


def load_active_respondents(db, tenant_id: str) -> List[dict]:
    """Active respondents in store order. Each dict carries its document id under "id"."""
    result = []
    for doc in respondents_ref(db, tenant_id).where("status", "==", "active").stream():
        result.append({"id": doc.id, **(doc.to_dict() or {})})
    return result


def set_respondent_status(db, tenant_id: str, email: str, action: str, now: Optional[datetime] = None) -> dict:
    """
    Presence source write path (heartbeats, visibility changes, sendBeacon on unload).
    lastSeen is refreshed only when going online or on heartbeat; going offline keeps it.
    Returns the written fields, or raises LookupError when the respondent is unknown.
    """
    ref, _ = find_respondent(db, tenant_id, email)
    if ref is None:
        raise LookupError(email)
    online = action in ("online", "heartbeat")
    updates = {"isOnline": online}
    if online:
        updates["lastSeen"] = now or firestore.SERVER_TIMESTAMP
    ref.update(updates)
    logger.info("Respondent %s status -> %s", email, "online" if online else "offline")
    return updates


def set_admin_online(db, tenant_id: str, online: bool) -> None:
    db.collection("companies").document(tenant_id).update({"adminOnline": bool(online)})
    logger.info("Admin presence for company %s -> %s", tenant_id, online)


def sweep_stale_respondents(db, tenant_id: str, now: Optional[datetime] = None) -> int:
    """Apply the hard-timeout correction to every respondent flagged online. Returns corrections made."""
    now = now or utcnow()
    corrected = 0
    for doc in respondents_ref(db, tenant_id).where("isOnline", "==", True).stream():
        if reconcile(doc.reference, doc.to_dict() or {}, now=now):
            corrected += 1
    return corrected
