"""
Background scheduler for the presence sweep.
Every PRESENCE_SWEEP_INTERVAL_MINUTES, respondents still flagged online past the hard timeout
are corrected to offline across all companies, so a crashed dashboard does not keep a
respondent "online" until the next inbound message touches them.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from firebase_admin import firestore

from config import PRESENCE_SWEEP_ENABLED, PRESENCE_SWEEP_INTERVAL_MINUTES
from presence import sweep_stale_respondents
from utils import utcnow

logger = logging.getLogger(__name__)

_scheduler = None


def get_db():
    return firestore.client()


def _get_all_company_ids(db):
    try:
        return [doc.id for doc in db.collection("companies").stream()]
    except Exception as e:
        logger.warning("Failed to fetch companies: %s", e)
        return []


def run_presence_sweep(db=None) -> int:
    """Apply the hard-timeout correction in every company. Returns total corrections."""
    db = db or get_db()
    now = utcnow()
    total = 0
    for company_id in _get_all_company_ids(db):
        try:
            corrected = sweep_stale_respondents(db, company_id, now=now)
        except Exception as e:
            logger.exception("Presence sweep failed for company %s: %s", company_id, e)
            continue
        if corrected:
            logger.info("Presence sweep company=%s: %d respondent(s) marked offline", company_id, corrected)
        total += corrected
    return total


def start_scheduler():
    """Start the background scheduler. Called from main.py on startup."""
    global _scheduler
    if not PRESENCE_SWEEP_ENABLED:
        logger.info("Presence sweep disabled, skipping background scheduler")
        return
    if _scheduler is not None:
        return
    _scheduler = BackgroundScheduler()
    _scheduler.add_job(
        run_presence_sweep,
        "interval",
        minutes=PRESENCE_SWEEP_INTERVAL_MINUTES,
        id="presence_sweep",
    )
    _scheduler.start()
    logger.info("Presence sweep scheduler started (interval=%dmin)", PRESENCE_SWEEP_INTERVAL_MINUTES)
