"""Tests for respondent presence evaluation, stale-flag correction and the presence sweep."""

from datetime import timedelta

import pytest

from background_scheduler import run_presence_sweep
from conftest import TENANT, add_respondent
from presence import (
    ai_wait_minutes,
    check_presence,
    evaluate_presence,
    find_respondent,
    is_recently_online,
    set_admin_online,
    set_respondent_status,
    sweep_stale_respondents,
)
from utils import utcnow


def _respondent(online, minutes_ago):
    r = {"email": "r1@acme.com", "isOnline": online}
    if minutes_ago is not None:
        r["lastSeen"] = utcnow() - timedelta(minutes=minutes_ago)
    return r


def test_flagged_offline_is_offline():
    status = evaluate_presence(_respondent(False, 1), wait_minutes=5)
    assert status.online is False
    assert status.needs_correction is False


def test_online_without_last_seen_trusts_flag():
    status = evaluate_presence(_respondent(True, None), wait_minutes=5)
    assert status.online is True
    assert status.minutes_since_seen is None


def test_recent_heartbeat_is_online():
    assert evaluate_presence(_respondent(True, 2), wait_minutes=5).online is True


def test_past_wait_threshold_is_offline_without_correction():
    """6 minutes with a 5 minute wait: AI answers, but the stored flag is left alone."""
    status = evaluate_presence(_respondent(True, 6), wait_minutes=5)
    assert status.online is False
    assert status.needs_correction is False


def test_past_hard_timeout_needs_correction():
    status = evaluate_presence(_respondent(True, 11), wait_minutes=30)
    assert status.online is False
    assert status.needs_correction is True


def test_hard_timeout_boundary_is_exclusive():
    now = utcnow()
    r = {"isOnline": True, "lastSeen": now - timedelta(minutes=10)}
    assert evaluate_presence(r, wait_minutes=30, now=now).needs_correction is False


def test_check_presence_corrects_stored_flag(db):
    add_respondent(db, "r1@acme.com", online=True, last_seen_minutes=11)
    ref, data = find_respondent(db, TENANT, "r1@acme.com")
    last_seen = data["lastSeen"]

    status = check_presence(ref, data, wait_minutes=5)

    assert status.online is False
    stored = db.data("companies", TENANT, "respondents", "r1@acme.com")
    assert stored["isOnline"] is False
    # lastSeen is never touched by the correction
    assert stored["lastSeen"] == last_seen


def test_check_presence_past_wait_does_not_write(db):
    add_respondent(db, "r1@acme.com", online=True, last_seen_minutes=6)
    ref, data = find_respondent(db, TENANT, "r1@acme.com")

    assert check_presence(ref, data, wait_minutes=5).online is False
    assert db.data("companies", TENANT, "respondents", "r1@acme.com")["isOnline"] is True


@pytest.mark.parametrize("value,expected", [(None, 5), (0, 5), (-3, 5), ("abc", 5), (2, 2), ("15", 15)])
def test_ai_wait_minutes_defaults(value, expected):
    assert ai_wait_minutes({"aiWaitMinutes": value}) == expected


def test_recently_online_ignores_flag():
    assert is_recently_online({"isOnline": False, "lastSeen": utcnow() - timedelta(minutes=3)}) is True
    assert is_recently_online({"isOnline": True, "lastSeen": utcnow() - timedelta(minutes=8)}) is False
    assert is_recently_online({"isOnline": True}) is False


def test_find_respondent_falls_back_to_email_field(db):
    db.collection("companies").document(TENANT).collection("respondents").document("auto-id-1").set(
        {"email": "legacy@acme.com", "status": "active"}
    )
    ref, data = find_respondent(db, TENANT, "legacy@acme.com")
    assert ref.id == "auto-id-1"
    assert data["email"] == "legacy@acme.com"
    assert find_respondent(db, TENANT, "nobody@acme.com") == (None, None)


def test_status_offline_keeps_last_seen(db):
    add_respondent(db, "r1@acme.com", online=True, last_seen_minutes=3)
    before = db.data("companies", TENANT, "respondents", "r1@acme.com")["lastSeen"]

    set_respondent_status(db, TENANT, "r1@acme.com", "offline")

    stored = db.data("companies", TENANT, "respondents", "r1@acme.com")
    assert stored["isOnline"] is False
    assert stored["lastSeen"] == before


def test_status_heartbeat_refreshes_last_seen(db):
    add_respondent(db, "r1@acme.com", online=False, last_seen_minutes=30)

    set_respondent_status(db, TENANT, "r1@acme.com", "heartbeat")

    stored = db.data("companies", TENANT, "respondents", "r1@acme.com")
    assert stored["isOnline"] is True
    assert utcnow() - stored["lastSeen"] < timedelta(minutes=1)


def test_status_unknown_respondent_raises(db):
    with pytest.raises(LookupError):
        set_respondent_status(db, TENANT, "ghost@acme.com", "online")


def test_set_admin_online(db, company):
    set_admin_online(db, TENANT, True)
    assert db.data("companies", TENANT)["adminOnline"] is True


def test_sweep_corrects_only_stale_online_respondents(db, company):
    add_respondent(db, "stale@acme.com", online=True, last_seen_minutes=25)
    add_respondent(db, "fresh@acme.com", online=True, last_seen_minutes=1)
    add_respondent(db, "away@acme.com", online=False, last_seen_minutes=60)

    assert sweep_stale_respondents(db, TENANT) == 1
    assert db.data("companies", TENANT, "respondents", "stale@acme.com")["isOnline"] is False
    assert db.data("companies", TENANT, "respondents", "fresh@acme.com")["isOnline"] is True


def test_scheduled_sweep_walks_all_companies(db, company):
    db.collection("companies").document("globex").set({"name": "Globex"})
    add_respondent(db, "a@acme.com", online=True, last_seen_minutes=20)
    add_respondent(db, "b@globex.com", online=True, last_seen_minutes=20, tenant="globex")

    assert run_presence_sweep(db) == 2
