"""Tests for tiered round-robin assignment and the admin fallback."""

from datetime import timedelta

from google.api_core.exceptions import ServiceUnavailable

from assignment import (
    TIER_ADMIN_ONLINE,
    TIER_ANY,
    TIER_DEFAULT,
    TIER_ONLINE,
    TIER_RECENT,
    AdminFallback,
    RespondentAssignee,
    assign_ticket,
    assignee_from_ticket,
    choose_assignee,
    select_assignee,
)
from conftest import TENANT, FakeDocument, add_respondent, add_ticket
from utils import utcnow


def _r(email, online=False, minutes_ago=None):
    r = {"email": email, "name": email.split("@")[0].title(), "isOnline": online}
    if minutes_ago is not None:
        r["lastSeen"] = utcnow() - timedelta(minutes=minutes_ago)
    return r


def test_online_tier_round_robin_uses_counter():
    respondents = [_r("a@x.com", True), _r("b@x.com", False), _r("c@x.com", True)]
    first = choose_assignee({"lastAssignedOnlineIndex": 0}, respondents)
    second = choose_assignee({"lastAssignedOnlineIndex": 1}, respondents)
    third = choose_assignee({"lastAssignedOnlineIndex": 2}, respondents)

    assert first.tier == TIER_ONLINE
    assert [d.assignee.email for d in (first, second, third)] == ["a@x.com", "c@x.com", "a@x.com"]


def test_recent_tier_when_nobody_online():
    respondents = [_r("a@x.com", False, 30), _r("b@x.com", False, 2)]
    decision = choose_assignee({}, respondents)
    assert decision.tier == TIER_RECENT
    assert decision.assignee.email == "b@x.com"
    assert decision.counter_field == "lastAssignedRecentIndex"


def test_admin_online_outranks_offline_respondents():
    decision = choose_assignee({"adminOnline": True}, [_r("a@x.com", False, 60)])
    assert decision.tier == TIER_ADMIN_ONLINE
    assert isinstance(decision.assignee, AdminFallback)
    assert decision.counter_field is None


def test_any_tier_when_everyone_offline():
    decision = choose_assignee({"lastAssignedAnyIndex": 3}, [_r("a@x.com"), _r("b@x.com")])
    assert decision.tier == TIER_ANY
    assert decision.assignee.email == "b@x.com"


def test_no_respondents_falls_back_to_admin():
    decision = choose_assignee({}, [])
    assert decision.tier == TIER_DEFAULT
    assert decision.assignee.to_fields() == {"assignedTo": "Admin", "assignedEmail": None}


def test_assignee_from_ticket_parses_storage_fields():
    assert assignee_from_ticket({"assignedTo": "Admin", "assignedEmail": None}) == AdminFallback()
    assert assignee_from_ticket({"assignedTo": None, "assignedEmail": None}) == AdminFallback()
    assert assignee_from_ticket({"assignedTo": "Ann", "assignedEmail": "ann@x.com"}) == RespondentAssignee("ann@x.com", "Ann")


def test_round_robin_fairness_across_online_respondents(db, company):
    for email in ("a@acme.com", "b@acme.com", "c@acme.com"):
        add_respondent(db, email, online=True, last_seen_minutes=1)

    picks = [select_assignee(db, TENANT).assignee.email for _ in range(6)]

    assert picks == ["a@acme.com", "b@acme.com", "c@acme.com"] * 2
    assert db.data("companies", TENANT)["lastAssignedOnlineIndex"] == 6


def test_inactive_respondents_are_never_assigned(db, company):
    add_respondent(db, "gone@acme.com", online=True, last_seen_minutes=1, status="inactive")
    add_respondent(db, "here@acme.com", online=False, last_seen_minutes=60)

    decision = select_assignee(db, TENANT)

    assert decision.tier == TIER_ANY
    assert decision.assignee.email == "here@acme.com"


def test_counter_write_failure_keeps_the_assignment(db, company, monkeypatch):
    add_respondent(db, "a@acme.com", name="Ann Agent", online=True, last_seen_minutes=1)
    add_ticket(db, "t1")
    real_update = FakeDocument.update

    def company_update_fails(self, data, option=None):
        if self._path == ("companies", TENANT):
            raise ServiceUnavailable("firestore unavailable")
        return real_update(self, data, option=option)

    monkeypatch.setattr(FakeDocument, "update", company_update_fails)
    ticket_ref = db.collection("companies").document(TENANT).collection("tickets").document("t1")

    decision = assign_ticket(db, TENANT, ticket_ref)

    assert decision.tier == TIER_ONLINE
    assert decision.assignee.email == "a@acme.com"
    ticket = db.data("companies", TENANT, "tickets", "t1")
    assert (ticket["assignedTo"], ticket["assignedEmail"]) == ("Ann Agent", "a@acme.com")
    assert "lastAssignedOnlineIndex" not in db.data("companies", TENANT)
