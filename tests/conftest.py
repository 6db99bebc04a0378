"""
Test configuration and fixtures.

Provides:
- An in-memory Firestore double (collections, documents, where/order_by/limit,
  create conflicts, last-update-time preconditions, SERVER_TIMESTAMP and Increment transforms)
- Fake Twilio and OpenAI clients patched into the reply pipeline
- FastAPI TestClient wired to the fake store (startup hooks are not run)
"""

import copy
import uuid
from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from firebase_admin import firestore
from google.api_core.exceptions import AlreadyExists, FailedPrecondition, NotFound

import messaging_client
import reply_pipeline
from rate_limit import limiter
from utils import utcnow


# =============================================================================
# In-memory Firestore
# =============================================================================

class FakeSnapshot:
    def __init__(self, reference, data, update_time=None):
        self.reference = reference
        self.id = reference.id
        self._data = data
        self.update_time = update_time

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeDocument:
    def __init__(self, db, path):
        self._db = db
        self._path = path

    @property
    def id(self):
        return self._path[-1]

    def collection(self, name):
        return FakeCollection(self._db, self._path + (name,))

    def get(self):
        return FakeSnapshot(self, self._db.docs.get(self._path), self._db.update_times.get(self._path))

    def set(self, data, merge=False):
        current = self._db.docs.get(self._path) if merge else None
        self._db.write(self._path, self._db.apply(dict(current or {}), data))

    def update(self, data, option=None):
        if self._path not in self._db.docs:
            raise NotFound(f"No document to update: {'/'.join(self._path)}")
        if option is not None and option.last_update_time != self._db.update_times.get(self._path):
            raise FailedPrecondition(f"Document changed since last read: {'/'.join(self._path)}")
        self._db.write(self._path, self._db.apply(self._db.docs[self._path], data))

    def create(self, data):
        if self._path in self._db.docs:
            raise AlreadyExists(f"Document already exists: {'/'.join(self._path)}")
        self._db.write(self._path, self._db.apply({}, data))


class FakeQuery:
    def __init__(self, collection, filters=(), order=None, limit_count=None):
        self._collection = collection
        self._filters = list(filters)
        self._order = order
        self._limit = limit_count

    def where(self, field, op, value):
        return FakeQuery(self._collection, self._filters + [(field, op, value)], self._order, self._limit)

    def order_by(self, field, direction="ASCENDING"):
        return FakeQuery(self._collection, self._filters, (field, direction), self._limit)

    def limit(self, count):
        return FakeQuery(self._collection, self._filters, self._order, count)

    @staticmethod
    def _matches(data, field, op, value):
        actual = data.get(field)
        if op == "==":
            return actual == value
        if op == "in":
            return actual in value
        raise NotImplementedError(op)

    def filters(self):
        return list(self._filters)

    def stream(self):
        snapshots = [
            s for s in self._collection.all_snapshots()
            if all(self._matches(s.to_dict(), f, op, v) for f, op, v in self._filters)
        ]
        if self._order:
            field, direction = self._order
            present = [s for s in snapshots if s.to_dict().get(field) is not None]
            missing = [s for s in snapshots if s.to_dict().get(field) is None]
            present.sort(key=lambda s: s.to_dict()[field], reverse=direction == firestore.Query.DESCENDING)
            snapshots = present + missing
        if self._limit is not None:
            snapshots = snapshots[: self._limit]
        return iter(snapshots)


class FakeCollection(FakeQuery):
    def __init__(self, db, path):
        super().__init__(self)
        self._db = db
        self._path = path

    @property
    def id(self):
        return self._path[-1]

    def document(self, doc_id=None):
        return FakeDocument(self._db, self._path + (doc_id or uuid.uuid4().hex[:20],))

    def add(self, data):
        ref = self.document()
        ref.set(data)
        return None, ref

    def all_snapshots(self):
        depth = len(self._path) + 1
        return [
            FakeSnapshot(FakeDocument(self._db, path), data, self._db.update_times.get(path))
            for path, data in list(self._db.docs.items())
            if len(path) == depth and path[:-1] == self._path
        ]


class FakeFirestore:
    """Documents keyed by their full path tuple; dict order is the store order."""

    def __init__(self):
        self.docs = {}
        self.update_times = {}
        self._last_timestamp = None

    def collection(self, name):
        return FakeCollection(self, (name,))

    def write_option(self, last_update_time=None):
        return SimpleNamespace(last_update_time=last_update_time)

    def write(self, path, data):
        self.docs[path] = data
        self.update_times[path] = self.server_timestamp()

    def server_timestamp(self):
        now = utcnow()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def apply(self, current, data):
        result = dict(current)
        for key, value in data.items():
            if value is firestore.SERVER_TIMESTAMP:
                result[key] = self.server_timestamp()
            elif isinstance(value, firestore.Increment):
                result[key] = (result.get(key) or 0) + value.value
            else:
                result[key] = copy.deepcopy(value)
        return result

    # Test helpers

    def data(self, *path):
        return copy.deepcopy(self.docs.get(tuple(path)))

    def children(self, *path):
        depth = len(path) + 1
        return {p[-1]: copy.deepcopy(d) for p, d in self.docs.items() if len(p) == depth and p[:-1] == tuple(path)}


# =============================================================================
# Fake providers
# =============================================================================

class FakeTwilio:
    """Stands in for twilio.rest.Client: records messages.create calls, optionally raises."""

    def __init__(self):
        self.sent = []
        self.error = None
        self.messages = SimpleNamespace(create=self._create)

    def _create(self, body, from_, to):
        if self.error is not None:
            raise self.error
        self.sent.append({"body": body, "from_": from_, "to": to})
        return SimpleNamespace(sid=f"SM{len(self.sent):032d}")

    def bodies(self):
        return [m["body"] for m in self.sent]


class FakeOpenAI:
    """Stands in for openai.OpenAI: chat.completions.create returns a fixed reply or raises."""

    def __init__(self, reply="Happy to help!"):
        self.reply = reply
        self.error = None
        self.prompts = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, model, messages, **kwargs):
        self.prompts.append(messages[-1]["content"])
        if self.error is not None:
            raise self.error
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.reply))])


# =============================================================================
# Fixtures
# =============================================================================

TENANT = "acme"


@pytest.fixture
def db(monkeypatch):
    fake = FakeFirestore()
    monkeypatch.setattr(firestore, "client", lambda *args, **kwargs: fake)
    return fake


@pytest.fixture
def twilio(monkeypatch):
    fake = FakeTwilio()
    monkeypatch.setattr(
        messaging_client, "get_messaging_client",
        lambda company: fake if messaging_client.is_configured(company) else None,
    )
    return fake


@pytest.fixture
def ai(monkeypatch):
    fake = FakeOpenAI()
    monkeypatch.setattr(reply_pipeline, "get_ai_client", lambda company: fake)
    return fake


@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()
    yield


@pytest.fixture
def company(db):
    data = {
        "name": "Acme",
        "aiWaitMinutes": 5,
        "twilioAccountSid": "AC123",
        "twilioAuthToken": "token",
        "twilioPhoneNumber": "+15550000000",
    }
    db.collection("companies").document(TENANT).set(data)
    return data


def add_respondent(db, email, name=None, online=False, last_seen_minutes=None, status="active", tenant=TENANT):
    data = {"email": email, "name": name or email.split("@")[0].title(), "status": status, "isOnline": online}
    if last_seen_minutes is not None:
        data["lastSeen"] = utcnow() - timedelta(minutes=last_seen_minutes)
    db.collection("companies").document(tenant).collection("respondents").document(email).set(data)
    return data


def add_ticket(db, ticket_id, tenant=TENANT, **fields):
    data = {
        "customerId": "+15551234567",
        "status": "open",
        "lastMessage": "",
        "channel": "whatsapp",
        "aiEnabled": True,
        "assignedTo": None,
        "assignedEmail": None,
        "createdAt": utcnow() - timedelta(hours=1),
        "updatedAt": utcnow() - timedelta(hours=1),
    }
    data.update(fields)
    db.collection("companies").document(tenant).collection("tickets").document(ticket_id).set(data)
    return data


def add_ticket_message(db, ticket_id, message_id, role, body, minutes_ago, sender=None, tenant=TENANT, **extra):
    data = {
        "from": sender or role,
        "role": role,
        "body": body,
        "createdAt": utcnow() - timedelta(minutes=minutes_ago),
        **extra,
    }
    (
        db.collection("companies").document(tenant).collection("tickets").document(ticket_id)
        .collection("messages").document(message_id).set(data)
    )
    return data


def ticket_messages(db, ticket_id, tenant=TENANT):
    """Messages of a ticket, oldest first."""
    msgs = db.children("companies", tenant, "tickets", ticket_id, "messages")
    return sorted(
        ({"id": k, **v} for k, v in msgs.items()),
        key=lambda m: m["createdAt"],
    )


def routing_events(db, tenant=TENANT):
    return list(db.children("companies", tenant, "routingEvents").values())


@pytest.fixture
def client(db):
    from main import app
    return TestClient(app)
