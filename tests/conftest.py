import sys
import time
import types
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from bson.objectid import ObjectId
from pymongo import errors

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import app
from renumbering import EventSequence, RenumberGate

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.005)


def _matches(doc, query):
    if not query:
        return True
    for key, value in query.items():
        current = doc.get(key)
        if isinstance(value, dict):
            if "$in" in value and current not in value["$in"]:
                return False
            if "$ne" in value and current == value["$ne"]:
                return False
        elif current != value:
            return False
    return True


def _sort_value(value):
    # missing fields sort first, like null in Mongo
    return (0, 0) if value is None else (1, value)


class FakeCursor:
    def __init__(self, docs):
        self._docs = list(docs)

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        docs = list(self._docs)
        for field, order in reversed(keys):
            docs.sort(key=lambda d: _sort_value(d.get(field)), reverse=order == -1)
        return FakeCursor(docs)

    def limit(self, count):
        return FakeCursor(self._docs[:count])

    def __iter__(self):
        return iter(self._docs)


class FakeCollection:
    """In-memory stand-in for the pymongo collection calls the app makes.

    ``unique_fields`` behave like unique indexes and raise DuplicateKeyError.
    ``fail_after`` makes every write after that many successful ones raise.
    """

    def __init__(self, unique_fields=()):
        self.docs: list[dict] = []
        self.unique_fields = tuple(unique_fields)
        self.fail_after = None
        self.writes = 0
        self.set_log: list[tuple] = []

    def _check_write(self):
        if self.fail_after is not None and self.writes >= self.fail_after:
            raise errors.PyMongoError("simulated write failure")
        self.writes += 1

    def _check_unique(self, candidate):
        for field in self.unique_fields:
            value = candidate.get(field)
            if value is None:
                continue
            for doc in self.docs:
                if doc.get("_id") != candidate.get("_id") and doc.get(field) == value:
                    raise errors.DuplicateKeyError(f"E11000 duplicate key error {field}: {value}")

    def find(self, query=None, projection=None):
        return FakeCursor(doc.copy() for doc in self.docs if _matches(doc, query or {}))

    def find_one(self, query=None, projection=None):
        for doc in self.docs:
            if _matches(doc, query or {}):
                return doc.copy()
        return None

    def insert_one(self, doc):
        self._check_write()
        stored = doc.copy()
        stored.setdefault("_id", ObjectId())
        self._check_unique(stored)
        self.docs.append(stored)
        doc.setdefault("_id", stored["_id"])
        return types.SimpleNamespace(inserted_id=stored["_id"])

    def _apply(self, doc, update):
        changed = dict(doc)
        changed.update(update.get("$set", {}))
        for key in update.get("$unset", {}):
            changed.pop(key, None)
        self._check_unique(changed)
        doc.clear()
        doc.update(changed)
        for key, value in update.get("$set", {}).items():
            self.set_log.append((doc["_id"], key, value))

    def update_one(self, query, update, upsert=False):
        self._check_write()
        for doc in self.docs:
            if _matches(doc, query):
                self._apply(doc, update)
                return types.SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        return types.SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    def update_many(self, query, update):
        self._check_write()
        matched = [doc for doc in self.docs if _matches(doc, query)]
        for doc in matched:
            self._apply(doc, update)
        return types.SimpleNamespace(matched_count=len(matched), modified_count=len(matched))

    def delete_one(self, query):
        self._check_write()
        for index, doc in enumerate(self.docs):
            if _matches(doc, query):
                self.docs.pop(index)
                return types.SimpleNamespace(deleted_count=1)
        return types.SimpleNamespace(deleted_count=0)

    def get(self, doc_id):
        return next(doc for doc in self.docs if doc["_id"] == doc_id)

    def numbers(self, *doc_ids):
        return [self.get(doc_id)["eventNumber"] for doc_id in doc_ids]


def add_event(collection, title, minutes=0, order=0, hidden=False, number=None):
    """Insert an event created ``minutes`` after BASE_TIME and return its id."""
    oid = ObjectId()
    collection.insert_one({
        "_id": oid,
        "title": title,
        "eventNumber": number if number is not None else f"SEED_{oid}",
        "order": order,
        "isHidden": hidden,
        "createdAt": BASE_TIME + timedelta(minutes=minutes),
    })
    return oid


@pytest.fixture
def events():
    return FakeCollection(unique_fields=("eventNumber",))


@pytest.fixture
def gate():
    gate = RenumberGate()
    yield gate
    gate.shutdown()


@pytest.fixture
def sequence(events, gate):
    return EventSequence(events, gate)


@pytest.fixture
def server(monkeypatch, events):
    monkeypatch.setattr(app, "JWT_SECRET", "test-access-secret")
    monkeypatch.setattr(app, "REFRESH_JWT_SECRET", "test-refresh-secret")
    monkeypatch.setattr(app, "events_collection", events)
    monkeypatch.setattr(app, "gallery_collection", FakeCollection())
    monkeypatch.setattr(app, "refresh_tokens_collection", FakeCollection(unique_fields=("tokenHash",)))
    monkeypatch.setattr(app.limiter, "enabled", False)
    return app


@pytest.fixture
def client(server):
    return server.app.test_client()


@pytest.fixture
def auth_headers(server):
    return {"Authorization": f"Bearer {server.issue_access_token('admin')}"}
