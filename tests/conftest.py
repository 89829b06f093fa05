import itertools

import mongomock
import pytest
from rest_framework.test import APIClient

from api import db as db_module
from api.auth_utils import issue_token
from api.notifier import Notifier
from api.offers import OfferWorkflow
from api.records import BLOOD_REQUESTS, USERS, Caller, now_iso

_ids = itertools.count(1)


class FakeSender:
    """Records what it was asked to send; fails the first `failures` calls"""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0
        self.sent = []

    def send(self, recipient, message):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("gateway unreachable")
        self.sent.append((recipient, message))
        return {"success": True, "id": f"fake-{self.calls}"}


@pytest.fixture
def db():
    database = mongomock.MongoClient()['bloodsync_test']
    db_module.set_db(database)
    yield database
    db_module.set_db(None)


@pytest.fixture
def senders():
    return {"email": FakeSender(), "sms": FakeSender()}


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def notifier(db, senders, sleeps):
    return Notifier(db, senders=senders, max_attempts=3, backoff_seconds=0.5, sleep=sleeps.append)


@pytest.fixture
def workflow(db, notifier):
    return OfferWorkflow(db, notifier)


@pytest.fixture
def make_user(db):
    def _make_user(user_id, blood_type='O-', lat=None, lng=None, **fields):
        doc = {
            "_id": user_id,
            "firstName": fields.pop('firstName', user_id),
            "lastName": fields.pop('lastName', 'Tester'),
            "email": fields.pop('email', f"{user_id.lower()}@example.com"),
            "role": fields.pop('role', 'donor'),
            "bloodType": blood_type,
            "location": fields.pop('location', 'Bengaluru'),
            "availability": fields.pop('availability', 'Available'),
            "isDonor": fields.pop('isDonor', True),
            "notificationChannels": fields.pop('notificationChannels', ['email']),
            "createdAt": now_iso(),
        }
        if lat is not None:
            from api.geocell import encode
            doc.update({"lat": lat, "lng": lng, "geohash": encode(lat, lng)})
        doc.update(fields)
        db[USERS].insert_one(doc)
        return Caller(user_id=user_id, email=doc['email'], role=doc['role'])
    return _make_user


@pytest.fixture
def make_request(db):
    def _make_request(owner, blood_type='O-', lat=None, lng=None, status='Pending', created_at=None, **fields):
        doc = {
            "userId": owner,
            "patientName": fields.pop('patientName', f"Patient {next(_ids)}"),
            "bloodType": blood_type,
            "location": fields.pop('location', 'City Hospital'),
            "urgency": fields.pop('urgency', 'High'),
            "status": status,
            "createdAt": created_at or now_iso(),
            "contactPerson": "Desk",
            "contactPhone": "+911234567890",
            "contactEmail": "desk@example.com",
        }
        if lat is not None:
            from api.geocell import encode
            doc.update({"lat": lat, "lng": lng, "geohash": encode(lat, lng)})
        doc.update(fields)
        return str(db[BLOOD_REQUESTS].insert_one(doc).inserted_id)
    return _make_request


@pytest.fixture
def api_client(db):
    def _client(caller=None):
        client = APIClient()
        if caller is not None:
            token = issue_token(caller.user_id, caller.email, caller.role)
            client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")
        return client
    return _client
