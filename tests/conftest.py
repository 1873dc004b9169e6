import uuid
from datetime import datetime, timedelta, timezone

import jwt
import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from auth import AuthService
from database import StoreError, TableStore, isoformat

TEST_SECRET = "test-jwt-secret-that-is-long-enough-for-hs256"
OAUTH_CLIENT_ID = "test-client"
OAUTH_SECRET = "test-oauth-secret-that-is-long-enough-too"
NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class MemoryStorage:
    def __init__(self, fail=False):
        self.objects = {}
        self.fail = fail

    def upload(self, bucket, path, data, content_type=None):
        if self.fail:
            raise StoreError("storage offline")
        self.objects[(bucket, path)] = (data, content_type or "application/octet-stream")
        return path

    def get_public_url(self, bucket, path):
        return f"http://testserver/storage/{bucket}/{path}"

    def download(self, bucket, path):
        return self.objects.get((bucket, path))


class RecordingStore(TableStore):
    """TableStore that records every call and can fail selected ones."""

    def __init__(self, database, fail_on=(), tables=None):
        super().__init__(database)
        self.fail_on = set(fail_on)
        self.tables = tables
        self.calls = []

    def _track(self, op, table):
        self.calls.append((op, table))
        if op in self.fail_on and (self.tables is None or table in self.tables):
            raise StoreError(f"{op} on {table} unavailable")

    def writes(self):
        return [c for c in self.calls if c[0] in ("insert", "update")]

    def select(self, table, *args, **kwargs):
        self._track("select", table)
        return super().select(table, *args, **kwargs)

    def select_one(self, table, filters):
        self._track("select_one", table)
        return super().select_one(table, filters)

    def insert(self, table, rows):
        self._track("insert", table)
        return super().insert(table, rows)

    def update(self, table, patch, filters):
        self._track("update", table)
        return super().update(table, patch, filters)


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient().db


@pytest.fixture
def store(mongo_db):
    return RecordingStore(mongo_db)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def auth(store):
    return AuthService(
        store,
        secret=TEST_SECRET,
        oauth_client_id=OAUTH_CLIENT_ID,
        oauth_client_secret=OAUTH_SECRET,
        oauth_authorize_url="https://accounts.example.org/auth",
    )


@pytest.fixture
def client(store, storage, auth):
    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_storage] = lambda: storage
    main.app.dependency_overrides[main.get_auth] = lambda: auth
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def oauth_token():
    def make(email="asha@gmail.com", **claims):
        payload = {"aud": OAUTH_CLIENT_ID, "sub": "google-123", "email": email}
        payload.update(claims)
        return jwt.encode(payload, OAUTH_SECRET, algorithm="HS256")
    return make


@pytest.fixture
def booking_row():
    def make(user_id, **overrides):
        row = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "driver_id": "1",
            "driver_name": "Rahul Singh",
            "pickup_location": "Bandra",
            "drop_location": "Airport",
            "pickup_datetime": isoformat(NOW + timedelta(days=1)),
            "duration_hours": 4,
            "notes": "",
            "status": "Confirmed",
            "payment_method": "upi",
            "payment_status": "Paid",
            "total_amount": 2396.0,
            "rating": None,
            "review": None,
            "rated": False,
            "created_at": isoformat(NOW),
        }
        row.update(overrides)
        return row
    return make
