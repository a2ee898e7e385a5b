import fnmatch
import io
import os
from datetime import date, timedelta

# must be in place before app_config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("SUPABASE_URL", "https://project.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-key")
os.environ["REDIS_URL"] = ""
os.environ["RATE_LIMIT_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models_sqlalchemy as models
from api_dependencies import get_cache, get_session_factory, get_storage
from api_endpoints import app
from auth_security import hash_password
from auth_service import issue_token
from cache_layer import CacheService
from storage_adapter import ObjectStorage


# ---------- FAKE BACKENDS ----------

class FakeRedis:
    """The handful of redis commands the cache uses, backed by a dict."""

    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value

    def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)

    def scan_iter(self, match="*"):
        return [key for key in list(self.store) if fnmatch.fnmatchcase(key, match)]


class FakeBucket:

    def __init__(self, client, name):
        self.client = client
        self.name = name

    def upload(self, path, file, file_options=None):
        limit = self.client.fail_after
        if self.client.fail or (limit is not None and self.client.uploads >= limit):
            raise RuntimeError("storage unavailable")
        self.client.objects[(self.name, path)] = file
        self.client.uploads += 1
        return {"path": path}

    def get_public_url(self, path):
        return f"https://project.supabase.co/storage/v1/object/public/{self.name}/{path}"

    def remove(self, paths):
        for path in paths:
            self.client.objects.pop((self.name, path), None)
            self.client.removed.append((self.name, path))


class FakeSupabase:
    """Mimics client.storage.from_(bucket) of supabase-py."""

    def __init__(self, fail=False, fail_after=None):
        self.objects = {}
        self.removed = []
        self.fail = fail
        # uploads accepted before the bucket starts failing
        self.fail_after = fail_after
        self.uploads = 0
        self.storage = self

    def from_(self, bucket):
        return FakeBucket(self, bucket)


# ---------- TEST FIXTURES ----------

@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    models.Base.metadata.create_all(bind=engine)
    yield engine
    models.Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def cache(fake_redis):
    return CacheService(fake_redis)


@pytest.fixture()
def supabase():
    return FakeSupabase()


@pytest.fixture()
def storage(supabase):
    return ObjectStorage(supabase)


@pytest.fixture()
def client(session_factory, cache, storage):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_storage] = lambda: storage
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture()
def owner(client):
    return register(client, role="owner", email="owner@example.com", full_name="Olivia Owner")


@pytest.fixture()
def other_owner(client):
    return register(client, role="owner", email="other.owner@example.com", full_name="Oscar Owner")


@pytest.fixture()
def guest(client):
    return register(client, role="client", email="guest@example.com", full_name="Gina Guest")


@pytest.fixture()
def other_guest(client):
    return register(client, role="client", email="other.guest@example.com", full_name="Gus Guest")


@pytest.fixture()
def admin(db_session):
    user = models.User(
        full_name="Ada Admin",
        email="admin@example.com",
        password_hash=hash_password("admin-pass"),
        role="admin",
    )
    db_session.add(user)
    db_session.commit()
    token = issue_token(user)
    return {"user": {"id": user.id, "role": "admin"}, "token": token, "headers": auth_headers(token)}


# ---------- TEST DATA HELPERS ----------

def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, role="client", email="user@example.com", full_name="Test User", password="secret123"):
    r = client.post(
        "/api/auth/register",
        json={"full_name": full_name, "email": email, "password": password, "role": role},
    )
    assert r.status_code == 201, r.text
    data = r.json()["data"]
    return {"user": data["user"], "token": data["token"], "headers": auth_headers(data["token"])}


def create_property_dict(**overrides):
    data = {
        "title": "Sea View Apartment",
        "description": "Two rooms facing the harbour",
        "type": "apartment",
        "furnished": "true",
        "price_per_night": "100",
        "address": "12 Quai des Etats-Unis",
        "city": "Nice",
        "room_count": "2",
        "amenities": "wifi, parking",
    }
    data.update({key: str(value) for key, value in overrides.items()})
    return data


def create_property(client, headers, images=(), **overrides):
    files = [("images", (f"photo{i}.png", content, "image/png")) for i, content in enumerate(images)]
    r = client.post(
        "/api/properties", data=create_property_dict(**overrides), files=files or None, headers=headers
    )
    assert r.status_code == 201, r.text
    return r.json()["data"]


def make_image_bytes(width=1200, height=900, fmt="PNG", color=(200, 80, 40)):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def stay(offset_days=10, nights=5):
    start = date.today() + timedelta(days=offset_days)
    return start.isoformat(), (start + timedelta(days=nights)).isoformat()


def book(client, headers, property_id, start, end, guests=2):
    return client.post(
        "/api/bookings",
        json={"property_id": property_id, "start_date": start, "end_date": end, "guests": guests},
        headers=headers,
    )
