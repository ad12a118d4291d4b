import os
import time
import asyncio

import jwt
import pytest

os.environ.setdefault("PUBLIC_SUPABASE_URL", "https://chatline-test.supabase.co")
os.environ.setdefault("SECRET_API_KEY", "test-service-role-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")

from fastapi.testclient import TestClient

from chatline.main import app as fastapi_app
from chatline.core.realtime import get_message_feed
from chatline.core.supabase_client import get_supabase
from fakes import FakeMessageFeed, FakeSupabase


def make_token(user_id, email=None, expires_in=300, secret=None):
    now = int(time.time())
    return jwt.encode(
        {
            "sub": user_id,
            "email": email or f"{user_id[:8]}@example.com",
            "role": "authenticated",
            "iat": now,
            "exp": now + expires_in,
            "iss": f"{os.environ['PUBLIC_SUPABASE_URL']}/auth/v1",
        },
        secret or os.environ["SUPABASE_JWT_SECRET"],
        algorithm="HS256",
    )


async def wait_until(predicate, timeout=2.0):
    """Let the event loop run until ``predicate()`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture()
def feed():
    return FakeMessageFeed()


@pytest.fixture()
def store(feed):
    return FakeSupabase(feed=feed)


@pytest.fixture()
def alice(store):
    return store.add_profile("alice", "Alice Liddell", avatar_url="https://cdn.example.com/alice.png")


@pytest.fixture()
def bob(store):
    return store.add_profile("bob", "Bob Builder")


@pytest.fixture()
def carol(store):
    return store.add_profile("carol", "Carol Danvers")


@pytest.fixture()
def app(store, feed):
    """The FastAPI app wired to the in-memory store and feed."""
    fastapi_app.dependency_overrides[get_supabase] = lambda: store
    fastapi_app.dependency_overrides[get_message_feed] = lambda: feed
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    return TestClient(app)


@pytest.fixture()
def auth_headers():
    """Build Authorization headers for a profile row."""

    def _headers(user):
        return {"Authorization": f"Bearer {make_token(user['id'])}"}

    return _headers
