"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("JWT_SECRET", "test-secret")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))
TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

import pytest

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app
from database import database
from auth import create_access_token
from fakes import FakeDatabase


@pytest.fixture
def fake_db():
    """Swap the global database for an in-memory one for the duration of a test."""
    previous = database.db
    database.db = FakeDatabase()
    try:
        yield database.db
    finally:
        database.db = previous


@pytest.fixture
def client(fake_db):
    """Return a TestClient for the main FastAPI app (server:app), backed by fake_db."""
    from entitlements.routes.timer import clear_timer_cache
    clear_timer_cache()
    return TestClient(app)


@pytest.fixture
def user_headers():
    token = create_access_token({"account_id": "ACC-USER00000001", "email": "user@example.com"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers():
    token = create_access_token({"account_id": "ACC-ADMIN0000001", "email": "admin@example.com", "is_admin": True})
    return {"Authorization": f"Bearer {token}"}
