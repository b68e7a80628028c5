"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

import pytest

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app

from mongo_fakes import FakeDatabase


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture
def fake_db(monkeypatch):
    """In-memory database wired into the shared `database` instance, best-effort unit of work."""
    from database import database
    from unit_of_work import BestEffortUnitOfWork

    db = FakeDatabase()
    monkeypatch.setattr(database, "db", db)
    monkeypatch.setattr(database, "unit_of_work", BestEffortUnitOfWork())
    return db


@pytest.fixture
def plans(fake_db):
    """Default catalogue loaded into fake_db; returns {name: Plan}."""
    from models import Plan
    from services.plan_catalogue import DEFAULT_PLANS

    catalogue = {}
    for definition in DEFAULT_PLANS:
        plan = Plan(**definition)
        fake_db.plans.docs.append(plan.model_dump())
        catalogue[plan.name] = plan
    return catalogue


def auth_headers(account_id: str) -> dict:
    from auth import create_account_token
    token = create_account_token(account_id, email=f"{account_id}@example.com")
    return {"Authorization": f"Bearer {token}"}


def put_wallet(db, account_id: str, balance: float):
    from models import Wallet
    db.wallets.docs.append(Wallet(account_id=account_id, balance=balance).model_dump())


def put_subscription(db, account_id: str, plan, status="active", **fields):
    from datetime import datetime, timezone, timedelta
    from models import Subscription
    sub = Subscription(
        account_id=account_id,
        plan_id=plan.plan_id,
        status=status,
        expires_at=fields.pop("expires_at", datetime.now(timezone.utc) + timedelta(days=30)),
        **fields,
    )
    db.subscriptions.docs.append(sub.model_dump())
    return sub
