from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from config import VipPolicy, get_vip_policy
from database import get_db

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    client = mongomock.MongoClient(tz_aware=True)
    return client["store_test"]


@pytest.fixture
def policy():
    return VipPolicy(selection_rate=1.0)


@pytest.fixture
def client(db, policy):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_vip_policy] = lambda: policy
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    def _make(**fields):
        doc = {"title": "Thing", "price": 10.0, "category": "misc", "sizes": [], "stock": 0}
        doc.update(fields)
        return str(db["product"].insert_one(doc).inserted_id)
    return _make


@pytest.fixture
def add_orders(db):
    def _add(user_id, amounts, status="completed", when=NOW):
        for amount in amounts:
            db["order"].insert_one({
                "user_id": user_id,
                "total_amount": amount,
                "status": status,
                "created_at": when,
            })
    return _add


@pytest.fixture
def add_coupon(db):
    def _add(user_id, code, created_at=NOW, expires_in=timedelta(days=30), is_active=True, **extra):
        doc = {
            "code": code,
            "discount_percentage": 25,
            "minimum_amount": 100,
            "expiration_date": created_at + expires_in,
            "is_active": is_active,
            "user_id": user_id,
            "kind": "vip" if code.startswith("VIP") else "standard",
            "created_at": created_at,
            "updated_at": created_at,
        }
        doc.update(extra)
        db["coupon"].insert_one(doc)
        return doc
    return _add
