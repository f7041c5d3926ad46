"""
Database Helpers

MongoDB connection and small document helpers shared by the API.
The connection is configured from the environment:
- DATABASE_URL  -> MongoDB connection string
- DATABASE_NAME -> database to use

When either variable is missing `db` stays None and the API reports
the database as unavailable instead of failing at import time.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL, tz_aware=True)
    db = client[DATABASE_NAME]


def get_db() -> Optional[Database]:
    """FastAPI dependency returning the shared database handle."""
    return db


def _as_dict(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    """Insert a document stamped with created_at/updated_at, returning its id as a string."""
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not initialized")
    doc = _as_dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = target[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes(database: Database) -> None:
    """Create the indexes the coupon and cart collections rely on."""
    coupons = database["coupon"]
    coupons.create_index([("code", ASCENDING)], unique=True, name="code_unique")
    # one active VIP coupon per customer
    coupons.create_index(
        [("user_id", ASCENDING)],
        unique=True,
        name="one_active_vip_per_user",
        partialFilterExpression={"kind": "vip", "is_active": True},
    )
    coupons.create_index([("user_id", ASCENDING), ("created_at", ASCENDING)], name="user_created")
    database["cart"].create_index([("user_id", ASCENDING)], unique=True, name="cart_user_unique")
    database["order"].create_index([("user_id", ASCENDING), ("status", ASCENDING)], name="order_user_status")
