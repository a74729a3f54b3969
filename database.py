"""
Database helpers

MongoDB connection and small document helpers shared by the API.
`db` is None when DATABASE_URL is not configured.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from schemas import to_document

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

db: Optional[Database] = None

if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]
    logger.info("Connected to MongoDB database %s", DATABASE_NAME)
else:
    logger.warning("DATABASE_URL not set, database disabled")


def create_document(collection_name: str, data: Any) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id."""
    if db is None:
        raise RuntimeError("Database not initialized")
    doc = to_document(data)
    now = datetime.now(timezone.utc)
    doc["created_at"] = now
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    if db is None:
        raise RuntimeError("Database not initialized")
    return list(db[collection_name].find(filter_dict or {}))


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["cart"].create_index([("user_id", ASCENDING)], unique=True)
    # one order per checkout session, so webhook redelivery can't duplicate
    database["order"].create_index([("stripe_session_id", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING)])
