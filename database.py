"""
MongoDB access helpers.

The client is created once at import time from ``DATABASE_URL``. When no URL
is configured ``db`` stays ``None`` and data routes answer 503 until one is.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import settings

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.database_url:
    client = MongoClient(settings.database_url)
    db = client[settings.database_name]
else:
    logger.warning("DATABASE_URL is not set; data routes will be unavailable")


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise HTTPException(503, "Database not configured")
    return db


def to_str_id(doc: Optional[Dict[str, Any]]):
    if not doc:
        return doc
    doc["id"] = str(doc.get("_id"))
    doc.pop("_id", None)
    return doc


def parse_object_id(value: str) -> Optional[ObjectId]:
    """Return the ObjectId for ``value`` or None when it is not a valid id."""
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(value):
        return None
    return ObjectId(value)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert ``data`` with timestamps and return the new id as a string."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="python")
    else:
        data = dict(data)
    now = datetime.utcnow()
    data.setdefault("created_at", now)
    data["updated_at"] = now
    result = database[collection_name].insert_one(data)
    return str(result.inserted_id)


def ensure_indexes(database: Database) -> None:
    database["copy"].create_index([("code", ASCENDING)], unique=True)
    database["copy"].create_index([("book_id", ASCENDING)])
    database["user"].create_index([("document_number", ASCENDING)], unique=True)
    database["loan"].create_index([("copy_id", ASCENDING)])
    database["loan"].create_index([("user_id", ASCENDING)])
    database["loan"].create_index([("created_at", DESCENDING)])
    database["activity"].create_index([("created_at", DESCENDING)])
