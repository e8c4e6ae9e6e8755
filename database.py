"""
MongoDB access for the cake shop.

The client is created lazily from DATABASE_URL / DATABASE_NAME and handed to
the request handlers through the ``get_db`` dependency, so every component
receives its database handle explicitly.
"""

import logging
import math
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import (
    ConnectionFailure,
    ExecutionTimeout,
    NetworkTimeout,
    ServerSelectionTimeoutError,
    WTimeoutError,
)

from errors import StoreTimeout, StoreUnavailable

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "cake_shop")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", 5000))

_client: Optional[MongoClient] = None


def get_client() -> MongoClient:
    global _client
    if _client is None:
        _client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=MONGO_TIMEOUT_MS, tz_aware=False)
    return _client


def get_db() -> Database:
    return get_client()[DATABASE_NAME]


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes; store the same shape
    return datetime.now(timezone.utc).replace(tzinfo=None)


@contextmanager
def store_errors(operation: str):
    """Translate pymongo connectivity failures into retryable API errors."""
    try:
        yield
    except (ServerSelectionTimeoutError, NetworkTimeout, ExecutionTimeout, WTimeoutError) as e:
        logger.error("Timeout while %s: %s", operation, e)
        raise StoreTimeout() from e
    except ConnectionFailure as e:
        logger.error("Database unreachable while %s: %s", operation, e)
        raise StoreUnavailable() from e


def create_document(db: Database, collection_name: str, data) -> dict:
    """Insert a document stamped with createdAt/updatedAt and return it with its _id."""
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True, exclude_none=True)
    else:
        data = dict(data)
    now = utcnow()
    data["createdAt"] = now
    data["updatedAt"] = now
    inserted_id = db[collection_name].insert_one(data).inserted_id
    data["_id"] = inserted_id
    return data


def get_documents(db: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None, projection: Optional[dict] = None) -> list:
    cursor = db[collection_name].find(filter_dict or {}, projection)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def serialize_doc(doc: dict) -> dict:
    if not doc:
        return doc
    d = doc.copy()
    if "_id" in d:
        d["_id"] = str(d["_id"])
        d["id"] = d["_id"]
    for k, v in list(d.items()):
        if isinstance(v, ObjectId):
            d[k] = str(v)
    return d


def pagination(total: int, page: int, limit: int, noun: str) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "currentPage": page,
        "totalPages": total_pages,
        noun: total,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }
