"""
MongoDB access helpers.

The client is created once at import time from DATABASE_URL / DATABASE_NAME.
Services receive a ``Database`` handle explicitly so they can be wired to a
different database (tests use mongomock).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]
    logger.info("MongoDB client configured for database %s", config.DATABASE_NAME)
else:
    logger.warning("DATABASE_URL / DATABASE_NAME not set; data routes are unavailable")


def now() -> datetime:
    # Naive UTC at millisecond precision, the form pymongo reads values back in
    current = datetime.now(timezone.utc).replace(tzinfo=None)
    return current.replace(microsecond=current.microsecond // 1000 * 1000)


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse a string id, returning None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> Dict[str, Any]:
    """Insert a document stamped with createdAt/updatedAt and return it."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=True, exclude_none=True)
    else:
        data_dict = dict(data)
    stamp = now()
    data_dict.setdefault("createdAt", stamp)
    data_dict.setdefault("updatedAt", stamp)
    result = database[collection_name].insert_one(data_dict)
    data_dict["_id"] = result.inserted_id
    return data_dict


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    sort: Optional[list] = None,
    limit: Optional[int] = None,
    projection: Optional[dict] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document_by_id(
    database: Database,
    collection_name: str,
    doc_id: Any,
    projection: Optional[dict] = None,
) -> Optional[Dict[str, Any]]:
    oid = to_object_id(doc_id)
    if oid is None:
        return None
    return database[collection_name].find_one({"_id": oid}, projection)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["user"].create_index("username", unique=True)
    database["appointments"].create_index([("userId", 1), ("createdAt", -1)])
    database["appointments"].create_index([("vetId", 1), ("createdAt", -1)])
    database["diagnosis_history"].create_index([("userId", 1), ("timestamp", -1)])
    database["chat_conversations"].create_index([("userId", 1), ("updatedAt", -1)])
    database["chat_messages"].create_index([("conversationId", 1), ("timestamp", 1)])
    logger.info("MongoDB indexes ensured")
