"""
MongoDB connection and collection helpers.

Ids are ObjectIds inside the database and plain strings everywhere else;
`oid` and `to_public` are the only places the two meet.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import settings

logger = logging.getLogger(__name__)

# MongoClient connects lazily, importing this module never touches the network
client = MongoClient(
    settings.DATABASE_URL,
    serverSelectionTimeoutMS=settings.MONGO_TIMEOUT_MS,
    connectTimeoutMS=settings.MONGO_TIMEOUT_MS,
    socketTimeoutMS=settings.MONGO_TIMEOUT_MS,
    tz_aware=True,
)
db = client[settings.DATABASE_NAME]

# Bookkeeping fields that never leave the API
PRIVATE_FIELDS = ("password_hash", "settling_transactions", "settlement_claim", "claim_expires")


def get_db():
    """
    Dependency that provides the database handle.
    Tests override it with an in-memory database.
    """
    return db


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid id format")


def to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for field in PRIVATE_FIELDS:
        d.pop(field, None)
    return d


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database, collection_name: str, data: Dict[str, Any]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    doc = dict(data)
    stamp = now()
    doc["created_at"] = doc.get("created_at") or stamp
    doc["updated_at"] = stamp
    inserted_id = database[collection_name].insert_one(doc).inserted_id
    return str(inserted_id)


def get_documents(
    database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[List] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    cursor = cursor.sort(sort or [("created_at", DESCENDING)])
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index([("username", ASCENDING)], unique=True)
    # one startup profile per owner
    database["startup"].create_index([("owner_user_id", ASCENDING)], unique=True)
    database["transaction"].create_index([("startup_id", ASCENDING), ("status", ASCENDING)])
    database["transaction"].create_index([("investor_id", ASCENDING)])
    database["update"].create_index([("startup_id", ASCENDING)])
    database["document"].create_index([("startup_id", ASCENDING)])
    logger.info("Indexes ensured on %s", database.name)
