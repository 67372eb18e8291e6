"""
Database helpers

The MongoDB handle is created once by ``connect`` and passed explicitly to the
managers. Collection names are the lowercase entity names ("account", "book",
"order", "review", "wishlist", "payment"). References between documents are
stored as the string form of the referenced ``_id``.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import Settings
from errors import NotFound

logger = logging.getLogger(__name__)


def connect(settings: Settings) -> Optional[Database]:
    """Return the configured database, or None when the app runs without one."""
    if not (settings.database_url and settings.database_name):
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
        return None
    client = MongoClient(settings.database_url)
    return client[settings.database_name]


def ensure_indexes(db: Database) -> None:
    db["account"].create_index([("email", ASCENDING)], unique=True)
    db["account"].create_index([("external_subject_id", ASCENDING)], unique=True, sparse=True)
    db["book"].create_index([("owner_id", ASCENDING)])
    db["order"].create_index([("user_id", ASCENDING), ("book_id", ASCENDING)])
    db["review"].create_index([("user_id", ASCENDING), ("book_id", ASCENDING)], unique=True)
    db["wishlist"].create_index([("user_id", ASCENDING), ("book_id", ASCENDING)], unique=True)
    db["payment"].create_index([("transaction_ref", ASCENDING)], unique=True)
    logger.info("Database indexes ensured")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> dict:
    """Insert a document stamped with created_at/updated_at and return it with its _id.

    pymongo's DuplicateKeyError propagates so callers can translate it.
    """
    if isinstance(data, BaseModel):
        doc = data.model_dump(exclude_none=True)
    else:
        doc = {k: v for k, v in data.items() if v is not None}
    now = utcnow()
    doc["created_at"] = now
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def to_object_id(value: str, resource: str = "Resource") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise NotFound(f"{resource} not found")
    return ObjectId(value)


def find_by_id(db: Database, collection_name: str, doc_id: str, resource: str = "Resource") -> dict:
    doc = db[collection_name].find_one({"_id": to_object_id(doc_id, resource)})
    if not doc:
        raise NotFound(f"{resource} not found")
    return doc


def serialize(doc: Optional[dict], hidden: Iterable[str] = ()) -> Optional[dict]:
    """Make a document JSON-friendly: stringify ObjectIds, drop hidden fields."""
    if doc is None:
        return None
    out = {}
    for key, value in doc.items():
        if key in hidden:
            continue
        if isinstance(value, ObjectId):
            value = str(value)
        elif isinstance(value, dict):
            value = serialize(value, hidden)
        out[key] = value
    return out


def attach(db: Database, docs: List[dict], collection_name: str, ref_field: str, as_field: str,
           projection: Optional[dict] = None) -> List[dict]:
    """Populate ``as_field`` on each doc with the referenced document (or None)."""
    ids = {doc.get(ref_field) for doc in docs if ObjectId.is_valid(str(doc.get(ref_field)))}
    found = {}
    if ids:
        cursor = db[collection_name].find({"_id": {"$in": [ObjectId(i) for i in ids]}}, projection)
        found = {str(d["_id"]): d for d in cursor}
    for doc in docs:
        doc[as_field] = found.get(doc.get(ref_field))
    return docs
