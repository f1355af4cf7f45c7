"""
Database helpers

Holds the shared MongoDB handle plus the few document helpers the routes use.
Collection names are the lowercase of the schema class name (User -> "user").
"""
import math
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(
        DATABASE_URL,
        maxPoolSize=int(os.getenv("DATABASE_MAX_POOL_SIZE", "10")),
        connectTimeoutMS=int(os.getenv("DATABASE_TIMEOUT_MS", "5000")),
        serverSelectionTimeoutMS=int(os.getenv("DATABASE_TIMEOUT_MS", "5000")),
    )
    db = _client[DATABASE_NAME]

# Known server error codes and how they surface over HTTP
ERROR_STATUS: Dict[int, Tuple[int, str]] = {
    11000: (409, "Resource already exists"),
    11001: (409, "Resource already exists"),
    121: (400, "Document failed validation"),
}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    stamp = now_utc()
    doc["created_at"] = stamp
    doc["updated_at"] = stamp
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def paginate(
    collection_name: str,
    filt: Dict[str, Any],
    sort: Sequence[Tuple[str, int]],
    page: int,
    limit: int,
    projection: Optional[Dict[str, int]] = None,
) -> Tuple[List[dict], Dict[str, int]]:
    """Run a filtered, sorted page query and build the pagination block."""
    coll = db[collection_name]
    total = coll.count_documents(filt)
    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit),
    }
    skip = (page - 1) * limit
    # past the last page; skip may not even fit in a BSON int64
    if skip >= total:
        return [], pagination
    cursor = coll.find(filt, projection).sort(list(sort)).skip(skip).limit(limit)
    return list(cursor), pagination


def ensure_indexes() -> None:
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["product"].create_index([("category", ASCENDING)])
    db["product"].create_index([("price", ASCENDING)])
    db["product"].create_index([("created_by", ASCENDING)])
    db["product"].create_index([("is_active", ASCENDING)])
