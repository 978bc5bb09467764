"""
MongoDB connection and collection helpers.

The client is created lazily by pymongo, so importing this module never touches the network.
`connect()` is called once at startup to verify the server is reachable and to create indexes.
"""
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from dotenv import load_dotenv
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_MONGO_URI = "mongodb://127.0.0.1:27017/projectx"
DEFAULT_DATABASE = "projectx"

MONGO_URI = os.getenv("MONGODB_URI") or os.getenv("MONGO_URL") or DEFAULT_MONGO_URI

# Collection names
BRANCHES = "branches"
CATEGORIES = "categories"
SALES = "sales"
SETTINGS = "settings"


class StorageUnavailable(RuntimeError):
    pass


def mask_uri(uri: str) -> str:
    return re.sub(r"//.*@", "//***:***@", uri)


client = MongoClient(MONGO_URI, serverSelectionTimeoutMS=5000, tz_aware=False)
db: Database = (
    client[os.environ["DATABASE_NAME"]] if os.getenv("DATABASE_NAME") else client.get_default_database(DEFAULT_DATABASE)
)

_state = "disconnected"


def connection_state() -> str:
    return _state


def get_db() -> Database:
    """FastAPI dependency; tests override it with an in-memory database."""
    return db


def connect() -> Database:
    """
    Ping the server, then create indexes. Raises StorageUnavailable when unreachable.

    An index that cannot be built (e.g. existing duplicate category names) is logged and the
    service keeps running; the route-level name checks still apply.
    """
    global _state
    _state = "connecting"
    logger.info("Connecting to MongoDB at %s", mask_uri(MONGO_URI))
    try:
        client.admin.command("ping")
    except PyMongoError as e:
        _state = "disconnected"
        raise StorageUnavailable(str(e)) from e
    _state = "connected"
    logger.info("MongoDB connected, database: %s", db.name)
    try:
        ensure_indexes(db)
    except PyMongoError:
        logger.exception("Index creation failed on database %s", db.name)
    return db


def disconnect() -> None:
    global _state
    _state = "disconnecting"
    client.close()
    _state = "disconnected"


def ensure_indexes(database: Database) -> None:
    database[CATEGORIES].create_index([("name", ASCENDING)], unique=True)
    database[SALES].create_index([("branchId", ASCENDING), ("date", ASCENDING)])


# -----------------------------
# Document helpers
# -----------------------------

def utcnow() -> datetime:
    # Stored naive; MongoDB keeps UTC and pymongo hands back naive values.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def oid(obj: Optional[str]) -> Optional[ObjectId]:
    if obj is None:
        return None
    try:
        return ObjectId(obj)
    except Exception:
        return None


def to_str_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Make a stored document JSON friendly: ObjectIds become strings, datetimes UTC-aware."""
    if not doc:
        return doc
    d = {**doc}
    for k, v in list(d.items()):
        if isinstance(v, ObjectId):
            d[k] = str(v)
        elif isinstance(v, datetime) and v.tzinfo is None:
            d[k] = v.replace(tzinfo=timezone.utc)
        elif isinstance(v, dict):
            d[k] = to_str_id(v)
    return d


def create_document(database: Database, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
    now = utcnow()
    doc = {**data, "createdAt": now, "updatedAt": now}
    res = database[collection].insert_one(doc)
    return database[collection].find_one({"_id": res.inserted_id})


def update_document(database: Database, collection: str, _id: ObjectId, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    update = {**data, "updatedAt": utcnow()}
    return database[collection].find_one_and_update(
        {"_id": _id}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
