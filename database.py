"""
MongoDB access.

The client connects lazily, so building it at import time costs nothing until
the first query. Every store call runs inside `store_call`, which bounds it
with the configured deadline and reports timeouts as StorageUnavailable rather
than as a missing document.
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator

import pymongo
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, PyMongoError

from config import Settings
from errors import NotFound, StorageUnavailable
from logger import get_logger

logger = get_logger(__name__)

COLL_USER = "user"
COLL_INSTITUTION = "institution"
COLL_REVIEW = "review"
COLL_CATEGORY = "category"
COLL_THREAD = "thread"
COLL_COMMENT = "comment"
COLL_HELPFUL = "helpful"


def to_obj_id(id_str: Any, what: str = "Resource") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def sanitize(doc: Dict) -> Dict:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def get_client(settings: Settings) -> MongoClient:
    timeout_ms = int(settings.db_timeout_seconds * 1000)
    return MongoClient(
        settings.database_url,
        serverSelectionTimeoutMS=timeout_ms,
        connectTimeoutMS=timeout_ms,
        tz_aware=True,
    )


def get_database(settings: Settings) -> Database:
    return get_client(settings)[settings.database_name]


def ensure_indexes(db: Database) -> None:
    """Declare the indexes, including the uniqueness constraints the core relies on."""
    db[COLL_USER].create_index([("email", ASCENDING)], unique=True)
    db[COLL_USER].create_index([("isApproved", ASCENDING)])
    db[COLL_REVIEW].create_index(
        [("institution_id", ASCENDING), ("user_id", ASCENDING)], unique=True
    )
    db[COLL_HELPFUL].create_index(
        [("comment_id", ASCENDING), ("user_id", ASCENDING)], unique=True
    )
    db[COLL_COMMENT].create_index([("thread_id", ASCENDING)])
    db[COLL_THREAD].create_index([("category_id", ASCENDING)])
    db[COLL_CATEGORY].create_index([("slug", ASCENDING)], unique=True)


@contextmanager
def store_call(timeout_seconds: float) -> Iterator[None]:
    """Run a block of store operations under a deadline.

    Lost connections and any error pymongo flags as a timeout (server
    selection, pool checkout, socket and execution timeouts) become
    StorageUnavailable. DuplicateKeyError and other errors are left alone so
    the caller can report the specific failure.
    """
    try:
        with pymongo.timeout(timeout_seconds):
            yield
    except PyMongoError as e:
        if not isinstance(e, ConnectionFailure) and not getattr(e, "timeout", False):
            raise
        logger.warning("store call failed: %s", type(e).__name__)
        raise StorageUnavailable("The data store is temporarily unavailable") from e


class MongoStore:
    """Base for the collection-backed stores."""

    collection_name = ""

    def __init__(self, db: Database, timeout_seconds: float = 5.0):
        self.db = db
        self.timeout_seconds = timeout_seconds

    @property
    def coll(self):
        return self.db[self.collection_name]

    def call(self):
        return store_call(self.timeout_seconds)
