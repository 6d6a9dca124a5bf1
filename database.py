"""
MongoDB access for Hemolink

`db` is the live database handle, or None when the server could not be reached
at import time. Everything else in the app goes through get_collection() so the
handle can be swapped (tests install a mongomock database here).

Retries wrap single reads and writes, never whole operations. A write that may
have landed before a transient error is only retried when it is idempotent:
inserts carry their `_id` from the first attempt, and guarded updates name the
state they leave behind so a retry can see the first attempt succeeded.
"""

import logging
import time
from functools import partial, wraps
from typing import Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, GEOSPHERE, MongoClient, ReturnDocument
from pymongo.errors import AutoReconnect, ConnectionFailure, ServerSelectionTimeoutError

import config
from errors import StorageFailure
from schemas import utcnow

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (AutoReconnect, ConnectionFailure, ServerSelectionTimeoutError)

db = None
try:
    client = MongoClient(config.DATABASE_URL, serverSelectionTimeoutMS=5000, tz_aware=False)
    db = client[config.DATABASE_NAME]
except Exception as e:  # pragma: no cover - depends on the environment
    logger.warning("MongoDB client unavailable: %s", e)
    db = None


def get_collection(name: str):
    if db is None:
        raise StorageFailure("Database unavailable")
    return db[name]


def with_retry(func=None, *, attempts: Optional[int] = None):
    """Retry transient driver errors a bounded number of times, then fail as StorageFailure.

    `attempts=1` maps the errors without retrying, for writes that must not run twice.
    """
    if func is None:
        return partial(with_retry, attempts=attempts)

    @wraps(func)
    def wrapper(*args, **kwargs):
        limit = max(1, attempts or config.DB_RETRY_ATTEMPTS)
        for attempt in range(1, limit + 1):
            try:
                return func(*args, **kwargs)
            except TRANSIENT_ERRORS as e:
                if attempt == limit:
                    logger.error("%s failed after %d attempt(s): %s", func.__name__, limit, e)
                    raise StorageFailure("Database unavailable") from e
                logger.warning("%s: transient storage error (attempt %d/%d): %s",
                               func.__name__, attempt, limit, e)
                time.sleep(config.DB_RETRY_DELAY * attempt)

    return wrapper


@with_retry
def _insert_once(collection_name: str, doc: dict):
    col = get_collection(collection_name)
    if col.find_one({"_id": doc["_id"]}, {"_id": 1}) is not None:
        # landed on an earlier attempt
        return
    col.insert_one(doc)


def create_document(collection_name: str, data) -> str:
    """Insert a model or dict, stamping created_at/updated_at. Returns the new id as a string."""
    if isinstance(data, BaseModel):
        # Derived fields are recomputed on read, never stored
        data_dict = data.model_dump(exclude=set(type(data).model_computed_fields))
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    data_dict.setdefault("_id", ObjectId())
    _insert_once(collection_name, data_dict)
    return str(data_dict["_id"])


@with_retry
def find_one(collection_name: str, query: dict, projection: Optional[dict] = None) -> Optional[dict]:
    return get_collection(collection_name).find_one(query, projection)


@with_retry
def update_guarded(collection_name: str, query: dict, update: dict,
                   landed: Optional[dict] = None) -> Optional[dict]:
    """Apply `update` to the document matching `query` and return it as updated.

    Returns None when `query` matches nothing. `landed` must match the
    document only once this very update has been applied; it lets a retry
    after a transient error return the result instead of reporting a guard miss.
    """
    col = get_collection(collection_name)
    if landed is not None:
        done = col.find_one(landed)
        if done is not None:
            return done
    return col.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)


@with_retry
def delete_document(collection_name: str, doc_id: str):
    get_collection(collection_name).delete_one({"_id": ObjectId(doc_id)})


def normalize(doc: Optional[dict]) -> Optional[dict]:
    """Expose the ObjectId as a string `id`, as the API returns it."""
    if doc is None:
        return None
    doc["id"] = str(doc.pop("_id"))
    return doc


def ensure_indexes():
    get_collection("user").create_index("email", unique=True)
    get_collection("user").create_index("google_id", unique=True, sparse=True)
    get_collection("user").create_index([("location", GEOSPHERE)])
    get_collection("user").create_index([("blood_group", ASCENDING), ("is_donor", ASCENDING)])
    get_collection("user").create_index([("reward_points", DESCENDING)])
    get_collection("donation").create_index([("donor_id", ASCENDING), ("donation_date", DESCENDING)])
    get_collection("donation").create_index([("status", ASCENDING), ("donation_date", DESCENDING)])
    get_collection("bloodrequest").create_index([("location", GEOSPHERE)])
    get_collection("bloodrequest").create_index([("status", ASCENDING), ("urgency", ASCENDING)])
    get_collection("bloodrequest").create_index("requester_id")
    get_collection("bloodbank").create_index("license_number", unique=True)
    get_collection("bloodbank").create_index([("location", GEOSPHERE)])
