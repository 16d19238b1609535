"""
Storage layer

Two interchangeable backends implement the same `Store` interface:
- MongoStore: the persistent MongoDB store (pymongo)
- MemoryStore: transient in-process storage used as the fallback when MongoDB
  is not configured or unreachable, and by the test-suite

Documents cross the interface as plain dicts with a string "id" key. Filters use
the MongoDB query dialect restricted to equality, $in, $ne, $gt/$gte/$lt/$lte.
"""

import copy
import logging
import os
import threading
from datetime import datetime, date, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import Conflict, ValidationError

load_dotenv()

logger = logging.getLogger(__name__)

# Fields that must be unique within a collection
UNIQUE_FIELDS = {
    "user": ("email", "username"),
    "ewaste": ("itemId",),
}

SortSpec = Optional[Sequence[Tuple[str, int]]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Treat naive datetimes as UTC so stored and queried values compare."""
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def serialize_id(doc: Any) -> Any:
    if not doc:
        return doc
    if isinstance(doc, list):
        return [serialize_id(v) for v in doc]
    if not isinstance(doc, dict):
        if isinstance(doc, (datetime, date)):
            return doc.isoformat()
        if isinstance(doc, ObjectId):
            return str(doc)
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    # Convert datetime/date to isoformat for JSON safety
    for k, v in list(d.items()):
        if isinstance(v, (dict, list, datetime, date, ObjectId)):
            d[k] = serialize_id(v)
    return d


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise ValidationError("Invalid ID format")


def to_document(data: Any) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("createdAt", now)
    data_dict["updatedAt"] = now
    return data_dict


class Store:
    """Storage interface shared by the Mongo and in-memory backends."""

    backend = "abstract"
    fallback = False

    def ping(self) -> bool:
        raise NotImplementedError

    def list_collection_names(self) -> List[str]:
        raise NotImplementedError

    def insert(self, collection: str, data: Any) -> str:
        """Insert a document (model or dict) and return its id."""
        raise NotImplementedError

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        raise NotImplementedError

    def find_one(self, collection: str, filter_dict: dict) -> Optional[dict]:
        docs = self.find(collection, filter_dict, limit=1)
        return docs[0] if docs else None

    def find(self, collection: str, filter_dict: Optional[dict] = None,
             sort: SortSpec = None, limit: Optional[int] = None) -> List[dict]:
        raise NotImplementedError

    def update(self, collection: str, doc_id: str, fields: dict,
               push: Optional[dict] = None) -> Optional[dict]:
        """$set `fields` (and $push `push`) on one document, returning the updated document."""
        raise NotImplementedError

    def credit_user(self, user_id: str, ledger: str, key: str, inc: Dict[str, float]) -> bool:
        """
        Increment user counters once per ledger key.

        Returns False when the user is missing or `key` is already recorded in
        the user's `ledger` list.
        """
        raise NotImplementedError

    def add_participant(self, campaign_id: str, participant: dict,
                        max_participants: Optional[int]) -> bool:
        """
        Append a participant to an active campaign in a single atomic step.

        The write only happens when the campaign is active, the user is not
        already on the roster and the roster is below `max_participants`.
        """
        raise NotImplementedError

    def remove_participant(self, campaign_id: str, user_id: str) -> Optional[dict]:
        raise NotImplementedError


# -----------------------------
# MongoDB
# -----------------------------

class MongoStore(Store):
    backend = "mongo"

    def __init__(self, url: str, name: str, timeout_ms: int = 5000):
        self.client = MongoClient(url, serverSelectionTimeoutMS=timeout_ms, tz_aware=True)
        self.db = self.client[name]

    @property
    def name(self) -> str:
        return self.db.name

    def ensure_indexes(self):
        for collection, fields in UNIQUE_FIELDS.items():
            for field in fields:
                self.db[collection].create_index([(field, ASCENDING)], unique=True)

    def ping(self) -> bool:
        try:
            self.client.admin.command("ping")
            return True
        except PyMongoError:
            return False

    def list_collection_names(self) -> List[str]:
        return self.db.list_collection_names()

    @staticmethod
    def _query(filter_dict: Optional[dict]) -> dict:
        query = dict(filter_dict or {})
        if "id" in query:
            value = query.pop("id")
            if not isinstance(value, dict):
                query["_id"] = oid(value)
                return query
            cond = {}
            for op, operand in value.items():
                if op == "$in":
                    cond[op] = [ObjectId(v) for v in operand if ObjectId.is_valid(v)]
                else:
                    cond[op] = oid(operand)
            query["_id"] = cond
        return query

    @staticmethod
    def _out(doc: Optional[dict]) -> Optional[dict]:
        if doc is None:
            return None
        d = dict(doc)
        d["id"] = str(d.pop("_id"))
        return d

    def insert(self, collection: str, data: Any) -> str:
        try:
            result = self.db[collection].insert_one(to_document(data))
        except DuplicateKeyError:
            raise Conflict("Document already exists")
        return str(result.inserted_id)

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return self._out(self.db[collection].find_one({"_id": oid(doc_id)}))

    def find(self, collection, filter_dict=None, sort=None, limit=None):
        cursor = self.db[collection].find(self._query(filter_dict))
        if sort:
            cursor = cursor.sort(list(sort))
        if limit:
            cursor = cursor.limit(limit)
        return [self._out(d) for d in cursor]

    def update(self, collection, doc_id, fields, push=None):
        changes = {"$set": {**fields, "updatedAt": utcnow()}}
        if push:
            changes["$push"] = push
        try:
            doc = self.db[collection].find_one_and_update(
                {"_id": oid(doc_id)}, changes, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            raise Conflict("Document already exists")
        return self._out(doc)

    def credit_user(self, user_id, ledger, key, inc):
        result = self.db.user.update_one(
            {"_id": oid(user_id), ledger: {"$ne": key}},
            {"$inc": inc, "$push": {ledger: key}},
        )
        return result.modified_count == 1

    def add_participant(self, campaign_id, participant, max_participants):
        query = {
            "_id": oid(campaign_id),
            "status": "active",
            "participants.user": {"$ne": participant["user"]},
        }
        if max_participants:
            # Array shorter than the cap iff the last allowed slot is empty
            query[f"participants.{max_participants - 1}"] = {"$exists": False}
        result = self.db.campaign.update_one(
            query, {"$push": {"participants": participant}, "$set": {"updatedAt": utcnow()}}
        )
        return result.modified_count == 1

    def remove_participant(self, campaign_id, user_id):
        doc = self.db.campaign.find_one_and_update(
            {"_id": oid(campaign_id)},
            {"$pull": {"participants": {"user": user_id}}, "$set": {"updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._out(doc)


# -----------------------------
# In-memory fallback
# -----------------------------

def _matches(doc: dict, filter_dict: dict) -> bool:
    for key, cond in filter_dict.items():
        value = doc.get(key)
        if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
            for op, operand in cond.items():
                if op == "$in" and value not in operand:
                    return False
                if op == "$ne" and value == operand:
                    return False
                if op in ("$gt", "$gte", "$lt", "$lte"):
                    if value is None:
                        return False
                    if op == "$gt" and not value > operand:
                        return False
                    if op == "$gte" and not value >= operand:
                        return False
                    if op == "$lt" and not value < operand:
                        return False
                    if op == "$lte" and not value <= operand:
                        return False
        elif value != cond:
            return False
    return True


class MemoryStore(Store):
    backend = "memory"
    name = "memory"

    def __init__(self):
        self._lock = threading.RLock()
        self._collections: Dict[str, Dict[str, dict]] = {"user": {}, "ewaste": {}, "campaign": {}}

    def _coll(self, collection: str) -> Dict[str, dict]:
        return self._collections.setdefault(collection, {})

    def _check_unique(self, collection: str, doc: dict, doc_id: Optional[str] = None):
        for field in UNIQUE_FIELDS.get(collection, ()):
            if field not in doc:
                continue
            for other_id, other in self._coll(collection).items():
                if other_id != doc_id and other.get(field) == doc[field]:
                    raise Conflict("Document already exists")

    def ping(self) -> bool:
        return True

    def list_collection_names(self) -> List[str]:
        with self._lock:
            return [name for name, docs in self._collections.items() if docs]

    def insert(self, collection, data):
        doc = copy.deepcopy(to_document(data))
        doc = {k: as_utc(v) for k, v in doc.items()}
        with self._lock:
            self._check_unique(collection, doc)
            doc_id = str(ObjectId())
            doc["id"] = doc_id
            self._coll(collection)[doc_id] = doc
        return doc_id

    def get(self, collection, doc_id):
        oid(doc_id)
        with self._lock:
            doc = self._coll(collection).get(doc_id)
            return copy.deepcopy(doc)

    def find(self, collection, filter_dict=None, sort=None, limit=None):
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._coll(collection).values()
                    if _matches(d, filter_dict or {})]
        for key, direction in reversed(list(sort or [])):
            # Missing values sort lowest, as in MongoDB
            docs.sort(key=lambda d: (d.get(key) is not None, d.get(key) if d.get(key) is not None else 0),
                      reverse=direction < 0)
        if limit:
            docs = docs[:limit]
        return docs

    def update(self, collection, doc_id, fields, push=None):
        oid(doc_id)
        with self._lock:
            doc = self._coll(collection).get(doc_id)
            if doc is None:
                return None
            changes = {k: as_utc(v) for k, v in fields.items()}
            self._check_unique(collection, changes, doc_id)
            doc.update(copy.deepcopy(changes))
            for key, value in (push or {}).items():
                doc.setdefault(key, []).append(copy.deepcopy(value))
            doc["updatedAt"] = utcnow()
            return copy.deepcopy(doc)

    def credit_user(self, user_id, ledger, key, inc):
        oid(user_id)
        with self._lock:
            user = self._coll("user").get(user_id)
            if user is None or key in user.get(ledger, []):
                return False
            for field, amount in inc.items():
                user[field] = user.get(field, 0) + amount
            user.setdefault(ledger, []).append(key)
            return True

    def add_participant(self, campaign_id, participant, max_participants):
        oid(campaign_id)
        with self._lock:
            campaign = self._coll("campaign").get(campaign_id)
            if campaign is None or campaign.get("status") != "active":
                return False
            roster = campaign.setdefault("participants", [])
            if any(p.get("user") == participant["user"] for p in roster):
                return False
            if max_participants and len(roster) >= max_participants:
                return False
            roster.append(copy.deepcopy(participant))
            campaign["updatedAt"] = utcnow()
            return True

    def remove_participant(self, campaign_id, user_id):
        oid(campaign_id)
        with self._lock:
            campaign = self._coll("campaign").get(campaign_id)
            if campaign is None:
                return None
            campaign["participants"] = [p for p in campaign.get("participants", []) if p.get("user") != user_id]
            campaign["updatedAt"] = utcnow()
            return copy.deepcopy(campaign)


# -----------------------------
# Store selection
# -----------------------------

_store: Optional[Store] = None


def connect_store() -> Store:
    """Pick the backend from the environment, falling back to memory when MongoDB is unavailable."""
    backend = os.getenv("STORE_BACKEND", "auto").lower()
    database_url = os.getenv("DATABASE_URL")
    database_name = os.getenv("DATABASE_NAME")

    if backend == "memory":
        logger.info("Using in-memory store")
        return MemoryStore()

    if database_url and database_name:
        try:
            store = MongoStore(database_url, database_name)
            store.client.admin.command("ping")
            store.ensure_indexes()
            logger.info("Connected to MongoDB database %s", database_name)
            return store
        except PyMongoError as e:
            if backend == "mongo":
                raise
            logger.error("MongoDB connection failed: %s", e)
    elif backend == "mongo":
        raise RuntimeError("DATABASE_URL and DATABASE_NAME must be set for the mongo backend")

    logger.warning("Running in fallback mode - data will not persist between restarts")
    store = MemoryStore()
    store.fallback = True
    return store


def get_store() -> Store:
    global _store
    if _store is None:
        _store = connect_store()
    return _store
