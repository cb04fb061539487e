"""
Storage layer: a MongoDB-backed store and an in-memory fallback behind one
interface.

Which store backs the API is decided once, at startup, by connect_store().
Both implementations return plain dicts shaped identically: "_id" and "id"
hold the same string id, timestamps are timezone-aware UTC, and a
proposal's "proposer" is resolved to the owner's public fields.
"""

import copy
import logging
import threading
import time
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import MONGODB_DEFAULT_DB, MONGODB_TIMEOUT_MS, MONGODB_URI, USE_IN_MEMORY_STORE
from schemas import Proposal, User, WaterUsage, utcnow

logger = logging.getLogger(__name__)

PROPOSER_FIELDS = ("name", "email", "role", "location")


class DuplicateEmailError(Exception):
    """Raised when a user is inserted with an email that is already registered."""

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"User with email '{email}' already exists")


class Store(Protocol):
    """Operations the API needs from persistence."""

    connected: bool

    def find_users(self) -> List[dict]:
        ...

    def find_user_by_email(self, email: str) -> Optional[dict]:
        ...

    def get_user(self, user_id: str) -> Optional[dict]:
        ...

    def insert_user(self, user: User) -> dict:
        ...

    def find_proposals(self, status: str = "active") -> List[dict]:
        ...

    def get_proposal(self, proposal_id: str) -> Optional[dict]:
        ...

    def insert_proposal(self, proposal: Proposal) -> dict:
        ...

    def delete_proposal(self, proposal_id: str) -> bool:
        ...

    def find_water_usage(self) -> List[dict]:
        ...

    def insert_water_usage(self, usage: WaterUsage) -> dict:
        ...


# ------------------------- Shared helpers -------------------------

def public_user(user: dict) -> dict:
    """Return a copy of a user record without its password hash."""
    return {k: v for k, v in user.items() if k != "password"}


def proposer_view(proposer_id: str, user: Optional[dict]) -> dict:
    view = {"_id": proposer_id, "id": proposer_id}
    for key in PROPOSER_FIELDS:
        view[key] = (user or {}).get(key)
    return view


def _as_utc(value):
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ------------------------- MongoDB -------------------------

def to_oid(val) -> Optional[ObjectId]:
    try:
        return ObjectId(str(val))
    except (InvalidId, TypeError):
        return None


def serialize(doc: dict) -> dict:
    out = {k: _as_utc(v) for k, v in doc.items()}
    oid = str(out.pop("_id"))
    out["_id"] = oid
    out["id"] = oid
    return out


class ConnectionManager:
    """Makes a single connection attempt to MongoDB and remembers the outcome.

    A failed attempt is logged, not raised; the manager then reports the
    store as unavailable for the rest of the process lifetime.
    """

    def __init__(self, uri: str = MONGODB_URI, timeout_ms: int = MONGODB_TIMEOUT_MS):
        self.uri = uri
        self.timeout_ms = timeout_ms
        self.client: Optional[MongoClient] = None
        self._attempted = False
        self._available = False

    def connect(self) -> bool:
        if self._attempted:
            return self._available
        self._attempted = True
        try:
            self.client = MongoClient(self.uri, serverSelectionTimeoutMS=self.timeout_ms)
            self.client.admin.command("ping")
        except PyMongoError as e:
            logger.warning("MongoDB not available (%s); using in-memory storage", e)
            self.close()
        else:
            logger.info("MongoDB connected")
            self._available = True
        return self._available

    def is_available(self) -> bool:
        return self._available

    def close(self) -> None:
        """Stop the client so its monitor threads do not keep dialing the server."""
        if self.client is not None:
            self.client.close()
            self.client = None
        self._available = False

    @property
    def database(self):
        if not self._available:
            raise RuntimeError("MongoDB is not connected")
        return self.client.get_default_database(MONGODB_DEFAULT_DB)


class MongoStore:
    connected = True

    def __init__(self, db):
        self.db = db
        self.users = db["user"]
        self.proposals = db["proposal"]
        self.water_usage = db["waterusage"]
        self.users.create_index([("email", ASCENDING)], unique=True)

    def find_users(self) -> List[dict]:
        return [serialize(u) for u in self.users.find({})]

    def find_user_by_email(self, email: str) -> Optional[dict]:
        user = self.users.find_one({"email": email})
        return serialize(user) if user else None

    def get_user(self, user_id: str) -> Optional[dict]:
        oid = to_oid(user_id)
        if oid is None:
            return None
        user = self.users.find_one({"_id": oid})
        return serialize(user) if user else None

    def insert_user(self, user: User) -> dict:
        doc = user.model_dump()
        if self.users.find_one({"email": doc["email"]}):
            raise DuplicateEmailError(doc["email"])
        try:
            res = self.users.insert_one(doc)
        except DuplicateKeyError:
            raise DuplicateEmailError(doc["email"])
        doc["_id"] = res.inserted_id
        return serialize(doc)

    def _resolve_proposers(self, docs: List[dict]) -> List[dict]:
        ids = {d["proposer"] for d in docs}
        oids = [oid for oid in (to_oid(i) for i in ids) if oid is not None]
        owners = {}
        if oids:
            owners = {str(u["_id"]): u for u in self.users.find({"_id": {"$in": oids}})}
        result = []
        for d in docs:
            item = serialize(d)
            item["proposer"] = proposer_view(d["proposer"], owners.get(d["proposer"]))
            result.append(item)
        return result

    def find_proposals(self, status: str = "active") -> List[dict]:
        cursor = self.proposals.find({"status": status}).sort([("createdAt", DESCENDING), ("_id", DESCENDING)])
        return self._resolve_proposers(list(cursor))

    def get_proposal(self, proposal_id: str) -> Optional[dict]:
        oid = to_oid(proposal_id)
        if oid is None:
            return None
        doc = self.proposals.find_one({"_id": oid})
        return self._resolve_proposers([doc])[0] if doc else None

    def insert_proposal(self, proposal: Proposal) -> dict:
        doc = proposal.model_dump()
        res = self.proposals.insert_one(doc)
        doc["_id"] = res.inserted_id
        return self._resolve_proposers([doc])[0]

    def delete_proposal(self, proposal_id: str) -> bool:
        oid = to_oid(proposal_id)
        if oid is None:
            return False
        return self.proposals.delete_one({"_id": oid}).deleted_count > 0

    def find_water_usage(self) -> List[dict]:
        cursor = self.water_usage.find({}).sort([("createdAt", DESCENDING), ("_id", DESCENDING)])
        return [serialize(r) for r in cursor]

    def insert_water_usage(self, usage: WaterUsage) -> dict:
        doc = usage.model_dump()
        res = self.water_usage.insert_one(doc)
        doc["_id"] = res.inserted_id
        return serialize(doc)


# ------------------------- In-memory fallback -------------------------

def seed_water_usage() -> List[dict]:
    now = utcnow()
    seeds = [
        ("1", "Wheat Field", 1200, "Optimal"),
        ("2", "Rice Field", 1800, "High"),
        ("3", "Corn Field", 900, "Low"),
    ]
    records = []
    for rid, field, liters, status in seeds:
        usage = WaterUsage(field=field, litersUsed=liters, status=status, createdAt=now, updatedAt=now)
        records.append({"_id": rid, "id": rid, **usage.model_dump()})
    return records


def _newest_first(records: List[dict]) -> List[dict]:
    # reversed() first so records sharing a timestamp keep newest-first order
    return sorted(reversed(records), key=lambda r: r["createdAt"], reverse=True)


class InMemoryStore:
    """Process-local substitute used when MongoDB is unreachable.

    Nothing here survives a restart. Records only grow by append; deleting a
    proposal rebuilds the list without it.
    """

    connected = False

    def __init__(self):
        self._lock = threading.Lock()
        self._last_id = 0
        self.users: List[dict] = []
        self.proposals: List[dict] = []
        self.water_usage: List[dict] = seed_water_usage()

    def reset(self) -> None:
        """Restore the seeded state (useful in tests)."""
        with self._lock:
            self.users = []
            self.proposals = []
            self.water_usage = seed_water_usage()

    def _next_id(self) -> str:
        # millisecond timestamp, bumped when two inserts land in the same ms
        self._last_id = max(int(time.time() * 1000), self._last_id + 1)
        return str(self._last_id)

    def _new_record(self, model) -> dict:
        rid = self._next_id()
        return {"_id": rid, "id": rid, **model.model_dump()}

    def find_users(self) -> List[dict]:
        return copy.deepcopy(self.users)

    def find_user_by_email(self, email: str) -> Optional[dict]:
        for u in self.users:
            if u["email"] == email:
                return copy.deepcopy(u)
        return None

    def get_user(self, user_id: str) -> Optional[dict]:
        for u in self.users:
            if u["id"] == user_id:
                return copy.deepcopy(u)
        return None

    def insert_user(self, user: User) -> dict:
        with self._lock:
            if any(u["email"] == user.email for u in self.users):
                raise DuplicateEmailError(user.email)
            record = self._new_record(user)
            self.users.append(record)
        return copy.deepcopy(record)

    def _resolve_proposer(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        owner = next((u for u in self.users if u["id"] == record["proposer"]), None)
        item["proposer"] = proposer_view(record["proposer"], owner)
        return item

    def find_proposals(self, status: str = "active") -> List[dict]:
        matching = [p for p in self.proposals if p["status"] == status]
        return [self._resolve_proposer(p) for p in _newest_first(matching)]

    def get_proposal(self, proposal_id: str) -> Optional[dict]:
        for p in self.proposals:
            if p["id"] == proposal_id:
                return self._resolve_proposer(p)
        return None

    def insert_proposal(self, proposal: Proposal) -> dict:
        with self._lock:
            record = self._new_record(proposal)
            self.proposals.append(record)
        return self._resolve_proposer(record)

    def delete_proposal(self, proposal_id: str) -> bool:
        with self._lock:
            remaining = [p for p in self.proposals if p["id"] != proposal_id]
            removed = len(remaining) != len(self.proposals)
            self.proposals = remaining
        return removed

    def find_water_usage(self) -> List[dict]:
        return copy.deepcopy(_newest_first(self.water_usage))

    def insert_water_usage(self, usage: WaterUsage) -> dict:
        with self._lock:
            record = self._new_record(usage)
            self.water_usage.append(record)
        return copy.deepcopy(record)


def connect_store(uri: str = MONGODB_URI, use_in_memory: bool = USE_IN_MEMORY_STORE) -> Store:
    """Pick the store for this process: MongoDB if reachable, else in-memory."""
    if use_in_memory:
        logger.info("USE_IN_MEMORY_STORE is set; skipping MongoDB connection")
        return InMemoryStore()
    manager = ConnectionManager(uri)
    if manager.connect():
        try:
            return MongoStore(manager.database)
        except PyMongoError as e:
            logger.warning("MongoDB setup failed (%s); using in-memory storage", e)
            manager.close()
    return InMemoryStore()
