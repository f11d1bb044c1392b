"""
MongoDB balance store.

Each session is kept in a single document::

    {
        "_id": "balance_data:<session id>",
        "session_id": "<session id>",
        "type": "balance_data",
        "nconditions": 12,
        "version": 3,
        "counters": [{"condition_id": 1, "pending_count": 0, "completed_count": 0}, ...],
        "assignments": [{"participant_id": "...", "condition_id": 1, ...}, ...]
    }

A transaction loads the documents it touches, applies all changes in
memory and writes them back on commit. The write only succeeds if the
document's ``version`` is still the one that was loaded. Otherwise,
someone else committed in between, and the commit fails with
:class:`~condbalance.exceptions.StoreBusy`, so that the whole operation
is retried on fresh data. Since single-document writes are atomic in
MongoDB, a commit that only touches one session is atomic as well.

The collection may be shared with other data, e.g. experiment
data. Balance documents are recognized by their ``type`` and keep their
ids in a namespace of their own.
"""

import copy
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from pymongo import MongoClient
from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from .exceptions import ConstraintViolation, StoreBusy, StoreError
from .store import PENDING, Assignment, BalanceStore, ConditionCounter, StoreTransaction, now

logger = logging.getLogger(__name__)


@contextmanager
def translate_errors(action: str):
    try:
        yield
    except OperationFailure as e:
        if e.has_error_label("TransientTransactionError"):
            raise StoreBusy(f"Failed to {action}: {e}") from e
        raise StoreError(f"Failed to {action}: {e}") from e
    except PyMongoError as e:
        raise StoreError(f"Failed to {action}: {e}") from e


class MongoTransaction(StoreTransaction):

    def __init__(self, store: "MongoBalanceStore"):
        super().__init__(store.nconditions)
        self.store = store
        self.col = store.collection
        self._docs = {}
        self._versions = {}
        self._dirty = set()

    def _load(self, session_id: str) -> Optional[dict]:
        self._check_open()
        if session_id not in self._docs:
            with translate_errors("load session"):
                doc = self.col.find_one({"_id": self.store.doc_id(session_id), "type": self.store.DATA_TYPE})
            self._docs[session_id] = doc
            self._versions[session_id] = doc["version"] if doc is not None else None
        return self._docs[session_id]

    def _session(self, session_id: str) -> dict:
        doc = self._load(session_id)
        if doc is None:
            raise ConstraintViolation(f"Session {session_id} has not been initialized.")
        return doc

    def _find_assignment(self, doc: dict, participant_id: str) -> Optional[dict]:
        for data in doc["assignments"]:
            if data["participant_id"] == participant_id:
                return data
        return None

    def _find_counter(self, doc: dict, condition_id: int) -> dict:
        for data in doc["counters"]:
            if data["condition_id"] == condition_id:
                return data
        raise ConstraintViolation(
            f"No counter for condition {condition_id} in session {doc['session_id']}."
        )

    @staticmethod
    def _to_assignment(session_id: str, data: dict) -> Assignment:
        return Assignment(session_id=session_id, **data)

    def get_assignment(self, participant_id: str, session_id: str) -> Optional[Assignment]:
        doc = self._load(session_id)
        if doc is None:
            return None
        data = self._find_assignment(doc, participant_id)
        return self._to_assignment(session_id, data) if data is not None else None

    def insert_assignment(self, participant_id: str, session_id: str, condition_id: int, status: str = PENDING) -> Assignment:
        self._check_condition(condition_id)
        self._check_status(status)

        doc = self._session(session_id)
        if self._find_assignment(doc, participant_id) is not None:
            raise ConstraintViolation(
                f"Participant {participant_id} already has an assignment in session {session_id}."
            )

        data = {
            "participant_id": participant_id,
            "condition_id": condition_id,
            "status": status,
            "assigned_at": now(),
            "completed_at": None,
        }
        doc["assignments"].append(data)
        self._dirty.add(session_id)
        return self._to_assignment(session_id, copy.copy(data))

    def update_assignment_status(self, participant_id: str, session_id: str, new_status: str) -> Assignment:
        doc = self._session(session_id)
        data = self._find_assignment(doc, participant_id)
        if data is None:
            raise ConstraintViolation(
                f"No assignment for participant {participant_id} in session {session_id}."
            )
        self._check_transition(self._to_assignment(session_id, data), new_status)

        data["status"] = new_status
        data["completed_at"] = now()
        self._dirty.add(session_id)
        return self._to_assignment(session_id, copy.copy(data))

    def ensure_session_initialized(self, session_id: str) -> bool:
        if self._load(session_id) is not None:
            return False

        self._docs[session_id] = {
            "_id": self.store.doc_id(session_id),
            "session_id": session_id,
            "type": self.store.DATA_TYPE,
            "nconditions": self.nconditions,
            "version": 0,
            "counters": [
                {"condition_id": i, "pending_count": 0, "completed_count": 0}
                for i in range(1, self.nconditions + 1)
            ],
            "assignments": [],
        }
        self._dirty.add(session_id)
        return True

    def list_counters(self, session_id: str) -> List[ConditionCounter]:
        doc = self._load(session_id)
        if doc is None:
            return []
        counters = [ConditionCounter(session_id=session_id, **data) for data in doc["counters"]]
        return sorted(counters, key=lambda c: c.condition_id)

    def _increment(self, field: str, session_id: str, condition_id: int, delta: int):
        self._check_condition(condition_id)
        self._check_delta(delta)

        counter = self._find_counter(self._session(session_id), condition_id)
        if counter[field] + delta < 0:
            raise ConstraintViolation(
                f"{field} of condition {condition_id} in session {session_id} cannot become negative."
            )
        counter[field] += delta
        self._dirty.add(session_id)

    def increment_pending(self, session_id: str, condition_id: int, delta: int):
        self._increment("pending_count", session_id, condition_id, delta)

    def increment_completed(self, session_id: str, condition_id: int, delta: int):
        self._increment("completed_count", session_id, condition_id, delta)

    def list_assignments(self, session_id: str = None) -> Iterator[Assignment]:
        sessions = [session_id] if session_id is not None else self.list_sessions()
        for sid in sessions:
            doc = self._load(sid)
            if doc is None:
                continue
            for data in sorted(doc["assignments"], key=lambda d: (d["assigned_at"], d["participant_id"])):
                yield self._to_assignment(sid, data)

    def list_sessions(self) -> List[str]:
        self._check_open()
        with translate_errors("load sessions"):
            cursor = self.col.find({"type": self.store.DATA_TYPE}, projection={"session_id": 1})
            return sorted(doc["session_id"] for doc in cursor)

    def _write(self, session_id: str):
        doc = self._docs[session_id]
        version = self._versions[session_id]

        if version is None:
            try:
                self.col.insert_one(doc)
            except DuplicateKeyError as e:
                existing = self.col.find_one({"_id": doc["_id"]}, projection={"type": 1})
                if existing is not None and existing.get("type") != self.store.DATA_TYPE:
                    raise ConstraintViolation(
                        f"Session {session_id} collides with a document of type "
                        f"{existing.get('type')!r} under id {doc['_id']!r}."
                    ) from e
                raise StoreBusy(f"Session {session_id} was initialized concurrently.") from e
            return

        update = {
            "$set": {
                "counters": doc["counters"],
                "assignments": doc["assignments"],
                "version": version + 1,
            }
        }
        result = self.col.update_one({"_id": doc["_id"], "version": version}, update)
        if result.matched_count == 0:
            raise StoreBusy(f"Session {session_id} was modified by a concurrent transaction.")

    def commit(self):
        self._check_open()
        try:
            with translate_errors("commit"):
                for session_id in sorted(self._dirty):
                    self._write(session_id)
        finally:
            self.closed = True

    def rollback(self):
        self.closed = True
        self._docs.clear()
        self._dirty.clear()


class MongoBalanceStore(BalanceStore):
    """
    Balance store in a MongoDB collection.

    Args:
        collection (pymongo.collection.Collection): The collection to
            store session documents in.
        nconditions (int): Number of conditions per session.
    """

    DATA_TYPE = "balance_data"

    def __init__(self, collection, nconditions: int = 12):
        super().__init__(nconditions)
        self.collection = collection
        self._check_schema()
        logger.debug(f"Opened mongo balance store in collection {collection.name!r}.")

    @classmethod
    def from_secrets(cls, section, nconditions: int = 12, client=None) -> "MongoBalanceStore":
        """
        Creates a store from the ``[mongo]`` section of the secrets.

        Args:
            section (configparser.SectionProxy): The ``[mongo]`` section.
            nconditions (int): Number of conditions per session.
            client: A :class:`pymongo.MongoClient` to use instead of
                connecting with the credentials in *section*.
        """
        if client is None:
            kwargs = {
                "host": section.get("host"),
                "port": section.getint("port"),
                "tls": section.getboolean("use_ssl", fallback=False),
            }
            if section.get("username"):
                kwargs["username"] = section.get("username")
                kwargs["password"] = section.get("password")
                kwargs["authSource"] = section.get("auth_source", fallback="admin")
            client = MongoClient(**kwargs)

        db = client[section.get("database")]
        return cls(db[section.get("collection")], nconditions=nconditions)

    def _check_schema(self):
        query = {"type": self.DATA_TYPE, "nconditions": {"$ne": self.nconditions}}
        with translate_errors("inspect sessions"):
            doc = self.collection.find_one(query, projection={"session_id": 1, "nconditions": 1})

        if doc is not None:
            raise ValueError(
                f"The store holds session {doc['session_id']} with {doc['nconditions']} conditions, "
                f"but it was opened with nconditions={self.nconditions}. The number of "
                "conditions must not change for an existing store."
            )

    def doc_id(self, session_id: str) -> str:
        """Returns the document id of a session."""
        return f"{self.DATA_TYPE}:{session_id}"

    def begin(self) -> MongoTransaction:
        return MongoTransaction(self)

    def close(self):
        self.collection.database.client.close()
