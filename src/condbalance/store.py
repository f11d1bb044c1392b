"""
Module for the balance store.

The balance store holds two kinds of records, scoped by session:

* :class:`Assignment`: one record per participant and session, stating
  which condition the participant was assigned to and whether they
  completed it.
* :class:`ConditionCounter`: one record per session and condition,
  counting the pending and completed assignments in that condition.

All reads and writes happen inside a :class:`StoreTransaction`, obtained
via :meth:`BalanceStore.begin`. Nothing a transaction does becomes
visible to other transactions before :meth:`StoreTransaction.commit`.

Two backends are available. Which one is used is configured via the
option ``method`` in section ``[store]``:

* ``local``: A relational database via SQLAlchemy, see
  :mod:`condbalance.sqlstore`. By default, this is an SQLite file in the
  study directory.
* ``mongo``: A MongoDB collection, see :mod:`condbalance.mongostore`.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from .exceptions import ConstraintViolation

PENDING = "pending"
COMPLETED = "completed"
STATUSES = (PENDING, COMPLETED)


def now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Assignment:
    participant_id: str
    session_id: str
    condition_id: int
    status: str = PENDING
    assigned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def completed(self) -> bool:
        return self.status == COMPLETED


@dataclass
class ConditionCounter:
    session_id: str
    condition_id: int
    pending_count: int = 0
    completed_count: int = 0

    @property
    def total(self) -> int:
        return self.pending_count + self.completed_count


class StoreTransaction:
    """
    One attempt at a unit of work against the store.

    Subclasses implement the storage access. The checks shared by all
    backends (condition bounds, status values, monotonic status) live
    here, so that every backend enforces the same constraints at its
    boundary.

    Args:
        nconditions (int): Number of conditions per session.
    """

    def __init__(self, nconditions: int):
        self.nconditions = nconditions
        self.closed = False

    # -- shared constraint checks ------------------------------------------

    def _check_condition(self, condition_id: int):
        if not isinstance(condition_id, int) or not 1 <= condition_id <= self.nconditions:
            raise ConstraintViolation(
                f"Condition id {condition_id!r} is outside of [1, {self.nconditions}]."
            )

    def _check_status(self, status: str):
        if status not in STATUSES:
            raise ConstraintViolation(f"Invalid assignment status {status!r}.")

    def _check_transition(self, assignment: Assignment, new_status: str):
        self._check_status(new_status)
        if assignment.status == COMPLETED or new_status != COMPLETED:
            raise ConstraintViolation(
                f"Status of participant {assignment.participant_id} in session "
                f"{assignment.session_id} cannot change from {assignment.status!r} "
                f"to {new_status!r}."
            )

    def _check_delta(self, delta: int):
        if delta not in (-1, 1):
            raise ConstraintViolation(f"Counter delta must be -1 or +1, not {delta!r}.")

    def _check_open(self):
        if self.closed:
            raise RuntimeError("Transaction was already committed or rolled back.")

    # -- interface ---------------------------------------------------------

    def get_assignment(self, participant_id: str, session_id: str) -> Optional[Assignment]:
        raise NotImplementedError

    def insert_assignment(self, participant_id: str, session_id: str, condition_id: int, status: str = PENDING) -> Assignment:
        raise NotImplementedError

    def update_assignment_status(self, participant_id: str, session_id: str, new_status: str) -> Assignment:
        raise NotImplementedError

    def ensure_session_initialized(self, session_id: str) -> bool:
        """
        Creates the counters for *session_id*, if there are none yet.

        Returns:
            bool: *True*, if the counters were created by this call.
        """
        raise NotImplementedError

    def list_counters(self, session_id: str) -> List[ConditionCounter]:
        raise NotImplementedError

    def increment_pending(self, session_id: str, condition_id: int, delta: int):
        raise NotImplementedError

    def increment_completed(self, session_id: str, condition_id: int, delta: int):
        raise NotImplementedError

    def list_assignments(self, session_id: str = None) -> Iterator[Assignment]:
        raise NotImplementedError

    def list_sessions(self) -> List[str]:
        raise NotImplementedError

    def commit(self):
        raise NotImplementedError

    def rollback(self):
        raise NotImplementedError


class BalanceStore:
    """
    Base class for balance stores.

    Args:
        nconditions (int): Number of conditions per session. Must be the
            same every time the same store is opened.
    """

    def __init__(self, nconditions: int):
        if nconditions < 1:
            raise ValueError("A store needs at least one condition.")
        self.nconditions = nconditions

    def begin(self) -> StoreTransaction:
        raise NotImplementedError

    def close(self):
        pass


def saving_method(config) -> str:
    """
    Returns the configured store backend, either 'local' or 'mongo'.
    """
    method = config.get("store", "method").strip().lower()
    if method not in ("local", "mongo"):
        raise ValueError(f"Store method must be 'local' or 'mongo', not {method!r}.")
    return method


def create_store(config, secrets=None) -> BalanceStore:
    """
    Creates the store configured in *config*.

    Args:
        config (condbalance.config.BalancerConfig): Configuration.
        secrets (condbalance.config.BalancerSecrets): Credentials. Only
            needed for the 'mongo' method.
    """
    nconditions = config.getint("balancer", "nconditions")
    method = saving_method(config)

    if method == "local":
        from .sqlstore import SQLBalanceStore

        url = config.get("store", "url", fallback="").strip()
        if not url:
            url = f"sqlite:///{config.subpath(config.get('store', 'path'))}"

        return SQLBalanceStore(
            url,
            nconditions=nconditions,
            busy_timeout=config.getfloat("store", "busy_timeout"),
            echo=config.getboolean("store", "echo"),
        )

    elif method == "mongo":
        from .mongostore import MongoBalanceStore

        if secrets is None or secrets.get_section("mongo") is None:
            raise ValueError("The 'mongo' store method needs a [mongo] section in secrets.conf.")
        return MongoBalanceStore.from_secrets(secrets["mongo"], nconditions=nconditions)
