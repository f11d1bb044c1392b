"""
Relational balance store, built on SQLAlchemy Core.

The store uses two tables:

* ``condition_counts``: one row per session and condition.
* ``user_conditions``: one row per participant and session.

Both tables carry CHECK constraints derived from the number of
conditions, so the database itself rejects condition ids outside of
``[1, nconditions]``, unknown status values and negative counters.

With SQLite (the default), every transaction is started with
``BEGIN IMMEDIATE``. That way, a write lock held by another process is
detected when the transaction starts and reported as
:class:`~condbalance.exceptions.StoreBusy`, instead of surfacing halfway
through an operation.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKeyConstraint,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    create_engine,
    event,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from .exceptions import ConstraintViolation, StoreBusy, StoreError
from .store import PENDING, Assignment, BalanceStore, ConditionCounter, StoreTransaction, now

logger = logging.getLogger(__name__)

# sqlstate codes for serialization failure, deadlock and lock_not_available
_PG_BUSY_CODES = ("40001", "40P01", "55P03")
# lock wait timeout and deadlock
_MYSQL_BUSY_CODES = (1205, 1213)


def define_tables(metadata: MetaData, nconditions: int):
    """
    Defines the store's tables on *metadata*.

    Returns:
        tuple: The tables ``(condition_counts, user_conditions)``.
    """
    condition_range = f"condition_id BETWEEN 1 AND {nconditions}"

    counters = Table(
        "condition_counts",
        metadata,
        Column("session_id", String(255), nullable=False),
        Column("condition_id", Integer, nullable=False),
        Column("pending_count", Integer, nullable=False, default=0),
        Column("completed_count", Integer, nullable=False, default=0),
        PrimaryKeyConstraint("session_id", "condition_id"),
        CheckConstraint(condition_range, name="ck_counts_condition_range"),
        CheckConstraint("pending_count >= 0", name="ck_counts_pending_nonnegative"),
        CheckConstraint("completed_count >= 0", name="ck_counts_completed_nonnegative"),
    )

    assignments = Table(
        "user_conditions",
        metadata,
        Column("participant_id", String(255), nullable=False),
        Column("session_id", String(255), nullable=False),
        Column("condition_id", Integer, nullable=False),
        Column("status", String(16), nullable=False),
        Column("assigned_at", DateTime(timezone=True), nullable=False),
        Column("completed_at", DateTime(timezone=True), nullable=True),
        PrimaryKeyConstraint("participant_id", "session_id"),
        ForeignKeyConstraint(
            ["session_id", "condition_id"],
            ["condition_counts.session_id", "condition_counts.condition_id"],
        ),
        CheckConstraint(condition_range, name="ck_conditions_condition_range"),
        CheckConstraint("status IN ('pending', 'completed')", name="ck_conditions_status"),
    )

    return counters, assignments


def _is_busy(error: OperationalError) -> bool:
    orig = error.orig
    msg = str(orig).lower()
    if "database is locked" in msg or "database table is locked" in msg:
        return True

    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in _PG_BUSY_CODES:
        return True

    args = getattr(orig, "args", ())
    return bool(args) and args[0] in _MYSQL_BUSY_CODES


@contextmanager
def translate_errors(action: str):
    """
    Translates SQLAlchemy errors raised inside the block into store
    errors.

    Args:
        action (str): Human-readable name of what was attempted, used
            in the error message.
    """
    try:
        yield
    except IntegrityError as e:
        raise ConstraintViolation(f"Failed to {action}: {e.orig}") from e
    except OperationalError as e:
        if _is_busy(e):
            raise StoreBusy(f"Failed to {action}: {e.orig}") from e
        raise StoreError(f"Failed to {action}: {e.orig}") from e
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to {action}: {e}") from e


def create_sql_engine(url: str, busy_timeout: float = 5.0, echo: bool = False) -> Engine:
    """
    Creates an engine for *url*.

    For SQLite, the engine may be shared between threads, waits up to
    *busy_timeout* seconds for locks held by other connections, enforces
    foreign keys and starts every transaction with ``BEGIN IMMEDIATE``.
    """
    sa_url = make_url(url)

    if sa_url.get_backend_name() != "sqlite":
        return create_engine(sa_url, echo=echo, pool_pre_ping=True)

    kwargs = {"connect_args": {"timeout": busy_timeout, "check_same_thread": False}}
    if sa_url.database in (None, "", ":memory:"):
        kwargs["poolclass"] = StaticPool

    engine = create_engine(sa_url, echo=echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # disable pysqlite's own transaction handling, see _on_begin
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


class SQLTransaction(StoreTransaction):

    def __init__(self, store: "SQLBalanceStore"):
        super().__init__(store.nconditions)
        self.counters = store.counters
        self.assignments = store.assignments

        # a store on a single shared connection runs one transaction at a time
        self._serial = store.connection_lock
        if self._serial is not None:
            self._serial.acquire()

        try:
            with translate_errors("begin transaction"):
                self.conn = store.engine.connect()
                try:
                    self.tx = self.conn.begin()
                except SQLAlchemyError:
                    self.conn.close()
                    raise
        except BaseException:
            self._release()
            raise

    def _release(self):
        if self._serial is not None:
            self._serial.release()
            self._serial = None

    def _execute(self, action: str, statement):
        self._check_open()
        with translate_errors(action):
            return self.conn.execute(statement)

    @staticmethod
    def _to_assignment(row) -> Assignment:
        return Assignment(**row._mapping)

    def get_assignment(self, participant_id: str, session_id: str) -> Optional[Assignment]:
        a = self.assignments
        stmt = select(a).where(a.c.participant_id == participant_id, a.c.session_id == session_id)
        row = self._execute("load assignment", stmt).first()
        return self._to_assignment(row) if row is not None else None

    def insert_assignment(self, participant_id: str, session_id: str, condition_id: int, status: str = PENDING) -> Assignment:
        self._check_condition(condition_id)
        self._check_status(status)

        assignment = Assignment(
            participant_id=participant_id,
            session_id=session_id,
            condition_id=condition_id,
            status=status,
            assigned_at=now(),
        )
        stmt = self.assignments.insert().values(
            participant_id=assignment.participant_id,
            session_id=assignment.session_id,
            condition_id=assignment.condition_id,
            status=assignment.status,
            assigned_at=assignment.assigned_at,
            completed_at=assignment.completed_at,
        )
        self._execute("insert assignment", stmt)
        return assignment

    def update_assignment_status(self, participant_id: str, session_id: str, new_status: str) -> Assignment:
        assignment = self.get_assignment(participant_id, session_id)
        if assignment is None:
            raise ConstraintViolation(
                f"No assignment for participant {participant_id} in session {session_id}."
            )
        self._check_transition(assignment, new_status)

        assignment.status = new_status
        assignment.completed_at = now()

        a = self.assignments
        stmt = (
            update(a)
            .where(a.c.participant_id == participant_id, a.c.session_id == session_id)
            .values(status=assignment.status, completed_at=assignment.completed_at)
        )
        self._execute("update assignment status", stmt)
        return assignment

    def ensure_session_initialized(self, session_id: str) -> bool:
        c = self.counters
        stmt = select(c.c.condition_id).where(c.c.session_id == session_id).limit(1)
        if self._execute("look up session", stmt).first() is not None:
            return False

        rows = [
            {"session_id": session_id, "condition_id": i, "pending_count": 0, "completed_count": 0}
            for i in range(1, self.nconditions + 1)
        ]
        self._check_open()
        with translate_errors("initialize session"):
            self.conn.execute(c.insert(), rows)
        return True

    def list_counters(self, session_id: str) -> List[ConditionCounter]:
        c = self.counters
        stmt = select(c).where(c.c.session_id == session_id).order_by(c.c.condition_id)
        rows = self._execute("load counters", stmt)
        return [ConditionCounter(**row._mapping) for row in rows]

    def _increment(self, column: str, session_id: str, condition_id: int, delta: int):
        self._check_condition(condition_id)
        self._check_delta(delta)

        c = self.counters
        stmt = (
            update(c)
            .where(c.c.session_id == session_id, c.c.condition_id == condition_id)
            .values({column: c.c[column] + delta})
        )
        result = self._execute(f"update {column}", stmt)
        if result.rowcount == 0:
            raise ConstraintViolation(
                f"No counter for condition {condition_id} in session {session_id}."
            )

    def increment_pending(self, session_id: str, condition_id: int, delta: int):
        self._increment("pending_count", session_id, condition_id, delta)

    def increment_completed(self, session_id: str, condition_id: int, delta: int):
        self._increment("completed_count", session_id, condition_id, delta)

    def list_assignments(self, session_id: str = None) -> Iterator[Assignment]:
        a = self.assignments
        stmt = select(a).order_by(a.c.session_id, a.c.assigned_at, a.c.participant_id)
        if session_id is not None:
            stmt = stmt.where(a.c.session_id == session_id)
        rows = self._execute("load assignments", stmt).all()
        return (self._to_assignment(row) for row in rows)

    def list_sessions(self) -> List[str]:
        c = self.counters
        stmt = select(c.c.session_id).distinct().order_by(c.c.session_id)
        return [row.session_id for row in self._execute("load sessions", stmt)]

    def _close(self):
        self.closed = True
        try:
            self.conn.close()
        finally:
            self._release()

    def commit(self):
        self._check_open()
        try:
            with translate_errors("commit"):
                self.tx.commit()
        finally:
            self._close()

    def rollback(self):
        if self.closed:
            return
        try:
            with translate_errors("roll back"):
                self.tx.rollback()
        finally:
            self._close()


class SQLBalanceStore(BalanceStore):
    """
    Balance store in a relational database.

    Args:
        url (str): SQLAlchemy database url, e.g.
            ``sqlite:////path/to/conditions.db``.
        nconditions (int): Number of conditions per session.
        busy_timeout (float): Seconds SQLite waits for a lock held by
            another connection before the store is reported as busy.
        echo (bool): If *True*, SQLAlchemy logs all statements.
        engine (sqlalchemy.engine.Engine): Use this engine instead of
            creating one from *url*.

    Raises:
        ValueError: If the database already holds counters for a
            different number of conditions than *nconditions*.
    """

    def __init__(self, url: str = None, nconditions: int = 12, busy_timeout: float = 5.0, echo: bool = False, engine: Engine = None):
        super().__init__(nconditions)
        if engine is None and url is None:
            raise ValueError("Either url or engine must be given.")

        self.engine = engine if engine is not None else create_sql_engine(url, busy_timeout, echo)

        #: Serializes transactions if all of them share one connection,
        #: as with an in-memory SQLite database. *None* otherwise.
        self.connection_lock = threading.Lock() if isinstance(self.engine.pool, StaticPool) else None

        self.metadata = MetaData()
        self.counters, self.assignments = define_tables(self.metadata, nconditions)

        with translate_errors("create tables"):
            self.metadata.create_all(self.engine)

        self._check_schema()
        logger.debug(f"Opened relational balance store at {self.engine.url!r}.")

    def _check_schema(self):
        stmt = select(func.max(self.counters.c.condition_id))
        with translate_errors("inspect counters"):
            with self.engine.connect() as conn:
                highest = conn.execute(stmt).scalar()

        if highest is not None and highest != self.nconditions:
            raise ValueError(
                f"The store holds counters for {highest} conditions, but it was opened with "
                f"nconditions={self.nconditions}. The number of conditions must not change "
                "for an existing store."
            )

    def begin(self) -> SQLTransaction:
        return SQLTransaction(self)

    def close(self):
        self.engine.dispose()
