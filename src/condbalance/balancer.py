"""
Module for balancing participants across experimental conditions.

The :class:`Balancer` assigns each new participant of a session to the
condition that currently carries the least load, and later records that
the participant completed it.

The load of a condition is its *weight*::

    weight = completed_count + pending_weight * pending_count

Pending assignments weigh slightly less than completed ones (by default
0.95), because a participant who started may still drop out. Among
conditions with the same weight, the one with the smallest id wins.

Every operation runs inside the balancing lock and inside exactly one
store transaction per attempt. If the store is busy, the whole attempt
is rolled back and repeated.
"""

import time
from fractions import Fraction
from typing import Callable, List, Sequence, Tuple

from .concurrency import BalanceLock, retry_on_busy
from .exceptions import (
    AlreadyCompleted,
    AssignmentFailed,
    ConfirmationFailed,
    ConstraintViolation,
    NotFound,
    OperationFailed,
    StoreError,
)
from .log import BalanceLoggingInterface
from .store import COMPLETED, Assignment, BalanceStore, ConditionCounter, StoreTransaction, create_store

#: Default weight of a pending assignment relative to a completed one.
PENDING_WEIGHT = 0.95

#: Default number of attempts per operation.
MAX_ATTEMPTS = 3

#: Default seconds between two attempts.
RETRY_BACKOFF = 0.1


def load_weight(counter: ConditionCounter, pending_weight: float = PENDING_WEIGHT) -> float:
    """
    Returns the load weight of a condition.

    Examples:
        >>> load_weight(ConditionCounter("s1", 1, pending_count=2, completed_count=0))
        1.9
    """
    return counter.completed_count + pending_weight * counter.pending_count


def select_condition(counters: Sequence[ConditionCounter], pending_weight: float = PENDING_WEIGHT) -> ConditionCounter:
    """
    Returns the counter of the condition with the smallest load weight.

    Ties are broken by the smallest condition id. Weights are compared
    exactly, so that floating point rounding can never decide a tie.

    Raises:
        ValueError: If *counters* is empty.
    """
    if not counters:
        raise ValueError("Cannot select a condition from an empty list of counters.")

    w = Fraction(str(pending_weight))
    return min(counters, key=lambda c: (c.completed_count + w * c.pending_count, c.condition_id))


class Balancer:
    """
    Assigns participants to conditions and confirms completions.

    Args:
        store (condbalance.store.BalanceStore): The store holding
            assignments and counters.
        pending_weight (float): Weight of a pending assignment relative
            to a completed one. Defaults to 0.95.
        max_attempts (int): Maximum number of attempts per operation if
            the store is busy. Defaults to 3.
        retry_backoff (float): Seconds to wait between two attempts.
            Defaults to 0.1.
        lock (condbalance.concurrency.BalanceLock): Lock serializing the
            operations. Defaults to a new process-wide lock.
        log (condbalance.log.BalanceLoggingInterface): Logging interface.
        sleep: Function used for waiting between attempts.

    Examples:
        >>> from condbalance.sqlstore import SQLBalanceStore
        >>> store = SQLBalanceStore("sqlite://", nconditions=3)
        >>> balancer = Balancer(store)
        >>> balancer.assign("p1", "s1")
        1
        >>> balancer.assign("p2", "s1")
        2
        >>> balancer.confirm("p1", "s1")
        1
    """

    def __init__(
        self,
        store: BalanceStore,
        pending_weight: float = PENDING_WEIGHT,
        max_attempts: int = MAX_ATTEMPTS,
        retry_backoff: float = RETRY_BACKOFF,
        lock: BalanceLock = None,
        log: BalanceLoggingInterface = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if pending_weight < 0:
            raise ValueError("pending_weight must not be negative.")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")

        self.store = store
        self.pending_weight = pending_weight
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.lock = lock if lock is not None else BalanceLock()
        self.log = log if log is not None else BalanceLoggingInterface()
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, secrets=None, store: BalanceStore = None, **kwargs) -> "Balancer":
        """
        Creates a balancer from configuration.

        Args:
            config (condbalance.config.BalancerConfig): Configuration.
            secrets (condbalance.config.BalancerSecrets): Credentials
                for the store.
            store (condbalance.store.BalanceStore): Use this store
                instead of creating one from the configuration.
            **kwargs: Passed on to :class:`Balancer`.
        """
        nconditions = config.getint("balancer", "nconditions")
        if store is None:
            store = create_store(config, secrets)
        elif store.nconditions != nconditions:
            raise ValueError(
                f"Store has {store.nconditions} conditions, configuration has {nconditions}."
            )

        lock = BalanceLock(
            scope=config.get("balancer", "lock_scope"),
            timeout=config.getfloat("balancer", "lock_timeout"),
        )

        kwargs.setdefault("lock", lock)
        return cls(
            store,
            pending_weight=config.getfloat("balancer", "pending_weight"),
            max_attempts=config.getint("balancer", "max_attempts"),
            retry_backoff=config.getfloat("balancer", "retry_backoff"),
            **kwargs,
        )

    @property
    def nconditions(self) -> int:
        return self.store.nconditions

    # -- operations --------------------------------------------------------

    def assign(self, participant_id, session_id) -> int:
        """
        Assigns a participant to a condition.

        If the participant already has an assignment in the session,
        its condition is returned unchanged.

        Args:
            participant_id: Identifier of the participant.
            session_id: Identifier of the session.

        Returns:
            int: The assigned condition id, in ``[1, nconditions]``.

        Raises:
            AssignmentFailed: If the assignment could not be made. Nothing
                was written in this case.
        """
        participant_id, session_id = str(participant_id), str(session_id)
        log = self.log.bind(participant_id=participant_id, session_id=session_id)

        def attempt(tx: StoreTransaction) -> Tuple[int, bool]:
            return self._assign(tx, participant_id, session_id, log)

        condition_id, created = self._run(attempt, AssignmentFailed, participant_id, session_id, log)

        if created:
            log.info(f"Assigned to condition {condition_id} as pending.")
        else:
            log.info(f"Already assigned to condition {condition_id}. Returned existing assignment.")
        return condition_id

    def confirm(self, participant_id, session_id) -> int:
        """
        Records that a participant completed their condition.

        Args:
            participant_id: Identifier of the participant.
            session_id: Identifier of the session.

        Returns:
            int: The condition id the participant completed.

        Raises:
            NotFound: If the participant has no assignment in the session.
            AlreadyCompleted: If the assignment was already confirmed.
            ConfirmationFailed: If the confirmation failed for any other
                reason. Nothing was written in this case.
        """
        participant_id, session_id = str(participant_id), str(session_id)
        log = self.log.bind(participant_id=participant_id, session_id=session_id)

        def attempt(tx: StoreTransaction) -> int:
            return self._confirm(tx, participant_id, session_id)

        condition_id = self._run(attempt, ConfirmationFailed, participant_id, session_id, log)
        log.info(f"Completed condition {condition_id}. Counters updated.")
        return condition_id

    def counters(self, session_id) -> List[ConditionCounter]:
        """
        Returns the counters of a session, ordered by condition id.
        Returns an empty list for sessions without assignments.
        """
        session_id = str(session_id)
        return self._read(lambda tx: tx.list_counters(session_id), session_id)

    def assignments(self, session_id=None) -> List[Assignment]:
        """
        Returns all assignments of a session, or of all sessions if
        *session_id* is *None*.
        """
        session_id = str(session_id) if session_id is not None else None
        return self._read(lambda tx: list(tx.list_assignments(session_id)), session_id)

    def sessions(self) -> List[str]:
        """Returns the ids of all sessions with at least one assignment."""
        return self._read(lambda tx: tx.list_sessions())

    # -- transactional attempts -------------------------------------------

    def _assign(self, tx: StoreTransaction, participant_id: str, session_id: str, log) -> Tuple[int, bool]:
        existing = tx.get_assignment(participant_id, session_id)
        if existing is not None:
            return existing.condition_id, False

        if tx.ensure_session_initialized(session_id):
            log.info(f"Initialized session with {self.nconditions} conditions.")

        counters = tx.list_counters(session_id)
        if len(counters) != self.nconditions:
            raise ConstraintViolation(
                f"Session {session_id} has {len(counters)} counters, expected {self.nconditions}."
            )

        chosen = select_condition(counters, self.pending_weight)
        log.debug(
            "Condition weights: "
            + ", ".join(f"{c.condition_id}={load_weight(c, self.pending_weight):g}" for c in counters)
        )

        tx.insert_assignment(participant_id, session_id, chosen.condition_id)
        tx.increment_pending(session_id, chosen.condition_id, 1)
        return chosen.condition_id, True

    def _confirm(self, tx: StoreTransaction, participant_id: str, session_id: str) -> int:
        assignment = tx.get_assignment(participant_id, session_id)
        if assignment is None:
            raise NotFound(participant_id, session_id)
        if assignment.completed:
            raise AlreadyCompleted(participant_id, session_id, condition_id=assignment.condition_id)

        tx.update_assignment_status(participant_id, session_id, COMPLETED)
        tx.increment_pending(session_id, assignment.condition_id, -1)
        tx.increment_completed(session_id, assignment.condition_id, 1)
        return assignment.condition_id

    # -- lock, transaction and retry --------------------------------------

    def _run(self, attempt, failure, participant_id: str, session_id: str, log):
        try:
            with self.lock.hold(session_id):
                log.debug("Acquired balancing lock.")
                run = retry_on_busy(
                    lambda: self._transact(attempt, log),
                    attempts=self.max_attempts,
                    backoff=self.retry_backoff,
                    log=log,
                    sleep=self._sleep,
                )
                return run()

        except OperationFailed as e:
            log.warning(str(e))
            raise

        except Exception as e:
            log.error(f"{failure.__name__}: {type(e).__name__}: {e}", exc_info=not isinstance(e, StoreError))
            raise failure(participant_id, session_id, cause=e) from e

    def _transact(self, attempt, log):
        tx = self.store.begin()
        try:
            result = attempt(tx)
            tx.commit()
        except BaseException:
            self._rollback(tx, log)
            raise
        return result

    def _read(self, read, session_id: str = None):
        def snapshot():
            tx = self.store.begin()
            try:
                return read(tx)
            finally:
                self._rollback(tx, self.log)

        with self.lock.hold(session_id):
            run = retry_on_busy(snapshot, self.max_attempts, self.retry_backoff, self.log, self._sleep)
            return run()

    @staticmethod
    def _rollback(tx: StoreTransaction, log):
        try:
            tx.rollback()
        except StoreError as e:
            log.error(f"Rollback failed: {e}")
