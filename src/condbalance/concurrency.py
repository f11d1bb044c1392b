"""
Serialization and retry for balancer operations.

Two mechanisms protect the balance store:

* :class:`BalanceLock` makes sure that only one balancing decision is
  in flight at a time, so that no two operations compute their decision
  from the same stale counter snapshot.
* :func:`retry_on_busy` reruns a whole transactional attempt, if the
  store reports contention with a writer outside of this process.
"""

import threading
import time
from contextlib import contextmanager
from typing import Callable, TypeVar

from .exceptions import LockTimeout, RetriesExhausted, StoreBusy

T = TypeVar("T")

GLOBAL = "global"
SESSION = "session"


class BalanceLock:
    """
    Mutual exclusion for the critical section of balancer operations.

    Args:
        scope (str): 'global' (default) for a single lock that
            serializes all operations across all sessions, or 'session'
            for one lock per session. Both guarantee that operations
            on the same session never overlap.
        timeout (float): Maximum number of seconds to wait for the lock.
            A negative value waits indefinitely. Defaults to 30.

    Examples:
        >>> lock = BalanceLock()
        >>> with lock.hold("session1"):
        ...     pass # critical section
    """

    def __init__(self, scope: str = GLOBAL, timeout: float = 30):
        if scope not in (GLOBAL, SESSION):
            raise ValueError(f"Lock scope must be 'global' or 'session', not {scope!r}.")
        self.scope = scope
        self.timeout = timeout if timeout >= 0 else -1
        self._global = threading.Lock()
        # session id -> [lock, number of threads holding or waiting for it]
        self._session_locks = {}
        self._registry = threading.Lock()

    def _checkout(self, session_id: str) -> threading.Lock:
        if self.scope == GLOBAL:
            return self._global

        with self._registry:
            entry = self._session_locks.setdefault(session_id, [threading.Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _checkin(self, session_id: str):
        if self.scope == GLOBAL:
            return

        with self._registry:
            entry = self._session_locks[session_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._session_locks[session_id]

    @contextmanager
    def hold(self, session_id: str = None):
        """
        Context manager that holds the lock for *session_id* for the
        duration of the block. The lock is released when the block is
        left, no matter whether it raised an exception.

        With scope 'session', a session's lock only exists while some
        thread holds or waits for it.

        Raises:
            LockTimeout: If the lock could not be acquired in time.
        """
        lock = self._checkout(session_id)
        try:
            if not lock.acquire(timeout=self.timeout):
                raise LockTimeout(
                    f"Could not acquire the balancing lock for session {session_id} "
                    f"within {self.timeout} seconds."
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(session_id)


def retry_on_busy(
    func: Callable[[], T],
    attempts: int = 3,
    backoff: float = 0.1,
    log=None,
    sleep: Callable[[float], None] = time.sleep,
) -> Callable[[], T]:
    """
    Wraps *func* in a bounded retry.

    The returned callable runs *func*. If it raises
    :class:`~condbalance.exceptions.StoreBusy`, the callable waits for
    *backoff* seconds and runs *func* again, up to *attempts* runs in
    total. Any other exception propagates immediately.

    Args:
        func: A callable without arguments that performs one complete
            transactional attempt.
        attempts (int): Maximum number of runs. Must be at least 1.
        backoff (float): Seconds to wait between two runs.
        log: Logger or :class:`~condbalance.log.BalanceLoggingInterface`
            used to report retries.
        sleep: Function used for waiting.

    Raises:
        RetriesExhausted: If the store was busy on every attempt.
    """
    if attempts < 1:
        raise ValueError("At least one attempt is needed.")

    def wrapped() -> T:
        for attempt in range(1, attempts + 1):
            try:
                return func()
            except StoreBusy as e:
                if attempt == attempts:
                    raise RetriesExhausted(attempts, e) from e
                if log is not None:
                    log.warning(
                        f"Store busy on attempt {attempt} of {attempts}, retrying in {backoff}s: {e}"
                    )
                sleep(backoff)

    return wrapped
