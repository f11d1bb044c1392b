import logging
import threading

import pytest

from condbalance.concurrency import BalanceLock, retry_on_busy
from condbalance.exceptions import LockTimeout, RetriesExhausted, StoreBusy, StoreError


class Busy:
    """Callable that raises StoreBusy for its first *failures* calls."""

    def __init__(self, failures: int, exc=StoreBusy):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"call {self.calls}")
        return "done"


class TestBalanceLock:
    def test_invalid_scope(self):
        with pytest.raises(ValueError):
            BalanceLock(scope="table")

    def test_global_lock_spans_sessions(self):
        lock = BalanceLock(timeout=0.01)

        with lock.hold("s1"):
            with pytest.raises(LockTimeout):
                with lock.hold("s2"):
                    pass

    def test_session_lock_is_per_session(self):
        lock = BalanceLock(scope="session", timeout=0.01)

        with lock.hold("s1"):
            with lock.hold("s2"):
                pass

            with pytest.raises(LockTimeout):
                with lock.hold("s1"):
                    pass

    def test_session_locks_are_dropped(self):
        lock = BalanceLock(scope="session", timeout=0.01)

        with lock.hold("s1"):
            assert list(lock._session_locks) == ["s1"]

            with pytest.raises(LockTimeout):
                with lock.hold("s1"):
                    pass

            assert lock._session_locks["s1"][1] == 1

        assert lock._session_locks == {}

        with pytest.raises(KeyError):
            with lock.hold("s2"):
                raise KeyError("boom")

        assert lock._session_locks == {}

    def test_many_sessions_leave_no_locks(self):
        lock = BalanceLock(scope="session", timeout=5)

        def work(i):
            with lock.hold(f"s{i % 4}"):
                pass

        threads = [threading.Thread(target=work, args=(i,)) for i in range(40)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert lock._session_locks == {}

    def test_released_after_exception(self):
        lock = BalanceLock(timeout=0.01)

        with pytest.raises(KeyError):
            with lock.hold("s1"):
                raise KeyError("boom")

        with lock.hold("s1"):
            pass

    def test_negative_timeout_waits(self):
        lock = BalanceLock(timeout=-5)
        assert lock.timeout == -1

        with lock.hold():
            pass

    def test_blocks_other_threads(self):
        lock = BalanceLock(timeout=5)
        entered = threading.Event()
        release = threading.Event()
        order = []

        def holder():
            with lock.hold("s1"):
                entered.set()
                release.wait(5)
                order.append("holder")

        t = threading.Thread(target=holder)
        t.start()
        entered.wait(5)

        def waiter():
            with lock.hold("s1"):
                order.append("waiter")

        w = threading.Thread(target=waiter)
        w.start()
        release.set()
        t.join()
        w.join()

        assert order == ["holder", "waiter"]


class TestRetryOnBusy:
    def test_success_on_first_attempt(self):
        func = Busy(0)
        sleeps = []

        assert retry_on_busy(func, sleep=sleeps.append)() == "done"
        assert func.calls == 1
        assert sleeps == []

    def test_success_after_retries(self):
        func = Busy(2)
        sleeps = []

        assert retry_on_busy(func, attempts=3, backoff=0.5, sleep=sleeps.append)() == "done"
        assert func.calls == 3
        assert sleeps == [0.5, 0.5]

    def test_exhausted(self):
        func = Busy(3)
        sleeps = []

        with pytest.raises(RetriesExhausted) as excinfo:
            retry_on_busy(func, attempts=3, sleep=sleeps.append)()

        assert func.calls == 3
        assert len(sleeps) == 2
        assert excinfo.value.attempts == 3
        assert isinstance(excinfo.value.last_error, StoreBusy)
        assert "call 3" in str(excinfo.value)

    def test_other_errors_are_not_retried(self):
        func = Busy(1, exc=StoreError)

        with pytest.raises(StoreError):
            retry_on_busy(func, sleep=lambda s: None)()

        assert func.calls == 1

    def test_single_attempt(self):
        func = Busy(1)

        with pytest.raises(RetriesExhausted):
            retry_on_busy(func, attempts=1, sleep=lambda s: None)()

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            retry_on_busy(Busy(0), attempts=0)

    def test_retries_are_logged(self, caplog):
        log = logging.getLogger("condbalance.test")

        with caplog.at_level(logging.WARNING, logger="condbalance.test"):
            retry_on_busy(Busy(1), log=log, sleep=lambda s: None)()

        assert "Store busy on attempt 1 of 3" in caplog.text
