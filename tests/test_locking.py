import threading

import pytest
from sqlalchemy.exc import OperationalError

from errors import ConcurrencyConflict, InvalidInput, Unavailable
from locking import AccountLocks, run_with_retry


def test_retry_backs_off_exponentially_then_succeeds() -> None:
    delays = []
    attempts = {"count": 0}

    def operation() -> str:
        attempts["count"] += 1
        if attempts["count"] < 4:
            raise ConcurrencyConflict("busy")
        return "done"

    result = run_with_retry(
        operation, attempts=5, base_delay=0.1, label="test", sleep=delays.append
    )

    assert result == "done"
    assert delays == pytest.approx([0.1, 0.2, 0.4])


def test_retry_treats_database_lock_errors_as_transient() -> None:
    calls = {"count": 0}

    def operation() -> int:
        calls["count"] += 1
        if calls["count"] == 1:
            raise OperationalError("UPDATE", {}, Exception("database is locked"))
        return 7

    assert run_with_retry(
        operation, attempts=3, base_delay=0, label="test", sleep=lambda _: None
    ) == 7


def test_retry_gives_up_with_unavailable() -> None:
    delays = []

    def operation() -> None:
        raise ConcurrencyConflict("busy")

    with pytest.raises(Unavailable) as excinfo:
        run_with_retry(
            operation, attempts=3, base_delay=1, label="test", sleep=delays.append
        )

    assert delays == [1, 2]
    assert isinstance(excinfo.value.__cause__, ConcurrencyConflict)


def test_retry_does_not_swallow_input_errors() -> None:
    calls = {"count": 0}

    def operation() -> None:
        calls["count"] += 1
        raise InvalidInput("bad")

    with pytest.raises(InvalidInput):
        run_with_retry(operation, attempts=5, base_delay=0, label="test")
    assert calls["count"] == 1


def test_account_lock_times_out_as_conflict() -> None:
    locks = AccountLocks(timeout=0.05)
    holding = threading.Event()
    release = threading.Event()

    def holder() -> None:
        with locks.hold([2]):
            holding.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        assert holding.wait(5)
        with pytest.raises(ConcurrencyConflict):
            with locks.hold([1, 2]):
                pass
        # Account 1 was released after the failed acquisition.
        with locks.hold([1]):
            pass
    finally:
        release.set()
        thread.join()

    with locks.hold([2, 1, 2]):
        pass


def test_account_locks_are_dropped_once_released() -> None:
    locks = AccountLocks(timeout=0.05)

    with locks.hold(range(1, 101)):
        assert len(locks) == 100
    assert len(locks) == 0

    holding = threading.Event()
    release = threading.Event()

    def holder() -> None:
        with locks.hold([5]):
            holding.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        assert holding.wait(5)
        with pytest.raises(ConcurrencyConflict):
            with locks.hold([3, 4, 5]):
                pass
        assert len(locks) == 1
    finally:
        release.set()
        thread.join()
    assert len(locks) == 0
