from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, Optional, TypeVar

from sqlalchemy.exc import OperationalError

from errors import ConcurrencyConflict, Unavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (ConcurrencyConflict, OperationalError)


class AccountLocks:
    """In-process mutual exclusion keyed by account id.

    Locks for several accounts are always taken in ascending id order so two
    bulk operations over overlapping account sets cannot deadlock each other.
    Acquisition is bounded by ``timeout``; running out of time is reported as
    a ``ConcurrencyConflict`` and goes through the normal retry path.

    Entries are reference counted and dropped once no caller holds or waits
    on them, so the map only ever contains accounts currently in use.
    """

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: dict[int, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, account_id: int) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(account_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[account_id] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, account_id: int) -> None:
        with self._guard:
            entry = self._locks[account_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[account_id]

    @contextmanager
    def hold(self, account_ids: Iterable[int]) -> Iterator[None]:
        acquired: list[tuple[int, threading.Lock]] = []
        try:
            for account_id in sorted(set(account_ids)):
                lock = self._checkout(account_id)
                if not lock.acquire(timeout=self.timeout):
                    self._checkin(account_id)
                    raise ConcurrencyConflict(
                        f"Timed out waiting for lock on account {account_id}"
                    )
                acquired.append((account_id, lock))
            yield
        finally:
            for account_id, lock in reversed(acquired):
                lock.release()
                self._checkin(account_id)


def run_with_retry(
    operation: Callable[[], T],
    *,
    attempts: int,
    base_delay: float,
    label: str,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    sleep = sleep or time.sleep
    last_exc: Optional[Exception] = None
    for attempt in range(max(1, attempts)):
        try:
            return operation()
        except RETRYABLE_ERRORS as exc:
            last_exc = exc
            if attempt < attempts - 1:
                delay = base_delay * (2**attempt)
                logger.warning(
                    f"{label}: conflict on attempt {attempt + 1}, "
                    f"retrying in {delay:.3f}s: {exc}"
                )
                sleep(delay)
    logger.error(f"{label}: giving up after {attempts} attempts: {last_exc}")
    raise Unavailable(f"{label} failed after {attempts} attempts") from last_exc
