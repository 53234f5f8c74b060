"""
Account Locking Module

Per-account mutual exclusion for the transfer engine. Locks for a set of
accounts are always taken in ascending account-id order, so two transfers
over the same pair in opposite directions cannot deadlock. Every wait is
bounded by a deadline shared across the whole set.
"""

import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Tuple


class LockTimeoutError(Exception):
    """Account locks were not acquired before the deadline"""


class AccountLockManager:
    """
    Lazily created per-account locks, reference counted so locks of idle
    accounts are dropped
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}
        self._registry_lock = threading.Lock()

    def _checkout(self, account_id: str) -> threading.Lock:
        with self._registry_lock:
            lock, users = self._locks.get(account_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[account_id] = (lock, users + 1)
            return lock

    def _checkin(self, account_id: str) -> None:
        with self._registry_lock:
            lock, users = self._locks[account_id]
            if users <= 1:
                del self._locks[account_id]
            else:
                self._locks[account_id] = (lock, users - 1)

    @contextmanager
    def hold(self, account_ids: Iterable[str], timeout: Optional[float] = None) -> Iterator[List[str]]:
        """
        Hold the locks of all given accounts

        Args:
            account_ids: Accounts to lock (duplicates are ignored)
            timeout: Overall wait in seconds, defaults to the manager's timeout

        Yields:
            The account ids in the order they were locked

        Raises:
            LockTimeoutError: If any lock is not acquired in time
        """
        ordered = sorted(set(account_ids))
        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
        held: List[Tuple[str, threading.Lock]] = []

        try:
            for account_id in ordered:
                lock = self._checkout(account_id)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    self._checkin(account_id)
                    raise LockTimeoutError(f"Timed out waiting for account {account_id}")
                held.append((account_id, lock))
            yield ordered
        finally:
            for account_id, lock in reversed(held):
                lock.release()
                self._checkin(account_id)

    def active_count(self) -> int:
        """Number of accounts with a lock currently checked out"""
        with self._registry_lock:
            return len(self._locks)
