"""
Account Lock Module

Per-key exclusive sections. Multi-account operations take every key they
touch in one call, which sorts the keys so concurrent opposite-direction
transfers cannot deadlock. Waits are bounded and surface as LockTimeoutError.
A key's lock is dropped from the registry once no thread holds or waits on it.
"""

import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterable, List, Tuple

from .errors import LockTimeoutError
from .logging_config import get_logger


class AccountLockManager:
    """Hands out reentrant locks keyed by account (or loan/investment) id"""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        # key -> (lock, number of threads holding or waiting)
        self._locks: Dict[str, Tuple[threading.RLock, int]] = {}
        self._registry_lock = threading.Lock()
        self.logger = get_logger("ledger.locks")

    def _checkout(self, key: str) -> threading.RLock:
        with self._registry_lock:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.RLock()
            self._locks[key] = (lock, users + 1)
            return lock

    def _checkin(self, key: str) -> None:
        with self._registry_lock:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    @property
    def lock_count(self) -> int:
        """Keys currently held or waited on"""
        with self._registry_lock:
            return len(self._locks)

    @staticmethod
    def ordered(keys: Iterable[str]) -> List[str]:
        """Canonical acquisition order: unique keys, ascending"""
        return sorted(set(k for k in keys if k))

    @contextmanager
    def acquire(self, *keys: str, timeout: float = None):
        """
        Hold the exclusive sections for all keys.

        Raises:
            LockTimeoutError: if any section cannot be taken within the timeout
        """
        wait = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + wait
        held: List[Tuple[str, threading.RLock]] = []
        try:
            for key in self.ordered(keys):
                lock = self._checkout(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    self._checkin(key)
                    self.logger.warning(f"Lock wait on {key} exceeded {wait}s")
                    raise LockTimeoutError(
                        f"Timed out waiting for {key}", {"key": key, "timeout": wait}
                    )
                held.append((key, lock))
            yield
        finally:
            for key, lock in reversed(held):
                lock.release()
                self._checkin(key)


def loan_key(loan_id: str) -> str:
    return f"loan:{loan_id}"


def investment_key(investment_id: str) -> str:
    return f"investment:{investment_id}"
