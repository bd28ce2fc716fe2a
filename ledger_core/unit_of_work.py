"""
Unit of Work Module

A scoped atomic section over the storage backend. Everything written inside
the block commits together or not at all; callbacks registered with
``on_commit`` (events, audit entries) run only after a successful commit.
"""

import threading
from typing import Callable, List, Optional

from .errors import OperationCancelledError
from .logging_config import get_logger
from .storage import StorageInterface


class CancellationToken:
    """Set by the caller when the client goes away"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Operation cancelled before commit")


class UnitOfWork:
    """
    Context manager around ``storage.begin_transaction/commit/rollback``.

    Usage:
        with UnitOfWork(storage) as uow:
            ledger.debit(...)
            ledger.credit(...)
            uow.on_commit(lambda: dispatcher.publish(event))
    """

    _scope = threading.local()

    def __init__(self, storage: StorageInterface, cancel_token: Optional[CancellationToken] = None):
        self.storage = storage
        self.cancel_token = cancel_token
        self._callbacks: List[Callable[[], None]] = []
        self._active = False
        self._parent: Optional['UnitOfWork'] = None
        self.logger = get_logger("ledger.uow")

    def __enter__(self) -> 'UnitOfWork':
        if self.cancel_token:
            self.cancel_token.raise_if_cancelled()
        self.storage.begin_transaction()
        self._active = True
        self._parent = getattr(UnitOfWork._scope, 'current', None)
        UnitOfWork._scope.current = self
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._active = False
        UnitOfWork._scope.current = self._parent
        if exc_type is not None:
            self.storage.rollback()
            self._callbacks.clear()
            return False
        self.storage.commit()
        callbacks, self._callbacks = self._callbacks, []
        if self._parent is not None and self._parent.storage is self.storage:
            # Inner section: defer to the outermost commit
            self._parent._callbacks.extend(callbacks)
            return False
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                # The commit stands; hook failures are only logged
                self.logger.error(f"Post-commit hook failed: {e}")
        return False

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Register a callback to run after the outermost commit"""
        if not self._active:
            callback()
            return
        self._callbacks.append(callback)
