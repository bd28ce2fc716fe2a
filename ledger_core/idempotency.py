"""
Idempotency Guard Module

Deduplicates retried operations. A key is either supplied by the caller or
derived from (caller_id, request_id). The first completed attempt stores its
result payload; later attempts with the same key get that payload back
without touching any balance. Lookups happen inside the locked section so a
retry cannot race the original request.
"""

import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import ValidationError
from .storage import StorageInterface


def derive_key(caller_id: str, request_id: str) -> str:
    """Stable key for a caller's request"""
    return hashlib.sha256(f"{caller_id}:{request_id}".encode("utf-8")).hexdigest()[:32]


def fingerprint(**fields: Any) -> str:
    """Hash of the request parameters that must match on replay"""
    data = "|".join(f"{k}={fields[k]}" for k in sorted(fields))
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


class IdempotencyGuard:
    """Stores and replays operation results by (operation, key)"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "idempotency_records"

    @staticmethod
    def _record_id(operation: str, key: str) -> str:
        return f"{operation}:{key}"

    def lookup(self, operation: str, key: str, request_fingerprint: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Return the stored result for a prior attempt, if any

        Raises:
            ValidationError: the key was already used for a different request
        """
        record = self.storage.load(self.table_name, self._record_id(operation, key))
        if record is None:
            return None
        if request_fingerprint and record.get('fingerprint') and record['fingerprint'] != request_fingerprint:
            raise ValidationError(
                "Idempotency key reused with different parameters",
                {"operation": operation, "key": key}
            )
        return record['result']

    def record(self, operation: str, key: str, result: Dict[str, Any],
               request_fingerprint: Optional[str] = None) -> None:
        """Store a result; call inside the same unit of work as the mutation"""
        now = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.table_name, self._record_id(operation, key), {
            'id': self._record_id(operation, key),
            'operation': operation,
            'key': key,
            'fingerprint': request_fingerprint,
            'result': result,
            'created_at': now,
            'updated_at': now
        })
