import logging
import threading
from typing import Iterable, Optional

from .errors import CorrelationConflictError
from .models import Transaction, TransactionStatus

logger = logging.getLogger(__name__)


class CorrelationIndex:
    """Maps gateway correlation keys to internal transaction ids."""

    def __init__(self):
        self._keys: dict[str, str] = {}
        self._lock = threading.Lock()

    def register(self, correlation_key: str, transaction_id: str) -> None:
        with self._lock:
            existing = self._keys.get(correlation_key)
            if existing is not None and existing != transaction_id:
                raise CorrelationConflictError(
                    f"Correlation key {correlation_key} already belongs to transaction {existing}"
                )
            self._keys[correlation_key] = transaction_id

    def resolve(self, correlation_key: str) -> Optional[str]:
        with self._lock:
            return self._keys.get(correlation_key)

    def rebuild(self, transactions: Iterable[Transaction]) -> int:
        count = 0
        for transaction in transactions:
            if transaction.correlation_key and transaction.status != TransactionStatus.CREATED:
                self.register(transaction.correlation_key, transaction.id)
                count += 1
        logger.info(f"Correlation index rebuilt with {count} keys")
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)
