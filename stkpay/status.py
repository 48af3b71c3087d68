import logging
from datetime import datetime
from typing import Callable, Optional

from .errors import TransactionNotFoundError
from .gateway import GatewayClient, GatewayTransportError
from .models import Transaction, TransactionStatus, TransactionView, utcnow
from .reconciler import CallbackReconciler
from .retry import RetryConfig, retry_call
from .storage import TransactionStore

logger = logging.getLogger(__name__)


class StatusQuery:
    def __init__(
        self,
        store: TransactionStore,
        reconciler: CallbackReconciler,
        gateway: Optional[GatewayClient] = None,
        stale_after_seconds: float = 60.0,
        retry_config: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.reconciler = reconciler
        self.gateway = gateway
        self.stale_after_seconds = stale_after_seconds
        self.retry_config = retry_config or RetryConfig()
        self.clock = clock

    def status(self, transaction_id: str) -> TransactionView:
        transaction = self._load(transaction_id)
        if self._is_stale(transaction):
            transaction = self._poll(transaction)
        return TransactionView.from_transaction(transaction)

    def _load(self, transaction_id: str) -> Transaction:
        transaction = retry_call(self.store.get, self.retry_config, transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def _is_stale(self, transaction: Transaction) -> bool:
        if self.gateway is None or transaction.status != TransactionStatus.PENDING:
            return False
        age = (self.clock() - transaction.created_at).total_seconds()
        return age > self.stale_after_seconds

    def _poll(self, transaction: Transaction) -> Transaction:
        try:
            gateway_status = self.gateway.check_status(transaction.correlation_key)
        except GatewayTransportError as e:
            logger.warning(f"Status poll for transaction {transaction.id} failed: {e}")
            return transaction

        callback = gateway_status.to_callback(transaction.correlation_key)
        if callback is None:
            return transaction

        logger.info(f"Status poll resolved transaction {transaction.id} as {gateway_status.outcome.value}")
        self.reconciler.apply(transaction.id, callback)
        return self._load(transaction.id)
