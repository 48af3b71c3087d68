"""
Callback reconciliation.

A callback is matched to its transaction strictly through the correlation
key the gateway issued at initiation. Every state change goes through a
version-checked compare-and-set, so concurrent or repeated deliveries of the
same callback race safely: exactly one of them moves the transaction out of
Pending, and only that one credits the referral code.
"""

import logging
import time
from enum import Enum
from typing import Callable, Optional

from .correlation import CorrelationIndex
from .errors import TransactionNotFoundError
from .gateway import Callback, CallbackOutcome
from .models import Transaction, TransactionStatus
from .referrals import ReferralAccountant
from .retry import RetryConfig, retry_call
from .storage import TransactionStore

logger = logging.getLogger(__name__)


class ReconcileResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNRESOLVED = "unresolved"


class CallbackReconciler:
    def __init__(
        self,
        store: TransactionStore,
        index: CorrelationIndex,
        accountant: ReferralAccountant,
        retry_config: Optional[RetryConfig] = None,
        unresolved_attempts: int = 5,
        unresolved_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.index = index
        self.accountant = accountant
        self.retry_config = retry_config or RetryConfig()
        self.unresolved_attempts = unresolved_attempts
        self.unresolved_delay = unresolved_delay
        self.sleep = sleep

    def handle(self, callback: Callback) -> ReconcileResult:
        transaction_id = self._resolve(callback.correlation_key)
        if transaction_id is None:
            logger.warning(
                f"Discarding callback for unknown correlation key {callback.correlation_key} "
                f"after {self.unresolved_attempts} attempts"
            )
            return ReconcileResult.UNRESOLVED
        return self.apply(transaction_id, callback)

    def apply(self, transaction_id: str, callback: Callback) -> ReconcileResult:
        """Apply a gateway outcome to a Pending transaction, at most once."""
        while True:
            current = retry_call(self.store.get, self.retry_config, transaction_id)
            if current is None:
                raise TransactionNotFoundError(f"Transaction {transaction_id} not found")

            if current.is_terminal():
                logger.info(
                    f"Duplicate callback for transaction {transaction_id} "
                    f"({current.status.value}), ignoring"
                )
                return ReconcileResult.DUPLICATE

            if current.status != TransactionStatus.PENDING:
                logger.warning(f"Callback for transaction {transaction_id} arrived while still {current.status.value}")
                return ReconcileResult.UNRESOLVED

            if callback.outcome == CallbackOutcome.SUCCESS:
                updated = current.mark_succeeded(callback.receipt, callback.payer_phone)
            else:
                updated = current.mark_failed(callback.reason or "Payment failed")

            if retry_call(self.store.compare_and_set, self.retry_config, current, updated):
                break
            # lost the race; reload and let the terminal check decide

        logger.info(f"Transaction {transaction_id} is now {updated.status.value}")
        if updated.needs_referral_credit():
            self._credit_referral(updated)
        return ReconcileResult.APPLIED

    def settle_outstanding_referrals(self) -> int:
        """Finish referral credits for succeeded transactions not yet marked as credited."""
        settled = 0
        for transaction in retry_call(self.store.list, self.retry_config):
            if transaction.needs_referral_credit():
                self._credit_referral(transaction)
                settled += 1
        if settled:
            logger.info(f"Settled {settled} outstanding referral credits")
        return settled

    def _credit_referral(self, transaction: Transaction) -> None:
        self.accountant.credit(transaction.referral_code, transaction.id)

        current = transaction
        while current is not None and current.needs_referral_credit():
            updated = current.mark_referral_applied(self.accountant.reward_amount)
            if retry_call(self.store.compare_and_set, self.retry_config, current, updated):
                return
            current = retry_call(self.store.get, self.retry_config, transaction.id)

    def _resolve(self, correlation_key: str) -> Optional[str]:
        for attempt in range(1, self.unresolved_attempts + 1):
            transaction_id = self.index.resolve(correlation_key)
            if transaction_id is not None:
                return transaction_id
            if attempt < self.unresolved_attempts:
                logger.debug(
                    f"Correlation key {correlation_key} unresolved "
                    f"(attempt {attempt}/{self.unresolved_attempts}), retrying in {self.unresolved_delay}s"
                )
                self.sleep(self.unresolved_delay)
        return None
