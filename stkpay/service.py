import logging
import time
from decimal import Decimal
from typing import Callable, Optional

from .correlation import CorrelationIndex
from .daraja import DarajaClient, parse_stk_callback
from .gateway import GatewayClient
from .initiator import PaymentInitiator
from .models import (
    DashboardSummary,
    InitiationResult,
    PaymentRequest,
    PayoutRequest,
    ReferralAccount,
    ReferralRegistration,
    TransactionListResponse,
    TransactionStatus,
    TransactionView,
)
from .reconciler import CallbackReconciler, ReconcileResult
from .referrals import ReferralAccountant
from .retry import RetryConfig, retry_call
from .settings import Settings
from .status import StatusQuery
from .storage import ReferralLedger, TransactionStore, build_stores

logger = logging.getLogger(__name__)


class PaymentService:
    def __init__(
        self,
        store: TransactionStore,
        ledger: ReferralLedger,
        gateway: GatewayClient,
        config: Settings,
        index: Optional[CorrelationIndex] = None,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.ledger = ledger
        self.gateway = gateway
        self.config = config
        self.retry_config = retry_config or RetryConfig(
            max_attempts=config.storage_retry_attempts,
            base_delay=config.storage_retry_base_delay,
        )
        self.index = index or CorrelationIndex()
        self.index.rebuild(retry_call(store.list, self.retry_config))

        self.accountant = ReferralAccountant(
            ledger,
            reward_amount=config.referral_reward,
            retry_config=self.retry_config,
            code_length=config.referral_code_length,
            public_base_url=config.public_base_url,
            payout_whatsapp_number=config.payout_whatsapp_number,
        )
        self.initiator = PaymentInitiator(
            store,
            self.index,
            gateway,
            callback_url=config.callback_url,
            minimum_amount=config.minimum_amount,
            country_code=config.country_code,
            phone_pattern=config.phone_pattern,
            reference_prefix=config.account_reference_prefix,
            retry_config=self.retry_config,
        )
        self.reconciler = CallbackReconciler(
            store,
            self.index,
            self.accountant,
            retry_config=self.retry_config,
            unresolved_attempts=config.unresolved_callback_attempts,
            unresolved_delay=config.unresolved_callback_delay,
            sleep=sleep,
        )
        self.status_query = StatusQuery(
            store,
            self.reconciler,
            gateway=gateway,
            stale_after_seconds=config.stale_after_seconds,
            retry_config=self.retry_config,
        )

    def initiate(self, request: PaymentRequest) -> InitiationResult:
        return self.initiator.initiate(request)

    def handle_callback(self, payload: dict) -> ReconcileResult:
        return self.reconciler.handle(parse_stk_callback(payload))

    def get_transaction(self, transaction_id: str) -> TransactionView:
        return self.status_query.status(transaction_id)

    def list_transactions(self, status: Optional[TransactionStatus] = None,
                          limit: int = 50, offset: int = 0) -> TransactionListResponse:
        transactions = retry_call(self.store.list, self.retry_config)
        if status:
            transactions = [t for t in transactions if t.status == status]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        paginated = transactions[offset:offset + limit]

        return TransactionListResponse(
            entries=[TransactionView.from_transaction(t) for t in paginated],
            total_count=len(transactions),
        )

    def register_referral(self, code: Optional[str] = None) -> ReferralRegistration:
        return self.accountant.register(code)

    def get_referral(self, code: str) -> ReferralAccount:
        return self.accountant.get_account(code)

    def request_payout(self, code: str) -> PayoutRequest:
        return self.accountant.request_payout(code)

    def settle_outstanding_referrals(self) -> int:
        return self.reconciler.settle_outstanding_referrals()

    def dashboard(self) -> DashboardSummary:
        transactions = retry_call(self.store.list, self.retry_config)
        succeeded = [t for t in transactions if t.status == TransactionStatus.SUCCEEDED]

        return DashboardSummary(
            total_sales=sum((t.amount for t in succeeded), Decimal("0")),
            total_referral_earnings=self.accountant.total_earnings(),
            successful_transactions=len(succeeded),
            pending_transactions=sum(1 for t in transactions if t.status == TransactionStatus.PENDING),
            failed_transactions=sum(1 for t in transactions if t.status == TransactionStatus.FAILED),
            total_transactions=len(transactions),
        )


def build_payment_service(config: Settings, gateway: Optional[GatewayClient] = None) -> PaymentService:
    if gateway is None:
        gateway = DarajaClient(config)
    store, ledger = build_stores(config.storage_backend, config.data_dir)
    logger.info(f"Payment service ready ({config.storage_backend} storage)")
    return PaymentService(store, ledger, gateway, config)
