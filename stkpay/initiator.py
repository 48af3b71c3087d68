import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Optional
from uuid import uuid4

from .correlation import CorrelationIndex
from .errors import GatewayError, StorageError, ValidationError
from .gateway import GatewayClient, GatewayRequest, GatewayTimeoutError, GatewayTransportError
from .models import InitiationResult, PaymentRequest, Transaction
from .retry import RetryConfig, retry_call
from .storage import TransactionStore

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[\s\-()]")


def normalize_phone(phone: str, country_code: str, pattern: str) -> str:
    """Bring a payer number into the gateway's international format without '+'.

    ``0712345678``, ``+254712345678``, ``254712345678`` and ``712345678`` all
    normalize to ``254712345678``.
    """
    number = _SEPARATORS.sub("", phone or "")
    if number.startswith("+"):
        number = number[1:]
    elif number.startswith("0"):
        number = country_code + number[1:]
    elif number and not number.startswith(country_code):
        number = country_code + number

    if not re.fullmatch(pattern, number):
        raise ValidationError(f"Phone number {phone!r} is not a valid mobile money number", field="phone")
    return number


class PaymentInitiator:
    def __init__(
        self,
        store: TransactionStore,
        index: CorrelationIndex,
        gateway: GatewayClient,
        callback_url: str,
        minimum_amount: Decimal = Decimal("100"),
        country_code: str = "254",
        phone_pattern: str = r"^254(7|1)\d{8}$",
        reference_prefix: str = "BERA",
        retry_config: Optional[RetryConfig] = None,
    ):
        self.store = store
        self.index = index
        self.gateway = gateway
        self.callback_url = callback_url
        self.minimum_amount = minimum_amount
        self.country_code = country_code
        self.phone_pattern = phone_pattern
        self.reference_prefix = reference_prefix
        self.retry_config = retry_config or RetryConfig()

    def validate(self, request: PaymentRequest) -> tuple[str, Decimal]:
        for field in ("service", "plan"):
            if not (getattr(request, field) or "").strip():
                raise ValidationError(f"Missing required field: {field}", field=field)

        try:
            amount = Decimal(str(request.amount))
        except (InvalidOperation, ValueError):
            raise ValidationError("Amount must be a number", field="amount")
        if not amount.is_finite() or amount < self.minimum_amount:
            raise ValidationError(f"Amount must be at least {self.minimum_amount}", field="amount")
        if amount != amount.to_integral_value():
            raise ValidationError("Amount must be a whole number of shillings", field="amount")

        phone = normalize_phone(request.phone, self.country_code, self.phone_pattern)
        return phone, amount

    def initiate(self, request: PaymentRequest) -> InitiationResult:
        phone, amount = self.validate(request)
        service, plan = request.service.strip(), request.plan.strip()
        referral_code = (request.referral_code or "").strip() or None

        transaction = Transaction(
            id=str(uuid4()),
            phone=phone,
            service=service,
            plan=plan,
            amount=amount,
            reference=f"{self.reference_prefix}-{service.upper()}-{plan.upper()}",
            referral_code=referral_code,
        )
        retry_call(self.store.put, self.retry_config, transaction)
        logger.info(f"Transaction {transaction.id} created for {phone} ({transaction.reference}, {amount})")

        try:
            ack = self.gateway.initiate(GatewayRequest(
                phone=phone,
                amount=amount,
                reference=transaction.reference,
                callback_url=self.callback_url,
                description=f"Subscription payment for {transaction.reference}",
            ))
        except GatewayTimeoutError as e:
            self._fail(transaction, f"Gateway timeout: {e}")
            raise GatewayError(str(e), transaction_id=transaction.id, timed_out=True) from e
        except GatewayTransportError as e:
            self._fail(transaction, f"Gateway transport failure: {e}")
            raise GatewayError(str(e), transaction_id=transaction.id) from e
        except Exception as e:
            logger.exception(f"Unexpected gateway error for transaction {transaction.id}")
            self._fail(transaction, "Gateway failure")
            raise GatewayError(f"Gateway failure: {e}", transaction_id=transaction.id) from e

        if not ack.accepted:
            reason = ack.error or "Gateway rejected the payment request"
            self._fail(transaction, reason)
            raise GatewayError(reason, transaction_id=transaction.id)
        if not ack.correlation_key:
            reason = "Gateway acknowledgment carried no correlation key"
            self._fail(transaction, reason)
            raise GatewayError(reason, transaction_id=transaction.id)

        pending = transaction.mark_pending(ack.correlation_key, ack.merchant_request_id)
        self._swap(transaction, pending)
        self.index.register(ack.correlation_key, transaction.id)
        logger.info(f"Transaction {transaction.id} pending with correlation key {ack.correlation_key}")

        return InitiationResult(
            transaction_id=transaction.id,
            correlation_key=ack.correlation_key,
            status=pending.status,
            message=ack.customer_message or "STK push sent, check your phone to complete payment",
        )

    def _fail(self, transaction: Transaction, reason: str) -> None:
        logger.warning(f"Transaction {transaction.id} failed at initiation: {reason}")
        self._swap(transaction, transaction.mark_failed(reason))

    def _swap(self, expected: Transaction, updated: Transaction) -> None:
        # Only this call holds the record while it is Created, so losing the swap means corruption
        if not retry_call(self.store.compare_and_set, self.retry_config, expected, updated):
            raise StorageError(f"Transaction {expected.id} changed underneath its initiation")
