import logging
from decimal import Decimal
from typing import Optional
from urllib.parse import quote
from uuid import uuid4

from .errors import ReferralNotFoundError, ValidationError
from .models import (
    CreditResult,
    PayoutRequest,
    ReferralAccount,
    ReferralCredit,
    ReferralRegistration,
)
from .retry import RetryConfig, retry_call
from .storage import ReferralLedger

logger = logging.getLogger(__name__)


class ReferralAccountant:
    def __init__(
        self,
        ledger: ReferralLedger,
        reward_amount: Decimal,
        retry_config: Optional[RetryConfig] = None,
        code_length: int = 8,
        public_base_url: str = "",
        payout_whatsapp_number: str = "",
    ):
        self.ledger = ledger
        self.reward_amount = reward_amount
        self.retry_config = retry_config or RetryConfig()
        self.code_length = code_length
        self.public_base_url = public_base_url
        self.payout_whatsapp_number = payout_whatsapp_number

    def credit(self, code: str, transaction_id: str) -> CreditResult:
        """Credit the fixed reward to ``code`` once per transaction id."""
        credit = ReferralCredit(transaction_id=transaction_id, amount=self.reward_amount)
        account = retry_call(self.ledger.append_credit, self.retry_config, code, credit)

        if account is None:
            logger.info(f"Referral {code} already credited for transaction {transaction_id}")
            return CreditResult.ALREADY_CREDITED

        logger.info(
            f"Referral {code} credited {self.reward_amount} for transaction {transaction_id} "
            f"(earnings={account.earnings}, rewards={account.reward_count})"
        )
        return CreditResult.OK

    def register(self, code: Optional[str] = None) -> ReferralRegistration:
        if code is not None:
            code = code.strip()
            if not code:
                raise ValidationError("Referral code must not be blank", field="code")
        code = code or uuid4().hex[:self.code_length]

        account = retry_call(self.ledger.create, self.retry_config, ReferralAccount(code=code))
        return ReferralRegistration(
            code=account.code,
            referral_link=f"{self.public_base_url}?ref={quote(account.code)}",
            account=account,
        )

    def get_account(self, code: str) -> ReferralAccount:
        account = retry_call(self.ledger.get, self.retry_config, code)
        if account is None:
            raise ReferralNotFoundError(f"Referral {code} not found")
        return account

    def request_payout(self, code: str) -> PayoutRequest:
        account = self.get_account(code)
        message = (
            f"Hi! I want to withdraw my referral earnings of KSh {account.earnings}. "
            f"My referral ID is {account.code}."
        )
        return PayoutRequest(
            code=account.code,
            earnings=account.earnings,
            whatsapp_url=f"https://wa.me/{self.payout_whatsapp_number}?text={quote(message)}",
        )

    def total_earnings(self) -> Decimal:
        accounts = retry_call(self.ledger.list, self.retry_config)
        return sum((a.earnings for a in accounts), Decimal("0"))
