"""
Unit Tests for the Referral Accountant

Tests cover:
1. Credit flow and lazy account creation
2. Idempotency per transaction id
3. Explicit registration
4. Payout requests
"""

import pytest
from decimal import Decimal
from urllib.parse import unquote

from stkpay.errors import ReferralNotFoundError, ValidationError
from stkpay.models import CreditResult
from stkpay.referrals import ReferralAccountant
from stkpay.retry import RetryConfig
from stkpay.storage import InMemoryReferralLedger


def make_accountant(**overrides) -> ReferralAccountant:
    options = {
        "reward_amount": Decimal("10"),
        "retry_config": RetryConfig(base_delay=0.0),
        "public_base_url": "https://example.test",
        "payout_whatsapp_number": "254700000000",
    }
    options.update(overrides)
    return ReferralAccountant(InMemoryReferralLedger(), **options)


class TestCreditFlow:
    """Tests for crediting rewards."""

    def test_credit_creates_account_lazily(self):
        """Test that the first credit creates the account."""
        accountant = make_accountant()

        assert accountant.credit("ABC", "tx-1") == CreditResult.OK

        account = accountant.get_account("ABC")
        assert account.earnings == Decimal("10")
        assert account.reward_count == 1
        assert [entry.transaction_id for entry in account.history] == ["tx-1"]
        assert account.history[0].amount == Decimal("10")

    def test_same_transaction_credited_once(self):
        """Test that the history check rejects a second credit for one transaction."""
        accountant = make_accountant()

        accountant.credit("ABC", "tx-1")
        assert accountant.credit("ABC", "tx-1") == CreditResult.ALREADY_CREDITED

        account = accountant.get_account("ABC")
        assert account.earnings == Decimal("10")
        assert account.reward_count == 1

    def test_credits_accumulate(self):
        """Test that distinct transactions add up."""
        accountant = make_accountant()

        for n in range(3):
            accountant.credit("ABC", f"tx-{n}")

        account = accountant.get_account("ABC")
        assert account.earnings == Decimal("30")
        assert account.reward_count == 3
        assert accountant.total_earnings() == Decimal("30")

    def test_history_is_ordered(self):
        """Test that history keeps credit order."""
        accountant = make_accountant()

        accountant.credit("ABC", "tx-b")
        accountant.credit("ABC", "tx-a")

        history = accountant.get_account("ABC").history
        assert [entry.transaction_id for entry in history] == ["tx-b", "tx-a"]
        assert history[0].timestamp <= history[1].timestamp


class TestRegistration:
    """Tests for explicit referral registration."""

    def test_register_with_code(self):
        """Test registering a chosen code."""
        accountant = make_accountant()

        registration = accountant.register("ABC")

        assert registration.code == "ABC"
        assert registration.referral_link == "https://example.test?ref=ABC"
        assert registration.account.earnings == Decimal("0")

    def test_register_generates_code(self):
        """Test that a code is generated when none is given."""
        accountant = make_accountant(code_length=8)

        registration = accountant.register()

        assert len(registration.code) == 8
        assert accountant.get_account(registration.code).reward_count == 0

    def test_register_is_idempotent(self):
        """Test that re-registering keeps existing earnings."""
        accountant = make_accountant()
        accountant.credit("ABC", "tx-1")

        registration = accountant.register("ABC")

        assert registration.account.earnings == Decimal("10")

    def test_blank_code_rejected(self):
        """Test that a whitespace code is refused."""
        accountant = make_accountant()

        with pytest.raises(ValidationError):
            accountant.register("   ")


class TestPayout:
    """Tests for payout requests."""

    def test_payout_link_carries_earnings(self):
        """Test that the WhatsApp link includes the code and earnings."""
        accountant = make_accountant()
        accountant.credit("ABC", "tx-1")

        payout = accountant.request_payout("ABC")

        assert payout.earnings == Decimal("10")
        assert payout.whatsapp_url.startswith("https://wa.me/254700000000?text=")
        message = unquote(payout.whatsapp_url.split("text=", 1)[1])
        assert "KSh 10" in message
        assert "ABC" in message

    def test_unknown_code_not_found(self):
        """Test that unknown codes raise NotFound rather than an error."""
        accountant = make_accountant()

        with pytest.raises(ReferralNotFoundError):
            accountant.request_payout("nope")
        with pytest.raises(ReferralNotFoundError):
            accountant.get_account("nope")
