"""
Unit Tests for the Status Query

Tests cover:
1. Plain reads and NotFound
2. Active polling of stale Pending transactions
3. Polls funnel through the same transition as callbacks
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from stkpay.errors import TransactionNotFoundError
from stkpay.gateway import GatewayStatus, GatewayStatusOutcome, GatewayTransportError
from stkpay.models import TransactionStatus, utcnow
from stkpay.reconciler import ReconcileResult
from stkpay.tests.fakes import payment_request, stk_callback


def age_everything(service, minutes: int = 5):
    service.status_query.clock = lambda: utcnow() + timedelta(minutes=minutes)


class TestStatusRead:
    """Tests for reading current state."""

    def test_unknown_transaction(self, service):
        """Test that unknown ids raise NotFound."""
        with pytest.raises(TransactionNotFoundError):
            service.get_transaction("does-not-exist")

    def test_fresh_pending_not_polled(self, service, gateway):
        """Test that a young Pending transaction is returned as stored."""
        result = service.initiate(payment_request())

        view = service.get_transaction(result.transaction_id)

        assert view.status == TransactionStatus.PENDING
        assert view.correlation_key == result.correlation_key
        assert gateway.status_checks == []

    def test_terminal_not_polled(self, service, gateway):
        """Test that settled transactions never hit the gateway."""
        result = service.initiate(payment_request())
        service.handle_callback(stk_callback(result.correlation_key))
        age_everything(service)

        view = service.get_transaction(result.transaction_id)

        assert view.status == TransactionStatus.SUCCEEDED
        assert gateway.status_checks == []


class TestStalePolling:
    """Tests for polling the gateway on stale Pending transactions."""

    def test_stale_pending_polled_to_success(self, service, gateway):
        """Test that a poll reporting success settles the transaction and credits the referral."""
        result = service.initiate(payment_request(referral_code="ABC"))
        gateway.status = GatewayStatus(outcome=GatewayStatusOutcome.SUCCESS)
        age_everything(service)

        view = service.get_transaction(result.transaction_id)

        assert gateway.status_checks == [result.correlation_key]
        assert view.status == TransactionStatus.SUCCEEDED
        assert view.referral_applied is True
        assert service.ledger.get("ABC").earnings == Decimal("10")

    def test_stale_pending_polled_to_failure(self, service, gateway):
        """Test that a poll reporting failure records the reason."""
        result = service.initiate(payment_request())
        gateway.status = GatewayStatus(outcome=GatewayStatusOutcome.FAILURE, reason="Request cancelled by user")
        age_everything(service)

        view = service.get_transaction(result.transaction_id)

        assert view.status == TransactionStatus.FAILED
        assert view.failure_reason == "Request cancelled by user"

    def test_poll_still_pending(self, service, gateway):
        """Test that an undecided poll leaves the transaction alone."""
        result = service.initiate(payment_request())
        age_everything(service)

        view = service.get_transaction(result.transaction_id)

        assert len(gateway.status_checks) == 1
        assert view.status == TransactionStatus.PENDING

    def test_poll_failure_returns_stored_state(self, service, gateway):
        """Test that a gateway outage during a poll is not surfaced."""
        result = service.initiate(payment_request())
        gateway.status_error = GatewayTransportError("connection reset")
        age_everything(service)

        view = service.get_transaction(result.transaction_id)

        assert view.status == TransactionStatus.PENDING

    def test_callback_after_poll_is_duplicate(self, service, gateway):
        """Test that the webhook arriving after a poll settled it is a no-op."""
        result = service.initiate(payment_request(referral_code="ABC"))
        gateway.status = GatewayStatus(outcome=GatewayStatusOutcome.SUCCESS)
        age_everything(service)
        service.get_transaction(result.transaction_id)

        outcome = service.handle_callback(stk_callback(result.correlation_key, receipt="R123"))

        assert outcome == ReconcileResult.DUPLICATE
        assert service.ledger.get("ABC").reward_count == 1
