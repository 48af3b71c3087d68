import pytest
from decimal import Decimal
from pydantic import ValidationError as SchemaError

from stkpay.errors import InvalidStateTransitionError
from stkpay.models import Transaction, TransactionStatus, TransactionView


def created() -> Transaction:
    return Transaction(
        id="tx-1",
        phone="254712345678",
        service="X",
        plan="basic",
        amount=Decimal("100"),
        reference="BERA-X-BASIC",
        referral_code="ABC",
    )


class TestTransactionStateMachine:
    """Tests for allowed and forbidden transitions."""

    def test_forward_path(self):
        """Test Created -> Pending -> Succeeded with version bumps."""
        pending = created().mark_pending("ws_CO_1", "MR-1")
        succeeded = pending.mark_succeeded("R123")

        assert pending.status == TransactionStatus.PENDING
        assert succeeded.status == TransactionStatus.SUCCEEDED
        assert succeeded.version == 2
        assert succeeded.completed_at is not None
        assert succeeded.needs_referral_credit()

    def test_cannot_skip_to_succeeded(self):
        """Test that Created cannot succeed without a callback-bearing Pending step."""
        with pytest.raises(InvalidStateTransitionError):
            created().mark_succeeded("R123")

    def test_terminal_states_absorb(self):
        """Test that no transition leaves a terminal state."""
        failed = created().mark_pending("ws_CO_1").mark_failed("cancelled")

        with pytest.raises(InvalidStateTransitionError):
            failed.mark_failed("again")
        with pytest.raises(InvalidStateTransitionError):
            failed.mark_succeeded("R123")
        with pytest.raises(InvalidStateTransitionError):
            failed.mark_pending("ws_CO_2")

    def test_referral_applied_only_after_success(self):
        """Test that referral_applied implies Succeeded."""
        pending = created().mark_pending("ws_CO_1")

        with pytest.raises(InvalidStateTransitionError):
            pending.mark_referral_applied(Decimal("10"))

        applied = pending.mark_succeeded("R123").mark_referral_applied(Decimal("10"))
        assert applied.referral_applied
        assert not applied.needs_referral_credit()
        with pytest.raises(InvalidStateTransitionError):
            applied.mark_referral_applied(Decimal("10"))

    def test_transactions_are_immutable(self):
        """Test that stored records cannot be edited in place."""
        transaction = created()

        with pytest.raises(SchemaError):
            transaction.status = TransactionStatus.SUCCEEDED

    def test_view_hides_internal_fields(self):
        """Test that the public view drops the version counter."""
        view = TransactionView.from_transaction(created().mark_pending("ws_CO_1", "MR-1"))

        assert "version" not in view.model_dump()
        assert view.correlation_key == "ws_CO_1"
