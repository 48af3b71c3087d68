"""
STK Push Payments with Referral Rewards

This package provides:
- STK push initiation against a mobile money gateway
- Callback reconciliation by gateway correlation key
- Idempotent transaction state machine: Created → Pending → Succeeded / Failed
- Exactly-once referral reward crediting
- Pluggable transaction and referral storage (in-memory, JSON file)
"""

from .models import (
    CreditResult,
    ReferralAccount,
    Transaction,
    TransactionStatus,
    TransactionView,
)
from .reconciler import ReconcileResult
from .service import PaymentService, build_payment_service

__all__ = [
    "CreditResult",
    "ReferralAccount",
    "Transaction",
    "TransactionStatus",
    "TransactionView",
    "ReconcileResult",
    "PaymentService",
    "build_payment_service",
]
