"""
Contract between the payment engine and an STK push gateway.

Any client that implements ``GatewayClient`` can drive the engine; the
Safaricom Daraja adapter lives in ``stkpay.daraja``.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol
from pydantic import BaseModel


class GatewayTransportError(Exception):
    """The gateway could not be reached or answered with garbage."""


class GatewayTimeoutError(GatewayTransportError):
    pass


class GatewayRequest(BaseModel):
    phone: str
    amount: Decimal
    reference: str
    callback_url: str
    description: str = ""


class GatewayAck(BaseModel):
    accepted: bool
    correlation_key: Optional[str] = None
    merchant_request_id: Optional[str] = None
    error: Optional[str] = None
    customer_message: Optional[str] = None


class CallbackOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class Callback(BaseModel):
    correlation_key: str
    outcome: CallbackOutcome
    receipt: Optional[str] = None
    reason: Optional[str] = None
    payer_phone: Optional[str] = None


class GatewayStatusOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class GatewayStatus(BaseModel):
    outcome: GatewayStatusOutcome
    receipt: Optional[str] = None
    reason: Optional[str] = None

    def to_callback(self, correlation_key: str) -> Optional[Callback]:
        if self.outcome == GatewayStatusOutcome.PENDING:
            return None
        outcome = CallbackOutcome.SUCCESS if self.outcome == GatewayStatusOutcome.SUCCESS else CallbackOutcome.FAILURE
        return Callback(correlation_key=correlation_key, outcome=outcome, receipt=self.receipt, reason=self.reason)


class GatewayClient(Protocol):
    def initiate(self, request: GatewayRequest) -> GatewayAck: ...

    def check_status(self, correlation_key: str) -> GatewayStatus: ...
