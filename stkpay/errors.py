from typing import Optional


class ErrorCodes:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
    STORAGE_ERROR = "STORAGE_ERROR"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    REFERRAL_NOT_FOUND = "REFERRAL_NOT_FOUND"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"


class PaymentServiceError(Exception):
    code = "PAYMENT_SERVICE_ERROR"


class ValidationError(PaymentServiceError):
    code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class GatewayError(PaymentServiceError):
    code = ErrorCodes.GATEWAY_ERROR

    def __init__(self, message: str, transaction_id: Optional[str] = None, timed_out: bool = False):
        self.message = message
        self.transaction_id = transaction_id
        self.timed_out = timed_out
        if timed_out:
            self.code = ErrorCodes.GATEWAY_TIMEOUT
        super().__init__(message)


class StorageError(PaymentServiceError):
    code = ErrorCodes.STORAGE_ERROR


class DuplicateKeyError(PaymentServiceError):
    pass


class TransactionNotFoundError(PaymentServiceError):
    code = ErrorCodes.TRANSACTION_NOT_FOUND


class ReferralNotFoundError(PaymentServiceError):
    code = ErrorCodes.REFERRAL_NOT_FOUND


class InvalidStateTransitionError(PaymentServiceError):
    code = ErrorCodes.INVALID_STATE_TRANSITION


class CorrelationConflictError(PaymentServiceError):
    pass


class MalformedCallbackError(PaymentServiceError):
    pass
