import json
import logging
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import (
    GatewayError,
    MalformedCallbackError,
    PaymentServiceError,
    ReferralNotFoundError,
    StorageError,
    TransactionNotFoundError,
    ValidationError,
)
from .models import (
    DashboardSummary,
    InitiationResult,
    PaymentRequest,
    PayoutRequest,
    ReferralAccount,
    ReferralRegistration,
    RegisterReferralRequest,
    TransactionListResponse,
    TransactionStatus,
    TransactionView,
)
from .service import PaymentService, build_payment_service
from .settings import settings

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="STK Push Payments API",
    description="Mobile money STK push payments with callback reconciliation and referral rewards",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_payment_service() -> PaymentService:
    return build_payment_service(settings)


def _http_error(status_code: int, exc: PaymentServiceError, field: Optional[str] = None) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"code": exc.code, "message": str(exc), "field": field},
    )


def _gateway_ack(result_code: int, description: str, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ResultCode": result_code, "ResultDesc": description})


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(f"Storage failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": {"code": exc.code, "message": "Storage temporarily unavailable", "field": None}},
    )


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "stk-payments"}


@app.post("/pay", response_model=InitiationResult, status_code=status.HTTP_201_CREATED, tags=["Payments"])
def pay(request: PaymentRequest, service: PaymentService = Depends(get_payment_service)) -> InitiationResult:
    try:
        return service.initiate(request)
    except ValidationError as e:
        raise _http_error(status.HTTP_400_BAD_REQUEST, e, field=e.field)
    except GatewayError as e:
        code = status.HTTP_504_GATEWAY_TIMEOUT if e.timed_out else status.HTTP_502_BAD_GATEWAY
        raise _http_error(code, e)


@app.post("/callback", tags=["Payments"])
async def callback(request: Request, service: PaymentService = Depends(get_payment_service)) -> JSONResponse:
    # Anything but a storage failure is acknowledged, otherwise the gateway keeps re-sending
    body = await request.body()
    try:
        payload = json.loads(body)
        result = await run_in_threadpool(service.handle_callback, payload)
    except (ValueError, MalformedCallbackError) as e:
        logger.error(f"Ignoring malformed callback: {e}")
        return _gateway_ack(0, "Accepted")
    except StorageError as e:
        logger.error(f"Callback not persisted, asking gateway to retry: {e}")
        return _gateway_ack(1, "Temporary failure, retry", status.HTTP_503_SERVICE_UNAVAILABLE)
    except PaymentServiceError as e:
        logger.error(f"Callback reconciliation error: {e}")
        return _gateway_ack(0, "Accepted")

    logger.info(f"Callback processed: {result.value}")
    return _gateway_ack(0, "Accepted")


@app.get("/transaction/{transaction_id}", response_model=TransactionView, tags=["Payments"])
def get_transaction(transaction_id: str, service: PaymentService = Depends(get_payment_service)) -> TransactionView:
    try:
        return service.get_transaction(transaction_id)
    except TransactionNotFoundError as e:
        raise _http_error(status.HTTP_404_NOT_FOUND, e)


@app.get("/transactions", response_model=TransactionListResponse, tags=["Payments"])
def list_transactions(
    status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
    limit: int = 50,
    offset: int = 0,
    service: PaymentService = Depends(get_payment_service),
) -> TransactionListResponse:
    return service.list_transactions(status_filter, limit, offset)


@app.post("/referral/generate", response_model=ReferralRegistration, tags=["Referrals"])
def generate_referral(
    request: RegisterReferralRequest, service: PaymentService = Depends(get_payment_service)
) -> ReferralRegistration:
    try:
        return service.register_referral(request.code)
    except ValidationError as e:
        raise _http_error(status.HTTP_400_BAD_REQUEST, e, field=e.field)


@app.get("/referral/{code}", response_model=ReferralAccount, tags=["Referrals"])
def get_referral(code: str, service: PaymentService = Depends(get_payment_service)) -> ReferralAccount:
    try:
        return service.get_referral(code)
    except ReferralNotFoundError as e:
        raise _http_error(status.HTTP_404_NOT_FOUND, e)


@app.post("/payout/{code}", response_model=PayoutRequest, tags=["Referrals"])
def request_payout(code: str, service: PaymentService = Depends(get_payment_service)) -> PayoutRequest:
    try:
        return service.request_payout(code)
    except ReferralNotFoundError as e:
        raise _http_error(status.HTTP_404_NOT_FOUND, e)


@app.get("/admin/dashboard", response_model=DashboardSummary, tags=["Admin"])
def dashboard(service: PaymentService = Depends(get_payment_service)) -> DashboardSummary:
    return service.dashboard()


@app.post("/admin/referrals/settle", tags=["Admin"])
def settle_referrals(service: PaymentService = Depends(get_payment_service)):
    return {"settled": service.settle_outstanding_referrals()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
