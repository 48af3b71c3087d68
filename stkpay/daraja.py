import base64
import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Optional

import requests

from .errors import MalformedCallbackError
from .gateway import (
    Callback,
    CallbackOutcome,
    GatewayAck,
    GatewayRequest,
    GatewayStatus,
    GatewayStatusOutcome,
    GatewayTimeoutError,
    GatewayTransportError,
)
from .settings import Settings

logger = logging.getLogger(__name__)

# Daraja answers a status query with this error code while the payer has not responded yet
STILL_PROCESSING_CODE = "500.001.1001"


class DarajaClient:
    """
    Safaricom M-Pesa Express (STK push) client.
    Handles OAuth token caching, STK push initiation and status query.
    """

    def __init__(self, config: Settings, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        resp = self._send(
            "GET",
            f"{self.config.daraja_base_url}/oauth/v1/generate?grant_type=client_credentials",
            auth=(self.config.daraja_consumer_key, self.config.daraja_consumer_secret),
        )
        if not resp.ok:
            raise GatewayTransportError(f"Token request rejected with HTTP {resp.status_code}")
        data = self._json(resp)
        token = data.get("access_token")
        if not token:
            raise GatewayTransportError("Token response carried no access_token")

        # refresh a minute early
        expires_in = int(data.get("expires_in", 3599))
        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - 60, 0)
        return token

    def _password(self) -> tuple[str, str]:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        raw = f"{self.config.mpesa_shortcode}{self.config.mpesa_passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode(), timestamp

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, timeout=self.config.gateway_timeout_seconds, **kwargs)
        except requests.Timeout as e:
            raise GatewayTimeoutError(f"Gateway timed out after {self.config.gateway_timeout_seconds}s") from e
        except requests.RequestException as e:
            raise GatewayTransportError(f"Gateway unreachable: {e}") from e

    @staticmethod
    def _json(resp: requests.Response) -> dict:
        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayTransportError(f"Gateway returned non-JSON body (HTTP {resp.status_code})") from e
        if not isinstance(data, dict):
            raise GatewayTransportError(f"Gateway returned a JSON {type(data).__name__}, expected an object")
        return data

    def initiate(self, request: GatewayRequest) -> GatewayAck:
        password, timestamp = self._password()
        payload = {
            "BusinessShortCode": self.config.mpesa_shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(Decimal(str(request.amount))),
            "PartyA": request.phone,
            "PartyB": self.config.mpesa_shortcode,
            "PhoneNumber": request.phone,
            "CallBackURL": request.callback_url,
            "AccountReference": request.reference,
            "TransactionDesc": request.description or f"Payment for {request.reference}",
        }
        headers = {"Authorization": f"Bearer {self._access_token()}"}
        resp = self._send(
            "POST", f"{self.config.daraja_base_url}/mpesa/stkpush/v1/processrequest",
            json=payload, headers=headers,
        )
        data = self._json(resp)

        if resp.ok and data.get("ResponseCode") == "0":
            return GatewayAck(
                accepted=True,
                correlation_key=data.get("CheckoutRequestID"),
                merchant_request_id=data.get("MerchantRequestID"),
                customer_message=data.get("CustomerMessage"),
            )

        error = data.get("errorMessage") or data.get("ResponseDescription") or "Failed to initiate STK push"
        logger.warning(f"STK push rejected for {request.reference}: {error}")
        return GatewayAck(accepted=False, error=error)

    def check_status(self, correlation_key: str) -> GatewayStatus:
        password, timestamp = self._password()
        payload = {
            "BusinessShortCode": self.config.mpesa_shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "CheckoutRequestID": correlation_key,
        }
        headers = {"Authorization": f"Bearer {self._access_token()}"}
        resp = self._send(
            "POST", f"{self.config.daraja_base_url}/mpesa/stkpushquery/v1/query",
            json=payload, headers=headers,
        )
        data = self._json(resp)

        if data.get("errorCode") == STILL_PROCESSING_CODE:
            return GatewayStatus(outcome=GatewayStatusOutcome.PENDING)
        if not resp.ok or "ResultCode" not in data:
            raise GatewayTransportError(data.get("errorMessage") or f"Status query failed with HTTP {resp.status_code}")
        if str(data["ResultCode"]) == "0":
            return GatewayStatus(outcome=GatewayStatusOutcome.SUCCESS)
        return GatewayStatus(outcome=GatewayStatusOutcome.FAILURE, reason=data.get("ResultDesc"))


def _metadata_value(items: list, name: str):
    for item in items:
        if isinstance(item, dict) and item.get("Name") == name:
            return item.get("Value")
    return None


def parse_stk_callback(payload: dict) -> Callback:
    """Translate a Daraja ``Body.stkCallback`` webhook body into a ``Callback``."""
    try:
        stk = payload["Body"]["stkCallback"]
        correlation_key = stk["CheckoutRequestID"]
        result_code = int(stk["ResultCode"])
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedCallbackError(f"Not an STK callback payload: {e!r}") from e

    if not isinstance(correlation_key, str) or not correlation_key:
        raise MalformedCallbackError("STK callback carried no usable CheckoutRequestID")

    if result_code != 0:
        return Callback(
            correlation_key=correlation_key,
            outcome=CallbackOutcome.FAILURE,
            reason=str(stk.get("ResultDesc") or f"Gateway result code {result_code}"),
        )

    metadata = stk.get("CallbackMetadata") or {}
    if not isinstance(metadata, dict):
        raise MalformedCallbackError("STK callback CallbackMetadata is not an object")
    items = metadata.get("Item") or []
    if not isinstance(items, list):
        raise MalformedCallbackError("STK callback CallbackMetadata.Item is not a list")
    receipt = _metadata_value(items, "MpesaReceiptNumber")
    payer_phone = _metadata_value(items, "PhoneNumber")
    return Callback(
        correlation_key=correlation_key,
        outcome=CallbackOutcome.SUCCESS,
        receipt=str(receipt) if receipt is not None else None,
        payer_phone=str(payer_phone) if payer_phone is not None else None,
    )
