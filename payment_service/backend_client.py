"""
REST adapter for the recharge backend.

Backend responses mix ``Status``/``STATUS``/``status`` casings and put the
body under ``data`` or ``RDATA``. Everything is normalized into
``BackendEnvelope`` / ``TransactionStatusResult`` here and the raw shapes
never leave this module.
"""
import asyncio
import dataclasses
import logging
from typing import Any, Dict, Optional

import requests

from common.circuit_breaker import (
    BACKEND_CB_CONFIG,
    CircuitBreaker,
    CircuitBreakerException,
)
from common.error_handling import ErrorCodes, LocalError, TransientNetworkError
from common.schemas import BackendEnvelope, PendingPayload, TransactionStatusResult
from common.settings import Settings
from common.tracing import get_trace_headers

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Something went wrong"
UNRECOGNIZED_MESSAGE = "Status not confirmed yet"
_FAILURE_STATUSES = frozenset({"FAILURE", "FAILED"})

class SessionHolder:
    """Access token of the signed-in customer, sent as the ``access_token`` header."""

    def __init__(self, token: Optional[str] = None):
        self.token = token

    def set(self, token: Optional[str]) -> None:
        self.token = token or None

    def require(self) -> str:
        if not self.token:
            raise LocalError("No session token available", code=ErrorCodes.SESSION_MISSING)
        return self.token

def normalize_envelope(body: Any) -> BackendEnvelope:
    if not isinstance(body, dict):
        return BackendEnvelope(status="unknown", message=UNRECOGNIZED_MESSAGE)

    raw_status = body.get("Status") or body.get("STATUS") or body.get("status")
    raw_status_text = str(raw_status) if raw_status is not None else None
    is_success = (
        (raw_status_text or "").upper() == "SUCCESS"
        or (str(body.get("STATUS")) == "1" and str(body.get("ERROR")) == "0")
        or body.get("RDATA") is not None
    )
    if is_success:
        data = body.get("data")
        if data is None:
            data = body.get("RDATA")
        if data is None:
            data = body
        return BackendEnvelope(
            status="success",
            data=data,
            message=str(body.get("message") or ""),
            raw_status=raw_status_text,
            status_code=body.get("StatusCode"),
        )

    # Anything short of an explicit failure is unrecognized, e.g. a maintenance page
    explicit_failure = (raw_status_text or "").upper() in _FAILURE_STATUSES
    default_message = DEFAULT_FAILURE_MESSAGE if explicit_failure else UNRECOGNIZED_MESSAGE
    return BackendEnvelope(
        status="failure" if explicit_failure else "unknown",
        data=body.get("data"),
        message=str(body.get("message") or body.get("MESSAGE") or default_message),
        raw_status=raw_status_text,
        status_code=body.get("StatusCode"),
    )

def status_check_body(transaction_id: str, payload: Optional[PendingPayload]) -> Dict[str, Any]:
    return {
        "txnId": transaction_id,
        "field1": payload.field1 if payload else None,
        "viewBillResponse": payload.view_bill_response if payload else {},
        "validity": payload.validity if payload else None,
    }

def to_status_result(envelope: BackendEnvelope, transaction_id: str) -> TransactionStatusResult:
    if envelope.failed:
        return TransactionStatusResult(transaction_status="FAILED", message=envelope.message,
                                       request_id=transaction_id)
    if not envelope.ok:
        logger.warning(f"Unrecognized status response for {transaction_id}, treating as pending")
        return TransactionStatusResult(transaction_status="PENDING", message=envelope.message,
                                       request_id=transaction_id)

    data = envelope.data if isinstance(envelope.data, dict) else {}
    status = data.get("status") or data.get("transactionStatus") or "PENDING"
    return TransactionStatusResult(
        transaction_status=str(status).upper(),
        message=str(data.get("message") or "Status check completed"),
        request_id=data.get("requestId") or data.get("txnId") or transaction_id,
        reference_id=data.get("referenceId"),
        vendor_ref_id=data.get("vendorRefId"),
        commission=data.get("commission") or 0,
        category_id=data.get("categoryId"),
    )

class BackendClient:
    def __init__(self, base_url: str, session: SessionHolder, timeout: float = 20.0,
                 recharge_endpoint: str = "api/customer/plan_recharge/recharge",
                 status_endpoint: str = "api/customer/plan_recharge/check-status",
                 transaction_endpoint: str = "api/customer/transaction/getById",
                 payment_link_endpoint: str = "pay",
                 http: Optional[requests.Session] = None,
                 circuit_breaker: Optional[CircuitBreaker] = None):
        self.base_url = base_url.rstrip("/")
        self.session = session
        self.timeout = timeout
        self.recharge_endpoint = recharge_endpoint
        self.status_endpoint = status_endpoint
        self.transaction_endpoint = transaction_endpoint
        self.payment_link_endpoint = payment_link_endpoint
        self.http = http or requests.Session()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            "recharge-backend", dataclasses.replace(BACKEND_CB_CONFIG, timeout=timeout)
        )

    @classmethod
    def from_settings(cls, settings: Settings, session: SessionHolder,
                      http: Optional[requests.Session] = None) -> "BackendClient":
        return cls(
            base_url=settings.backend_base_url,
            session=session,
            timeout=settings.backend_timeout_seconds,
            recharge_endpoint=settings.recharge_endpoint,
            status_endpoint=settings.status_endpoint,
            transaction_endpoint=settings.transaction_endpoint,
            payment_link_endpoint=settings.payment_link_endpoint,
            http=http,
        )

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "access_token": self.session.require(),
            **get_trace_headers(),
        }

    def _send(self, method: str, endpoint: str, headers: Dict[str, str],
              params: Optional[Dict[str, Any]] = None, json_body: Any = None) -> Any:
        response = self.http.request(method, self._url(endpoint), headers=headers, params=params,
                                     json=json_body, timeout=self.timeout)
        if response.status_code == 401:
            raise LocalError("Session rejected by backend", code=ErrorCodes.SESSION_MISSING)
        response.raise_for_status()
        try:
            return response.json()
        except ValueError:
            return {"message": response.text}

    async def _request(self, method: str, endpoint: str, params: Optional[Dict[str, Any]] = None,
                       json_body: Any = None) -> BackendEnvelope:
        headers = self._headers()
        try:
            body = await self.circuit_breaker.call(self._send, method, endpoint, headers, params, json_body)
        except LocalError:
            raise
        except CircuitBreakerException as e:
            raise TransientNetworkError("Backend temporarily unavailable", e, code=ErrorCodes.CIRCUIT_BREAKER_OPEN)
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Backend call to {endpoint} timed out", e, code=ErrorCodes.TIMEOUT_ERROR)
        except requests.Timeout as e:
            raise TransientNetworkError(f"Backend call to {endpoint} timed out", e, code=ErrorCodes.TIMEOUT_ERROR)
        except requests.RequestException as e:
            raise TransientNetworkError(f"Backend call to {endpoint} failed", e)

        envelope = normalize_envelope(body)
        logger.info(f"{method} {endpoint} -> {envelope.status}")
        return envelope

    async def recharge(self, payload: Dict[str, Any]) -> BackendEnvelope:
        return await self._request("POST", self.recharge_endpoint, json_body=payload)

    async def check_status(self, transaction_id: str, payload: Optional[PendingPayload]) -> TransactionStatusResult:
        envelope = await self._request("POST", self.status_endpoint,
                                       json_body=status_check_body(transaction_id, payload))
        return to_status_result(envelope, transaction_id)

    async def fetch_payment_link(self, upi_token: str) -> Optional[str]:
        envelope = await self._request("POST", self.payment_link_endpoint, params={"upiToken": upi_token})
        if not envelope.ok:
            return None
        data = envelope.data
        if isinstance(data, str):
            return data
        if isinstance(data, dict):
            return data.get("url") or data.get("paymentUrl") or data.get("data")
        return None

    async def fetch_transaction(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        envelope = await self._request("GET", self.transaction_endpoint, params={"txnId": transaction_id})
        if envelope.ok and isinstance(envelope.data, dict):
            return envelope.data
        return None
