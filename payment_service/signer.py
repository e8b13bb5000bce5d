"""
Outbound request signing for the hosted checkout gateway.

The hash string layout is a fixed contract with the gateway:

    key|txnid|amount|productinfo|firstname|email|udf1|udf2|udf3|udf4|udf5||||||salt

The five empty slots after udf5 must stay in place.
"""
import hashlib
import html
import logging
import threading
import time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional
from urllib.parse import quote

from common.error_handling import PaymentValidationError
from common.schemas import PaymentRequest, SignedPaymentRequest
from common.settings import Settings

logger = logging.getLogger(__name__)

_TWO_PLACES = Decimal("0.01")
EMPTY_RESERVED_SLOTS = 5

_txn_lock = threading.Lock()
_last_txn_ms = 0

def format_amount(amount) -> str:
    """Render an amount with exactly two decimals, rejecting NaN, infinity and non-positive values."""
    if isinstance(amount, bool):
        raise PaymentValidationError("Amount must be numeric", field="amount")
    try:
        if isinstance(amount, float):
            value = Decimal(str(amount))
        else:
            value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise PaymentValidationError(f"Invalid amount: {amount!r}", field="amount")

    if not value.is_finite():
        raise PaymentValidationError("Amount must be a finite number", field="amount")
    try:
        quantized = value.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise PaymentValidationError("Amount is too large", field="amount")
    if quantized <= 0:
        raise PaymentValidationError("Amount must be greater than zero", field="amount")
    return f"{quantized:.2f}"

def generate_transaction_id() -> str:
    """TXN<epoch ms>, strictly increasing within the process."""
    global _last_txn_ms
    with _txn_lock:
        now_ms = int(time.time() * 1000)
        if now_ms <= _last_txn_ms:
            now_ms = _last_txn_ms + 1
        _last_txn_ms = now_ms
    return f"TXN{now_ms}"

def compute_request_hash(fields: dict, secret: str) -> str:
    udfs = [fields.get(f"udf{i}", "") for i in range(1, 6)]
    parts = [
        fields["key"],
        fields["txnid"],
        fields["amount"],
        fields["productinfo"],
        fields["firstname"],
        fields["email"],
        *udfs,
        *([""] * EMPTY_RESERVED_SLOTS),
        secret,
    ]
    return hashlib.sha512("|".join(parts).encode("utf-8")).hexdigest()

class RequestSigner:
    def __init__(
        self,
        merchant_key: str,
        success_url: str,
        failure_url: str,
        cancel_url: str,
        service_provider: str = "payu_paisa",
        default_product_info: str = "",
        default_payer_name: str = "",
        default_payer_email: str = "",
    ):
        self.merchant_key = merchant_key
        self.success_url = success_url
        self.failure_url = failure_url
        self.cancel_url = cancel_url
        self.service_provider = service_provider
        self.default_product_info = default_product_info
        self.default_payer_name = default_payer_name
        self.default_payer_email = default_payer_email

    @classmethod
    def from_settings(cls, settings: Settings) -> "RequestSigner":
        return cls(
            merchant_key=settings.gateway_merchant_key,
            success_url=settings.success_url,
            failure_url=settings.failure_url,
            cancel_url=settings.cancel_url,
            service_provider=settings.gateway_service_provider,
            default_product_info=settings.default_product_info,
            default_payer_name=settings.default_payer_name,
            default_payer_email=settings.default_payer_email,
        )

    def sign(self, request: PaymentRequest, secret: str) -> SignedPaymentRequest:
        amount = format_amount(request.amount)
        txnid = request.transaction_id or generate_transaction_id()
        udfs = list(request.extension_fields) + [""] * (5 - len(request.extension_fields))

        fields = {
            "key": self.merchant_key,
            "txnid": txnid,
            "amount": amount,
            "productinfo": request.product_info or self.default_product_info,
            "firstname": request.payer_name or self.default_payer_name,
            "email": request.payer_email or self.default_payer_email,
            "phone": request.payer_phone,
            "surl": request.success_url or self.success_url,
            "furl": request.failure_url or self.failure_url,
            "curl": request.cancel_url or self.cancel_url,
        }
        for i, udf in enumerate(udfs, start=1):
            fields[f"udf{i}"] = udf

        signature = compute_request_hash(fields, secret)
        logger.info(f"Signed gateway request {txnid} for amount {amount}")
        return SignedPaymentRequest(**fields, hash=signature, service_provider=self.service_provider)

def build_autosubmit_html(signed: SignedPaymentRequest, gateway_url: str) -> str:
    """HTML page that posts the signed fields to the gateway as soon as it loads."""
    inputs = "\n".join(
        f'    <input type="hidden" name="{html.escape(name)}" value="{html.escape(str(value))}" />'
        for name, value in signed.form_fields().items()
    )
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "<head><meta charset=\"utf-8\"><title>Redirecting to payment</title></head>\n"
        "<body onload=\"document.forms[0].submit()\">\n"
        f"  <form method=\"post\" action=\"{html.escape(gateway_url)}\">\n"
        f"{inputs}\n"
        "  </form>\n"
        "  <p>Redirecting to payment gateway...</p>\n"
        "</body>\n"
        "</html>\n"
    )

def build_data_uri(page: str, mime_type: Optional[str] = "text/html") -> str:
    return f"data:{mime_type};charset=utf-8,{quote(page)}"
