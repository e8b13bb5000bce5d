"""
Callback authenticity check. Everything the gateway posts back is untrusted
until the reverse hash matches:

    [additionalCharges|]salt|status||||||udf5|udf4|udf3|udf2|udf1|email|firstname|productinfo|amount|txnid|key
"""
import hashlib
import hmac
import logging
from typing import Any

from common.schemas import GatewayCallback, VerificationResult

logger = logging.getLogger(__name__)

EMPTY_RESERVED_SLOTS = 5

def _field(callback: GatewayCallback, name: str) -> str:
    value: Any = callback.get(name)
    return "" if value is None else str(value)

def compute_response_hash(callback: GatewayCallback, merchant_key: str, secret: str) -> str:
    parts = [
        secret,
        _field(callback, "status"),
        *([""] * EMPTY_RESERVED_SLOTS),
        *(_field(callback, f"udf{i}") for i in range(5, 0, -1)),
        _field(callback, "email"),
        _field(callback, "firstname"),
        _field(callback, "productinfo"),
        _field(callback, "amount"),
        _field(callback, "txnid"),
        merchant_key,
    ]
    additional_charges = _field(callback, "additionalCharges")
    if additional_charges:
        parts.insert(0, additional_charges)
    return hashlib.sha512("|".join(parts).encode("utf-8")).hexdigest()

class CallbackVerifier:
    def __init__(self, merchant_key: str):
        self.merchant_key = merchant_key

    def verify(self, callback: GatewayCallback, secret: str) -> VerificationResult:
        txnid = _field(callback, "txnid")
        status = _field(callback, "status")
        base = dict(
            status=status or None,
            transaction_id=txnid or None,
            gateway_transaction_id=_field(callback, "mihpayid") or None,
            amount=_field(callback, "amount") or None,
        )

        if not txnid or not status:
            logger.warning("Callback lacks txnid or status, verification skipped")
            return VerificationResult(is_valid=False, skipped=True, message="verification skipped", **base)

        received = _field(callback, "hash")
        if not received:
            logger.warning(f"Callback for {txnid} carries no hash")
            return VerificationResult(is_valid=False, message="missing hash", **base)

        expected = compute_response_hash(callback, self.merchant_key, secret)
        if not hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8")):
            logger.error(f"Callback hash mismatch for {txnid}")
            return VerificationResult(is_valid=False, message="hash mismatch", **base)

        logger.info(f"Callback for {txnid} verified with status {status}")
        return VerificationResult(is_valid=True, message="verified", **base)
