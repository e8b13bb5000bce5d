from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Literal, Mapping, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field

# Raw gateway callback, untrusted until verified
GatewayCallback = Mapping[str, Any]

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class PaymentType(str, Enum):
    WALLET = "wallet"
    UPI = "upi"
    GATEWAY = "gateway"

class PaymentRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    # NaN is let through here so the signer can reject it with a payment error
    amount: Decimal = Field(allow_inf_nan=True)
    product_info: str = ""
    payer_name: str = ""
    payer_email: str = ""
    payer_phone: str = ""
    transaction_id: Optional[str] = None
    extension_fields: Tuple[str, ...] = Field(default=(), max_length=5)
    success_url: Optional[str] = None
    failure_url: Optional[str] = None
    cancel_url: Optional[str] = None

class SignedPaymentRequest(BaseModel):
    """Gateway form fields plus signature. The salt never appears here."""
    model_config = ConfigDict(frozen=True)

    key: str
    txnid: str
    amount: str
    productinfo: str
    firstname: str
    email: str
    phone: str = ""
    surl: str
    furl: str
    curl: str
    udf1: str = ""
    udf2: str = ""
    udf3: str = ""
    udf4: str = ""
    udf5: str = ""
    hash: str
    service_provider: str

    def form_fields(self) -> Dict[str, str]:
        return self.model_dump()

class VerificationResult(BaseModel):
    is_valid: bool
    skipped: bool = False
    status: Optional[str] = None
    transaction_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    amount: Optional[str] = None
    message: str = ""

class PendingPayload(BaseModel):
    transaction_id: str
    field1: Optional[str] = None
    view_bill_response: Dict[str, Any] = Field(default_factory=dict)
    validity: Optional[int] = None
    operator_id: int = 0
    circle_id: Optional[str] = None
    amount: Decimal = Decimal("0")
    payment_type: PaymentType = PaymentType.GATEWAY
    created_at: datetime = Field(default_factory=utcnow)
    original_request_params: Dict[str, Any] = Field(default_factory=dict)

class TransactionStatusResult(BaseModel):
    transaction_status: str
    message: str = "Status check completed"
    request_id: Optional[str] = None
    reference_id: Optional[str] = None
    vendor_ref_id: Optional[str] = None
    commission: float = 0
    category_id: Optional[Any] = None

class TransactionState(str, Enum):
    SUBMITTED = "submitted"
    AWAITING_REDIRECT = "awaiting_redirect"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"

class TransactionSnapshot(BaseModel):
    transaction_id: str
    state: TransactionState
    reason: Optional[str] = None
    error_code: Optional[str] = None
    verified: bool = False
    updated_at: datetime = Field(default_factory=utcnow)
    user_message: str = ""

class OutcomeRecord(BaseModel):
    transaction_id: str
    state: TransactionState
    reason: Optional[str] = None
    message: str = ""
    resolved_at: datetime = Field(default_factory=utcnow)

class DeepLinkEvent(BaseModel):
    raw_url: str
    scheme: str
    is_intent_wrapper: bool = False
    unwrapped_url: Optional[str] = None
    package: Optional[str] = None

class NavigationDecision(BaseModel):
    allow: bool
    dispatched_externally: bool = False

class BridgeMessage(BaseModel):
    type: Literal["upi-link", "goto-home"]
    url: Optional[str] = None

class BackendEnvelope(BaseModel):
    status: Literal["success", "failure", "unknown"]
    data: Any = None
    message: str = ""
    raw_status: Optional[str] = None
    status_code: Optional[Any] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @property
    def failed(self) -> bool:
        return self.status == "failure"
