"""
Feeds the three return channels (gateway callback, popup window, embedded
browser) and direct backend results into the per-transaction state machines.
"""
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl

from pydantic import BaseModel, Field

from common.error_handling import (
    BusinessLogicError,
    ErrorCodes,
    LocalError,
    PaymentValidationError,
    TransientNetworkError,
)
from common.schemas import (
    OutcomeRecord,
    PaymentRequest,
    PaymentType,
    PendingPayload,
    SignedPaymentRequest,
    TransactionSnapshot,
    TransactionState,
)

from payment_service.backend_client import BackendClient
from payment_service.deeplink import DeepLinkInterceptor
from payment_service.pending_store import PendingPayloadStore
from payment_service.poller import StatusPoller
from payment_service.popup_monitor import PopupMonitor, PopupProbe
from payment_service.signer import RequestSigner, format_amount, generate_transaction_id
from payment_service.state_machine import TransactionRegistry, TransactionStateMachine, user_message
from payment_service.verifier import CallbackVerifier

logger = logging.getLogger(__name__)

GATEWAY_PAYMENT_METHOD = "payu"

class RechargeContext(BaseModel):
    """Recharge details captured by the plan/bill screens."""
    mobile: Optional[str] = None
    operator_id: int = 0
    circle_id: Optional[str] = None
    validity: Optional[int] = None
    view_bill_response: Dict[str, Any] = Field(default_factory=dict)
    coupon_id1: Optional[int] = None
    coupon_id2: Optional[int] = None
    coupon_desc: Optional[str] = None
    platform: str = "web"
    original_params: Dict[str, Any] = Field(default_factory=dict)

class RechargeOutcome(BaseModel):
    snapshot: TransactionSnapshot
    payment_url: Optional[str] = None
    request_id: Optional[str] = None
    reference_id: Optional[str] = None
    vendor_ref_id: Optional[str] = None
    commission: float = 0

def merge_callback_params(route_params: Optional[Mapping[str, Any]], raw_query: Optional[str]) -> Dict[str, Any]:
    """Route params with the raw location query laid over them; the query wins."""
    merged = dict(route_params or {})
    if raw_query:
        merged.update(parse_qsl(raw_query.lstrip("?"), keep_blank_values=True))
    return merged

def fallback_callback_params() -> Dict[str, Any]:
    fallback_id = f"FALLBACK_{int(time.time() * 1000)}"
    return {
        "txn_id": fallback_id,
        "transactionId": fallback_id,
        "amount": "0",
        "productInfo": "",
        "paymentStatus": "cancelled",
        "paymentMethod": GATEWAY_PAYMENT_METHOD,
        "isPaymentVerified": False,
    }

class PaymentOrchestrator:
    def __init__(
        self,
        signer: RequestSigner,
        verifier: CallbackVerifier,
        store: PendingPayloadStore,
        registry: TransactionRegistry,
        backend: BackendClient,
        poller: StatusPoller,
        popup_monitor: PopupMonitor,
        interceptor: DeepLinkInterceptor,
        secret: str,
    ):
        self.signer = signer
        self.verifier = verifier
        self.store = store
        self.registry = registry
        self.backend = backend
        self.poller = poller
        self.popup_monitor = popup_monitor
        self.interceptor = interceptor
        self._secret = secret
        self._probes: Dict[str, PopupProbe] = {}

    # -- helpers ---------------------------------------------------------

    def _machine(self, transaction_id: str) -> TransactionStateMachine:
        machine = self.registry.get(transaction_id)
        if machine is None:
            raise BusinessLogicError(
                ErrorCodes.TRANSACTION_NOT_FOUND,
                f"Unknown transaction {transaction_id}",
                field="transaction_id",
            )
        return machine

    def _after_transition(self, machine: TransactionStateMachine) -> None:
        if machine.state == TransactionState.PENDING:
            self.poller.start(machine.transaction_id)
        elif machine.is_final:
            self.poller.untrack(machine.transaction_id)
            self._record_outcome(machine)

    def _record_outcome(self, machine: TransactionStateMachine) -> None:
        try:
            self.store.record_outcome(OutcomeRecord(
                transaction_id=machine.transaction_id,
                state=machine.state,
                reason=machine.reason,
                message=user_message(machine.state, machine.reason, machine.error_code),
            ))
        except LocalError as e:
            logger.error(f"Could not record outcome for {machine.transaction_id}: {e.message}")

    @staticmethod
    def _pending_payload(transaction_id: str, amount, payment_type: PaymentType,
                         context: RechargeContext) -> PendingPayload:
        return PendingPayload(
            transaction_id=transaction_id,
            field1=context.mobile,
            view_bill_response=context.view_bill_response,
            validity=context.validity,
            operator_id=context.operator_id,
            circle_id=context.circle_id,
            amount=Decimal(str(amount)),
            payment_type=payment_type,
            original_request_params=context.original_params,
        )

    # -- gateway path ----------------------------------------------------

    async def start_gateway_payment(self, request: PaymentRequest,
                                    context: Optional[RechargeContext] = None) -> SignedPaymentRequest:
        signed = self.signer.sign(request, self._secret)
        self.store.save(self._pending_payload(signed.txnid, signed.amount, PaymentType.GATEWAY,
                                              context or RechargeContext()))
        machine = self.registry.get_or_create(signed.txnid)
        machine.mark_redirected()
        return signed

    def _load_pending(self) -> Optional[PendingPayload]:
        """Read the pending slot for recovery; an unreadable store means nothing to recover."""
        try:
            return self.store.load()
        except LocalError as e:
            logger.error(f"Pending payload unavailable during callback: {e.message}")
            return None

    async def handle_callback(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        """Verify a gateway callback and return the normalized pending parameter set."""
        try:
            result = self.verifier.verify(params, self._secret)
            transaction_id = result.transaction_id
            stored = None
            if not transaction_id:
                stored = self._load_pending()
                transaction_id = stored.transaction_id if stored else generate_transaction_id()
                logger.warning(f"Callback without txnid, recovered id {transaction_id}")

            machine = self.registry.get_or_create(transaction_id)
            vendor_message = params.get("error_Message") or params.get("field9")
            machine.apply_callback(result, vendor_message=vendor_message)
            self._after_transition(machine)

            amount = params.get("amount")
            if not amount:
                stored = stored or self._load_pending()
                if stored is not None and stored.transaction_id == transaction_id and stored.amount > 0:
                    amount = format_amount(stored.amount)
            return {
                "txn_id": transaction_id,
                "transactionId": transaction_id,
                "amount": str(amount or "0"),
                "productInfo": params.get("productinfo") or "",
                "paymentStatus": result.status or "cancelled",
                "paymentMethod": GATEWAY_PAYMENT_METHOD,
                "isPaymentVerified": result.is_valid,
            }
        except Exception:
            logger.exception("Failed to process gateway callback")
            return fallback_callback_params()

    # -- wallet / UPI path -----------------------------------------------

    async def submit_recharge(self, payment_type: PaymentType, amount,
                              context: RechargeContext) -> RechargeOutcome:
        if payment_type == PaymentType.GATEWAY:
            raise PaymentValidationError("Gateway payments are signed, not submitted as recharges", field="payment_type")
        formatted = format_amount(amount)
        client_id = generate_transaction_id()
        self.store.save(self._pending_payload(client_id, formatted, payment_type, context))
        machine = self.registry.get_or_create(client_id)

        body = {
            "amount": float(formatted),
            "operatorId": context.operator_id,
            "circleId": context.circle_id,
            "validity": context.validity,
            "couponId1": context.coupon_id1,
            "couponId2": context.coupon_id2,
            "payType": payment_type.value,
            "mobile": context.mobile,
            "couponDisc": context.coupon_desc,
            "platform": context.platform,
            "viewBillResponse": context.view_bill_response,
        }
        try:
            envelope = await self.backend.recharge(body)
        except (TransientNetworkError, LocalError) as e:
            logger.error(f"Recharge submission {client_id} failed: {e.message}")
            machine.mark_error(e)
            return RechargeOutcome(snapshot=machine.snapshot())

        data = envelope.data if isinstance(envelope.data, dict) else {}
        request_id = data.get("requestId")
        if request_id and str(request_id) != client_id:
            machine = self.registry.rename(client_id, str(request_id))
            self.store.save(self._pending_payload(machine.transaction_id, formatted, payment_type, context))

        outcome = RechargeOutcome(
            snapshot=machine.snapshot(),
            request_id=request_id,
            reference_id=data.get("referenceId"),
            vendor_ref_id=data.get("vendorRefId"),
            commission=data.get("commission") or 0,
        )
        if envelope.failed:
            machine.apply_backend_result("failed", envelope.message)
            self._after_transition(machine)
            return outcome.model_copy(update={"snapshot": machine.snapshot()})
        if not envelope.ok:
            machine.mark_pending(envelope.message)
            self._after_transition(machine)
            return outcome.model_copy(update={"snapshot": machine.snapshot()})

        inner_status = str(data.get("status") or "").lower()
        upi_token = data.get("upiToken")
        if payment_type == PaymentType.UPI and upi_token and inner_status in ("success", "pending"):
            return await self._open_upi_link(machine, upi_token, outcome)

        machine.apply_backend_result(inner_status, data.get("message"))
        self._after_transition(machine)
        return outcome.model_copy(update={"snapshot": machine.snapshot()})

    async def _open_upi_link(self, machine: TransactionStateMachine, upi_token: str,
                             outcome: RechargeOutcome) -> RechargeOutcome:
        """The recharge is not paid yet; hand the payment page to the embedded browser."""
        try:
            payment_url = await self.backend.fetch_payment_link(upi_token)
        except (TransientNetworkError, LocalError) as e:
            machine.mark_error(e)
            return outcome.model_copy(update={"snapshot": machine.snapshot()})

        if not payment_url:
            machine.apply_backend_result("failed", "Failed to generate payment link. Please try again.")
            self._after_transition(machine)
            return outcome.model_copy(update={"snapshot": machine.snapshot()})

        machine.mark_redirected()
        # Only the poller can tell when the embedded payment completes
        machine.mark_pending("Awaiting UPI payment")
        self._after_transition(machine)
        return outcome.model_copy(update={"snapshot": machine.snapshot(), "payment_url": payment_url})

    # -- popup and embedded browser channels -----------------------------

    def watch_popup(self, transaction_id: str) -> PopupProbe:
        machine = self._machine(transaction_id)
        machine.mark_redirected()
        probe = PopupProbe()
        self._probes[transaction_id] = probe
        self.popup_monitor.watch(transaction_id, probe, on_closed=self._popup_closed)
        return probe

    async def _popup_closed(self, transaction_id: str) -> None:
        self._probes.pop(transaction_id, None)
        machine = self._machine(transaction_id)
        machine.mark_pending("Payment window closed")
        self._after_transition(machine)

    async def handle_popup_closed(self, transaction_id: str, user_confirmed: bool = False) -> TransactionSnapshot:
        """Popup closed without a verifiable callback. A user's own confirmation
        only earns PENDING; the poller decides the outcome."""
        machine = self._machine(transaction_id)
        if user_confirmed:
            logger.info(f"User reports payment {transaction_id} completed, awaiting status check")
        probe = self._probes.pop(transaction_id, None)
        if probe is not None:
            probe.close()
        self.popup_monitor.cancel(transaction_id)
        await self._popup_closed(transaction_id)
        return machine.snapshot()

    async def handle_navigation(self, transaction_id: str, url: str) -> Optional[str]:
        hint = self.interceptor.observe_navigation(url)
        machine = self.registry.get(transaction_id)
        if hint is not None and machine is not None:
            machine.mark_pending(f"Payment page reported {hint}")
            self._after_transition(machine)
        return hint

    # -- status ----------------------------------------------------------

    async def check_now(self, transaction_id: str) -> TransactionSnapshot:
        """Manual "Check Status"."""
        machine = self.registry.get_or_create(transaction_id, TransactionState.PENDING)
        if machine.state in (TransactionState.SUBMITTED, TransactionState.AWAITING_REDIRECT):
            machine.mark_pending("Manual status check")
        if not machine.is_final:
            self.poller.start(transaction_id)
            await self.poller.poll(transaction_id)
        return machine.snapshot()

    def snapshot(self, transaction_id: str) -> TransactionSnapshot:
        return self._machine(transaction_id).snapshot()

    def last_outcome(self) -> Optional[OutcomeRecord]:
        return self.store.last_outcome()

    async def shutdown(self) -> None:
        await self.popup_monitor.cancel_all()
        await self.poller.stop()
