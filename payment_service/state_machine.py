"""
Lifecycle of one payment attempt.

    SUBMITTED -> AWAITING_REDIRECT -> PENDING -> SUCCESS | FAILED
                         \\-> SUCCESS | FAILED
    any non-final state -> ERROR on local failures

SUCCESS and FAILED are final. ERROR ignores callbacks and backend results
but still accepts poll results, since polling is re-offered after an error.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from common.error_handling import (
    ErrorCodes,
    GENERIC_ERROR_MESSAGE,
    VERIFICATION_FAILED_MESSAGE,
    BusinessLogicError,
    GatewayRejected,
    ServiceError,
    VerificationFailed,
)
from common.schemas import (
    TransactionSnapshot,
    TransactionState,
    TransactionStatusResult,
    VerificationResult,
)

logger = logging.getLogger(__name__)

FINAL_STATES = frozenset({TransactionState.SUCCESS, TransactionState.FAILED})
PROCESSING_STATES = frozenset({
    TransactionState.SUBMITTED,
    TransactionState.AWAITING_REDIRECT,
    TransactionState.PENDING,
})
# States in which a callback or a direct backend result can still decide the outcome
_REDIRECT_STATES = frozenset({TransactionState.SUBMITTED, TransactionState.AWAITING_REDIRECT})

SUCCESS_MESSAGE = "Payment successful."
PENDING_MESSAGE = "Your payment is being processed. We'll check the status again shortly."
FAILED_MESSAGE = "Payment failed."
AWAITING_MESSAGE = "Waiting for payment confirmation."

StateListener = Callable[["TransactionStateMachine", TransactionState, TransactionState], None]

def user_message(state: TransactionState, reason: Optional[str] = None, error_code: Optional[str] = None) -> str:
    """Map a state to one of the fixed user-facing messages."""
    if state == TransactionState.SUCCESS:
        return SUCCESS_MESSAGE
    if state == TransactionState.PENDING:
        return PENDING_MESSAGE
    if state == TransactionState.FAILED:
        if error_code == ErrorCodes.VERIFICATION_FAILED:
            return VERIFICATION_FAILED_MESSAGE
        return reason or FAILED_MESSAGE
    if state == TransactionState.ERROR:
        return GENERIC_ERROR_MESSAGE
    return AWAITING_MESSAGE

class TransactionStateMachine:
    def __init__(self, transaction_id: str, state: TransactionState = TransactionState.SUBMITTED,
                 listeners: Optional[List[StateListener]] = None):
        self.transaction_id = transaction_id
        self.state = state
        self.reason: Optional[str] = None
        self.error_code: Optional[str] = None
        self.verified = False
        self.updated_at = datetime.now(timezone.utc)
        self.history: List[TransactionState] = [state]
        self._listeners: List[StateListener] = list(listeners or [])

    @property
    def is_final(self) -> bool:
        return self.state in FINAL_STATES

    @property
    def is_processing(self) -> bool:
        return self.state in PROCESSING_STATES

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _transition(self, new_state: TransactionState, reason: Optional[str] = None,
                    error_code: Optional[str] = None) -> TransactionState:
        old_state = self.state
        self.state = new_state
        self.reason = reason
        self.error_code = error_code
        self.updated_at = datetime.now(timezone.utc)
        self.history.append(new_state)
        logger.info(f"Transaction {self.transaction_id}: {old_state.value} -> {new_state.value}"
                    + (f" ({error_code})" if error_code else ""))
        for listener in self._listeners:
            try:
                listener(self, old_state, new_state)
            except Exception:
                logger.exception(f"State listener failed for {self.transaction_id}")
        return new_state

    def _reject(self, error: BusinessLogicError) -> TransactionState:
        return self._transition(TransactionState.FAILED, error.message, error.code)

    def _ignore(self, event: str) -> TransactionState:
        logger.info(f"Transaction {self.transaction_id} in {self.state.value}, ignoring {event}")
        return self.state

    def mark_redirected(self) -> TransactionState:
        if self.state != TransactionState.SUBMITTED:
            return self._ignore("redirect hand-off")
        return self._transition(TransactionState.AWAITING_REDIRECT)

    def mark_pending(self, reason: Optional[str] = None) -> TransactionState:
        """Inconclusive channel result; only a poll can finalize from here."""
        if self.state not in _REDIRECT_STATES:
            return self._ignore("inconclusive channel result")
        return self._transition(TransactionState.PENDING, reason)

    def apply_callback(self, result: VerificationResult, vendor_message: Optional[str] = None) -> TransactionState:
        if self.state not in _REDIRECT_STATES:
            return self._ignore("gateway callback")

        if result.skipped:
            return self._transition(TransactionState.PENDING, "Callback could not be verified",
                                    ErrorCodes.VERIFICATION_SKIPPED)
        if not result.is_valid:
            return self._reject(VerificationFailed(self.transaction_id))

        self.verified = True
        status = (result.status or "").lower()
        if status == "success":
            return self._transition(TransactionState.SUCCESS)
        if status == "pending":
            return self._transition(TransactionState.PENDING)
        return self._reject(GatewayRejected(vendor_message or f"Payment {status}", self.transaction_id))

    def apply_backend_result(self, status: Optional[str], message: Optional[str] = None) -> TransactionState:
        """Inner status of a wallet/UPI recharge response."""
        if self.state not in _REDIRECT_STATES:
            return self._ignore("backend result")

        normalized = (status or "").lower()
        if normalized == "success":
            return self._transition(TransactionState.SUCCESS)
        if normalized == "pending":
            return self._transition(TransactionState.PENDING, message)
        return self._reject(GatewayRejected(message or FAILED_MESSAGE, self.transaction_id))

    def apply_poll_result(self, result: TransactionStatusResult) -> TransactionState:
        if self.state not in (TransactionState.PENDING, TransactionState.ERROR):
            return self._ignore(f"poll result {result.transaction_status}")

        status = result.transaction_status.upper()
        if status == "SUCCESS":
            return self._transition(TransactionState.SUCCESS)
        if status == "FAILED":
            return self._reject(GatewayRejected(result.message or FAILED_MESSAGE, self.transaction_id))
        if self.state == TransactionState.ERROR:
            return self._transition(TransactionState.PENDING)
        logger.info(f"Transaction {self.transaction_id} still {status or 'unknown'}")
        return self.state

    def mark_error(self, error: Exception) -> TransactionState:
        if self.is_final:
            return self._ignore(f"local error {type(error).__name__}")
        if isinstance(error, (BusinessLogicError, ServiceError)):
            code = error.code
        else:
            code = ErrorCodes.LOCAL_ERROR
        if self.state == TransactionState.ERROR:
            self.error_code = code
            return self.state
        return self._transition(TransactionState.ERROR, GENERIC_ERROR_MESSAGE, code)

    def snapshot(self) -> TransactionSnapshot:
        return TransactionSnapshot(
            transaction_id=self.transaction_id,
            state=self.state,
            reason=self.reason,
            error_code=self.error_code,
            verified=self.verified,
            updated_at=self.updated_at,
            user_message=user_message(self.state, self.reason, self.error_code),
        )

class TransactionRegistry:
    """One state machine per transaction id. Only the most recently finished
    machines are kept; the last outcome itself lives in the pending store."""

    def __init__(self, listeners: Optional[List[StateListener]] = None, max_finished: int = 500):
        self._machines: Dict[str, TransactionStateMachine] = {}
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self._listeners = list(listeners or [])
        self.max_finished = max_finished

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)
        for machine in self._machines.values():
            machine.add_listener(listener)

    def _on_transition(self, machine: TransactionStateMachine, old_state: TransactionState,
                       new_state: TransactionState) -> None:
        if new_state not in FINAL_STATES:
            return
        self._finished[machine.transaction_id] = None
        while len(self._finished) > self.max_finished:
            evicted, _ = self._finished.popitem(last=False)
            self._machines.pop(evicted, None)
            logger.debug(f"Evicted finished transaction {evicted}")

    def get(self, transaction_id: str) -> Optional[TransactionStateMachine]:
        return self._machines.get(transaction_id)

    def get_or_create(self, transaction_id: str,
                      initial_state: TransactionState = TransactionState.SUBMITTED) -> TransactionStateMachine:
        machine = self._machines.get(transaction_id)
        if machine is None:
            machine = TransactionStateMachine(transaction_id, initial_state, self._listeners)
            machine.add_listener(self._on_transition)
            self._machines[transaction_id] = machine
        return machine

    def rename(self, old_id: str, new_id: str) -> Optional[TransactionStateMachine]:
        """Re-key a machine once the backend assigns its own transaction id."""
        machine = self._machines.pop(old_id, None)
        if machine is None or old_id == new_id:
            if machine is not None:
                self._machines[old_id] = machine
            return machine
        machine.transaction_id = new_id
        self._machines[new_id] = machine
        if old_id in self._finished:
            del self._finished[old_id]
            self._finished[new_id] = None
        return machine

    def __contains__(self, transaction_id: str) -> bool:
        return transaction_id in self._machines

    def __len__(self) -> int:
        return len(self._machines)
