"""
Status polling for transactions left in PENDING.

Each tracked transaction has its own countdown. When it reaches zero the
backend check-status endpoint is called; a still-processing answer widens the
countdown, a final answer settles the state machine and stops tracking.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional, Set

from common.error_handling import (
    LocalError,
    PERSISTENT_NOTICE_MESSAGE,
    TRANSIENT_NOTICE_MESSAGE,
    TransientNetworkError,
)
from common.retry import RetryConfig, TRANSACTION_FETCH_RETRY_CONFIG, retry_async
from common.schemas import (
    OutcomeRecord,
    PaymentType,
    PendingPayload,
    TransactionState,
    TransactionStatusResult,
)

from payment_service.backend_client import BackendClient
from payment_service.pending_store import PendingPayloadStore
from payment_service.state_machine import TransactionRegistry, TransactionStateMachine, user_message

logger = logging.getLogger(__name__)

@dataclass
class PollNotice:
    transaction_id: str
    message: str
    persistent: bool
    consecutive_failures: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

NoticeSink = Callable[[PollNotice], None]

def payload_from_transaction(transaction_id: str, data: Dict[str, Any]) -> PendingPayload:
    """Rebuild recovery data from a backend transaction record."""
    try:
        amount = Decimal(str(data.get("amount") or data.get("txnAmt") or "0"))
    except InvalidOperation:
        amount = Decimal("0")
    operator = data.get("operatorId") or 0
    return PendingPayload(
        transaction_id=transaction_id,
        field1=data.get("field1") or data.get("mobile") or data.get("mobileNumber"),
        view_bill_response=data.get("viewBillResponse") or {},
        validity=data.get("validity"),
        operator_id=int(operator) if str(operator).isdigit() else 0,
        circle_id=data.get("circleId"),
        amount=amount,
        payment_type=PaymentType.GATEWAY,
        original_request_params=data,
    )

class StatusPoller:
    def __init__(
        self,
        backend: BackendClient,
        store: PendingPayloadStore,
        registry: TransactionRegistry,
        interval: float = 30.0,
        extended_interval: float = 60.0,
        failure_escalation: int = 3,
        tick_seconds: float = 1.0,
        notice_sink: Optional[NoticeSink] = None,
        retry_config: RetryConfig = TRANSACTION_FETCH_RETRY_CONFIG,
    ):
        self.backend = backend
        self.store = store
        self.registry = registry
        self.interval = interval
        self.extended_interval = extended_interval
        self.failure_escalation = failure_escalation
        self.tick_seconds = tick_seconds
        self.notice_sink = notice_sink
        self.retry_config = retry_config

        # Latest notice per tracked transaction
        self.notices: Dict[str, PollNotice] = {}
        self._countdowns: Dict[str, float] = {}
        self._resets: Dict[str, int] = {}
        self._failures: Dict[str, int] = {}
        self._in_flight: Set[str] = set()
        self._task: Optional[asyncio.Task] = None

    # -- lifecycle -------------------------------------------------------

    def start(self, transaction_id: Optional[str] = None) -> None:
        """Start the countdown loop and optionally begin tracking a transaction."""
        if transaction_id is not None:
            self.track(transaction_id)
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
            logger.info("Status poller started")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Status poller stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def track(self, transaction_id: str) -> None:
        if transaction_id not in self._countdowns:
            self._countdowns[transaction_id] = self.interval
            self._resets.setdefault(transaction_id, 0)
            self._failures.setdefault(transaction_id, 0)
            logger.info(f"Tracking {transaction_id}, first check in {self.interval:.0f}s")

    def untrack(self, transaction_id: str) -> None:
        self._countdowns.pop(transaction_id, None)
        self._resets.pop(transaction_id, None)
        self._failures.pop(transaction_id, None)
        self.notices.pop(transaction_id, None)

    def is_tracking(self, transaction_id: str) -> bool:
        return transaction_id in self._countdowns

    def countdown(self, transaction_id: str) -> Optional[float]:
        return self._countdowns.get(transaction_id)

    def reset_count(self, transaction_id: str) -> int:
        return self._resets.get(transaction_id, 0)

    def consecutive_failures(self, transaction_id: str) -> int:
        return self._failures.get(transaction_id, 0)

    def is_polling(self, transaction_id: str) -> bool:
        return transaction_id in self._in_flight

    # -- countdown -------------------------------------------------------

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            try:
                await self.advance(self.tick_seconds)
            except Exception:
                logger.exception("Status poller tick failed")

    async def advance(self, seconds: float) -> None:
        """Move every countdown forward and poll the ones that expire."""
        due = []
        for transaction_id in list(self._countdowns):
            remaining = self._countdowns[transaction_id] - seconds
            self._countdowns[transaction_id] = remaining
            if remaining <= 0:
                self._countdowns[transaction_id] = self.interval
                due.append(transaction_id)
        if due:
            await asyncio.gather(*(self.poll(transaction_id) for transaction_id in due))

    def _reset_countdown(self, transaction_id: str, seconds: float) -> None:
        if transaction_id in self._countdowns:
            self._countdowns[transaction_id] = seconds
            self._resets[transaction_id] = self._resets.get(transaction_id, 0) + 1

    # -- polling ---------------------------------------------------------

    async def resolve_payload(self, transaction_id: str) -> Optional[PendingPayload]:
        """Stored payload for this id, else a backend re-fetch, else whatever the slot holds."""
        payload = self.store.load_for(transaction_id)
        if payload is not None:
            return payload

        try:
            data = await retry_async(self.backend.fetch_transaction, self.retry_config, transaction_id)
        except TransientNetworkError as e:
            logger.warning(f"Could not re-fetch transaction {transaction_id}: {e.message}")
            data = None
        if data:
            logger.info(f"Recovered payload for {transaction_id} from backend")
            return payload_from_transaction(transaction_id, data)

        return self.store.load()

    async def poll(self, transaction_id: str) -> Optional[TransactionStatusResult]:
        """Run one status check. Returns None if dropped or if the check failed."""
        if transaction_id in self._in_flight:
            logger.info(f"Poll already in flight for {transaction_id}, dropping request")
            return None

        machine = self.registry.get_or_create(transaction_id, TransactionState.PENDING)
        if machine.is_final:
            self.untrack(transaction_id)
            return None

        self._in_flight.add(transaction_id)
        try:
            payload = await self.resolve_payload(transaction_id)
            result = await self.backend.check_status(transaction_id, payload)
        except TransientNetworkError as e:
            self._on_transient_failure(transaction_id, e)
            return None
        except LocalError as e:
            logger.error(f"Local error while polling {transaction_id}: {e.message}")
            machine.mark_error(e)
            self.untrack(transaction_id)
            return None
        finally:
            self._in_flight.discard(transaction_id)

        if self.is_tracking(transaction_id):
            self._failures[transaction_id] = 0
            self.notices.pop(transaction_id, None)
        state = machine.apply_poll_result(result)
        logger.info(f"Poll for {transaction_id} returned {result.transaction_status}, state {state.value}")

        if machine.is_final:
            self.untrack(transaction_id)
            self._record_outcome(machine)
        else:
            self._reset_countdown(transaction_id, self.extended_interval)
        return result

    def _on_transient_failure(self, transaction_id: str, error: TransientNetworkError) -> None:
        failures = self._failures.get(transaction_id, 0) + 1
        self._reset_countdown(transaction_id, self.interval)

        persistent = failures >= self.failure_escalation
        notice = PollNotice(
            transaction_id=transaction_id,
            message=PERSISTENT_NOTICE_MESSAGE if persistent else TRANSIENT_NOTICE_MESSAGE,
            persistent=persistent,
            consecutive_failures=failures,
        )
        logger.warning(f"Poll for {transaction_id} failed ({failures} in a row): {error.message}")
        if self.is_tracking(transaction_id):
            self._failures[transaction_id] = failures
            self.notices[transaction_id] = notice
        if self.notice_sink is not None:
            self.notice_sink(notice)

    def _record_outcome(self, machine: TransactionStateMachine) -> None:
        outcome = OutcomeRecord(
            transaction_id=machine.transaction_id,
            state=machine.state,
            reason=machine.reason,
            message=user_message(machine.state, machine.reason, machine.error_code),
        )
        try:
            self.store.record_outcome(outcome)
        except LocalError as e:
            logger.error(f"Could not record outcome for {machine.transaction_id}: {e.message}")
