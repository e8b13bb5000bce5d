"""
Shared test doubles: an in-memory Redis and a scripted recharge backend.
"""
from typing import Any, Dict, List, Optional

import redis
import requests

from common.error_handling import TransientNetworkError
from common.retry import RetryConfig
from common.redis_client import RedisClient
from common.schemas import PendingPayload, TransactionStatusResult
from payment_service.pending_store import PendingPayloadStore
from payment_service.poller import StatusPoller
from payment_service.state_machine import TransactionRegistry

MERCHANT_KEY = "test-key"
SALT = "test-salt"

class FakeRedis:
    """Just enough of redis.Redis for RedisClient"""

    def __init__(self):
        self.data: Dict[str, str] = {}

    def ping(self):
        return True

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value
        return True

    def setex(self, key, ttl, value):
        self.data[key] = value
        return True

    def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

def make_store(fake: Optional[FakeRedis] = None) -> PendingPayloadStore:
    return PendingPayloadStore(RedisClient(client=fake or FakeRedis()),
                               "pendingRechargePayload", "lastPaymentOutcome")

class StubBackend:
    """Scripted stand-in for BackendClient. Each script entry is a status
    string or an exception instance to raise."""

    def __init__(self, statuses: Optional[List[Any]] = None, transaction: Optional[Dict[str, Any]] = None):
        self.statuses = list(statuses or [])
        self.transaction = transaction
        self.status_calls: List[Dict[str, Any]] = []
        self.fetch_calls: List[str] = []
        self.recharge_calls: List[Dict[str, Any]] = []
        self.recharge_envelope = None
        self.payment_link: Optional[str] = None
        self.gate = None

    async def check_status(self, transaction_id: str, payload: Optional[PendingPayload]) -> TransactionStatusResult:
        self.status_calls.append({"txn_id": transaction_id, "payload": payload})
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.statuses.pop(0) if self.statuses else "PENDING"
        if isinstance(outcome, Exception):
            raise outcome
        return TransactionStatusResult(transaction_status=outcome, message=f"status {outcome}",
                                       request_id=transaction_id)

    async def fetch_transaction(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        self.fetch_calls.append(transaction_id)
        if isinstance(self.transaction, Exception):
            raise self.transaction
        return self.transaction

    async def recharge(self, payload):
        self.recharge_calls.append(payload)
        if isinstance(self.recharge_envelope, Exception):
            raise self.recharge_envelope
        return self.recharge_envelope

    async def fetch_payment_link(self, upi_token: str) -> Optional[str]:
        return self.payment_link

def network_error() -> TransientNetworkError:
    return TransientNetworkError("connection refused")

class BrokenRedis(FakeRedis):
    def get(self, key):
        raise redis.ConnectionError("down")

    def set(self, key, value):
        raise redis.ConnectionError("down")

NO_RETRY = RetryConfig(max_attempts=1, base_delay=0, jitter=False)

def make_poller(backend, store=None, registry=None) -> StatusPoller:
    return StatusPoller(
        backend,
        store or make_store(),
        registry if registry is not None else TransactionRegistry(),
        interval=30,
        extended_interval=60,
        failure_escalation=3,
        retry_config=NO_RETRY,
    )

class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body
        self.text = "" if body is None else str(body)

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

class FakeHttp:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, headers=None, params=None, json=None, timeout=None):
        self.calls.append({"method": method, "url": url, "headers": headers, "params": params, "json": json})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response
