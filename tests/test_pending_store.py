#!/usr/bin/env python3
"""
Unit tests for the single-slot pending payload store
"""

import json
import unittest
from decimal import Decimal

from common.error_handling import LocalError
from common.redis_client import RedisClient
from common.schemas import OutcomeRecord, PaymentType, PendingPayload, TransactionState
from payment_service.pending_store import PendingPayloadStore

from helpers import BrokenRedis, FakeRedis, make_store

def payload(txn_id: str, amount: str = "199") -> PendingPayload:
    return PendingPayload(
        transaction_id=txn_id,
        field1="9876543210",
        view_bill_response={"data": [], "success": "true"},
        validity=28,
        operator_id=4,
        circle_id="MH",
        amount=Decimal(amount),
        payment_type=PaymentType.UPI,
    )

class TestPendingPayloadStore(unittest.TestCase):
    """Persistence of recovery data"""

    def setUp(self):
        self.fake = FakeRedis()
        self.store = make_store(self.fake)

    def test_empty_store(self):
        self.assertIsNone(self.store.load())
        self.assertIsNone(self.store.last_outcome())

    def test_round_trip(self):
        self.store.save(payload("A"))
        loaded = self.store.load()
        self.assertEqual(loaded.transaction_id, "A")
        self.assertEqual(loaded.amount, Decimal("199"))
        self.assertEqual(loaded.payment_type, PaymentType.UPI)
        self.assertEqual(loaded.view_bill_response, {"data": [], "success": "true"})

    def test_single_slot_overwrite(self):
        self.store.save(payload("A"))
        self.store.save(payload("B", "49"))
        self.assertEqual(self.store.load().transaction_id, "B")
        self.assertIsNone(self.store.load_for("A"))
        self.assertEqual(self.store.load_for("B").amount, Decimal("49"))
        self.assertEqual(list(self.fake.data), ["pendingRechargePayload"])

    def test_survives_new_store_instance(self):
        self.store.save(payload("A"))
        reopened = PendingPayloadStore(RedisClient(client=self.fake), "pendingRechargePayload", "lastPaymentOutcome")
        self.assertEqual(reopened.load().transaction_id, "A")

    def test_clear(self):
        self.store.save(payload("A"))
        self.store.clear()
        self.assertIsNone(self.store.load())

    def test_malformed_payload_ignored(self):
        self.fake.data["pendingRechargePayload"] = json.dumps({"amount": "x"})
        self.assertIsNone(self.store.load())
        self.fake.data["pendingRechargePayload"] = "{not json"
        self.assertIsNone(self.store.load())

    def test_outcome_record(self):
        self.store.record_outcome(OutcomeRecord(transaction_id="A", state=TransactionState.SUCCESS,
                                                message="Payment successful."))
        outcome = self.store.last_outcome()
        self.assertEqual(outcome.transaction_id, "A")
        self.assertEqual(outcome.state, TransactionState.SUCCESS)

    def test_redis_failure_is_local_error(self):
        store = make_store(BrokenRedis())
        with self.assertRaises(LocalError):
            store.save(payload("A"))
        with self.assertRaises(LocalError):
            store.load()


if __name__ == "__main__":
    unittest.main()
