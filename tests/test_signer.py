#!/usr/bin/env python3
"""
Unit tests for gateway request signing and callback verification
"""

import hashlib
import unittest
from decimal import Decimal

from common.error_handling import PaymentValidationError
from common.schemas import PaymentRequest
from payment_service.signer import (
    RequestSigner,
    build_autosubmit_html,
    build_data_uri,
    format_amount,
    generate_transaction_id,
)
from payment_service.verifier import CallbackVerifier, compute_response_hash

from helpers import MERCHANT_KEY, SALT

GOLDEN_REQUEST_HASH = (
    "fa8165c593391d4c90511f0a675842d39902e2db0984f6ae91703c2d4b7f4497"
    "2622b607ecd0f7cf7e68da21d9ef6777d7ea8c08c223118e875a77ff9394ce8f"
)
GOLDEN_RESPONSE_HASH = (
    "69b29f604cdd5244a0a97da3ba9157c6a4044be4c11cef648eab8425de68a9ff"
    "232f223e117d65d4c334f96083c6c0842cc21db3165380a68163622cd56b4a5c"
)

def make_signer() -> RequestSigner:
    return RequestSigner(
        merchant_key=MERCHANT_KEY,
        success_url="https://shop.example/cb?status=success",
        failure_url="https://shop.example/cb?status=failure",
        cancel_url="https://shop.example/cb?status=cancelled",
        default_product_info="Default Product",
        default_payer_name="Customer",
        default_payer_email="customer@example.com",
    )

def sample_request(**overrides) -> PaymentRequest:
    fields = dict(
        amount=Decimal("99.9"),
        product_info="Recharge",
        payer_name="Asha",
        payer_email="asha@example.com",
        transaction_id="T1",
    )
    fields.update(overrides)
    return PaymentRequest(**fields)

def callback_for(signed, status="success", **extra) -> dict:
    callback = {
        "status": status,
        "txnid": signed.txnid,
        "amount": signed.amount,
        "productinfo": signed.productinfo,
        "firstname": signed.firstname,
        "email": signed.email,
        "udf1": signed.udf1,
        "udf2": signed.udf2,
        "udf3": signed.udf3,
        "udf4": signed.udf4,
        "udf5": signed.udf5,
        "mihpayid": "403993715521",
    }
    callback.update(extra)
    return callback

def sign_callback(callback: dict, secret: str = SALT) -> dict:
    signed = dict(callback)
    signed["hash"] = compute_response_hash(callback, MERCHANT_KEY, secret)
    return signed


class TestAmountFormatting(unittest.TestCase):
    """Amount normalization before hashing"""

    def test_two_decimal_places(self):
        self.assertEqual(format_amount(99.9), "99.90")
        self.assertEqual(format_amount("5"), "5.00")
        self.assertEqual(format_amount(Decimal("1.005")), "1.01")

    def test_equivalent_inputs_normalize_identically(self):
        self.assertEqual(format_amount(10), "10.00")
        self.assertEqual(format_amount(10.0), "10.00")
        self.assertEqual(format_amount("10.00"), "10.00")

    def test_idempotent(self):
        for value in (1, 2.5, "3.456", Decimal("1000"), 0.1):
            once = format_amount(value)
            self.assertEqual(format_amount(once), once)

    def test_rejects_invalid_amounts(self):
        for bad in ("NaN", float("nan"), float("inf"), "-inf", 0, -5, "0.001", "abc", None, True):
            with self.assertRaises(PaymentValidationError, msg=f"{bad!r} should be rejected"):
                format_amount(bad)

    def test_rejects_amount_beyond_decimal_precision(self):
        with self.assertRaises(PaymentValidationError) as ctx:
            format_amount(Decimal("1e30"))
        self.assertEqual(ctx.exception.field, "amount")


class TestRequestSigner(unittest.TestCase):
    """Outbound request hash and field set"""

    def setUp(self):
        self.signer = make_signer()

    def test_golden_digest(self):
        signed = self.signer.sign(sample_request(), SALT)
        self.assertEqual(signed.amount, "99.90")
        self.assertEqual(signed.txnid, "T1")
        self.assertEqual(signed.hash, GOLDEN_REQUEST_HASH)

    def test_hash_layout_has_five_empty_slots(self):
        signed = self.signer.sign(sample_request(extension_fields=("a", "b")), SALT)
        expected = "|".join(
            [MERCHANT_KEY, "T1", "99.90", "Recharge", "Asha", "asha@example.com",
             "a", "b", "", "", "", "", "", "", "", "", SALT]
        )
        self.assertEqual(signed.hash, hashlib.sha512(expected.encode()).hexdigest())

    def test_ten_and_ten_point_zero_zero_sign_identically(self):
        a = self.signer.sign(sample_request(amount=Decimal("10")), SALT)
        b = self.signer.sign(sample_request(amount=Decimal("10.00")), SALT)
        self.assertEqual(a.amount, "10.00")
        self.assertEqual(a.hash, b.hash)

    def test_secret_never_in_signed_request(self):
        signed = self.signer.sign(sample_request(), SALT)
        self.assertNotIn(SALT, signed.form_fields().values())
        self.assertNotIn(SALT, signed.model_dump_json())

    def test_defaults_applied_and_signed(self):
        signed = self.signer.sign(sample_request(product_info="", payer_name="", payer_email=""), SALT)
        self.assertEqual(signed.productinfo, "Default Product")
        self.assertEqual(signed.firstname, "Customer")
        self.assertEqual(signed.email, "customer@example.com")
        result = CallbackVerifier(MERCHANT_KEY).verify(sign_callback(callback_for(signed)), SALT)
        self.assertTrue(result.is_valid)

    def test_generates_transaction_id_when_missing(self):
        first = self.signer.sign(sample_request(transaction_id=None), SALT)
        second = self.signer.sign(sample_request(transaction_id=None), SALT)
        self.assertTrue(first.txnid.startswith("TXN"))
        self.assertNotEqual(first.txnid, second.txnid)

    def test_generated_ids_strictly_increase(self):
        ids = [int(generate_transaction_id()[3:]) for _ in range(50)]
        self.assertEqual(ids, sorted(set(ids)))

    def test_callback_urls_fixed_unless_overridden(self):
        signed = self.signer.sign(sample_request(), SALT)
        self.assertEqual(signed.surl, "https://shop.example/cb?status=success")
        self.assertEqual(signed.curl, "https://shop.example/cb?status=cancelled")
        custom = self.signer.sign(sample_request(failure_url="https://other.example/f"), SALT)
        self.assertEqual(custom.furl, "https://other.example/f")

    def test_rejects_nan_before_hashing(self):
        with self.assertRaises(PaymentValidationError):
            self.signer.sign(sample_request(amount=Decimal("NaN")), SALT)

    def test_autosubmit_page_escapes_values(self):
        signed = self.signer.sign(sample_request(product_info='Plan "<b>"'), SALT)
        page = build_autosubmit_html(signed, "https://secure.payu.in/_payment")
        self.assertIn('action="https://secure.payu.in/_payment"', page)
        self.assertIn("&lt;b&gt;", page)
        self.assertIn(signed.hash, page)
        self.assertTrue(build_data_uri(page).startswith("data:text/html;charset=utf-8,"))


class TestCallbackVerifier(unittest.TestCase):
    """Reverse hash verification of gateway callbacks"""

    def setUp(self):
        self.signer = make_signer()
        self.verifier = CallbackVerifier(MERCHANT_KEY)
        self.signed = self.signer.sign(sample_request(), SALT)

    def test_golden_response_hash(self):
        callback = sign_callback(callback_for(self.signed))
        self.assertEqual(callback["hash"], GOLDEN_RESPONSE_HASH)

    def test_round_trip_is_valid(self):
        result = self.verifier.verify(sign_callback(callback_for(self.signed)), SALT)
        self.assertTrue(result.is_valid)
        self.assertFalse(result.skipped)
        self.assertEqual(result.transaction_id, "T1")
        self.assertEqual(result.gateway_transaction_id, "403993715521")
        self.assertEqual(result.amount, "99.90")

    def test_single_character_tamper_detected(self):
        callback = sign_callback(callback_for(self.signed))
        for field in ("status", "txnid", "amount", "productinfo", "firstname", "email", "udf1"):
            tampered = dict(callback)
            tampered[field] = (tampered[field] or "") + "x"
            self.assertFalse(self.verifier.verify(tampered, SALT).is_valid, f"{field} tamper not detected")

        tampered = dict(callback)
        tampered["hash"] = ("0" if callback["hash"][0] != "0" else "1") + callback["hash"][1:]
        self.assertFalse(self.verifier.verify(tampered, SALT).is_valid)

    def test_wrong_secret_fails(self):
        result = self.verifier.verify(sign_callback(callback_for(self.signed)), "other-salt")
        self.assertFalse(result.is_valid)
        self.assertFalse(result.skipped)

    def test_case_sensitive_comparison(self):
        callback = sign_callback(callback_for(self.signed))
        callback["hash"] = callback["hash"].upper()
        self.assertFalse(self.verifier.verify(callback, SALT).is_valid)

    def test_additional_charges_prefix(self):
        callback = sign_callback(callback_for(self.signed, additionalCharges="2.00"))
        expected = "|".join(["2.00", SALT, "success", "", "", "", "", "", "", "", "", "", "",
                             "asha@example.com", "Asha", "Recharge", "99.90", "T1", MERCHANT_KEY])
        self.assertEqual(callback["hash"], hashlib.sha512(expected.encode()).hexdigest())
        self.assertTrue(self.verifier.verify(callback, SALT).is_valid)

    def test_missing_txnid_is_skipped_not_valid(self):
        callback = sign_callback(callback_for(self.signed))
        del callback["txnid"]
        result = self.verifier.verify(callback, SALT)
        self.assertFalse(result.is_valid)
        self.assertTrue(result.skipped)

    def test_missing_status_is_skipped(self):
        callback = callback_for(self.signed)
        del callback["status"]
        result = self.verifier.verify(callback, SALT)
        self.assertTrue(result.skipped)
        self.assertFalse(result.is_valid)

    def test_missing_hash_is_invalid(self):
        result = self.verifier.verify(callback_for(self.signed), SALT)
        self.assertFalse(result.is_valid)
        self.assertFalse(result.skipped)


if __name__ == "__main__":
    unittest.main()
