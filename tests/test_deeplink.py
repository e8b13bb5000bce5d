#!/usr/bin/env python3
"""
Unit tests for the embedded browser navigation gate and popup watcher
"""

import asyncio
import json
import unittest

from payment_service.deeplink import DeepLinkInterceptor, bridge_script, parse_intent
from payment_service.popup_monitor import PopupMonitor, PopupProbe

class RecordingLauncher:
    """Launcher that fails for the configured schemes"""

    def __init__(self, failing=()):
        self.failing = tuple(failing)
        self.attempts = []

    def __call__(self, url):
        self.attempts.append(url)
        if url.startswith(self.failing):
            raise OSError("no handler")
        return True


class TestIntentParsing(unittest.TestCase):
    """intent:// unwrapping"""

    def test_upi_intent(self):
        event = parse_intent("intent://upi/pay?pa=x&pn=y#Intent;scheme=upi;package=com.example;end")
        self.assertTrue(event.is_intent_wrapper)
        self.assertEqual(event.unwrapped_url, "upi://pay?pa=x&pn=y")
        self.assertEqual(event.package, "com.example")

    def test_path_without_scheme_segment(self):
        event = parse_intent("intent://pay?pa=x#Intent;package=com.phonepe.app;scheme=phonepe;end")
        self.assertEqual(event.unwrapped_url, "phonepe://pay?pa=x")

    def test_malformed_intent(self):
        self.assertIsNone(parse_intent("intent://upi/pay?pa=x").unwrapped_url)
        self.assertIsNone(parse_intent("intent://upi/pay?pa=x#Intent;package=p;end").unwrapped_url)


class TestNavigationGate(unittest.TestCase):
    """should_allow_navigation classification"""

    def test_intent_blocked_and_launched(self):
        launcher = RecordingLauncher()
        decision = DeepLinkInterceptor(launcher).should_allow_navigation(
            "intent://upi/pay?pa=x&pn=y#Intent;scheme=upi;package=com.example;end")
        self.assertFalse(decision.allow)
        self.assertTrue(decision.dispatched_externally)
        self.assertEqual(launcher.attempts, ["upi://pay?pa=x&pn=y"])

    def test_intent_alternates_on_failure(self):
        launcher = RecordingLauncher(failing=("upi://", "phonepe://"))
        decision = DeepLinkInterceptor(launcher).should_allow_navigation(
            "intent://upi/pay?pa=x&pn=y#Intent;scheme=upi;package=com.example;end")
        self.assertFalse(decision.allow)
        self.assertTrue(decision.dispatched_externally)
        self.assertEqual(launcher.attempts, [
            "upi://pay?pa=x&pn=y",
            "phonepe://upi/pay?pa=x&pn=y",
            "gpay://upi/pay?pa=x&pn=y",
        ])

    def test_intent_all_launches_fail(self):
        launcher = RecordingLauncher(failing=("upi://", "phonepe://", "gpay://", "paytm://"))
        decision = DeepLinkInterceptor(launcher).should_allow_navigation(
            "intent://upi/pay?pa=x#Intent;scheme=upi;package=p;end")
        self.assertFalse(decision.allow)
        self.assertFalse(decision.dispatched_externally)

    def test_malformed_intent_tries_generic_apps(self):
        launcher = RecordingLauncher(failing=("phonepe://",))
        decision = DeepLinkInterceptor(launcher).should_allow_navigation("intent://garbage")
        self.assertFalse(decision.allow)
        self.assertEqual(launcher.attempts, ["phonepe://", "gpay://"])

    def test_vendor_schemes_blocked(self):
        for url in ("upi://pay?pa=a", "phonepe://pay", "paytm://x", "gpay://upi/pay", "GooglePay://x",
                    "bhim://x", "whatsapp://send", "tez://upi/pay"):
            launcher = RecordingLauncher()
            decision = DeepLinkInterceptor(launcher).should_allow_navigation(url)
            self.assertFalse(decision.allow, url)
            self.assertTrue(decision.dispatched_externally, url)
            self.assertEqual(launcher.attempts[0], url)

    def test_web_schemes_allowed(self):
        launcher = RecordingLauncher()
        interceptor = DeepLinkInterceptor(launcher)
        for url in ("https://pay.example/checkout", "http://x", "data:text/html,hi", "about:blank", "file:///tmp/a"):
            decision = interceptor.should_allow_navigation(url)
            self.assertTrue(decision.allow, url)
            self.assertFalse(decision.dispatched_externally)
        self.assertEqual(launcher.attempts, [])

    def test_unknown_scheme_blocked(self):
        decision = DeepLinkInterceptor(RecordingLauncher()).should_allow_navigation("javascript:alert(1)")
        self.assertFalse(decision.allow)
        self.assertFalse(decision.dispatched_externally)

    def test_launcher_returning_false_counts_as_failure(self):
        attempts = []
        def refuse(url):
            attempts.append(url)
            return False
        decision = DeepLinkInterceptor(refuse).should_allow_navigation("upi://pay?pa=a")
        self.assertFalse(decision.dispatched_externally)
        self.assertGreater(len(attempts), 1)


class TestBridgeMessages(unittest.TestCase):
    """Messages posted from inside the embedded surface"""

    def setUp(self):
        self.homes = []
        self.launcher = RecordingLauncher()
        self.interceptor = DeepLinkInterceptor(self.launcher, on_home=lambda: self.homes.append(True))

    def test_upi_link_message(self):
        action = self.interceptor.handle_message(json.dumps({"type": "upi-link", "url": "upi://pay?pa=a"}))
        self.assertEqual(action, "launch")
        self.assertEqual(self.launcher.attempts, ["upi://pay?pa=a"])

    def test_goto_home_json_and_plain(self):
        for raw in (json.dumps({"type": "goto-home"}), "goto-home", "goToHome"):
            self.assertEqual(self.interceptor.handle_message(raw), "home")
        self.assertEqual(len(self.homes), 3)

    def test_unknown_messages_ignored(self):
        for raw in ("hello", json.dumps({"type": "other"}), json.dumps([1, 2]), ""):
            self.assertIsNone(self.interceptor.handle_message(raw))
        self.assertEqual(self.homes, [])

    def test_observe_navigation_hints(self):
        closed = []
        interceptor = DeepLinkInterceptor(self.launcher, on_close=closed.append)
        self.assertEqual(interceptor.observe_navigation("https://shop.example/payment-success?id=1"), "success")
        self.assertEqual(interceptor.observe_navigation("https://shop.example/txn/completed"), "success")
        self.assertEqual(interceptor.observe_navigation("https://shop.example/fail"), "failed")
        self.assertEqual(interceptor.observe_navigation("https://shop.example/pay?status=cancelled"), "cancelled")
        self.assertIsNone(interceptor.observe_navigation("https://shop.example/checkout"))
        self.assertEqual(closed, ["success", "success", "failed", "cancelled"])

    def test_bridge_script_mentions_protocol(self):
        script = bridge_script()
        self.assertIn("upi-link", script)
        self.assertIn("goto-home", script)
        self.assertIn('"upi://"', script)


class TestPopupMonitor(unittest.IsolatedAsyncioTestCase):
    """Cancellable popup closure watcher"""

    async def test_resolves_on_close(self):
        closed = []

        async def on_closed(txn):
            closed.append(txn)

        monitor = PopupMonitor(check_interval=0.01)
        probe = PopupProbe()
        task = monitor.watch("T1", probe, on_closed)
        await asyncio.sleep(0.03)
        self.assertFalse(task.done())
        probe.close()
        self.assertTrue(await asyncio.wait_for(task, 1))
        self.assertEqual(closed, ["T1"])
        await asyncio.sleep(0)
        self.assertFalse(monitor.is_watching("T1"))

    async def test_cancel(self):
        monitor = PopupMonitor(check_interval=0.01)
        task = monitor.watch("T1", lambda: False)
        await asyncio.sleep(0.02)
        self.assertTrue(monitor.cancel("T1"))
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertFalse(monitor.cancel("T1"))

    async def test_async_probe_and_cancel_all(self):
        monitor = PopupMonitor(check_interval=0.01)

        async def never_closed():
            return False

        monitor.watch("A", never_closed)
        monitor.watch("B", never_closed)
        await asyncio.sleep(0.02)
        await monitor.cancel_all()
        self.assertFalse(monitor.is_watching("A"))
        self.assertFalse(monitor.is_watching("B"))


if __name__ == "__main__":
    unittest.main()
