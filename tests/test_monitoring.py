import unittest
import os
import sys
import json
import tempfile
import asyncio
from unittest.mock import patch, MagicMock, AsyncMock

import aiohttp

# Add the project root to the path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from fee_seller.errors import NotificationError
from fee_seller.models import CycleOutcome, LiquidationAttempt, TransferAttempt, SUCCESS
from fee_seller.monitoring import (
    OutcomeJournal, WebhookNotifier, LiquidationMetrics, FeeSellerMonitor, format_outcome
)

ETH = 10 ** 18
WEBHOOK_URL = "https://hooks.example.com/fee-seller"

def make_liquidation(proceeds=ETH * 97 // 100, status=SUCCESS) -> LiquidationAttempt:
    return LiquidationAttempt(
        token="0x" + "01" * 20,
        symbol="DAI",
        decimals=18,
        amount_in=2000 * ETH,
        reference_value=ETH,
        min_output=ETH * 94 // 100,
        proceeds=proceeds,
        tx_hash="0xabc",
        status=status,
    )

def make_transfer(status=SUCCESS) -> TransferAttempt:
    return TransferAttempt(amount=2 * ETH, destination="0x" + "ab" * 20, tx_hash="0xdef", status=status)

def mock_client_session(status=200, text="ok"):
    """Build a patched aiohttp.ClientSession returning a fixed response"""
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=text)

    post_context = MagicMock()
    post_context.__aenter__ = AsyncMock(return_value=response)
    post_context.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.post.return_value = post_context

    session_context = MagicMock()
    session_context.__aenter__ = AsyncMock(return_value=session)
    session_context.__aexit__ = AsyncMock(return_value=False)
    return session_context, session

class TestOutcomeJournal(unittest.TestCase):
    """Test cases for the OutcomeJournal class"""

    def setUp(self):
        """Set up test fixtures before each test method."""
        self.temp_file = tempfile.NamedTemporaryFile(delete=False, suffix='.json')
        self.temp_file.close()
        self.log_file = self.temp_file.name

    def tearDown(self):
        """Clean up after each test method."""
        if os.path.exists(self.log_file):
            os.unlink(self.log_file)

    def test_initialization(self):
        """Test OutcomeJournal initialization"""
        journal = OutcomeJournal(log_file=self.log_file)
        self.assertEqual(journal.log_file, self.log_file)

        with open(self.log_file, 'r') as f:
            data = json.load(f)
            self.assertIn("session_start", data)
            self.assertIn("session_id", data)
            self.assertEqual(data["events"], [])

    def test_log_event(self):
        """Test journaling an event"""
        journal = OutcomeJournal(log_file=self.log_file)
        attempt = make_liquidation()
        journal.log_event("liquidation", attempt.to_dict())

        with open(self.log_file, 'r') as f:
            data = json.load(f)
            self.assertEqual(len(data["events"]), 1)
            event = data["events"][0]
            self.assertEqual(event["event_type"], "liquidation")
            self.assertEqual(event["data"]["proceeds"], attempt.proceeds)
            self.assertIn("timestamp", event)

    def test_log_event_missing_file(self):
        """Test that a vanished journal file is logged, not raised"""
        journal = OutcomeJournal(log_file=self.log_file)
        os.unlink(self.log_file)

        journal.log_event("transfer", {"amount": 1})

class TestWebhookNotifier(unittest.TestCase):
    """Test cases for the WebhookNotifier class"""

    def test_send_message_enabled(self):
        """Test posting a message when enabled"""
        session_context, session = mock_client_session()
        notifier = WebhookNotifier(webhook_url=WEBHOOK_URL)
        self.assertTrue(notifier.enabled)

        with patch('fee_seller.monitoring.aiohttp.ClientSession', return_value=session_context):
            asyncio.run(notifier.send_message("Test message", {"ok": True}))

        session.post.assert_called_once()
        args, kwargs = session.post.call_args
        self.assertEqual(args[0], WEBHOOK_URL)
        self.assertEqual(kwargs['json']['text'], "Test message")
        self.assertEqual(kwargs['json']['props'], {"ok": True})

    def test_send_message_disabled(self):
        """Test sending a message when disabled"""
        notifier = WebhookNotifier()
        self.assertFalse(notifier.enabled)

        with patch('fee_seller.monitoring.aiohttp.ClientSession') as mock_session:
            asyncio.run(notifier.send_message("Test message"))
        mock_session.assert_not_called()

    def test_send_message_http_error(self):
        """Test that a non-2xx response raises NotificationError"""
        session_context, _ = mock_client_session(status=500, text="boom")
        notifier = WebhookNotifier(webhook_url=WEBHOOK_URL)

        with patch('fee_seller.monitoring.aiohttp.ClientSession', return_value=session_context):
            with self.assertRaises(NotificationError):
                asyncio.run(notifier.send_message("Test message"))

    def test_send_message_connection_error(self):
        """Test that a client error raises NotificationError"""
        session_context, session = mock_client_session()
        session.post.side_effect = aiohttp.ClientConnectionError("connection refused")
        notifier = WebhookNotifier(webhook_url=WEBHOOK_URL)

        with patch('fee_seller.monitoring.aiohttp.ClientSession', return_value=session_context):
            with self.assertRaises(NotificationError):
                asyncio.run(notifier.send_message("Test message"))

class TestLiquidationMetrics(unittest.TestCase):
    """Test cases for the LiquidationMetrics class"""

    def setUp(self):
        """Set up test fixtures before each test method."""
        self.metrics = LiquidationMetrics()

    def test_empty_metrics(self):
        """Test metrics before anything happened"""
        metrics = self.metrics.get_metrics()
        self.assertEqual(metrics["cycles"], 0)
        self.assertEqual(metrics["total_liquidations"], 0)
        self.assertEqual(metrics["mean_realized_fee"], 0.0)
        self.assertEqual(metrics["success_rate"], 0.0)

    def test_record_liquidations(self):
        """Test realized fee statistics"""
        self.metrics.record_liquidation(make_liquidation(proceeds=ETH * 97 // 100))
        self.metrics.record_liquidation(make_liquidation(proceeds=ETH * 95 // 100))
        self.metrics.record_liquidation(make_liquidation(proceeds=0, status="failed"))

        metrics = self.metrics.get_metrics()
        self.assertEqual(metrics["total_liquidations"], 2)
        self.assertEqual(metrics["failed_liquidations"], 1)
        self.assertAlmostEqual(metrics["total_proceeds_eth"], 1.92)
        self.assertAlmostEqual(metrics["mean_realized_fee"], 0.04)
        self.assertAlmostEqual(metrics["max_realized_fee"], 0.05)

    def test_record_transfers_and_cycles(self):
        """Test transfer totals and cycle success rate"""
        self.metrics.record_transfer(make_transfer())
        self.metrics.record_transfer(make_transfer(status="failed"))
        self.metrics.record_cycle(CycleOutcome())
        self.metrics.record_cycle(CycleOutcome(error_kind="chain", error="down"))

        metrics = self.metrics.get_metrics()
        self.assertEqual(metrics["total_transfers"], 1)
        self.assertAlmostEqual(metrics["total_transferred_eth"], 2.0)
        self.assertEqual(metrics["cycles"], 2)
        self.assertEqual(metrics["failed_cycles"], 1)
        self.assertEqual(metrics["success_rate"], 0.5)

class TestFormatOutcome(unittest.TestCase):
    """Test cases for outcome messages"""

    def test_success_message(self):
        """Test message for a cycle that sold and transferred"""
        outcome = CycleOutcome(liquidations=[make_liquidation()], transfer=make_transfer())
        message = format_outcome(outcome)

        self.assertIn("Sold 2000 DAI", message)
        self.assertIn("Transferred 2 ETH", message)
        self.assertNotIn("failed", message)

    def test_failure_message(self):
        """Test message for a failed cycle"""
        outcome = CycleOutcome(
            liquidations=[make_liquidation(proceeds=0, status="failed")],
            error_kind="insufficient_output",
            error="Sale of DAI returned too little",
        )
        message = format_outcome(outcome)

        self.assertIn("Sale of 2000 DAI failed", message)
        self.assertIn("insufficient_output", message)
        self.assertIn("returned too little", message)

class TestFeeSellerMonitor(unittest.TestCase):
    """Test cases for the FeeSellerMonitor class"""

    def setUp(self):
        """Set up test fixtures before each test method."""
        self.notifier = MagicMock()
        self.notifier.send_message = AsyncMock()
        self.journal = MagicMock()
        self.monitor = FeeSellerMonitor(notifier=self.notifier, journal=self.journal)

    def test_notify_success(self):
        """Test a delivered notification"""
        self.assertTrue(asyncio.run(self.monitor.notify("hello")))
        self.notifier.send_message.assert_awaited_once_with("hello", None)

    def test_notify_failure_is_swallowed(self):
        """Test that a webhook failure is logged instead of raised"""
        self.notifier.send_message.side_effect = NotificationError("webhook down")
        self.assertFalse(asyncio.run(self.monitor.notify("hello")))

    def test_report_idle_cycle(self):
        """Test that idle cycles are counted but not notified"""
        delivered = asyncio.run(self.monitor.report(CycleOutcome()))

        self.assertFalse(delivered)
        self.notifier.send_message.assert_not_awaited()
        self.journal.log_event.assert_not_called()
        self.assertEqual(self.monitor.get_performance_metrics()["cycles"], 1)

    def test_report_active_cycle(self):
        """Test journaling and notifying a cycle that did work"""
        outcome = CycleOutcome(liquidations=[make_liquidation()], transfer=make_transfer())
        delivered = asyncio.run(self.monitor.report(outcome))

        self.assertTrue(delivered)
        self.notifier.send_message.assert_awaited_once()
        args, _ = self.notifier.send_message.call_args
        self.assertEqual(args[1], outcome.to_dict())
        event_types = [c.args[0] for c in self.journal.log_event.call_args_list]
        self.assertEqual(event_types, ["liquidation", "transfer"])

    def test_report_failed_cycle(self):
        """Test journaling and notifying a failed cycle"""
        outcome = CycleOutcome(error_kind="chain", error="RPC unavailable")
        asyncio.run(self.monitor.report(outcome))

        self.journal.log_event.assert_called_once_with(
            "cycle_error", {"kind": "chain", "message": "RPC unavailable"}
        )
        self.notifier.send_message.assert_awaited_once()

if __name__ == '__main__':
    unittest.main()
