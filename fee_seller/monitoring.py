import asyncio
import json
import logging
import time
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone

import aiohttp
import numpy as np

from .errors import NotificationError
from .models import CycleOutcome, LiquidationAttempt, TransferAttempt, wei_to_eth
from .risk import LiquidationPolicy

logger = logging.getLogger(__name__)

class OutcomeJournal:
    """
    Keeps a JSON record of liquidations, transfers and cycle errors
    """

    def __init__(self, log_file: str = "fee_seller_log.json"):
        """
        Initialize outcome journal

        Args:
            log_file: Path to the journal file
        """
        self.log_file = log_file

        self._initialize_log()

        logger.info(f"Initialized OutcomeJournal with log file: {log_file}")

    def _initialize_log(self):
        session_info = {
            "session_start": datetime.now(timezone.utc).isoformat(),
            "session_id": f"session_{int(time.time())}",
            "events": []
        }

        try:
            with open(self.log_file, 'w') as f:
                json.dump(session_info, f, indent=2)
        except OSError as e:
            logger.error(f"Error initializing journal file: {str(e)}")

    def log_event(self, event_type: str, data: Dict[str, Any]):
        """
        Append an event to the journal

        Args:
            event_type: Type of event ('liquidation', 'transfer', 'cycle_error')
            data: Event data
        """
        try:
            with open(self.log_file, 'r') as f:
                log_data = json.load(f)

            log_data["events"].append({
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "event_type": event_type,
                "data": data
            })

            with open(self.log_file, 'w') as f:
                json.dump(log_data, f, indent=2, default=str)

            logger.debug(f"Journaled event: {event_type}")

        except (OSError, ValueError) as e:
            logger.error(f"Error writing journal event: {str(e)}")

class WebhookNotifier:
    """
    Posts outcome reports to a Slack/Mattermost compatible webhook
    """

    def __init__(self, webhook_url: str = None, timeout: float = 10.0, username: str = "fee-seller"):
        """
        Initialize webhook notifier

        Args:
            webhook_url: Incoming webhook URL
            timeout: Request timeout in seconds
            username: Name shown as the message author
        """
        self.webhook_url = webhook_url or ""
        self.timeout = timeout
        self.username = username
        self.enabled = bool(webhook_url)

        if self.enabled:
            logger.info("WebhookNotifier initialized and enabled")
        else:
            logger.info("WebhookNotifier disabled (missing webhook URL)")

    async def send_message(self, message: str, props: Optional[Dict[str, Any]] = None):
        """
        Send a message to the webhook

        Args:
            message: Human readable text
            props: Structured details attached to the message

        Raises:
            NotificationError: If the webhook cannot be reached or rejects the message
        """
        if not self.enabled:
            logger.debug("Webhook notifications disabled")
            return

        payload = {"username": self.username, "text": message}
        if props:
            payload["props"] = props

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.webhook_url, json=payload) as response:
                    if response.status >= 300:
                        body = await response.text()
                        raise NotificationError(f"Webhook returned HTTP {response.status}: {body[:200]}")
        except NotificationError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NotificationError(f"Webhook request failed: {e!r}") from e

        logger.debug("Webhook message sent successfully")

class LiquidationMetrics:
    """
    Tracks liquidation and transfer results over the process lifetime
    """

    def __init__(self):
        self.cycles = 0
        self.failed_cycles = 0
        self.liquidations: List[Dict[str, Any]] = []
        self.transfers: List[Dict[str, Any]] = []

    def record_cycle(self, outcome: CycleOutcome):
        self.cycles += 1
        if not outcome.ok:
            self.failed_cycles += 1

    def record_liquidation(self, attempt: LiquidationAttempt):
        self.liquidations.append({
            "timestamp": time.time(),
            "succeeded": attempt.succeeded,
            "proceeds": attempt.proceeds,
            "realized_fee": (LiquidationPolicy.realized_fee(attempt.reference_value, attempt.proceeds)
                             if attempt.succeeded else None),
        })

    def record_transfer(self, attempt: TransferAttempt):
        self.transfers.append({
            "timestamp": time.time(),
            "succeeded": attempt.succeeded,
            "amount": attempt.amount,
        })

    def get_metrics(self) -> Dict[str, Any]:
        """
        Get all liquidation metrics

        Returns:
            dict: Metrics
        """
        sold = [entry for entry in self.liquidations if entry["succeeded"]]
        fees = np.array([entry["realized_fee"] for entry in sold], dtype=float)
        moved = [entry for entry in self.transfers if entry["succeeded"]]

        return {
            "cycles": self.cycles,
            "failed_cycles": self.failed_cycles,
            "total_liquidations": len(sold),
            "failed_liquidations": len(self.liquidations) - len(sold),
            "total_proceeds_eth": float(wei_to_eth(sum(entry["proceeds"] for entry in sold))),
            "mean_realized_fee": float(np.mean(fees)) if fees.size else 0.0,
            "max_realized_fee": float(np.max(fees)) if fees.size else 0.0,
            "total_transfers": len(moved),
            "total_transferred_eth": float(wei_to_eth(sum(entry["amount"] for entry in moved))),
            "success_rate": ((self.cycles - self.failed_cycles) / self.cycles
                             if self.cycles > 0 else 0.0),
        }

def format_outcome(outcome: CycleOutcome) -> str:
    """
    Render a cycle outcome as a short chat message
    """
    lines = []
    for attempt in outcome.liquidations:
        if attempt.succeeded:
            lines.append(f"✅ Sold {attempt.units} {attempt.symbol} for "
                         f"{wei_to_eth(attempt.proceeds)} ETH (min {wei_to_eth(attempt.min_output)} ETH), "
                         f"tx {attempt.tx_hash}")
        else:
            lines.append(f"❌ Sale of {attempt.units} {attempt.symbol} failed")

    transfer = outcome.transfer
    if transfer is not None:
        if transfer.succeeded:
            lines.append(f"✅ Transferred {wei_to_eth(transfer.amount)} ETH to {transfer.destination}, "
                         f"tx {transfer.tx_hash}")
        else:
            lines.append(f"❌ Transfer of {wei_to_eth(transfer.amount)} ETH failed")

    if not outcome.ok:
        lines.append(f"🚨 Fee seller cycle failed ({outcome.error_kind}): {outcome.error}")

    return "\n".join(lines)

class FeeSellerMonitor:
    """
    Journals, measures and reports cycle outcomes
    """

    def __init__(self, notifier: WebhookNotifier = None, journal: Optional[OutcomeJournal] = None):
        """
        Initialize fee seller monitor

        Args:
            notifier: Webhook notifier instance
            journal: Outcome journal (optional)
        """
        self.notifier = notifier or WebhookNotifier()
        self.journal = journal
        self.metrics = LiquidationMetrics()

        logger.info("Initialized FeeSellerMonitor")

    def record(self, outcome: CycleOutcome):
        """
        Journal a cycle outcome and update metrics
        """
        self.metrics.record_cycle(outcome)
        for attempt in outcome.liquidations:
            self.metrics.record_liquidation(attempt)
            if self.journal:
                self.journal.log_event("liquidation", attempt.to_dict())
        if outcome.transfer is not None:
            self.metrics.record_transfer(outcome.transfer)
            if self.journal:
                self.journal.log_event("transfer", outcome.transfer.to_dict())
        if not outcome.ok and self.journal:
            self.journal.log_event("cycle_error", {"kind": outcome.error_kind, "message": outcome.error})

    async def notify(self, message: str, props: Optional[Dict[str, Any]] = None) -> bool:
        """
        Send a notification, logging instead of raising on failure

        Returns:
            bool: True if the message was delivered
        """
        try:
            await self.notifier.send_message(message, props)
            return True
        except NotificationError as e:
            logger.error(f"Notification failed: {str(e)}")
            return False

    async def report(self, outcome: CycleOutcome) -> bool:
        """
        Record a cycle outcome and notify the webhook unless the cycle was idle

        Returns:
            bool: True if a notification was delivered
        """
        self.record(outcome)
        if outcome.idle:
            return False
        return await self.notify(format_outcome(outcome), outcome.to_dict())

    def get_performance_metrics(self) -> Dict[str, Any]:
        return self.metrics.get_metrics()
