import asyncio
import logging
import signal
from typing import Dict, Any, Optional

from .config import FeeSellerConfig
from .errors import ConfigError, FeeSellerError
from .execution import ChainClient
from .models import CycleOutcome, LiquidationAttempt, SaleQuote, TransferAttempt, SUCCESS, wei_to_eth
from .monitoring import FeeSellerMonitor, OutcomeJournal, WebhookNotifier
from .risk import LiquidationPolicy

logger = logging.getLogger(__name__)

class FeeSellerEngine:
    """
    Polling worker that sells accumulated fee tokens and forwards the ETH
    """

    def __init__(self, config: FeeSellerConfig, chain: ChainClient = None,
                 policy: LiquidationPolicy = None, monitor: FeeSellerMonitor = None):
        """
        Initialize the fee seller engine

        Args:
            config: Validated fee seller configuration
            chain: Chain client (optional, built from config if not provided)
            policy: Liquidation policy (optional, built from config if not provided)
            monitor: Outcome monitor (optional, built from config if not provided)
        """
        self.config = config
        self.chain = chain or ChainClient(config)
        self.policy = policy or LiquidationPolicy.from_config(config)
        if monitor is None:
            notifier = WebhookNotifier(
                webhook_url=config.notification_webhook_url,
                timeout=config.webhook_timeout_seconds
            )
            journal = OutcomeJournal(config.journal_file) if config.journal_file else None
            monitor = FeeSellerMonitor(notifier=notifier, journal=journal)
        self.monitor = monitor

        # Runtime state
        self.running = False
        self.consecutive_failures = 0
        self.poll_interval = config.poll_interval_seconds
        self.max_backoff = config.max_backoff_seconds
        self._stop_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        logger.info(f"Initialized FeeSellerEngine on {config.eth_network} "
                    f"for {len(config.fee_tokens)} fee tokens")

    def install_signal_handlers(self):
        """
        Stop gracefully on SIGINT and SIGTERM
        """
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.stop)
        else:
            self.stop()

    async def poll_once(self) -> CycleOutcome:
        """
        Run one balance check, liquidation and transfer cycle

        Returns:
            CycleOutcome: What the cycle did; errors are reported in the outcome, not raised
        """
        outcome = CycleOutcome()
        try:
            await self._run_cycle(outcome)
        except FeeSellerError as e:
            logger.error(f"Fee seller cycle failed ({e.kind}): {str(e)}")
            outcome.error_kind = e.kind
            outcome.error = str(e)
        except Exception as e:
            logger.exception(f"Unexpected error in fee seller cycle: {str(e)}")
            outcome.error_kind = "unexpected"
            outcome.error = str(e)
        return outcome

    async def _run_cycle(self, outcome: CycleOutcome):
        balance = await self.chain.get_fee_balance()

        for token in balance.tokens:
            if token.amount <= 0:
                continue

            quote = await self.chain.quote_sale(token)
            if not self.policy.should_sell(quote.reference_out):
                logger.info(f"Skipping {token.units} {token.symbol}: worth "
                            f"{wei_to_eth(quote.reference_out)} ETH, below sell threshold")
                continue

            await self.liquidate(quote, outcome)

        eth_balance = balance.eth_wei
        if outcome.liquidations:
            eth_balance = await self.chain.get_eth_balance()

        amount = self.policy.settled_amount(eth_balance)
        await self.transfer(amount, self.config.fee_accumulator_address, outcome)

    async def liquidate(self, quote: SaleQuote, outcome: CycleOutcome = None) -> LiquidationAttempt:
        """
        Sell a token balance for ETH within the fee and slippage bounds

        Args:
            quote: Quote for the balance to sell
            outcome: Cycle outcome the attempt is added to (optional)

        Returns:
            LiquidationAttempt: Successful attempt

        Raises:
            InsufficientOutputError: If the quote or the executed sale falls below the minimum output
            ChainError: If the sale cannot be submitted or reverts
            OperationTimeoutError: If the sale is not confirmed in time
        """
        token = quote.token
        min_output = self.policy.minimum_output(quote.reference_out)
        attempt = LiquidationAttempt(
            token=token.address,
            symbol=token.symbol,
            decimals=token.decimals,
            amount_in=quote.amount_in,
            reference_value=quote.reference_out,
            min_output=min_output,
        )
        if outcome is not None:
            outcome.liquidations.append(attempt)

        logger.info(f"Liquidating {token.units} {token.symbol}, minimum output {wei_to_eth(min_output)} ETH")
        try:
            self.policy.check_quote(quote)
            attempt.tx_hash, attempt.proceeds = await self.chain.sell_token(quote, min_output)
            self.policy.check_proceeds(attempt.proceeds, min_output, token.symbol)
        except FeeSellerError as e:
            attempt.reason = str(e)
            raise

        attempt.status = SUCCESS
        return attempt

    async def transfer(self, amount: int, destination: str,
                       outcome: CycleOutcome = None) -> Optional[TransferAttempt]:
        """
        Move settled ETH to the destination if it exceeds the transfer threshold

        Args:
            amount: Settled amount in wei
            destination: Receiving address
            outcome: Cycle outcome the attempt is attached to (optional)

        Returns:
            TransferAttempt or None if the amount does not exceed the threshold
        """
        if not self.policy.should_transfer(amount):
            return None

        attempt = TransferAttempt(amount=amount, destination=destination)
        if outcome is not None:
            outcome.transfer = attempt

        logger.info(f"Transferring {wei_to_eth(amount)} ETH to {destination}")
        try:
            attempt.tx_hash = await self.chain.transfer_eth(amount, destination)
        except FeeSellerError as e:
            attempt.reason = str(e)
            raise

        attempt.status = SUCCESS
        return attempt

    async def notify(self, outcome: CycleOutcome) -> bool:
        """
        Report a cycle outcome; never raises on delivery failure
        """
        return await self.monitor.report(outcome)

    def next_delay(self, outcome: CycleOutcome) -> float:
        """
        Seconds to wait before the next cycle, backing off after failures
        """
        if outcome.ok:
            self.consecutive_failures = 0
            return self.poll_interval

        self.consecutive_failures += 1
        delay = self.poll_interval * 2 ** (self.consecutive_failures - 1)
        return min(delay, self.max_backoff)

    async def _sleep(self, delay: float):
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _wait_for_network(self) -> bool:
        """
        Check the RPC chain id, retrying transient failures with backoff

        Returns:
            bool: True once the network is verified, False if stopped first

        Raises:
            ConfigError: If the RPC endpoint does not serve the configured network
        """
        while self.running:
            try:
                await self.chain.verify_network()
            except ConfigError:
                raise
            except FeeSellerError as e:
                delay = self.next_delay(CycleOutcome(error_kind=e.kind, error=str(e)))
                logger.warning(f"Network check failed ({e.kind}): {str(e)}; retrying in {delay:.0f}s")
                await self._sleep(delay)
                continue

            self.consecutive_failures = 0
            return True
        return False

    async def run(self, max_cycles: int = None):
        """
        Run the polling loop until stopped

        Args:
            max_cycles: Stop after this many cycles (default: run forever)

        Raises:
            ConfigError: If the RPC endpoint does not serve the configured network
        """
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self.running = True

        try:
            if await self._wait_for_network():
                await self.monitor.notify(
                    f"🚀 Fee seller started on {self.config.eth_network}\n"
                    f"Fee account: {self.chain.address}\nAccumulator: {self.config.fee_accumulator_address}"
                )

            cycles = 0
            while self.running:
                outcome = await self.poll_once()
                await self.notify(outcome)
                cycles += 1

                metrics = self.monitor.get_performance_metrics()
                logger.info(f"Fee seller metrics: sold={metrics['total_liquidations']}, "
                            f"proceeds={metrics['total_proceeds_eth']:.6f} ETH, "
                            f"transferred={metrics['total_transferred_eth']:.6f} ETH, "
                            f"mean fee={metrics['mean_realized_fee']*100:.2f}%")

                if max_cycles is not None and cycles >= max_cycles:
                    break

                delay = self.next_delay(outcome)
                if not outcome.ok:
                    logger.warning(f"Retrying in {delay:.0f}s after {self.consecutive_failures} failed cycle(s)")
                await self._sleep(delay)
        finally:
            self.running = False
            self._loop = None
            await self.chain.close()

        logger.info("Fee seller stopped")

    def stop(self):
        """
        Stop the polling loop after the current cycle
        """
        logger.info("Stopping fee seller...")
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()

    def get_status(self) -> Dict[str, Any]:
        """
        Get current engine status

        Returns:
            dict: Engine status information
        """
        return {
            "network": self.config.eth_network,
            "running": self.running,
            "consecutive_failures": self.consecutive_failures,
            "performance_metrics": self.monitor.get_performance_metrics(),
        }
