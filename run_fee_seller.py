#!/usr/bin/env python3
"""
Fee seller worker: sells accumulated fee tokens for ETH and forwards the proceeds
"""
import asyncio
import logging
import sys

from fee_seller.config import load_config
from fee_seller.engine import FeeSellerEngine
from fee_seller.errors import ConfigError, FeeSellerError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler("fee_seller.log"),
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)

def main() -> int:
    """
    Main entry point for the fee seller

    Returns:
        int: Process exit code
    """
    # Load configuration before touching the network
    try:
        config = load_config()
    except ConfigError as e:
        logger.error(f"Failed to load configuration: {str(e)}")
        return 1

    logging.getLogger().setLevel(config.log_level)
    logger.info(f"Starting fee seller on {config.eth_network}")
    logger.info(f"Max fee {config.max_liquidation_fee_percent}%, max slippage "
                f"{config.max_liquidation_fee_slippage}%, transfer threshold {config.eth_transfer_threshold} ETH")

    engine = FeeSellerEngine(config)
    engine.install_signal_handlers()

    try:
        asyncio.run(engine.run())
    except ConfigError as e:
        logger.error(f"Configuration does not match the network: {str(e)}")
        return 1
    except FeeSellerError as e:
        logger.error(f"Fee seller failed to start: {str(e)}")
        return 1
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")

    logger.info("Fee seller exited")
    return 0

if __name__ == "__main__":
    sys.exit(main())
