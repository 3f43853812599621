#!/usr/bin/env python3
"""Entry point for the spin finality relayer.

Relays GRANDPA finality proofs from the fastchain to the parachain and
acknowledges each anchored block back on the fastchain. Runs until SIGINT
or SIGTERM, reconnecting and restarting its session on connection loss.
"""

import argparse
import asyncio
import logging
import os
import sys


# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Get logger for this module
logger = logging.getLogger(__name__)

from spin_relayer.config import RelayerConfig
from spin_relayer.supervisor import SessionSupervisor


async def main() -> int:
    """Main entry point for the spin finality relayer.

    Parses startup arguments, loads configuration from environment,
    and runs the session supervisor until a termination signal.

    Returns:
        Process exit code
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Spin Finality Relayer - forward fastchain GRANDPA proofs to the parachain",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  FASTCHAIN_WS                  - Fastchain websocket endpoint (default: ws://127.0.0.1:11144)
  PARACHAIN_WS                  - Parachain websocket endpoint (default: ws://127.0.0.1:9988)
  FASTCHAIN_SIGNER_URI          - Fastchain signer secret URI (default: //Alice)
  PARACHAIN_SIGNER_URI          - Parachain signer secret URI, needs sudo (default: //Bob)
  FASTCHAIN_BLOCK_NUMBER_BYTES  - Fastchain block number width, 4 or 8 (default: 8)
  TX_TIMEOUT_MS                 - Transaction finalization timeout (default: 60000)
  TX_RETRY_MAX_ATTEMPTS         - Attempts per transaction (default: 8)
  TX_RETRY_BASE_DELAY_MS        - First retry delay (default: 1500)
  TX_RETRY_MAX_DELAY_MS         - Retry delay cap (default: 20000)
  RETRY_JITTER                  - Random jitter fraction added to delays (default: 0.2)
  CONNECT_MAX_ATTEMPTS          - Connection attempts per chain (default: 10)
  CONNECT_BASE_DELAY_MS         - First reconnect delay (default: 1000)
  CONNECT_MAX_DELAY_MS          - Reconnect delay cap (default: 30000)
  SESSION_RESTART_DELAY_MS      - First session restart delay (default: 2000)
  SESSION_RESTART_MAX_DELAY_MS  - Session restart delay cap (default: 60000)
  STATUS_LOG_INTERVAL           - Seconds between status lines (default: 30)
  LOG_LEVEL                     - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)
    logger.info("=== Spin Finality Relayer Starting ===")
    logger.info("Loading configuration from environment...")

    try:
        config: RelayerConfig = RelayerConfig.from_env()
        config.log_config()
    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables (see --help)")
        return 1

    supervisor = SessionSupervisor(config)
    try:
        return await supervisor.run()
    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
