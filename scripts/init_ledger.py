"""Ledger initialization script.

Run this to create the ParallelPay receipt ledger schema and print its statistics.
"""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config
from src.constants import format_usdc
from src.ledger import ReceiptLedger
from src.logging_utils import get_logger, setup_logging

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main():
    """Initialize the ledger."""
    ledger = ReceiptLedger(config.database_path)
    logger.info("Initializing receipt ledger...")
    logger.info(f"Database path: {ledger.db_path}")

    await ledger.initialize()

    stats = await ledger.stats()
    logger.info(
        f"Payments: {stats.total_payments} ({format_usdc(stats.total_paid)}), "
        f"refunds: {stats.total_refunds} ({format_usdc(stats.total_refunded)})"
    )
    for receipt in await ledger.recent_receipts(config.default_query_count):
        logger.info(f"- {receipt.transaction_id}: {format_usdc(receipt.amount)} {receipt.resource}")

    logger.info("Ledger initialization complete!")


if __name__ == "__main__":
    asyncio.run(main())
