"""SQLite receipt ledger for ParallelPay.

Append-only record of settled payments, refunds and the escrows refunds are
drawn from. Every append is insert-if-absent keyed by its identifier, so the
same settlement can never be recorded twice.
"""

import asyncio
import json
import sqlite3
from collections import OrderedDict
from datetime import datetime
from typing import Iterable, List, Optional

import aiosqlite

from .errors import LedgerWriteError, RefundLimitExceededError
from .logging_utils import get_logger
from .models import (
    PaymentReceipt,
    ReceiptStats,
    RefundRecord,
    SLAConfig,
    StreamEscrow,
    as_utc,
    utcnow,
)

logger = get_logger(__name__)

# Amounts are stored as TEXT: uint256 values do not fit SQLite INTEGER.
SCHEMA_SQL = """
-- Settled payments (one row per settlement transaction)
CREATE TABLE IF NOT EXISTS payments (
    tx_id TEXT PRIMARY KEY,
    payer TEXT NOT NULL,
    recipient TEXT NOT NULL,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    resource TEXT NOT NULL,
    chain_id INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    explorer_url TEXT,
    facilitator_url TEXT,
    schema_version TEXT
);

-- SLA-backed escrows refunds are drawn from
CREATE TABLE IF NOT EXISTS escrows (
    stream_id TEXT PRIMARY KEY,
    payer TEXT NOT NULL,
    recipient TEXT NOT NULL,
    original_amount TEXT NOT NULL,
    refunded_amount TEXT NOT NULL DEFAULT '0',
    original_tx_id TEXT,
    sla TEXT NOT NULL,
    terminated INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    terminated_at TEXT
);

-- Refunds issued on SLA breaches
CREATE TABLE IF NOT EXISTS refunds (
    refund_id TEXT PRIMARY KEY,
    stream_id TEXT NOT NULL,
    original_tx_id TEXT,
    breach_type TEXT NOT NULL,
    severity TEXT NOT NULL CHECK(severity IN ('minor', 'moderate', 'severe', 'critical')),
    refund_percent INTEGER NOT NULL,
    original_amount TEXT NOT NULL,
    refund_amount TEXT NOT NULL,
    recipient TEXT,
    refund_tx_id TEXT UNIQUE,
    timestamp TEXT NOT NULL,
    settled_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_payments_timestamp ON payments(timestamp);
CREATE INDEX IF NOT EXISTS idx_payments_payer ON payments(payer);
CREATE INDEX IF NOT EXISTS idx_refunds_stream_id ON refunds(stream_id);
CREATE INDEX IF NOT EXISTS idx_refunds_timestamp ON refunds(timestamp);
"""


def _iso(value: datetime) -> str:
    return as_utc(value).isoformat()


def _receipt_from_row(row: aiosqlite.Row) -> PaymentReceipt:
    return PaymentReceipt(
        transaction_id=row["tx_id"],
        payer=row["payer"],
        recipient=row["recipient"],
        amount=int(row["amount"]),
        currency=row["currency"],
        resource=row["resource"],
        chain_id=row["chain_id"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        explorer_url=row["explorer_url"],
        facilitator_url=row["facilitator_url"],
        schema_version=row["schema_version"],
    )


def _refund_from_row(row: aiosqlite.Row) -> RefundRecord:
    return RefundRecord(
        refund_id=row["refund_id"],
        stream_id=row["stream_id"],
        original_transaction_id=row["original_tx_id"],
        breach_type=row["breach_type"],
        severity=row["severity"],
        refund_percent=row["refund_percent"],
        original_amount=int(row["original_amount"]),
        refund_amount=int(row["refund_amount"]),
        recipient=row["recipient"],
        refund_transaction_id=row["refund_tx_id"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        settled_at=datetime.fromisoformat(row["settled_at"]) if row["settled_at"] else None,
    )


def _escrow_from_row(row: aiosqlite.Row) -> StreamEscrow:
    return StreamEscrow(
        stream_id=row["stream_id"],
        payer=row["payer"],
        recipient=row["recipient"],
        original_amount=int(row["original_amount"]),
        refunded_amount=int(row["refunded_amount"]),
        original_transaction_id=row["original_tx_id"],
        sla=SLAConfig.model_validate_json(row["sla"]),
        terminated=bool(row["terminated"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        terminated_at=(
            datetime.fromisoformat(row["terminated_at"]) if row["terminated_at"] else None
        ),
    )


class ReceiptLedger:
    """Async append-only ledger of payment receipts, refunds and escrows.

    There is no module-level instance; construct one and pass it to the
    components that need it.
    """

    def __init__(self, db_path: str):
        """Initialize the ledger.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = db_path
        # Serializes refund appends so the escrow check and update are atomic
        self._refund_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the ledger schema if it does not exist."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Receipt ledger initialized at {self.db_path}")

    # Payment receipts
    async def append_receipt(self, receipt: PaymentReceipt) -> bool:
        """Append a receipt if its transaction id is not already recorded.

        Args:
            receipt: Receipt of a confirmed settlement.

        Returns:
            True if the receipt was written, False if the transaction id exists.

        Raises:
            LedgerWriteError: If the store fails for any other reason.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO payments
                    (tx_id, payer, recipient, amount, currency, resource, chain_id,
                     timestamp, explorer_url, facilitator_url, schema_version)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        receipt.transaction_id,
                        receipt.payer,
                        receipt.recipient,
                        str(receipt.amount),
                        receipt.currency,
                        receipt.resource,
                        receipt.chain_id,
                        _iso(receipt.timestamp),
                        receipt.explorer_url,
                        receipt.facilitator_url,
                        receipt.schema_version,
                    ),
                )
                await db.commit()
        except sqlite3.IntegrityError:
            logger.warning(f"Receipt already recorded: {receipt.transaction_id}")
            return False
        except sqlite3.Error as e:
            raise LedgerWriteError(f"Failed to append receipt {receipt.transaction_id}: {e}") from e

        logger.info(f"Recorded receipt: {receipt.transaction_id}")
        return True

    async def get_receipt(self, transaction_id: str) -> Optional[PaymentReceipt]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM payments WHERE tx_id = ?", (transaction_id,))
            row = await cursor.fetchone()
            return _receipt_from_row(row) if row else None

    async def recent_receipts(self, count: int) -> List[PaymentReceipt]:
        """Return up to ``count`` receipts, newest first."""
        if count <= 0:
            return []
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM payments ORDER BY timestamp DESC, tx_id DESC LIMIT ?",
                (count,),
            )
            rows = await cursor.fetchall()
            return [_receipt_from_row(row) for row in rows]

    # Escrows
    async def open_escrow(self, escrow: StreamEscrow) -> bool:
        """Record a new escrow. Returns False if the stream id already exists."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO escrows
                    (stream_id, payer, recipient, original_amount, refunded_amount,
                     original_tx_id, sla, terminated, created_at, terminated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        escrow.stream_id,
                        escrow.payer,
                        escrow.recipient,
                        str(escrow.original_amount),
                        str(escrow.refunded_amount),
                        escrow.original_transaction_id,
                        escrow.sla.model_dump_json(),
                        1 if escrow.terminated else 0,
                        _iso(escrow.created_at),
                        _iso(escrow.terminated_at) if escrow.terminated_at else None,
                    ),
                )
                await db.commit()
        except sqlite3.IntegrityError:
            logger.warning(f"Escrow already exists: {escrow.stream_id}")
            return False
        except sqlite3.Error as e:
            raise LedgerWriteError(f"Failed to open escrow {escrow.stream_id}: {e}") from e

        logger.info(f"Opened escrow {escrow.stream_id} for {escrow.original_amount}")
        return True

    async def get_escrow(self, stream_id: str) -> Optional[StreamEscrow]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM escrows WHERE stream_id = ?", (stream_id,))
            row = await cursor.fetchone()
            return _escrow_from_row(row) if row else None

    async def terminate_stream(self, stream_id: str) -> bool:
        """Mark a stream terminated. Returns False if it was unknown or already stopped."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE escrows SET terminated = 1, terminated_at = ?
                WHERE stream_id = ? AND terminated = 0
                """,
                (_iso(utcnow()), stream_id),
            )
            await db.commit()
            stopped = cursor.rowcount == 1
        if stopped:
            logger.info(f"Terminated stream {stream_id}")
        return stopped

    # Refunds
    async def append_refund(self, refund: RefundRecord) -> bool:
        """Append a refund if its id is new, charging it against the stream's escrow.

        A refund for a stream without an escrow on file (settled out of band) is
        recorded without a limit check.

        Returns:
            True if the refund was written, False if the refund id exists.

        Raises:
            RefundLimitExceededError: If cumulative refunds would exceed the escrow.
            LedgerWriteError: If the store fails.
        """
        async with self._refund_lock:
            try:
                async with aiosqlite.connect(self.db_path) as db:
                    cursor = await db.execute(
                        "SELECT 1 FROM refunds WHERE refund_id = ?", (refund.refund_id,)
                    )
                    if await cursor.fetchone():
                        logger.warning(f"Refund already recorded: {refund.refund_id}")
                        return False

                    cursor = await db.execute(
                        "SELECT original_amount, refunded_amount FROM escrows WHERE stream_id = ?",
                        (refund.stream_id,),
                    )
                    row = await cursor.fetchone()
                    if row:
                        original, refunded = int(row[0]), int(row[1])
                        if refunded + refund.refund_amount > original:
                            raise RefundLimitExceededError(
                                f"Refund {refund.refund_id} of {refund.refund_amount} exceeds "
                                f"remaining escrow {original - refunded} on {refund.stream_id}"
                            )
                        await db.execute(
                            "UPDATE escrows SET refunded_amount = ? WHERE stream_id = ?",
                            (str(refunded + refund.refund_amount), refund.stream_id),
                        )

                    await db.execute(
                        """
                        INSERT INTO refunds
                        (refund_id, stream_id, original_tx_id, breach_type, severity,
                         refund_percent, original_amount, refund_amount, recipient,
                         refund_tx_id, timestamp, settled_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            refund.refund_id,
                            refund.stream_id,
                            refund.original_transaction_id,
                            refund.breach_type.value,
                            refund.severity.value,
                            refund.refund_percent,
                            str(refund.original_amount),
                            str(refund.refund_amount),
                            refund.recipient,
                            refund.refund_transaction_id,
                            _iso(refund.timestamp),
                            _iso(refund.settled_at) if refund.settled_at else None,
                        ),
                    )
                    await db.commit()
            except sqlite3.IntegrityError:
                logger.warning(f"Refund conflicts with an existing record: {refund.refund_id}")
                return False
            except sqlite3.Error as e:
                raise LedgerWriteError(f"Failed to append refund {refund.refund_id}: {e}") from e

        logger.info(
            f"Recorded {refund.severity.value} refund {refund.refund_id}: "
            f"{refund.refund_amount} on {refund.stream_id}"
        )
        return True

    async def mark_refund_settled(self, refund_id: str, refund_transaction_id: str) -> bool:
        """Assign the refund's settlement transaction id. Only ever set once.

        Returns:
            True if assigned, False if the refund is unknown or already settled.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    UPDATE refunds SET refund_tx_id = ?, settled_at = ?
                    WHERE refund_id = ? AND refund_tx_id IS NULL
                    """,
                    (refund_transaction_id, _iso(utcnow()), refund_id),
                )
                await db.commit()
                updated = cursor.rowcount == 1
        except sqlite3.IntegrityError:
            logger.warning(f"Refund transaction already used: {refund_transaction_id}")
            return False

        if updated:
            logger.info(f"Refund {refund_id} settled in {refund_transaction_id}")
        else:
            logger.warning(f"Refund {refund_id} unknown or already settled")
        return updated

    async def get_refund(self, refund_id: str) -> Optional[RefundRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM refunds WHERE refund_id = ?", (refund_id,))
            row = await cursor.fetchone()
            return _refund_from_row(row) if row else None

    async def recent_refunds(self, count: int) -> List[RefundRecord]:
        if count <= 0:
            return []
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM refunds ORDER BY timestamp DESC, refund_id DESC LIMIT ?",
                (count,),
            )
            rows = await cursor.fetchall()
            return [_refund_from_row(row) for row in rows]

    async def refunds_for_stream(self, stream_id: str) -> List[RefundRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM refunds WHERE stream_id = ? ORDER BY timestamp, refund_id",
                (stream_id,),
            )
            rows = await cursor.fetchall()
            return [_refund_from_row(row) for row in rows]

    async def stats(self) -> ReceiptStats:
        """Count and sum receipts and refunds."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT amount FROM payments")
            paid = [int(row[0]) for row in await cursor.fetchall()]
            cursor = await db.execute("SELECT refund_amount FROM refunds")
            refunded = [int(row[0]) for row in await cursor.fetchall()]

        return ReceiptStats(
            total_payments=len(paid),
            total_refunds=len(refunded),
            total_paid=sum(paid),
            total_refunded=sum(refunded),
        )


class TransientReceiptCache:
    """In-process receipts from the legacy writer that predates the ledger.

    Insert-if-absent by transaction id, bounded to the newest ``max_size`` entries.
    """

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._receipts: "OrderedDict[str, PaymentReceipt]" = OrderedDict()

    def add(self, receipt: PaymentReceipt) -> bool:
        if receipt.transaction_id in self._receipts:
            return False
        self._receipts[receipt.transaction_id] = receipt
        while len(self._receipts) > self.max_size:
            self._receipts.popitem(last=False)
        return True

    def get(self, transaction_id: str) -> Optional[PaymentReceipt]:
        return self._receipts.get(transaction_id)

    def all(self) -> List[PaymentReceipt]:
        return list(self._receipts.values())

    def __len__(self) -> int:
        return len(self._receipts)


def _completeness(receipt: PaymentReceipt) -> int:
    return sum(1 for value in receipt.model_dump().values() if value not in (None, ""))


def _canonical(receipt: PaymentReceipt) -> str:
    return json.dumps(receipt.model_dump(mode="json"), sort_keys=True)


def merge_receipts(
    durable: Iterable[PaymentReceipt],
    transient: Iterable[PaymentReceipt],
    count: int,
) -> List[PaymentReceipt]:
    """Merge two receipt sources into one newest-first list of at most ``count``.

    Duplicates by transaction id keep the record with the most populated
    fields; ties fall back to the canonical JSON form so the result never
    depends on input order.
    """
    best: dict = {}
    for receipt in [*durable, *transient]:
        current = best.get(receipt.transaction_id)
        if current is None:
            best[receipt.transaction_id] = receipt
            continue
        candidate_key = (_completeness(receipt), _canonical(receipt))
        current_key = (_completeness(current), _canonical(current))
        if candidate_key > current_key:
            best[receipt.transaction_id] = receipt

    merged = sorted(
        best.values(),
        key=lambda r: (r.timestamp, r.transaction_id),
        reverse=True,
    )
    return merged[: max(count, 0)]
