"""Unit tests for merging durable and cached receipts."""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from src.ledger import TransientReceiptCache, merge_receipts
from src.models import PaymentReceipt

PAYER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
SELLER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def receipt(tx_id: str, minutes: int, **overrides) -> PaymentReceipt:
    fields = dict(
        transaction_id=tx_id,
        payer=PAYER,
        recipient=SELLER,
        amount=100_000,
        currency="USDC.e",
        resource="/api/premium-data",
        chain_id=338,
        timestamp=T0 + timedelta(minutes=minutes),
    )
    fields.update(overrides)
    return PaymentReceipt(**fields)


@pytest.mark.unit
class TestMergeReceipts:
    """Test dedup, ordering and determinism of the receipt merge."""

    def test_overlapping_transaction_yields_one_entry(self):
        durable = [receipt("0xa", 1, explorer_url="https://explorer/tx/0xa"), receipt("0xb", 2)]
        cached = [receipt("0xa", 1), receipt("0xc", 3)]

        merged = merge_receipts(durable, cached, 10)

        assert [r.transaction_id for r in merged] == ["0xc", "0xb", "0xa"]

    def test_most_complete_record_wins(self):
        complete = receipt("0xa", 1, explorer_url="https://explorer/tx/0xa")
        sparse = receipt("0xa", 1)

        assert merge_receipts([sparse], [complete], 10) == [complete]
        assert merge_receipts([complete], [sparse], 10) == [complete]

    def test_sorted_newest_first_and_truncated(self):
        durable = [receipt(f"0x{i}", i) for i in range(5)]

        merged = merge_receipts(durable, [], 3)

        assert [r.transaction_id for r in merged] == ["0x4", "0x3", "0x2"]

    def test_independent_of_input_order(self):
        durable = [
            receipt("0xa", 1, explorer_url="https://explorer/tx/0xa"),
            receipt("0xb", 2),
            receipt("0xd", 2),
        ]
        cached = [
            receipt("0xa", 1, amount=999),
            receipt("0xb", 2, resource="/api/ai-inference"),
            receipt("0xc", 0),
        ]
        expected = merge_receipts(durable, cached, 10)

        for d_perm in itertools.permutations(durable):
            for c_perm in itertools.permutations(cached):
                assert merge_receipts(d_perm, c_perm, 10) == expected
                assert merge_receipts(c_perm, d_perm, 10) == expected

    def test_equally_complete_conflict_is_deterministic(self):
        left = receipt("0xa", 1, amount=1)
        right = receipt("0xa", 1, amount=2)

        assert merge_receipts([left], [right], 10) == merge_receipts([right], [left], 10)
        assert len(merge_receipts([left], [right], 10)) == 1

    def test_empty_sources(self):
        assert merge_receipts([], [], 10) == []
        assert merge_receipts([receipt("0xa", 1)], [], 0) == []


@pytest.mark.unit
class TestTransientReceiptCache:
    """Test the legacy in-process receipt cache."""

    def test_insert_if_absent(self):
        cache = TransientReceiptCache()

        assert cache.add(receipt("0xa", 1)) is True
        assert cache.add(receipt("0xa", 1, amount=5)) is False
        assert cache.get("0xa").amount == 100_000
        assert len(cache) == 1

    def test_bounded(self):
        cache = TransientReceiptCache(max_size=2)
        for i in range(3):
            cache.add(receipt(f"0x{i}", i))

        assert [r.transaction_id for r in cache.all()] == ["0x1", "0x2"]

    def test_instances_are_independent(self):
        first, second = TransientReceiptCache(), TransientReceiptCache()
        first.add(receipt("0xa", 1))

        assert second.get("0xa") is None
