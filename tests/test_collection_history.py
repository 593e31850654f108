"""Tests for the collection history database"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from wallet_collection.collection_history import CollectionHistoryDB
from wallet_collection.sweep_orchestrator import CollectionResult, CollectionSummary

ALICE_WALLET = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"
BOB_WALLET = "0x9999999999999999999999999999999999999999"


@pytest.fixture
def history():
    db = CollectionHistoryDB(":memory:")
    yield db
    db.close()


def make_summary():
    started = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    return CollectionSummary(
        started_at=started,
        finished_at=started + timedelta(seconds=9),
        results=[
            CollectionResult("alice", ALICE_WALLET, "token", success=True,
                             tx_hash="0x" + "aa" * 32, amount=Decimal("12.5"), gas_topped_up=True),
            CollectionResult("alice", ALICE_WALLET, "native", success=True,
                             tx_hash="0x" + "bb" * 32, amount=Decimal("0.0031")),
            CollectionResult("bob", BOB_WALLET, "token", success=True,
                             tx_hash="0x" + "cc" * 32, amount=Decimal("0.1")),
            CollectionResult("carol", None, "token", error_kind="InsufficientBalance",
                             error_message="0.004 USDT is below the collectible minimum"),
            CollectionResult("dave", None, "token", error_kind="BroadcastFailed",
                             error_message="connection reset", tx_hash="0x" + "dd" * 32),
        ],
    )


def test_record_summary(history):
    run_id = history.record_summary(make_summary())

    assert run_id == 1
    row = history.conn.execute("SELECT * FROM sweep_runs WHERE id = ?", (run_id,)).fetchone()
    assert row['wallets'] == 4
    assert row['succeeded'] == 3
    assert row['skipped'] == 1
    assert row['faults'] == 1


def test_failed_collections_exclude_skips(history):
    history.record_summary(make_summary())

    failed = history.get_failed_collections()

    assert [row['user_id'] for row in failed] == ["dave"]
    assert failed[0]['tx_hash'] == "0x" + "dd" * 32


def test_collections_for_wallet_ignore_case(history):
    history.record_summary(make_summary())

    rows = history.get_collections_for_wallet(ALICE_WALLET.lower())

    assert sorted(row['asset'] for row in rows) == ["native", "token"]
    assert {row['amount'] for row in rows} == {"12.5", "0.0031"}


def test_statistics_totals_are_exact(history):
    history.record_summary(make_summary())
    history.record_result(CollectionResult("erin", BOB_WALLET, "token", success=True, amount=Decimal("0.2")))

    stats = history.get_statistics()

    assert stats['total_runs'] == 1
    assert stats['total_collections'] == 6
    assert stats['successful_collections'] == 4
    assert stats['failed_collections'] == 1
    assert stats['skipped_collections'] == 1
    assert stats['total_collected'] == {"token": "12.8", "native": "0.0031"}


def test_standalone_result_has_no_run(history):
    assert history.record_result(CollectionResult("bob", BOB_WALLET, "native", success=True, amount=Decimal("1")))

    row = history.get_collections_for_wallet(BOB_WALLET)[0]
    assert row['run_id'] is None
    assert row['success'] == 1


def test_invalid_asset_is_rejected(history):
    assert history.record_result(CollectionResult("bob", BOB_WALLET, "btc")) is False
    assert history.get_statistics()['total_collections'] == 0


def test_empty_statistics(history):
    stats = history.get_statistics()

    assert stats['success_rate'] == 0
    assert stats['total_collected'] == {}
