"""Tests for signed transfers"""

from decimal import Decimal

import pytest
from eth_account import Account
from web3 import Web3

from wallet_collection.exceptions import (
    BroadcastFailed,
    GasEstimationFailed,
    InsufficientBalance,
    NetworkError,
    Pending,
    TransactionFailed,
)
from wallet_collection.fund_mover import (
    Asset,
    FundMover,
    NATIVE_TRANSFER_GAS,
    NonceSequence,
    encode_token_transfer,
)
from wallet_collection.retry import RetryPolicy

from conftest import COLLECTION_WALLET, TOKEN_ADDRESS, wei


@pytest.fixture
def mover(reader, no_sleep):
    return FundMover(
        reader,
        TOKEN_ADDRESS,
        receipt_policy=RetryPolicy(max_attempts=3, delay_seconds=1.0),
        sleep=no_sleep
    )


def test_token_transfer_calldata():
    data = encode_token_transfer(COLLECTION_WALLET, 10 ** 18)

    assert data.startswith("0xa9059cbb")
    assert data[10:74] == "0" * 24 + COLLECTION_WALLET.lower()[2:]
    assert int(data[74:], 16) == 10 ** 18


@pytest.mark.asyncio
async def test_token_transfer_signs_and_broadcasts(reader, mover, alice):
    reader.set_token(alice.address, "12.5")
    reader.nonces[alice.address.lower()] = 4

    tx_hash = await mover.transfer(Asset.TOKEN, alice.private_key, COLLECTION_WALLET, Decimal("12.5"))

    assert len(reader.sent) == 1
    assert Web3.to_hex(Web3.keccak(reader.sent[0])) == tx_hash
    assert "estimate_gas" in reader.calls
    assert "get_nonce:pending" in reader.calls
    assert Account.recover_transaction(reader.sent[0]) == alice.address


@pytest.mark.asyncio
async def test_token_transaction_fields(reader, mover, alice):
    reader.set_token(alice.address, "3")

    tx = await mover.build_transaction(Asset.TOKEN, alice.address, COLLECTION_WALLET, Decimal("3"), nonce=9)

    assert tx['to'] == TOKEN_ADDRESS
    assert tx['value'] == 0
    assert tx['nonce'] == 9
    assert tx['gas'] == 60000
    assert tx['chainId'] == 56
    assert tx['data'] == encode_token_transfer(COLLECTION_WALLET, wei("3"))


@pytest.mark.asyncio
async def test_native_transaction_uses_fixed_gas(reader, mover, alice):
    reader.set_native(alice.address, "1")

    tx = await mover.build_transaction(Asset.NATIVE, alice.address, COLLECTION_WALLET, Decimal("0.5"), nonce=0)

    assert tx['gas'] == NATIVE_TRANSFER_GAS
    assert tx['value'] == wei("0.5")
    assert tx['to'] == COLLECTION_WALLET
    assert "estimate_gas" not in reader.calls


@pytest.mark.asyncio
async def test_explicit_nonce_skips_lookup(reader, mover, alice):
    reader.set_token(alice.address, "1")

    await mover.transfer(Asset.TOKEN, alice.private_key, COLLECTION_WALLET, Decimal("1"), nonce=3)

    assert not any(call.startswith("get_nonce") for call in reader.calls)


@pytest.mark.asyncio
async def test_sequential_transfers_use_increasing_nonces(reader, mover, mocker, alice):
    reader.set_token(alice.address, "10")
    reader.nonces[alice.address.lower()] = 5
    build = mocker.patch.object(mover, "build_transaction", side_effect=mover.build_transaction)

    nonces = mover.nonce_sequence(alice.address)
    await mover.transfer(Asset.TOKEN, alice.private_key, COLLECTION_WALLET, Decimal("1"), nonce=await nonces.next())
    await mover.transfer(Asset.TOKEN, alice.private_key, COLLECTION_WALLET, Decimal("2"), nonce=await nonces.next())

    used = [call.args[4] for call in build.await_args_list]
    assert used == [5, 6]
    assert reader.calls.count("get_nonce:pending") == 1


@pytest.mark.asyncio
async def test_nonce_sequence_starts_at_pending_nonce(reader, alice):
    reader.nonces[alice.address.lower()] = 12
    sequence = NonceSequence(reader, alice.address)

    assert [await sequence.next(), await sequence.next(), await sequence.next()] == [12, 13, 14]
    assert sequence.peek == 15


@pytest.mark.asyncio
async def test_insufficient_token_balance(reader, mover, alice):
    reader.set_token(alice.address, "1")

    with pytest.raises(InsufficientBalance):
        await mover.transfer(Asset.TOKEN, alice.private_key, COLLECTION_WALLET, Decimal("2"))

    assert reader.sent == []


@pytest.mark.asyncio
async def test_native_balance_must_cover_gas(reader, mover, alice):
    reader.set_native(alice.address, "0.001")

    with pytest.raises(InsufficientBalance):
        await mover.transfer(Asset.NATIVE, alice.private_key, COLLECTION_WALLET, Decimal("0.001"))


@pytest.mark.asyncio
async def test_gas_estimation_failure(reader, mover, alice):
    reader.set_token(alice.address, "5")
    reader.estimate_error = NetworkError("execution reverted")

    with pytest.raises(GasEstimationFailed):
        await mover.transfer(Asset.TOKEN, alice.private_key, COLLECTION_WALLET, Decimal("5"))

    assert reader.sent == []


@pytest.mark.asyncio
async def test_broadcast_failure_is_not_retried(reader, mover, alice):
    reader.set_token(alice.address, "5")
    reader.broadcast_error = NetworkError("connection reset")

    with pytest.raises(BroadcastFailed) as exc_info:
        await mover.transfer(Asset.TOKEN, alice.private_key, COLLECTION_WALLET, Decimal("5"))

    assert reader.calls.count("send_raw_transaction") == 1
    assert exc_info.value.tx_hash.startswith("0x")
    assert len(exc_info.value.tx_hash) == 66
    assert exc_info.value.to_dict()['tx_hash'] == exc_info.value.tx_hash


@pytest.mark.asyncio
async def test_reverted_receipt(reader, mover, alice):
    reader.set_token(alice.address, "5")
    reader.mine_status = 0

    with pytest.raises(TransactionFailed):
        await mover.transfer(Asset.TOKEN, alice.private_key, COLLECTION_WALLET, Decimal("5"))


@pytest.mark.asyncio
async def test_unmined_transfer_raises_pending(reader, mover, no_sleep, alice):
    reader.set_token(alice.address, "5")
    reader.auto_mine = False

    with pytest.raises(Pending) as exc_info:
        await mover.transfer(Asset.TOKEN, alice.private_key, COLLECTION_WALLET, Decimal("5"))

    assert exc_info.value.tx_hash is not None
    assert reader.calls.count("send_raw_transaction") == 1
    assert len(no_sleep.delays) == 2


@pytest.mark.asyncio
async def test_no_wait_returns_immediately(reader, mover, alice):
    reader.set_token(alice.address, "5")
    reader.auto_mine = False

    tx_hash = await mover.transfer(
        Asset.TOKEN, alice.private_key, COLLECTION_WALLET, Decimal("5"), wait_for_receipt=False
    )

    assert tx_hash.startswith("0x")
    assert "get_receipt" not in reader.calls
