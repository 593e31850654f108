"""Tests for RPC result conversion and error mapping"""

import aiohttp
import pytest
from hexbytes import HexBytes
from web3.exceptions import TransactionNotFound

from wallet_collection.chain_reader import (
    ChainReader,
    ChainStatus,
    checksum,
    receipt_from_rpc,
    to_hex,
    transaction_from_rpc,
)
from wallet_collection.exceptions import InvalidAddress, NetworkError

from conftest import COLLECTION_WALLET, SENDER_ADDRESS, TOKEN_ADDRESS, pad_topic, tx_hash_for

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


@pytest.fixture
def w3(mocker):
    return mocker.MagicMock()


@pytest.fixture
def chain(w3):
    return ChainReader("http://127.0.0.1:1", TOKEN_ADDRESS, w3=w3)


def test_to_hex():
    assert to_hex(HexBytes("0xABCD")) == "0xabcd"
    assert to_hex("ABCD") == "0xabcd"
    assert to_hex(None) == "0x"


def test_checksum_rejects_garbage():
    assert checksum(TOKEN_ADDRESS.lower()) == TOKEN_ADDRESS

    for bad in ("0x1234", "", None, "not-an-address"):
        with pytest.raises(InvalidAddress):
            checksum(bad)


def test_transaction_from_rpc():
    tx_hash = tx_hash_for("rpc-tx")
    record = transaction_from_rpc({
        'hash': HexBytes(tx_hash),
        'from': SENDER_ADDRESS.lower(),
        'to': TOKEN_ADDRESS.lower(),
        'value': 0,
        'nonce': 14,
        'blockNumber': 38_000_000,
        'input': HexBytes("0xa9059cbb"),
    })

    assert record.tx_hash == tx_hash
    assert record.to_address == TOKEN_ADDRESS
    assert record.nonce == 14
    assert record.input_data == "0xa9059cbb"


def test_contract_creation_has_no_recipient():
    record = transaction_from_rpc({
        'hash': HexBytes(tx_hash_for("deploy")), 'from': SENDER_ADDRESS, 'to': None,
        'value': 0, 'nonce': 0, 'blockNumber': None,
    })

    assert record.to_address is None
    assert record.block_number is None


def test_receipt_from_rpc():
    tx_hash = tx_hash_for("rpc-receipt")
    receipt = receipt_from_rpc({
        'transactionHash': HexBytes(tx_hash),
        'status': 1,
        'blockNumber': 38_000_001,
        'gasUsed': 51_000,
        'logs': [{
            'address': TOKEN_ADDRESS.lower(),
            'topics': [HexBytes(TRANSFER_TOPIC), HexBytes(pad_topic(SENDER_ADDRESS)),
                       HexBytes(pad_topic(COLLECTION_WALLET))],
            'data': HexBytes(format(10 ** 18, "064x")),
            'logIndex': 3,
        }],
    })

    assert receipt.succeeded
    assert receipt.tx_hash == tx_hash
    log = receipt.logs[0]
    assert log.address == TOKEN_ADDRESS
    assert log.topics[0] == TRANSFER_TOPIC
    assert int(log.data, 16) == 10 ** 18
    assert log.log_index == 3


def test_failed_receipt():
    receipt = receipt_from_rpc({'transactionHash': HexBytes(tx_hash_for("x")), 'status': 0, 'logs': []})

    assert not receipt.succeeded


def test_construction_does_no_io():
    chain = ChainReader("http://127.0.0.1:1", TOKEN_ADDRESS.lower(), timeout_seconds=5)

    assert chain.token_address == TOKEN_ADDRESS


def test_invalid_token_address():
    with pytest.raises(InvalidAddress):
        ChainReader("http://127.0.0.1:1", "0xdead")


@pytest.mark.asyncio
async def test_invalid_nonce_mode(chain):
    with pytest.raises(ValueError):
        await chain.get_nonce(COLLECTION_WALLET, mode="earliest")


@pytest.mark.asyncio
async def test_rpc_errors_become_network_errors(chain, w3, mocker):
    w3.eth.get_balance = mocker.AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))

    with pytest.raises(NetworkError, match="eth_getBalance"):
        await chain.get_native_balance(COLLECTION_WALLET)


@pytest.mark.asyncio
async def test_unknown_transaction_is_none(chain, w3, mocker):
    w3.eth.get_transaction = mocker.AsyncMock(side_effect=TransactionNotFound("unknown"))
    w3.eth.get_transaction_receipt = mocker.AsyncMock(side_effect=TransactionNotFound("unmined"))

    assert await chain.get_transaction(tx_hash_for("missing")) is None
    assert await chain.get_receipt(tx_hash_for("missing")) is None


@pytest.mark.asyncio
async def test_native_balance_lookup(chain, w3, mocker):
    w3.eth.get_balance = mocker.AsyncMock(return_value=5 * 10 ** 15)

    assert await chain.get_native_balance(COLLECTION_WALLET.lower()) == 5 * 10 ** 15
    w3.eth.get_balance.assert_awaited_once_with(COLLECTION_WALLET)


def test_chain_status_mismatch():
    status = ChainStatus(chain_id=97, block_number=1, expected_chain_id=56)

    assert not status.matches_expected
    assert status.to_dict()['matches_expected'] is False
