"""Shared fixtures: in-memory chain and recording fund mover"""

from decimal import Decimal
from typing import Dict, List, Optional

import pytest
from eth_account import Account
from eth_utils import keccak
from web3 import Web3

from wallet_collection.chain_reader import (
    ChainStatus,
    LogRecord,
    ReceiptRecord,
    TransactionRecord,
)
from wallet_collection.fund_mover import Asset, NonceSequence
from wallet_collection.transaction_verifier import TRANSFER_EVENT_TOPIC
from wallet_collection.units import to_base_units
from wallet_collection.wallet_derivation import WalletDeriver, derive_wallet

TOKEN_ADDRESS = "0x55d398326f99059fF775485246999027B3197955"
COLLECTION_WALLET = "0x1111111111111111111111111111111111111111"
ADMIN_FEE_WALLET = "0x2222222222222222222222222222222222222222"
SENDER_ADDRESS = "0x3333333333333333333333333333333333333333"
SEED = "test-seed-do-not-use"
OPERATIONAL_KEY = "0x" + "11" * 32
GAS_PRICE = 5_000_000_000
NATIVE_GAS_COST = 21000 * GAS_PRICE


def wei(amount) -> int:
    return to_base_units(Decimal(str(amount)), 18)


def tx_hash_for(label: str) -> str:
    return Web3.to_hex(keccak(text=label))


def pad_topic(address: str) -> str:
    return "0x" + "0" * 24 + address.lower()[2:]


def transfer_log(sender: str, recipient: str, raw_amount: int, token: str = TOKEN_ADDRESS) -> LogRecord:
    return LogRecord(
        address=Web3.to_checksum_address(token),
        topics=(TRANSFER_EVENT_TOPIC, pad_topic(sender), pad_topic(recipient)),
        data="0x" + format(raw_amount, "064x"),
        log_index=0,
    )


class FakeChainReader:
    """In-memory stand-in for ChainReader"""

    def __init__(self, chain_id: int = 56):
        self.token_address = TOKEN_ADDRESS
        self.chain_id = chain_id
        self.gas_price = GAS_PRICE
        self.native_balances: Dict[str, int] = {}
        self.token_balances: Dict[str, int] = {}
        self.nonces: Dict[str, int] = {}
        self.transactions: Dict[str, TransactionRecord] = {}
        self.receipts: Dict[str, ReceiptRecord] = {}
        self.receipt_delays: Dict[str, int] = {}
        self.sent: List[bytes] = []
        self.calls: List[str] = []
        self.estimate_error: Optional[Exception] = None
        self.broadcast_error: Optional[Exception] = None
        self.mine_status = 1
        self.auto_mine = True
        self.closed = False

    # Test helpers

    def set_native(self, address: str, amount):
        self.native_balances[address.lower()] = wei(amount)

    def set_token(self, address: str, amount):
        self.token_balances[address.lower()] = wei(amount)

    def add_transaction(
        self,
        tx_hash: str,
        transaction: TransactionRecord,
        receipt: Optional[ReceiptRecord] = None
    ):
        self.transactions[tx_hash.lower()] = transaction
        if receipt is not None:
            self.receipts[tx_hash.lower()] = receipt

    # ChainReader interface

    async def check_connectivity(self) -> ChainStatus:
        self.calls.append("check_connectivity")
        return ChainStatus(chain_id=self.chain_id, block_number=1000, expected_chain_id=56)

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def get_native_balance(self, address: str) -> int:
        self.calls.append("get_native_balance")
        return self.native_balances.get(address.lower(), 0)

    async def get_token_balance(self, address: str) -> int:
        self.calls.append("get_token_balance")
        return self.token_balances.get(address.lower(), 0)

    async def get_transaction(self, tx_hash: str) -> Optional[TransactionRecord]:
        self.calls.append("get_transaction")
        return self.transactions.get(tx_hash.lower())

    async def get_receipt(self, tx_hash: str) -> Optional[ReceiptRecord]:
        self.calls.append("get_receipt")
        key = tx_hash.lower()
        if self.receipt_delays.get(key, 0) > 0:
            self.receipt_delays[key] -= 1
            return None
        return self.receipts.get(key)

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def get_nonce(self, address: str, mode: str = 'pending') -> int:
        self.calls.append(f"get_nonce:{mode}")
        return self.nonces.get(address.lower(), 0)

    async def estimate_gas(self, tx: Dict) -> int:
        self.calls.append("estimate_gas")
        if self.estimate_error is not None:
            raise self.estimate_error
        return 60000

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        self.calls.append("send_raw_transaction")
        if self.broadcast_error is not None:
            raise self.broadcast_error
        self.sent.append(bytes(raw_transaction))
        tx_hash = Web3.to_hex(keccak(bytes(raw_transaction)))
        if self.auto_mine:
            self.receipts[tx_hash] = ReceiptRecord(
                tx_hash=tx_hash, status=self.mine_status, block_number=1001, gas_used=21000
            )
        return tx_hash

    async def close(self):
        self.closed = True


class RecordingFundMover:
    """FundMover stand-in that records transfers and applies them to the fake chain"""

    def __init__(self, reader: FakeChainReader):
        self.reader = reader
        self.transfers: List[Dict] = []
        self.failures: Dict[str, Exception] = {}

    def fail_transfers_involving(self, address: str, error: Exception):
        self.failures[address.lower()] = error

    def nonce_sequence(self, address: str, start: Optional[int] = None) -> NonceSequence:
        return NonceSequence(self.reader, address, start)

    async def native_transfer_cost(self, gas_price: Optional[int] = None) -> int:
        return 21000 * (gas_price or self.reader.gas_price)

    async def transfer(self, asset, from_private_key, to_address, amount, nonce=None, wait_for_receipt=True):
        sender = Account.from_key(from_private_key).address
        for key in (sender.lower(), to_address.lower()):
            if key in self.failures:
                raise self.failures[key]

        if nonce is None:
            nonce = await self.reader.get_nonce(sender)
        self.reader.nonces[sender.lower()] = max(self.reader.nonces.get(sender.lower(), 0), nonce + 1)

        raw = wei(amount)
        if Asset(asset) == Asset.TOKEN:
            balances = self.reader.token_balances
            balances[sender.lower()] = balances.get(sender.lower(), 0) - raw
            balances[to_address.lower()] = balances.get(to_address.lower(), 0) + raw
            self.reader.native_balances[sender.lower()] = (
                self.reader.native_balances.get(sender.lower(), 0) - 60000 * self.reader.gas_price
            )
        else:
            balances = self.reader.native_balances
            balances[sender.lower()] = balances.get(sender.lower(), 0) - raw - NATIVE_GAS_COST
            balances[to_address.lower()] = balances.get(to_address.lower(), 0) + raw

        tx_hash = "0x" + format(len(self.transfers) + 1, "064x")
        self.transfers.append({
            'asset': Asset(asset),
            'from': sender,
            'to': to_address,
            'amount': Decimal(amount),
            'nonce': nonce,
            'tx_hash': tx_hash,
        })
        return tx_hash


@pytest.fixture
def reader():
    return FakeChainReader()


@pytest.fixture
def fund_mover(reader):
    return RecordingFundMover(reader)


@pytest.fixture
def deriver():
    return WalletDeriver(SEED)


@pytest.fixture
def alice():
    return derive_wallet("alice", SEED)


@pytest.fixture
def bob():
    return derive_wallet("bob", SEED)


@pytest.fixture
def no_sleep():
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    sleep.delays = delays
    return sleep
