"""
Fund Mover

Signs and broadcasts single transfers of native currency or the fungible token:
1. Resolve the sender from its private key
2. Nonce: explicit (NonceSequence) or the sender's pending nonce
3. Balance check before signing
4. Gas: eth_estimateGas for token calls, fixed 21000 for plain value transfers
5. Offline signing (legacy gasPrice transaction), then one broadcast
6. Bounded wait for the receipt (reads only)

A broadcast is never retried. If the node rejects or drops the request the
signed hash is reported in BroadcastFailed so the operator can check the chain
before anything is resent.
"""

import enum
from decimal import Decimal
from typing import Dict, Optional

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_utils import keccak
from loguru import logger
from web3 import Web3

from .chain_reader import ChainReader, checksum
from .exceptions import (
    BroadcastFailed,
    GasEstimationFailed,
    InsufficientBalance,
    NetworkError,
    Pending,
    TransactionFailed,
)
from .retry import RetryPolicy, retry_async
from .units import format_amount, from_base_units, to_base_units, to_decimal

NATIVE_TRANSFER_GAS = 21000


class Asset(str, enum.Enum):
    NATIVE = "native"
    TOKEN = "token"


def _selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


def encode_token_transfer(to_address: str, raw_amount: int) -> str:
    """Calldata for transfer(address,uint256)"""
    data = _selector("transfer(address,uint256)") + abi_encode(
        ["address", "uint256"],
        [Web3.to_checksum_address(to_address), int(raw_amount)]
    )
    return "0x" + data.hex()


class NonceSequence:
    """
    Hands out consecutive nonces for one sender within one logical operation

    The first call to next() fetches the pending nonce; later calls increment
    locally so back-to-back transfers never read the same pending value.
    """

    def __init__(self, reader: ChainReader, address: str, start: Optional[int] = None):
        self.reader = reader
        self.address = checksum(address)
        self._next = start

    async def next(self) -> int:
        if self._next is None:
            self._next = await self.reader.get_nonce(self.address, 'pending')
        nonce = self._next
        self._next += 1
        return nonce

    @property
    def peek(self) -> Optional[int]:
        return self._next


class FundMover:
    """Native and token transfers from a custodial or operational key"""

    def __init__(
        self,
        reader: ChainReader,
        token_address: str,
        token_decimals: int = 18,
        native_decimals: int = 18,
        receipt_policy: Optional[RetryPolicy] = None,
        sleep=None
    ):
        """
        Initialize fund mover

        Args:
            reader: Chain reader used for every read and the broadcast
            token_address: Fungible token contract
            token_decimals: Token decimals
            native_decimals: Native currency decimals
            receipt_policy: Receipt polling budget after broadcast
            sleep: Sleep coroutine override (tests)
        """
        self.reader = reader
        self.token_address = checksum(token_address)
        self.token_decimals = token_decimals
        self.native_decimals = native_decimals
        self.receipt_policy = receipt_policy or RetryPolicy(max_attempts=20, delay_seconds=3.0)
        self._sleep = sleep

    def nonce_sequence(self, address: str, start: Optional[int] = None) -> NonceSequence:
        return NonceSequence(self.reader, address, start)

    async def native_transfer_cost(self, gas_price: Optional[int] = None) -> int:
        """Fee in wei for one plain value transfer at the current gas price"""
        if gas_price is None:
            gas_price = await self.reader.get_gas_price()
        return NATIVE_TRANSFER_GAS * gas_price

    async def build_transaction(
        self,
        asset: Asset,
        from_address: str,
        to_address: str,
        amount: Decimal,
        nonce: int
    ) -> Dict:
        """
        Build a fully specified, unsigned transaction

        Raises:
            InsufficientBalance: sender cannot cover amount (plus gas for native)
            GasEstimationFailed: node refused to estimate the token call
        """
        to_address = checksum(to_address)
        gas_price = await self.reader.get_gas_price()
        chain_id = await self.reader.get_chain_id()

        if asset == Asset.TOKEN:
            raw_amount = to_base_units(amount, self.token_decimals)
            balance = await self.reader.get_token_balance(from_address)
            if raw_amount <= 0 or balance < raw_amount:
                raise InsufficientBalance(
                    f"Token balance {format_amount(from_base_units(balance, self.token_decimals))} "
                    f"cannot cover {format_amount(Decimal(amount))}"
                )

            tx = {
                'from': from_address,
                'to': self.token_address,
                'value': 0,
                'data': encode_token_transfer(to_address, raw_amount),
                'nonce': nonce,
                'gasPrice': gas_price,
                'chainId': chain_id,
            }
            try:
                tx['gas'] = await self.reader.estimate_gas(tx)
            except NetworkError as e:
                raise GasEstimationFailed(f"Gas estimation failed for token transfer: {e}") from e
            return tx

        raw_amount = to_base_units(amount, self.native_decimals)
        gas_cost = NATIVE_TRANSFER_GAS * gas_price
        balance = await self.reader.get_native_balance(from_address)
        if raw_amount <= 0 or balance < raw_amount + gas_cost:
            raise InsufficientBalance(
                f"Native balance {format_amount(from_base_units(balance, self.native_decimals))} "
                f"cannot cover {format_amount(Decimal(amount))} plus gas"
            )

        return {
            'from': from_address,
            'to': to_address,
            'value': raw_amount,
            'nonce': nonce,
            'gas': NATIVE_TRANSFER_GAS,
            'gasPrice': gas_price,
            'chainId': chain_id,
        }

    async def transfer(
        self,
        asset: Asset,
        from_private_key,
        to_address: str,
        amount: Decimal,
        nonce: Optional[int] = None,
        wait_for_receipt: bool = True
    ) -> str:
        """
        Sign and broadcast one transfer

        Args:
            asset: Asset.NATIVE or Asset.TOKEN
            from_private_key: Sender key (bytes or hex)
            to_address: Recipient
            amount: Amount in display units
            nonce: Explicit nonce; pending nonce is fetched when omitted
            wait_for_receipt: Wait until mined before returning

        Returns:
            Transaction hash (0x hex)
        """
        account = Account.from_key(from_private_key)
        asset = Asset(asset)
        amount = to_decimal(amount)

        if nonce is None:
            nonce = await self.reader.get_nonce(account.address, 'pending')

        tx = await self.build_transaction(asset, account.address, to_address, amount, nonce)
        tx.pop('from', None)

        signed = Account.sign_transaction(tx, account.key)
        tx_hash = Web3.to_hex(signed.hash)

        logger.info(
            f"Sending {format_amount(amount)} {asset.value} "
            f"{account.address[:10]}... -> {to_address} "
            f"(nonce {nonce})"
        )

        try:
            broadcast_hash = await self.reader.send_raw_transaction(signed.raw_transaction)
        except NetworkError as e:
            logger.error(f"✗ Broadcast failed for {tx_hash}: {e}")
            raise BroadcastFailed(f"Broadcast failed: {e}", tx_hash=tx_hash) from e

        if broadcast_hash and broadcast_hash.lower() != tx_hash.lower():
            logger.warning(f"Node returned hash {broadcast_hash}, signed hash was {tx_hash}")
            tx_hash = broadcast_hash

        logger.info(f"✓ Broadcast {tx_hash}")

        if wait_for_receipt:
            await self.wait_for_receipt(tx_hash)

        return tx_hash

    async def wait_for_receipt(self, tx_hash: str):
        """
        Poll for the receipt of a broadcast transaction

        Raises:
            TransactionFailed: receipt shows a revert
            Pending: not mined within the receipt budget
        """
        async def fetch():
            receipt = await self.reader.get_receipt(tx_hash)
            if receipt is None:
                raise Pending(f"Transaction {tx_hash} not mined yet", tx_hash=tx_hash)
            return receipt

        try:
            receipt = await retry_async(
                fetch,
                self.receipt_policy,
                retry_on=(Pending, NetworkError),
                description=f"receipt {tx_hash[:10]}...",
                sleep=self._sleep
            )
        except NetworkError as e:
            raise Pending(f"Could not confirm {tx_hash}: {e}", tx_hash=tx_hash) from e

        if not receipt.succeeded:
            logger.error(f"✗ Transaction {tx_hash} reverted")
            raise TransactionFailed(f"Transaction {tx_hash} reverted", tx_hash=tx_hash)

        logger.info(f"✓ Confirmed {tx_hash} in block {receipt.block_number}")
        return receipt
