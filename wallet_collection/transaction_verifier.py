"""
Transaction Verifier

Confirms a user-submitted transaction and works out what it actually moved:
1. Hash shape check (0x + 64 hex) before any network call
2. Bounded polling until the transaction and its receipt are visible
3. Receipt status must be success
4. Transfer resolution from (transaction, receipt):
   - call to the token contract -> decode the Transfer event log
   - plain value transfer       -> native amount
   - anything else              -> no transfer
5. Minimum floor for token transfers

For token transfers the transaction's own `to` is the contract and its
`value` is zero; the beneficiary and amount only exist in the event log.
The verifier reports the decoded beneficiary as `actual_recipient` and leaves
the comparison with the expected wallet to the caller.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Union

from loguru import logger
from web3 import Web3

from .chain_reader import ChainReader, LogRecord, ReceiptRecord, TransactionRecord
from .exceptions import (
    BelowMinimum,
    MalformedHash,
    NetworkError,
    NotFound,
    Pending,
    TransactionFailed,
)
from .retry import RetryPolicy, retry_async
from .units import format_amount, from_base_units

TX_HASH_PATTERN = re.compile(r'^0x[0-9a-fA-F]{64}$')

# keccak("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


# ---- Transfer variants ----

@dataclass(frozen=True)
class NativeTransfer:
    amount: Decimal
    recipient: Optional[str]


@dataclass(frozen=True)
class TokenTransfer:
    amount: Decimal
    raw_amount: int
    sender: str
    recipient: str


@dataclass(frozen=True)
class NoTransfer:
    pass


Transfer = Union[NativeTransfer, TokenTransfer, NoTransfer]


def validate_tx_hash(tx_hash: str) -> str:
    """Return the hash lower-cased or raise MalformedHash"""
    if not isinstance(tx_hash, str) or not TX_HASH_PATTERN.match(tx_hash.strip()):
        raise MalformedHash(
            f"Invalid transaction hash format: {tx_hash!r}. Must be 66 characters starting with 0x"
        )
    return tx_hash.strip().lower()


def _topic_to_address(topic: str) -> str:
    # Indexed addresses are left-padded to 32 bytes
    return Web3.to_checksum_address("0x" + topic[-40:])


def decode_transfer_log(log: LogRecord, token_decimals: int = 18) -> Optional[TokenTransfer]:
    """Decode a Transfer(address,address,uint256) log, or None if it is not one"""
    if len(log.topics) < 3 or log.topics[0].lower() != TRANSFER_EVENT_TOPIC:
        return None

    data = log.data[2:] if log.data.startswith("0x") else log.data
    if not data:
        return None

    raw_amount = int(data[:64], 16)
    return TokenTransfer(
        amount=from_base_units(raw_amount, token_decimals),
        raw_amount=raw_amount,
        sender=_topic_to_address(log.topics[1]),
        recipient=_topic_to_address(log.topics[2]),
    )


def resolve_transfer(
    transaction: TransactionRecord,
    receipt: ReceiptRecord,
    token_address: str,
    token_decimals: int = 18,
    native_decimals: int = 18
) -> Transfer:
    """
    Work out the economic transfer of a mined transaction

    Only Transfer logs emitted by the token contract itself are considered;
    the first one wins.
    """
    token = token_address.lower()

    if transaction.to_address and transaction.to_address.lower() == token:
        for log in receipt.logs:
            if log.address.lower() != token:
                continue
            decoded = decode_transfer_log(log, token_decimals)
            if decoded is not None:
                return decoded
        return NoTransfer()

    if transaction.value > 0:
        return NativeTransfer(
            amount=from_base_units(transaction.value, native_decimals),
            recipient=transaction.to_address,
        )

    return NoTransfer()


@dataclass
class VerifiedTransaction:
    """Verified on-chain transaction and its resolved transfer"""
    tx_hash: str
    from_address: str
    to_address: Optional[str]
    actual_recipient: Optional[str]
    native_value: Decimal
    token_transfer_amount: Optional[Decimal]
    block_number: int
    confirmed: bool
    gas_used: int
    status: int
    raw_logs: List[LogRecord] = field(default_factory=list)
    transfer: Transfer = field(default_factory=NoTransfer)
    verified_at: datetime = None

    def __post_init__(self):
        if self.verified_at is None:
            self.verified_at = datetime.now(timezone.utc)

    @property
    def is_token_transfer(self) -> bool:
        return isinstance(self.transfer, TokenTransfer)

    @property
    def amount(self) -> Decimal:
        """Transferred amount regardless of asset (0 for no transfer)"""
        if isinstance(self.transfer, (TokenTransfer, NativeTransfer)):
            return self.transfer.amount
        return Decimal("0")

    def to_dict(self) -> Dict:
        return {
            'tx_hash': self.tx_hash,
            'from_address': self.from_address,
            'to_address': self.to_address,
            'actual_recipient': self.actual_recipient,
            'native_value': format_amount(self.native_value),
            'token_transfer_amount': (
                format_amount(self.token_transfer_amount)
                if self.token_transfer_amount is not None else None
            ),
            'transfer_type': type(self.transfer).__name__,
            'block_number': self.block_number,
            'confirmed': self.confirmed,
            'gas_used': self.gas_used,
            'status': self.status,
            'raw_logs': [log.to_dict() for log in self.raw_logs],
            'verified_at': self.verified_at.isoformat(),
        }


class TransactionVerifier:
    """
    Verify deposit transactions against the chain

    Errors:
        MalformedHash, NotFound, Pending, TransactionFailed, BelowMinimum,
        NetworkError (after the retry budget is spent)
    """

    def __init__(
        self,
        reader: ChainReader,
        token_address: str,
        minimum_amount: Decimal,
        policy: Optional[RetryPolicy] = None,
        token_decimals: int = 18,
        native_decimals: int = 18,
        sleep=None
    ):
        """
        Initialize verifier

        Args:
            reader: Chain reader
            token_address: Fungible token contract
            minimum_amount: Floor for token transfers (display units)
            policy: Polling budget (default 10 attempts, 3s apart)
            token_decimals: Token decimals
            native_decimals: Native currency decimals
            sleep: Sleep coroutine override (tests)
        """
        self.reader = reader
        self.token_address = Web3.to_checksum_address(token_address)
        self.minimum_amount = Decimal(minimum_amount)
        self.policy = policy or RetryPolicy(max_attempts=10, delay_seconds=3.0)
        self.token_decimals = token_decimals
        self.native_decimals = native_decimals
        self._sleep = sleep

    async def _fetch(self, tx_hash: str) -> Tuple[TransactionRecord, ReceiptRecord]:
        transaction = await self.reader.get_transaction(tx_hash)
        if transaction is None:
            raise NotFound(f"Transaction {tx_hash} not found", tx_hash=tx_hash)

        receipt = await self.reader.get_receipt(tx_hash)
        if receipt is None:
            raise Pending(f"Transaction {tx_hash} has no receipt yet - may still be pending", tx_hash=tx_hash)

        return transaction, receipt

    async def fetch_confirmed(self, tx_hash: str) -> Tuple[TransactionRecord, ReceiptRecord]:
        """Poll until both transaction and receipt exist"""
        tx_hash = validate_tx_hash(tx_hash)
        return await retry_async(
            lambda: self._fetch(tx_hash),
            self.policy,
            retry_on=(NotFound, Pending, NetworkError),
            description=f"verify {tx_hash[:10]}...",
            sleep=self._sleep
        )

    async def verify(self, tx_hash: str) -> VerifiedTransaction:
        """
        Verify a transaction hash and resolve its real transfer

        Args:
            tx_hash: 0x-prefixed 32-byte hash

        Returns:
            VerifiedTransaction
        """
        tx_hash = validate_tx_hash(tx_hash)
        logger.info(f"Verifying transaction: {tx_hash}")

        transaction, receipt = await self.fetch_confirmed(tx_hash)

        if not receipt.succeeded:
            logger.warning(f"✗ Transaction {tx_hash} reverted (status {receipt.status})")
            raise TransactionFailed(f"Transaction {tx_hash} failed on chain", tx_hash=tx_hash)

        transfer = resolve_transfer(
            transaction,
            receipt,
            self.token_address,
            token_decimals=self.token_decimals,
            native_decimals=self.native_decimals
        )

        token_amount = None
        actual_recipient = None
        if isinstance(transfer, TokenTransfer):
            token_amount = transfer.amount
            actual_recipient = transfer.recipient
            logger.info(f"Token transfer detected: {format_amount(transfer.amount)} to {transfer.recipient}")
            if transfer.amount < self.minimum_amount:
                logger.info(f"Transfer amount {format_amount(transfer.amount)} is below minimum {format_amount(self.minimum_amount)}")
                raise BelowMinimum(transfer.amount, self.minimum_amount, tx_hash=tx_hash)
        elif isinstance(transfer, NativeTransfer):
            actual_recipient = transfer.recipient
            logger.info(f"Native transfer detected: {format_amount(transfer.amount)} to {transfer.recipient}")
        else:
            logger.info(f"No transfer found in transaction {tx_hash}")

        return VerifiedTransaction(
            tx_hash=tx_hash,
            from_address=transaction.from_address,
            to_address=transaction.to_address,
            actual_recipient=actual_recipient,
            native_value=from_base_units(transaction.value, self.native_decimals),
            token_transfer_amount=token_amount,
            block_number=receipt.block_number,
            confirmed=True,
            gas_used=receipt.gas_used,
            status=receipt.status,
            raw_logs=list(receipt.logs),
            transfer=transfer,
        )
