"""
Chain Reader

Thin async wrapper over an EVM JSON-RPC endpoint (BSC by default):
- Native and token balance queries
- Transaction / receipt lookup
- Gas price, nonce, gas estimation
- Raw signed-transaction broadcast
- Connectivity check (explicit, never run from the constructor)

web3 response objects never leave this module: everything is converted to
the typed records below. No retries happen here; callers own their policy.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import aiohttp
from loguru import logger
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from .exceptions import InvalidAddress, NetworkError

ERC20_BALANCE_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
]

NONCE_MODES = ('latest', 'pending')

# Errors that mean the RPC call itself did not succeed
RPC_ERRORS = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError)


@dataclass(frozen=True)
class TransactionRecord:
    """Transaction as seen by the node"""
    tx_hash: str
    from_address: str
    to_address: Optional[str]
    value: int
    nonce: int
    block_number: Optional[int] = None
    input_data: str = "0x"


@dataclass(frozen=True)
class LogRecord:
    """Event log entry; topics and data are 0x-prefixed lower-case hex"""
    address: str
    topics: Tuple[str, ...]
    data: str
    log_index: Optional[int] = None

    def to_dict(self) -> Dict:
        return {
            'address': self.address,
            'topics': list(self.topics),
            'data': self.data,
            'log_index': self.log_index,
        }


@dataclass(frozen=True)
class ReceiptRecord:
    """Transaction receipt"""
    tx_hash: str
    status: int
    block_number: int
    gas_used: int
    logs: Tuple[LogRecord, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class ChainStatus:
    """Result of a connectivity check"""
    chain_id: int
    block_number: int
    expected_chain_id: Optional[int] = None

    @property
    def matches_expected(self) -> bool:
        return self.expected_chain_id is None or self.chain_id == self.expected_chain_id

    def to_dict(self) -> Dict:
        return {
            'chain_id': self.chain_id,
            'block_number': self.block_number,
            'expected_chain_id': self.expected_chain_id,
            'matches_expected': self.matches_expected,
        }


def to_hex(value: Any) -> str:
    """Normalise bytes/HexBytes/str to 0x-prefixed lower-case hex"""
    if value is None:
        return "0x"
    if isinstance(value, (bytes, bytearray)):
        return HexBytes(value).to_0x_hex().lower()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def checksum(address: str) -> str:
    """Checksum an address or raise InvalidAddress"""
    if not isinstance(address, str) or not Web3.is_address(address):
        raise InvalidAddress(f"Invalid address: {address!r}")
    return Web3.to_checksum_address(address)


def _optional_address(value: Any) -> Optional[str]:
    if not value:
        return None
    return Web3.to_checksum_address(value)


def transaction_from_rpc(data: Mapping) -> TransactionRecord:
    """Convert an eth_getTransactionByHash result"""
    block_number = data.get('blockNumber')
    return TransactionRecord(
        tx_hash=to_hex(data.get('hash')),
        from_address=Web3.to_checksum_address(data['from']),
        to_address=_optional_address(data.get('to')),
        value=int(data.get('value') or 0),
        nonce=int(data.get('nonce') or 0),
        block_number=int(block_number) if block_number is not None else None,
        input_data=to_hex(data.get('input')),
    )


def receipt_from_rpc(data: Mapping) -> ReceiptRecord:
    """Convert an eth_getTransactionReceipt result"""
    logs = []
    for entry in data.get('logs') or []:
        log_index = entry.get('logIndex')
        logs.append(LogRecord(
            address=Web3.to_checksum_address(entry['address']),
            topics=tuple(to_hex(topic) for topic in entry.get('topics') or []),
            data=to_hex(entry.get('data')),
            log_index=int(log_index) if log_index is not None else None,
        ))

    return ReceiptRecord(
        tx_hash=to_hex(data.get('transactionHash')),
        status=int(data.get('status') or 0),
        block_number=int(data.get('blockNumber') or 0),
        gas_used=int(data.get('gasUsed') or 0),
        logs=tuple(logs),
    )


class ChainReader:
    """
    Read/broadcast access to one EVM chain

    Construction performs no I/O; call check_connectivity() explicitly.
    Every method may raise NetworkError or InvalidAddress.
    """

    def __init__(
        self,
        rpc_url: str,
        token_address: str,
        timeout_seconds: float = 30.0,
        expected_chain_id: Optional[int] = None,
        w3: Optional[AsyncWeb3] = None
    ):
        """
        Initialize chain reader

        Args:
            rpc_url: JSON-RPC endpoint
            token_address: Fungible token (USDT) contract
            timeout_seconds: Per-request timeout
            expected_chain_id: Chain id the endpoint should report
            w3: Pre-built AsyncWeb3 instance (tests)
        """
        self.rpc_url = rpc_url
        self.token_address = checksum(token_address)
        self.expected_chain_id = expected_chain_id

        if w3 is None:
            provider = AsyncHTTPProvider(
                rpc_url,
                request_kwargs={'timeout': aiohttp.ClientTimeout(total=timeout_seconds)}
            )
            w3 = AsyncWeb3(provider)
        self.w3 = w3

        self._token = self.w3.eth.contract(address=self.token_address, abi=ERC20_BALANCE_ABI)
        self._chain_id: Optional[int] = None

    async def _call(self, description: str, awaitable):
        try:
            return await awaitable
        except TransactionNotFound:
            raise
        except RPC_ERRORS as e:
            raise NetworkError(f"{description} failed: {e}") from e

    async def check_connectivity(self) -> ChainStatus:
        """Query chain id and head block; warns on an unexpected chain"""
        chain_id = await self.get_chain_id()
        block_number = await self._call("eth_blockNumber", self.w3.eth.block_number)

        status = ChainStatus(
            chain_id=int(chain_id),
            block_number=int(block_number),
            expected_chain_id=self.expected_chain_id
        )

        if status.matches_expected:
            logger.info(f"✓ Connected to chain {status.chain_id} at block {status.block_number}")
        else:
            logger.warning(
                f"Connected to chain {status.chain_id} but expected {self.expected_chain_id} "
                f"(block {status.block_number})"
            )

        return status

    async def get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(await self._call("eth_chainId", self.w3.eth.chain_id))
        return self._chain_id

    async def get_native_balance(self, address: str) -> int:
        """Native balance in wei"""
        address = checksum(address)
        return int(await self._call(f"eth_getBalance({address})", self.w3.eth.get_balance(address)))

    async def get_token_balance(self, address: str) -> int:
        """Token balance in the token's smallest unit"""
        address = checksum(address)
        call = self._token.functions.balanceOf(address).call()
        return int(await self._call(f"balanceOf({address})", call))

    async def get_transaction(self, tx_hash: str) -> Optional[TransactionRecord]:
        """Transaction by hash, or None when the node does not know it"""
        try:
            data = await self._call(f"eth_getTransactionByHash({tx_hash})", self.w3.eth.get_transaction(tx_hash))
        except TransactionNotFound:
            return None
        if data is None:
            return None
        return transaction_from_rpc(data)

    async def get_receipt(self, tx_hash: str) -> Optional[ReceiptRecord]:
        """Receipt by hash, or None while the transaction is unmined"""
        try:
            data = await self._call(
                f"eth_getTransactionReceipt({tx_hash})",
                self.w3.eth.get_transaction_receipt(tx_hash)
            )
        except TransactionNotFound:
            return None
        if data is None:
            return None
        return receipt_from_rpc(data)

    async def get_gas_price(self) -> int:
        return int(await self._call("eth_gasPrice", self.w3.eth.gas_price))

    async def get_nonce(self, address: str, mode: str = 'pending') -> int:
        """Transaction count for address at 'latest' or 'pending'"""
        if mode not in NONCE_MODES:
            raise ValueError(f"Invalid nonce mode: {mode}")
        address = checksum(address)
        return int(await self._call(
            f"eth_getTransactionCount({address}, {mode})",
            self.w3.eth.get_transaction_count(address, mode)
        ))

    async def estimate_gas(self, tx: Dict) -> int:
        return int(await self._call("eth_estimateGas", self.w3.eth.estimate_gas(tx)))

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        """Broadcast a signed transaction; returns its hash"""
        tx_hash = await self._call("eth_sendRawTransaction", self.w3.eth.send_raw_transaction(HexBytes(raw_transaction)))
        return to_hex(tx_hash)

    async def close(self):
        """Close the provider's HTTP session"""
        disconnect = getattr(self.w3.provider, 'disconnect', None)
        if disconnect is None:
            return
        try:
            await disconnect()
        except Exception as e:
            logger.debug(f"Error closing RPC provider: {e}")
