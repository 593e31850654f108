"""
Wallet Collection

Custodial wallet derivation, deposit verification and fund collection for an
EVM chain (BSC / BEP-20 USDT by default).

Components:
- wallet_derivation: Deterministic per-user custodial keypairs
- chain_reader: Typed async JSON-RPC reads and raw broadcast
- transaction_verifier: Deposit verification with Transfer log decoding
- fund_mover: Signed native / token transfers with explicit nonces
- gas_bootstrapper: Gas top-ups from the operational wallet
- sweep_orchestrator: Single and batch sweeps, deposit distribution
- deposit_intake: Deposit claims -> ledger credits
- collection_history: SQLite reconciliation log
- service: Component wiring from settings
- cli: Admin command line

Safety:
1. Hash shape checked before any network call
2. Reverted transactions are never deposits
3. Token deposits are judged by the decoded Transfer log, not tx.to/value
4. Broadcasts are never retried automatically
5. Batches are sequential; one wallet's fault never aborts the batch
"""

from .chain_reader import (
    ChainReader,
    ChainStatus,
    LogRecord,
    ReceiptRecord,
    TransactionRecord,
)
from .config import (
    CollectionSettings,
    load_settings,
)
from .deposit_intake import (
    DepositCredit,
    DepositIntake,
    DepositLedger,
    DepositOutcome,
    DepositStatus,
)
from .exceptions import (
    AddressMismatch,
    BelowMinimum,
    BroadcastFailed,
    CollectionError,
    ConfigurationError,
    GasEstimationFailed,
    InsufficientAdminBalance,
    InsufficientBalance,
    InvalidAddress,
    InvalidSeed,
    MalformedHash,
    NetworkError,
    NotFound,
    Pending,
    TransactionFailed,
    UnknownWallet,
)
from .fund_mover import (
    Asset,
    FundMover,
    NonceSequence,
)
from .gas_bootstrapper import GasBootstrapper
from .collection_history import CollectionHistoryDB
from .retry import RetryPolicy, retry_async
from .service import CollectionService
from .sweep_orchestrator import (
    CollectionResult,
    CollectionSummary,
    DepositDistribution,
    SweepOrchestrator,
    WalletDirectory,
    WithdrawalResult,
)
from .transaction_verifier import (
    NativeTransfer,
    NoTransfer,
    TokenTransfer,
    TransactionVerifier,
    VerifiedTransaction,
    resolve_transfer,
)
from .wallet_derivation import (
    WalletDeriver,
    WalletKeyPair,
    derive_wallet,
)

__all__ = [
    # Derivation
    'derive_wallet',
    'WalletDeriver',
    'WalletKeyPair',

    # Chain access
    'ChainReader',
    'ChainStatus',
    'TransactionRecord',
    'ReceiptRecord',
    'LogRecord',

    # Verification
    'TransactionVerifier',
    'VerifiedTransaction',
    'NativeTransfer',
    'TokenTransfer',
    'NoTransfer',
    'resolve_transfer',

    # Transfers
    'Asset',
    'FundMover',
    'NonceSequence',
    'GasBootstrapper',

    # Sweeps
    'SweepOrchestrator',
    'CollectionResult',
    'CollectionSummary',
    'DepositDistribution',
    'WalletDirectory',
    'WithdrawalResult',

    # Deposits
    'DepositIntake',
    'DepositLedger',
    'DepositCredit',
    'DepositOutcome',
    'DepositStatus',

    # Configuration and wiring
    'CollectionSettings',
    'load_settings',
    'CollectionService',
    'RetryPolicy',
    'retry_async',

    # History tracking
    'CollectionHistoryDB',

    # Errors
    'CollectionError',
    'ConfigurationError',
    'InvalidSeed',
    'NetworkError',
    'InvalidAddress',
    'MalformedHash',
    'NotFound',
    'Pending',
    'TransactionFailed',
    'BelowMinimum',
    'InsufficientBalance',
    'GasEstimationFailed',
    'BroadcastFailed',
    'InsufficientAdminBalance',
    'AddressMismatch',
    'UnknownWallet',
]

__version__ = '1.0.0'
