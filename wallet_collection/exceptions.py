"""
Wallet Collection Errors

Error taxonomy shared by the derivation, chain, verification, transfer and
sweep layers. Every error exposes ``kind`` (its class name), which is the
value reported as ``error_kind`` in collection results.
"""

from decimal import Decimal
from typing import Dict, Optional

from .units import format_amount


class CollectionError(Exception):
    """Base class for all wallet collection errors"""

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict:
        return {'kind': self.kind, 'message': str(self)}


# ---- Configuration ----

class ConfigurationError(CollectionError):
    """Raised when required settings are missing or invalid"""
    pass


class InvalidSeed(ConfigurationError):
    """Raised when the wallet derivation seed is empty or unset"""
    pass


# ---- Chain reader ----

class NetworkError(CollectionError):
    """Raised when the RPC endpoint cannot be reached or returns an error"""
    pass


class InvalidAddress(CollectionError):
    """Raised when an address is not a valid EVM address"""
    pass


# ---- Transaction verifier ----

class VerificationError(CollectionError):
    """Base class for transaction verification errors"""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash

    def to_dict(self) -> Dict:
        data = super().to_dict()
        if self.tx_hash:
            data['tx_hash'] = self.tx_hash
        return data


class MalformedHash(VerificationError):
    """Raised when a transaction hash is not 0x + 64 hex characters"""
    pass


class NotFound(VerificationError):
    """Raised when the transaction is not known to the node"""
    pass


class Pending(VerificationError):
    """Raised when the transaction exists but has no receipt yet"""
    pass


class TransactionFailed(VerificationError):
    """Raised when the receipt status is not success (reverted)"""
    pass


class BelowMinimum(VerificationError):
    """Raised when a token transfer is smaller than the configured floor"""

    def __init__(self, observed: Decimal, required: Decimal, tx_hash: Optional[str] = None):
        super().__init__(
            f"Transfer amount {format_amount(observed)} is below minimum {format_amount(required)}",
            tx_hash=tx_hash
        )
        self.observed = observed
        self.required = required

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data['observed'] = format_amount(self.observed)
        data['required'] = format_amount(self.required)
        return data


# ---- Fund mover ----

class TransferError(CollectionError):
    """Base class for fund mover errors"""
    pass


class InsufficientBalance(TransferError):
    """Raised when the sender cannot cover the amount (and gas)"""
    pass


class GasEstimationFailed(TransferError):
    """Raised when the node refuses to estimate gas for a token transfer"""
    pass


class BroadcastFailed(TransferError):
    """
    Raised when a signed transaction could not be broadcast

    The signed hash is kept so the operator can check whether the
    transaction reached the chain before doing anything else.
    """

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data['tx_hash'] = self.tx_hash
        return data


# ---- Gas bootstrapper ----

class InsufficientAdminBalance(TransferError):
    """Raised when the operational wallet cannot fund a gas top-up"""
    pass


# ---- Sweep orchestrator ----

class AddressMismatch(CollectionError):
    """Raised when a re-derived address differs from the stored one"""
    pass


class UnknownWallet(CollectionError):
    """Raised when an address has no known owner"""
    pass


# Outcomes that are routine and reported as non-error results
EXPECTED_OUTCOMES = (InsufficientBalance, BelowMinimum)
