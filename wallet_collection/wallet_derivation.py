"""
Custodial Wallet Derivation

Each user gets one custodial EVM keypair computed from (user_id, seed):

    private_key = sha256(f"{user_id}-{seed}")
    address     = checksum(keccak(pubkey(private_key))[-20:])

Nothing is stored: deposit and sweep code paths recompute the same pair on
demand, so the seed must stay fixed for the lifetime of the system. Rotating
it orphans every previously derived wallet.
"""

import hashlib
from dataclasses import dataclass, field

from eth_account import Account

from .exceptions import InvalidSeed


@dataclass(frozen=True)
class WalletKeyPair:
    """Derived custodial keypair; the key is excluded from repr"""
    address: str
    private_key: bytes = field(repr=False)

    @property
    def private_key_hex(self) -> str:
        return "0x" + self.private_key.hex()


def derive_wallet(user_id: str, seed: str) -> WalletKeyPair:
    """
    Derive the custodial wallet for a user

    Args:
        user_id: Opaque user identifier
        seed: Process-wide secret seed

    Returns:
        WalletKeyPair

    Raises:
        InvalidSeed: seed is empty or unset
    """
    if not seed:
        raise InvalidSeed("Wallet seed is empty; refusing to derive an insecure wallet")
    if user_id is None or str(user_id) == "":
        raise ValueError("user_id is required")

    digest = hashlib.sha256(f"{user_id}-{seed}".encode('utf-8')).digest()
    account = Account.from_key(digest)

    return WalletKeyPair(address=account.address, private_key=digest)


class WalletDeriver:
    """Binds the secret seed once so callers only pass user ids"""

    def __init__(self, seed: str):
        if not seed:
            raise InvalidSeed("Wallet seed is empty; refusing to derive an insecure wallet")
        self._seed = seed

    def derive(self, user_id: str) -> WalletKeyPair:
        return derive_wallet(user_id, self._seed)

    def address_for(self, user_id: str) -> str:
        return self.derive(user_id).address

    def __repr__(self):
        return "WalletDeriver(seed=***)"
