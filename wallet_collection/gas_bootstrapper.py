"""
Gas Bootstrapper

Tops up a custodial wallet's native balance from the operational wallet so it
can pay gas for a token transfer. The operational wallet's own balance is
checked first; a shortfall there raises InsufficientAdminBalance instead of
surfacing later as a broadcast failure.
"""

import asyncio
from decimal import Decimal
from typing import Optional

from eth_account import Account
from loguru import logger

from .exceptions import InsufficientAdminBalance
from .fund_mover import Asset, FundMover
from .units import format_amount, from_base_units, to_base_units


class GasBootstrapper:
    """Fund custodial wallets with gas from the operational wallet"""

    def __init__(
        self,
        fund_mover: FundMover,
        operational_private_key,
        top_up_amount: Decimal = Decimal("0.002"),
        native_decimals: int = 18
    ):
        """
        Initialize gas bootstrapper

        Args:
            fund_mover: Fund mover (shares its chain reader)
            operational_private_key: Key of the wallet paying for top-ups
            top_up_amount: Fixed native amount sent per top-up
            native_decimals: Native currency decimals
        """
        self.fund_mover = fund_mover
        self.reader = fund_mover.reader
        self._operational_key = operational_private_key
        self.operational_address = Account.from_key(operational_private_key).address
        self.top_up_amount = Decimal(top_up_amount)
        self.native_decimals = native_decimals

        # The operational wallet's nonce is shared by every top-up and payout
        self._lock = asyncio.Lock()

    @property
    def operational_lock(self) -> asyncio.Lock:
        """Held by every writer that spends from the operational wallet"""
        return self._lock

    async def transfer_from_operational(
        self,
        asset: Asset,
        to_address: str,
        amount: Decimal,
        nonce: Optional[int] = None
    ) -> str:
        """Send from the operational wallet; the caller must hold operational_lock"""
        return await self.fund_mover.transfer(asset, self._operational_key, to_address, amount, nonce=nonce)

    async def operational_balance(self) -> Decimal:
        raw = await self.reader.get_native_balance(self.operational_address)
        return from_base_units(raw, self.native_decimals)

    async def ensure_gas(self, wallet_address: str, minimum_native: Decimal) -> bool:
        """
        Make sure a wallet holds at least minimum_native for gas

        Args:
            wallet_address: Custodial wallet
            minimum_native: Required native balance (display units)

        Returns:
            True if a top-up was sent, False if the balance was already enough
        """
        minimum_native = Decimal(minimum_native)
        minimum_raw = to_base_units(minimum_native, self.native_decimals)
        balance_raw = await self.reader.get_native_balance(wallet_address)
        if balance_raw >= minimum_raw:
            logger.debug(f"{wallet_address[:10]}... has enough gas")
            return False

        balance = from_base_units(balance_raw, self.native_decimals)
        logger.info(
            f"Wallet {wallet_address[:10]}... has {format_amount(balance)} native, "
            f"below {format_amount(minimum_native)}; sending {format_amount(self.top_up_amount)}"
        )

        async with self._lock:
            # Another caller may have funded this wallet while we waited
            if await self.reader.get_native_balance(wallet_address) >= minimum_raw:
                logger.debug(f"{wallet_address[:10]}... was topped up concurrently")
                return False

            admin_raw = await self.reader.get_native_balance(self.operational_address)
            required_raw = (
                to_base_units(self.top_up_amount, self.native_decimals)
                + await self.fund_mover.native_transfer_cost()
            )
            if admin_raw < required_raw:
                available = from_base_units(admin_raw, self.native_decimals)
                logger.error(
                    f"✗ Operational wallet {self.operational_address[:10]}... has "
                    f"{format_amount(available)} native, cannot fund gas top-up"
                )
                raise InsufficientAdminBalance(
                    f"Operational wallet balance {format_amount(available)} cannot cover "
                    f"top-up of {format_amount(self.top_up_amount)} plus gas"
                )

            tx_hash = await self.transfer_from_operational(Asset.NATIVE, wallet_address, self.top_up_amount)

        logger.info(f"✓ Gas top-up sent to {wallet_address[:10]}...: {tx_hash}")
        return True

    def __repr__(self):
        return f"GasBootstrapper(operational_address={self.operational_address!r})"
