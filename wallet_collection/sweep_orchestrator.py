"""
Sweep Orchestrator

Collects funds from per-user custodial wallets into the collection wallet:
1. Derive the user's wallet (nothing is stored)
2. Read balance; dust below the collectible threshold is skipped
3. Top up gas from the operational wallet when needed (token sweeps)
4. Move the balance to the collection wallet
5. Record a CollectionResult (success, skip or fault)

Batches run sequentially with a delay between wallets: every gas top-up is
sent from the same operational wallet, so wallets are never processed
concurrently. One wallet's fault never aborts the batch.

Also handles deposit distribution (fee to the admin fee wallet, remainder to
the collection wallet), sweeping by address through an injected
address -> user lookup, and withdrawal payouts from the operational wallet.
"""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from loguru import logger

from .chain_reader import ChainReader, checksum
from .exceptions import (
    AddressMismatch,
    BroadcastFailed,
    CollectionError,
    ConfigurationError,
    EXPECTED_OUTCOMES,
    InsufficientAdminBalance,
    InsufficientBalance,
    UnknownWallet,
    VerificationError,
)
from .fund_mover import Asset, FundMover, NonceSequence
from .gas_bootstrapper import GasBootstrapper
from .units import format_amount, from_base_units, to_base_units, to_decimal
from .wallet_derivation import WalletDeriver, WalletKeyPair

# Native sweeps only run when the balance clearly exceeds the transfer fee
NATIVE_GAS_MARGIN = Decimal("1.1")

# Native left behind by native sweeps, about one token transfer's gas
DEFAULT_NATIVE_RESERVE = Decimal("0.0005")

EXPECTED_KINDS = tuple(cls.__name__ for cls in EXPECTED_OUTCOMES)


class WalletDirectory(Protocol):
    """Address -> user id lookup maintained by the ledger at wallet creation"""

    async def user_id_for(self, address: str) -> Optional[str]:
        ...


@dataclass
class CollectionResult:
    """Outcome of one asset sweep for one wallet"""
    user_id: str
    wallet_address: Optional[str]
    asset: str
    success: bool = False
    tx_hash: Optional[str] = None
    amount: Optional[Decimal] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    gas_topped_up: bool = False
    completed_at: Optional[datetime] = None

    @property
    def skipped(self) -> bool:
        """Routine non-collection (dust, nothing to sweep)"""
        return not self.success and self.error_kind in EXPECTED_KINDS

    @property
    def is_fault(self) -> bool:
        return not self.success and not self.skipped

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['amount'] = format_amount(self.amount) if self.amount is not None else None
        if self.completed_at:
            data['completed_at'] = self.completed_at.isoformat()
        return data


@dataclass
class CollectionSummary:
    """Aggregated outcome of a batch sweep"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: List[CollectionResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[CollectionResult]:
        return [r for r in self.results if r.success]

    @property
    def skipped(self) -> List[CollectionResult]:
        return [r for r in self.results if r.skipped]

    @property
    def faults(self) -> List[CollectionResult]:
        return [r for r in self.results if r.is_fault]

    @property
    def totals(self) -> Dict[str, Decimal]:
        """Collected amount per asset"""
        totals: Dict[str, Decimal] = {}
        for result in self.succeeded:
            totals[result.asset] = totals.get(result.asset, Decimal("0")) + (result.amount or Decimal("0"))
        return totals

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict:
        return {
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration_seconds': round(self.duration_seconds, 3),
            'wallets': len({r.user_id for r in self.results}),
            'succeeded': len(self.succeeded),
            'skipped': len(self.skipped),
            'faults': len(self.faults),
            'totals': {asset: format_amount(amount) for asset, amount in self.totals.items()},
            'results': [r.to_dict() for r in self.results],
        }


@dataclass
class DepositDistribution:
    """Fee / remainder split of a verified deposit"""
    user_id: str
    wallet_address: str
    deposit_amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    fee_tx_hash: Optional[str] = None
    collection_tx_hash: Optional[str] = None
    gas_topped_up: bool = False
    recovery_tx_hash: Optional[str] = None
    recovery_error: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        for key in ('deposit_amount', 'fee_amount', 'net_amount'):
            data[key] = format_amount(getattr(self, key))
        return data


@dataclass
class WithdrawalResult:
    """Payout of a user withdrawal from the operational wallet"""
    to_address: str
    total_amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    payout_tx_hash: Optional[str] = None
    fee_tx_hash: Optional[str] = None
    fee_error: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        for key in ('total_amount', 'fee_amount', 'net_amount'):
            data[key] = format_amount(getattr(self, key))
        return data


class SweepOrchestrator:
    """
    Sweep custodial wallets into the collection wallet

    Expected outcomes (InsufficientBalance, BelowMinimum) come back as
    unsuccessful results; faults are caught per wallet and recorded.
    """

    def __init__(
        self,
        deriver: WalletDeriver,
        reader: ChainReader,
        fund_mover: FundMover,
        gas_bootstrapper: GasBootstrapper,
        collection_wallet: str,
        admin_fee_wallet: Optional[str] = None,
        minimum_collectible: Decimal = Decimal("0.01"),
        gas_floor: Decimal = Decimal("0.001"),
        distribution_gas_floor: Decimal = Decimal("0.002"),
        native_sweep_reserve: Decimal = DEFAULT_NATIVE_RESERVE,
        minimum_native_collectible: Decimal = Decimal("0"),
        sweep_delay_seconds: float = 1.0,
        token_decimals: int = 18,
        native_decimals: int = 18,
        directory: Optional[WalletDirectory] = None,
        sleep=None
    ):
        """
        Initialize orchestrator

        Args:
            deriver: Wallet deriver bound to the seed
            reader: Chain reader
            fund_mover: Fund mover
            gas_bootstrapper: Gas bootstrapper (operational wallet)
            collection_wallet: Final destination of swept funds
            admin_fee_wallet: Destination of deposit fees
            minimum_collectible: Token balances at or below this are skipped
            gas_floor: Native balance required before a token sweep
            distribution_gas_floor: Native balance required before a deposit split
            native_sweep_reserve: Native amount left behind on native sweeps
            minimum_native_collectible: Native sweeps at or below this are skipped
            sweep_delay_seconds: Default delay between wallets in a batch
            token_decimals: Token decimals
            native_decimals: Native currency decimals
            directory: Address -> user id lookup for sweep_address()
            sleep: Sleep coroutine override (tests)
        """
        self.deriver = deriver
        self.reader = reader
        self.fund_mover = fund_mover
        self.gas_bootstrapper = gas_bootstrapper
        self.collection_wallet = collection_wallet
        self.admin_fee_wallet = admin_fee_wallet
        self.minimum_collectible = Decimal(minimum_collectible)
        self.gas_floor = Decimal(gas_floor)
        self.distribution_gas_floor = Decimal(distribution_gas_floor)
        self.native_sweep_reserve = Decimal(native_sweep_reserve)
        self.minimum_native_collectible = Decimal(minimum_native_collectible)
        self.sweep_delay_seconds = sweep_delay_seconds
        self.token_decimals = token_decimals
        self.native_decimals = native_decimals
        self.directory = directory
        self._sleep = sleep or asyncio.sleep

    # ---- Single wallet ----

    async def sweep_user(self, user_id: str, asset: Asset = Asset.TOKEN) -> CollectionResult:
        """
        Sweep one asset from a user's custodial wallet

        Args:
            user_id: User identifier
            asset: Asset.TOKEN (default) or Asset.NATIVE

        Returns:
            CollectionResult
        """
        results = await self.sweep_user_assets(user_id, [asset])
        return results[0]

    async def sweep_user_assets(
        self,
        user_id: str,
        assets: Sequence[Asset] = (Asset.TOKEN, Asset.NATIVE)
    ) -> List[CollectionResult]:
        """
        Sweep several assets from one wallet using one nonce sequence

        The token sweep always runs before the native sweep so the native
        sweep does not strand the gas the token transfer needs. A fault
        stops the remaining assets for this wallet.

        Raises:
            ValueError: no assets were given
        """
        ordered = [a for a in (Asset.TOKEN, Asset.NATIVE) if a in {Asset(x) for x in assets}]
        if not ordered:
            raise ValueError("At least one asset is required")

        try:
            wallet = self.deriver.derive(user_id)
        except (CollectionError, ValueError) as e:
            return [self._failed(CollectionResult(user_id, None, a.value), e) for a in ordered]

        return await self._sweep_wallet(user_id, wallet, ordered)

    async def sweep_address(self, address: str, asset: Asset = Asset.TOKEN) -> CollectionResult:
        """
        Sweep a wallet identified by address

        The owner comes from the injected WalletDirectory; the key is then
        re-derived and must reproduce the same address.
        """
        asset = Asset(asset)
        result = CollectionResult(user_id="", wallet_address=address, asset=asset.value)

        try:
            if self.directory is None:
                raise ConfigurationError("No wallet directory configured for sweep by address")

            user_id = await self.directory.user_id_for(address)
            if not user_id:
                raise UnknownWallet(f"No user is registered for wallet {address}")
            result.user_id = user_id

            wallet = self.deriver.derive(user_id)
            if wallet.address.lower() != address.lower():
                logger.error(
                    f"✗ Derived address {wallet.address} for user {user_id} does not match {address}"
                )
                raise AddressMismatch(
                    f"Derived address {wallet.address} does not match stored address {address}; "
                    f"was the wallet seed changed?"
                )
        except CollectionError as e:
            return self._failed(result, e)

        results = await self._sweep_wallet(user_id, wallet, [asset])
        return results[0]

    async def _sweep_wallet(
        self,
        user_id: str,
        wallet: WalletKeyPair,
        assets: List[Asset]
    ) -> List[CollectionResult]:
        nonces = self.fund_mover.nonce_sequence(wallet.address)
        results = []

        for position, asset in enumerate(assets):
            result = CollectionResult(user_id=user_id, wallet_address=wallet.address, asset=asset.value)
            try:
                if asset == Asset.TOKEN:
                    await self._sweep_token(wallet, nonces, result)
                else:
                    await self._sweep_native(wallet, nonces, result)
            except CollectionError as e:
                results.append(self._failed(result, e))
                if result.is_fault:
                    for remaining in assets[position + 1:]:
                        results.append(self._failed(
                            CollectionResult(user_id, wallet.address, remaining.value),
                            e,
                            message=f"Skipped after {e.kind} on {asset.value} sweep"
                        ))
                    break
                continue

            results.append(result)

        return results

    async def _sweep_token(self, wallet: WalletKeyPair, nonces: NonceSequence, result: CollectionResult):
        balance_raw = await self.reader.get_token_balance(wallet.address)
        balance = from_base_units(balance_raw, self.token_decimals)

        if balance <= self.minimum_collectible:
            raise InsufficientBalance(
                f"Token balance {format_amount(balance)} is at or below the collectible "
                f"threshold {format_amount(self.minimum_collectible)}"
            )

        logger.info(f"Wallet {wallet.address[:10]}... holds {format_amount(balance)} token, collecting")

        result.gas_topped_up = await self.gas_bootstrapper.ensure_gas(wallet.address, self.gas_floor)

        tx_hash = await self.fund_mover.transfer(
            Asset.TOKEN,
            wallet.private_key,
            self.collection_wallet,
            balance,
            nonce=await nonces.next()
        )
        self._succeeded(result, tx_hash, balance)

    async def _native_sweep_amount(self, address: str, reserve: Decimal) -> Decimal:
        """Native amount that can leave the wallet after gas and reserve"""
        balance_raw = await self.reader.get_native_balance(address)
        gas_cost = await self.fund_mover.native_transfer_cost()

        if Decimal(balance_raw) <= NATIVE_GAS_MARGIN * gas_cost:
            raise InsufficientBalance(
                f"Native balance {format_amount(from_base_units(balance_raw, self.native_decimals))} "
                f"does not cover transfer gas"
            )

        amount_raw = balance_raw - gas_cost - to_base_units(reserve, self.native_decimals)
        amount = from_base_units(max(amount_raw, 0), self.native_decimals)
        if amount_raw <= 0 or amount <= self.minimum_native_collectible:
            raise InsufficientBalance(
                f"Native amount {format_amount(amount)} after gas and reserve is not worth collecting"
            )
        return amount

    async def _sweep_native(self, wallet: WalletKeyPair, nonces: NonceSequence, result: CollectionResult):
        amount = await self._native_sweep_amount(wallet.address, self.native_sweep_reserve)

        tx_hash = await self.fund_mover.transfer(
            Asset.NATIVE,
            wallet.private_key,
            self.collection_wallet,
            amount,
            nonce=await nonces.next()
        )
        self._succeeded(result, tx_hash, amount)

    def _succeeded(self, result: CollectionResult, tx_hash: str, amount: Decimal) -> CollectionResult:
        result.success = True
        result.tx_hash = tx_hash
        result.amount = amount
        result.completed_at = datetime.now(timezone.utc)
        logger.info(
            f"✓ Collected {format_amount(amount)} {result.asset} from user {result.user_id}: {tx_hash}"
        )
        return result

    def _failed(
        self,
        result: CollectionResult,
        error: Exception,
        message: Optional[str] = None
    ) -> CollectionResult:
        result.success = False
        result.error_kind = error.kind if isinstance(error, CollectionError) else type(error).__name__
        result.error_message = message or str(error)
        result.completed_at = datetime.now(timezone.utc)

        # Keep the signed hash so the transfer can be reconciled by hand
        if isinstance(error, (BroadcastFailed, VerificationError)) and error.tx_hash:
            result.tx_hash = error.tx_hash

        if result.skipped:
            logger.info(f"Skipped {result.asset} for user {result.user_id}: {result.error_message}")
        else:
            logger.error(
                f"✗ {result.asset} sweep failed for user {result.user_id}: "
                f"{result.error_kind}: {result.error_message}"
            )
        return result

    # ---- Batch ----

    async def sweep_many(
        self,
        user_ids: Iterable[str],
        delay_seconds: Optional[float] = None,
        assets: Sequence[Asset] = (Asset.TOKEN,)
    ) -> CollectionSummary:
        """
        Sweep many wallets one after another

        Args:
            user_ids: Users to sweep
            delay_seconds: Pause between wallets (default from settings)
            assets: Assets to sweep per wallet

        Returns:
            CollectionSummary (never raises for a single wallet's failure)
        """
        delay = self.sweep_delay_seconds if delay_seconds is None else delay_seconds
        user_ids = list(user_ids)
        summary = CollectionSummary(started_at=datetime.now(timezone.utc))

        logger.info(f"Starting sweep of {len(user_ids)} wallet(s)")

        for index, user_id in enumerate(user_ids):
            if index > 0 and delay > 0:
                await self._sleep(delay)

            try:
                summary.results.extend(await self.sweep_user_assets(user_id, assets))
            except Exception as e:
                logger.exception(f"Unexpected error sweeping user {user_id}")
                for asset in assets:
                    summary.results.append(self._failed(
                        CollectionResult(user_id, None, Asset(asset).value),
                        e
                    ))

        summary.finished_at = datetime.now(timezone.utc)

        logger.info(
            f"Sweep complete: {len(summary.succeeded)} collected, "
            f"{len(summary.skipped)} skipped, {len(summary.faults)} failed "
            f"in {summary.duration_seconds:.1f}s"
        )
        return summary

    # ---- Deposit distribution ----

    async def distribute_deposit(
        self,
        user_id: str,
        deposit_amount: Decimal,
        fee_amount: Decimal
    ) -> DepositDistribution:
        """
        Split a credited deposit out of the custodial wallet

        Fee goes to the admin fee wallet with nonce n, the remainder to the
        collection wallet with nonce n+1. If gas had to be topped up, leftover
        native currency goes back to the operational wallet with nonce n+2.

        Raises:
            InsufficientBalance: custodial wallet does not hold the deposit
            Any fund mover / gas bootstrapper error
        """
        if not self.admin_fee_wallet:
            raise ConfigurationError("admin_fee_wallet is required for deposit distribution")

        deposit_amount = Decimal(deposit_amount)
        fee_amount = Decimal(fee_amount)
        wallet = self.deriver.derive(user_id)

        distribution = DepositDistribution(
            user_id=user_id,
            wallet_address=wallet.address,
            deposit_amount=deposit_amount,
            fee_amount=fee_amount,
            net_amount=deposit_amount - fee_amount,
        )

        balance = from_base_units(await self.reader.get_token_balance(wallet.address), self.token_decimals)
        if balance < deposit_amount:
            raise InsufficientBalance(
                f"Wallet {wallet.address} holds {format_amount(balance)}, "
                f"deposit is {format_amount(deposit_amount)}"
            )

        distribution.gas_topped_up = await self.gas_bootstrapper.ensure_gas(
            wallet.address, self.distribution_gas_floor
        )

        nonces = self.fund_mover.nonce_sequence(wallet.address)

        if fee_amount > 0:
            distribution.fee_tx_hash = await self.fund_mover.transfer(
                Asset.TOKEN, wallet.private_key, self.admin_fee_wallet, fee_amount,
                nonce=await nonces.next()
            )
            logger.info(f"✓ Fee {format_amount(fee_amount)} sent to admin fee wallet: {distribution.fee_tx_hash}")

        if distribution.net_amount > 0:
            distribution.collection_tx_hash = await self.fund_mover.transfer(
                Asset.TOKEN, wallet.private_key, self.collection_wallet, distribution.net_amount,
                nonce=await nonces.next()
            )
            logger.info(
                f"✓ Remainder {format_amount(distribution.net_amount)} sent to collection wallet: "
                f"{distribution.collection_tx_hash}"
            )

        if distribution.gas_topped_up:
            try:
                amount = await self._native_sweep_amount(wallet.address, self.native_sweep_reserve)
                distribution.recovery_tx_hash = await self.fund_mover.transfer(
                    Asset.NATIVE, wallet.private_key, self.gas_bootstrapper.operational_address, amount,
                    nonce=await nonces.next()
                )
                logger.info(f"✓ Recovered {format_amount(amount)} native: {distribution.recovery_tx_hash}")
            except CollectionError as e:
                distribution.recovery_error = f"{e.kind}: {e}"
                logger.warning(f"Native recovery failed (non-critical): {e}")

        return distribution

    # ---- Withdrawals ----

    async def process_withdrawal(
        self,
        to_address: str,
        total_amount: Decimal,
        fee_amount: Decimal = Decimal("0")
    ) -> WithdrawalResult:
        """
        Pay a withdrawal out of the operational wallet

        The net amount goes to the user with nonce n, then the fee goes to the
        admin fee wallet with nonce n+1. Both run under the operational lock so
        gas top-ups cannot take the same nonce. A failed fee transfer is
        recorded but does not fail the payout.

        Args:
            to_address: User's external withdrawal address
            total_amount: Amount debited from the user, fee included
            fee_amount: Withdrawal fee kept by the admin fee wallet

        Returns:
            WithdrawalResult

        Raises:
            ConfigurationError: operational key does not control the collection wallet
            InsufficientAdminBalance: operational wallet cannot cover the net amount
            Any fund mover error for the payout transfer
        """
        total_amount = to_decimal(total_amount)
        fee_amount = to_decimal(fee_amount)
        net_amount = total_amount - fee_amount
        if fee_amount < 0 or net_amount <= 0:
            raise ValueError(
                f"Invalid withdrawal: total {format_amount(total_amount)}, fee {format_amount(fee_amount)}"
            )

        to_address = checksum(to_address)
        operational = self.gas_bootstrapper.operational_address
        if operational.lower() != self.collection_wallet.lower():
            raise ConfigurationError(
                f"Operational key does not match collection wallet. "
                f"Expected: {self.collection_wallet}, Got: {operational}"
            )

        result = WithdrawalResult(
            to_address=to_address,
            total_amount=total_amount,
            fee_amount=fee_amount,
            net_amount=net_amount,
        )
        logger.info(
            f"Processing withdrawal to {to_address}: total {format_amount(total_amount)}, "
            f"fee {format_amount(fee_amount)}, net {format_amount(net_amount)}"
        )

        async with self.gas_bootstrapper.operational_lock:
            balance_raw = await self.reader.get_token_balance(operational)
            balance = from_base_units(balance_raw, self.token_decimals)
            if balance < net_amount:
                logger.error(f"✗ Operational wallet holds {format_amount(balance)}, cannot pay out")
                raise InsufficientAdminBalance(
                    f"Insufficient token balance in operational wallet. "
                    f"Required: {format_amount(net_amount)}, Available: {format_amount(balance)}"
                )

            nonces = self.fund_mover.nonce_sequence(operational)
            result.payout_tx_hash = await self.gas_bootstrapper.transfer_from_operational(
                Asset.TOKEN, to_address, net_amount, nonce=await nonces.next()
            )
            logger.info(f"✓ Withdrawal of {format_amount(net_amount)} sent: {result.payout_tx_hash}")

            if self.admin_fee_wallet and fee_amount > 0:
                try:
                    result.fee_tx_hash = await self.gas_bootstrapper.transfer_from_operational(
                        Asset.TOKEN, self.admin_fee_wallet, fee_amount, nonce=await nonces.next()
                    )
                    logger.info(f"✓ Withdrawal fee {format_amount(fee_amount)} sent: {result.fee_tx_hash}")
                except CollectionError as e:
                    result.fee_error = f"{e.kind}: {e}"
                    logger.warning(f"Withdrawal fee transfer failed (non-critical): {e}")

        return result
