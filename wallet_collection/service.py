"""
Collection Service

Wires the components together from CollectionSettings. Construction does no
network I/O; call check_connectivity() when a probe is wanted and close()
when done (or use it as an async context manager).
"""

from typing import Dict, Optional

from loguru import logger

from .chain_reader import ChainReader
from .config import CollectionSettings
from .deposit_intake import DepositIntake, DepositLedger
from .fund_mover import FundMover
from .gas_bootstrapper import GasBootstrapper
from .retry import RetryPolicy
from .sweep_orchestrator import SweepOrchestrator, WalletDirectory
from .transaction_verifier import TransactionVerifier
from .units import format_amount
from .wallet_derivation import WalletDeriver


class CollectionService:
    """All wallet collection components for one chain"""

    def __init__(
        self,
        settings: CollectionSettings,
        reader: ChainReader,
        deriver: WalletDeriver,
        verifier: TransactionVerifier,
        fund_mover: FundMover,
        gas_bootstrapper: GasBootstrapper,
        orchestrator: SweepOrchestrator,
        intake: Optional[DepositIntake] = None
    ):
        self.settings = settings
        self.reader = reader
        self.deriver = deriver
        self.verifier = verifier
        self.fund_mover = fund_mover
        self.gas_bootstrapper = gas_bootstrapper
        self.orchestrator = orchestrator
        self.intake = intake

    @classmethod
    def from_settings(
        cls,
        settings: CollectionSettings,
        directory: Optional[WalletDirectory] = None,
        ledger: Optional[DepositLedger] = None,
        distribute_deposits: bool = True,
        reader: Optional[ChainReader] = None,
        sleep=None
    ) -> 'CollectionService':
        """
        Build the service

        Args:
            settings: Validated settings
            directory: Address -> user id lookup for sweep by address
            ledger: Ledger storage; enables deposit intake when given
            distribute_deposits: Split credited deposits out immediately
            reader: Pre-built chain reader (tests)
            sleep: Sleep coroutine override (tests)
        """
        settings.validate()

        reader = reader or ChainReader(
            settings.rpc_url,
            settings.token_address,
            timeout_seconds=settings.rpc_timeout_seconds,
            expected_chain_id=settings.chain_id
        )
        deriver = WalletDeriver(settings.wallet_seed)

        verifier = TransactionVerifier(
            reader,
            settings.token_address,
            settings.minimum_deposit,
            policy=RetryPolicy(
                max_attempts=settings.verify_max_attempts,
                delay_seconds=settings.verify_delay_seconds
            ),
            token_decimals=settings.token_decimals,
            native_decimals=settings.native_decimals,
            sleep=sleep
        )

        fund_mover = FundMover(
            reader,
            settings.token_address,
            token_decimals=settings.token_decimals,
            native_decimals=settings.native_decimals,
            receipt_policy=RetryPolicy(
                max_attempts=settings.receipt_max_attempts,
                delay_seconds=settings.receipt_delay_seconds
            ),
            sleep=sleep
        )

        gas_bootstrapper = GasBootstrapper(
            fund_mover,
            settings.operational_private_key,
            top_up_amount=settings.gas_top_up_amount,
            native_decimals=settings.native_decimals
        )

        orchestrator = SweepOrchestrator(
            deriver,
            reader,
            fund_mover,
            gas_bootstrapper,
            collection_wallet=settings.collection_wallet,
            admin_fee_wallet=settings.admin_fee_wallet,
            minimum_collectible=settings.minimum_collectible,
            gas_floor=settings.gas_floor,
            distribution_gas_floor=settings.distribution_gas_floor,
            native_sweep_reserve=settings.native_sweep_reserve,
            minimum_native_collectible=settings.minimum_native_collectible,
            sweep_delay_seconds=settings.sweep_delay_seconds,
            token_decimals=settings.token_decimals,
            native_decimals=settings.native_decimals,
            directory=directory,
            sleep=sleep
        )

        intake = None
        if ledger is not None:
            intake = DepositIntake(
                verifier,
                deriver,
                ledger,
                minimum_deposit=settings.minimum_deposit,
                maximum_deposit=settings.maximum_deposit,
                fee_rate=settings.deposit_fee_rate,
                amount_tolerance=settings.amount_tolerance,
                orchestrator=orchestrator if distribute_deposits else None
            )

        logger.info("Wallet collection service initialized")
        logger.info(f"  Chain id: {settings.chain_id}")
        logger.info(f"  Token: {settings.token_address}")
        logger.info(f"  Collection wallet: {settings.collection_wallet}")
        logger.info(f"  Operational wallet: {gas_bootstrapper.operational_address}")

        return cls(settings, reader, deriver, verifier, fund_mover, gas_bootstrapper, orchestrator, intake)

    async def check_connectivity(self) -> Dict:
        """Chain id, head block and operational wallet balance"""
        status = await self.reader.check_connectivity()
        balance = await self.gas_bootstrapper.operational_balance()

        data = status.to_dict()
        data['operational_wallet'] = self.gas_bootstrapper.operational_address
        data['operational_balance'] = format_amount(balance)
        return data

    async def close(self):
        await self.reader.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
