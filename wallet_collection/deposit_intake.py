"""
Deposit Intake

Turns a user's "I sent N USDT, here is the hash" claim into a ledger credit:
1. Expected amount within the configured deposit limits
2. Verify the transaction on chain
3. Must be a token transfer whose decoded recipient is the user's wallet
4. Hash must not have been credited before (ledger lookup)
5. Observed amount within tolerance of the expected amount
6. Credit deposit minus fee through the injected ledger
7. Optionally split the deposit out of the custodial wallet

Persistence stays with the caller: the ledger is an async protocol.
"""

import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Protocol

from loguru import logger

from .exceptions import BelowMinimum, CollectionError, NotFound, Pending
from .sweep_orchestrator import DepositDistribution, SweepOrchestrator
from .transaction_verifier import TokenTransfer, TransactionVerifier, VerifiedTransaction
from .units import format_amount, to_decimal
from .wallet_derivation import WalletDeriver

PENDING_MESSAGE = "Transaction not yet confirmed, check back shortly"
FAILED_MESSAGE = "Transaction verification failed"


class DepositStatus(str, enum.Enum):
    CREDITED = "credited"
    PENDING = "pending"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class DepositCredit:
    """What the ledger is asked to book"""
    user_id: str
    tx_hash: str
    deposit_amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    from_address: str
    to_address: str


class DepositLedger(Protocol):
    """External ledger storage"""

    async def is_processed(self, tx_hash: str) -> bool:
        ...

    async def credit_deposit(self, credit: DepositCredit) -> Optional[str]:
        ...


@dataclass
class DepositOutcome:
    """Result of a deposit submission"""
    status: DepositStatus
    message: str
    user_id: str
    tx_hash: str
    amount: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    ledger_reference: Optional[str] = None
    error_kind: Optional[str] = None
    transaction: Optional[VerifiedTransaction] = None
    distribution: Optional[DepositDistribution] = None
    distribution_error: Optional[str] = None

    @property
    def credited(self) -> bool:
        return self.status == DepositStatus.CREDITED

    def to_dict(self) -> Dict:
        def amount(value):
            return format_amount(value) if value is not None else None

        return {
            'status': self.status.value,
            'message': self.message,
            'user_id': self.user_id,
            'tx_hash': self.tx_hash,
            'amount': amount(self.amount),
            'fee': amount(self.fee),
            'net_amount': amount(self.net_amount),
            'ledger_reference': self.ledger_reference,
            'error_kind': self.error_kind,
            'distribution': self.distribution.to_dict() if self.distribution else None,
            'distribution_error': self.distribution_error,
        }


class DepositIntake:
    """Verify and credit user deposits"""

    def __init__(
        self,
        verifier: TransactionVerifier,
        deriver: WalletDeriver,
        ledger: DepositLedger,
        minimum_deposit: Decimal = Decimal("5"),
        maximum_deposit: Decimal = Decimal("50000"),
        fee_rate: Decimal = Decimal("0.01"),
        amount_tolerance: Decimal = Decimal("0.01"),
        orchestrator: Optional[SweepOrchestrator] = None
    ):
        """
        Initialize deposit intake

        Args:
            verifier: Transaction verifier
            deriver: Wallet deriver (expected recipient)
            ledger: Ledger storage
            minimum_deposit: Smallest accepted deposit
            maximum_deposit: Largest accepted deposit
            fee_rate: Fee share of each deposit
            amount_tolerance: Allowed relative difference observed vs expected
            orchestrator: When set, credited deposits are distributed immediately
        """
        self.verifier = verifier
        self.deriver = deriver
        self.ledger = ledger
        self.minimum_deposit = Decimal(minimum_deposit)
        self.maximum_deposit = Decimal(maximum_deposit)
        self.fee_rate = Decimal(fee_rate)
        self.amount_tolerance = Decimal(amount_tolerance)
        self.orchestrator = orchestrator

    def _outcome(self, status: DepositStatus, message: str, user_id: str, tx_hash: str, **kwargs) -> DepositOutcome:
        outcome = DepositOutcome(status=status, message=message, user_id=user_id, tx_hash=tx_hash, **kwargs)
        if status == DepositStatus.CREDITED:
            logger.info(f"✓ Deposit {tx_hash} for user {user_id}: {message}")
        else:
            logger.info(f"Deposit {tx_hash} for user {user_id} {status.value}: {message}")
        return outcome

    async def submit(self, user_id: str, tx_hash: str, expected_amount) -> DepositOutcome:
        """
        Process a deposit claim

        Args:
            user_id: Claiming user
            tx_hash: Transaction hash the user submitted
            expected_amount: Amount the user says they sent

        Returns:
            DepositOutcome (never raises for verification problems)
        """
        try:
            expected = to_decimal(expected_amount)
        except ValueError:
            return self._outcome(DepositStatus.REJECTED, "Valid deposit amount is required", user_id, tx_hash)

        if expected < self.minimum_deposit:
            return self._outcome(
                DepositStatus.REJECTED,
                f"Minimum deposit amount is {format_amount(self.minimum_deposit)} USDT",
                user_id, tx_hash
            )
        if expected > self.maximum_deposit:
            return self._outcome(
                DepositStatus.REJECTED,
                f"Maximum deposit amount is {format_amount(self.maximum_deposit)} USDT",
                user_id, tx_hash
            )

        try:
            verified = await self.verifier.verify(tx_hash)
        except (Pending, NotFound) as e:
            return self._outcome(DepositStatus.PENDING, PENDING_MESSAGE, user_id, tx_hash, error_kind=e.kind)
        except BelowMinimum as e:
            return self._outcome(
                DepositStatus.REJECTED,
                f"Transfer amount {format_amount(e.observed)} USDT is below the minimum "
                f"of {format_amount(e.required)} USDT",
                user_id, tx_hash, error_kind=e.kind, amount=e.observed
            )
        except CollectionError as e:
            logger.warning(f"Verification of {tx_hash} failed: {e.kind}: {e}")
            return self._outcome(DepositStatus.FAILED, FAILED_MESSAGE, user_id, tx_hash, error_kind=e.kind)

        tx_hash = verified.tx_hash
        expected_wallet = self.deriver.address_for(user_id)

        if not isinstance(verified.transfer, TokenTransfer):
            return self._outcome(
                DepositStatus.REJECTED,
                f"Transaction is not a USDT transfer to the token contract {self.verifier.token_address}",
                user_id, tx_hash, transaction=verified
            )

        if not verified.actual_recipient or verified.actual_recipient.lower() != expected_wallet.lower():
            return self._outcome(
                DepositStatus.REJECTED,
                f"USDT transfer not sent to your wallet. Expected: {expected_wallet}, "
                f"Got: {verified.actual_recipient or 'unknown'}",
                user_id, tx_hash, transaction=verified
            )

        if await self.ledger.is_processed(tx_hash):
            return self._outcome(
                DepositStatus.REJECTED, "Transaction already processed", user_id, tx_hash, transaction=verified
            )

        amount = verified.token_transfer_amount
        if abs(amount - expected) > expected * self.amount_tolerance:
            return self._outcome(
                DepositStatus.REJECTED,
                f"Transaction amount ({format_amount(amount)} USDT) does not match expected amount "
                f"({format_amount(expected)} USDT)",
                user_id, tx_hash, transaction=verified, amount=amount
            )

        fee = amount * self.fee_rate
        net_amount = amount - fee
        credit = DepositCredit(
            user_id=user_id,
            tx_hash=tx_hash,
            deposit_amount=amount,
            fee_amount=fee,
            net_amount=net_amount,
            from_address=verified.from_address,
            to_address=verified.actual_recipient,
        )

        try:
            reference = await self.ledger.credit_deposit(credit)
        except Exception as e:
            logger.error(f"✗ Ledger credit failed for {tx_hash}: {e}")
            return self._outcome(
                DepositStatus.FAILED, "Failed to process deposit", user_id, tx_hash,
                transaction=verified, amount=amount, error_kind=type(e).__name__
            )

        outcome = self._outcome(
            DepositStatus.CREDITED,
            f"Deposit processed successfully: {format_amount(net_amount)} USDT credited "
            f"({format_amount(fee)} fee)",
            user_id, tx_hash,
            amount=amount, fee=fee, net_amount=net_amount,
            ledger_reference=reference, transaction=verified
        )

        if self.orchestrator is not None:
            # Balance is already credited; a failed split is collected later
            try:
                outcome.distribution = await self.orchestrator.distribute_deposit(user_id, amount, fee)
            except CollectionError as e:
                outcome.distribution_error = f"{e.kind}: {e}"
                logger.error(f"✗ Deposit distribution failed for {tx_hash}: {e.kind}: {e}")

        return outcome
