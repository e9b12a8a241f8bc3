"""
Fee estimation and balance preflight.

Estimates what a batch of instructions will cost and checks that the payer
can cover an amount plus fees before anything is signed.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import structlog
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from solsplit.config import SolsplitConfig, get_config
from solsplit.core.split import format_sol
from solsplit.exceptions import SolsplitError
from solsplit.node.interface import LedgerInterface
from solsplit.tx.builder import compile_message

logger = structlog.get_logger(__name__)


class PreflightEstimationError(SolsplitError):
    """Raised when an aggregate fee preflight cannot be computed. Non-fatal."""
    pass


@dataclass
class BalanceReport:
    """Result of comparing a payer's balance against amount + fees."""

    sufficient: bool
    required: int
    available: Optional[int]
    amount: int
    fee: int
    context: str = ""

    @property
    def shortfall(self) -> int:
        if self.available is None:
            return 0
        return max(0, self.required - self.available)

    @property
    def message(self) -> str:
        if self.sufficient:
            return f"Balance sufficient {self.context}".strip()
        return (
            f"Insufficient balance {self.context}. "
            f"Required {format_sol(self.required)} SOL "
            f"(amount {format_sol(self.amount)} + fees {format_sol(self.fee)}), "
            f"available {format_sol(self.available or 0)} SOL. "
            f"Missing {format_sol(self.shortfall)} SOL."
        )

    def __bool__(self) -> bool:
        return self.sufficient


class InsufficientFundsError(SolsplitError):
    """Raised before signing a step the payer cannot afford."""

    def __init__(self, report: BalanceReport):
        super().__init__(report.message)
        self.report = report

    @property
    def shortfall(self) -> int:
        return self.report.shortfall


@dataclass
class FeeBreakdown:
    """Estimated fees of every step of a split flow."""

    create: int = 0
    extend: List[int] = field(default_factory=list)
    transfer: List[int] = field(default_factory=list)
    deactivate: int = 0

    @property
    def total(self) -> int:
        return self.create + sum(self.extend) + sum(self.transfer) + self.deactivate

    def to_dict(self) -> dict:
        return {
            "create": self.create,
            "extend": list(self.extend),
            "transfer": list(self.transfer),
            "deactivate": self.deactivate,
            "total": self.total,
        }


class FeeEstimator:
    """
    Estimates the fee of an instruction batch.

    Falls back in three tiers so that estimation never blocks a flow:
    the real message, then an empty message from the same payer (the
    per-signature base fee), then a fixed conservative constant.
    """

    def __init__(self, ledger: LedgerInterface, config: Optional[SolsplitConfig] = None):
        self.ledger = ledger
        self.config = config or get_config()

    @property
    def fallback_fee(self) -> int:
        return self.config.fallback_fee_lamports

    async def _fee_for(
        self,
        payer: Pubkey,
        instructions: Sequence[Instruction],
        lookup_tables: Optional[Sequence[AddressLookupTableAccount]],
    ) -> int:
        reference = await self.ledger.get_latest_blockhash()
        message = compile_message(payer, instructions, reference.blockhash, lookup_tables)
        fee = await self.ledger.get_fee_for_message(message)
        return int(fee or 0)

    async def estimate(
        self,
        payer: Pubkey,
        instructions: Sequence[Instruction],
        lookup_tables: Optional[Sequence[AddressLookupTableAccount]] = None,
    ) -> int:
        """
        Estimate the fee for submitting ``instructions`` in one transaction.

        Args:
            payer: Fee payer
            instructions: Instruction batch
            lookup_tables: Lookup context the message will be compiled with

        Returns:
            Fee in lamports, never negative
        """
        try:
            return max(0, await self._fee_for(payer, instructions, lookup_tables))
        except Exception as e:
            logger.debug("fee_estimation_failed", error=str(e), instructions=len(instructions))

        try:
            return max(0, await self._fee_for(payer, [], None))
        except Exception as e:
            logger.debug("fee_estimation_fallback_failed", error=str(e))

        logger.info("fee_estimation_default_used", fee=self.fallback_fee)
        return self.fallback_fee


class BalanceGuard:
    """
    Checks that the payer can cover an amount plus fees.

    The check is advisory: if the balance cannot be fetched it passes, since
    the network enforces balances at submission anyway.
    """

    def __init__(self, ledger: LedgerInterface):
        self.ledger = ledger

    async def check(
        self,
        payer: Pubkey,
        amount: int,
        fee: int,
        context: str = "",
    ) -> BalanceReport:
        required = amount + fee

        try:
            available = await self.ledger.get_balance(payer)
        except Exception as e:
            logger.warning("balance_check_skipped", context=context, error=str(e))
            return BalanceReport(
                sufficient=True,
                required=required,
                available=None,
                amount=amount,
                fee=fee,
                context=context,
            )

        report = BalanceReport(
            sufficient=available >= required,
            required=required,
            available=available,
            amount=amount,
            fee=fee,
            context=context,
        )

        if not report.sufficient:
            logger.warning(
                "insufficient_balance",
                context=context,
                required=required,
                available=available,
                shortfall=report.shortfall,
            )

        return report

    async def ensure(
        self,
        payer: Pubkey,
        amount: int,
        fee: int,
        context: str = "",
    ) -> BalanceReport:
        """Like ``check`` but raises InsufficientFundsError on a shortfall."""
        report = await self.check(payer, amount, fee, context)
        if not report.sufficient:
            raise InsufficientFundsError(report)
        return report
