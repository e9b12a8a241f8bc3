"""
Transaction submitter - runs one step of a flow on-chain.

Compiles an instruction batch against the latest blockhash, has the wallet
sign and submit it, and waits for confirmation at the requested depth.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import structlog
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction

from solsplit.exceptions import SolsplitError
from solsplit.node.interface import (
    ConfirmationDepth,
    LedgerInterface,
    NodeConnectionError,
    TransactionSubmitError,
)
from solsplit.tx.builder import compile_message
from solsplit.tx.signer import WalletSigner

logger = structlog.get_logger(__name__)


class SubmissionFailure(SolsplitError):
    """A wallet or network rejection of one step. Earlier confirmed steps stand."""

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.step = step


class UserDeclined(Exception):
    """The user refused to sign. Not an error; the step simply did not happen."""

    def __init__(self, step: Optional[str] = None):
        super().__init__(f"Signature declined{': ' + step if step else ''}")
        self.step = step


@dataclass
class PendingStep:
    """Human-readable description of the step awaiting signature."""
    title: str
    description: Optional[str] = None


class TransactionSubmitter:
    """
    Submits instruction batches through the wallet and confirms them.

    While a step is in flight ``pending_step`` holds its title and
    description; listeners registered with ``on_pending`` are told when it
    is set and when it is cleared (with None).
    """

    def __init__(self, ledger: LedgerInterface, wallet: WalletSigner):
        self.ledger = ledger
        self.wallet = wallet
        self.pending_step: Optional[PendingStep] = None
        self._listeners: List[Callable[[Optional[PendingStep]], None]] = []

    def on_pending(self, callback: Callable[[Optional[PendingStep]], None]) -> None:
        """Register a listener for pending step changes."""
        self._listeners.append(callback)

    def _set_pending(self, step: Optional[PendingStep]) -> None:
        self.pending_step = step
        for callback in self._listeners:
            callback(step)

    async def submit(
        self,
        instructions: Sequence[Instruction],
        lookup_tables: Optional[Sequence[AddressLookupTableAccount]] = None,
        depth: ConfirmationDepth = ConfirmationDepth.CONFIRMED,
        title: str = "",
        description: Optional[str] = None,
    ) -> str:
        """
        Submit one instruction batch and wait for confirmation.

        Args:
            instructions: Instructions to put in a single transaction
            lookup_tables: Lookup context used to compile the message
            depth: Commitment to wait for
            title: Step title shown while pending
            description: Optional step description

        Returns:
            Confirmed transaction signature

        Raises:
            UserDeclined: The wallet declined to sign
            SubmissionFailure: Any other failure of this step
        """
        self._set_pending(PendingStep(title=title, description=description))

        try:
            reference = await self.ledger.get_latest_blockhash()
            message = compile_message(
                self.wallet.pubkey,
                instructions,
                reference.blockhash,
                lookup_tables,
            )

            result = await self.wallet.sign_and_submit(message)
            if result.declined:
                logger.info("step_declined", step=title)
                raise UserDeclined(title)

            signature = result.signature
            logger.info("step_submitted", step=title, signature=signature)

            confirmed = await self.ledger.confirm_transaction(signature, reference, depth)
            if not confirmed:
                raise SubmissionFailure(
                    f"Transaction {signature} was not confirmed ({depth.value})",
                    step=title,
                )

            logger.info("step_confirmed", step=title, signature=signature, depth=depth.value)
            return signature

        except (UserDeclined, SubmissionFailure):
            raise
        except (NodeConnectionError, TransactionSubmitError) as e:
            logger.error("step_failed", step=title, error=str(e))
            raise SubmissionFailure(str(e), step=title)
        except Exception as e:
            logger.error("step_failed", step=title, error=str(e))
            raise SubmissionFailure(f"{title or 'Transaction'} failed: {e}", step=title)
        finally:
            self._set_pending(None)
