"""
Abstract interface for Solana ledger access.

Defines the contract for network access that all ledger adapters must implement.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction


class ConfirmationDepth(str, Enum):
    """Commitment levels a transaction can be confirmed at."""
    CONFIRMED = "confirmed"       # Intermediate steps
    FINALIZED = "finalized"       # Deactivation and closure


@dataclass
class BlockReference:
    """Latest blockhash and the last block height it stays valid for."""
    blockhash: Hash
    last_valid_block_height: int


@dataclass
class LookupTableState:
    """Current on-chain state of an address lookup table."""
    address: Pubkey
    addresses: List[Pubkey] = field(default_factory=list)
    deactivation_slot: Optional[int] = None    # None while the table is active
    last_extended_slot: int = 0
    authority: Optional[Pubkey] = None

    @property
    def is_deactivated(self) -> bool:
        return self.deactivation_slot is not None

    def to_account(self) -> AddressLookupTableAccount:
        """Lookup context for compiling v0 messages."""
        return AddressLookupTableAccount(key=self.address, addresses=list(self.addresses))


class LedgerInterface(ABC):
    """
    Abstract interface for Solana ledger access.

    This interface defines all network operations needed by the split flow:
    - Slot, balance and blockhash queries
    - Fee estimation for compiled messages
    - Transaction submission and confirmation
    - Lookup table account state
    """

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish connection to the RPC endpoint.

        Raises:
            NodeConnectionError: If connection cannot be established
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to the RPC endpoint."""
        pass

    @abstractmethod
    async def get_slot(self) -> int:
        """Get the current slot of the network tip."""
        pass

    @abstractmethod
    async def get_balance(self, pubkey: Pubkey) -> int:
        """Get an account's balance in lamports."""
        pass

    @abstractmethod
    async def get_latest_blockhash(self) -> BlockReference:
        """Get the latest blockhash with its expiry height."""
        pass

    @abstractmethod
    async def get_fee_for_message(self, message: MessageV0) -> Optional[int]:
        """
        Get the fee the network would charge for a compiled message.

        Returns:
            Fee in lamports, or None if the blockhash is unknown to the node
        """
        pass

    @abstractmethod
    async def send_transaction(self, tx: VersionedTransaction) -> str:
        """
        Submit a signed transaction to the network.

        Returns:
            Transaction signature

        Raises:
            TransactionSubmitError: If submission fails
        """
        pass

    @abstractmethod
    async def confirm_transaction(
        self,
        signature: str,
        reference: BlockReference,
        depth: ConfirmationDepth = ConfirmationDepth.CONFIRMED,
    ) -> bool:
        """
        Wait for a transaction to reach the requested commitment.

        Args:
            signature: Signature of the transaction to monitor
            reference: Blockhash the transaction was built against
            depth: Commitment level to wait for

        Returns:
            True if confirmed before the blockhash expired, False otherwise
        """
        pass

    @abstractmethod
    async def get_lookup_table(self, address: Pubkey) -> Optional[LookupTableState]:
        """
        Fetch a lookup table's current account state.

        Returns:
            The table state, or None if the account does not exist
        """
        pass


class NodeConnectionError(Exception):
    """Raised when a network query fails."""
    pass


class TransactionSubmitError(Exception):
    """Raised when transaction submission fails."""

    def __init__(self, message: str, error_code: Optional[int] = None):
        super().__init__(message)
        self.error_code = error_code
