"""
Pytest configuration and shared fixtures for the test suite.
"""

import asyncio
import struct
from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from solsplit.config import NetworkType, SolsplitConfig, set_config
from solsplit.core.split import LAMPORTS_PER_SOL
from solsplit.node.alt_program import (
    ALT_PROGRAM_ID,
    CLOSE_LOOKUP_TABLE,
    CREATE_LOOKUP_TABLE,
    DEACTIVATE_LOOKUP_TABLE,
    EXTEND_LOOKUP_TABLE,
    SYSTEM_PROGRAM_ID,
)
from solsplit.node.interface import (
    BlockReference,
    ConfirmationDepth,
    LedgerInterface,
    LookupTableState,
    NodeConnectionError,
    TransactionSubmitError,
)
from solsplit.state.alt_store import AltRecordStore
from solsplit.state.database import MemoryStore
from solsplit.tx.signer import KeypairWallet

# System program Transfer discriminator
SYSTEM_TRANSFER = 2


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def test_config(tmp_path) -> SolsplitConfig:
    """Create a test configuration."""
    config = SolsplitConfig(
        network=NetworkType.LOCALNET,
        extend_chunk_size=30,
        transfer_chunk_size=55,
        cooldown_slots=512,
        monitor_interval_seconds=0.01,
        confirm_timeout_seconds=5,
        fallback_fee_lamports=5000,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'solsplit.db'}",
        log_level="DEBUG",
    )
    set_config(config)
    return config


# ============================================================================
# Test Data Generators
# ============================================================================

def generate_recipients(count: int) -> List[str]:
    """Generate distinct valid recipient addresses."""
    return [str(Keypair().pubkey()) for _ in range(count)]


def sol(amount: float) -> int:
    """SOL to lamports for test amounts."""
    return int(round(amount * LAMPORTS_PER_SOL))


# ============================================================================
# Mock Ledger
# ============================================================================

class MockLedger(LedgerInterface):
    """
    In-memory ledger for testing.

    Executes lookup table and transfer instructions from submitted messages
    so that the lifecycle sees realistic table state.
    """

    def __init__(self, slot: int = 1000, balance: int = 10 * LAMPORTS_PER_SOL, fee: int = 5000):
        self.slot = slot
        self.balance = balance
        self.fee_per_signature = fee
        self.slot_step = 1

        self.tables: Dict[Pubkey, LookupTableState] = {}
        self.sent: List[VersionedTransaction] = []
        self.confirmations: List[Tuple[str, ConfirmationDepth]] = []
        self.transferred: List[int] = []
        self.blockhash_calls = 0

        # Failure switches
        self.fail_slot = False
        self.fail_balance = False
        self.fail_fee = False
        self.fail_fee_for_instructions = False
        self.fail_lookup = False
        self.fail_send_at: Optional[int] = None
        self.unconfirmed_at: Set[int] = set()

        # Holds confirm_transaction until set
        self.confirm_gate: Optional[asyncio.Event] = None

        self._connected = False

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    async def get_slot(self) -> int:
        if self.fail_slot:
            raise NodeConnectionError("slot unavailable")
        return self.slot

    async def get_balance(self, pubkey: Pubkey) -> int:
        if self.fail_balance:
            raise NodeConnectionError("balance unavailable")
        return self.balance

    async def get_latest_blockhash(self) -> BlockReference:
        self.blockhash_calls += 1
        return BlockReference(blockhash=Hash.new_unique(), last_valid_block_height=self.slot + 150)

    async def get_fee_for_message(self, message: MessageV0) -> Optional[int]:
        if self.fail_fee:
            raise NodeConnectionError("fee unavailable")
        if self.fail_fee_for_instructions and message.instructions:
            raise NodeConnectionError("fee unavailable for message")
        return self.fee_per_signature * message.header.num_required_signatures

    async def send_transaction(self, tx: VersionedTransaction) -> str:
        if self.fail_send_at is not None and len(self.sent) == self.fail_send_at:
            raise TransactionSubmitError("Transaction simulation failed", error_code=-32002)

        self.sent.append(tx)
        self.balance -= self.fee_per_signature
        self._execute(tx.message)
        self.slot += self.slot_step
        return str(tx.signatures[0])

    async def confirm_transaction(
        self,
        signature: str,
        reference: BlockReference,
        depth: ConfirmationDepth = ConfirmationDepth.CONFIRMED,
    ) -> bool:
        if self.confirm_gate is not None:
            await self.confirm_gate.wait()
        index = len(self.confirmations)
        self.confirmations.append((signature, depth))
        return index not in self.unconfirmed_at

    async def get_lookup_table(self, address: Pubkey) -> Optional[LookupTableState]:
        if self.fail_lookup:
            raise NodeConnectionError("account unavailable")
        return self.tables.get(address)

    def _execute(self, message: MessageV0) -> None:
        keys = list(message.account_keys)
        for ix in message.instructions:
            program = keys[ix.program_id_index]
            data = bytes(ix.data)
            accounts = [keys[i] for i in bytes(ix.accounts) if i < len(keys)]

            if program == ALT_PROGRAM_ID:
                self._execute_alt(data, accounts)
            elif program == SYSTEM_PROGRAM_ID:
                tag, lamports = struct.unpack_from("<IQ", data, 0)
                if tag == SYSTEM_TRANSFER:
                    self.balance -= lamports
                    self.transferred.append(lamports)

    def _execute_alt(self, data: bytes, accounts: List[Pubkey]) -> None:
        tag = struct.unpack_from("<I", data, 0)[0]
        table = accounts[0]

        if tag == CREATE_LOOKUP_TABLE:
            self.tables[table] = LookupTableState(address=table, authority=accounts[1])
        elif tag == EXTEND_LOOKUP_TABLE:
            count = struct.unpack_from("<Q", data, 4)[0]
            new = [Pubkey.from_bytes(data[12 + i * 32:44 + i * 32]) for i in range(count)]
            self.tables[table].addresses.extend(new)
            self.tables[table].last_extended_slot = self.slot
        elif tag == DEACTIVATE_LOOKUP_TABLE:
            self.tables[table].deactivation_slot = self.slot
        elif tag == CLOSE_LOOKUP_TABLE:
            del self.tables[table]

    def alt_instruction_tags(self) -> List[int]:
        """Lookup table program discriminators of every sent transaction, in order."""
        tags = []
        for tx in self.sent:
            keys = list(tx.message.account_keys)
            for ix in tx.message.instructions:
                if keys[ix.program_id_index] == ALT_PROGRAM_ID:
                    tags.append(struct.unpack_from("<I", bytes(ix.data), 0)[0])
        return tags

    def add_table(self, address: Pubkey, deactivation_slot: Optional[int] = None) -> LookupTableState:
        """Seed a table (simulate one left by an earlier run)."""
        state = LookupTableState(address=address, deactivation_slot=deactivation_slot)
        self.tables[address] = state
        return state


@pytest.fixture
def mock_ledger() -> MockLedger:
    """Create a mock ledger."""
    return MockLedger()


# ============================================================================
# Test Wallet
# ============================================================================

def decline_on(*calls: int) -> Callable[[MessageV0], bool]:
    """Approval callback that declines the given (0-based) signature requests."""
    counter = {"n": 0}

    def approve(message: MessageV0) -> bool:
        index = counter["n"]
        counter["n"] += 1
        return index not in calls

    return approve


@pytest.fixture
def payer_keypair() -> Keypair:
    return Keypair()


@pytest.fixture
def wallet(mock_ledger, payer_keypair, test_config) -> KeypairWallet:
    """Create a wallet that signs every request."""
    return KeypairWallet(mock_ledger, payer_keypair, config=test_config)


# ============================================================================
# Storage
# ============================================================================

@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def alt_store(memory_store) -> AltRecordStore:
    return AltRecordStore(memory_store)
