"""
Lookup table record model.

Tracks one temporary address lookup table through its lifecycle.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from solders.pubkey import Pubkey


class LifecycleState(str, Enum):
    """State of the split flow and its lookup table."""
    IDLE = "idle"                   # No flow in progress
    CREATING = "creating"           # Table creation being submitted
    EXTENDING = "extending"         # Recipient addresses being registered
    READY = "ready"                 # Table extended and loaded as lookup context
    TRANSFERRING = "transferring"   # Transfer chunks being submitted
    DEACTIVATING = "deactivating"   # Deactivation being submitted
    COOLING_DOWN = "cooling_down"   # Deactivated, waiting out the cooldown
    CLOSABLE = "closable"           # Cooldown elapsed, table can be closed
    CLOSED = "closed"               # Table closed, rent returned
    ABORTED = "aborted"             # A step failed


# States in which a deactivated table is waiting to be closed
PENDING_CLOSE_STATES = (LifecycleState.COOLING_DOWN, LifecycleState.CLOSABLE)


def cooldown_remaining(
    current_slot: int,
    deactivation_slot: Optional[int],
    cooldown_slots: int,
) -> int:
    """
    Slots left before a deactivated table can be closed.

    An unknown deactivation slot means the full cooldown is still ahead.
    The result is never negative.
    """
    if deactivation_slot is None or deactivation_slot <= 0:
        return cooldown_slots
    return max(0, cooldown_slots - (current_slot - deactivation_slot))


@dataclass
class AltRecord:
    """
    A temporary lookup table owned by one wallet.

    Attributes:
        address: Table address
        wallet: Owning wallet (authority and payer)
        deactivation_slot: Slot the deactivation landed in, once known
        state: Lifecycle state of the table
    """

    address: Pubkey
    wallet: Pubkey
    deactivation_slot: Optional[int] = None
    state: LifecycleState = LifecycleState.CREATING

    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if isinstance(self.state, str):
            self.state = LifecycleState(self.state)

    def transition(self, state: LifecycleState) -> None:
        self.state = state
        self.updated_at = datetime.utcnow()

    def mark_deactivated(self, deactivation_slot: Optional[int]) -> None:
        """Record the deactivation slot and enter the cooldown."""
        self.deactivation_slot = deactivation_slot
        self.transition(LifecycleState.COOLING_DOWN)

    def remaining_slots(self, current_slot: int, cooldown_slots: int) -> int:
        return cooldown_remaining(current_slot, self.deactivation_slot, cooldown_slots)

    @property
    def is_pending_close(self) -> bool:
        return self.state in PENDING_CLOSE_STATES

    def to_storage(self) -> Dict[str, Any]:
        """Persisted shape of the record."""
        return {
            "address": str(self.address),
            "walletPubkey": str(self.wallet),
            "deactivationSlot": self.deactivation_slot,
        }

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "address": str(self.address),
            "wallet": str(self.wallet),
            "deactivation_slot": self.deactivation_slot,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def __repr__(self) -> str:
        return f"AltRecord(address={str(self.address)[:8]}..., state={self.state.value})"
