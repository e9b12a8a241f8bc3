"""
solsplit

Split one SOL payment between many recipients through a temporary address
lookup table. The table is created, extended with the recipients, used for
the transfers, deactivated, and closed once its cooldown has elapsed so the
rent comes back to the payer.
"""

__version__ = "0.1.0"

from solsplit.core.lifecycle import AltLifecycleManager, CooldownStatus, EventKind, ProgressEvent
from solsplit.core.split import Allocation, SplitMode, SplitRequest, compute_split
from solsplit.core.alt import AltRecord, LifecycleState

__all__ = [
    "AltLifecycleManager",
    "CooldownStatus",
    "EventKind",
    "ProgressEvent",
    "Allocation",
    "SplitMode",
    "SplitRequest",
    "compute_split",
    "AltRecord",
    "LifecycleState",
]
