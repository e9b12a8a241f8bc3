"""
Core split components.

This module contains the split calculator, chunk planning, the lookup table
record model, and the lifecycle manager that orchestrates a split flow.
"""

from solsplit.core.split import (
    Allocation,
    SplitMode,
    SplitRequest,
    ValidationError,
    auto_fill_percentages,
    compute_split,
)
from solsplit.core.addresses import ImportResult, merge_addresses, parse_addresses
from solsplit.core.chunks import chunked
from solsplit.core.alt import AltRecord, LifecycleState
from solsplit.core.lifecycle import (
    AltLifecycleManager,
    CooldownStatus,
    EventKind,
    InvalidStateError,
    ProgressEvent,
    StaleRecordError,
)

__all__ = [
    "Allocation",
    "SplitMode",
    "SplitRequest",
    "ValidationError",
    "auto_fill_percentages",
    "compute_split",
    "ImportResult",
    "merge_addresses",
    "parse_addresses",
    "chunked",
    "AltRecord",
    "LifecycleState",
    "AltLifecycleManager",
    "CooldownStatus",
    "EventKind",
    "InvalidStateError",
    "ProgressEvent",
    "StaleRecordError",
]
