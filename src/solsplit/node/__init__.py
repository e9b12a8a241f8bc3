"""
Ledger Integration Layer.

Provides abstracted access to Solana network state and transaction submission,
plus instruction builders for the address lookup table program.
"""

from solsplit.node.interface import LedgerInterface, LookupTableState
from solsplit.node.rpc import SolanaRpcAdapter

__all__ = [
    "LedgerInterface",
    "LookupTableState",
    "SolanaRpcAdapter",
]
