"""
Base exception for solsplit.

Domain errors are declared next to the code that raises them and derive
from SolsplitError so callers can catch every flow failure in one place.
"""


class SolsplitError(Exception):
    """Base class for errors surfaced to solsplit callers."""
    pass
