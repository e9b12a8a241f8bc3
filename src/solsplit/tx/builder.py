"""
Message builder - compiles instructions into v0 messages.

Handles transfer instruction construction for an allocation and the
compilation of instruction batches against optional lookup tables.
"""

from typing import List, Optional, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from solsplit.core.split import Allocation


def compile_message(
    payer: Pubkey,
    instructions: Sequence[Instruction],
    blockhash: Hash,
    lookup_tables: Optional[Sequence[AddressLookupTableAccount]] = None,
) -> MessageV0:
    """
    Compile an instruction batch into a v0 message.

    Accounts present in ``lookup_tables`` are referenced by index, which
    keeps multi-recipient messages under the packet size limit.
    """
    return MessageV0.try_compile(
        payer=payer,
        instructions=list(instructions),
        address_lookup_table_accounts=list(lookup_tables or []),
        recent_blockhash=blockhash,
    )


def build_transfer_instructions(payer: Pubkey, allocation: Allocation) -> List[Instruction]:
    """
    Build one SOL transfer per recipient with a non-zero allocation.

    Args:
        payer: Account the lamports leave from
        allocation: Per-recipient lamports

    Returns:
        Transfer instructions in allocation order
    """
    return [
        transfer(TransferParams(
            from_pubkey=payer,
            to_pubkey=Pubkey.from_string(recipient),
            lamports=lamports,
        ))
        for recipient, lamports in allocation.nonzero()
    ]


def lookup_addresses(payer: Pubkey, recipients: Sequence[str]) -> List[Pubkey]:
    """Unique recipient keys to register in the lookup table, payer excluded."""
    seen = set()
    keys = []
    for recipient in recipients:
        key = Pubkey.from_string(recipient)
        if key == payer or key in seen:
            continue
        seen.add(key)
        keys.append(key)
    return keys
