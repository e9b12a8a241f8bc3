"""
Address Lookup Table program instructions and account decoding.

Builds the create / extend / deactivate / close instructions and parses a
table account into a LookupTableState.
"""

import struct
from typing import List, Optional, Sequence, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from solsplit.node.interface import LookupTableState

ALT_PROGRAM_ID = Pubkey.from_string("AddressLookupTab1e1111111111111111111111111")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

# Instruction discriminators (u32, little endian)
CREATE_LOOKUP_TABLE = 0
FREEZE_LOOKUP_TABLE = 1
EXTEND_LOOKUP_TABLE = 2
DEACTIVATE_LOOKUP_TABLE = 3
CLOSE_LOOKUP_TABLE = 4

# Serialized LookupTableMeta, addresses follow
LOOKUP_TABLE_META_SIZE = 56

# Deactivation slot of a table that is still active
ACTIVE_DEACTIVATION_SLOT = 2**64 - 1


def derive_lookup_table_address(authority: Pubkey, recent_slot: int) -> Tuple[Pubkey, int]:
    """Derive the table address and bump seed from authority + slot."""
    return Pubkey.find_program_address(
        [bytes(authority), struct.pack("<Q", recent_slot)],
        ALT_PROGRAM_ID,
    )


def create_lookup_table(
    authority: Pubkey,
    payer: Pubkey,
    recent_slot: int,
) -> Tuple[Instruction, Pubkey]:
    """
    Build a CreateLookupTable instruction.

    Args:
        authority: Account allowed to extend, deactivate and close the table
        payer: Account funding the table's rent
        recent_slot: A recent slot, part of the address derivation

    Returns:
        (instruction, table address)
    """
    table_address, bump = derive_lookup_table_address(authority, recent_slot)
    data = struct.pack("<IQB", CREATE_LOOKUP_TABLE, recent_slot, bump)

    accounts = [
        AccountMeta(table_address, is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=False),
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]

    return Instruction(ALT_PROGRAM_ID, data, accounts), table_address


def extend_lookup_table(
    table_address: Pubkey,
    authority: Pubkey,
    payer: Pubkey,
    new_addresses: Sequence[Pubkey],
) -> Instruction:
    """Build an ExtendLookupTable instruction."""
    data = struct.pack("<IQ", EXTEND_LOOKUP_TABLE, len(new_addresses))
    data += b"".join(bytes(a) for a in new_addresses)

    accounts = [
        AccountMeta(table_address, is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=False),
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]

    return Instruction(ALT_PROGRAM_ID, data, accounts)


def deactivate_lookup_table(table_address: Pubkey, authority: Pubkey) -> Instruction:
    """Build a DeactivateLookupTable instruction."""
    accounts = [
        AccountMeta(table_address, is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=False),
    ]
    return Instruction(ALT_PROGRAM_ID, struct.pack("<I", DEACTIVATE_LOOKUP_TABLE), accounts)


def close_lookup_table(
    table_address: Pubkey,
    authority: Pubkey,
    recipient: Pubkey,
) -> Instruction:
    """Build a CloseLookupTable instruction returning the rent to ``recipient``."""
    accounts = [
        AccountMeta(table_address, is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=False),
        AccountMeta(recipient, is_signer=False, is_writable=True),
    ]
    return Instruction(ALT_PROGRAM_ID, struct.pack("<I", CLOSE_LOOKUP_TABLE), accounts)


def parse_lookup_table(address: Pubkey, data: bytes) -> Optional[LookupTableState]:
    """
    Decode lookup table account data.

    Args:
        address: Table address
        data: Raw account data

    Returns:
        Parsed state, or None if the data is not an initialized table
    """
    if len(data) < LOOKUP_TABLE_META_SIZE:
        return None

    state_tag, deactivation_slot, last_extended_slot = struct.unpack_from("<IQQ", data, 0)
    if state_tag != 1:
        return None

    has_authority = data[21] == 1
    authority = Pubkey.from_bytes(data[22:54]) if has_authority else None

    addr_data = data[LOOKUP_TABLE_META_SIZE:]
    addresses: List[Pubkey] = [
        Pubkey.from_bytes(addr_data[i:i + 32])
        for i in range(0, len(addr_data) - len(addr_data) % 32, 32)
    ]

    return LookupTableState(
        address=address,
        addresses=addresses,
        deactivation_slot=None if deactivation_slot == ACTIVE_DEACTIVATION_SLOT else deactivation_slot,
        last_extended_slot=last_extended_slot,
        authority=authority,
    )
