"""
Single-slot store for the pending lookup table record.

Holds at most one record, written after a deactivation confirms and cleared
when the table is closed or found to belong to another wallet.
"""

import json
import math
from dataclasses import dataclass
from typing import Optional

import structlog
from solders.pubkey import Pubkey

from solsplit.core.alt import AltRecord, LifecycleState
from solsplit.state.database import KeyValueStore

logger = structlog.get_logger(__name__)

STORAGE_KEY = "solsplit:lastAlt"


@dataclass
class StoredAlt:
    """A persisted record as read back, before it is matched to a wallet."""

    address: str
    wallet: Optional[str] = None
    deactivation_slot: Optional[int] = None

    def belongs_to(self, wallet: Pubkey) -> bool:
        return self.wallet == str(wallet)

    def to_record(self) -> AltRecord:
        """Rebuild the lifecycle record; the owner must be known."""
        if self.wallet is None:
            raise ValueError("Stored record has no owning wallet")
        return AltRecord(
            address=Pubkey.from_string(self.address),
            wallet=Pubkey.from_string(self.wallet),
            deactivation_slot=self.deactivation_slot,
            state=LifecycleState.COOLING_DOWN,
        )


def _parse_slot(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        slot = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(slot):
        return None
    return int(slot)


class AltRecordStore:
    """Reads, writes and clears the pending lookup table record."""

    def __init__(self, store: KeyValueStore, key: str = STORAGE_KEY):
        self.store = store
        self.key = key

    async def load(self) -> Optional[StoredAlt]:
        """
        Read the stored record.

        Malformed data is treated as no record.
        """
        raw = await self.store.read(self.key)
        if not raw:
            return None

        try:
            obj = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("stored_alt_unreadable", key=self.key)
            return None

        if not isinstance(obj, dict) or not obj.get("address"):
            return None

        wallet = obj.get("walletPubkey")
        return StoredAlt(
            address=str(obj["address"]),
            wallet=str(wallet) if wallet else None,
            deactivation_slot=_parse_slot(obj.get("deactivationSlot")),
        )

    async def save(self, record: AltRecord) -> None:
        await self.store.write(self.key, json.dumps(record.to_storage()))
        logger.debug(
            "alt_record_saved",
            address=str(record.address),
            deactivation_slot=record.deactivation_slot,
        )

    async def clear(self) -> None:
        await self.store.clear(self.key)
        logger.debug("alt_record_cleared", key=self.key)
