#!/usr/bin/env python3
"""
Check the balance of the solsplit payer and any pending lookup table.
"""

import argparse
import asyncio

from solsplit.config import NetworkType, SolsplitConfig
from solsplit.core.split import format_sol
from solsplit.node.rpc import SolanaRpcAdapter
from solsplit.state.alt_store import AltRecordStore
from solsplit.state.database import Database
from solsplit.tx.signer import KeypairWallet


async def check_balance(config: SolsplitConfig):
    """Check balance at the payer address."""
    ledger = SolanaRpcAdapter(config)
    await ledger.connect()

    db = Database(config)
    await db.connect()

    try:
        wallet = KeypairWallet.from_config(ledger, config)
        payer = wallet.pubkey
        print(f"\nPayer: {payer}")

        balance = await ledger.get_balance(payer)
        print(f"Balance: {format_sol(balance)} SOL ({balance:,} lamports)")

        stored = await AltRecordStore(db).load()
        if stored is None:
            print("\nNo pending lookup table.")
        elif not stored.belongs_to(payer):
            print(f"\nStored lookup table {stored.address} belongs to another wallet.")
        else:
            print(f"\nPending lookup table: {stored.address}")
            print(f"   Deactivation slot: {stored.deactivation_slot}")

        return {
            "pubkey": str(payer),
            "lamports": balance,
        }

    finally:
        await db.disconnect()
        await ledger.disconnect()


def main():
    parser = argparse.ArgumentParser(description="Check solsplit payer balance")
    parser.add_argument(
        "--network", "-n",
        choices=[n.value for n in NetworkType],
        default=NetworkType.DEVNET.value,
        help="Solana cluster (default: devnet)"
    )
    parser.add_argument(
        "--keypair", "-k",
        default="./keys/payer.json",
        help="Keypair file (default: ./keys/payer.json)"
    )

    args = parser.parse_args()
    config = SolsplitConfig(network=NetworkType(args.network), keypair_path=args.keypair)
    asyncio.run(check_balance(config))


if __name__ == "__main__":
    main()
