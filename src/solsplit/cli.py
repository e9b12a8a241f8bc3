"""
Command-line interface for solsplit.

Provides commands for running a split payment and managing the temporary
lookup table it leaves behind.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import structlog
from solders.message import MessageV0

from solsplit import __version__
from solsplit.config import NetworkType, SolsplitConfig, set_config
from solsplit.core.addresses import merge_addresses, parse_addresses
from solsplit.core.alt import LifecycleState
from solsplit.core.lifecycle import (
    AltLifecycleManager,
    CooldownStatus,
    EventKind,
    InvalidStateError,
    ProgressEvent,
    StaleRecordError,
)
from solsplit.core.split import SplitMode, SplitRequest, auto_fill_percentages, format_sol, to_lamports
from solsplit.exceptions import SolsplitError
from solsplit.node.rpc import SolanaRpcAdapter
from solsplit.state.alt_store import AltRecordStore
from solsplit.state.database import Database
from solsplit.tx.fees import PreflightEstimationError
from solsplit.tx.signer import KeypairWallet
from solsplit.tx.submitter import SubmissionFailure


def setup_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if json_format
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    import logging
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper()),
        stream=sys.stderr,
    )


def _connection_options() -> argparse.ArgumentParser:
    """Options shared by every command that talks to the network."""
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument(
        "--network",
        choices=[n.value for n in NetworkType],
        default=None,
        help="Solana cluster (default: from SOLSPLIT_NETWORK, else devnet)",
    )
    parent.add_argument(
        "--rpc-url",
        help="Custom JSON-RPC endpoint",
    )
    parent.add_argument(
        "--keypair",
        help="Path to payer keypair file (Solana CLI JSON)",
    )
    parent.add_argument(
        "--database-url",
        help="Database for the pending lookup table record",
    )
    parent.add_argument(
        "--yes",
        action="store_true",
        help="Sign every step without asking",
    )
    parent.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Logging level (default: WARNING)",
    )
    parent.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs in JSON format",
    )
    return parent


def _recipient_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "amount",
        help="Total amount to split, in SOL",
    )
    parser.add_argument(
        "--to",
        nargs="+",
        default=[],
        metavar="ADDRESS",
        help="Recipient addresses",
    )
    parser.add_argument(
        "--file",
        help="Text or CSV file to import recipient addresses from",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in SplitMode],
        default=SplitMode.EQUAL.value,
        help="Split mode (default: equal)",
    )
    parser.add_argument(
        "--percent",
        nargs="+",
        default=None,
        metavar="PCT",
        help="Per-recipient percentages for custom mode; '-' leaves a blank to auto-fill",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="solsplit",
        description="Split a SOL payment between many recipients",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")
    common = _connection_options()

    # Split command
    split_parser = subparsers.add_parser("split", parents=[common], help="Run a split payment")
    _recipient_options(split_parser)
    split_parser.add_argument(
        "--wait-close",
        action="store_true",
        help="Wait out the cooldown and close the lookup table",
    )

    # Estimate command
    estimate_parser = subparsers.add_parser("estimate", parents=[common], help="Estimate fees of a split")
    _recipient_options(estimate_parser)

    # Lookup table commands
    subparsers.add_parser("status", parents=[common], help="Show the pending lookup table")
    subparsers.add_parser("close", parents=[common], help="Close the pending lookup table")
    monitor_parser = subparsers.add_parser("monitor", parents=[common], help="Watch the cooldown")
    monitor_parser.add_argument(
        "--close",
        action="store_true",
        help="Close the table as soon as it becomes closable",
    )

    # Autofill command (offline)
    autofill_parser = subparsers.add_parser("autofill", help="Fill blank percentages up to 100")
    autofill_parser.add_argument(
        "percent",
        nargs="+",
        metavar="PCT",
        help="Percentages; '-' marks a blank",
    )

    return parser


def build_config(args: argparse.Namespace) -> SolsplitConfig:
    """Configuration from environment, overridden by command-line options."""
    overrides = {
        "network": args.network,
        "rpc_endpoint": args.rpc_url,
        "keypair_path": args.keypair,
        "database_url": args.database_url,
        "log_level": args.log_level,
        "log_json": args.log_json,
    }
    config = SolsplitConfig(**{k: v for k, v in overrides.items() if v is not None})
    set_config(config)
    return config


def _blank(value: str) -> Optional[str]:
    return None if value in ("-", "_", "") else value


def build_request(args: argparse.Namespace) -> SplitRequest:
    """Collect recipients and percentages from the command line."""
    # Typed addresses are validated later, imported ones are filtered here
    recipients: List[str] = list(args.to)
    if args.file:
        imported = parse_addresses(Path(args.file).read_text())
        print(imported.summary())
        recipients = merge_addresses(recipients, imported.valid)

    percentages = None
    if args.percent:
        percentages = auto_fill_percentages([_blank(p) for p in args.percent])

    return SplitRequest(
        total_lamports=to_lamports(args.amount),
        recipients=recipients,
        mode=SplitMode(args.mode),
        percentages=percentages,
    )


def _prompt(message: MessageV0) -> bool:
    answer = input(f"  Sign transaction ({len(message.instructions)} instruction(s))? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


async def open_manager(
    args: argparse.Namespace,
    config: SolsplitConfig,
) -> Tuple[AltLifecycleManager, SolanaRpcAdapter, Database]:
    ledger = SolanaRpcAdapter(config)
    await ledger.connect()

    db = Database(config)
    await db.connect()

    wallet = KeypairWallet.from_config(
        ledger,
        config,
        approve=None if args.yes else _prompt,
    )
    manager = AltLifecycleManager(
        ledger,
        wallet,
        AltRecordStore(db),
        config=config,
        auto_monitor=False,
    )
    return manager, ledger, db


async def close_manager(manager: AltLifecycleManager, ledger: SolanaRpcAdapter, db: Database) -> None:
    await manager.shutdown()
    await ledger.disconnect()
    await db.disconnect()


def print_event(event: ProgressEvent) -> None:
    if event.kind == EventKind.STATE_CHANGED:
        print(f"[{event.state.value}]")
    elif event.kind == EventKind.STEP_PENDING:
        print(f"  {event.step}")
        if event.message:
            print(f"    {event.message}")
    elif event.kind == EventKind.STEP_CONFIRMED:
        print(f"  confirmed: {event.signature}")
    elif event.kind == EventKind.PREFLIGHT_WARNING:
        print(f"  warning: {event.message}")
    elif event.kind == EventKind.ABORTED:
        if event.declined:
            print("  Signature declined. Nothing further was sent.")
        else:
            print(f"  Aborted: {event.message}")


def print_cooldown(status: CooldownStatus) -> None:
    if not status.exists:
        print("Lookup table no longer exists.")
    elif status.closable:
        print("Cooldown complete. The lookup table can be closed.")
    else:
        print(f"Cooldown: {status.remaining_slots} slot(s) remaining")


async def _restore(manager: AltLifecycleManager) -> bool:
    try:
        record = await manager.restore(manager.wallet.pubkey)
    except StaleRecordError as e:
        print(str(e))
        return False
    if record is None:
        print("No pending lookup table.")
        return False
    return True


async def _close(manager: AltLifecycleManager) -> int:
    try:
        signature = await manager.close_alt()
    except InvalidStateError as e:
        print(str(e))
        return 1
    except SubmissionFailure as e:
        print(f"Close failed: {e}")
        return 1
    if signature is None:
        print("Close declined.")
        return 1
    print(f"Lookup table closed: {signature}")
    return 0


async def _wait_closable(manager: AltLifecycleManager) -> bool:
    last = None
    async for status in manager.monitor_alt():
        if status.remaining_slots != last or status.closable or not status.exists:
            print_cooldown(status)
            last = status.remaining_slots
        if not status.exists:
            return False
        if status.closable:
            return True
    return False


async def run_split(args: argparse.Namespace) -> int:
    """Run a split payment."""
    config = build_config(args)
    request = build_request(args)
    manager, ledger, db = await open_manager(args, config)

    try:
        if await _restore(manager):
            print("A previous lookup table is still pending. Close it first.")
            return 1

        allocation = manager.compute_split(request)
        print(f"solsplit v{__version__} on {config.network.value}")
        print(f"Sending {format_sol(allocation.total)} SOL to {len(allocation)} recipient(s)")
        print()

        final: Optional[ProgressEvent] = None
        async for event in manager.run_split(request):
            print_event(event)
            final = event

        if final is None or final.kind == EventKind.ABORTED:
            if manager.orphaned_table is not None:
                print(f"  Lookup table {manager.orphaned_table} was left active.")
            return 1

        if args.wait_close and await _wait_closable(manager):
            return await _close(manager)
        return 0
    finally:
        await close_manager(manager, ledger, db)


async def estimate_fees(args: argparse.Namespace) -> int:
    """Estimate what a split would cost."""
    config = build_config(args)
    request = build_request(args)
    manager, ledger, db = await open_manager(args, config)

    try:
        allocation = manager.compute_split(request)
        try:
            breakdown = await manager.estimate_total_fees(request)
        except PreflightEstimationError as e:
            print(f"Fee estimate unavailable: {e}")
            return 1

        print("Allocation:")
        for recipient, amount in allocation.items():
            print(f"  {recipient}  {format_sol(amount)} SOL")
        print()
        print("Estimated fees:")
        print(f"  create      {format_sol(breakdown.create)} SOL")
        for index, fee in enumerate(breakdown.extend, start=1):
            print(f"  extend {index:<4} {format_sol(fee)} SOL")
        for index, fee in enumerate(breakdown.transfer, start=1):
            print(f"  transfer {index:<2} {format_sol(fee)} SOL")
        print(f"  deactivate  {format_sol(breakdown.deactivate)} SOL")
        print(f"  total       {format_sol(breakdown.total)} SOL")
        print(f"Required: {format_sol(allocation.total + breakdown.total)} SOL")
        return 0
    finally:
        await close_manager(manager, ledger, db)


async def show_status(args: argparse.Namespace) -> int:
    """Show the pending lookup table and its cooldown."""
    config = build_config(args)
    manager, ledger, db = await open_manager(args, config)

    try:
        if not await _restore(manager):
            return 0
        record = manager.record
        print(f"Lookup table: {record.address}")
        print(f"  Wallet:            {record.wallet}")
        print(f"  Deactivation slot: {record.deactivation_slot if record.deactivation_slot is not None else 'unknown'}")
        print(f"  State:             {manager.state.value}")
        if manager.remaining_slots is not None:
            print(f"  Remaining slots:   {manager.remaining_slots}")
        return 0
    finally:
        await close_manager(manager, ledger, db)


async def close_table(args: argparse.Namespace) -> int:
    """Close the pending lookup table."""
    config = build_config(args)
    manager, ledger, db = await open_manager(args, config)

    try:
        if not await _restore(manager):
            return 1
        if manager.state != LifecycleState.CLOSABLE:
            print(f"Lookup table is still cooling down ({manager.remaining_slots} slot(s) remaining).")
            return 1
        return await _close(manager)
    finally:
        await close_manager(manager, ledger, db)


async def monitor_table(args: argparse.Namespace) -> int:
    """Watch the cooldown of the pending lookup table."""
    config = build_config(args)
    manager, ledger, db = await open_manager(args, config)

    try:
        if not await _restore(manager):
            return 0
        if not await _wait_closable(manager):
            return 0
        if args.close:
            return await _close(manager)
        return 0
    finally:
        await close_manager(manager, ledger, db)


def autofill(args: argparse.Namespace) -> int:
    """Print percentages with the blanks filled."""
    filled = auto_fill_percentages([_blank(p) for p in args.percent])
    print(" ".join(p or "-" for p in filled))
    return 0


def main() -> None:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Setup logging
    log_level = getattr(args, "log_level", "WARNING")
    log_json = getattr(args, "log_json", False)
    setup_logging(log_level, log_json)

    commands = {
        "split": run_split,
        "estimate": estimate_fees,
        "status": show_status,
        "close": close_table,
        "monitor": monitor_table,
    }

    try:
        if args.command == "autofill":
            code = autofill(args)
        else:
            code = asyncio.run(commands[args.command](args))
    except SolsplitError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)

    sys.exit(code)


if __name__ == "__main__":
    main()
