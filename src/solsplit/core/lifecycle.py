"""
Lookup table lifecycle manager.

Drives a split payment through a temporary address lookup table:
create -> extend -> transfer -> deactivate -> cooldown -> close.
Persists the deactivated table so that closure survives a restart.
"""

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional, Sequence

import structlog
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from solsplit.config import SolsplitConfig, get_config
from solsplit.core.alt import AltRecord, LifecycleState, PENDING_CLOSE_STATES, cooldown_remaining
from solsplit.core.chunks import chunked
from solsplit.core.split import (
    Allocation,
    SplitRequest,
    compute_split,
    format_sol,
    included_indices,
    validate_recipients,
)
from solsplit.exceptions import SolsplitError
from solsplit.node.alt_program import (
    close_lookup_table,
    create_lookup_table,
    deactivate_lookup_table,
    extend_lookup_table,
)
from solsplit.node.interface import ConfirmationDepth, LedgerInterface, NodeConnectionError
from solsplit.state.alt_store import AltRecordStore
from solsplit.state.database import MemoryStore
from solsplit.tx.builder import build_transfer_instructions, lookup_addresses
from solsplit.tx.fees import (
    BalanceGuard,
    FeeBreakdown,
    FeeEstimator,
    InsufficientFundsError,
    PreflightEstimationError,
)
from solsplit.tx.signer import WalletSigner
from solsplit.tx.submitter import SubmissionFailure, TransactionSubmitter, UserDeclined

logger = structlog.get_logger(__name__)


class StaleRecordError(SolsplitError):
    """The persisted lookup table belongs to another wallet; it has been cleared."""

    def __init__(self, address: str, wallet: Optional[str]):
        super().__init__("Saved ALT belongs to another wallet. Storage cleared.")
        self.address = address
        self.wallet = wallet


class InvalidStateError(SolsplitError):
    """An operation was requested in a state that does not allow it."""
    pass


class EventKind(str, Enum):
    """Kinds of progress events emitted during a flow."""
    STATE_CHANGED = "state_changed"
    STEP_PENDING = "step_pending"
    STEP_CONFIRMED = "step_confirmed"
    PREFLIGHT_WARNING = "preflight_warning"
    ABORTED = "aborted"


@dataclass
class ProgressEvent:
    """One notification from the lifecycle manager."""

    kind: EventKind
    state: LifecycleState
    message: Optional[str] = None
    step: Optional[str] = None
    signature: Optional[str] = None
    shortfall: Optional[int] = None
    declined: bool = False


@dataclass
class CooldownStatus:
    """One reading of the cooldown monitor."""

    remaining_slots: int
    closable: bool
    current_slot: Optional[int] = None
    deactivation_slot: Optional[int] = None
    exists: bool = True


@dataclass
class SplitPlan:
    """Allocation and chunk plan computed once before any chain interaction."""

    allocation: Allocation
    lookup_keys: List[Pubkey] = field(default_factory=list)
    extend_chunks: List[List[Pubkey]] = field(default_factory=list)
    transfer_chunks: List[List[Instruction]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.allocation.total


class AltLifecycleManager:
    """
    Orchestrates a split payment through a temporary lookup table.

    Coordinates all flow components:
    - Split calculation and chunk planning
    - Fee and balance preflight before each submitting step
    - Step submission through the wallet
    - Persistence of the deactivated table
    - The cooldown monitor task

    Usage:
        ```python
        manager = AltLifecycleManager(ledger, wallet, store)
        await manager.restore(wallet.pubkey)
        async for event in manager.run_split(request):
            print(event.kind, event.state)
        ...
        await manager.close_alt()
        await manager.shutdown()
        ```
    """

    def __init__(
        self,
        ledger: LedgerInterface,
        wallet: WalletSigner,
        store: Optional[AltRecordStore] = None,
        config: Optional[SolsplitConfig] = None,
        auto_monitor: bool = True,
    ):
        """
        Initialize the manager.

        Args:
            ledger: Network access
            wallet: Signing authority, also the payer and table authority
            store: Pending record store (in-memory if not provided)
            config: solsplit configuration
            auto_monitor: Start the cooldown monitor on entering the cooldown
        """
        self.config = config or get_config()
        self.ledger = ledger
        self.wallet = wallet
        self.store = store or AltRecordStore(MemoryStore())
        self.auto_monitor = auto_monitor

        self.submitter = TransactionSubmitter(ledger, wallet)
        self.fees = FeeEstimator(ledger, self.config)
        self.guard = BalanceGuard(ledger)

        # State
        self.state = LifecycleState.IDLE
        self.record: Optional[AltRecord] = None
        self.orphaned_table: Optional[Pubkey] = None
        self.remaining_slots: Optional[int] = None
        self.closable = False

        self._monitor_task: Optional[asyncio.Task] = None

        # Callbacks
        self._event_listeners: List[Callable[[ProgressEvent], None]] = []
        self._cooldown_listeners: List[Callable[[CooldownStatus], None]] = []

    @property
    def payer(self) -> Pubkey:
        return self.wallet.pubkey

    # Callback registration

    def on_event(self, callback: Callable[[ProgressEvent], None]) -> None:
        """Register callback for progress events."""
        self._event_listeners.append(callback)

    def on_cooldown(self, callback: Callable[[CooldownStatus], None]) -> None:
        """Register callback for cooldown monitor readings."""
        self._cooldown_listeners.append(callback)

    def _emit(self, event: ProgressEvent) -> ProgressEvent:
        for callback in self._event_listeners:
            callback(event)
        return event

    def _enter(self, state: LifecycleState) -> ProgressEvent:
        old_state = self.state
        self.state = state
        if self.record is not None:
            self.record.transition(state)
        logger.debug("lifecycle_state_changed", old_state=old_state.value, new_state=state.value)
        return self._emit(ProgressEvent(EventKind.STATE_CHANGED, state))

    def _abort(
        self,
        message: Optional[str],
        step: Optional[str] = None,
        shortfall: Optional[int] = None,
        declined: bool = False,
    ) -> ProgressEvent:
        """Report an aborted flow and fall back to the last durable state."""
        if declined:
            logger.info("split_declined", state=self.state.value, step=step)
        else:
            logger.error("split_aborted", state=self.state.value, step=step, error=message)

        if self.orphaned_table is not None:
            logger.warning(
                "alt_left_active",
                address=str(self.orphaned_table),
                hint="table was created but never deactivated",
            )

        event = self._emit(ProgressEvent(
            EventKind.ABORTED,
            LifecycleState.ABORTED,
            message=message,
            step=step,
            shortfall=shortfall,
            declined=declined,
        ))

        # Nothing before deactivation is durable enough to resume from
        self.record = None
        self.state = LifecycleState.IDLE
        return event

    def _pending(self, title: str, description: Optional[str]) -> ProgressEvent:
        return self._emit(ProgressEvent(
            EventKind.STEP_PENDING,
            self.state,
            message=description,
            step=title,
        ))

    def _confirmed(self, title: str, signature: str) -> ProgressEvent:
        return self._emit(ProgressEvent(
            EventKind.STEP_CONFIRMED,
            self.state,
            step=title,
            signature=signature,
        ))

    # Planning and preflight

    def compute_split(self, request: SplitRequest) -> Allocation:
        """Validate the recipients against the payer and compute the allocation."""
        recipients = validate_recipients(request.recipients, str(self.payer))
        percentages = request.percentages
        # Percentages follow their rows when blank rows are dropped
        if percentages is not None and len(percentages) == len(request.recipients):
            percentages = [percentages[i] for i in included_indices(request.recipients)]
        return compute_split(replace(request, recipients=recipients, percentages=percentages))

    def plan(self, request: SplitRequest) -> SplitPlan:
        """
        Compute the allocation and chunk plan for a request.

        Raises:
            ValidationError: If the request is malformed
        """
        allocation = self.compute_split(request)
        keys = lookup_addresses(self.payer, allocation.recipients)
        transfers = build_transfer_instructions(self.payer, allocation)

        return SplitPlan(
            allocation=allocation,
            lookup_keys=keys,
            extend_chunks=chunked(keys, self.config.extend_chunk_size),
            transfer_chunks=chunked(transfers, self.config.transfer_chunk_size),
        )

    async def _estimate_plan(self, plan: SplitPlan) -> FeeBreakdown:
        try:
            slot = await self.ledger.get_slot()
        except NodeConnectionError as e:
            raise PreflightEstimationError(f"Cannot preview lookup table address: {e}")

        # Preview only; nothing is submitted
        create_ix, preview = create_lookup_table(self.payer, self.payer, slot)

        breakdown = FeeBreakdown()
        breakdown.create = await self.fees.estimate(self.payer, [create_ix])
        for chunk in plan.extend_chunks:
            ix = extend_lookup_table(preview, self.payer, self.payer, chunk)
            breakdown.extend.append(await self.fees.estimate(self.payer, [ix]))
        for chunk in plan.transfer_chunks:
            breakdown.transfer.append(await self.fees.estimate(self.payer, chunk))
        breakdown.deactivate = await self.fees.estimate(
            self.payer, [deactivate_lookup_table(preview, self.payer)]
        )

        logger.info("fees_estimated", total=breakdown.total, steps=len(breakdown.extend) + len(breakdown.transfer) + 2)
        return breakdown

    async def estimate_total_fees(self, request: SplitRequest) -> FeeBreakdown:
        """
        Estimate the fees of every step of a split flow.

        Raises:
            ValidationError: If the request is malformed
            PreflightEstimationError: If no preview table address can be derived
        """
        return await self._estimate_plan(self.plan(request))

    async def _estimate_remaining(
        self,
        plan: SplitPlan,
        table: Pubkey,
        lookups: Optional[Sequence[AddressLookupTableAccount]],
    ) -> int:
        fee = 0
        for chunk in plan.transfer_chunks:
            fee += await self.fees.estimate(self.payer, chunk, lookups)
        fee += await self.fees.estimate(self.payer, [deactivate_lookup_table(table, self.payer)], lookups)
        return fee

    # The split flow

    async def run_split(self, request: SplitRequest) -> AsyncIterator[ProgressEvent]:
        """
        Run the full split flow, yielding progress events.

        The stream ends with a COOLING_DOWN state event on success or an
        ABORTED event otherwise. A declined signature ends the stream with an
        ABORTED event flagged ``declined`` and no message. If the stream is
        closed or cancelled before the cooldown, the manager drops back to
        IDLE.

        Raises:
            ValidationError: Before any network call if the request is malformed
            InvalidStateError: If a flow or pending table is already active
        """
        if self.state != LifecycleState.IDLE:
            raise InvalidStateError(
                f"Cannot start a split while {self.state.value}; close the pending ALT first"
            )

        plan = self.plan(request)
        flow = self._split_flow(plan)
        try:
            async for event in flow:
                yield event
        finally:
            await flow.aclose()
            if self.state != LifecycleState.IDLE and self.state not in PENDING_CLOSE_STATES:
                self._interrupted()

    def _interrupted(self) -> None:
        """Fall back to IDLE after the flow was torn down mid-step."""
        logger.warning(
            "split_interrupted",
            state=self.state.value,
            orphaned_table=str(self.orphaned_table) if self.orphaned_table else None,
        )
        self.record = None
        self.state = LifecycleState.IDLE

    async def _split_flow(self, plan: SplitPlan) -> AsyncIterator[ProgressEvent]:
        payer = self.payer
        total = plan.total
        self.orphaned_table = None

        logger.info(
            "split_started",
            total=total,
            recipients=len(plan.allocation),
            extend_chunks=len(plan.extend_chunks),
            transfer_chunks=len(plan.transfer_chunks),
        )

        # Aggregate preflight across every planned step
        try:
            breakdown = await self._estimate_plan(plan)
            await self.guard.ensure(payer, total, breakdown.total, "for full flow")
        except InsufficientFundsError as e:
            yield self._abort(str(e), shortfall=e.shortfall)
            return
        except PreflightEstimationError as e:
            logger.warning("preflight_estimation_failed", error=str(e))
            yield self._emit(ProgressEvent(EventKind.PREFLIGHT_WARNING, self.state, message=str(e)))

        step: Optional[str] = None
        try:
            # Create
            yield self._enter(LifecycleState.CREATING)
            slot = await self.ledger.get_slot()
            create_ix, table = create_lookup_table(payer, payer, slot)

            step = "Confirm transaction to create ALT"
            description = "A temporary ALT will be created to optimize the send."
            yield self._pending(step, description)
            signature = await self.submitter.submit([create_ix], title=step, description=description)
            self.record = AltRecord(address=table, wallet=payer, state=LifecycleState.CREATING)
            self.orphaned_table = table
            logger.info("alt_created", address=str(table), signature=signature)
            yield self._confirmed(step, signature)

            # Extend, one chunk at a time
            yield self._enter(LifecycleState.EXTENDING)
            chunk_total = len(plan.extend_chunks)
            for index, chunk in enumerate(plan.extend_chunks, start=1):
                extend_ix = extend_lookup_table(table, payer, payer, chunk)

                chunk_fee = await self.fees.estimate(payer, [extend_ix])
                await self.guard.ensure(payer, 0, chunk_fee, f"for ALT extension chunk ({index}/{chunk_total})")

                step = f"Confirm transaction to extend ALT ({index}/{chunk_total})"
                description = f"Adding {len(chunk)} addresses to ALT"
                yield self._pending(step, description)
                signature = await self.submitter.submit([extend_ix], title=step, description=description)
                logger.info("extend_chunk_confirmed", chunk=index, of=chunk_total, addresses=len(chunk))
                yield self._confirmed(step, signature)

            # Load the table as lookup context
            step = None
            table_state = await self.ledger.get_lookup_table(table)
            lookups = [table_state.to_account()] if table_state else None
            if table_state is None:
                logger.warning("alt_not_visible_yet", address=str(table))
            yield self._enter(LifecycleState.READY)

            # Preflight over the remaining steps, with the real table
            remaining_fee = await self._estimate_remaining(plan, table, lookups)
            await self.guard.ensure(payer, total, remaining_fee, "for transfer + deactivate")

            # Transfers
            yield self._enter(LifecycleState.TRANSFERRING)
            chunk_total = len(plan.transfer_chunks)
            for index, chunk in enumerate(plan.transfer_chunks, start=1):
                step = f"Confirm transaction to send SOL ({index}/{chunk_total})"
                description = f"Sending to {len(chunk)} recipients"
                yield self._pending(step, description)
                signature = await self.submitter.submit(chunk, lookups, title=step, description=description)
                logger.info("transfer_chunk_confirmed", chunk=index, of=chunk_total, transfers=len(chunk))
                yield self._confirmed(step, signature)

            logger.info(
                "split_sent",
                total_sol=format_sol(total),
                recipients=len(plan.allocation.nonzero()),
                transactions=chunk_total,
            )

            # Deactivate, at the stronger depth so the slot is durable
            yield self._enter(LifecycleState.DEACTIVATING)
            step = "Confirm transaction to deactivate ALT"
            description = "The temporary ALT will be deactivated."
            yield self._pending(step, description)
            signature = await self.submitter.submit(
                [deactivate_lookup_table(table, payer)],
                depth=ConfirmationDepth.FINALIZED,
                title=step,
                description=description,
            )
            yield self._confirmed(step, signature)

        except UserDeclined as e:
            yield self._abort(None, step=e.step, declined=True)
            return
        except InsufficientFundsError as e:
            yield self._abort(str(e), step=step, shortfall=e.shortfall)
            return
        except (SubmissionFailure, NodeConnectionError) as e:
            yield self._abort(str(e), step=getattr(e, "step", None) or step)
            return

        # Persist so the pending closure survives a restart
        deactivation_slot = await self._read_deactivation_slot(table)
        self.record.mark_deactivated(deactivation_slot)
        self.orphaned_table = None
        await self._persist(self.record)
        logger.info("alt_deactivated", address=str(table), deactivation_slot=deactivation_slot)

        self.remaining_slots = self.config.cooldown_slots
        self.closable = False
        event = self._enter(LifecycleState.COOLING_DOWN)
        if self.auto_monitor:
            self.start_monitor()
        yield event

    async def _read_deactivation_slot(self, table: Pubkey) -> Optional[int]:
        try:
            state = await self.ledger.get_lookup_table(table)
        except NodeConnectionError as e:
            logger.warning("deactivation_slot_unavailable", address=str(table), error=str(e))
            return None
        return state.deactivation_slot if state else None

    async def _persist(self, record: AltRecord) -> None:
        try:
            await self.store.save(record)
        except Exception as e:
            # The monitor re-persists on its next reading
            logger.error("alt_record_persist_failed", address=str(record.address), error=str(e))

    # Cooldown monitoring

    async def check_cooldown(self, record: AltRecord) -> CooldownStatus:
        """Read the table and the tip slot once."""
        table = await self.ledger.get_lookup_table(record.address)
        if table is None:
            return CooldownStatus(remaining_slots=0, closable=False, exists=False)

        current_slot = await self.ledger.get_slot()
        deactivation_slot = table.deactivation_slot
        remaining = cooldown_remaining(current_slot, deactivation_slot, self.config.cooldown_slots)

        return CooldownStatus(
            remaining_slots=remaining,
            closable=deactivation_slot is not None and remaining == 0,
            current_slot=current_slot,
            deactivation_slot=deactivation_slot,
        )

    async def _apply_status(self, record: AltRecord, status: CooldownStatus) -> None:
        """Fold a monitor reading into the manager state."""
        if not status.exists:
            logger.info("alt_no_longer_exists", address=str(record.address))
            if record is self.record:
                await self._reset()
            else:
                stored = await self.store.load()
                if stored is not None and stored.address == str(record.address):
                    await self.store.clear()
            return

        if status.deactivation_slot is not None and status.deactivation_slot != record.deactivation_slot:
            record.deactivation_slot = status.deactivation_slot
            await self._persist(record)

        self.remaining_slots = status.remaining_slots
        self.closable = status.closable

        if record is self.record:
            target = LifecycleState.CLOSABLE if status.closable else LifecycleState.COOLING_DOWN
            if self.state in PENDING_CLOSE_STATES and self.state != target:
                self._enter(target)

        for callback in self._cooldown_listeners:
            callback(status)

    async def monitor_alt(self, record: Optional[AltRecord] = None) -> AsyncIterator[CooldownStatus]:
        """
        Poll the cooldown of a deactivated table, yielding each reading.

        Runs until cancelled or until the table no longer exists on-chain,
        in which case the manager resets to IDLE and the stored record is
        cleared. Query failures mark the table not closable and polling
        continues.
        """
        record = record or self.record
        if record is None:
            raise InvalidStateError("No lookup table to monitor")

        while True:
            try:
                status = await self.check_cooldown(record)
            except NodeConnectionError as e:
                logger.warning("cooldown_check_failed", address=str(record.address), error=str(e))
                self.closable = False
                if self.state == LifecycleState.CLOSABLE and record is self.record:
                    self._enter(LifecycleState.COOLING_DOWN)
            else:
                await self._apply_status(record, status)
                yield status
                if not status.exists:
                    return

            await asyncio.sleep(self.config.monitor_interval_seconds)

    async def _run_monitor(self) -> None:
        try:
            async for status in self.monitor_alt():
                logger.debug(
                    "cooldown_status",
                    remaining_slots=status.remaining_slots,
                    closable=status.closable,
                )
        except asyncio.CancelledError:
            logger.debug("cooldown_monitor_cancelled")
            raise
        except Exception:
            # The task ends here; a later start_monitor() begins a fresh one
            logger.exception(
                "cooldown_monitor_failed",
                address=str(self.record.address) if self.record else None,
            )

    def start_monitor(self) -> None:
        """Start the cooldown monitor task if it is not already running."""
        if self.record is None:
            raise InvalidStateError("No lookup table to monitor")
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.create_task(self._run_monitor())
        logger.info("cooldown_monitor_started", address=str(self.record.address))

    async def stop_monitor(self) -> None:
        """Cancel the cooldown monitor task and wait for it to finish."""
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        if task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            # Already reported by the task; stopping must not fail on it
            logger.warning("cooldown_monitor_ended_with_error", error=str(e))
        logger.info("cooldown_monitor_stopped")

    @property
    def monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    async def _reset(self) -> None:
        """Forget the pending table and return to IDLE."""
        await self.store.clear()
        self.record = None
        self.remaining_slots = None
        self.closable = False
        if self.state != LifecycleState.IDLE:
            self._enter(LifecycleState.IDLE)
        # Called from inside the monitor when the table disappears
        await self.stop_monitor()

    # Closing

    async def close_alt(self, record: Optional[AltRecord] = None) -> Optional[str]:
        """
        Close a table whose cooldown has elapsed and reclaim its rent.

        Args:
            record: Table to close; defaults to the manager's pending table

        Returns:
            Signature of the close transaction, or None if the user declined

        Raises:
            InvalidStateError: If there is no closable table
            SubmissionFailure: If the close transaction fails
        """
        record = record or self.record
        if record is None:
            raise InvalidStateError("No lookup table to close")
        if record.wallet != self.payer:
            raise InvalidStateError("The lookup table belongs to another wallet")

        if record is self.record:
            closable = self.state == LifecycleState.CLOSABLE
        else:
            closable = (await self.check_cooldown(record)).closable
        if not closable:
            raise InvalidStateError("ALT cannot be closed yet. Please try again later.")

        step = "Confirm transaction to close ALT"
        description = "Close ALT and reclaim rent"
        # The monitor would see the table vanish mid-close
        was_monitoring = self.monitoring
        await self.stop_monitor()

        self._pending(step, description)
        try:
            signature = await self.submitter.submit(
                [close_lookup_table(record.address, self.payer, self.payer)],
                depth=ConfirmationDepth.FINALIZED,
                title=step,
                description=description,
            )
        except UserDeclined:
            logger.info("alt_close_declined", address=str(record.address))
            if was_monitoring:
                self.start_monitor()
            return None
        except SubmissionFailure:
            if was_monitoring:
                self.start_monitor()
            raise

        self._confirmed(step, signature)
        logger.info("alt_closed", address=str(record.address), signature=signature)

        await self.store.clear()
        if record is not self.record:
            record.transition(LifecycleState.CLOSED)
        else:
            self._enter(LifecycleState.CLOSED)
            self.record = None
            self.remaining_slots = None
            self.closable = False
            self._enter(LifecycleState.IDLE)

        return signature

    # Startup and teardown

    async def restore(self, wallet: Optional[Pubkey]) -> Optional[AltRecord]:
        """
        Rehydrate a pending table for the connected wallet.

        Args:
            wallet: Currently connected wallet, or None if disconnected

        Returns:
            The restored record, or None if there is nothing to resume

        Raises:
            StaleRecordError: The stored record belonged to another wallet and was cleared
        """
        if wallet is None:
            await self.stop_monitor()
            self.record = None
            self.remaining_slots = None
            self.closable = False
            if self.state in PENDING_CLOSE_STATES:
                self._enter(LifecycleState.IDLE)
            return None

        stored = await self.store.load()
        if stored is None:
            return None

        if not stored.belongs_to(wallet):
            await self.store.clear()
            await self.stop_monitor()
            self.record = None
            if self.state in PENDING_CLOSE_STATES:
                self._enter(LifecycleState.IDLE)
            logger.info("stale_alt_record_cleared", address=stored.address, owner=stored.wallet)
            raise StaleRecordError(stored.address, stored.wallet)

        try:
            record = stored.to_record()
        except ValueError:
            logger.debug("stored_alt_address_invalid", address=stored.address)
            return None

        self.record = record
        self.remaining_slots = None
        self.closable = False
        self._enter(LifecycleState.COOLING_DOWN)
        logger.info("alt_record_restored", address=stored.address, deactivation_slot=stored.deactivation_slot)

        try:
            await self._apply_status(record, await self.check_cooldown(record))
        except NodeConnectionError as e:
            logger.warning("cooldown_check_failed", address=stored.address, error=str(e))

        if self.record is None:
            return None

        if self.auto_monitor:
            self.start_monitor()
        return self.record

    async def shutdown(self) -> None:
        """Stop background work; the owner of the manager is going away."""
        await self.stop_monitor()
        logger.info("lifecycle_manager_shutdown")
