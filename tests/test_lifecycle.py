"""
Test suite for the lookup table lifecycle.

Drives full split flows against the mock ledger: the happy path, chunking,
preflight aborts, declined signatures, submission failures, the cooldown
monitor, closing, and startup rehydration.
"""

import asyncio
from typing import List

import pytest
from solders.keypair import Keypair

from solsplit.core.alt import AltRecord, LifecycleState
from solsplit.core.lifecycle import (
    AltLifecycleManager,
    CooldownStatus,
    EventKind,
    InvalidStateError,
    ProgressEvent,
    StaleRecordError,
)
from solsplit.core.split import SplitMode, SplitRequest, ValidationError
from solsplit.node.alt_program import (
    CLOSE_LOOKUP_TABLE,
    CREATE_LOOKUP_TABLE,
    DEACTIVATE_LOOKUP_TABLE,
    EXTEND_LOOKUP_TABLE,
)
from solsplit.node.interface import ConfirmationDepth, NodeConnectionError
from solsplit.tx.fees import PreflightEstimationError
from solsplit.tx.signer import KeypairWallet
from solsplit.tx.submitter import SubmissionFailure

from tests.conftest import decline_on, generate_recipients, sol


# ============================================================================
# Helpers
# ============================================================================

async def collect(manager: AltLifecycleManager, request: SplitRequest) -> List[ProgressEvent]:
    return [event async for event in manager.run_split(request)]


def states(events: List[ProgressEvent]) -> List[LifecycleState]:
    return [e.state for e in events if e.kind == EventKind.STATE_CHANGED]


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() holds; the monitor runs on its own task."""
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


@pytest.fixture
def manager(mock_ledger, wallet, alt_store, test_config) -> AltLifecycleManager:
    """Create a lifecycle manager without a background monitor."""
    return AltLifecycleManager(mock_ledger, wallet, alt_store, config=test_config, auto_monitor=False)


def make_manager(mock_ledger, payer_keypair, alt_store, test_config, approve=None, auto_monitor=False):
    wallet = KeypairWallet(mock_ledger, payer_keypair, approve=approve, config=test_config)
    return AltLifecycleManager(mock_ledger, wallet, alt_store, config=test_config, auto_monitor=auto_monitor)


async def seed_pending(alt_store, mock_ledger, wallet_pubkey, deactivation_slot=1000) -> AltRecord:
    """Persist a deactivated table as an earlier run would have left it."""
    record = AltRecord(address=Keypair().pubkey(), wallet=wallet_pubkey)
    record.mark_deactivated(deactivation_slot)
    mock_ledger.add_table(record.address, deactivation_slot)
    await alt_store.save(record)
    return record


# ============================================================================
# Happy Path
# ============================================================================

class TestRunSplit:
    """Tests for a complete split flow."""

    async def test_fifteen_recipients(self, manager, mock_ledger, alt_store):
        recipients = generate_recipients(15)
        request = SplitRequest(sol(1), recipients)

        events = await collect(manager, request)

        assert states(events) == [
            LifecycleState.CREATING,
            LifecycleState.EXTENDING,
            LifecycleState.READY,
            LifecycleState.TRANSFERRING,
            LifecycleState.DEACTIVATING,
            LifecycleState.COOLING_DOWN,
        ]
        assert events[-1].state == LifecycleState.COOLING_DOWN
        assert manager.state == LifecycleState.COOLING_DOWN

        # One create, one extend, one transfer batch, one deactivate
        assert mock_ledger.alt_instruction_tags() == [
            CREATE_LOOKUP_TABLE,
            EXTEND_LOOKUP_TABLE,
            DEACTIVATE_LOOKUP_TABLE,
        ]
        assert len(mock_ledger.sent) == 4
        assert sum(mock_ledger.transferred) == sol(1)
        assert len(mock_ledger.transferred) == 15

    async def test_confirmation_depths(self, manager, mock_ledger):
        await collect(manager, SplitRequest(sol(1), generate_recipients(3)))

        depths = [depth for _, depth in mock_ledger.confirmations]
        assert depths == [
            ConfirmationDepth.CONFIRMED,
            ConfirmationDepth.CONFIRMED,
            ConfirmationDepth.CONFIRMED,
            ConfirmationDepth.FINALIZED,
        ]

    async def test_pending_and_confirmed_steps(self, manager, mock_ledger):
        events = await collect(manager, SplitRequest(sol(1), generate_recipients(3)))

        pending = [e.step for e in events if e.kind == EventKind.STEP_PENDING]
        confirmed = [e for e in events if e.kind == EventKind.STEP_CONFIRMED]

        assert pending == [
            "Confirm transaction to create ALT",
            "Confirm transaction to extend ALT (1/1)",
            "Confirm transaction to send SOL (1/1)",
            "Confirm transaction to deactivate ALT",
        ]
        assert [e.signature for e in confirmed] == [s for s, _ in mock_ledger.confirmations]

    async def test_deactivated_table_persisted(self, manager, mock_ledger, alt_store, wallet):
        await collect(manager, SplitRequest(sol(1), generate_recipients(3)))

        record = manager.record
        table = mock_ledger.tables[record.address]
        stored = await alt_store.load()

        assert table.deactivation_slot is not None
        assert record.deactivation_slot == table.deactivation_slot
        assert stored.address == str(record.address)
        assert stored.wallet == str(wallet.pubkey)
        assert stored.deactivation_slot == table.deactivation_slot
        assert manager.orphaned_table is None

    async def test_table_holds_recipients_in_order(self, manager, mock_ledger):
        recipients = generate_recipients(10)
        await collect(manager, SplitRequest(sol(1), recipients))

        table = mock_ledger.tables[manager.record.address]
        assert [str(a) for a in table.addresses] == recipients

    async def test_chunked_flow(self, manager, mock_ledger):
        """65 recipients: three extensions of 30/30/5, two transfer batches of 55/10."""
        recipients = generate_recipients(65)

        events = await collect(manager, SplitRequest(sol(1), recipients))

        assert events[-1].state == LifecycleState.COOLING_DOWN
        assert mock_ledger.alt_instruction_tags() == [
            CREATE_LOOKUP_TABLE,
            EXTEND_LOOKUP_TABLE,
            EXTEND_LOOKUP_TABLE,
            EXTEND_LOOKUP_TABLE,
            DEACTIVATE_LOOKUP_TABLE,
        ]
        assert len(mock_ledger.sent) == 7
        assert len(mock_ledger.transferred) == 65
        assert sum(mock_ledger.transferred) == sol(1)

        transfer_steps = [e.message for e in events if e.kind == EventKind.STEP_PENDING and "send SOL" in e.step]
        assert transfer_steps == ["Sending to 55 recipients", "Sending to 10 recipients"]

    async def test_zero_allocations_not_sent(self, manager, mock_ledger):
        request = SplitRequest(1000, generate_recipients(3), SplitMode.CUSTOM, [0, 40, 60])

        await collect(manager, request)

        assert mock_ledger.transferred == [400, 600]

    async def test_compute_split_rejects_payer(self, manager, wallet):
        request = SplitRequest(sol(1), [str(wallet.pubkey)] + generate_recipients(1))

        with pytest.raises(ValidationError, match="own address"):
            manager.compute_split(request)

    async def test_blank_rows_keep_their_percentages(self, manager):
        a, b = generate_recipients(2)
        request = SplitRequest(sol(1), [a, "", b], SplitMode.CUSTOM, [70, None, 30])

        allocation = manager.compute_split(request)

        assert allocation.recipients == [a, b]
        assert allocation.amounts == [700_000_000, 300_000_000]
        assert request.recipients == [a, "", b]

    async def test_validation_before_network(self, manager, mock_ledger):
        request = SplitRequest(sol(1), ["bogus"])

        with pytest.raises(ValidationError):
            await collect(manager, request)

        assert mock_ledger.blockhash_calls == 0
        assert mock_ledger.sent == []
        assert manager.state == LifecycleState.IDLE

    async def test_cannot_start_while_pending(self, manager):
        await collect(manager, SplitRequest(sol(1), generate_recipients(2)))

        with pytest.raises(InvalidStateError):
            await collect(manager, SplitRequest(sol(1), generate_recipients(2)))

    async def test_event_listener(self, manager):
        seen = []
        manager.on_event(seen.append)

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(2)))

        assert seen == events


# ============================================================================
# Fee Preflight
# ============================================================================

class TestPreflight:
    """Tests for aggregate and per-step preflight."""

    async def test_estimate_total_fees(self, manager):
        breakdown = await manager.estimate_total_fees(SplitRequest(sol(1), generate_recipients(65)))

        assert len(breakdown.extend) == 3
        assert len(breakdown.transfer) == 2
        assert breakdown.total == 7 * 5000

    async def test_estimate_without_slot(self, manager, mock_ledger):
        mock_ledger.fail_slot = True

        with pytest.raises(PreflightEstimationError):
            await manager.estimate_total_fees(SplitRequest(sol(1), generate_recipients(2)))

    async def test_insufficient_for_full_flow(self, manager, mock_ledger, alt_store):
        mock_ledger.balance = sol(1)

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(15)))

        assert len(events) == 1
        aborted = events[0]
        assert aborted.kind == EventKind.ABORTED
        assert aborted.shortfall == 4 * 5000
        assert "for full flow" in aborted.message
        assert "Missing 0.000020000 SOL" in aborted.message
        assert mock_ledger.sent == []
        assert manager.state == LifecycleState.IDLE
        assert await alt_store.load() is None

    async def test_insufficient_for_extension_chunk(self, manager, mock_ledger):
        def drain(event):
            if event.kind == EventKind.STEP_CONFIRMED and "create" in event.step:
                mock_ledger.balance = 1000

        manager.on_event(drain)

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(5)))

        aborted = events[-1]
        assert aborted.kind == EventKind.ABORTED
        assert aborted.shortfall == 4000
        assert "for ALT extension chunk (1/1)" in aborted.message
        assert mock_ledger.alt_instruction_tags() == [CREATE_LOOKUP_TABLE]
        assert manager.orphaned_table is not None

    async def test_insufficient_for_transfers(self, manager, mock_ledger):
        def drain(event):
            if event.kind == EventKind.STATE_CHANGED and event.state == LifecycleState.READY:
                mock_ledger.balance = sol(0.5)

        manager.on_event(drain)

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(5)))

        assert events[-1].kind == EventKind.ABORTED
        assert "for transfer + deactivate" in events[-1].message
        assert mock_ledger.transferred == []

    async def test_estimation_failure_is_not_fatal(self, manager, mock_ledger):
        """A failed slot preview only warns; the flow still runs."""
        original = mock_ledger.get_slot
        calls = {"n": 0}

        async def flaky_slot():
            calls["n"] += 1
            if calls["n"] == 1:
                raise NodeConnectionError("timeout")
            return await original()

        mock_ledger.get_slot = flaky_slot

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(3)))

        assert events[0].kind == EventKind.PREFLIGHT_WARNING
        assert events[-1].state == LifecycleState.COOLING_DOWN

    async def test_balance_unavailable_fails_open(self, manager, mock_ledger):
        mock_ledger.fail_balance = True

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(3)))

        assert events[-1].state == LifecycleState.COOLING_DOWN


# ============================================================================
# Declines and Failures
# ============================================================================

class TestAbort:
    """Tests for declined signatures and submission failures."""

    async def test_decline_create(self, mock_ledger, payer_keypair, alt_store, test_config):
        manager = make_manager(mock_ledger, payer_keypair, alt_store, test_config, approve=decline_on(0))

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(3)))

        aborted = events[-1]
        assert aborted.kind == EventKind.ABORTED
        assert aborted.declined is True
        assert aborted.message is None
        assert aborted.step == "Confirm transaction to create ALT"
        assert mock_ledger.sent == []
        assert manager.state == LifecycleState.IDLE
        assert manager.orphaned_table is None

    async def test_decline_deactivate_leaves_table_active(self, mock_ledger, payer_keypair, alt_store, test_config):
        """Confirmed steps stand: the table stays live and nothing is persisted."""
        manager = make_manager(mock_ledger, payer_keypair, alt_store, test_config, approve=decline_on(3))

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(3)))

        assert events[-1].declined is True
        assert sum(mock_ledger.transferred) == sol(1)

        table = manager.orphaned_table
        assert table is not None
        assert mock_ledger.tables[table].deactivation_slot is None
        assert await alt_store.load() is None
        assert manager.state == LifecycleState.IDLE
        assert manager.record is None

    async def test_retry_after_decline(self, mock_ledger, payer_keypair, alt_store, test_config):
        manager = make_manager(mock_ledger, payer_keypair, alt_store, test_config, approve=decline_on(0))
        request = SplitRequest(sol(1), generate_recipients(3))

        first = await collect(manager, request)
        second = await collect(manager, request)

        assert first[-1].declined is True
        assert second[-1].state == LifecycleState.COOLING_DOWN

    async def test_cancelled_mid_step_returns_to_idle(self, manager, mock_ledger):
        """A flow torn down while a step is in flight leaves room for a new split."""
        request = SplitRequest(sol(1), generate_recipients(3))
        mock_ledger.confirm_gate = asyncio.Event()

        task = asyncio.create_task(collect(manager, request))
        await wait_for(lambda: len(mock_ledger.sent) == 1)
        assert manager.state == LifecycleState.CREATING

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert manager.state == LifecycleState.IDLE
        assert manager.record is None
        assert manager.submitter.pending_step is None

        mock_ledger.confirm_gate = None
        events = await collect(manager, request)
        assert events[-1].state == LifecycleState.COOLING_DOWN

    async def test_stream_closed_early_returns_to_idle(self, manager, mock_ledger, alt_store):
        stream = manager.run_split(SplitRequest(sol(1), generate_recipients(3)))
        async for event in stream:
            if event.state == LifecycleState.EXTENDING:
                break
        await stream.aclose()

        assert manager.state == LifecycleState.IDLE
        assert manager.orphaned_table in mock_ledger.tables
        assert await alt_store.load() is None

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(2)))
        assert events[-1].state == LifecycleState.COOLING_DOWN

    async def test_submission_failure_on_extend(self, manager, mock_ledger):
        mock_ledger.fail_send_at = 1

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(3)))

        aborted = events[-1]
        assert aborted.kind == EventKind.ABORTED
        assert aborted.declined is False
        assert aborted.step == "Confirm transaction to extend ALT (1/1)"
        assert "simulation failed" in aborted.message
        assert manager.orphaned_table is not None
        assert manager.state == LifecycleState.IDLE

    async def test_unconfirmed_transfer(self, manager, mock_ledger):
        mock_ledger.unconfirmed_at = {2}

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(3)))

        assert events[-1].kind == EventKind.ABORTED
        assert "not confirmed" in events[-1].message
        assert DEACTIVATE_LOOKUP_TABLE not in mock_ledger.alt_instruction_tags()

    async def test_slot_unavailable_at_create(self, manager, mock_ledger):
        mock_ledger.fail_slot = True

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(3)))

        assert events[0].kind == EventKind.PREFLIGHT_WARNING
        assert events[-1].kind == EventKind.ABORTED
        assert mock_ledger.sent == []

    async def test_deactivation_slot_unreadable(self, manager, mock_ledger, alt_store):
        """The record is persisted without a slot; the monitor fills it in later."""
        def hide_tables(event):
            if event.kind == EventKind.STEP_CONFIRMED and "deactivate" in event.step:
                mock_ledger.fail_lookup = True

        manager.on_event(hide_tables)

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(3)))

        assert events[-1].state == LifecycleState.COOLING_DOWN
        assert manager.record.deactivation_slot is None
        assert (await alt_store.load()).deactivation_slot is None


# ============================================================================
# Cooldown Monitor
# ============================================================================

class TestMonitor:
    """Tests for the cooldown monitor."""

    async def test_remaining_slots(self, manager, mock_ledger, wallet, alt_store):
        record = await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)

        mock_ledger.slot = 1500
        status = await manager.check_cooldown(record)
        assert (status.remaining_slots, status.closable) == (12, False)

        mock_ledger.slot = 1512
        status = await manager.check_cooldown(record)
        assert (status.remaining_slots, status.closable) == (0, True)

    async def test_becomes_closable(self, manager, mock_ledger, wallet, alt_store):
        await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)
        mock_ledger.slot = 1100
        await manager.restore(wallet.pubkey)
        assert manager.state == LifecycleState.COOLING_DOWN

        statuses = manager.monitor_alt()
        first = await statuses.__anext__()
        assert first.remaining_slots == 412
        assert manager.remaining_slots == 412

        mock_ledger.slot = 1600
        second = await statuses.__anext__()
        await statuses.aclose()

        assert second.closable is True
        assert manager.state == LifecycleState.CLOSABLE
        assert manager.closable is True

    async def test_cooldown_listener(self, manager, mock_ledger, wallet, alt_store):
        await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)
        mock_ledger.slot = 1200
        seen = []
        manager.on_cooldown(seen.append)

        await manager.restore(wallet.pubkey)

        assert seen == [CooldownStatus(
            remaining_slots=312,
            closable=False,
            current_slot=1200,
            deactivation_slot=1000,
        )]

    async def test_table_deleted_externally(self, manager, mock_ledger, wallet, alt_store):
        record = await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)
        await manager.restore(wallet.pubkey)

        del mock_ledger.tables[record.address]
        statuses = [s async for s in manager.monitor_alt()]

        assert statuses[-1].exists is False
        assert manager.state == LifecycleState.IDLE
        assert manager.record is None
        assert await alt_store.load() is None

    async def test_query_failure_keeps_polling(self, manager, mock_ledger, wallet, alt_store):
        await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)
        mock_ledger.slot = 1600
        await manager.restore(wallet.pubkey)
        assert manager.state == LifecycleState.CLOSABLE

        mock_ledger.fail_lookup = True
        statuses = manager.monitor_alt()
        task = asyncio.ensure_future(statuses.__anext__())
        await wait_for(lambda: manager.state == LifecycleState.COOLING_DOWN)
        assert manager.closable is False

        mock_ledger.fail_lookup = False
        status = await task
        await statuses.aclose()

        assert status.closable is True
        assert manager.state == LifecycleState.CLOSABLE

    async def test_monitor_repersists_slot(self, manager, mock_ledger, wallet, alt_store):
        record = await seed_pending(alt_store, mock_ledger, wallet.pubkey, None)
        mock_ledger.tables[record.address].deactivation_slot = 1000
        mock_ledger.slot = 1010

        await manager.restore(wallet.pubkey)

        assert manager.record.deactivation_slot == 1000
        assert (await alt_store.load()).deactivation_slot == 1000

    async def test_explicit_record_gone_clears_store(self, manager, mock_ledger, wallet, alt_store):
        record = await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)
        del mock_ledger.tables[record.address]

        statuses = [s async for s in manager.monitor_alt(record)]

        assert statuses[-1].exists is False
        assert await alt_store.load() is None
        assert manager.state == LifecycleState.IDLE

    async def test_unrelated_record_gone_keeps_store(self, manager, mock_ledger, wallet, alt_store):
        stored = await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)
        other = AltRecord(address=Keypair().pubkey(), wallet=wallet.pubkey)

        statuses = [s async for s in manager.monitor_alt(other)]

        assert statuses[-1].exists is False
        assert (await alt_store.load()).address == str(stored.address)

    async def test_failing_listener_does_not_break_shutdown(self, mock_ledger, payer_keypair, alt_store, test_config):
        manager = make_manager(mock_ledger, payer_keypair, alt_store, test_config, auto_monitor=True)
        await seed_pending(alt_store, mock_ledger, manager.payer, 1000)
        await manager.restore(manager.payer)
        assert manager.monitoring is True

        readings = []

        def failing_listener(status):
            readings.append(status)
            raise RuntimeError("listener failed")

        manager.on_cooldown(failing_listener)
        await wait_for(lambda: readings and not manager.monitoring)

        await manager.shutdown()
        assert manager.state == LifecycleState.COOLING_DOWN

    async def test_monitor_restarts_after_failure(self, mock_ledger, payer_keypair, alt_store, test_config):
        manager = make_manager(mock_ledger, payer_keypair, alt_store, test_config, auto_monitor=True)
        await seed_pending(alt_store, mock_ledger, manager.payer, 1000)
        await manager.restore(manager.payer)

        original = manager.check_cooldown
        calls = {"n": 0}

        async def failing_once(record):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ValueError("unexpected account data")
            return await original(record)

        manager.check_cooldown = failing_once
        await wait_for(lambda: not manager.monitoring)

        manager.start_monitor()
        mock_ledger.slot += 512
        await wait_for(lambda: manager.state == LifecycleState.CLOSABLE)
        await manager.shutdown()

    async def test_nothing_to_monitor(self, manager):
        with pytest.raises(InvalidStateError):
            await manager.monitor_alt().__anext__()

    async def test_background_monitor(self, mock_ledger, payer_keypair, alt_store, test_config):
        manager = make_manager(mock_ledger, payer_keypair, alt_store, test_config, auto_monitor=True)

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(3)))
        assert events[-1].state == LifecycleState.COOLING_DOWN
        assert manager.monitoring is True

        mock_ledger.slot += 512
        await wait_for(lambda: manager.state == LifecycleState.CLOSABLE)

        await manager.shutdown()
        assert manager.monitoring is False


# ============================================================================
# Closing
# ============================================================================

class TestClose:
    """Tests for closing the table after the cooldown."""

    async def test_close(self, manager, mock_ledger, wallet, alt_store):
        record = await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)
        mock_ledger.slot = 1600
        await manager.restore(wallet.pubkey)
        seen = []
        manager.on_event(seen.append)

        signature = await manager.close_alt()

        assert signature == mock_ledger.confirmations[-1][0]
        assert mock_ledger.confirmations[-1][1] == ConfirmationDepth.FINALIZED
        assert mock_ledger.alt_instruction_tags() == [CLOSE_LOOKUP_TABLE]
        assert record.address not in mock_ledger.tables
        assert await alt_store.load() is None
        assert manager.state == LifecycleState.IDLE
        assert manager.record is None
        assert states(seen) == [LifecycleState.CLOSED, LifecycleState.IDLE]

    async def test_close_during_cooldown(self, manager, mock_ledger, wallet, alt_store):
        await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)
        mock_ledger.slot = 1200
        await manager.restore(wallet.pubkey)

        with pytest.raises(InvalidStateError, match="cannot be closed yet"):
            await manager.close_alt()

        assert mock_ledger.sent == []

    async def test_close_without_table(self, manager):
        with pytest.raises(InvalidStateError):
            await manager.close_alt()

    async def test_close_declined(self, mock_ledger, payer_keypair, alt_store, test_config):
        manager = make_manager(mock_ledger, payer_keypair, alt_store, test_config, approve=decline_on(0))
        await seed_pending(alt_store, mock_ledger, payer_keypair.pubkey(), 1000)
        mock_ledger.slot = 1600
        await manager.restore(payer_keypair.pubkey())

        assert await manager.close_alt() is None
        assert manager.state == LifecycleState.CLOSABLE
        assert await alt_store.load() is not None

    async def test_close_failure(self, manager, mock_ledger, wallet, alt_store):
        await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)
        mock_ledger.slot = 1600
        await manager.restore(wallet.pubkey)
        mock_ledger.fail_send_at = 0

        with pytest.raises(SubmissionFailure):
            await manager.close_alt()

        assert manager.state == LifecycleState.CLOSABLE
        assert await alt_store.load() is not None

    async def test_close_explicit_record(self, manager, mock_ledger, wallet):
        record = AltRecord(address=Keypair().pubkey(), wallet=wallet.pubkey)
        record.mark_deactivated(1000)
        mock_ledger.add_table(record.address, 1000)
        mock_ledger.slot = 2000

        assert await manager.close_alt(record) is not None
        assert record.state == LifecycleState.CLOSED
        assert record.address not in mock_ledger.tables

    async def test_full_cycle(self, manager, mock_ledger, alt_store):
        """Split, wait out the cooldown, close, and start again."""
        request = SplitRequest(sol(1), generate_recipients(4))
        await collect(manager, request)

        mock_ledger.slot += 512
        statuses = manager.monitor_alt()
        status = await statuses.__anext__()
        await statuses.aclose()
        assert status.closable is True

        assert await manager.close_alt() is not None
        assert manager.state == LifecycleState.IDLE

        events = await collect(manager, SplitRequest(sol(1), generate_recipients(4)))
        assert events[-1].state == LifecycleState.COOLING_DOWN


# ============================================================================
# Rehydration
# ============================================================================

class TestRestore:
    """Tests for resuming a pending table at startup."""

    async def test_resume_cooling_down(self, manager, mock_ledger, wallet, alt_store):
        record = await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)
        mock_ledger.slot = 1100

        restored = await manager.restore(wallet.pubkey)

        assert restored.address == record.address
        assert manager.state == LifecycleState.COOLING_DOWN
        assert manager.remaining_slots == 412

    async def test_resume_closable(self, manager, mock_ledger, wallet, alt_store):
        await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)
        mock_ledger.slot = 1512

        await manager.restore(wallet.pubkey)

        assert manager.state == LifecycleState.CLOSABLE

    async def test_nothing_stored(self, manager, wallet):
        assert await manager.restore(wallet.pubkey) is None
        assert manager.state == LifecycleState.IDLE

    async def test_other_wallet(self, manager, mock_ledger, wallet, alt_store):
        other = Keypair().pubkey()
        record = await seed_pending(alt_store, mock_ledger, other, 1000)

        with pytest.raises(StaleRecordError) as exc_info:
            await manager.restore(wallet.pubkey)

        assert exc_info.value.address == str(record.address)
        assert await alt_store.load() is None
        assert manager.state == LifecycleState.IDLE

    async def test_no_wallet_clears_pending(self, manager, mock_ledger, wallet, alt_store):
        await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)
        await manager.restore(wallet.pubkey)

        assert await manager.restore(None) is None

        assert manager.state == LifecycleState.IDLE
        assert manager.record is None
        # Still persisted for when the wallet reconnects
        assert await alt_store.load() is not None

    async def test_table_already_gone(self, manager, mock_ledger, wallet, alt_store):
        record = await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)
        del mock_ledger.tables[record.address]

        assert await manager.restore(wallet.pubkey) is None
        assert manager.state == LifecycleState.IDLE
        assert await alt_store.load() is None

    async def test_network_down_at_startup(self, manager, mock_ledger, wallet, alt_store):
        await seed_pending(alt_store, mock_ledger, wallet.pubkey, 1000)
        mock_ledger.fail_lookup = True

        restored = await manager.restore(wallet.pubkey)

        assert restored is not None
        assert manager.state == LifecycleState.COOLING_DOWN

    async def test_restore_starts_monitor(self, mock_ledger, payer_keypair, alt_store, test_config):
        manager = make_manager(mock_ledger, payer_keypair, alt_store, test_config, auto_monitor=True)
        await seed_pending(alt_store, mock_ledger, payer_keypair.pubkey(), 1000)
        mock_ledger.slot = 1100

        await manager.restore(payer_keypair.pubkey())
        assert manager.monitoring is True

        mock_ledger.slot = 1600
        await wait_for(lambda: manager.state == LifecycleState.CLOSABLE)

        await manager.close_alt()
        assert manager.monitoring is False
        assert manager.state == LifecycleState.IDLE

        await manager.shutdown()
