import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from payout_engine.exceptions import (
    ConcurrentLedgerUpdateError,
    InsufficientBalanceError,
    LedgerFrozenError,
    LedgerInvariantViolation,
)
from payout_engine.ledger import EarningsLedger, check_invariant
from payout_engine.models import (
    CommissionTransaction, LedgerEntry, LedgerEntryType, Metric, MetricType, VendorLedger
)


@pytest.mark.asyncio
async def test_balance_moves_keep_the_invariant(commission_vendor):
    ledger = EarningsLedger()
    vendor_id = commission_vendor.id

    await ledger.credit(vendor_id, Decimal("150.00"), reference="order:1:0")
    await ledger.reserve(vendor_id, Decimal("100.00"), reference="payout:1")
    await ledger.confirm_payout(vendor_id, Decimal("60.00"), reference="payout:1")
    state = await ledger.release_reservation(vendor_id, Decimal("40.00"), reference="payout:1")

    assert state.total_earned == Decimal("150.00")
    assert state.pending_balance == Decimal("90.00")
    assert state.in_processing == Decimal("0")
    assert state.total_paid_out == Decimal("60.00")
    check_invariant(await ledger.get(vendor_id))

    entries = await LedgerEntry.filter(ledger_id=state.id).order_by("id")
    assert [e.entry_type for e in entries] == [
        LedgerEntryType.CREDIT, LedgerEntryType.RESERVE,
        LedgerEntryType.CONFIRM_PAYOUT, LedgerEntryType.RELEASE,
    ]
    assert entries[-1].pending_balance == Decimal("90.00")
    assert (await ledger.get(vendor_id)).version == 4


@pytest.mark.asyncio
async def test_reserve_more_than_pending_changes_nothing(commission_vendor):
    ledger = EarningsLedger()
    await ledger.credit(commission_vendor.id, Decimal("150.00"))

    with pytest.raises(InsufficientBalanceError):
        await ledger.reserve(commission_vendor.id, Decimal("200.00"))

    state = await ledger.get(commission_vendor.id)
    assert state.pending_balance == Decimal("150.00")
    assert state.in_processing == Decimal("0")
    assert await LedgerEntry.filter(ledger_id=state.id).count() == 1


@pytest.mark.asyncio
async def test_negative_amounts_rejected(commission_vendor):
    with pytest.raises(ValueError):
        await EarningsLedger().credit(commission_vendor.id, Decimal("-1.00"))


@pytest.mark.asyncio
async def test_reverse_earnings_splits_pending_and_clawback(commission_vendor):
    ledger = EarningsLedger()
    await ledger.credit(commission_vendor.id, Decimal("90.00"))
    await ledger.reserve(commission_vendor.id, Decimal("60.00"))
    await ledger.confirm_payout(commission_vendor.id, Decimal("60.00"))

    state, from_pending, clawback = await ledger.reverse_earnings(
        commission_vendor.id, Decimal("45.00"), paid_out_portion=Decimal("40.00")
    )

    assert from_pending == Decimal("5.00")
    assert clawback == Decimal("40.00")
    assert state.total_earned == Decimal("45.00")
    assert state.pending_balance == Decimal("25.00")
    assert state.clawback_owed == Decimal("40.00")
    check_invariant(state)

    # Pending balance can never be driven negative
    state, from_pending, clawback = await ledger.reverse_earnings(commission_vendor.id, Decimal("45.00"))
    assert from_pending == Decimal("25.00")
    assert clawback == Decimal("20.00")
    assert state.pending_balance == Decimal("0")
    assert state.total_earned == Decimal("0")
    assert state.clawback_owed == Decimal("60.00")
    check_invariant(state)


@pytest.mark.asyncio
async def test_offset_clawback_from_pending(commission_vendor):
    ledger = EarningsLedger()
    await ledger.credit(commission_vendor.id, Decimal("50.00"))
    await ledger.reserve(commission_vendor.id, Decimal("50.00"))
    await ledger.confirm_payout(commission_vendor.id, Decimal("50.00"))
    await ledger.reverse_earnings(commission_vendor.id, Decimal("30.00"), paid_out_portion=Decimal("30.00"))
    await ledger.credit(commission_vendor.id, Decimal("20.00"))

    state, recovered = await ledger.offset_clawback(commission_vendor.id)

    assert recovered == Decimal("20.00")
    assert state.clawback_owed == Decimal("10.00")
    assert state.pending_balance == Decimal("0")
    check_invariant(state)

    with pytest.raises(InsufficientBalanceError):
        await ledger.offset_clawback(commission_vendor.id, Decimal("10.00"))


@pytest.mark.asyncio
async def test_frozen_ledger_rejects_mutations(commission_vendor):
    ledger = EarningsLedger()
    await ledger.credit(commission_vendor.id, Decimal("10.00"))
    await ledger.freeze(commission_vendor.id, "manual review")

    with pytest.raises(LedgerFrozenError):
        await ledger.credit(commission_vendor.id, Decimal("10.00"))

    state = await ledger.unfreeze(commission_vendor.id)
    assert not state.is_frozen
    assert state.frozen_reason is None
    state = await ledger.credit(commission_vendor.id, Decimal("10.00"))
    assert state.pending_balance == Decimal("20.00")


@pytest.mark.asyncio
async def test_lost_version_check_rolls_back(commission_vendor):
    class RacingLedger(EarningsLedger):
        async def _load_for_update(self, vendor_id):
            ledger = await super()._load_for_update(vendor_id)
            # Another writer commits in between
            await VendorLedger.filter(id=ledger.id).update(version=ledger.version + 1)
            return ledger

    await EarningsLedger().credit(commission_vendor.id, Decimal("10.00"))

    with pytest.raises(ConcurrentLedgerUpdateError):
        await RacingLedger().credit(commission_vendor.id, Decimal("5.00"))

    state = await EarningsLedger().get(commission_vendor.id)
    assert state.pending_balance == Decimal("10.00")
    assert state.version == 1
    assert await LedgerEntry.filter(ledger_id=state.id).count() == 1


@pytest.mark.asyncio
async def test_engine_retries_concurrent_updates(engine, commission_vendor):
    operation = AsyncMock(side_effect=[ConcurrentLedgerUpdateError("conflict"), "done"])
    assert await engine._run(commission_vendor.id, operation) == "done"
    assert operation.await_count == 2

    always_conflicting = AsyncMock(side_effect=ConcurrentLedgerUpdateError("conflict"))
    with pytest.raises(ConcurrentLedgerUpdateError):
        await engine._run(commission_vendor.id, always_conflicting)
    assert always_conflicting.await_count == engine.config.ledger_retry_attempts


@pytest.mark.asyncio
async def test_invariant_violation_freezes_and_alerts(engine, commission_vendor, settle, mock_alerts):
    await settle(commission_vendor, "100.00")
    state = await engine.ledger.get(commission_vendor.id)
    # Simulate money that is unaccounted for
    await VendorLedger.filter(id=state.id).update(total_earned=Decimal("999.00"))

    with pytest.raises(LedgerInvariantViolation):
        await settle(commission_vendor, "50.00")

    state = await engine.ledger.get(commission_vendor.id)
    assert state.is_frozen
    assert "does not balance" in state.frozen_reason
    assert state.pending_balance == Decimal("90.00")
    assert await CommissionTransaction.all().count() == 1
    mock_alerts.ledger_frozen.assert_awaited_once()
    assert await Metric.filter(metric_type=MetricType.LEDGER_INVARIANT_VIOLATION).count() == 1

    with pytest.raises(LedgerFrozenError):
        await engine.request_payout(commission_vendor.id)

    # Unfreezing re-checks the invariant
    with pytest.raises(LedgerInvariantViolation):
        await engine.unfreeze_ledger(commission_vendor.id)
    await VendorLedger.filter(id=state.id).update(total_earned=Decimal("90.00"))
    state = await engine.unfreeze_ledger(commission_vendor.id)
    assert not state.is_frozen


@pytest.mark.asyncio
async def test_audit_replays_the_journal(engine, commission_vendor, settle, paid_out):
    await settle(commission_vendor, "100.00")
    await settle(commission_vendor, "200.00")
    await paid_out(commission_vendor, "150.00")

    report = await engine.audit_ledger(commission_vendor.id)
    assert report == {"ok": True, "vendor_id": commission_vendor.id, "mismatches": []}

    state = await engine.ledger.get(commission_vendor.id)
    await VendorLedger.filter(id=state.id).update(
        total_earned=state.total_earned + 10, pending_balance=state.pending_balance + 10
    )
    report = await engine.audit_ledger(commission_vendor.id)
    assert not report["ok"]
    assert report["mismatches"] == ["total_earned", "pending_balance"]


@pytest.mark.asyncio
async def test_concurrent_credits_for_one_vendor(engine, commission_vendor, make_order):
    orders = [make_order(f"ORD-C{i}", (commission_vendor.id, "10.00")) for i in range(20)]
    await asyncio.gather(*[engine.settle_order(order) for order in orders])

    state = await engine.ledger.get(commission_vendor.id)
    assert state.pending_balance == Decimal("180.00")
    assert state.total_earned == Decimal("180.00")
    assert state.version == 20
    check_invariant(state)


@pytest.mark.asyncio
async def test_vendors_are_independent(engine, commission_vendor, subscription_vendor, make_order):
    orders = []
    for i in range(5):
        orders.append(make_order(f"ORD-A{i}", (commission_vendor.id, "100.00")))
        orders.append(make_order(f"ORD-B{i}", (subscription_vendor.id, "100.00")))
    await asyncio.gather(*[engine.settle_order(order) for order in orders])

    assert (await engine.ledger.get(commission_vendor.id)).pending_balance == Decimal("450.00")
    assert (await engine.ledger.get(subscription_vendor.id)).pending_balance == Decimal("500.00")
