from decimal import Decimal

import pytest

from payout_engine import payouts
from payout_engine.accounts import create_vendor_account
from payout_engine.exceptions import BelowMinimumPayoutError, ConfigurationError, InvalidRefundError
from payout_engine.ledger import check_invariant
from payout_engine.models import (
    Clawback, ClawbackStatus, CommissionTransaction, Metric, MetricType,
    PayoutStatus, RefundAdjustment, TransactionStatus, VendorAccount
)
from payout_engine.refunds import RefundEvent, vendor_reduction
from payout_engine.reporting import get_open_clawbacks


@pytest.mark.asyncio
async def test_refund_before_payout_reduces_pending(engine, commission_vendor, settle):
    transaction = await settle(commission_vendor, "100.00", order_id="ORD-R1")

    adjustment = await engine.refund("ORD-R1", 0, "50.00", "re_1")

    assert adjustment.vendor_reduction == Decimal("45.00")
    assert adjustment.from_pending == Decimal("45.00")
    assert adjustment.clawback_amount == Decimal("0")
    ledger = await engine.ledger.get(commission_vendor.id)
    assert ledger.total_earned == Decimal("45.00")
    assert ledger.pending_balance == Decimal("45.00")
    assert ledger.clawback_owed == Decimal("0")

    transaction = await CommissionTransaction.get(id=transaction.id)
    assert transaction.refunded_amount == Decimal("50.00")
    assert transaction.vendor_refunded == Decimal("45.00")
    # Refunds never roll the recognition record back
    assert transaction.vendor_commission == Decimal("90.00")
    assert transaction.status == TransactionStatus.PENDING


@pytest.mark.asyncio
async def test_scenario_d_refund_after_payout_records_clawback(engine, commission_vendor, settle, paid_out):
    await settle(commission_vendor, "100.00", order_id="ORD-D")
    payout = await paid_out(commission_vendor, "90.00")

    adjustment = await engine.refund("ORD-D", 0, "50.00", "re_d")

    ledger = await engine.ledger.get(commission_vendor.id)
    assert ledger.total_earned == Decimal("45.00")
    assert ledger.pending_balance == Decimal("0")
    assert ledger.total_paid_out == Decimal("90.00")
    assert ledger.clawback_owed == Decimal("45.00")
    check_invariant(ledger)

    clawback = await Clawback.get(refund_id=adjustment.id)
    assert clawback.amount == Decimal("45.00")
    assert clawback.status == ClawbackStatus.OPEN
    assert await Metric.filter(metric_type=MetricType.CLAWBACK_RECORDED).count() == 1

    # The historical payout is untouched
    await payout.refresh_from_db()
    assert payout.approved_amount == Decimal("90.00")


@pytest.mark.asyncio
async def test_clawback_offset_against_later_earnings(engine, commission_vendor, settle, paid_out):
    await settle(commission_vendor, "100.00", order_id="ORD-O1")
    await paid_out(commission_vendor, "90.00")
    await engine.refund("ORD-O1", 0, "50.00", "re_o1")
    await settle(commission_vendor, "100.00", order_id="ORD-O2")

    assert len(await get_open_clawbacks(commission_vendor.id)) == 1
    result = await engine.offset_clawback(commission_vendor.id)

    assert result == {"vendor_id": commission_vendor.id, "recovered": Decimal("45.00"), "clawback_owed": Decimal("0")}
    ledger = await engine.ledger.get(commission_vendor.id)
    assert ledger.pending_balance == Decimal("45.00")
    check_invariant(ledger)
    clawback = await Clawback.get(vendor_id=commission_vendor.id)
    assert clawback.status == ClawbackStatus.RECOVERED
    assert clawback.recovered_amount == Decimal("45.00")
    assert await get_open_clawbacks(commission_vendor.id) == []


@pytest.mark.asyncio
async def test_partial_refunds_do_not_leak_cents(engine, settle):
    vendor = await create_vendor_account("Odd Rate Vendor", commission_rate="15", minimum_payout="1.00")
    transaction = await settle(vendor, "10.00", order_id="ORD-P")
    assert transaction.vendor_commission == Decimal("8.50")

    first = await engine.refund("ORD-P", 0, "3.33", "re_p1")
    second = await engine.refund("ORD-P", 0, "3.33", "re_p2")
    last = await engine.refund("ORD-P", 0, "3.34", "re_p3")

    assert [first.vendor_reduction, second.vendor_reduction, last.vendor_reduction] == [
        Decimal("2.83"), Decimal("2.83"), Decimal("2.84")
    ]
    ledger = await engine.ledger.get(vendor.id)
    assert ledger.total_earned == Decimal("0")
    assert ledger.pending_balance == Decimal("0")

    with pytest.raises(InvalidRefundError):
        await engine.refund("ORD-P", 0, "0.01", "re_p4")


@pytest.mark.asyncio
async def test_redelivered_refund_is_applied_once(engine, commission_vendor, settle):
    await settle(commission_vendor, "100.00", order_id="ORD-RD")

    first = await engine.refund("ORD-RD", 0, "20.00", "re_same")
    second = await engine.refund("ORD-RD", 0, "20.00", "re_same")

    assert first.id == second.id
    assert await RefundAdjustment.all().count() == 1
    assert await Metric.filter(metric_type=MetricType.REFUND_APPLIED).count() == 1
    assert (await engine.ledger.get(commission_vendor.id)).pending_balance == Decimal("72.00")


@pytest.mark.asyncio
async def test_invalid_refunds_leave_ledger_untouched(engine, commission_vendor, settle, make_order):
    await settle(commission_vendor, "100.00", order_id="ORD-INV")

    for order_id, line_index, amount in [
        ("ORD-NOPE", 0, "10.00"),
        ("ORD-INV", 1, "10.00"),
        ("ORD-INV", 0, "0"),
        ("ORD-INV", 0, "-5.00"),
        ("ORD-INV", 0, "100.01"),
    ]:
        with pytest.raises(InvalidRefundError):
            await engine.refund(order_id, line_index, amount, f"re_{order_id}_{amount}")
    for amount in ["NaN", "Infinity"]:
        with pytest.raises(ValueError):
            await engine.refund("ORD-INV", 0, amount, f"re_{amount}")

    ledger = await engine.ledger.get(commission_vendor.id)
    assert ledger.pending_balance == Decimal("90.00")
    assert await RefundAdjustment.all().count() == 0


@pytest.mark.asyncio
async def test_refund_of_unrecognized_line_item(engine, make_order):
    vendor = await VendorAccount.create(name="Unconfigured", currency="AED")
    with pytest.raises(ConfigurationError):
        await engine.settle_order(make_order("ORD-UNREC", (vendor.id, "10.00")))

    with pytest.raises(InvalidRefundError):
        await engine.refund("ORD-UNREC", 0, "5.00", "re_unrec")


@pytest.mark.asyncio
async def test_subscription_refund_reverses_full_amount(engine, subscription_vendor, settle):
    await settle(subscription_vendor, "100.00", order_id="ORD-SUB")

    adjustment = await engine.refund("ORD-SUB", 0, "40.00", "re_sub")

    assert adjustment.vendor_reduction == Decimal("40.00")
    assert (await engine.ledger.get(subscription_vendor.id)).pending_balance == Decimal("60.00")


@pytest.mark.asyncio
async def test_refund_while_payout_in_flight(engine, commission_vendor, settle):
    await settle(commission_vendor, "100.00", order_id="ORD-FLY")
    request = await engine.request_payout(commission_vendor.id, "90.00")
    request = await engine.approve_payout(request.id)

    await engine.refund("ORD-FLY", 0, "100.00", "re_fly")
    ledger = await engine.ledger.get(commission_vendor.id)
    assert ledger.total_earned == Decimal("0")
    assert ledger.clawback_owed == Decimal("90.00")
    check_invariant(ledger)

    await engine.confirm_payout_result(request.id, True, request.gateway_reference)
    ledger = await engine.ledger.get(commission_vendor.id)
    assert ledger.total_paid_out == Decimal("90.00")
    assert ledger.in_processing == Decimal("0")
    check_invariant(ledger)


@pytest.mark.asyncio
async def test_failed_payout_after_refund_recovers_clawback(engine, commission_vendor, settle):
    await settle(commission_vendor, "100.00", order_id="ORD-FLY-FAIL")
    request = await engine.request_payout(commission_vendor.id, "90.00")
    request = await engine.approve_payout(request.id)
    await engine.refund("ORD-FLY-FAIL", 0, "100.00", "re_fly_fail")

    await engine.confirm_payout_result(request.id, False, request.gateway_reference, "Account closed")

    ledger = await engine.ledger.get(commission_vendor.id)
    assert ledger.total_earned == Decimal("0")
    assert ledger.pending_balance == Decimal("0")
    assert ledger.in_processing == Decimal("0")
    assert ledger.clawback_owed == Decimal("0")
    check_invariant(ledger)
    clawback = await Clawback.get(vendor_id=commission_vendor.id)
    assert clawback.status == ClawbackStatus.RECOVERED

    # Nothing of the refunded line can be withdrawn again
    with pytest.raises(BelowMinimumPayoutError):
        await engine.request_payout(commission_vendor.id)
    assert (await engine.audit_ledger(commission_vendor.id))["ok"]


@pytest.mark.asyncio
async def test_failed_payout_after_partial_refund(engine, commission_vendor, settle):
    await settle(commission_vendor, "100.00", order_id="ORD-FLY-PART")
    request = await engine.approve_payout((await engine.request_payout(commission_vendor.id, "90.00")).id)
    await engine.refund("ORD-FLY-PART", 0, "50.00", "re_fly_part")

    await engine.confirm_payout_result(request.id, False, request.gateway_reference)

    ledger = await engine.ledger.get(commission_vendor.id)
    assert ledger.total_earned == Decimal("45.00")
    assert ledger.pending_balance == Decimal("45.00")
    assert ledger.clawback_owed == Decimal("0")
    check_invariant(ledger)


@pytest.mark.asyncio
async def test_admin_failed_payout_after_refund_recovers_clawback(engine, commission_vendor, settle):
    await settle(commission_vendor, "100.00", order_id="ORD-APPROVED")
    request = await engine.request_payout(commission_vendor.id, "90.00")
    # Approved but not yet handed to the gateway
    await payouts.approve_payout(request.id, engine.ledger)
    await engine.refund("ORD-APPROVED", 0, "100.00", "re_approved")

    request = await engine.fail_payout(request.id, "Bank details missing")

    assert request.status == PayoutStatus.FAILED
    ledger = await engine.ledger.get(commission_vendor.id)
    assert ledger.pending_balance == Decimal("0")
    assert ledger.clawback_owed == Decimal("0")
    check_invariant(ledger)


def test_refund_event_payload():
    event = RefundEvent.from_payload(
        {"order_id": 77, "line_index": "1", "refund_amount": "12.50", "refund_event_id": "re_77"}
    )
    assert event == RefundEvent(order_id="77", line_index=1, refund_amount=Decimal("12.50"), refund_event_id="re_77")

    with pytest.raises(ValueError):
        RefundEvent.from_payload({"order_id": 77, "line_index": 0, "refund_amount": "1.00"})


def test_vendor_reduction_is_proportional():
    transaction = CommissionTransaction(
        original_amount=Decimal("100.00"),
        vendor_commission=Decimal("90.00"),
        refunded_amount=Decimal("0"),
        vendor_refunded=Decimal("0"),
        currency="AED",
    )
    assert vendor_reduction(transaction, Decimal("33.33")) == Decimal("30.00")
    assert vendor_reduction(transaction, Decimal("100.00")) == Decimal("90.00")
