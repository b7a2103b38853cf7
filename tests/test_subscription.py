from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytz
from dateutil.relativedelta import relativedelta

from payout_engine.exceptions import ConfigurationError
from payout_engine.models import (
    Metric, MetricType, SubscriptionPayment, SubscriptionPaymentStatus,
    SubscriptionStatus, VendorSubscription
)
from payout_engine.subscription import (
    evaluate_status, get_subscription, get_subscription_status, is_expired, record_payment
)

JAN_1 = datetime(2026, 1, 1, tzinfo=pytz.utc)
FEB_1 = datetime(2026, 2, 1, tzinfo=pytz.utc)


def test_evaluate_status_windows():
    subscription = VendorSubscription(fee=Decimal("299.00"), currency="AED", paid_until=FEB_1)

    assert evaluate_status(subscription, FEB_1 - timedelta(days=3), 7) == SubscriptionStatus.ACTIVE
    assert evaluate_status(subscription, FEB_1, 7) == SubscriptionStatus.ACTIVE
    assert evaluate_status(subscription, FEB_1 + timedelta(days=7), 7) == SubscriptionStatus.GRACE_PERIOD
    assert evaluate_status(subscription, FEB_1 + timedelta(days=7, seconds=1), 7) == SubscriptionStatus.EXPIRED
    assert is_expired(subscription, FEB_1 + timedelta(days=8), 7)
    assert not is_expired(subscription, FEB_1 + timedelta(days=2), 7)

    subscription.suspended_at = JAN_1
    assert evaluate_status(subscription, JAN_1, 7) == SubscriptionStatus.SUSPENDED
    assert evaluate_status(VendorSubscription(fee=Decimal("1"), currency="AED"), JAN_1) == SubscriptionStatus.EXPIRED


@pytest.mark.asyncio
async def test_scenario_e_expiry_after_grace(engine, subscription_vendor):
    await engine.record_subscription_payment(subscription_vendor.id, "299.00", JAN_1, FEB_1, "txn_jan")

    subscription = await engine.refresh_subscription(subscription_vendor.id, FEB_1 + timedelta(days=3))
    assert subscription.status == SubscriptionStatus.GRACE_PERIOD

    subscription = await engine.refresh_subscription(subscription_vendor.id, FEB_1 + timedelta(days=8))
    assert subscription.status == SubscriptionStatus.EXPIRED
    assert (await VendorSubscription.get(vendor_id=subscription_vendor.id)).status == SubscriptionStatus.EXPIRED


@pytest.mark.asyncio
async def test_payment_extends_paid_until_and_reinstates(engine, subscription_vendor):
    payment = await engine.record_subscription_payment(subscription_vendor.id, "299.00", JAN_1)
    assert payment.period_end == JAN_1 + relativedelta(months=1)
    assert payment.status == SubscriptionPaymentStatus.PAID

    await engine.record_failed_subscription_payment(
        subscription_vendor.id, "299.00", FEB_1, reason="Card declined"
    )
    subscription = await get_subscription(subscription_vendor.id)
    assert subscription.status == SubscriptionStatus.SUSPENDED
    assert subscription.suspension_reason == "Card declined"
    assert evaluate_status(subscription, JAN_1 + timedelta(days=1)) == SubscriptionStatus.SUSPENDED

    await engine.record_subscription_payment(subscription_vendor.id, "299.00", FEB_1, transaction_id="txn_retry")
    subscription = await get_subscription(subscription_vendor.id)
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.suspended_at is None
    assert subscription.paid_until == datetime(2026, 3, 1, tzinfo=pytz.utc)
    assert subscription.started_at == JAN_1
    assert await Metric.filter(metric_type=MetricType.SUBSCRIPTION_PAYMENT).count() == 2


@pytest.mark.asyncio
async def test_same_period_is_recorded_once(subscription_vendor):
    first = await record_payment(subscription_vendor.id, "299.00", JAN_1, FEB_1)
    second = await record_payment(subscription_vendor.id, "299.00", JAN_1, FEB_1)

    assert first.id == second.id
    assert await SubscriptionPayment.all().count() == 1


@pytest.mark.asyncio
async def test_paid_until_never_moves_backwards(subscription_vendor):
    await record_payment(subscription_vendor.id, "299.00", FEB_1)
    await record_payment(subscription_vendor.id, "299.00", JAN_1, FEB_1)

    subscription = await get_subscription(subscription_vendor.id)
    assert subscription.paid_until == datetime(2026, 3, 1, tzinfo=pytz.utc)


@pytest.mark.asyncio
async def test_invalid_payments(subscription_vendor, commission_vendor):
    with pytest.raises(ValueError):
        await record_payment(subscription_vendor.id, "0", JAN_1)
    with pytest.raises(ValueError):
        await record_payment(subscription_vendor.id, "299.00", FEB_1, JAN_1)
    with pytest.raises(ConfigurationError):
        await record_payment(commission_vendor.id, "299.00", JAN_1)


@pytest.mark.asyncio
async def test_explicit_suspension(engine, subscription_vendor):
    await engine.record_subscription_payment(subscription_vendor.id, "299.00", JAN_1)
    subscription = await engine.suspend_subscription(subscription_vendor.id, "Terms violation")

    assert subscription.status == SubscriptionStatus.SUSPENDED
    assert is_expired(subscription, JAN_1 + timedelta(days=1))


@pytest.mark.asyncio
async def test_fee_is_never_deducted_from_earnings(engine, subscription_vendor, settle):
    await engine.record_subscription_payment(subscription_vendor.id, "299.00", JAN_1)
    await settle(subscription_vendor, "100.00")

    ledger = await engine.ledger.get(subscription_vendor.id)
    assert ledger.total_earned == Decimal("100.00")
    assert ledger.pending_balance == Decimal("100.00")


@pytest.mark.asyncio
async def test_subscription_status_overview(subscription_vendor):
    never_paid = await get_subscription_status(subscription_vendor.id, now=JAN_1)
    assert never_paid["status"] == "expired"
    assert never_paid["paid_until"] is None
    assert never_paid["payment_history"] == []

    await record_payment(subscription_vendor.id, "299.00", JAN_1, FEB_1, "txn_jan")
    await record_payment(subscription_vendor.id, "299.00", FEB_1, transaction_id="txn_feb")
    status = await get_subscription_status(subscription_vendor.id, now=FEB_1 + timedelta(days=10))

    assert status["status"] == "active"
    assert status["is_active"] and not status["is_expired"]
    assert status["fee"] == Decimal("299.00")
    assert status["currency"] == "AED"
    assert status["days_until_renewal"] == 18
    assert status["next_renewal_date"] == status["paid_until"]
    assert [p["transaction_id"] for p in status["payment_history"]] == ["txn_feb", "txn_jan"]
