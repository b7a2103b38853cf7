import asyncio
from decimal import Decimal

import pytest

from payout_engine.commission import CommissionTerms, SubscriptionTerms, calculate, payment_terms
from payout_engine.exceptions import ConfigurationError
from payout_engine.models import (
    CommissionTransaction, LedgerEntry, Metric, MetricType, PaymentMode,
    SettledLineItem, TransactionStatus, VendorAccount
)
from payout_engine.settlement import read_settled_line_items


@pytest.mark.asyncio
async def test_scenario_a_commission_split(engine, commission_vendor, settle):
    transaction = await settle(commission_vendor, "100.00")

    assert transaction.payment_mode == PaymentMode.COMMISSION
    assert transaction.commission_rate == Decimal("10")
    assert transaction.platform_commission == Decimal("10.00")
    assert transaction.vendor_commission == Decimal("90.00")
    assert transaction.status == TransactionStatus.PENDING

    ledger = await engine.ledger.get(commission_vendor.id)
    assert ledger.total_earned == Decimal("90.00")
    assert ledger.pending_balance == Decimal("90.00")

    metric = await Metric.filter(metric_type=MetricType.EARNINGS_RECOGNIZED).first()
    assert metric.entity_id == transaction.id
    assert metric.value == 90.0


@pytest.mark.asyncio
async def test_recognizing_twice_credits_once(engine, commission_vendor, make_order):
    order = make_order("ORD-DUP", (commission_vendor.id, "100.00"))
    first = (await engine.settle_order(order))[0]
    item = await SettledLineItem.get(order_id="ORD-DUP", line_index=0)

    again = await engine.recognize(item)
    redelivered = (await engine.settle_order(order))[0]

    assert first.id == again.id == redelivered.id
    assert await CommissionTransaction.all().count() == 1
    assert await LedgerEntry.all().count() == 1
    assert (await engine.ledger.get(commission_vendor.id)).pending_balance == Decimal("90.00")


@pytest.mark.asyncio
async def test_concurrent_deliveries_of_one_order(engine, commission_vendor, make_order):
    order = make_order("ORD-RACE", (commission_vendor.id, "100.00"))
    results = await asyncio.gather(*[engine.settle_order(order) for _ in range(5)])

    assert len({r[0].id for r in results}) == 1
    assert await CommissionTransaction.all().count() == 1
    assert (await engine.ledger.get(commission_vendor.id)).pending_balance == Decimal("90.00")


@pytest.mark.asyncio
async def test_subscription_vendor_keeps_full_amount(engine, subscription_vendor, settle):
    transaction = await settle(subscription_vendor, "100.00")

    assert transaction.payment_mode == PaymentMode.SUBSCRIPTION
    assert transaction.commission_rate == Decimal("0")
    assert transaction.platform_commission == Decimal("0")
    assert transaction.vendor_commission == Decimal("100.00")
    assert (await engine.ledger.get(subscription_vendor.id)).pending_balance == Decimal("100.00")


@pytest.mark.asyncio
async def test_missing_rate_is_a_configuration_error(engine, make_order):
    vendor = await VendorAccount.create(name="Unconfigured", payment_mode=PaymentMode.COMMISSION, currency="AED")
    order = make_order("ORD-NORATE", (vendor.id, "100.00"))

    with pytest.raises(ConfigurationError):
        await engine.settle_order(order)

    # Nothing recognized, the line item can be retried once the vendor is fixed
    item = await SettledLineItem.get(order_id="ORD-NORATE", line_index=0)
    assert await CommissionTransaction.filter(line_item_id=item.id).count() == 0
    assert (await engine.ledger.get(vendor.id)).pending_balance == Decimal("0")

    vendor.commission_rate = Decimal("20")
    await vendor.save()
    transaction = await engine.recognize(item)
    assert transaction.platform_commission == Decimal("20.00")
    assert (await engine.ledger.get(vendor.id)).pending_balance == Decimal("80.00")


@pytest.mark.asyncio
async def test_out_of_range_rate_and_currency_mismatch(engine, commission_vendor, make_order):
    commission_vendor.commission_rate = Decimal("150")
    await commission_vendor.save()
    with pytest.raises(ConfigurationError):
        await engine.settle_order(make_order("ORD-RATE", (commission_vendor.id, "10.00")))

    commission_vendor.commission_rate = Decimal("10")
    await commission_vendor.save()
    with pytest.raises(ConfigurationError):
        await engine.settle_order(make_order("ORD-USD", (commission_vendor.id, "10.00"), currency="USD"))
    assert await CommissionTransaction.all().count() == 0


@pytest.mark.asyncio
async def test_payment_terms_variants(commission_vendor, subscription_vendor):
    assert payment_terms(commission_vendor) == CommissionTerms(rate=Decimal("10"))
    assert payment_terms(subscription_vendor) == SubscriptionTerms(fee=Decimal("299.00"), currency="AED")

    subscription_vendor.subscription_fee = None
    with pytest.raises(ConfigurationError):
        payment_terms(subscription_vendor)

    commission_vendor.commission_rate = Decimal("-1")
    with pytest.raises(ConfigurationError):
        payment_terms(commission_vendor)


@pytest.mark.asyncio
async def test_calculate_sums_exactly(commission_vendor, make_order):
    commission_vendor.commission_rate = Decimal("17.5")
    await commission_vendor.save()
    items = await read_settled_line_items(make_order("ORD-ODD", (commission_vendor.id, "33.33")))

    breakdown = calculate(items[0], payment_terms(commission_vendor))
    assert breakdown["platform_commission"] == Decimal("5.83")
    assert breakdown["platform_commission"] + breakdown["vendor_commission"] == Decimal("33.33")
