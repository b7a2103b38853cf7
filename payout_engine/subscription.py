"""
Subscription ledger for vendors on the flat recurring fee model.

The fee is a platform receivable tracked through SubscriptionPayment records;
it is never deducted from vendor earnings. The subscription status is the read
signal the catalog uses to hide a vendor's events.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from dateutil.relativedelta import relativedelta

from .commission import SubscriptionTerms, payment_terms
from .config import GRACE_PERIOD_DAYS, ensure_timezone_aware, get_current_time
from .exceptions import ConfigurationError, NotFoundError
from .models import (
    SubscriptionPayment, SubscriptionPaymentStatus, SubscriptionStatus,
    VendorAccount, VendorSubscription
)
from .money import ZERO, quantize, to_decimal

logger = logging.getLogger(__name__)

BILLING_CYCLE = relativedelta(months=1)


def evaluate_status(subscription: VendorSubscription, now: datetime, grace_period_days: int = GRACE_PERIOD_DAYS) -> SubscriptionStatus:
    """Status of a subscription at ``now``. Pure; nothing is persisted."""
    if subscription.suspended_at is not None:
        return SubscriptionStatus.SUSPENDED
    if subscription.paid_until is None:
        return SubscriptionStatus.EXPIRED

    now = ensure_timezone_aware(now)
    paid_until = ensure_timezone_aware(subscription.paid_until)
    if now <= paid_until:
        return SubscriptionStatus.ACTIVE
    if now <= paid_until + timedelta(days=grace_period_days):
        return SubscriptionStatus.GRACE_PERIOD
    return SubscriptionStatus.EXPIRED


def is_expired(subscription: VendorSubscription, now: datetime, grace_period_days: int = GRACE_PERIOD_DAYS) -> bool:
    """True when the vendor's events should be hidden from the catalog."""
    return evaluate_status(subscription, now, grace_period_days) in (
        SubscriptionStatus.EXPIRED, SubscriptionStatus.SUSPENDED
    )


async def get_subscription(vendor_id: int) -> VendorSubscription:
    """Load the vendor's subscription, opening it from the vendor's terms if needed."""
    subscription = await VendorSubscription.filter(vendor_id=vendor_id).first()
    if subscription:
        return subscription

    vendor = await VendorAccount.filter(id=vendor_id).first()
    if not vendor:
        raise NotFoundError(f"Vendor {vendor_id} not found", vendor_id=vendor_id)

    terms = payment_terms(vendor)
    if not isinstance(terms, SubscriptionTerms):
        raise ConfigurationError(f"Vendor {vendor_id} is not on the subscription model", vendor_id=vendor_id)

    subscription = await VendorSubscription.create(vendor=vendor, fee=terms.fee, currency=terms.currency)
    logger.info(f"Opened subscription for vendor {vendor_id}: {terms.fee} {terms.currency} per cycle")
    return subscription


def _validate_period(period_start: datetime, period_end: Optional[datetime]):
    period_start = ensure_timezone_aware(period_start)
    period_end = ensure_timezone_aware(period_end) if period_end else period_start + BILLING_CYCLE
    if period_end <= period_start:
        raise ValueError(f"Billing period ends before it starts: {period_start} - {period_end}")
    return period_start, period_end


async def record_payment(
    vendor_id: int,
    amount,
    period_start: datetime,
    period_end: Optional[datetime] = None,
    transaction_id: Optional[str] = None,
) -> SubscriptionPayment:
    """
    Record a successful subscription payment.

    Extends ``paid_until`` to the end of the paid period, marks the
    subscription active and clears any suspension. A period that was already
    recorded as paid is returned unchanged.

    Args:
        vendor_id: Vendor paying the fee
        amount: Amount paid in the billing currency
        period_start: First moment of the paid cycle
        period_end: End of the paid cycle (defaults to one month later)
        transaction_id: Optional gateway transaction reference

    Returns:
        The SubscriptionPayment record
    """
    subscription = await get_subscription(vendor_id)
    period_start, period_end = _validate_period(period_start, period_end)
    amount = quantize(to_decimal(amount), subscription.currency)
    if amount <= ZERO:
        raise ValueError(f"Subscription payment must be positive: {amount}")

    existing = await SubscriptionPayment.filter(
        subscription_id=subscription.id,
        period_start=period_start,
        period_end=period_end,
        status=SubscriptionPaymentStatus.PAID,
    ).first()
    if existing:
        logger.info(f"Subscription payment for vendor {vendor_id} period {period_start:%Y-%m-%d} already recorded")
        return existing

    payment = await SubscriptionPayment.create(
        subscription=subscription,
        period_start=period_start,
        period_end=period_end,
        amount=amount,
        currency=subscription.currency,
        status=SubscriptionPaymentStatus.PAID,
        transaction_id=transaction_id,
    )

    if subscription.paid_until is None or ensure_timezone_aware(subscription.paid_until) < period_end:
        subscription.paid_until = period_end
    subscription.started_at = subscription.started_at or period_start
    subscription.status = SubscriptionStatus.ACTIVE
    subscription.suspended_at = None
    subscription.suspension_reason = None
    await subscription.save()

    if amount != subscription.fee:
        logger.warning(f"Vendor {vendor_id} paid {amount} against a subscription fee of {subscription.fee}")
    logger.info(f"Subscription of vendor {vendor_id} paid until {subscription.paid_until.isoformat()}")
    return payment


async def record_failed_payment(
    vendor_id: int,
    amount,
    period_start: datetime,
    period_end: Optional[datetime] = None,
    transaction_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> SubscriptionPayment:
    """Record a failed charge and suspend the subscription."""
    subscription = await get_subscription(vendor_id)
    period_start, period_end = _validate_period(period_start, period_end)

    payment = await SubscriptionPayment.create(
        subscription=subscription,
        period_start=period_start,
        period_end=period_end,
        amount=quantize(to_decimal(amount), subscription.currency),
        currency=subscription.currency,
        status=SubscriptionPaymentStatus.FAILED,
        transaction_id=transaction_id,
    )
    await suspend(vendor_id, reason or "Subscription payment failed")
    return payment


async def suspend(vendor_id: int, reason: str) -> VendorSubscription:
    subscription = await get_subscription(vendor_id)
    subscription.status = SubscriptionStatus.SUSPENDED
    subscription.suspended_at = get_current_time()
    subscription.suspension_reason = reason
    await subscription.save()
    logger.warning(f"Subscription of vendor {vendor_id} suspended: {reason}")
    return subscription


async def refresh_status(
    vendor_id: int,
    now: Optional[datetime] = None,
    grace_period_days: int = GRACE_PERIOD_DAYS,
) -> VendorSubscription:
    """Persist the evaluated status of a vendor's subscription."""
    subscription = await get_subscription(vendor_id)
    status = evaluate_status(subscription, now or get_current_time(), grace_period_days)
    if status != subscription.status:
        logger.info(f"Subscription of vendor {vendor_id}: {subscription.status.value} -> {status.value}")
        subscription.status = status
        await subscription.save()
    return subscription


async def get_subscription_status(
    vendor_id: int,
    now: Optional[datetime] = None,
    grace_period_days: int = GRACE_PERIOD_DAYS,
) -> Dict:
    """
    Subscription overview for the vendor dashboard.

    Returns:
        Dictionary with status, fee, renewal dates and payment history
    """
    now = ensure_timezone_aware(now) if now else get_current_time()
    subscription = await get_subscription(vendor_id)
    status = evaluate_status(subscription, now, grace_period_days)
    payments = await SubscriptionPayment.filter(subscription_id=subscription.id).order_by("-period_start")

    days_until_renewal = None
    if subscription.paid_until:
        days_until_renewal = max(0, (ensure_timezone_aware(subscription.paid_until) - now).days)

    return {
        "vendor_id": vendor_id,
        "status": status.value,
        "fee": subscription.fee,
        "currency": subscription.currency,
        "started_at": subscription.started_at.isoformat() if subscription.started_at else None,
        "paid_until": subscription.paid_until.isoformat() if subscription.paid_until else None,
        "next_renewal_date": subscription.paid_until.isoformat() if subscription.paid_until else None,
        "days_until_renewal": days_until_renewal,
        "is_active": status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD),
        "is_expired": status in (SubscriptionStatus.EXPIRED, SubscriptionStatus.SUSPENDED),
        "suspension_reason": subscription.suspension_reason,
        "payment_history": [
            {
                "payment_date": p.payment_date.isoformat(),
                "amount": p.amount,
                "currency": p.currency,
                "period_start": p.period_start.isoformat(),
                "period_end": p.period_end.isoformat(),
                "status": p.status.value,
                "transaction_id": p.transaction_id,
            }
            for p in payments
        ],
    }
