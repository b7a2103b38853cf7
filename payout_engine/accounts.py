"""
Vendor account store helpers.

Accounts are owned by the platform; the engine only reads them. These helpers
exist for onboarding scripts and tests and are the only place where the
platform-wide default commission rate is applied.
"""

import logging
from decimal import Decimal
from typing import Optional

from .config import DEFAULT_COMMISSION_RATE, DEFAULT_CURRENCY
from .exceptions import ConfigurationError, NotFoundError
from .models import PaymentMode, PayoutMethod, VendorAccount
from .money import minor_unit, to_decimal

logger = logging.getLogger(__name__)


async def create_vendor_account(
    name: str,
    payment_mode: PaymentMode = PaymentMode.COMMISSION,
    commission_rate=None,
    subscription_fee=None,
    billing_currency: Optional[str] = None,
    currency: str = DEFAULT_CURRENCY,
    minimum_payout=None,
    telegram_id: Optional[int] = None,
    preferred_payout_method: PayoutMethod = PayoutMethod.BANK_TRANSFER,
    default_commission_rate: Decimal = DEFAULT_COMMISSION_RATE,
) -> VendorAccount:
    """
    Onboard a vendor.

    Commission-mode vendors without an explicit rate get the platform default
    rate written on their account. Subscription-mode vendors must have a fee.
    """
    currency = currency.upper()
    minor_unit(currency)  # rejects unsupported currencies

    if payment_mode == PaymentMode.COMMISSION:
        rate = to_decimal(commission_rate if commission_rate is not None else default_commission_rate)
        if rate < 0 or rate > 100:
            raise ConfigurationError(f"Commission rate must be between 0 and 100, got {rate}", commission_rate=rate)
        fee = None
    else:
        if subscription_fee is None:
            raise ConfigurationError("Subscription vendors need a subscription fee")
        rate = None
        fee = to_decimal(subscription_fee)
        billing_currency = (billing_currency or currency).upper()
        minor_unit(billing_currency)

    vendor = await VendorAccount.create(
        name=name,
        telegram_id=telegram_id,
        payment_mode=payment_mode,
        commission_rate=rate,
        subscription_fee=fee,
        billing_currency=billing_currency if payment_mode == PaymentMode.SUBSCRIPTION else None,
        currency=currency,
        minimum_payout=to_decimal(minimum_payout) if minimum_payout is not None else None,
        preferred_payout_method=preferred_payout_method,
    )
    logger.info(f"Created vendor account {vendor.id} ({name}) on {payment_mode.value} mode")
    return vendor


async def get_vendor_account(vendor_id: int) -> VendorAccount:
    vendor = await VendorAccount.filter(id=vendor_id).first()
    if not vendor:
        raise NotFoundError(f"Vendor {vendor_id} not found", vendor_id=vendor_id)
    return vendor
