"""
Commission calculation and earnings recognition.

A vendor's billing model is resolved once into PaymentTerms; recognition of a
settled line item then dispatches on that variant and credits the vendor's
ledger exactly once per line item.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Tuple, Union

from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from .exceptions import ConfigurationError, DuplicateRecognitionError
from .ledger import EarningsLedger
from .models import CommissionTransaction, PaymentMode, SettledLineItem, VendorAccount
from .money import ZERO, percentage_of, quantize, to_decimal

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class CommissionTerms:
    rate: Decimal  # percent


@dataclass(frozen=True)
class SubscriptionTerms:
    fee: Decimal
    currency: str


PaymentTerms = Union[CommissionTerms, SubscriptionTerms]


def payment_terms(vendor: VendorAccount) -> PaymentTerms:
    """
    Resolve the vendor's billing model.

    Raises:
        ConfigurationError: when the fields required by the vendor's payment
            mode are missing or out of range
    """
    if vendor.payment_mode == PaymentMode.SUBSCRIPTION:
        if vendor.subscription_fee is None or vendor.subscription_fee < ZERO:
            raise ConfigurationError(
                f"Vendor {vendor.id} is on subscription but has no valid subscription fee",
                vendor_id=vendor.id
            )
        return SubscriptionTerms(
            fee=vendor.subscription_fee,
            currency=(vendor.billing_currency or vendor.currency).upper(),
        )

    rate = vendor.commission_rate
    if rate is None:
        raise ConfigurationError(f"Vendor {vendor.id} has no commission rate", vendor_id=vendor.id)
    rate = to_decimal(rate)
    if rate < ZERO or rate > HUNDRED:
        raise ConfigurationError(
            f"Vendor {vendor.id} has invalid commission rate {rate}",
            vendor_id=vendor.id, commission_rate=rate
        )
    return CommissionTerms(rate=rate)


def split_commission(amount, rate, currency: str, rounding_mode: str = "half_up") -> Tuple[Decimal, Decimal]:
    """
    Split a line item amount into (platform_commission, vendor_commission).

    The platform share is rounded to the currency's minor unit; the vendor
    gets the exact remainder so the two always add up to the amount.
    """
    amount = quantize(amount, currency, rounding_mode)
    platform = percentage_of(amount, rate, currency, rounding_mode)
    return platform, amount - platform


def calculate(line_item: SettledLineItem, terms: PaymentTerms, rounding_mode: str = "half_up") -> Dict:
    """Commission breakdown of one line item under the given terms."""
    if isinstance(terms, CommissionTerms):
        platform, vendor_share = split_commission(
            line_item.original_amount, terms.rate, line_item.currency, rounding_mode
        )
        return {
            "payment_mode": PaymentMode.COMMISSION,
            "commission_rate": terms.rate,
            "platform_commission": platform,
            "vendor_commission": vendor_share,
        }

    # Subscription vendors keep the whole sale; the fee is billed separately
    original = quantize(line_item.original_amount, line_item.currency, rounding_mode)
    return {
        "payment_mode": PaymentMode.SUBSCRIPTION,
        "commission_rate": ZERO,
        "platform_commission": ZERO,
        "vendor_commission": original,
    }


async def recognize_line_item(
    line_item: SettledLineItem,
    ledger: EarningsLedger,
    rounding_mode: str = "half_up",
) -> CommissionTransaction:
    """
    Create the commission transaction of a settled line item and credit the
    vendor's ledger with the vendor share.

    Args:
        line_item: The settled line item to recognize
        ledger: Ledger used for the credit
        rounding_mode: Rounding mode of the platform commission

    Returns:
        The new CommissionTransaction

    Raises:
        DuplicateRecognitionError: the line item was recognized before; the
            existing transaction is attached as ``existing``
        ConfigurationError: the vendor's billing setup is unusable
    """
    existing = await CommissionTransaction.filter(line_item_id=line_item.id).first()
    if existing:
        raise DuplicateRecognitionError(existing, f"Line item {line_item.id} already recognized")

    vendor = await VendorAccount.get(id=line_item.vendor_id)
    if line_item.currency.upper() != vendor.currency.upper():
        raise ConfigurationError(
            f"Line item {line_item.id} is in {line_item.currency} but vendor {vendor.id} earns in {vendor.currency}",
            vendor_id=vendor.id, currency=line_item.currency
        )

    terms = payment_terms(vendor)
    breakdown = calculate(line_item, terms, rounding_mode)

    try:
        async with in_transaction():
            transaction = await CommissionTransaction.create(
                line_item=line_item,
                vendor=vendor,
                original_amount=line_item.original_amount,
                currency=line_item.currency,
                **breakdown
            )
            await ledger.credit(
                vendor.id,
                transaction.vendor_commission,
                reference=f"order:{line_item.order_id}:{line_item.line_index}",
            )
    except IntegrityError:
        # Lost the race against a concurrent recognition of the same line item
        existing = await CommissionTransaction.get(line_item_id=line_item.id)
        raise DuplicateRecognitionError(existing, f"Line item {line_item.id} already recognized")

    logger.info(
        f"Recognized line item {line_item.order_id}/{line_item.line_index} for vendor {vendor.id}: "
        f"{transaction.vendor_commission} {transaction.currency} "
        f"(platform: {transaction.platform_commission}, mode: {transaction.payment_mode.value})"
    )
    return transaction
