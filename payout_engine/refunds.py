"""
Refund adjuster.

A gateway-confirmed refund of a recognized line item reduces the vendor's
earnings by the vendor's proportional share. Money the vendor already received
is never taken back from historical payouts; it becomes a Clawback receivable.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Tuple

from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from .config import get_current_time
from .exceptions import InvalidRefundError
from .ledger import EarningsLedger
from .models import Clawback, ClawbackStatus, CommissionTransaction, RefundAdjustment, SettledLineItem
from .money import ZERO, quantize, to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundEvent:
    order_id: str
    line_index: int
    refund_amount: Decimal
    refund_event_id: str

    @classmethod
    def from_payload(cls, data: Dict) -> "RefundEvent":
        try:
            return cls(
                order_id=str(data["order_id"]),
                line_index=int(data["line_index"]),
                refund_amount=to_decimal(data["refund_amount"]),
                refund_event_id=str(data["refund_event_id"]),
            )
        except KeyError as e:
            raise ValueError(f"Refund payload is missing {e.args[0]}") from e


def vendor_reduction(transaction: CommissionTransaction, refund_amount: Decimal, rounding_mode: str = "half_up") -> Decimal:
    """
    Vendor share of a refund.

    Proportional to the vendor's share of the original amount. The refund that
    completes the line item takes exactly what is left, so rounding never
    leaks cents across partial refunds.
    """
    remaining_gross = transaction.original_amount - transaction.refunded_amount
    remaining_vendor = transaction.vendor_commission - transaction.vendor_refunded
    if refund_amount == remaining_gross:
        return remaining_vendor

    reduction = quantize(
        refund_amount * transaction.vendor_commission / transaction.original_amount,
        transaction.currency,
        rounding_mode,
    )
    return min(reduction, remaining_vendor)


async def apply_refund(
    event: RefundEvent,
    ledger: EarningsLedger,
    rounding_mode: str = "half_up",
) -> Tuple[RefundAdjustment, bool]:
    """
    Apply a confirmed refund to the vendor's earnings.

    Args:
        event: The refund confirmed by the payment gateway
        ledger: Ledger used for the reversal
        rounding_mode: Rounding mode of the proportional reduction

    Returns:
        (adjustment, created); ``created`` is False for a redelivered event

    Raises:
        InvalidRefundError: unknown or unrecognized line item, or an amount
            that is not positive or exceeds what is left to refund
    """
    line_item = await SettledLineItem.filter(order_id=event.order_id, line_index=event.line_index).first()
    if not line_item:
        raise InvalidRefundError(
            f"Unknown line item {event.order_id}/{event.line_index}",
            order_id=event.order_id, line_index=event.line_index
        )

    existing = await RefundAdjustment.filter(line_item_id=line_item.id, refund_event_id=event.refund_event_id).first()
    if existing:
        logger.info(f"Refund {event.refund_event_id} for {event.order_id}/{event.line_index} already applied")
        return existing, False

    transaction = await CommissionTransaction.filter(line_item_id=line_item.id).first()
    if not transaction:
        raise InvalidRefundError(
            f"Line item {event.order_id}/{event.line_index} has not been recognized yet",
            order_id=event.order_id, line_index=event.line_index
        )

    amount = quantize(event.refund_amount, transaction.currency, rounding_mode)
    remaining = transaction.original_amount - transaction.refunded_amount
    if amount <= ZERO or amount > remaining:
        raise InvalidRefundError(
            f"Refund of {amount} is outside 0..{remaining} for {event.order_id}/{event.line_index}",
            refund_amount=amount, refundable=remaining
        )

    reduction = vendor_reduction(transaction, amount, rounding_mode)
    paid_out_portion = max(ZERO, reduction - transaction.open_amount)
    reference = f"refund:{event.refund_event_id}"

    try:
        async with in_transaction():
            _, from_pending, clawback_amount = await ledger.reverse_earnings(
                line_item.vendor_id, reduction, paid_out_portion, reference=reference
            )
            adjustment = await RefundAdjustment.create(
                line_item=line_item,
                vendor_id=line_item.vendor_id,
                refund_event_id=event.refund_event_id,
                refund_amount=amount,
                vendor_reduction=reduction,
                from_pending=from_pending,
                clawback_amount=clawback_amount,
            )

            transaction.refunded_amount += amount
            transaction.vendor_refunded += reduction
            await transaction.save(update_fields=["refunded_amount", "vendor_refunded"])

            if clawback_amount > ZERO:
                await Clawback.create(
                    vendor_id=line_item.vendor_id,
                    line_item=line_item,
                    refund=adjustment,
                    amount=clawback_amount,
                )
    except IntegrityError:
        # A concurrent delivery of the same refund event got there first
        existing = await RefundAdjustment.get(line_item_id=line_item.id, refund_event_id=event.refund_event_id)
        return existing, False

    logger.info(
        f"Applied refund {event.refund_event_id} of {amount} {transaction.currency} on "
        f"{event.order_id}/{event.line_index}: vendor reduction {reduction} "
        f"(from pending {from_pending}, clawback {clawback_amount})"
    )
    return adjustment, True


async def recover_clawbacks(vendor_id: int, amount: Decimal) -> List[Clawback]:
    """Mark open clawbacks recovered, oldest first, up to ``amount``."""
    touched = []
    remaining = amount
    for clawback in await Clawback.filter(vendor_id=vendor_id, status=ClawbackStatus.OPEN).order_by("created_at", "id"):
        if remaining <= ZERO:
            break
        share = min(clawback.amount - clawback.recovered_amount, remaining)
        clawback.recovered_amount += share
        if clawback.recovered_amount >= clawback.amount:
            clawback.status = ClawbackStatus.RECOVERED
            clawback.recovered_at = get_current_time()
        await clawback.save()
        remaining -= share
        touched.append(clawback)
    return touched
