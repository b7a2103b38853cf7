"""
Order settlement reader.

Turns a paid order reported by the payment gateway into immutable
SettledLineItem rows, one per order line, keyed by (order_id, line_index).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from tortoise.exceptions import IntegrityError

from .config import ensure_timezone_aware, get_current_time
from .exceptions import NotFoundError, OrderNotSettledError
from .models import SettledLineItem, VendorAccount
from .money import ZERO, quantize, to_decimal

logger = logging.getLogger(__name__)

PAID_STATUSES = ("paid", "succeeded", "completed")


@dataclass(frozen=True)
class OrderLine:
    vendor_id: int
    amount: Decimal
    description: Optional[str] = None


@dataclass(frozen=True)
class PaidOrder:
    """Typed view of a gateway order/payment record."""
    order_id: str
    payment_status: str
    currency: str
    paid_at: datetime
    lines: List[OrderLine] = field(default_factory=list)

    @classmethod
    def from_payload(cls, data: Dict) -> "PaidOrder":
        """
        Build a PaidOrder from a webhook payload.

        Expected shape::

            {"order_id": "ORD-1", "payment_status": "paid", "currency": "AED",
             "paid_at": "2026-01-01T10:00:00+00:00",
             "lines": [{"vendor_id": 3, "amount": "100.00"}]}
        """
        order_id = data.get("order_id")
        lines = data.get("lines") or []
        if not order_id or not lines:
            raise ValueError("Order payload requires order_id and at least one line")

        paid_at = data.get("paid_at")
        if isinstance(paid_at, str):
            paid_at = datetime.fromisoformat(paid_at)

        try:
            order_lines = [
                OrderLine(
                    vendor_id=int(line["vendor_id"]),
                    amount=to_decimal(line["amount"]),
                    description=line.get("description"),
                )
                for line in lines
            ]
        except KeyError as e:
            raise ValueError(f"Order line is missing {e.args[0]}") from e
        except (TypeError, AttributeError) as e:
            raise ValueError(f"Malformed order line in order {order_id}") from e

        return cls(
            order_id=str(order_id),
            payment_status=str(data.get("payment_status", "")).lower(),
            currency=str(data.get("currency", "")).upper(),
            paid_at=ensure_timezone_aware(paid_at) if paid_at else get_current_time(),
            lines=order_lines,
        )

    @property
    def is_paid(self) -> bool:
        return self.payment_status in PAID_STATUSES


async def read_settled_line_items(order: PaidOrder) -> List[SettledLineItem]:
    """
    Persist the settled line items of a paid order.

    Safe to call repeatedly for the same order: existing rows are returned
    unchanged.
    """
    if not order.is_paid:
        raise OrderNotSettledError(
            f"Order {order.order_id} is not paid (status: {order.payment_status})",
            order_id=order.order_id
        )

    items = []
    for index, line in enumerate(order.lines):
        if line.amount < ZERO:
            raise ValueError(f"Order {order.order_id} line {index} has a negative amount")

        existing = await SettledLineItem.filter(order_id=order.order_id, line_index=index).first()
        if existing:
            if existing.vendor_id != line.vendor_id or existing.original_amount != quantize(line.amount, order.currency):
                logger.error(
                    f"Redelivered order {order.order_id} line {index} differs from the settled record; "
                    f"keeping the original"
                )
            items.append(existing)
            continue

        vendor = await VendorAccount.filter(id=line.vendor_id).first()
        if not vendor:
            raise NotFoundError(f"Vendor {line.vendor_id} not found", vendor_id=line.vendor_id)

        try:
            item = await SettledLineItem.create(
                order_id=order.order_id,
                line_index=index,
                vendor=vendor,
                original_amount=quantize(line.amount, order.currency),
                currency=order.currency,
                settled_at=order.paid_at,
            )
            logger.info(f"Settled order {order.order_id} line {index}: {item.original_amount} {item.currency} for vendor {vendor.id}")
        except IntegrityError:
            # Concurrent delivery of the same order won the insert
            item = await SettledLineItem.get(order_id=order.order_id, line_index=index)
        items.append(item)

    return items
