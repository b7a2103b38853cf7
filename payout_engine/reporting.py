"""
Read-only views over earnings, payouts and commissions.
Used by the HTTP API, the bot and the admin dashboard.
"""

import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from .config import ensure_timezone_aware
from .exceptions import NotFoundError
from .ledger import EarningsLedger
from .models import (
    Clawback, ClawbackStatus, CommissionTransaction, PaymentMode, PayoutRequest,
    PayoutStatus, VendorAccount, VendorLedger
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def paginate(page: int, limit: int, total: int) -> Dict:
    total_pages = max(1, math.ceil(total / limit)) if limit else 1
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total": total,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def _page_bounds(page: int, limit: int):
    page = max(1, int(page))
    limit = min(MAX_PAGE_SIZE, max(1, int(limit)))
    return page, limit, (page - 1) * limit


async def _vendor(vendor_id: int) -> VendorAccount:
    vendor = await VendorAccount.filter(id=vendor_id).first()
    if not vendor:
        raise NotFoundError(f"Vendor {vendor_id} not found", vendor_id=vendor_id)
    return vendor


def serialize_payout(payout: PayoutRequest) -> Dict:
    return {
        "id": payout.id,
        "vendor_id": payout.vendor_id,
        "amount": payout.amount,
        "approved_amount": payout.approved_amount,
        "currency": payout.currency,
        "status": payout.status.value,
        "method": payout.method.value,
        "total_orders": payout.total_orders,
        "gateway_reference": payout.gateway_reference,
        "failure_reason": payout.failure_reason,
        "rejection_reason": payout.rejection_reason,
        "needs_reconciliation": payout.needs_reconciliation,
        "requested_at": payout.requested_at.isoformat(),
        "approved_at": payout.approved_at.isoformat() if payout.approved_at else None,
        "processed_at": payout.processed_at.isoformat() if payout.processed_at else None,
        "resolved_at": payout.resolved_at.isoformat() if payout.resolved_at else None,
    }


async def get_earnings(vendor_id: int, ledger: Optional[EarningsLedger] = None) -> Dict:
    """
    Current balances of a vendor.

    Returns:
        Dictionary with the ledger balances, currency and frozen flag
    """
    await _vendor(vendor_id)
    balances = await (ledger or EarningsLedger()).get(vendor_id)
    return {
        "vendor_id": vendor_id,
        "total_earned": balances.total_earned,
        "pending_balance": balances.pending_balance,
        "in_processing": balances.in_processing,
        "total_paid_out": balances.total_paid_out,
        "clawback_owed": balances.clawback_owed,
        "currency": balances.currency,
        "is_frozen": balances.is_frozen,
    }


async def get_pending_requests(vendor_id: int) -> List[Dict]:
    """Open (pending, approved or processing) payout requests of a vendor."""
    await _vendor(vendor_id)
    requests = await PayoutRequest.filter(
        vendor_id=vendor_id,
        status__in=[PayoutStatus.PENDING, PayoutStatus.APPROVED, PayoutStatus.PROCESSING],
    ).order_by("-requested_at", "-id")
    return [serialize_payout(r) for r in requests]


async def get_payout_history(
    vendor_id: int,
    page: int = 1,
    limit: int = 10,
    status: Optional[PayoutStatus] = None,
) -> Dict:
    """
    Paginated payout history of a vendor, newest first.

    Args:
        vendor_id: The vendor
        page: 1-based page number
        limit: Page size (capped)
        status: Optional status filter
    """
    await _vendor(vendor_id)
    page, limit, offset = _page_bounds(page, limit)

    query = PayoutRequest.filter(vendor_id=vendor_id)
    if status is not None:
        query = query.filter(status=PayoutStatus(status))

    total = await query.count()
    payouts = await query.order_by("-requested_at", "-id").offset(offset).limit(limit)
    return {
        "payouts": [serialize_payout(p) for p in payouts],
        "pagination": paginate(page, limit, total),
    }


async def get_commission_history(
    vendor_id: int,
    page: int = 1,
    limit: int = 10,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> Dict:
    """
    Paginated commission transactions of a vendor with a summary over the
    whole (date-filtered) range.
    """
    vendor = await _vendor(vendor_id)
    page, limit, offset = _page_bounds(page, limit)

    query = CommissionTransaction.filter(vendor_id=vendor_id)
    if start_date:
        query = query.filter(calculated_at__gte=ensure_timezone_aware(start_date))
    if end_date:
        query = query.filter(calculated_at__lte=ensure_timezone_aware(end_date))

    all_transactions = await query.all()
    total = len(all_transactions)
    transactions = await query.order_by("-calculated_at", "-id").offset(offset).limit(limit).prefetch_related("line_item")

    return {
        "payment_mode": vendor.payment_mode.value,
        "commission_rate": vendor.commission_rate if vendor.payment_mode == PaymentMode.COMMISSION else None,
        "summary": {
            "total_sales": sum((t.original_amount for t in all_transactions), Decimal("0")),
            "total_commission_paid": sum((t.platform_commission for t in all_transactions), Decimal("0")),
            "total_earnings": sum((t.vendor_commission for t in all_transactions), Decimal("0")),
            "total_refunded": sum((t.vendor_refunded for t in all_transactions), Decimal("0")),
            "total_transactions": total,
        },
        "transactions": [
            {
                "id": t.id,
                "order_id": t.line_item.order_id,
                "line_index": t.line_item.line_index,
                "original_amount": t.original_amount,
                "commission_rate": t.commission_rate,
                "platform_commission": t.platform_commission,
                "vendor_commission": t.vendor_commission,
                "vendor_refunded": t.vendor_refunded,
                "currency": t.currency,
                "status": t.status.value,
                "calculated_at": t.calculated_at.isoformat(),
                "paid_at": t.paid_at.isoformat() if t.paid_at else None,
            }
            for t in transactions
        ],
        "pagination": paginate(page, limit, total),
    }


async def get_payout_request(request_id: int) -> Dict:
    payout = await PayoutRequest.filter(id=request_id).first()
    if not payout:
        raise NotFoundError(f"Payout request {request_id} not found", request_id=request_id)
    return serialize_payout(payout)


async def get_pending_payouts() -> List[Dict]:
    """Admin approval queue, oldest request first."""
    payouts = await PayoutRequest.filter(status=PayoutStatus.PENDING).prefetch_related("vendor").order_by("requested_at", "id")
    result = []
    for payout in payouts:
        item = serialize_payout(payout)
        item["vendor_name"] = payout.vendor.name
        item["vendor_telegram_id"] = payout.vendor.telegram_id
        result.append(item)
    return result


async def get_platform_payout_summary() -> Dict:
    """Platform-wide totals for the admin dashboard."""
    ledgers = await VendorLedger.all()
    transactions = await CommissionTransaction.all()

    by_status = {}
    for payout in await PayoutRequest.all():
        entry = by_status.setdefault(payout.status.value, {"count": 0, "amount": Decimal("0")})
        entry["count"] += 1
        entry["amount"] += payout.approved_amount or payout.amount or Decimal("0")

    return {
        "vendors": len(ledgers),
        "total_earned": sum((row.total_earned for row in ledgers), Decimal("0")),
        "pending_balance": sum((row.pending_balance for row in ledgers), Decimal("0")),
        "in_processing": sum((row.in_processing for row in ledgers), Decimal("0")),
        "total_paid_out": sum((row.total_paid_out for row in ledgers), Decimal("0")),
        "clawback_owed": sum((row.clawback_owed for row in ledgers), Decimal("0")),
        "platform_commission": sum((t.platform_commission for t in transactions), Decimal("0")),
        "frozen_ledgers": sum(1 for row in ledgers if row.is_frozen),
        "payouts_needing_reconciliation": await PayoutRequest.filter(needs_reconciliation=True).count(),
        "payouts_by_status": by_status,
    }


async def get_flagged_ledgers() -> List[Dict]:
    """Frozen ledgers waiting for manual reconciliation."""
    ledgers = await VendorLedger.filter(is_frozen=True).prefetch_related("vendor").order_by("frozen_at")
    return [
        {
            "vendor_id": row.vendor_id,
            "vendor_name": row.vendor.name,
            "frozen_reason": row.frozen_reason,
            "frozen_at": row.frozen_at.isoformat() if row.frozen_at else None,
            "total_earned": row.total_earned,
            "pending_balance": row.pending_balance,
            "in_processing": row.in_processing,
            "total_paid_out": row.total_paid_out,
            "clawback_owed": row.clawback_owed,
        }
        for row in ledgers
    ]


async def get_open_clawbacks(vendor_id: int) -> List[Dict]:
    await _vendor(vendor_id)
    clawbacks = await Clawback.filter(vendor_id=vendor_id, status=ClawbackStatus.OPEN).prefetch_related("line_item").order_by("created_at", "id")
    return [
        {
            "id": c.id,
            "order_id": c.line_item.order_id,
            "line_index": c.line_item.line_index,
            "amount": c.amount,
            "recovered_amount": c.recovered_amount,
            "outstanding": c.amount - c.recovered_amount,
            "created_at": c.created_at.isoformat(),
        }
        for c in clawbacks
    ]
