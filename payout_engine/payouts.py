"""
Payout request state machine.

    pending    -> approved | cancelled | failed
    approved   -> processing | failed
    processing -> completed | failed

completed, failed and cancelled are terminal. Funds move only on approval
(pending_balance -> in_processing) and on resolution (in_processing ->
total_paid_out, or back to pending_balance when the payout fails).
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from tortoise.transactions import in_transaction

from .config import MINIMUM_PAYOUT_DEFAULT, PAYOUT_PROCESSING_SLA_HOURS, get_current_time
from .exceptions import (
    BelowMinimumPayoutError,
    InsufficientBalanceError,
    InvalidPayoutAmountError,
    InvalidStateTransitionError,
    LedgerFrozenError,
    NotFoundError,
)
from .ledger import EarningsLedger
from .models import (
    CommissionTransaction, PayoutAllocation, PayoutMethod, PayoutRequest,
    PayoutStatus, TransactionStatus, VendorAccount
)
from .money import ZERO, quantize, to_decimal
from .refunds import recover_clawbacks

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    PayoutStatus.PENDING: {PayoutStatus.APPROVED, PayoutStatus.CANCELLED, PayoutStatus.FAILED},
    PayoutStatus.APPROVED: {PayoutStatus.PROCESSING, PayoutStatus.FAILED},
    PayoutStatus.PROCESSING: {PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.COMPLETED: set(),
    PayoutStatus.FAILED: set(),
    PayoutStatus.CANCELLED: set(),
}


def assert_transition(request: PayoutRequest, new_status: PayoutStatus) -> None:
    if new_status not in ALLOWED_TRANSITIONS[request.status]:
        raise InvalidStateTransitionError(
            f"Payout {request.id} cannot move from {request.status.value} to {new_status.value}",
            request_id=request.id, status=request.status.value, target=new_status.value
        )


async def get_request(request_id: int, for_update: bool = False) -> PayoutRequest:
    query = PayoutRequest.filter(id=request_id)
    if for_update:
        query = query.select_for_update()
    request = await query.first()
    if not request:
        raise NotFoundError(f"Payout request {request_id} not found", request_id=request_id)
    return request


def minimum_payout_for(vendor: VendorAccount, default: Decimal = MINIMUM_PAYOUT_DEFAULT) -> Decimal:
    return vendor.minimum_payout if vendor.minimum_payout is not None else default


async def request_payout(
    vendor_id: int,
    ledger: EarningsLedger,
    amount=None,
    method: Optional[PayoutMethod] = None,
    minimum_default: Decimal = MINIMUM_PAYOUT_DEFAULT,
) -> PayoutRequest:
    """
    Create a pending payout request. No funds move until approval.

    Args:
        vendor_id: Requesting vendor
        ledger: Ledger used to read the current balances
        amount: Requested amount; None requests the full pending balance
        method: Payout method, defaults to the vendor's preferred method
        minimum_default: Minimum payout when the vendor has none configured

    Raises:
        LedgerFrozenError, InvalidPayoutAmountError, InsufficientBalanceError,
        BelowMinimumPayoutError
    """
    vendor = await VendorAccount.filter(id=vendor_id).first()
    if not vendor:
        raise NotFoundError(f"Vendor {vendor_id} not found", vendor_id=vendor_id)

    balances = await ledger.get(vendor_id)
    if balances.is_frozen:
        raise LedgerFrozenError(f"Ledger of vendor {vendor_id} is frozen", vendor_id=vendor_id)

    minimum = minimum_payout_for(vendor, minimum_default)
    available = balances.pending_balance

    if amount is None:
        if available < minimum:
            raise BelowMinimumPayoutError(
                f"Pending balance {available} is below the minimum payout of {minimum}",
                available=available, minimum=minimum
            )
    else:
        amount = quantize(to_decimal(amount), vendor.currency)
        if amount <= ZERO:
            raise InvalidPayoutAmountError(f"Payout amount must be positive, got {amount}", amount=amount)
        if amount > available:
            raise InsufficientBalanceError(
                f"Requested {amount} but only {available} is available",
                requested=amount, available=available
            )
        if amount < minimum:
            raise BelowMinimumPayoutError(
                f"Requested {amount} is below the minimum payout of {minimum}",
                requested=amount, minimum=minimum
            )

    request = await PayoutRequest.create(
        vendor=vendor,
        amount=amount,
        currency=vendor.currency,
        method=method or vendor.preferred_payout_method,
    )
    logger.info(
        f"Vendor {vendor_id} requested payout {request.id}: "
        f"{amount if amount is not None else 'full balance'} {vendor.currency} via {request.method.value}"
    )
    return request


async def _allocate(request: PayoutRequest, amount: Decimal) -> int:
    """Cover the oldest open commission transactions first. Returns the number covered."""
    transactions = await CommissionTransaction.filter(
        vendor_id=request.vendor_id,
        status__in=[TransactionStatus.PENDING, TransactionStatus.APPROVED],
    ).order_by("calculated_at", "id")

    remaining = amount
    covered = 0
    for transaction in transactions:
        if remaining <= ZERO:
            break
        share = min(transaction.open_amount, remaining)
        if share <= ZERO:
            continue

        await PayoutAllocation.create(payout=request, commission_transaction=transaction, amount=share)
        transaction.reserved_amount += share
        if transaction.status == TransactionStatus.PENDING:
            transaction.status = TransactionStatus.APPROVED
        await transaction.save(update_fields=["reserved_amount", "status"])
        remaining -= share
        covered += 1

    if remaining > ZERO:
        logger.warning(f"Payout {request.id}: {remaining} could not be matched to open transactions")
    return covered


async def approve_payout(request_id: int, ledger: EarningsLedger) -> PayoutRequest:
    """
    Reserve the payout amount and move the request to approved.

    The amount is the requested one, or the whole pending balance for a
    full-balance request. The request stays pending if it no longer fits.
    """
    async with in_transaction():
        request = await get_request(request_id, for_update=True)
        assert_transition(request, PayoutStatus.APPROVED)

        if request.amount is None:
            amount = (await ledger.get(request.vendor_id)).pending_balance
            if amount <= ZERO:
                raise InsufficientBalanceError(
                    f"Vendor {request.vendor_id} has no pending balance to pay out",
                    request_id=request_id
                )
        else:
            amount = request.amount

        await ledger.reserve(request.vendor_id, amount, reference=f"payout:{request.id}")
        request.total_orders = await _allocate(request, amount)
        request.approved_amount = amount
        request.status = PayoutStatus.APPROVED
        request.approved_at = get_current_time()
        await request.save()

    logger.info(f"Approved payout {request.id} for vendor {request.vendor_id}: {amount} {request.currency}")
    return request


async def mark_processing(request_id: int, gateway_reference: str) -> PayoutRequest:
    """Record the gateway hand-off of an approved payout."""
    if not gateway_reference:
        raise ValueError("A processing payout requires a gateway reference")

    async with in_transaction():
        request = await get_request(request_id, for_update=True)
        assert_transition(request, PayoutStatus.PROCESSING)
        request.status = PayoutStatus.PROCESSING
        request.gateway_reference = gateway_reference
        request.processed_at = get_current_time()
        await request.save()

    logger.info(f"Payout {request.id} dispatched to gateway, reference {gateway_reference}")
    return request


async def _release_allocations(request: PayoutRequest) -> None:
    allocations = await PayoutAllocation.filter(payout_id=request.id, released=False).prefetch_related("commission_transaction")
    for allocation in allocations:
        transaction = allocation.commission_transaction
        transaction.reserved_amount -= allocation.amount
        await transaction.save(update_fields=["reserved_amount"])
        allocation.released = True
        await allocation.save(update_fields=["released"])


async def _return_reservation(request: PayoutRequest, ledger: EarningsLedger) -> None:
    """
    Move the reserved amount of a failed payout back to pending_balance.

    Clawback booked while the payout was in flight is recovered out of the
    returned funds first.
    """
    reference = f"payout:{request.id}"
    balances = await ledger.release_reservation(request.vendor_id, request.approved_amount, reference=reference)
    await _release_allocations(request)

    recovered = min(request.approved_amount, balances.clawback_owed)
    if recovered > ZERO:
        await ledger.offset_clawback(request.vendor_id, recovered, reference=f"{reference}:clawback")
        await recover_clawbacks(request.vendor_id, recovered)
        logger.info(f"Recovered {recovered} of clawback from failed payout {request.id}")


async def _settle_allocations(request: PayoutRequest) -> None:
    now = get_current_time()
    allocations = await PayoutAllocation.filter(payout_id=request.id, released=False).prefetch_related("commission_transaction")
    for allocation in allocations:
        transaction = allocation.commission_transaction
        transaction.reserved_amount -= allocation.amount
        transaction.paid_out_amount += allocation.amount
        if transaction.reserved_amount <= ZERO and transaction.open_amount <= ZERO:
            transaction.status = TransactionStatus.PAID
            transaction.paid_at = now
        await transaction.save(update_fields=["reserved_amount", "paid_out_amount", "status", "paid_at"])


async def confirm_payout_result(
    request_id: int,
    ledger: EarningsLedger,
    success: bool,
    gateway_ref: Optional[str] = None,
    failure_reason: Optional[str] = None,
) -> Tuple[PayoutRequest, bool]:
    """
    Resolve a processing payout from the gateway callback.

    Returns:
        (request, changed); ``changed`` is False when the callback repeats an
        outcome that was already recorded
    """
    async with in_transaction():
        request = await get_request(request_id, for_update=True)
        target = PayoutStatus.COMPLETED if success else PayoutStatus.FAILED

        if request.status == target and request.resolved_at is not None:
            logger.info(f"Payout {request.id} already {target.value}, callback acknowledged")
            return request, False
        if request.status != PayoutStatus.PROCESSING:
            raise InvalidStateTransitionError(
                f"Payout {request.id} is {request.status.value}, cannot apply a {target.value} result",
                request_id=request.id, status=request.status.value, target=target.value
            )
        if gateway_ref and request.gateway_reference and gateway_ref != request.gateway_reference:
            logger.warning(
                f"Payout {request.id} callback reference {gateway_ref} differs from {request.gateway_reference}"
            )

        reference = f"payout:{request.id}"
        if success:
            await ledger.confirm_payout(request.vendor_id, request.approved_amount, reference=reference)
            await _settle_allocations(request)
        else:
            await _return_reservation(request, ledger)
            request.failure_reason = failure_reason or "Payout failed at the gateway"

        request.status = target
        request.resolved_at = get_current_time()
        request.needs_reconciliation = False
        await request.save()

    logger.info(f"Payout {request.id} for vendor {request.vendor_id} {target.value}")
    return request, True


async def cancel_payout_request(
    request_id: int,
    reason: Optional[str] = None,
    rejected: bool = False,
) -> PayoutRequest:
    """Cancel a pending request (by the vendor, or rejected by an admin). No ledger effect."""
    async with in_transaction():
        request = await get_request(request_id, for_update=True)
        assert_transition(request, PayoutStatus.CANCELLED)
        request.status = PayoutStatus.CANCELLED
        request.resolved_at = get_current_time()
        if rejected:
            request.rejection_reason = reason or "Rejected by admin"
        else:
            request.failure_reason = reason
        await request.save()

    logger.info(f"Payout {request.id} {'rejected' if rejected else 'cancelled'}: {reason}")
    return request


async def fail_payout(request_id: int, ledger: EarningsLedger, reason: str) -> PayoutRequest:
    """
    Mark a pending or approved payout failed, releasing any reservation.

    Processing payouts are resolved by the gateway callback only.
    """
    async with in_transaction():
        request = await get_request(request_id, for_update=True)
        if request.status == PayoutStatus.PROCESSING:
            raise InvalidStateTransitionError(
                f"Payout {request.id} is processing and can only be resolved by the gateway",
                request_id=request.id
            )
        assert_transition(request, PayoutStatus.FAILED)

        if request.status == PayoutStatus.APPROVED:
            await _return_reservation(request, ledger)

        request.status = PayoutStatus.FAILED
        request.failure_reason = reason
        request.resolved_at = get_current_time()
        await request.save()

    logger.warning(f"Payout {request.id} for vendor {request.vendor_id} failed: {reason}")
    return request


async def flag_stale_payouts(sla_hours: int = PAYOUT_PROCESSING_SLA_HOURS, now=None) -> List[PayoutRequest]:
    """Flag processing payouts older than the SLA for manual reconciliation."""
    cutoff = (now or get_current_time()) - timedelta(hours=sla_hours)
    stale = await PayoutRequest.filter(
        status=PayoutStatus.PROCESSING,
        processed_at__lt=cutoff,
        needs_reconciliation=False,
    )
    for request in stale:
        request.needs_reconciliation = True
        await request.save(update_fields=["needs_reconciliation"])
        logger.warning(f"Payout {request.id} has been processing since {request.processed_at.isoformat()}, flagged")
    return stale
