"""
Per-vendor earnings ledger.

The ledger row is the single source of truth for what a vendor is owed:

    total_earned == total_paid_out + in_processing + pending_balance - clawback_owed

Every mutation loads the row under a row lock (where the backend has one),
applies the change in memory, re-verifies the invariant, writes it back with
a compare-and-swap on ``version`` and appends a LedgerEntry, all in one
database transaction. Callers are expected to serialize work per vendor
(see VendorLocks) and to freeze the ledger when LedgerInvariantViolation
escapes.
"""

import asyncio
import logging
from collections import defaultdict
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

from tortoise.transactions import in_transaction

from .config import get_current_time
from .exceptions import (
    ConcurrentLedgerUpdateError,
    InsufficientBalanceError,
    LedgerFrozenError,
    LedgerInvariantViolation,
    NotFoundError,
)
from .models import LedgerEntry, LedgerEntryType, VendorAccount, VendorLedger
from .money import ZERO, to_decimal

logger = logging.getLogger(__name__)

BALANCE_FIELDS = ("total_earned", "pending_balance", "in_processing", "total_paid_out", "clawback_owed")


class VendorLocks:
    """In-process mutex per vendor; different vendors never contend."""

    def __init__(self):
        self._locks = defaultdict(asyncio.Lock)

    def for_vendor(self, vendor_id: int) -> asyncio.Lock:
        return self._locks[vendor_id]


def snapshot(ledger: VendorLedger) -> Dict[str, Decimal]:
    return {field: getattr(ledger, field) for field in BALANCE_FIELDS}


def check_invariant(ledger: VendorLedger) -> None:
    """Raise LedgerInvariantViolation if the balances do not add up."""
    for field in BALANCE_FIELDS:
        if getattr(ledger, field) < ZERO:
            raise LedgerInvariantViolation(
                f"Negative {field} on ledger of vendor {ledger.vendor_id}",
                vendor_id=ledger.vendor_id, **snapshot(ledger)
            )

    accounted = ledger.total_paid_out + ledger.in_processing + ledger.pending_balance - ledger.clawback_owed
    if ledger.total_earned != accounted:
        raise LedgerInvariantViolation(
            f"Ledger of vendor {ledger.vendor_id} does not balance: "
            f"total_earned={ledger.total_earned} accounted={accounted}",
            vendor_id=ledger.vendor_id, **snapshot(ledger)
        )


class EarningsLedger:
    """Atomic, journaled mutations of a vendor's VendorLedger row."""

    async def get(self, vendor_id: int) -> VendorLedger:
        ledger = await VendorLedger.filter(vendor_id=vendor_id).first()
        if ledger is None:
            ledger = await self._create(vendor_id)
        return ledger

    async def _create(self, vendor_id: int) -> VendorLedger:
        vendor = await VendorAccount.filter(id=vendor_id).first()
        if vendor is None:
            raise NotFoundError(f"Vendor {vendor_id} not found", vendor_id=vendor_id)
        ledger = await VendorLedger.create(vendor=vendor, currency=vendor.currency)
        logger.info(f"Opened earnings ledger for vendor {vendor_id} in {vendor.currency}")
        return ledger

    async def _load_for_update(self, vendor_id: int) -> VendorLedger:
        ledger = await VendorLedger.filter(vendor_id=vendor_id).select_for_update().first()
        if ledger is None:
            ledger = await self._create(vendor_id)
        return ledger

    async def _mutate(
        self,
        vendor_id: int,
        entry_type: LedgerEntryType,
        amount,
        apply: Callable[[VendorLedger, Decimal], object],
        reference: Optional[str] = None,
    ):
        amount = to_decimal(amount)
        if amount < ZERO:
            raise ValueError(f"Ledger amounts must not be negative: {amount}")

        async with in_transaction():
            ledger = await self._load_for_update(vendor_id)
            if ledger.is_frozen:
                raise LedgerFrozenError(
                    f"Ledger of vendor {vendor_id} is frozen: {ledger.frozen_reason}",
                    vendor_id=vendor_id
                )

            expected_version = ledger.version
            result = apply(ledger, amount)
            check_invariant(ledger)

            updated = await VendorLedger.filter(id=ledger.id, version=expected_version).update(
                version=expected_version + 1,
                updated_at=get_current_time(),
                **snapshot(ledger)
            )
            if not updated:
                raise ConcurrentLedgerUpdateError(
                    f"Ledger of vendor {vendor_id} changed concurrently", vendor_id=vendor_id
                )
            ledger.version = expected_version + 1

            await LedgerEntry.create(
                ledger=ledger,
                entry_type=entry_type,
                amount=amount,
                reference=reference,
                **snapshot(ledger)
            )

        logger.info(
            f"Ledger {entry_type.value} {amount} {ledger.currency} for vendor {vendor_id} "
            f"(ref={reference}): pending={ledger.pending_balance} processing={ledger.in_processing} "
            f"paid={ledger.total_paid_out} clawback={ledger.clawback_owed}"
        )
        return ledger, result

    async def credit(self, vendor_id: int, amount, reference: Optional[str] = None) -> VendorLedger:
        """Recognition: total_earned and pending_balance grow by amount."""
        def apply(ledger, value):
            ledger.total_earned += value
            ledger.pending_balance += value

        ledger, _ = await self._mutate(vendor_id, LedgerEntryType.CREDIT, amount, apply, reference)
        return ledger

    async def reserve(self, vendor_id: int, amount, reference: Optional[str] = None) -> VendorLedger:
        """Payout approval: pending_balance -> in_processing."""
        def apply(ledger, value):
            if value > ledger.pending_balance:
                raise InsufficientBalanceError(
                    f"Cannot reserve {value}: pending balance is {ledger.pending_balance}",
                    requested=value, available=ledger.pending_balance
                )
            ledger.pending_balance -= value
            ledger.in_processing += value

        ledger, _ = await self._mutate(vendor_id, LedgerEntryType.RESERVE, amount, apply, reference)
        return ledger

    async def confirm_payout(self, vendor_id: int, amount, reference: Optional[str] = None) -> VendorLedger:
        """Gateway confirmed the transfer: in_processing -> total_paid_out."""
        def apply(ledger, value):
            ledger.in_processing -= value
            ledger.total_paid_out += value

        ledger, _ = await self._mutate(vendor_id, LedgerEntryType.CONFIRM_PAYOUT, amount, apply, reference)
        return ledger

    async def release_reservation(self, vendor_id: int, amount, reference: Optional[str] = None) -> VendorLedger:
        """Payout failed: in_processing -> pending_balance."""
        def apply(ledger, value):
            ledger.in_processing -= value
            ledger.pending_balance += value

        ledger, _ = await self._mutate(vendor_id, LedgerEntryType.RELEASE, amount, apply, reference)
        return ledger

    async def reverse_earnings(
        self,
        vendor_id: int,
        amount,
        paid_out_portion=ZERO,
        reference: Optional[str] = None,
    ) -> Tuple[VendorLedger, Decimal, Decimal]:
        """
        Refund reversal. total_earned drops by ``amount``; the share that was
        not paid out yet comes from pending_balance as far as it goes and
        everything else becomes clawback owed by the vendor.

        Returns (ledger, from_pending, clawback).
        """
        paid_out_portion = to_decimal(paid_out_portion)
        if paid_out_portion < ZERO or paid_out_portion > to_decimal(amount):
            raise ValueError(f"paid_out_portion {paid_out_portion} outside 0..{amount}")

        def apply(ledger, value):
            from_pending = min(value - paid_out_portion, ledger.pending_balance)
            clawback = value - from_pending
            ledger.total_earned -= value
            ledger.pending_balance -= from_pending
            ledger.clawback_owed += clawback
            return from_pending, clawback

        ledger, (from_pending, clawback) = await self._mutate(
            vendor_id, LedgerEntryType.REVERSE, amount, apply, reference
        )
        if clawback > ZERO:
            logger.warning(f"Refund on vendor {vendor_id} exceeded available funds, clawback {clawback} recorded")
        return ledger, from_pending, clawback

    async def offset_clawback(self, vendor_id: int, amount=None, reference: Optional[str] = None) -> Tuple[VendorLedger, Decimal]:
        """Recover outstanding clawback out of pending_balance."""
        if amount is None:
            current = await self.get(vendor_id)
            amount = min(current.clawback_owed, current.pending_balance)

        def apply(ledger, value):
            if value > ledger.clawback_owed:
                raise InsufficientBalanceError(
                    f"Only {ledger.clawback_owed} clawback is outstanding",
                    requested=value, available=ledger.clawback_owed
                )
            if value > ledger.pending_balance:
                raise InsufficientBalanceError(
                    f"Cannot offset {value}: pending balance is {ledger.pending_balance}",
                    requested=value, available=ledger.pending_balance
                )
            ledger.pending_balance -= value
            ledger.clawback_owed -= value

        ledger, _ = await self._mutate(vendor_id, LedgerEntryType.CLAWBACK_OFFSET, amount, apply, reference)
        return ledger, to_decimal(amount)

    async def freeze(self, vendor_id: int, reason: str) -> None:
        """Stop all further mutation of a vendor's ledger."""
        ledger = await self.get(vendor_id)
        await VendorLedger.filter(id=ledger.id).update(
            is_frozen=True, frozen_reason=reason, frozen_at=get_current_time()
        )
        logger.error(f"Ledger of vendor {vendor_id} frozen: {reason}")

    async def unfreeze(self, vendor_id: int) -> VendorLedger:
        """Re-open a frozen ledger after manual reconciliation. Re-checks the invariant first."""
        ledger = await self.get(vendor_id)
        check_invariant(ledger)
        await VendorLedger.filter(id=ledger.id).update(is_frozen=False, frozen_reason=None, frozen_at=None)
        logger.info(f"Ledger of vendor {vendor_id} unfrozen")
        return await self.get(vendor_id)

    async def audit(self, vendor_id: int) -> Dict:
        """
        Replay the journal and compare it with the stored balances.

        Returns a dict with ``ok`` and the list of mismatching fields.
        """
        ledger = await self.get(vendor_id)
        entries = await LedgerEntry.filter(ledger_id=ledger.id).order_by("id")
        previous = {field: ZERO for field in BALANCE_FIELDS}
        for entry in entries:
            current = {field: getattr(entry, field) for field in BALANCE_FIELDS}
            delta_ok = _entry_moves_expected_amount(entry, previous, current)
            if not delta_ok:
                return {"ok": False, "vendor_id": vendor_id, "entry_id": entry.id, "mismatches": ["journal"]}
            previous = current

        mismatches = [field for field in BALANCE_FIELDS if previous[field] != getattr(ledger, field)]
        try:
            check_invariant(ledger)
        except LedgerInvariantViolation:
            mismatches.append("invariant")
        return {"ok": not mismatches, "vendor_id": vendor_id, "mismatches": mismatches}


def _entry_moves_expected_amount(entry: LedgerEntry, before: Dict, after: Dict) -> bool:
    """Every journal entry must move exactly its amount between the expected buckets."""
    delta = {field: after[field] - before[field] for field in BALANCE_FIELDS}
    amount = entry.amount
    if entry.entry_type == LedgerEntryType.CREDIT:
        return delta["total_earned"] == amount and delta["pending_balance"] == amount
    if entry.entry_type == LedgerEntryType.RESERVE:
        return delta["pending_balance"] == -amount and delta["in_processing"] == amount
    if entry.entry_type == LedgerEntryType.CONFIRM_PAYOUT:
        return delta["in_processing"] == -amount and delta["total_paid_out"] == amount
    if entry.entry_type == LedgerEntryType.RELEASE:
        return delta["in_processing"] == -amount and delta["pending_balance"] == amount
    if entry.entry_type == LedgerEntryType.REVERSE:
        return delta["total_earned"] == -amount and -delta["pending_balance"] + delta["clawback_owed"] == amount
    if entry.entry_type == LedgerEntryType.CLAWBACK_OFFSET:
        return delta["pending_balance"] == -amount and delta["clawback_owed"] == -amount
    return False
