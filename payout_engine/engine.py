"""
Entry point for every earnings and payout operation.

PayoutEngine serializes all work on one vendor's ledger behind a per-vendor
lock, retries operations that lost the optimistic version check, and freezes
the vendor's ledger (with an admin alert) when a LedgerInvariantViolation
escapes. Metrics are tracked after the database work has committed.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

from tortoise.transactions import in_transaction

from .accounts import create_vendor_account
from .alerts import AdminAlerts, admin_alerts
from .commission import recognize_line_item
from .config import EngineConfig
from .exceptions import (
    ConcurrentLedgerUpdateError,
    DuplicateRecognitionError,
    GatewayError,
    LedgerInvariantViolation,
    NotFoundError,
)
from .gateway import PaymentGateway, PayoutResult, payment_gateway
from .ledger import EarningsLedger, VendorLocks
from .metrics import track_metric
from .models import (
    CommissionTransaction, MetricType, PayoutMethod, PayoutRequest, RefundAdjustment,
    SettledLineItem, SubscriptionPayment, VendorAccount, VendorLedger, VendorSubscription
)
from . import payouts, subscription
from .money import to_decimal
from .refunds import RefundEvent, apply_refund, recover_clawbacks
from .settlement import PaidOrder, read_settled_line_items

logger = logging.getLogger(__name__)


class PayoutEngine:
    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        ledger: Optional[EarningsLedger] = None,
        gateway: Optional[PaymentGateway] = None,
        alerts: Optional[AdminAlerts] = None,
        locks: Optional[VendorLocks] = None,
    ):
        self.config = config or EngineConfig.from_env()
        self.ledger = ledger or EarningsLedger()
        self.gateway = gateway or payment_gateway
        self.alerts = alerts or admin_alerts
        self.locks = locks or VendorLocks()

    async def _run(self, vendor_id: int, operation, *args, **kwargs):
        """Run a ledger-touching operation for one vendor."""
        attempts = max(1, self.config.ledger_retry_attempts)
        async with self.locks.for_vendor(vendor_id):
            for attempt in range(1, attempts + 1):
                try:
                    return await operation(*args, **kwargs)
                except ConcurrentLedgerUpdateError:
                    if attempt == attempts:
                        logger.error(f"Giving up on vendor {vendor_id} after {attempts} concurrent update conflicts")
                        raise
                    logger.warning(f"Concurrent ledger update for vendor {vendor_id}, retry {attempt}/{attempts}")
                    await asyncio.sleep(0)
                except LedgerInvariantViolation as e:
                    await self._freeze(vendor_id, e)
                    raise

    async def _freeze(self, vendor_id: int, error: LedgerInvariantViolation) -> None:
        await self.ledger.freeze(vendor_id, error.message)
        await track_metric(
            metric_type=MetricType.LEDGER_INVARIANT_VIOLATION,
            user_id=vendor_id,
            metadata=error.to_dict(),
        )
        await self.alerts.ledger_frozen(vendor_id, error.message)

    async def _request(self, request_id: int) -> PayoutRequest:
        return await payouts.get_request(request_id)

    # Recognition

    async def onboard_vendor(self, name: str, **kwargs) -> VendorAccount:
        """Create a vendor account; commission vendors without a rate get the configured default."""
        kwargs.setdefault("default_commission_rate", self.config.default_commission_rate)
        return await create_vendor_account(name, **kwargs)

    async def recognize(self, line_item: SettledLineItem) -> CommissionTransaction:
        """
        Recognize a settled line item. Returns the existing transaction when
        the line item was recognized before; the ledger is credited once.
        """
        try:
            transaction = await self._run(
                line_item.vendor_id, recognize_line_item, line_item, self.ledger, self.config.rounding_mode
            )
        except DuplicateRecognitionError as e:
            logger.info(f"Line item {line_item.order_id}/{line_item.line_index} already recognized as transaction {e.existing.id}")
            return e.existing

        await track_metric(
            metric_type=MetricType.EARNINGS_RECOGNIZED,
            value=float(transaction.vendor_commission),
            entity_id=transaction.id,
            user_id=transaction.vendor_id,
            metadata={
                "order_id": line_item.order_id,
                "line_index": line_item.line_index,
                "original_amount": str(transaction.original_amount),
                "platform_commission": str(transaction.platform_commission),
                "payment_mode": transaction.payment_mode.value,
            },
        )
        return transaction

    async def settle_order(self, order: PaidOrder) -> List[CommissionTransaction]:
        """Read every line of a paid order and recognize it."""
        items = await read_settled_line_items(order)
        await track_metric(
            metric_type=MetricType.LINE_ITEM_SETTLED,
            value=float(len(items)),
            metadata={"order_id": order.order_id},
        )
        return [await self.recognize(item) for item in items]

    # Refunds

    async def refund(self, order_id: str, line_index: int, amount, refund_event_id: str) -> RefundAdjustment:
        event = RefundEvent(
            order_id=str(order_id),
            line_index=int(line_index),
            refund_amount=to_decimal(amount),
            refund_event_id=str(refund_event_id),
        )
        return await self.apply_refund_event(event)

    async def apply_refund_event(self, event: RefundEvent) -> RefundAdjustment:
        line_item = await SettledLineItem.filter(order_id=event.order_id, line_index=event.line_index).first()
        if line_item is None:
            # apply_refund reports the unknown line item
            adjustment, _ = await apply_refund(event, self.ledger, self.config.rounding_mode)
            return adjustment

        adjustment, created = await self._run(
            line_item.vendor_id, apply_refund, event, self.ledger, self.config.rounding_mode
        )
        if created:
            await track_metric(
                metric_type=MetricType.REFUND_APPLIED,
                value=float(adjustment.vendor_reduction),
                entity_id=adjustment.id,
                user_id=line_item.vendor_id,
                metadata={"order_id": event.order_id, "line_index": event.line_index, "refund_event_id": event.refund_event_id},
            )
            if adjustment.clawback_amount > 0:
                await track_metric(
                    metric_type=MetricType.CLAWBACK_RECORDED,
                    value=float(adjustment.clawback_amount),
                    entity_id=adjustment.id,
                    user_id=line_item.vendor_id,
                )
        return adjustment

    # Payouts

    async def request_payout(self, vendor_id: int, amount=None, method: Optional[PayoutMethod] = None) -> PayoutRequest:
        request = await self._run(
            vendor_id, payouts.request_payout, vendor_id, self.ledger, amount, method,
            self.config.minimum_payout_default
        )
        await track_metric(
            metric_type=MetricType.PAYOUT_REQUESTED,
            value=float(request.amount) if request.amount is not None else 0.0,
            entity_id=request.id,
            user_id=vendor_id,
            metadata={"full_balance": request.amount is None, "method": request.method.value},
        )
        await self.alerts.payout_requested(request)
        return request

    async def approve_payout(self, request_id: int) -> PayoutRequest:
        """
        Approve a pending payout and hand it to the payment gateway.

        A gateway refusal marks the payout failed and returns the reserved
        amount to the vendor's pending balance.
        """
        vendor_id = (await self._request(request_id)).vendor_id
        request = await self._run(vendor_id, payouts.approve_payout, request_id, self.ledger)
        await track_metric(
            metric_type=MetricType.PAYOUT_APPROVED,
            value=float(request.approved_amount),
            entity_id=request.id,
            user_id=vendor_id,
        )

        try:
            result = await self.gateway.dispatch_payout(request)
            if not result.accepted:
                raise GatewayError(result.message or "Payout refused by the gateway", request_id=request_id)
        except GatewayError as e:
            logger.error(f"Dispatch of payout {request_id} failed: {e.message}")
            request = await self._run(vendor_id, payouts.fail_payout, request_id, self.ledger, e.message)
            await track_metric(
                metric_type=MetricType.PAYOUT_FAILED,
                value=float(request.approved_amount),
                entity_id=request.id,
                user_id=vendor_id,
                metadata={"reason": e.message, "stage": "dispatch"},
            )
            await self.alerts.dispatch_failed(request, e.message)
            return request

        return await self._run(vendor_id, payouts.mark_processing, request_id, result.reference)

    async def confirm_payout_result(
        self,
        request_id: int,
        success: bool,
        gateway_ref: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> PayoutRequest:
        vendor_id = (await self._request(request_id)).vendor_id
        request, changed = await self._run(
            vendor_id, payouts.confirm_payout_result, request_id, self.ledger, success, gateway_ref, failure_reason
        )
        if changed:
            await track_metric(
                metric_type=MetricType.PAYOUT_COMPLETED if success else MetricType.PAYOUT_FAILED,
                value=float(request.approved_amount),
                entity_id=request.id,
                user_id=vendor_id,
                metadata={"gateway_reference": gateway_ref, "failure_reason": failure_reason},
            )
        return request

    async def handle_payout_result(self, result: PayoutResult) -> PayoutRequest:
        return await self.confirm_payout_result(
            result.request_id, result.success, result.gateway_reference, result.failure_reason
        )

    async def cancel_payout_request(
        self,
        request_id: int,
        reason: Optional[str] = None,
        vendor_id: Optional[int] = None,
    ) -> PayoutRequest:
        """Cancel a pending request. With ``vendor_id`` the request must belong to that vendor."""
        request = await self._request(request_id)
        if vendor_id is not None and request.vendor_id != vendor_id:
            raise NotFoundError(f"Payout request {request_id} not found", request_id=request_id)

        request = await self._run(request.vendor_id, payouts.cancel_payout_request, request_id, reason)
        await track_metric(metric_type=MetricType.PAYOUT_CANCELLED, entity_id=request.id, user_id=request.vendor_id)
        return request

    async def reject_payout(self, request_id: int, reason: str) -> PayoutRequest:
        request = await self._request(request_id)
        request = await self._run(request.vendor_id, payouts.cancel_payout_request, request_id, reason, True)
        await track_metric(
            metric_type=MetricType.PAYOUT_CANCELLED,
            entity_id=request.id,
            user_id=request.vendor_id,
            metadata={"rejected": True, "reason": reason},
        )
        return request

    async def fail_payout(self, request_id: int, reason: str) -> PayoutRequest:
        vendor_id = (await self._request(request_id)).vendor_id
        request = await self._run(vendor_id, payouts.fail_payout, request_id, self.ledger, reason)
        await track_metric(
            metric_type=MetricType.PAYOUT_FAILED,
            entity_id=request.id,
            user_id=vendor_id,
            metadata={"reason": reason, "stage": "admin"},
        )
        return request

    async def flag_stale_payouts(self, now: Optional[datetime] = None) -> List[PayoutRequest]:
        stale = await payouts.flag_stale_payouts(self.config.payout_processing_sla_hours, now)
        for request in stale:
            await self.alerts.stale_payout(request)
        return stale

    # Subscriptions

    async def record_subscription_payment(
        self,
        vendor_id: int,
        amount,
        period_start: datetime,
        period_end: Optional[datetime] = None,
        transaction_id: Optional[str] = None,
    ) -> SubscriptionPayment:
        payment = await subscription.record_payment(vendor_id, amount, period_start, period_end, transaction_id)
        await track_metric(
            metric_type=MetricType.SUBSCRIPTION_PAYMENT,
            value=float(payment.amount),
            entity_id=payment.id,
            user_id=vendor_id,
            metadata={"period_end": payment.period_end.isoformat()},
        )
        return payment

    async def record_failed_subscription_payment(
        self,
        vendor_id: int,
        amount,
        period_start: datetime,
        period_end: Optional[datetime] = None,
        transaction_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> SubscriptionPayment:
        return await subscription.record_failed_payment(
            vendor_id, amount, period_start, period_end, transaction_id, reason
        )

    async def suspend_subscription(self, vendor_id: int, reason: str) -> VendorSubscription:
        return await subscription.suspend(vendor_id, reason)

    async def refresh_subscription(self, vendor_id: int, now: Optional[datetime] = None) -> VendorSubscription:
        return await subscription.refresh_status(vendor_id, now, self.config.grace_period_days)

    # Ledger administration

    async def offset_clawback(self, vendor_id: int, amount=None) -> Dict:
        """Recover outstanding clawback from the vendor's pending balance."""
        async def offset():
            async with in_transaction():
                ledger, recovered = await self.ledger.offset_clawback(vendor_id, amount, reference="clawback_offset")
                await recover_clawbacks(vendor_id, recovered)
            return ledger, recovered

        ledger, recovered = await self._run(vendor_id, offset)
        logger.info(f"Offset {recovered} of clawback for vendor {vendor_id}, {ledger.clawback_owed} still owed")
        return {"vendor_id": vendor_id, "recovered": recovered, "clawback_owed": ledger.clawback_owed}

    async def unfreeze_ledger(self, vendor_id: int) -> VendorLedger:
        async with self.locks.for_vendor(vendor_id):
            return await self.ledger.unfreeze(vendor_id)

    async def audit_ledger(self, vendor_id: int) -> Dict:
        async with self.locks.for_vendor(vendor_id):
            return await self.ledger.audit(vendor_id)

    async def freeze_ledger(self, vendor_id: int, reason: str, **details) -> None:
        """Freeze a ledger found inconsistent outside a mutation, e.g. by the journal audit."""
        async with self.locks.for_vendor(vendor_id):
            await self._freeze(vendor_id, LedgerInvariantViolation(reason, vendor_id=vendor_id, **details))


# Create a singleton instance
engine = PayoutEngine()
